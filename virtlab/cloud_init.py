"""Cloud-init payloads for provisioned instances."""

from __future__ import annotations

import subprocess
import tempfile
import textwrap
from ipaddress import IPv4Address
from pathlib import Path
from typing import Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from virtlab.constants import DEFAULT_MTU, GENISOIMAGE_BIN
from virtlab.exceptions import ManagerError
from virtlab.models import CloudInitData, InstanceRuntime, InterfaceRuntime, UserConfig
from virtlab.utils import hash_password, log, run


def read_public_key(user_config: UserConfig) -> str:
    key_path = Path(user_config.key_path).expanduser()
    try:
        key = key_path.read_text(encoding="utf-8").strip()
    except OSError as exc:
        raise ManagerError(f"Cannot read SSH key {key_path}: {exc}") from exc
    if not key:
        raise ManagerError(f"SSH key file {key_path} is empty")
    return key


def render_user_data(name: str, user_config: UserConfig, public_key: str) -> str:
    user: Dict[str, object] = {
        "name": user_config.user_name,
        "shell": "/bin/bash",
        "sudo": "ALL=(ALL) NOPASSWD:ALL",
        "lock_passwd": True,
        "ssh_authorized_keys": [public_key],
    }
    cfg: Dict[str, object] = {
        "hostname": name,
        "fqdn": name,
        "package_update": False,
        "package_upgrade": False,
        "ssh_pwauth": False,
        "users": ["default", user],
    }
    if user_config.password:
        user["lock_passwd"] = False
        user["passwd"] = hash_password(user_config.password)
        cfg["ssh_pwauth"] = True
        cfg["chpasswd"] = {"expire": False}
    return "#cloud-config\n" + yaml.safe_dump(cfg, sort_keys=False, default_flow_style=False)


def render_meta_data(name: str) -> str:
    return (
        textwrap.dedent(
            f"""
        instance-id: iid-{name}
        local-hostname: {name}
        """
        ).strip()
        + "\n"
    )


def _route_interface(instance: InstanceRuntime, gateway: IPv4Address) -> Optional[InterfaceRuntime]:
    for iface in instance.interfaces.values():
        if iface.address is not None and gateway in iface.address.network:
            return iface
    return None


def render_network_config(instance: InstanceRuntime) -> str:
    """Render a netplan v2 network-config from the resolved interfaces and routes."""
    ethernets: Dict[str, Dict[str, object]] = {}
    for name, iface in instance.interfaces.items():
        entry: Dict[str, object] = {
            "match": {"macaddress": iface.mac},
            "set-name": name,
            "mtu": iface.mtu or DEFAULT_MTU,
        }
        if iface.address is not None:
            entry["addresses"] = [str(iface.address)]
        else:
            entry["dhcp4"] = True
        ethernets[name] = entry

    addressed = [name for name, iface in instance.interfaces.items() if iface.address is not None]
    for subnet, gateways in instance.routing_table().items():
        for gateway in gateways:
            iface = _route_interface(instance, gateway)
            route: Dict[str, object] = {"to": str(subnet), "via": str(gateway)}
            if iface is not None:
                target = iface.name
            elif addressed:
                # Routed links: the next hop is not on any local subnet
                target = addressed[0]
                route["on-link"] = True
            else:
                log("DEBUG", f"No addressed interface to carry route {subnet} via {gateway}")
                continue
            routes: List[Dict[str, object]] = ethernets[target].setdefault("routes", [])  # type: ignore[assignment]
            routes.append(route)

    return yaml.safe_dump({"version": 2, "ethernets": ethernets}, sort_keys=False, default_flow_style=False)


def build_cloud_init(name: str, instance: InstanceRuntime, user_config: Optional[UserConfig]) -> Optional[CloudInitData]:
    if user_config is None:
        return None
    return CloudInitData(
        user_data=render_user_data(name, user_config, read_public_key(user_config)),
        meta_data=render_meta_data(name),
        network_config=render_network_config(instance),
    )


def build_seed_iso(data: CloudInitData, destination: Path) -> Path:
    """Write a NoCloud seed ISO holding the cloud-init payload."""
    destination.unlink(missing_ok=True)
    with tempfile.TemporaryDirectory() as tmpdir:
        tmp = Path(tmpdir)
        (tmp / "user-data").write_text(data.user_data, encoding="utf-8")
        (tmp / "meta-data").write_text(data.meta_data, encoding="utf-8")
        (tmp / "network-config").write_text(data.network_config, encoding="utf-8")
        cmd = [
            GENISOIMAGE_BIN,
            "-output",
            str(destination),
            "-volid",
            "cidata",
            "-input-charset",
            "utf-8",
            "-joliet",
            "-rock",
            str(tmp / "meta-data"),
            str(tmp / "user-data"),
            str(tmp / "network-config"),
        ]
        try:
            run(cmd, capture_output=True)
        except subprocess.CalledProcessError as exc:
            raise ManagerError(f"genisoimage failed: {(exc.stderr or '').strip()}") from exc
        except OSError as exc:
            raise ManagerError(f"genisoimage not available: {exc}") from exc
    return destination
