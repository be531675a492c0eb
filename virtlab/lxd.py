"""LXD backend driven through the ``lxc`` command line."""

from __future__ import annotations

import subprocess
from ipaddress import IPv4Address, IPv4Network
from typing import List, Optional, Sequence

from virtlab.backend import Backend
from virtlab.constants import LXC_BIN, NETWORK_CREATE_PREFIX
from virtlab.exceptions import BackendOperationFailed
from virtlab.models import CloudInitData, InstanceState, InterfaceRuntime
from virtlab.utils import log, run


class LxdBackend(Backend):
    """Runs instances as LXD virtual machines with routed NICs."""

    links_precede_attach = False

    def __init__(self, lxc_bin: str = LXC_BIN) -> None:
        self.lxc_bin = lxc_bin

    @property
    def name(self) -> str:
        return "lxd"

    def _lxc(self, entity: str, operation: str, args: List[str], check: bool = True) -> subprocess.CompletedProcess:
        cmd = [self.lxc_bin] + args
        try:
            result = run(cmd, check=False, capture_output=True)
        except OSError as exc:
            raise BackendOperationFailed(entity, operation, f"{self.lxc_bin}: {exc}") from exc
        if check and result.returncode != 0:
            raise BackendOperationFailed(entity, operation, result.stderr or result.stdout)
        return result

    def network_exists(self, name: str) -> bool:
        result = self._lxc(name, "network lookup", ["network", "show", name], check=False)
        return result.returncode == 0

    def create_network(self, name: str, gateway: IPv4Address, subnet: IPv4Network) -> None:
        log("INFO", f"Creating network {name} ({subnet}, gateway {gateway})")
        self._lxc(
            name,
            "network create",
            [
                "network",
                "create",
                name,
                "--type",
                "bridge",
                f"ipv4.address={gateway}/{NETWORK_CREATE_PREFIX}",
                f"ipv4.dhcp.gateway={gateway}",
            ],
        )

    def destroy_network(self, name: str) -> None:
        log("INFO", f"Destroying network {name}")
        self._lxc(name, "network delete", ["network", "delete", name])

    def launch_instance(
        self,
        name: str,
        vcpu: int,
        memory: str,
        image: str,
        interfaces: Sequence[InterfaceRuntime] = (),
        cloud_init: Optional[CloudInitData] = None,
    ) -> None:
        log("INFO", f"Launching instance {name}")
        args = [
            "launch",
            image,
            name,
            "--vm",
            "-c",
            f"limits.cpu={vcpu}",
            "-c",
            f"limits.memory={memory}",
        ]
        managed = [iface for iface in interfaces if iface.managed]
        if managed:
            # --network names the NIC eth0; pin its MAC so netplan can match it
            args += ["--network", str(managed[0].managed), "-c", f"volatile.eth0.hwaddr={managed[0].mac}"]
            for extra in managed[1:]:
                log("WARN", f"{name}/{extra.name}: lxc launch takes a single network; '{extra.managed}' not attached")
        if cloud_init is not None:
            args += [
                "-c",
                f"cloud-init.user-data={cloud_init.user_data}",
                "-c",
                f"cloud-init.network-config={cloud_init.network_config}",
            ]
        self._lxc(name, "launch", args)

    def destroy_instance(self, name: str) -> None:
        log("INFO", f"Destroying instance {name}")
        self._lxc(name, "destroy", ["delete", name, "--force"])

    def attach_interface(
        self,
        instance: str,
        interface_name: str,
        mac: str,
        mtu: int,
        ip: Optional[IPv4Address],
        index: int,
    ) -> None:
        if ip is None:
            raise BackendOperationFailed(f"{instance}/{interface_name}", "attach", "routed NICs need an address")
        log("INFO", f"Attaching interface {interface_name} to instance {instance}")
        self._lxc(
            f"{instance}/{interface_name}",
            "attach",
            [
                "config",
                "device",
                "add",
                instance,
                f"eth{index}",
                "nic",
                f"name={interface_name}",
                "nictype=routed",
                f"ipv4.address={ip}",
                f"hwaddr={mac}",
                f"mtu={mtu}",
                "ipv4.gateway=none",
                "ipv6.gateway=none",
                f"host_name={self.link_name(instance, interface_name)}",
            ],
        )

    def get_instance_state(self, name: str) -> InstanceState:
        result = self._lxc(name, "state", ["info", name], check=False)
        if result.returncode != 0:
            return InstanceState.UNKNOWN
        for line in result.stdout.splitlines():
            key, _, value = line.partition(":")
            if key.strip().lower() == "status":
                if value.strip().lower() == "running":
                    return InstanceState.RUNNING
                return InstanceState.STOPPED
        return InstanceState.UNKNOWN
