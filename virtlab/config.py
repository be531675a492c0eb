"""Topology loading and environment variable parsing for virtlab."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from virtlab.constants import (
    DEFAULT_ATTACH_DELAY,
    DEFAULT_BACKEND,
    DEFAULT_BASE_DIRECTORY,
    DEFAULT_MAX_WORKERS,
    DEFAULT_POLL_INTERVAL,
    LIBVIRT_URI,
    LXC_BIN,
    NAME_RE,
    SUPPORTED_BACKENDS,
)
from virtlab.exceptions import ConfigError
from virtlab.models import (
    InstanceConfig,
    InstanceInterface,
    InterfaceConfig,
    NetworkConfig,
    ProvisionSettings,
    RouteConfig,
    RouteTableConfig,
    TopologyConfig,
    UserConfig,
)
from virtlab.utils import get_env, get_env_bool, log, parse_float_env, parse_int_env


def load_topology(config_path: Path) -> TopologyConfig:
    if not config_path.exists():
        raise ConfigError(f"Topology file missing: {config_path}")
    try:
        data = yaml.safe_load(config_path.read_text())
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {config_path}: {exc}") from exc
    topology = parse_topology(data or {})
    log(
        "DEBUG",
        f"Loaded {config_path}: {len(topology.networks)} networks, "
        f"{len(topology.instances)} instances, {len(topology.route_tables)} route tables",
    )
    return topology


def parse_topology(data: Any) -> TopologyConfig:
    if not isinstance(data, dict):
        raise ConfigError("Topology must be a mapping with networks/instances/route_tables")

    topology = TopologyConfig()

    user_raw = data.get("user_config")
    if user_raw is not None:
        topology.user_config = _parse_user_config(user_raw)

    for name, raw in _mapping(data, "networks", "topology").items():
        topology.add_network(_check_name(name, "network"), _parse_network(name, raw))

    for name, raw in _mapping(data, "instances", "topology").items():
        topology.add_instance(_check_name(name, "instance"), _parse_instance(name, raw))

    for name, raw in _mapping(data, "route_tables", "topology").items():
        topology.add_route_table(name, _parse_route_table(name, raw))

    return topology


def _mapping(data: Dict[str, Any], key: str, owner: str) -> Dict[str, Any]:
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' of {owner} must be a mapping")
    return value


def _check_name(name: Any, kind: str) -> str:
    if not isinstance(name, str) or not NAME_RE.match(name):
        raise ConfigError(f"Invalid {kind} name '{name}'")
    return name


def _parse_user_config(raw: Any) -> UserConfig:
    if not isinstance(raw, dict):
        raise ConfigError("'user_config' must be a mapping")
    user_name = raw.get("user_name")
    key_path = raw.get("key_path")
    if not user_name or not key_path:
        raise ConfigError("'user_config' needs user_name and key_path")
    return UserConfig(
        user_name=str(user_name),
        key_path=str(key_path),
        base_directory=str(raw.get("base_directory") or DEFAULT_BASE_DIRECTORY),
        password=raw.get("password"),
    )


def _parse_network(name: str, raw: Any) -> NetworkConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"Network '{name}' must be a mapping")
    subnet = raw.get("subnet")
    managed = raw.get("managed")
    if subnet and managed:
        raise ConfigError(f"Network '{name}' sets both subnet and managed; pick one")
    if subnet:
        return NetworkConfig.unmanaged(str(subnet))
    if managed:
        return NetworkConfig.managed(str(managed))
    raise ConfigError(f"Network '{name}' needs either a subnet or a managed network name")


def _parse_ref(raw: Any, owner: str) -> InstanceInterface:
    if isinstance(raw, str) and "/" in raw:
        instance, interface = raw.split("/", 1)
        return InstanceInterface(instance.strip(), interface.strip())
    if isinstance(raw, dict) and raw.get("instance") and raw.get("interface"):
        return InstanceInterface(str(raw["instance"]), str(raw["interface"]))
    raise ConfigError(f"{owner}: invalid interface reference {raw!r} (use instance/interface)")


def _parse_refs(raw: Any, owner: str) -> List[InstanceInterface]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raw = [raw]
    return [_parse_ref(item, owner) for item in raw]


def _parse_route_map(raw: Any, owner: str) -> Dict[str, List[InstanceInterface]]:
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{owner}: routes must map a destination network to next hops")
    return {str(dest): _parse_refs(hops, f"{owner} route to {dest}") for dest, hops in raw.items()}


def _parse_instance(name: str, raw: Any) -> InstanceConfig:
    if not isinstance(raw, dict):
        raise ConfigError(f"Instance '{name}' must be a mapping")
    image = raw.get("image")
    if not image:
        raise ConfigError(f"Instance '{name}' needs an image")
    try:
        vcpu = int(raw.get("vcpu", 1))
    except (TypeError, ValueError):
        raise ConfigError(f"Instance '{name}': vcpu must be an integer (got {raw.get('vcpu')!r})")
    if vcpu < 1:
        raise ConfigError(f"Instance '{name}': vcpu must be >= 1")

    instance = InstanceConfig(vcpu=vcpu, memory=str(raw.get("memory", "1GB")), image=str(image))

    for iface_name, iface_raw in _mapping(raw, "interfaces", f"instance '{name}'").items():
        _check_name(iface_name, "interface")
        instance.add(iface_name, _parse_interface(name, iface_name, iface_raw))

    routes_raw = raw.get("routes")
    if routes_raw is not None:
        if not isinstance(routes_raw, list):
            raise ConfigError(f"Instance '{name}': routes must be a list")
        routes: List[RouteConfig] = []
        for idx, route_raw in enumerate(routes_raw):
            owner = f"Instance '{name}' route #{idx}"
            if not isinstance(route_raw, dict) or "destination" not in route_raw:
                raise ConfigError(f"{owner}: needs a destination")
            routes.append(
                RouteConfig(
                    destination=_parse_ref(route_raw["destination"], owner),
                    next_hops=_parse_refs(route_raw.get("next_hops"), owner),
                )
            )
        instance.routes = routes
    return instance


def _parse_interface(instance: str, name: str, raw: Any) -> InterfaceConfig:
    owner = f"Interface '{instance}/{name}'"
    if isinstance(raw, str):
        raw = {"network": raw}
    if not isinstance(raw, dict) or not raw.get("network"):
        raise ConfigError(f"{owner} needs a network")
    mtu: Optional[int] = None
    if raw.get("mtu") is not None:
        try:
            mtu = int(raw["mtu"])
        except (TypeError, ValueError):
            raise ConfigError(f"{owner}: mtu must be an integer (got {raw['mtu']!r})")
        if not 68 <= mtu <= 65535:
            raise ConfigError(f"{owner}: mtu must be between 68 and 65535 (got {mtu})")
    return InterfaceConfig(
        network=str(raw["network"]),
        mtu=mtu,
        instance=instance,
        routes=_parse_route_map(raw.get("routes"), owner),
    )


def _parse_route_table(name: str, raw: Any) -> RouteTableConfig:
    if not isinstance(raw, dict) or not raw.get("instance"):
        raise ConfigError(f"Route table '{name}' needs an instance")
    return RouteTableConfig(
        instance=str(raw["instance"]),
        routes=_parse_route_map(raw.get("routes"), f"Route table '{name}'"),
    )


def dump_topology(topology: TopologyConfig) -> Dict[str, Any]:
    """Inverse of :func:`parse_topology`, used for printing."""
    data: Dict[str, Any] = {}
    if topology.user_config is not None:
        user = topology.user_config
        data["user_config"] = {
            "user_name": user.user_name,
            "key_path": user.key_path,
            "base_directory": user.base_directory,
        }
    data["networks"] = {
        name: ({"subnet": net.subnet} if net.subnet else {"managed": net.name})
        for name, net in topology.networks.items()
    }
    instances: Dict[str, Any] = {}
    for name, inst in topology.instances.items():
        entry: Dict[str, Any] = {"vcpu": inst.vcpu, "memory": inst.memory, "image": inst.image}
        interfaces: Dict[str, Any] = {}
        for iface_name, iface in inst.interfaces.items():
            iface_entry: Dict[str, Any] = {"network": iface.network}
            if iface.mtu is not None:
                iface_entry["mtu"] = iface.mtu
            if iface.routes:
                iface_entry["routes"] = {
                    dest: [f"{hop.instance}/{hop.interface}" for hop in hops] for dest, hops in iface.routes.items()
                }
            interfaces[iface_name] = iface_entry
        entry["interfaces"] = interfaces
        if inst.routes is not None:
            entry["routes"] = [
                {
                    "destination": f"{route.destination.instance}/{route.destination.interface}",
                    "next_hops": [f"{hop.instance}/{hop.interface}" for hop in route.next_hops],
                }
                for route in inst.routes
            ]
        instances[name] = entry
    data["instances"] = instances
    if topology.route_tables:
        data["route_tables"] = {
            name: {
                "instance": table.instance,
                "routes": {
                    dest: [f"{hop.instance}/{hop.interface}" for hop in hops] for dest, hops in table.routes.items()
                },
            }
            for name, table in topology.route_tables.items()
        }
    return data


def demo_topology() -> TopologyConfig:
    """Two hosts on two subnets plus the backend's NAT network."""
    topology = TopologyConfig(
        user_config=UserConfig(
            user_name="ubuntu",
            key_path="~/.ssh/id_rsa.pub",
            base_directory=str(DEFAULT_BASE_DIRECTORY),
        )
    )
    topology.add_network("mgmt", NetworkConfig.managed("default"))
    topology.add_network("net1", NetworkConfig.unmanaged("10.0.0.0/24"))
    topology.add_network("net2", NetworkConfig.unmanaged("10.0.1.0/24"))

    host1 = InstanceConfig(vcpu=1, memory="2GB", image="ubuntu")
    host2 = InstanceConfig(vcpu=1, memory="2GB", image="ubuntu")
    host1.add("eth0", InterfaceConfig(network="net1", mtu=1500))
    host2.add("eth0", InterfaceConfig(network="net2", mtu=1500))
    host1.routes = [
        RouteConfig(
            destination=InstanceInterface("host2", "eth0"),
            next_hops=[InstanceInterface("host2", "eth0")],
        )
    ]
    topology.add_instance("host1", host1)
    topology.add_instance("host2", host2)
    return topology


def parse_env() -> ProvisionSettings:
    backend = (get_env("VIRTLAB_BACKEND") or DEFAULT_BACKEND).strip().lower()
    if backend not in SUPPORTED_BACKENDS:
        raise ConfigError(
            f"Unsupported VIRTLAB_BACKEND '{backend}'. Supported: {', '.join(sorted(SUPPORTED_BACKENDS))}"
        )
    link_timeout = parse_float_env("LINK_TIMEOUT", "0")
    return ProvisionSettings(
        backend=backend,
        libvirt_uri=LIBVIRT_URI,
        lxc_bin=LXC_BIN,
        attach_delay=parse_float_env("ATTACH_DELAY", str(DEFAULT_ATTACH_DELAY)),
        poll_interval=parse_float_env("POLL_INTERVAL", str(DEFAULT_POLL_INTERVAL)),
        link_timeout=link_timeout or None,
        max_workers=parse_int_env("MAX_WORKERS", str(DEFAULT_MAX_WORKERS), min_val=1, max_val=64),
        cloud_init=get_env_bool("CLOUD_INIT", True),
    )
