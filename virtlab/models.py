"""Data models for virtlab.

Declared entities (``*Config``) mirror the topology file and are not
modified once loaded. Resolved entities (``*Runtime``) are produced by
:mod:`virtlab.resolver` and only gain backend-discovered fields during
provisioning.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum
from ipaddress import IPv4Address, IPv4Interface, IPv4Network
from typing import TYPE_CHECKING, Dict, List, NamedTuple, Optional

from virtlab.exceptions import ManagerError

if TYPE_CHECKING:
    from virtlab.network import NetworkRuntime


class NetworkKind(str, Enum):
    """Who owns a network's address space."""
    MANAGED = "managed"
    UNMANAGED = "unmanaged"


class InstanceState(str, Enum):
    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


class InstanceInterface(NamedTuple):
    instance: str
    interface: str


@dataclass
class LinkInfo:
    """A host network link as seen by the backend."""
    name: str
    mac: Optional[str] = None
    mtu: Optional[int] = None

    @property
    def complete(self) -> bool:
        return bool(self.mac) and self.mtu is not None


# ---------------------------------------------------------------------------
# Declared configuration
# ---------------------------------------------------------------------------


@dataclass
class NetworkConfig:
    kind: NetworkKind
    subnet: Optional[str] = None
    name: Optional[str] = None  # backend network name, managed only

    def __post_init__(self):
        if self.kind is NetworkKind.UNMANAGED:
            if not self.subnet or self.name:
                raise ManagerError("Unmanaged networks take a subnet and no managed name")
        elif self.kind is NetworkKind.MANAGED:
            if not self.name or self.subnet:
                raise ManagerError("Managed networks take a backend name and no subnet")

    @classmethod
    def unmanaged(cls, subnet: str) -> "NetworkConfig":
        return cls(kind=NetworkKind.UNMANAGED, subnet=subnet)

    @classmethod
    def managed(cls, name: str) -> "NetworkConfig":
        return cls(kind=NetworkKind.MANAGED, name=name)


@dataclass
class InterfaceConfig:
    network: str
    mtu: Optional[int] = None
    instance: Optional[str] = None  # owning instance, set when added to the topology
    routes: Dict[str, List[InstanceInterface]] = field(default_factory=dict)


@dataclass
class RouteConfig:
    destination: InstanceInterface
    next_hops: List[InstanceInterface] = field(default_factory=list)


@dataclass
class InstanceConfig:
    vcpu: int
    memory: str
    image: str
    interfaces: Dict[str, InterfaceConfig] = field(default_factory=dict)
    routes: Optional[List[RouteConfig]] = None

    def add(self, name: str, interface: InterfaceConfig) -> None:
        self.interfaces[name] = interface


@dataclass
class RouteTableConfig:
    instance: str
    routes: Dict[str, List[InstanceInterface]] = field(default_factory=dict)


@dataclass
class UserConfig:
    user_name: str
    key_path: str
    base_directory: str
    password: Optional[str] = None


@dataclass
class TopologyConfig:
    user_config: Optional[UserConfig] = None
    networks: Dict[str, NetworkConfig] = field(default_factory=dict)
    instances: Dict[str, InstanceConfig] = field(default_factory=dict)
    route_tables: Dict[str, RouteTableConfig] = field(default_factory=dict)

    def add_network(self, name: str, network: NetworkConfig) -> None:
        self.networks[name] = network

    def add_instance(self, name: str, instance: InstanceConfig) -> None:
        for interface in instance.interfaces.values():
            interface.instance = name
        self.instances[name] = instance

    def add_route_table(self, name: str, table: RouteTableConfig) -> None:
        self.route_tables[name] = table


# ---------------------------------------------------------------------------
# Resolved runtime model
# ---------------------------------------------------------------------------


@dataclass
class NextHopRuntime:
    instance: str
    interface: str
    ip: IPv4Address
    mac: str
    link: Optional[str] = None  # back-filled once the peer link is discovered

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {
            "instance": self.instance,
            "interface": self.interface,
            "ip": str(self.ip),
            "mac": self.mac,
        }
        if self.link:
            data["link"] = self.link
        return data


def _routes_to_dict(routes: Dict[IPv4Network, List[NextHopRuntime]]) -> Dict[str, List[Dict[str, object]]]:
    return {str(subnet): [hop.to_dict() for hop in hops] for subnet, hops in routes.items()}


@dataclass
class RouteRuntime:
    destination: IPv4Address
    subnet: IPv4Network
    next_hops: List[NextHopRuntime] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "destination": str(self.destination),
            "subnet": str(self.subnet),
            "next_hops": [hop.to_dict() for hop in self.next_hops],
        }


@dataclass
class RouteTableRuntime:
    routes: Dict[IPv4Network, List[NextHopRuntime]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, object]:
        return {"routes": _routes_to_dict(self.routes)}


@dataclass
class InterfaceRuntime:
    name: str
    instance: str
    network: str
    mac: str
    mtu: Optional[int] = None
    address: Optional[IPv4Interface] = None
    managed: Optional[str] = None
    routes: Dict[IPv4Network, List[NextHopRuntime]] = field(default_factory=dict)
    link: Optional[str] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def __post_init__(self):
        if (self.address is None) == (self.managed is None):
            raise ManagerError(
                f"Interface {self.instance}/{self.name} needs exactly one of an address or a managed network"
            )

    @property
    def ip(self) -> Optional[IPv4Address]:
        return self.address.ip if self.address is not None else None

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {"network": self.network, "mac": self.mac, "mtu": self.mtu}
        if self.address is not None:
            data["address"] = str(self.address)
        if self.managed is not None:
            data["managed"] = self.managed
        if self.routes:
            data["routes"] = _routes_to_dict(self.routes)
        if self.link:
            data["link"] = self.link
        return data


@dataclass
class InstanceRuntime:
    vcpu: int
    memory: str
    image: str
    interfaces: Dict[str, InterfaceRuntime] = field(default_factory=dict)
    routes: Optional[List[RouteRuntime]] = None
    route_tables: Dict[str, RouteTableRuntime] = field(default_factory=dict)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def routing_table(self) -> Dict[IPv4Network, List[IPv4Address]]:
        """Merge every route declared for this instance into subnet -> next-hop IPs."""
        merged: Dict[IPv4Network, List[IPv4Address]] = {}

        def _add(subnet: IPv4Network, hops: List[NextHopRuntime]) -> None:
            gateways = merged.setdefault(subnet, [])
            for hop in hops:
                if hop.ip not in gateways:
                    gateways.append(hop.ip)

        for route in self.routes or []:
            _add(route.subnet, route.next_hops)
        for interface in self.interfaces.values():
            for subnet, hops in interface.routes.items():
                _add(subnet, hops)
        for table in self.route_tables.values():
            for subnet, hops in table.routes.items():
                _add(subnet, hops)
        return merged

    def to_dict(self) -> Dict[str, object]:
        data: Dict[str, object] = {
            "vcpu": self.vcpu,
            "memory": self.memory,
            "image": self.image,
            "interfaces": {name: iface.to_dict() for name, iface in self.interfaces.items()},
        }
        if self.routes is not None:
            data["routes"] = [route.to_dict() for route in self.routes]
        if self.route_tables:
            data["route_tables"] = {name: table.to_dict() for name, table in self.route_tables.items()}
        return data


@dataclass
class Runtime:
    networks: Dict[str, "NetworkRuntime"] = field(default_factory=dict)
    instances: Dict[str, InstanceRuntime] = field(default_factory=dict)
    user_config: Optional[UserConfig] = None

    def interface(self, ref: InstanceInterface) -> Optional[InterfaceRuntime]:
        instance = self.instances.get(ref.instance)
        if instance is None:
            return None
        return instance.interfaces.get(ref.interface)

    def to_dict(self) -> Dict[str, object]:
        return {
            "networks": {name: network.to_dict() for name, network in self.networks.items()},
            "instances": {name: instance.to_dict() for name, instance in self.instances.items()},
        }


@dataclass
class CloudInitData:
    user_data: str
    meta_data: str
    network_config: str


@dataclass
class ProvisionSettings:
    backend: str = "lxd"
    libvirt_uri: str = "qemu:///system"
    lxc_bin: str = "lxc"
    attach_delay: float = 2.0
    poll_interval: float = 1.0
    link_timeout: Optional[float] = None  # None polls forever
    max_workers: int = 4
    cloud_init: bool = True
