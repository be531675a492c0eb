"""Network runtime state, address allocation and libvirt network XML for virtlab."""

from __future__ import annotations

from dataclasses import dataclass, field
from ipaddress import IPv4Address, IPv4Network
from typing import Dict, Optional, Tuple
from xml.etree.ElementTree import Element, SubElement, tostring

from virtlab.constants import NETWORK_CREATE_PREFIX
from virtlab.exceptions import ManagedNetworkError, ManagerError, NetworkExhausted
from virtlab.models import NetworkConfig, NetworkKind


@dataclass
class NetworkRuntime:
    kind: NetworkKind
    name: Optional[str] = None
    subnet: Optional[IPv4Network] = None
    gateway: Optional[IPv4Address] = None
    # int(address) -> address; the gateway is reserved up front
    assigned: Dict[int, IPv4Address] = field(default_factory=dict)

    @classmethod
    def from_config(cls, config: NetworkConfig) -> "NetworkRuntime":
        if config.kind is NetworkKind.MANAGED:
            return cls(kind=NetworkKind.MANAGED, name=config.name)
        if config.kind is NetworkKind.UNMANAGED:
            try:
                subnet = IPv4Network(str(config.subnet), strict=False)
            except ValueError as exc:
                raise ManagerError(f"Invalid subnet '{config.subnet}': {exc}") from exc
            first = int(subnet.network_address) + 1
            # a /32 has no host for a gateway; allocation reports it
            if first > _last_host(subnet):
                return cls(kind=NetworkKind.UNMANAGED, subnet=subnet)
            gateway = IPv4Address(first)
            return cls(
                kind=NetworkKind.UNMANAGED,
                subnet=subnet,
                gateway=gateway,
                assigned={first: gateway},
            )
        raise ManagerError(f"Unsupported network kind: {config.kind}")

    def assign_address(self) -> Tuple[IPv4Address, int]:
        """Hand out the lowest free host address and the subnet prefix length."""
        if self.kind is NetworkKind.MANAGED:
            raise ManagedNetworkError(f"Managed network '{self.name}' does not allocate addresses")
        assert self.subnet is not None
        candidate = int(self.subnet.network_address) + 1
        last = _last_host(self.subnet)
        while candidate <= last:
            if candidate not in self.assigned:
                address = IPv4Address(candidate)
                self.assigned[candidate] = address
                return address, self.subnet.prefixlen
            candidate += 1
        raise NetworkExhausted(str(self.subnet))

    def to_dict(self) -> Dict[str, object]:
        if self.kind is NetworkKind.MANAGED:
            return {"managed": self.name}
        return {
            "subnet": str(self.subnet),
            "gateway": str(self.gateway) if self.gateway is not None else None,
            "assigned": [str(address) for _, address in sorted(self.assigned.items())],
        }


def _last_host(subnet: IPv4Network) -> int:
    # /31 and /32 have no broadcast address to keep free
    if subnet.prefixlen >= 31:
        return int(subnet.broadcast_address)
    return int(subnet.broadcast_address) - 1


def _element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    from xml.dom.minidom import parseString

    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def render_network_xml(name: str, gateway: IPv4Address) -> str:
    """Render an isolated libvirt network whose host side owns the gateway."""
    network = Element("network")
    SubElement(network, "name").text = name
    SubElement(network, "ip", address=str(gateway), prefix=str(NETWORK_CREATE_PREFIX))
    return _element_to_str(network)


def render_interface_xml(
    mac: str,
    mtu: Optional[int] = None,
    target: Optional[str] = None,
    managed: Optional[str] = None,
    model: str = "virtio",
) -> str:
    """Render a libvirt interface definition.

    Interfaces on a managed network attach to the named libvirt network;
    all others become ethernet (tap) devices named ``target``.
    """
    if managed:
        iface = Element("interface", type="network")
        SubElement(iface, "mac", address=mac.lower())
        SubElement(iface, "source", network=managed)
        SubElement(iface, "model", type=model)
        return _element_to_str(iface)

    if not target:
        raise ManagerError("Ethernet interfaces need a tap target name")
    iface = Element("interface", type="ethernet")
    SubElement(iface, "mac", address=mac.lower())
    SubElement(iface, "target", dev=target)
    if mtu is not None:
        SubElement(iface, "mtu", size=str(mtu))
    SubElement(iface, "model", type=model)
    return _element_to_str(iface)
