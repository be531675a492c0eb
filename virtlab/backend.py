"""Backend interface the provisioner drives.

Every mutating call raises :class:`~virtlab.exceptions.BackendOperationFailed`
when the backend rejects it; a normal return means success.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from ipaddress import IPv4Address, IPv4Network
from typing import Optional, Sequence

from virtlab.models import CloudInitData, InstanceState, InterfaceRuntime, LinkInfo
from virtlab.utils import link_name, read_link


class Backend(ABC):
    """Abstract base class for virtualization backends."""

    # True when host links exist as soon as the instance runs (tap devices
    # declared at launch); False when attach_interface creates them.
    links_precede_attach = False

    @property
    @abstractmethod
    def name(self) -> str:
        """Backend name (e.g., 'lxd', 'libvirt')."""
        ...

    @abstractmethod
    def network_exists(self, name: str) -> bool:
        ...

    @abstractmethod
    def create_network(self, name: str, gateway: IPv4Address, subnet: IPv4Network) -> None:
        ...

    @abstractmethod
    def destroy_network(self, name: str) -> None:
        ...

    @abstractmethod
    def launch_instance(
        self,
        name: str,
        vcpu: int,
        memory: str,
        image: str,
        interfaces: Sequence[InterfaceRuntime] = (),
        cloud_init: Optional[CloudInitData] = None,
    ) -> None:
        """Create and start an instance.

        ``interfaces`` is the instance's full resolved interface list in
        attach order; backends use what they need of it at launch time
        (managed-network NICs, tap declarations).
        """
        ...

    @abstractmethod
    def destroy_instance(self, name: str) -> None:
        ...

    @abstractmethod
    def attach_interface(
        self,
        instance: str,
        interface_name: str,
        mac: str,
        mtu: int,
        ip: Optional[IPv4Address],
        index: int,
    ) -> None:
        ...

    @abstractmethod
    def get_instance_state(self, name: str) -> InstanceState:
        ...

    def link_name(self, instance: str, interface: str) -> str:
        """Name of the host-side link the backend creates for an interface."""
        return link_name(instance, interface)

    def find_link_by_name(self, name: str) -> Optional[LinkInfo]:
        return read_link(name)

    def close(self) -> None:
        """Release backend resources."""
