"""Shared test fixtures: topologies, deterministic MACs and an in-memory backend."""

from __future__ import annotations

import itertools
import threading
from typing import Dict, List, Optional, Sequence, Set, Tuple

import pytest

from virtlab.backend import Backend
from virtlab.exceptions import BackendOperationFailed
from virtlab.models import (
    InstanceConfig,
    InstanceInterface,
    InstanceState,
    InterfaceConfig,
    LinkInfo,
    NetworkConfig,
    ProvisionSettings,
    RouteConfig,
    TopologyConfig,
)


class FakeBackend(Backend):
    """Records every call; links appear on launch or on attach depending on the mode."""

    def __init__(self, links_precede_attach: bool = False) -> None:
        self.links_precede_attach = links_precede_attach
        self.calls: List[Tuple] = []
        self.networks: Set[str] = set()
        self.states: Dict[str, InstanceState] = {}
        self.links: Dict[str, LinkInfo] = {}
        self.failures: Dict[Tuple[str, str], str] = {}
        self._lock = threading.Lock()
        self._macs = itertools.count(1)

    @property
    def name(self) -> str:
        return "fake"

    def _record(self, operation: str, entity: str, *args) -> None:
        with self._lock:
            self.calls.append((operation, entity) + args)
        message = self.failures.get((operation, entity))
        if message is not None:
            raise BackendOperationFailed(entity, operation, message)

    def _add_link(self, instance: str, interface: str, mtu: Optional[int]) -> None:
        name = self.link_name(instance, interface)
        with self._lock:
            self.links[name] = LinkInfo(name=name, mac=f"fe:00:00:00:00:{next(self._macs):02x}", mtu=mtu or 1500)

    def operations(self, operation: str) -> List[Tuple]:
        return [call for call in self.calls if call[0] == operation]

    def network_exists(self, name: str) -> bool:
        return name in self.networks

    def create_network(self, name, gateway, subnet) -> None:
        self._record("create_network", name, gateway, subnet)
        self.networks.add(name)

    def destroy_network(self, name) -> None:
        self._record("destroy_network", name)
        self.networks.discard(name)

    def launch_instance(self, name, vcpu, memory, image, interfaces: Sequence = (), cloud_init=None) -> None:
        self._record("launch_instance", name, vcpu, memory, image)
        self.states[name] = InstanceState.RUNNING
        if self.links_precede_attach:
            for iface in interfaces:
                if iface.managed is None:
                    self._add_link(name, iface.name, iface.mtu)

    def destroy_instance(self, name) -> None:
        self._record("destroy_instance", name)
        self.states.pop(name, None)

    def attach_interface(self, instance, interface_name, mac, mtu, ip, index) -> None:
        self._record("attach_interface", instance, interface_name, mac, mtu, ip, index)
        if not self.links_precede_attach:
            self._add_link(instance, interface_name, mtu)

    def get_instance_state(self, name) -> InstanceState:
        return self.states.get(name, InstanceState.UNKNOWN)

    def find_link_by_name(self, name) -> Optional[LinkInfo]:
        with self._lock:
            return self.links.get(name)


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def fast_settings() -> ProvisionSettings:
    return ProvisionSettings(attach_delay=0, poll_interval=0, link_timeout=1, cloud_init=False)


@pytest.fixture
def mac_factory():
    counter = itertools.count(1)

    def _next() -> str:
        return f"02:00:00:00:00:{next(counter):02x}"

    return _next


@pytest.fixture
def two_host_topology() -> TopologyConfig:
    """Two hosts, each with one interface on net1 and one on net2, plus a NAT interface on host1."""
    topology = TopologyConfig()
    topology.add_network("mgmt", NetworkConfig.managed("default"))
    topology.add_network("net1", NetworkConfig.unmanaged("10.0.0.0/24"))
    topology.add_network("net2", NetworkConfig.unmanaged("10.0.1.0/24"))

    host1 = InstanceConfig(vcpu=1, memory="2GB", image="ubuntu")
    host1.add("eth0", InterfaceConfig(network="net1", mtu=1500))
    host1.add("eth1", InterfaceConfig(network="net2", mtu=1500))
    host1.add("mgmt0", InterfaceConfig(network="mgmt"))
    host1.routes = [
        RouteConfig(
            destination=InstanceInterface("host2", "eth1"),
            next_hops=[InstanceInterface("host2", "eth1")],
        )
    ]

    host2 = InstanceConfig(vcpu=2, memory="1GB", image="ubuntu")
    host2.add("eth0", InterfaceConfig(network="net1", mtu=9000))
    host2.add("eth1", InterfaceConfig(network="net2"))

    topology.add_instance("host1", host1)
    topology.add_instance("host2", host2)
    return topology
