"""Drive a backend to match a resolved runtime model.

Creation runs in a fixed order: networks, then every instance (launched
and wired concurrently, one worker per instance), then a global pass that
copies discovered link identifiers into route next hops. Destruction is
best effort.
"""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Iterator, List, Optional

from virtlab.backend import Backend
from virtlab.cloud_init import build_cloud_init
from virtlab.constants import DEFAULT_MTU
from virtlab.exceptions import (
    BackendOperationFailed,
    LinkDiscoveryTimeout,
    ManagedNetworkError,
    ManagerError,
    NetworkExhausted,
)
from virtlab.models import (
    CloudInitData,
    InstanceInterface,
    InstanceRuntime,
    InstanceState,
    InterfaceRuntime,
    LinkInfo,
    NetworkKind,
    NextHopRuntime,
    ProvisionSettings,
    Runtime,
)
from virtlab.network import NetworkRuntime
from virtlab.utils import log, poll_until


class Provisioner:
    def __init__(self, runtime: Runtime, backend: Backend, settings: Optional[ProvisionSettings] = None) -> None:
        self.runtime = runtime
        self.backend = backend
        self.settings = settings or ProvisionSettings()
        self.cancelled = threading.Event()
        self.created_networks: List[str] = []

    # -- create ------------------------------------------------------------

    def create(self) -> None:
        self.create_networks()

        names = list(self.runtime.instances)
        if names:
            workers = max(1, min(self.settings.max_workers, len(names)))
            first_error: Optional[Exception] = None
            with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="provision") as pool:
                futures = {pool.submit(self.provision_instance, name): name for name in names}
                for future in as_completed(futures):
                    # cancelled below after the first failure
                    if future.cancelled():
                        continue
                    try:
                        future.result()
                    except Exception as exc:
                        if first_error is None:
                            first_error = exc
                            log("ERROR", f"Provisioning {futures[future]} failed: {exc}")
                            self.cancelled.set()
                            for pending in futures:
                                pending.cancel()
                        else:
                            log("DEBUG", f"Provisioning {futures[future]} stopped: {exc}")
            if first_error is not None:
                raise first_error

        self.backfill_next_hops()
        log("SUCCESS", f"Provisioned {len(names)} instances on {self.backend.name}")

    def create_networks(self) -> None:
        for name, network in self.runtime.networks.items():
            if network.kind is NetworkKind.MANAGED:
                log("DEBUG", f"Network {name} is managed by the backend ({network.name}); not created")
                continue
            if self.backend.network_exists(name):
                log("INFO", f"Network {name} already present")
                continue
            self.create_network(name, network)

    def create_network(self, name: str, network: NetworkRuntime) -> None:
        if network.kind is not NetworkKind.UNMANAGED:
            raise ManagedNetworkError(f"Refusing to create managed network '{name}'")
        assert network.subnet is not None
        if network.gateway is None:
            raise NetworkExhausted(str(network.subnet))
        self.backend.create_network(name, network.gateway, network.subnet)
        self.created_networks.append(name)

    def provision_instance(self, name: str) -> None:
        instance = self.runtime.instances[name]
        self._check_cancelled(name, "launch")

        cloud_init: Optional[CloudInitData] = None
        if self.settings.cloud_init:
            try:
                cloud_init = build_cloud_init(name, instance, self.runtime.user_config)
            except ManagerError as exc:
                raise BackendOperationFailed(name, "cloud-init", str(exc)) from exc

        self.backend.launch_instance(
            name,
            instance.vcpu,
            instance.memory,
            instance.image,
            list(instance.interfaces.values()),
            cloud_init,
        )
        self.wait_running(name)
        self.attach_interfaces(name, instance)

    def wait_running(self, name: str) -> None:
        def _running() -> Optional[bool]:
            return True if self.backend.get_instance_state(name) is InstanceState.RUNNING else None

        if poll_until(
            _running,
            timeout=self.settings.link_timeout,
            interval=self.settings.poll_interval,
            cancel=self.cancelled,
        ) is None:
            raise BackendOperationFailed(name, "launch", "instance never reported a running state")

    def attach_interfaces(self, name: str, instance: InstanceRuntime) -> None:
        index = 1
        for iface in instance.interfaces.values():
            if iface.managed is not None:
                continue
            self._check_cancelled(name, "attach")
            mtu = iface.mtu or DEFAULT_MTU
            if self.backend.links_precede_attach:
                self.discover_link(name, iface)
                self.backend.attach_interface(name, iface.name, iface.mac, mtu, iface.ip, index)
            else:
                self.backend.attach_interface(name, iface.name, iface.mac, mtu, iface.ip, index)
                self.discover_link(name, iface)
            index += 1
            time.sleep(self.settings.attach_delay)

    def discover_link(self, name: str, iface: InterfaceRuntime) -> LinkInfo:
        link_name = self.backend.link_name(name, iface.name)

        def _observed() -> Optional[LinkInfo]:
            link = self.backend.find_link_by_name(link_name)
            if link is not None and link.complete:
                return link
            return None

        link = poll_until(
            _observed,
            timeout=self.settings.link_timeout,
            interval=self.settings.poll_interval,
            cancel=self.cancelled,
        )
        if link is None:
            reason = "cancelled" if self.cancelled.is_set() else f"not observed within {self.settings.link_timeout}s"
            raise LinkDiscoveryTimeout(f"{name}/{iface.name}", "link discovery", f"link {link_name} {reason}")
        with iface.lock:
            iface.link = link.mac
        log("DEBUG", f"{name}/{iface.name}: link {link_name} mac={link.mac} mtu={link.mtu}")
        return link

    def backfill_next_hops(self) -> None:
        for name, instance in self.runtime.instances.items():
            with instance.lock:
                for hop in _next_hops(instance):
                    peer = self.runtime.interface(InstanceInterface(hop.instance, hop.interface))
                    if peer is None:
                        continue
                    with peer.lock:
                        hop.link = peer.link
            log("DEBUG", f"Back-filled next hops for {name}")

    def _check_cancelled(self, name: str, operation: str) -> None:
        if self.cancelled.is_set():
            raise BackendOperationFailed(name, operation, "cancelled after an earlier failure")

    # -- destroy -----------------------------------------------------------

    def destroy(self) -> List[BackendOperationFailed]:
        failures: List[BackendOperationFailed] = []
        for name in self.runtime.instances:
            try:
                self.backend.destroy_instance(name)
            except BackendOperationFailed as exc:
                log("WARN", f"Error destroying instance {name}: {exc.message}")
                failures.append(exc)

        for name, network in self.runtime.networks.items():
            if network.kind is NetworkKind.MANAGED:
                continue
            if not self.backend.network_exists(name):
                log("DEBUG", f"Network {name} not present; nothing to destroy")
                continue
            if name not in self.created_networks:
                log("INFO", f"Network {name} was not created by this run and may have pre-existed; destroying it")
            try:
                self.backend.destroy_network(name)
            except BackendOperationFailed as exc:
                log("WARN", f"Error destroying network {name}: {exc.message}")
                failures.append(exc)

        if failures:
            log("WARN", f"Teardown finished with {len(failures)} failures")
        else:
            log("SUCCESS", "Teardown complete")
        return failures


def _next_hops(instance: InstanceRuntime) -> Iterator[NextHopRuntime]:
    for route in instance.routes or []:
        yield from route.next_hops
    for iface in instance.interfaces.values():
        for hops in iface.routes.values():
            yield from hops
    for table in instance.route_tables.values():
        for hops in table.routes.values():
            yield from hops
