"""Resolution of a declared topology into the runtime model.

Resolution runs in two passes. The first builds every network, allocates
addresses and generates MACs for every interface. The second resolves
routes, which reference interfaces of other instances and therefore need
the whole first pass to be complete. A failure in the first pass aborts the
build; dangling route references are dropped.
"""

from __future__ import annotations

from ipaddress import IPv4Interface, IPv4Network
from typing import Callable, Dict, List, Optional

from virtlab.exceptions import UnknownReferenceError
from virtlab.models import (
    InstanceInterface,
    InstanceRuntime,
    InterfaceRuntime,
    NetworkKind,
    NextHopRuntime,
    RouteRuntime,
    RouteTableRuntime,
    Runtime,
    TopologyConfig,
)
from virtlab.network import NetworkRuntime
from virtlab.utils import log, random_mac


def build_runtime(config: TopologyConfig, mac_factory: Callable[[], str] = random_mac) -> Runtime:
    runtime = Runtime(user_config=config.user_config)
    resolve_interfaces(config, runtime, mac_factory)
    resolve_routes(config, runtime)
    return runtime


def resolve_interfaces(config: TopologyConfig, runtime: Runtime, mac_factory: Callable[[], str]) -> None:
    for name, network in config.networks.items():
        runtime.networks[name] = NetworkRuntime.from_config(network)

    for instance_name, instance in config.instances.items():
        resolved = InstanceRuntime(vcpu=instance.vcpu, memory=instance.memory, image=instance.image)
        for iface_name, iface in instance.interfaces.items():
            network = runtime.networks.get(iface.network)
            if network is None:
                raise UnknownReferenceError("network", iface.network, f"interface {instance_name}/{iface_name}")
            address: Optional[IPv4Interface] = None
            managed: Optional[str] = None
            if network.kind is NetworkKind.UNMANAGED:
                ip, prefix = network.assign_address()
                address = IPv4Interface(f"{ip}/{prefix}")
            elif network.kind is NetworkKind.MANAGED:
                managed = network.name
            resolved.interfaces[iface_name] = InterfaceRuntime(
                name=iface_name,
                instance=instance_name,
                network=iface.network,
                mac=mac_factory(),
                mtu=iface.mtu,
                address=address,
                managed=managed,
            )
            log("DEBUG", f"Resolved {instance_name}/{iface_name}: {address or managed}")
        runtime.instances[instance_name] = resolved


def resolve_routes(config: TopologyConfig, runtime: Runtime) -> None:
    for instance_name, instance in config.instances.items():
        resolved = runtime.instances[instance_name]

        for iface_name, iface in instance.interfaces.items():
            routes = _resolve_route_map(iface.routes, runtime, f"{instance_name}/{iface_name}")
            resolved.interfaces[iface_name].routes = routes

        if instance.routes is not None:
            resolved_routes: List[RouteRuntime] = []
            for route in instance.routes:
                destination = runtime.interface(route.destination)
                if destination is None or destination.address is None:
                    log("DEBUG", f"{instance_name}: skipping route to {_ref(route.destination)} (no routable address)")
                    continue
                next_hops = _resolve_next_hops(route.next_hops, runtime, instance_name)
                if not next_hops:
                    continue
                resolved_routes.append(
                    RouteRuntime(
                        destination=destination.address.ip,
                        subnet=destination.address.network,
                        next_hops=next_hops,
                    )
                )
            resolved.routes = resolved_routes

    for table_name, table in config.route_tables.items():
        owner = runtime.instances.get(table.instance)
        if owner is None:
            log("DEBUG", f"Route table {table_name}: instance '{table.instance}' not declared; skipped")
            continue
        routes = _resolve_route_map(table.routes, runtime, f"route table {table_name}")
        if routes:
            owner.route_tables[table_name] = RouteTableRuntime(routes=routes)


def _resolve_route_map(
    declared: Dict[str, List[InstanceInterface]],
    runtime: Runtime,
    owner: str,
) -> Dict[IPv4Network, List[NextHopRuntime]]:
    routes: Dict[IPv4Network, List[NextHopRuntime]] = {}
    for destination, hops in declared.items():
        network = runtime.networks.get(destination)
        if network is None or network.kind is not NetworkKind.UNMANAGED:
            log("DEBUG", f"{owner}: destination '{destination}' has no subnet to route to; skipped")
            continue
        next_hops = _resolve_next_hops(hops, runtime, owner)
        if next_hops:
            routes.setdefault(network.subnet, []).extend(next_hops)
    return routes


def _resolve_next_hops(refs: List[InstanceInterface], runtime: Runtime, owner: str) -> List[NextHopRuntime]:
    next_hops: List[NextHopRuntime] = []
    for ref in refs:
        interface = runtime.interface(ref)
        if interface is None or interface.address is None:
            log("DEBUG", f"{owner}: dropping next hop {_ref(ref)} (undeclared or unaddressed)")
            continue
        next_hops.append(
            NextHopRuntime(
                instance=ref.instance,
                interface=ref.interface,
                ip=interface.address.ip,
                mac=interface.mac,
            )
        )
    return next_hops


def _ref(ref: InstanceInterface) -> str:
    return f"{ref.instance}/{ref.interface}"
