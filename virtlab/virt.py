"""libvirt backend: instances as domains, unmanaged interfaces as routed tap devices."""

from __future__ import annotations

import shutil
import subprocess
from ipaddress import IPv4Address, IPv4Network
from pathlib import Path
from typing import Optional, Sequence
from xml.etree.ElementTree import Element, SubElement, fromstring, tostring

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from virtlab.backend import Backend
from virtlab.cloud_init import build_seed_iso
from virtlab.constants import DEFAULT_BASE_DIRECTORY, LIBVIRT_URI
from virtlab.exceptions import BackendOperationFailed, ManagerError
from virtlab.models import CloudInitData, InstanceState, InterfaceRuntime
from virtlab.network import render_interface_xml, render_network_xml
from virtlab.utils import ensure_directory, kvm_available, log, parse_memory_mib, run


def _libvirt_message(exc: Exception) -> str:
    return exc.get_error_message() if hasattr(exc, "get_error_message") else str(exc)


class LibvirtBackend(Backend):
    """Runs instances as libvirt domains.

    Interfaces on unmanaged networks are declared as ethernet devices so
    libvirt creates a host tap per interface when the domain starts; the
    attach step then routes the interface address to that tap.
    """

    links_precede_attach = True

    def __init__(self, uri: str = LIBVIRT_URI, base_directory: Optional[Path] = None) -> None:
        self.uri = uri
        self.base_directory = Path(base_directory or DEFAULT_BASE_DIRECTORY)
        self.conn: Optional[libvirt.virConnect] = None
        self._kvm_available = kvm_available()

    @property
    def name(self) -> str:
        return "libvirt"

    def connect(self) -> libvirt.virConnect:
        if self.conn is None:
            try:
                self.conn = libvirt.open(self.uri)
            except libvirt.libvirtError as exc:
                raise ManagerError(f"Failed to open libvirt connection to {self.uri}: {_libvirt_message(exc)}") from exc
            if self.conn is None:
                raise ManagerError(f"Failed to open libvirt connection to {self.uri}")
            log("INFO", f"Connected to hypervisor at {self.uri}")
        return self.conn

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def disk_path(self, name: str) -> Path:
        return self.base_directory / f"{name}.img"

    def seed_path(self, name: str) -> Path:
        return self.base_directory / f"{name}-cidata.iso"

    def network_exists(self, name: str) -> bool:
        try:
            self.connect().networkLookupByName(name)
            return True
        except libvirt.libvirtError:
            return False

    def create_network(self, name: str, gateway: IPv4Address, subnet: IPv4Network) -> None:
        log("INFO", f"Creating network {name} ({subnet}, gateway {gateway})")
        try:
            network = self.connect().networkDefineXML(render_network_xml(name, gateway))
            network.create()
        except libvirt.libvirtError as exc:
            raise BackendOperationFailed(name, "network create", _libvirt_message(exc)) from exc

    def destroy_network(self, name: str) -> None:
        log("INFO", f"Destroying network {name}")
        try:
            network = self.connect().networkLookupByName(name)
            if network.isActive():
                network.destroy()
            network.undefine()
        except libvirt.libvirtError as exc:
            raise BackendOperationFailed(name, "network delete", _libvirt_message(exc)) from exc

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
        ensure_directory(self.base_directory)
        source = Path(image).expanduser()
        if not source.is_absolute():
            source = self.base_directory / source
        try:
            shutil.copyfile(source, self.disk_path(name))
        except OSError as exc:
            raise BackendOperationFailed(name, "launch", f"cannot copy image {source}: {exc}") from exc

        seed: Optional[Path] = None
        if cloud_init is not None:
            try:
                seed = build_seed_iso(cloud_init, self.seed_path(name))
            except ManagerError as exc:
                raise BackendOperationFailed(name, "cloud-init", str(exc)) from exc

        try:
            xml = self.render_domain_xml(name, vcpu, memory, interfaces, seed)
        except ManagerError as exc:
            raise BackendOperationFailed(name, "launch", str(exc)) from exc
        try:
            domain = self.connect().defineXML(xml)
            if domain is None:
                raise BackendOperationFailed(name, "launch", "failed to define domain")
            domain.create()
        except libvirt.libvirtError as exc:
            raise BackendOperationFailed(name, "launch", _libvirt_message(exc)) from exc
        log("SUCCESS", f"Domain {name} started")

    def render_domain_xml(
        self,
        name: str,
        vcpu: int,
        memory: str,
        interfaces: Sequence[InterfaceRuntime] = (),
        seed: Optional[Path] = None,
    ) -> str:
        memory_mib = parse_memory_mib(memory)
        domain = Element("domain", type="kvm" if self._kvm_available else "qemu")
        SubElement(domain, "name").text = name
        SubElement(domain, "memory", unit="MiB").text = str(memory_mib)
        SubElement(domain, "currentMemory", unit="MiB").text = str(memory_mib)
        SubElement(domain, "vcpu", placement="static").text = str(vcpu)

        os_el = SubElement(domain, "os")
        SubElement(os_el, "type", arch="x86_64", machine="q35").text = "hvm"
        SubElement(os_el, "boot", dev="hd")
        features = SubElement(domain, "features")
        SubElement(features, "acpi")
        SubElement(features, "apic")
        if self._kvm_available:
            SubElement(domain, "cpu", mode="host-passthrough")

        devices = SubElement(domain, "devices")
        disk = SubElement(devices, "disk", type="file", device="disk")
        SubElement(disk, "driver", name="qemu", type="qcow2")
        SubElement(disk, "source", file=str(self.disk_path(name)))
        SubElement(disk, "target", dev="vda", bus="virtio")

        if seed is not None:
            cdrom = SubElement(devices, "disk", type="file", device="cdrom")
            SubElement(cdrom, "driver", name="qemu", type="raw")
            SubElement(cdrom, "source", file=str(seed))
            SubElement(cdrom, "target", dev="sda", bus="sata")
            SubElement(cdrom, "readonly")

        for iface in interfaces:
            if iface.managed:
                xml = render_interface_xml(iface.mac, managed=iface.managed)
            else:
                xml = render_interface_xml(iface.mac, mtu=iface.mtu, target=self.link_name(name, iface.name))
            devices.append(fromstring(xml))

        SubElement(devices, "console", type="pty")
        serial = SubElement(devices, "serial", type="file")
        SubElement(serial, "source", path=str(self.base_directory / f"{name}.log"))
        SubElement(serial, "target", port="0")
        SubElement(devices, "memballoon", model="virtio")
        rng = SubElement(devices, "rng", model="virtio")
        SubElement(rng, "backend", model="random").text = "/dev/urandom"

        from xml.dom.minidom import parseString

        raw = tostring(domain, encoding="unicode")
        return parseString(raw).toprettyxml(indent="  ").split("\n", 1)[1].rstrip()

    def destroy_instance(self, name: str) -> None:
        log("INFO", f"Destroying instance {name}")
        try:
            domain = self.connect().lookupByName(name)
            if domain.isActive():
                domain.destroy()
            domain.undefine()
        except libvirt.libvirtError as exc:
            raise BackendOperationFailed(name, "destroy", _libvirt_message(exc)) from exc
        for path in (self.disk_path(name), self.seed_path(name)):
            try:
                path.unlink(missing_ok=True)
            except OSError:
                log("WARN", f"Failed to remove {path}")

    def attach_interface(
        self,
        instance: str,
        interface_name: str,
        mac: str,
        mtu: int,
        ip: Optional[IPv4Address],
        index: int,
    ) -> None:
        tap = self.link_name(instance, interface_name)
        log("INFO", f"Attaching interface {interface_name} ({mac}) to instance {instance} via {tap}")
        commands = [["ip", "link", "set", "dev", tap, "mtu", str(mtu), "up"]]
        if ip is not None:
            commands.append(["ip", "route", "replace", f"{ip}/32", "dev", tap])
        for cmd in commands:
            try:
                run(cmd, capture_output=True)
            except subprocess.CalledProcessError as exc:
                raise BackendOperationFailed(f"{instance}/{interface_name}", "attach", exc.stderr) from exc
            except OSError as exc:
                raise BackendOperationFailed(f"{instance}/{interface_name}", "attach", str(exc)) from exc
        log("DEBUG", f"{instance}/{interface_name} routed as interface #{index}")

    def get_instance_state(self, name: str) -> InstanceState:
        try:
            domain = self.connect().lookupByName(name)
            active = domain.isActive()
        except libvirt.libvirtError:
            return InstanceState.UNKNOWN
        return InstanceState.RUNNING if active else InstanceState.STOPPED
