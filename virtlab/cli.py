"""CLI entry points for virtlab."""

from __future__ import annotations

import argparse
from pathlib import Path
from typing import Any, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from virtlab.backend import Backend
from virtlab.config import demo_topology, dump_topology, load_topology, parse_env
from virtlab.constants import SUPPORTED_BACKENDS
from virtlab.exceptions import ManagerError
from virtlab.lxd import LxdBackend
from virtlab.models import ProvisionSettings, Runtime
from virtlab.provisioner import Provisioner
from virtlab.resolver import build_runtime
from virtlab.utils import log


def print_yaml(title: str, data: Any) -> None:
    print(f"# {title}", flush=True)
    print(yaml.safe_dump(data, sort_keys=False, default_flow_style=False), flush=True)


def make_backend(settings: ProvisionSettings, runtime: Runtime) -> Backend:
    if settings.backend == "libvirt":
        from virtlab.virt import LibvirtBackend

        base_directory = Path(runtime.user_config.base_directory) if runtime.user_config else None
        return LibvirtBackend(uri=settings.libvirt_uri, base_directory=base_directory)
    if settings.backend == "lxd":
        return LxdBackend(lxc_bin=settings.lxc_bin)
    raise ManagerError(f"Unsupported backend: {settings.backend}")


def run_create(config_path: Path, settings: ProvisionSettings, show_runtime: bool = False) -> int:
    runtime = build_runtime(load_topology(config_path))
    if show_runtime:
        print_yaml("runtime", runtime.to_dict())
    backend = make_backend(settings, runtime)
    try:
        Provisioner(runtime, backend, settings).create()
    finally:
        backend.close()
    return 0


def run_destroy(config_path: Path, settings: ProvisionSettings) -> int:
    runtime = build_runtime(load_topology(config_path))
    backend = make_backend(settings, runtime)
    try:
        failures = Provisioner(runtime, backend, settings).destroy()
    finally:
        backend.close()
    return 1 if failures else 0


def run_simulate(config_path: Optional[Path]) -> int:
    topology = load_topology(config_path) if config_path else demo_topology()
    print_yaml("config", dump_topology(topology))
    runtime = build_runtime(topology)
    print_yaml("runtime", runtime.to_dict())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="virtlab", description="Provision virtual network topologies")
    sub = parser.add_subparsers(dest="command", required=True)

    for name, help_text in (
        ("create", "Resolve a topology and provision it on the backend"),
        ("destroy", "Tear down the instances and networks of a topology"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument("-c", "--config", type=Path, required=True, help="Topology YAML file")
        cmd.add_argument(
            "--backend",
            choices=sorted(SUPPORTED_BACKENDS),
            default=None,
            help="Virtualization backend (default: $VIRTLAB_BACKEND or lxd)",
        )
        if name == "create":
            cmd.add_argument("--show-runtime", action="store_true", help="Print the resolved runtime model first")

    simulate = sub.add_parser("simulate", help="Resolve a topology and print it without touching a backend")
    simulate.add_argument("-c", "--config", type=Path, default=None, help="Topology YAML file (default: built-in demo)")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        if args.command == "simulate":
            return run_simulate(args.config)

        settings = parse_env()
        if args.backend:
            settings.backend = args.backend
        if args.command == "create":
            return run_create(args.config, settings, show_runtime=args.show_runtime)
        return run_destroy(args.config, settings)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
