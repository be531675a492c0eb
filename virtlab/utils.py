"""Utility functions for virtlab."""

from __future__ import annotations

import hashlib
import os
import random
import subprocess
import threading
import time
from pathlib import Path
from typing import Callable, List, Optional, TypeVar

try:
    import bcrypt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("bcrypt is required but not installed") from exc

from virtlab.constants import (
    _LOG_VERBOSE,
    IFNAME_MAX,
    MEMORY_SIZE_RE,
    SYS_CLASS_NET,
    TRUTHY,
)
from virtlab.exceptions import ManagerError
from virtlab.models import LinkInfo

T = TypeVar("T")


def log(level: str, message: str) -> None:
    """Lightweight structured logging compatible with existing colour expectation."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def parse_int_env(name: str, default: str, min_val: int = 1, max_val: Optional[int] = None) -> int:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = int(raw)
    except ValueError:
        raise ManagerError(f"{name} must be an integer (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    if max_val is not None and value > max_val:
        raise ManagerError(f"{name} must be <= {max_val} (got {value})")
    return value


def parse_float_env(name: str, default: str, min_val: float = 0.0) -> float:
    raw = get_env(name, default)
    assert raw is not None
    try:
        value = float(raw)
    except ValueError:
        raise ManagerError(f"{name} must be a number (got '{raw}')")
    if value < min_val:
        raise ManagerError(f"{name} must be >= {min_val} (got {value})")
    return value


def parse_memory_mib(raw: str) -> int:
    """Convert a memory size such as '2GB', '512MiB' or '2048' into MiB."""
    match = MEMORY_SIZE_RE.match(str(raw))
    if not match:
        raise ManagerError(f"Invalid memory size '{raw}'. Use a number with optional suffix: K, M, G, T (e.g. '2GB')")
    value = int(match.group(1))
    unit = (match.group(2) or "M")[0].upper()
    factors = {"K": 1 / 1024, "M": 1, "G": 1024, "T": 1024 * 1024}
    mib = int(value * factors[unit])
    if mib < 1:
        raise ManagerError(f"Memory size '{raw}' is smaller than 1 MiB")
    return mib


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def kvm_available() -> bool:
    """Return True if /dev/kvm exists and can be opened."""
    kvm_path = Path("/dev/kvm")
    if not kvm_path.exists():
        return False
    try:
        fd = os.open(kvm_path, os.O_RDONLY)
    except OSError:
        return False
    else:
        os.close(fd)
        return True


def random_mac() -> str:
    """Generate a random locally-administered unicast MAC address."""
    octets = [random.randint(0x00, 0xFF) for _ in range(6)]
    octets[0] = octets[0] | 0x02  # ensure locally administered bit
    octets[0] = octets[0] & 0xFE  # clear multicast bit
    return ":".join(f"{octet:02x}" for octet in octets)


def hash_password(password: str) -> str:
    """Generate a bcrypt hash for cloud-init."""
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt())
    return hashed.decode("utf-8")


def link_name(instance: str, interface: str) -> str:
    """Host-side link name for an instance interface, within IFNAMSIZ."""
    name = f"{instance}_{interface}"
    if len(name) <= IFNAME_MAX:
        return name
    digest = hashlib.sha256(name.encode("utf-8")).hexdigest()
    return f"vl{digest[:IFNAME_MAX - 2]}"


def read_link(name: str, root: Path = SYS_CLASS_NET) -> Optional[LinkInfo]:
    """Read MAC and MTU of a host network link from sysfs.

    Returns None when the link does not exist yet. Fields the kernel has not
    populated are left as None.
    """
    link_dir = root / name
    if not link_dir.exists():
        return None
    mac: Optional[str] = None
    mtu: Optional[int] = None
    try:
        mac = (link_dir / "address").read_text().strip().lower() or None
    except OSError:
        pass
    try:
        mtu = int((link_dir / "mtu").read_text().strip())
    except (OSError, ValueError):
        pass
    return LinkInfo(name=name, mac=mac, mtu=mtu)


def poll_until(
    check: Callable[[], Optional[T]],
    timeout: Optional[float] = None,
    interval: float = 1.0,
    cancel: Optional[threading.Event] = None,
) -> Optional[T]:
    """Call ``check`` until it returns a value.

    ``timeout`` of None polls forever. Returns None on timeout or when
    ``cancel`` is set.
    """
    deadline = time.time() + timeout if timeout is not None else None
    while True:
        result = check()
        if result is not None:
            return result
        if cancel is not None and cancel.is_set():
            return None
        if deadline is not None and time.time() >= deadline:
            return None
        time.sleep(interval)


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result
