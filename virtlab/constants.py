"""Global constants and path configuration for virtlab."""

from __future__ import annotations

import os
import re
from pathlib import Path

LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
LXC_BIN = os.environ.get("LXC_BIN", "lxc")
GENISOIMAGE_BIN = os.environ.get("GENISOIMAGE_BIN", "genisoimage")
SYS_CLASS_NET = Path("/sys/class/net")
IFNAME_MAX = 15

DEFAULT_BASE_DIRECTORY = Path("/var/lib/libvirt/images")
DEFAULT_BACKEND = "lxd"
SUPPORTED_BACKENDS = {"lxd", "libvirt"}

DEFAULT_MTU = 1500
# Networks are created with a /24 mask regardless of the declared prefix.
NETWORK_CREATE_PREFIX = 24

# Seconds between an interface attach and the next backend call.
DEFAULT_ATTACH_DELAY = 2.0
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_MAX_WORKERS = 4

TRUTHY = {"1", "true", "yes", "on"}
MEMORY_SIZE_RE = re.compile(r"^\s*(\d+)\s*([KMGT]i?B?)?\s*$", re.IGNORECASE)
NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

_LOG_VERBOSE = os.environ.get("LOG_VERBOSE", "").lower() in {"1", "true", "yes", "on"}
