"""virtlab package."""

__all__ = [
    "backend",
    "cli",
    "cloud_init",
    "config",
    "constants",
    "exceptions",
    "lxd",
    "models",
    "network",
    "provisioner",
    "resolver",
    "utils",
    "virt",
]
