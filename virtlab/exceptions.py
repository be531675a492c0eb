"""Custom exceptions for virtlab."""

from __future__ import annotations

from typing import Optional


class ManagerError(RuntimeError):
    """Raised on unrecoverable configuration or runtime errors."""


class ConfigError(ManagerError):
    """Raised when a topology file cannot be turned into a config graph."""


class UnknownReferenceError(ManagerError):
    """A declared entity names a peer that was never declared."""

    def __init__(self, kind: str, name: str, referrer: str) -> None:
        self.kind = kind
        self.name = name
        self.referrer = referrer
        super().__init__(f"{referrer} references undeclared {kind} '{name}'")


class NetworkExhausted(ManagerError):
    """No free host address left in an unmanaged subnet."""

    def __init__(self, subnet: str) -> None:
        self.subnet = subnet
        super().__init__(f"No free address left in {subnet}")


class ManagedNetworkError(ManagerError):
    """An operation only valid for unmanaged networks was applied to a managed one."""


class BackendOperationFailed(ManagerError):
    """A backend call for a single entity failed."""

    def __init__(self, entity: str, operation: str, message: Optional[str] = None) -> None:
        self.entity = entity
        self.operation = operation
        self.message = (message or "").strip() or "unknown error"
        super().__init__(f"{operation} failed for {entity}: {self.message}")


class LinkDiscoveryTimeout(BackendOperationFailed):
    """The backend never exposed the link for an interface in time."""
