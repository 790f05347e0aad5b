"""Exceptions raised by the apply engine."""
from pathlib import Path
from typing import Optional, Union


class ApplyError(Exception):
    """Base class for apply failures."""


class ConfigurationError(ApplyError):
    """Invalid or missing desired-state configuration; aborts before any mutation."""


class VendorCapabilityError(ConfigurationError):
    """The vendor behind an API label cannot perform the requested phase."""


class InventorySafetyError(ApplyError):
    """A mutating call targeted a device outside the dual inventory."""

    def __init__(self, mac: str, operation: str = "update"):
        self.mac = mac
        self.operation = operation
        super().__init__(
            f"device {mac} is not in inventory - refusing to {operation} for safety"
        )


class DeviceNotFoundError(ApplyError, KeyError):
    """A MAC is not present in the batch loader for this site."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "device not found"


class DeviceUpdateError(ApplyError):
    """One or more device updates failed after all devices were attempted."""

    def __init__(self, failed: list[tuple[str, str]], total: int, site_name: str = ""):
        self.failed = failed
        self.total = total
        self.site_name = site_name
        names = ", ".join(f"{mac} ({reason})" for mac, reason in failed)
        message = f"configuration failed for {len(failed)} out of {total} devices: {names}"
        if site_name:
            message += f". To restore previous config, use: wificraft rollback {site_name}"
        super().__init__(message)


class BackupError(ApplyError):
    """A backup could not be found, read, or written."""

    def __init__(self, message: str, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path is not None else None
        super().__init__(message)


class ApplyCancelled(ApplyError):
    """The run was cancelled; raised at the next phase boundary."""

    def __init__(self, phase: str):
        self.phase = phase
        super().__init__(f"apply cancelled before phase: {phase}")
