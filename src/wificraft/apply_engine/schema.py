"""Data types shared by the apply engine phases."""
import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from ..errors import ApplyCancelled, DeviceUpdateError
from ..vendors.base import CacheAccessor, DeviceType, VendorClient

if TYPE_CHECKING:
    from ..config.settings import ApiSettings, WificraftSettings
    from ..config.site import SiteConfiguration
    from ..config.templates import TemplateStore
    from ..utils.audit_log import ChangeTracker
    from .batch_loader import DeviceBatchLoader
    from .inventory import InventoryChecker


@dataclass
class ApplyOptions:
    """Mode flags for one apply invocation."""
    diff: bool = False           # preview only, never mutate
    force: bool = False          # ignore unchanged-file skip and inventory exclusion
    refresh_cache: bool = False  # refresh the vendor cache before computing sets
    show_diff: bool = True       # collect per-device field diffs in diff mode


@dataclass
class DeviceInventoryStatus:
    """Inventory membership of one configured device."""
    mac: str
    in_cache: bool
    in_inventory: bool
    current_site_id: str = ""
    current_site_name: str = ""


@dataclass
class BatchResult:
    """Outcome of a best-effort batch of per-device mutations."""
    succeeded: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.succeeded) + len(self.failed)

    @property
    def ok(self) -> bool:
        return not self.failed

    def raise_for_failures(self, site_name: str = "") -> None:
        """Raise one DeviceUpdateError naming every failed device."""
        if self.failed:
            raise DeviceUpdateError(sorted(self.failed), self.total, site_name)


@dataclass
class ApplyContext:
    """Per-invocation state threaded through every phase.

    Built by the orchestrator for each device type of a run; the profile
    name map is handed from one to the next. Nothing in here outlives the
    run, so repeated or concurrent invocations cannot see each other's tag
    mappings, templates or loaders.
    """
    site: "SiteConfiguration"
    site_id: str
    api_label: str
    vendor: str
    api: "ApiSettings"
    client: VendorClient
    cache: CacheAccessor
    settings: "WificraftSettings"
    templates: "TemplateStore"
    options: ApplyOptions = field(default_factory=ApplyOptions)
    managed_keys: dict[DeviceType, Optional[list[str]]] = field(default_factory=dict)
    ap_tag_mapping: dict[str, list[str]] = field(default_factory=dict)
    inventory: dict[DeviceType, "InventoryChecker"] = field(default_factory=dict)
    loaders: dict[DeviceType, "DeviceBatchLoader"] = field(default_factory=dict)
    profile_name_to_id: Optional[dict[str, str]] = None
    tracker: Optional["ChangeTracker"] = None
    cancel_event: Optional[asyncio.Event] = None

    @property
    def site_name(self) -> str:
        return self.site.name

    @property
    def diff_mode(self) -> bool:
        return self.options.diff

    def managed_keys_for(self, device_type: DeviceType) -> Optional[list[str]]:
        return self.managed_keys.get(DeviceType.parse(device_type))

    def checkpoint(self, phase: str) -> None:
        """Stop at a phase boundary if cancellation was requested."""
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ApplyCancelled(phase)


@dataclass
class DeviceTypeReport:
    """Planned or applied changes for one device type."""
    device_type: str
    unassign: list[str] = field(default_factory=list)
    assign: list[str] = field(default_factory=list)
    update: list[str] = field(default_factory=list)
    failed: list[tuple[str, str]] = field(default_factory=list)
    skipped_ineligible: int = 0

    @property
    def total_changes(self) -> int:
        return len(self.unassign) + len(self.assign) + len(self.update)

    def to_dict(self) -> dict[str, Any]:
        return {
            "device_type": self.device_type,
            "unassign": sorted(self.unassign),
            "assign": sorted(self.assign),
            "update": sorted(self.update),
            "failed": [{"mac": m, "reason": r} for m, r in sorted(self.failed)],
            "skipped_ineligible": self.skipped_ineligible,
        }


@dataclass
class ApplyReport:
    """Result of one apply invocation.

    Library code never prints; user-facing lines accumulate in ``messages``
    and ``warnings`` and the caller renders them.
    """
    site_name: str
    diff_mode: bool = False
    success: bool = False
    error: Optional[str] = None
    device_types: dict[str, DeviceTypeReport] = field(default_factory=dict)
    wlans_created: list[str] = field(default_factory=list)
    wlans_updated: list[str] = field(default_factory=list)
    wlans_failed: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    messages: list[str] = field(default_factory=list)
    diffs: dict[str, list[str]] = field(default_factory=dict)
    backup_path: Optional[Path] = None
    state_backups: list[Path] = field(default_factory=list)

    def for_type(self, device_type: DeviceType) -> DeviceTypeReport:
        key = str(device_type)
        if key not in self.device_types:
            self.device_types[key] = DeviceTypeReport(device_type=key)
        return self.device_types[key]

    @property
    def wlan_changes(self) -> int:
        return len(self.wlans_created) + len(self.wlans_updated)

    @property
    def total_changes(self) -> int:
        return self.wlan_changes + sum(r.total_changes for r in self.device_types.values())

    @property
    def no_changes(self) -> bool:
        return self.total_changes == 0

    def warn(self, message: str) -> None:
        self.warnings.append(message)

    def say(self, message: str) -> None:
        self.messages.append(message)

    def summary(self) -> list[str]:
        """Sorted, mode-aware summary lines."""
        verb = "Would" if self.diff_mode else "Did"
        lines = []
        for key in sorted(self.device_types):
            r = self.device_types[key]
            lines.append(
                f"{key}: {verb.lower()} unassign {len(r.unassign)}, assign {len(r.assign)}, "
                f"update {len(r.update)}"
                + (f", failed {len(r.failed)}" if r.failed else "")
                + (f", skipped {r.skipped_ineligible} not in inventory" if r.skipped_ineligible else "")
            )
        if self.wlans_created or self.wlans_updated or self.wlans_failed:
            lines.append(
                f"wlan: {verb.lower()} create {len(self.wlans_created)}, update {len(self.wlans_updated)}"
                + (f", failed {len(self.wlans_failed)}" if self.wlans_failed else "")
            )
        if self.no_changes:
            lines.append(f"No changes needed for site {self.site_name}")
        return lines

    def to_dict(self) -> dict[str, Any]:
        return {
            "site": self.site_name,
            "diff_mode": self.diff_mode,
            "success": self.success,
            "error": self.error,
            "device_types": {k: v.to_dict() for k, v in sorted(self.device_types.items())},
            "wlans_created": sorted(self.wlans_created),
            "wlans_updated": sorted(self.wlans_updated),
            "wlans_failed": sorted(self.wlans_failed),
            "warnings": list(self.warnings),
            "messages": list(self.messages),
            "diffs": {mac: lines for mac, lines in sorted(self.diffs.items())},
            "backup_path": str(self.backup_path) if self.backup_path else None,
            "state_backups": [str(p) for p in self.state_backups],
        }
