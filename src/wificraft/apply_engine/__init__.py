"""Apply Engine - reconciles declarative site configuration with vendor APIs.

Workflow:
    site file -> templates -> inventory gate -> assign -> WLANs -> diff -> update -> backup

Usage:
    from wificraft.apply_engine import ApplyOrchestrator, ApplyOptions

    orchestrator = ApplyOrchestrator(settings, cache, clients)
    report = await orchestrator.apply_site("HQ", "ap", ApplyOptions(diff=True))
"""

from .schema import (
    ApplyOptions,
    ApplyContext,
    ApplyReport,
    BatchResult,
    DeviceInventoryStatus,
    DeviceTypeReport,
)
from .comparator import compare, filter_by_managed_keys, filter_status_fields, diff_lines
from .inventory import InventoryChecker, load_local_inventory
from .batch_loader import DeviceBatchLoader
from .tags import build_ap_tag_mapping, merge_ap_tags, generate_wlan_availability_tag
from .updaters import DeviceUpdater, UpdatePlan, UPDATER_HOOKS, create_updater
from .wlan import WLANReconciler
from .orchestrator import ApplyOrchestrator, parse_device_types

__all__ = [
    # Schema
    "ApplyOptions",
    "ApplyContext",
    "ApplyReport",
    "BatchResult",
    "DeviceInventoryStatus",
    "DeviceTypeReport",
    # Comparison
    "compare",
    "filter_by_managed_keys",
    "filter_status_fields",
    "diff_lines",
    # Inventory
    "InventoryChecker",
    "load_local_inventory",
    "DeviceBatchLoader",
    # Tags
    "build_ap_tag_mapping",
    "merge_ap_tags",
    "generate_wlan_availability_tag",
    # Phases
    "DeviceUpdater",
    "UpdatePlan",
    "UPDATER_HOOKS",
    "create_updater",
    "WLANReconciler",
    "ApplyOrchestrator",
    "parse_device_types",
]
