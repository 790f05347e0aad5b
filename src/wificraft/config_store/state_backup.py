"""Pre-apply snapshots of live device configuration.

Before the update phase writes anything, the cached config of every device
about to be updated is saved as ``<site>-api-state-<type>.json.<serial>``
in the backup directory, rotated like configuration backups.
"""
import json
import logging
import re
from pathlib import Path
from typing import Any

from ..utils.macaddr import normalize_or_empty
from ..vendors.base import CacheAccessor, DeviceType
from .backups import STATE_BACKUP_MARKER, BackupManager, utc_timestamp

logger = logging.getLogger(__name__)

STATE_BACKUP_VERSION = 1


def state_backup_name(site_name: str, device_type: DeviceType) -> str:
    safe = re.sub(r"[^A-Za-z0-9._-]+", "_", site_name).strip("_") or "site"
    return f"{safe}{STATE_BACKUP_MARKER}{DeviceType.parse(device_type)}.json"


def build_state_document(
    cache: CacheAccessor,
    site_name: str,
    site_id: str,
    api_label: str,
    device_type: DeviceType,
    macs: list[str],
) -> dict[str, Any]:
    """Snapshot document for the given devices; cache misses are skipped."""
    device_type = DeviceType.parse(device_type)
    states: dict[str, Any] = {}
    for mac in sorted(macs):
        key = normalize_or_empty(mac)
        device = cache.get_device_by_mac(key) if key else None
        if device is None:
            logger.debug(f"No cached state for {device_type} {mac}, not included in state backup")
            continue
        states[key] = device.to_config_map()

    return {
        "version": STATE_BACKUP_VERSION,
        "timestamp": utc_timestamp(),
        "site_name": site_name,
        "site_id": site_id,
        "api_label": api_label,
        "device_type": str(device_type),
        "device_count": len(states),
        "operation": "pre_apply",
        "device_states": {device_type.plural: states},
    }


def save_state_backup(
    manager: BackupManager,
    cache: CacheAccessor,
    site_name: str,
    site_id: str,
    api_label: str,
    device_type: DeviceType,
    macs: list[str],
) -> Path:
    """Write a rotated pre-apply snapshot.

    Raises:
        BackupError: If the write fails
    """
    document = build_state_document(cache, site_name, site_id, api_label, device_type, macs)
    content = json.dumps(document, indent=2, sort_keys=True).encode("utf-8")
    path = manager.write_backup(state_backup_name(site_name, device_type), content)
    logger.info(f"Saved pre-apply state of {document['device_count']} {device_type} device(s) to {path.name}")
    return path
