"""Dual-inventory safety gate.

A device may only be mutated if it is present in BOTH the vendor API
inventory (as cached) and the operator-curated local allowlist file:

```yaml
inventory:
  ap:
    - aa:bb:cc:dd:ee:01
  switch: []
  gateway: []
```
"""
import logging
from pathlib import Path
from typing import Optional

import yaml

from ..errors import ConfigurationError
from ..utils.logging_config import timed
from ..utils.macaddr import normalize_or_empty
from ..vendors.base import CacheAccessor, DeviceType, InventoryItem

logger = logging.getLogger(__name__)


def load_local_inventory(path: Path, device_type: DeviceType) -> set[str]:
    """Read the allowlist MACs for one device type.

    A missing file yields an empty allowlist (every device fails the gate).

    Raises:
        ConfigurationError: If the file exists but cannot be parsed
    """
    path = Path(path)
    if not path.exists():
        logger.warning(f"Local inventory file not found: {path} - no {device_type} devices are eligible")
        return set()

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"cannot load inventory file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"inventory file {path} must contain a mapping")
    if "inventory" not in data and isinstance(data.get("config"), dict):
        data = data["config"]
    section = (data.get("inventory") or {}).get(str(device_type)) or []
    if isinstance(section, dict):
        section = list(section)

    macs = set()
    for entry in section:
        mac = normalize_or_empty(entry)
        if mac:
            macs.add(mac)
        else:
            logger.warning(f"Ignoring invalid MAC '{entry}' in {path} ({device_type})")
    return macs


class InventoryChecker:
    """O(1) inventory membership checks for one device type.

    Built once per device type per apply run and shared by every phase.
    """

    def __init__(
        self,
        device_type: DeviceType,
        api_items: dict[str, InventoryItem],
        local_macs: set[str],
        cache: Optional[CacheAccessor] = None,
    ):
        self.device_type = DeviceType.parse(device_type)
        self._api_items = api_items
        self._local = set(local_macs)
        self._cache = cache
        self._site_names: dict[str, str] = {}

    @classmethod
    @timed("build_inventory")
    def build(
        cls,
        cache: CacheAccessor,
        device_type: DeviceType,
        inventory_path: Path,
        api_label: Optional[str] = None,
    ) -> "InventoryChecker":
        """Load the API inventory from the cache and the local allowlist from disk."""
        device_type = DeviceType.parse(device_type)
        api_items: dict[str, InventoryItem] = {}
        for item in cache.get_inventory(str(device_type), api_label):
            mac = normalize_or_empty(item.mac)
            if mac:
                api_items[mac] = item
        local = load_local_inventory(inventory_path, device_type)
        checker = cls(device_type, api_items, local, cache)
        logger.info(
            f"Inventory for {device_type}: {checker.api_count} in API inventory, "
            f"{checker.local_count} in local inventory"
        )
        return checker

    @property
    def api_count(self) -> int:
        return len(self._api_items)

    @property
    def local_count(self) -> int:
        return len(self._local)

    def is_in_api_inventory(self, mac: str) -> bool:
        key = normalize_or_empty(mac)
        return bool(key) and key in self._api_items

    def is_in_local_inventory(self, mac: str) -> bool:
        key = normalize_or_empty(mac)
        return bool(key) and key in self._local

    def is_in_inventory(self, mac: str) -> bool:
        """The write gate: present in both inventories."""
        return self.is_in_api_inventory(mac) and self.is_in_local_inventory(mac)

    def filter_by_inventory(self, macs: list[str]) -> list[str]:
        """Keep only MACs passing the write gate, preserving order."""
        kept = [mac for mac in macs if self.is_in_inventory(mac)]
        skipped = len(macs) - len(kept)
        if skipped:
            logger.info(f"Filtered out {skipped} {self.device_type} device(s) not in inventory")
        return kept

    def get_inventory_item(self, mac: str) -> Optional[InventoryItem]:
        return self._api_items.get(normalize_or_empty(mac))

    def get_site_assignment(self, mac: str) -> tuple[str, str, bool]:
        """Current site of a device as ``(site_id, site_name, found)``.

        ``found`` is False for unknown MACs and for unassigned devices.
        """
        item = self.get_inventory_item(mac)
        if item is None or not item.site_id:
            return "", "", False
        return item.site_id, self._site_name(item.site_id), True

    def _site_name(self, site_id: str) -> str:
        if site_id not in self._site_names:
            site = self._cache.get_site_by_id(site_id) if self._cache else None
            self._site_names[site_id] = site.name if site else ""
        return self._site_names[site_id]

    def log_inventory_status(self, mac: str) -> str:
        """Log and return a one-line description of a device's membership."""
        in_api = self.is_in_api_inventory(mac)
        in_local = self.is_in_local_inventory(mac)
        if in_api and in_local:
            message = f"{self.device_type} {mac}: in API and local inventory"
            logger.debug(message)
        elif in_api:
            message = f"{self.device_type} {mac}: in API inventory but not in local inventory file"
            logger.warning(message)
        elif in_local:
            message = f"{self.device_type} {mac}: in local inventory file but not found in API inventory"
            logger.warning(message)
        else:
            message = f"{self.device_type} {mac}: not in API inventory or local inventory file"
            logger.warning(message)
        return message
