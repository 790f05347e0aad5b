"""Contracts for the cache and vendor-API collaborators.

The apply engine never talks HTTP itself. It reads device, site and
inventory state from a local cache (``CacheAccessor``) and issues
mutations through one ``VendorClient`` per API label.
"""
import copy
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class DeviceType(str, Enum):
    """Device types the engine reconciles."""
    AP = "ap"
    SWITCH = "switch"
    GATEWAY = "gateway"

    def __str__(self) -> str:
        return self.value

    @property
    def plural(self) -> str:
        return {"ap": "aps", "switch": "switches", "gateway": "gateways"}[self.value]

    @classmethod
    def parse(cls, value: str) -> "DeviceType":
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown device type: {value}") from None


@dataclass
class SiteRecord:
    """A site as known to the cache or API."""
    id: str
    name: str


@dataclass
class InventoryItem:
    """One organization inventory entry."""
    mac: str
    device_type: str
    site_id: str = ""
    id: str = ""
    name: str = ""
    serial: str = ""
    model: str = ""


@dataclass
class DeviceRecord:
    """Cached snapshot of an assigned device and its configuration."""
    mac: str
    device_type: str
    id: Optional[str] = None
    name: Optional[str] = None
    site_id: Optional[str] = None
    config: dict[str, Any] = field(default_factory=dict)

    def to_config_map(self) -> dict[str, Any]:
        """Reconstruct the device's configuration document.

        Identity fields are folded in so callers see one flat document; the
        comparator's exclusion set keeps them out of divergence checks.
        """
        data = copy.deepcopy(self.config)
        if self.name is not None:
            data.setdefault("name", self.name)
        if self.id is not None:
            data.setdefault("id", self.id)
        data.setdefault("mac", self.mac)
        return data


@dataclass
class WLAN:
    """Vendor-neutral WLAN representation.

    ``config`` carries vendor-specific fields such as ``apply_to``/``ap_ids``
    (ID-list scoping) or ``availabilityTags``/``availableOnAllAps``
    (tag scoping).
    """
    ssid: str
    id: Optional[str] = None
    site_id: str = ""
    enabled: bool = True
    hidden: bool = False
    band: str = ""
    bands: list[str] = field(default_factory=list)
    vlan_id: Optional[int] = None
    auth_type: str = ""
    pairwise: list[str] = field(default_factory=list)
    psk: str = ""
    encryption_mode: str = ""
    config: dict[str, Any] = field(default_factory=dict)

    def to_dict(self, mask_secrets: bool = True) -> dict[str, Any]:
        data = {
            "ssid": self.ssid,
            "id": self.id,
            "site_id": self.site_id,
            "enabled": self.enabled,
            "hidden": self.hidden,
            "band": self.band,
            "bands": list(self.bands),
            "vlan_id": self.vlan_id,
            "auth_type": self.auth_type,
            "pairwise": list(self.pairwise),
            "psk": ("********" if self.psk else "") if mask_secrets else self.psk,
            "encryption_mode": self.encryption_mode,
        }
        data.update(copy.deepcopy(self.config))
        return data


class CacheAccessor(ABC):
    """Read-only view of the locally cached vendor state."""

    @abstractmethod
    def get_inventory(self, device_type: str, api_label: Optional[str] = None) -> list[InventoryItem]:
        """Every inventory item of a type (assigned or not)."""

    @abstractmethod
    def get_site_by_id(self, site_id: str) -> Optional[SiteRecord]:
        """Look up a site by ID."""

    @abstractmethod
    def get_site_by_name(self, name: str) -> Optional[SiteRecord]:
        """Look up a site by name."""

    @abstractmethod
    def get_devices_by_site(self, site_id: str, device_type: str) -> list[DeviceRecord]:
        """Devices of a type currently assigned to a site, with their configs."""

    @abstractmethod
    def get_device_by_mac(self, mac: str) -> Optional[DeviceRecord]:
        """Look up one device by normalized MAC."""


class WLANService(ABC):
    """WLAN CRUD for vendors that support it."""

    @abstractmethod
    async def list_by_site(self, site_id: str) -> list[WLAN]:
        """WLANs currently defined for a site."""

    @abstractmethod
    async def create(self, wlan: WLAN) -> WLAN:
        """Create a WLAN."""

    @abstractmethod
    async def update(self, wlan_id: str, wlan: WLAN) -> WLAN:
        """Replace a WLAN's settings."""


class VendorClient(ABC):
    """Mutating access to one vendor controller API (one API label)."""

    def __init__(self, label: str, vendor: str, org_id: str = ""):
        self.label = label
        self.vendor = vendor
        self.org_id = org_id

    @property
    def wlans(self) -> Optional[WLANService]:
        """WLAN service, or None if the vendor cannot manage WLANs."""
        return None

    @abstractmethod
    async def get_site_by_identifier(self, identifier: str) -> Optional[SiteRecord]:
        """Resolve a site name or ID through the live API."""

    @abstractmethod
    async def get_device_profiles(self) -> list[dict[str, Any]]:
        """Device profiles as dicts with at least ``id`` and ``name``."""

    @abstractmethod
    async def update_device(self, site_id: str, device_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        """Write configuration fields to one device."""

    @abstractmethod
    async def assign_devices(self, site_id: str, macs: list[str]) -> None:
        """Assign inventory devices to a site."""

    @abstractmethod
    async def unassign_devices(self, macs: list[str]) -> None:
        """Release devices from their site back to the org inventory."""

    async def refresh_cache(self, site_id: Optional[str] = None) -> None:
        """Refresh the local cache from the API. Default: nothing to refresh."""
        return None
