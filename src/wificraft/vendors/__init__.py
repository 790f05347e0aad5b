"""Collaborator contracts for cached vendor state and vendor API clients."""
from .base import (
    DeviceType,
    SiteRecord,
    InventoryItem,
    DeviceRecord,
    WLAN,
    CacheAccessor,
    WLANService,
    VendorClient,
)

__all__ = [
    "DeviceType",
    "SiteRecord",
    "InventoryItem",
    "DeviceRecord",
    "WLAN",
    "CacheAccessor",
    "WLANService",
    "VendorClient",
]
