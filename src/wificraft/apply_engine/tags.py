"""Availability-tag scoping for vendors without per-AP WLAN assignment.

Each WLAN restricted to a subset of APs gets a synthetic tag
``wifimgr-wlan-<label>``; the WLAN is made available only on APs carrying
that tag, and the device-update phase writes the tags onto the APs.
"""
from typing import Any, Optional

from ..utils.macaddr import normalize_or_empty

WLAN_TAG_PREFIX = "wifimgr-wlan-"


def generate_wlan_availability_tag(label: str) -> str:
    return f"{WLAN_TAG_PREFIX}{label}"


def is_managed_tag(tag: str) -> bool:
    return isinstance(tag, str) and tag.startswith(WLAN_TAG_PREFIX)


def to_string_list(value: Any) -> list[str]:
    """Accept a list of strings or a single string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, (list, tuple, set)):
        return [str(v) for v in value if v is not None]
    return []


def build_ap_tag_mapping(wlan_to_devices: dict[str, list[str]]) -> dict[str, list[str]]:
    """Invert label -> AP MACs into AP MAC -> sorted required tags."""
    mapping: dict[str, set[str]] = {}
    for label, macs in wlan_to_devices.items():
        tag = generate_wlan_availability_tag(label)
        for mac in macs:
            key = normalize_or_empty(mac)
            if key:
                mapping.setdefault(key, set()).add(tag)
    return {mac: sorted(tags) for mac, tags in sorted(mapping.items())}


def merge_ap_tags(
    current_tags: Any,
    user_tags: Optional[Any],
    required_tags: list[str],
) -> list[str]:
    """Compute an AP's final tag list.

    Start from the user's explicit tag list if one is configured, else the
    AP's live tags; drop every reserved-prefix tag; add the required
    prefixed tags; dedupe and sort. Applying it again with the same required
    set yields the same result.
    """
    base = to_string_list(user_tags) if user_tags is not None else to_string_list(current_tags)
    kept = {t for t in base if t and not is_managed_tag(t)}
    kept.update(t for t in required_tags if t)
    return sorted(kept)


def merge_wlan_tags_for_ap(
    mac: str,
    desired: dict[str, Any],
    current: dict[str, Any],
    tag_mapping: dict[str, list[str]],
) -> dict[str, Any]:
    """Return ``desired`` with ``tags`` set to the merged tag list.

    APs that have no tags and need none are left without a ``tags`` key.
    Stale reserved-prefix tags still force a write so they get pruned.
    """
    required = tag_mapping.get(normalize_or_empty(mac), [])
    user_tags = desired.get("tags") if "tags" in desired else None
    merged = merge_ap_tags(current.get("tags"), user_tags, required)
    result = dict(desired)
    stale = any(is_managed_tag(t) for t in to_string_list(current.get("tags")))
    if merged or user_tags is not None or stale:
        result["tags"] = merged
    return result
