"""MAC address normalization.

Accepted input forms:
    aa:bb:cc:dd:ee:ff   colon
    aa-bb-cc-dd-ee-ff   hyphen
    aabb.ccdd.eeff      dot
    aabbccddeeff        bare

The canonical form used for every lookup key is lowercase without separators.
"""
import re

_MAC_PATTERNS = (
    re.compile(r"^([0-9A-Fa-f]{2}:){5}[0-9A-Fa-f]{2}$"),
    re.compile(r"^([0-9A-Fa-f]{2}-){5}[0-9A-Fa-f]{2}$"),
    re.compile(r"^([0-9A-Fa-f]{4}\.){2}[0-9A-Fa-f]{4}$"),
    re.compile(r"^[0-9A-Fa-f]{12}$"),
)

_SEPARATORS = re.compile(r"[:\-.\s]")


def is_valid(mac: object) -> bool:
    """Return True if ``mac`` is a string in one of the accepted forms."""
    if not isinstance(mac, str):
        return False
    mac = mac.strip()
    return any(p.match(mac) for p in _MAC_PATTERNS)


def normalize(mac: str) -> str:
    """Normalize a MAC address to lowercase with no separators.

    Raises:
        ValueError: If ``mac`` is not a valid MAC address
    """
    if not is_valid(mac):
        raise ValueError(f"Invalid MAC address: {mac!r}")
    return _SEPARATORS.sub("", mac.strip()).lower()


def normalize_or_empty(mac: object) -> str:
    """Normalize a MAC address, returning an empty string if it is invalid."""
    try:
        return normalize(mac)  # type: ignore[arg-type]
    except ValueError:
        return ""

