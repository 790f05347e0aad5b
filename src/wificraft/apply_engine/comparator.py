"""Managed-key comparison between live and desired device configuration.

Only fields inside the managed-key scope are compared or written. With an
empty managed-key list every field is compared, minus a fixed exclusion set
of identity, timestamp, connection and status fields and ``*_name`` alias
fields, which are translated to IDs elsewhere.
"""
import copy
import logging
from typing import Any, Iterator, Optional

from ..utils import keypath

logger = logging.getLogger(__name__)

# Never compared; owned by the controller or by the assign phase
STATUS_FIELDS = frozenset({
    "id", "created_time", "modified_time", "connected", "adopted", "hostname",
    "jsi", "last_seen", "ip", "status", "version", "mac", "serial", "model",
    "type", "site_id", "org_id",
})

# Hidden from diffs and exports
DISPLAY_STATUS_FIELDS = frozenset({
    "id", "created_time", "modified_time", "site_id", "org_id", "status",
    "last_seen", "uptime", "version", "serial", "model", "type", "magic",
    "connected", "mac",
})

TRANSLATED_FIELDS = {
    "deviceprofile_name": "deviceprofile_id",
    "site_name": "site_id",
}

SECRET_KEYS = frozenset({"psk", "passphrase", "secret", "password"})
MASK = "********"


def is_alias_field(key: str) -> bool:
    """``*_name`` fields other than ``name`` refer to objects by name."""
    return key != "name" and key.endswith("_name")


def is_excluded(key: str) -> bool:
    return key in STATUS_FIELDS or is_alias_field(key)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def values_equal(a: Any, b: Any) -> bool:
    """Structural equality with string-equivalent scalars (``17 == 17.0 == "17"``)."""
    if isinstance(a, dict) or isinstance(b, dict):
        if not (isinstance(a, dict) and isinstance(b, dict)):
            return False
        if set(a) != set(b):
            return False
        return all(values_equal(a[k], b[k]) for k in a)
    if isinstance(a, (list, tuple)) or isinstance(b, (list, tuple)):
        if not (isinstance(a, (list, tuple)) and isinstance(b, (list, tuple))):
            return False
        return len(a) == len(b) and all(values_equal(x, y) for x, y in zip(a, b))
    return _scalar_text(a) == _scalar_text(b)


def iter_divergences(
    current: dict[str, Any],
    desired: dict[str, Any],
    managed_keys: Optional[list[str]] = None,
) -> Iterator[str]:
    """Yield the dotted path of every divergent field, in sorted order."""
    yield from _walk(current or {}, desired or {}, list(managed_keys or []), ())


def _walk(current: dict, desired: dict, keys: list[str], prefix: tuple) -> Iterator[str]:
    for key in sorted(desired, key=str):
        path = prefix + (key,)
        if not prefix and is_excluded(key):
            continue
        if keys and not keypath.is_within_managed_scope(path, keys):
            continue

        dval = desired[key]
        managed = not keys or keypath.is_key_managed(path, keys)

        if not managed:
            # Ancestor of a managed key: descend only
            if isinstance(dval, dict):
                cval = current.get(key)
                yield from _walk(cval if isinstance(cval, dict) else {}, dval, keys, path)
            continue

        if key not in current:
            yield ".".join(map(str, path))
            continue

        cval = current[key]
        if isinstance(dval, dict) and isinstance(cval, dict):
            yield from _walk(cval, dval, keys, path)
        elif not values_equal(cval, dval):
            yield ".".join(map(str, path))

    for key in sorted(current, key=str):
        if key in desired:
            continue
        path = prefix + (key,)
        if not prefix and is_excluded(key):
            continue
        cval = current[key]
        if keys:
            if keypath.is_key_managed(path, keys):
                if not _is_empty(cval):
                    yield ".".join(map(str, path))
            elif isinstance(cval, dict) and keypath.is_within_managed_scope(path, keys):
                yield from _walk(cval, {}, keys, path)
        elif not _is_empty(cval):
            yield ".".join(map(str, path))


def compare(
    current: dict[str, Any],
    desired: dict[str, Any],
    managed_keys: Optional[list[str]] = None,
) -> bool:
    """Return True if ``current`` diverges from ``desired`` within the managed scope."""
    for path in iter_divergences(current, desired, managed_keys):
        logger.debug(f"Divergent field: {path}")
        return True
    return False


def filter_by_managed_keys(config: dict[str, Any], managed_keys: Optional[list[str]]) -> dict[str, Any]:
    """Project a config onto the managed paths, preserving nesting.

    With no managed keys the whole config is owned and a deep copy is
    returned. The projection is idempotent.
    """
    if not managed_keys:
        return copy.deepcopy(config or {})
    return keypath.filter_by_paths(config or {}, managed_keys)


def filter_status_fields(config: dict[str, Any], fields: frozenset = DISPLAY_STATUS_FIELDS) -> dict[str, Any]:
    """Drop top-level status fields (for display and export)."""
    return {k: copy.deepcopy(v) for k, v in (config or {}).items() if k not in fields}


def mask_secrets(value: Any) -> Any:
    """Replace secret values (PSKs, passwords) with a fixed mask."""
    if isinstance(value, dict):
        return {
            k: (MASK if k in SECRET_KEYS and v not in (None, "") else mask_secrets(v))
            for k, v in value.items()
        }
    if isinstance(value, list):
        return [mask_secrets(v) for v in value]
    return value


def _flatten(data: Any, prefix: str = "") -> dict[str, Any]:
    if isinstance(data, dict) and data:
        flat: dict[str, Any] = {}
        for key, value in data.items():
            flat.update(_flatten(value, f"{prefix}.{key}" if prefix else str(key)))
        return flat
    return {prefix: data} if prefix else {}


def diff_lines(
    current: dict[str, Any],
    desired: dict[str, Any],
    managed_keys: Optional[list[str]] = None,
) -> list[str]:
    """Human-readable field diff restricted to the managed scope.

    Lines are ``[+] path: value`` (only desired), ``[-] path: value``
    (only live) and ``[~] path: old -> new``, sorted by path.
    """
    cur = filter_status_fields(current)
    des = filter_status_fields(desired)
    des = {k: v for k, v in des.items() if not is_alias_field(k)}
    cur = _flatten(mask_secrets(filter_by_managed_keys(cur, managed_keys)))
    des = _flatten(mask_secrets(filter_by_managed_keys(des, managed_keys)))

    lines = []
    for path in sorted(set(cur) | set(des)):
        if path not in cur:
            lines.append(f"[+] {path}: {des[path]!r}")
        elif path not in des:
            if not _is_empty(cur[path]):
                lines.append(f"[-] {path}: {cur[path]!r}")
        elif not values_equal(cur[path], des[path]):
            lines.append(f"[~] {path}: {cur[path]!r} -> {des[path]!r}")
    return lines
