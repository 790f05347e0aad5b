"""Dot-notation key paths with ``*`` wildcard segments.

A managed key such as ``radio_config.band_5.power`` or
``port_config.*.vlan_id`` names the configuration fields this tool is
allowed to compare and write. Paths are split on ``.``; a ``*`` segment
matches exactly one key at that level.
"""
import copy
from dataclasses import dataclass
from typing import Any, Optional, Union

WILDCARD = "*"


@dataclass(frozen=True)
class KeyPath:
    """A parsed dot path."""
    segments: tuple[str, ...]

    @property
    def has_wildcard(self) -> bool:
        return WILDCARD in self.segments

    def __str__(self) -> str:
        return ".".join(self.segments)

    def __len__(self) -> int:
        return len(self.segments)

    def starts_with(self, prefix: "KeyPath") -> bool:
        """True if ``prefix`` matches the leading segments of this path."""
        if len(prefix) > len(self):
            return False
        return _segments_match(self.segments[:len(prefix)], prefix.segments)

    def matches(self, pattern: "KeyPath") -> bool:
        """True if this concrete path matches ``pattern`` segment for segment."""
        if len(self) != len(pattern):
            return False
        return _segments_match(self.segments, pattern.segments)


PathLike = Union[str, KeyPath, tuple, list]


def _segments_match(concrete: tuple[str, ...], pattern: tuple[str, ...]) -> bool:
    return all(p == WILDCARD or p == c for c, p in zip(concrete, pattern))


def parse(path: "PathLike") -> KeyPath:
    """Parse a dot path (or a sequence of segments) into a KeyPath."""
    if isinstance(path, KeyPath):
        return path
    if isinstance(path, (tuple, list)):
        return KeyPath(tuple(str(s) for s in path))
    if not path:
        return KeyPath(())
    return KeyPath(tuple(path.split(".")))


def validate(path: str) -> Optional[str]:
    """Check a managed key for structural problems.

    Returns:
        An error message, or None if the path is usable
    """
    if not path:
        return "managed key must not be empty"
    segments = path.split(".")
    if any(s == "" for s in segments):
        return f"managed key '{path}' contains an empty segment"
    if segments[-1] == WILDCARD:
        return f"managed key '{path}' must not end with a wildcard"
    return None


def is_key_managed(key: "PathLike", managed_keys: list[str]) -> bool:
    """Check whether a key path is covered by the managed keys list.

    A key is managed if it equals a managed key, if a managed key is one of its
    ancestors, or if it lies under a wildcard pattern match.
    """
    if not managed_keys:
        return False
    kp = parse(key)
    for mk in managed_keys:
        if kp.starts_with(parse(mk)):
            return True
    return False


def is_within_managed_scope(key: "PathLike", managed_keys: list[str]) -> bool:
    """True if ``key`` is managed or is an ancestor of some managed key.

    Ancestors have to be walked to reach managed descendants even though the
    ancestor itself is not managed.
    """
    if not managed_keys:
        return False
    kp = parse(key)
    for mk in managed_keys:
        mkp = parse(mk)
        if kp.starts_with(mkp):
            return True
        # kp is a (possibly partial) concrete prefix of the pattern
        if len(kp) < len(mkp) and _segments_match(kp.segments, mkp.segments[:len(kp)]):
            return True
    return False


def get_value_at_path(data: Any, path: "PathLike") -> tuple[Any, bool]:
    """Return ``(value, found)`` for a concrete path in nested dicts."""
    current = data
    for segment in parse(path).segments:
        if not isinstance(current, dict) or segment not in current:
            return None, False
        current = current[segment]
    return current, True


def set_value_at_path(data: dict, path: "PathLike", value: Any) -> None:
    """Set a value in nested dicts, creating intermediate dicts as needed."""
    segments = parse(path).segments
    if not segments:
        return
    current = data
    for segment in segments[:-1]:
        nested = current.get(segment)
        if not isinstance(nested, dict):
            nested = {}
            current[segment] = nested
        current = nested
    current[segments[-1]] = value


def collect_matching_paths(data: dict, pattern: "PathLike") -> list[tuple[str, ...]]:
    """Expand a (possibly wildcard) pattern into every concrete path present in ``data``."""
    segments = parse(pattern).segments
    if not segments or not isinstance(data, dict):
        return []
    return _collect(data, segments, ())


def _collect(data: dict, segments: tuple[str, ...], prefix: tuple[str, ...]) -> list[tuple[str, ...]]:
    head, rest = segments[0], segments[1:]
    keys = sorted(data) if head == WILDCARD else ([head] if head in data else [])
    results = []
    for key in keys:
        path = prefix + (key,)
        if not rest:
            results.append(path)
        elif isinstance(data[key], dict):
            results.extend(_collect(data[key], rest, path))
    return results


def filter_by_paths(data: dict, managed_keys: list[str]) -> dict:
    """Project ``data`` onto the managed paths, preserving nesting.

    Values are deep-copied; an empty key list yields an empty dict.
    """
    result: dict = {}
    if not managed_keys or not isinstance(data, dict):
        return result
    for mk in managed_keys:
        for path in collect_matching_paths(data, mk):
            value, found = get_value_at_path(data, path)
            if found:
                set_value_at_path(result, path, copy.deepcopy(value))
    return result
