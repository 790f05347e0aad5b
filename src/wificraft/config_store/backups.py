"""Serial-indexed backups of site configuration files.

Backups live in one directory as ``<basename>.<serial>``; serial 0 is the
newest. Writing a backup rotates every existing serial up by one and
discards whatever would land at or beyond the retention count.

Rotation and the write of the new serial 0 are committed as a single
synchronous unit: the new content is staged in a temporary file first,
every rename is recorded, and a failure undoes the recorded renames. A
caller sees either the fully rotated state or the untouched prior state.
"""
import json
import logging
import os
import re
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

from ..errors import BackupError

logger = logging.getLogger(__name__)

DEFAULT_MAX_BACKUPS = 10
DEFAULT_RETENTION_DAYS = 30

STATE_BACKUP_MARKER = "-api-state-"

_SERIAL_RE = re.compile(r"^(?P<base>.+)\.(?P<serial>\d+)$")


def utc_timestamp(when: Optional[datetime] = None) -> str:
    """RFC3339 timestamp in UTC with second precision."""
    when = when or datetime.now(timezone.utc)
    return when.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _sites(data: Any) -> dict[str, Any]:
    if not isinstance(data, dict):
        return {}
    sites = (data.get("config") or {}).get("sites") if isinstance(data.get("config"), dict) else None
    return sites if isinstance(sites, dict) else {}


def _site_names(data: Any) -> list[str]:
    names = []
    for key, site in _sites(data).items():
        site_config = site.get("site_config") if isinstance(site, dict) else None
        name = site_config.get("name") if isinstance(site_config, dict) else None
        names.append(str(name) if name else str(key))
    return sorted(names)


@dataclass
class BackupInfo:
    """One backup file as seen by ``list_backups``."""
    path: Path
    base_name: str
    serial: int
    timestamp: datetime
    site_names: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "base_name": self.base_name,
            "serial": self.serial,
            "timestamp": utc_timestamp(self.timestamp),
            "sites": list(self.site_names),
        }


@dataclass
class BackupValidation:
    """Structural summary of a backup file."""
    path: Path
    version: Any = None
    site_count: int = 0
    site_names: list[str] = field(default_factory=list)
    device_count: int = 0
    last_modified: Optional[str] = None
    warnings: list[str] = field(default_factory=list)

    def summary(self) -> list[str]:
        lines = [
            f"Backup: {self.path}",
            f"  Version: {self.version if self.version is not None else 'unknown'}",
            f"  Sites: {self.site_count} ({', '.join(self.site_names)})",
            f"  Devices: {self.device_count}",
        ]
        if self.last_modified:
            lines.append(f"  Last modified: {self.last_modified}")
        lines.extend(f"  Warning: {w}" for w in self.warnings)
        return lines


@dataclass
class RollbackResult:
    """Outcome of a local rollback."""
    site_name: str
    serial: int
    live_path: Path
    restored_from: Path
    previous_backup: Path

    @property
    def message(self) -> str:
        return (
            f"Restored {self.live_path.name} from backup {self.serial} for site {self.site_name}. "
            "The configuration has NOT been applied to the API. "
            f"Review with 'wificraft apply {self.site_name} all diff' and push with "
            f"'wificraft apply {self.site_name} all'."
        )


class BackupManager:
    """Rotating local backups in one directory.

    Args:
        backup_dir: Directory holding every backup
        max_backups: Serials kept per base name (0 .. max_backups-1)
        retention_days: Age cutoff used by ``cleanup``
    """

    def __init__(
        self,
        backup_dir: Path,
        max_backups: int = DEFAULT_MAX_BACKUPS,
        retention_days: int = DEFAULT_RETENTION_DAYS,
    ):
        self.backup_dir = Path(backup_dir)
        self.max_backups = max(1, int(max_backups))
        self.retention_days = int(retention_days)

    def backup_path(self, base_name: str, serial: int) -> Path:
        return self.backup_dir / f"{base_name}.{serial}"

    def existing_serials(self, base_name: str) -> list[int]:
        """Serials present on disk for a base name, ascending."""
        if not self.backup_dir.is_dir():
            return []
        serials = []
        for path in self.backup_dir.iterdir():
            match = _SERIAL_RE.match(path.name)
            if match and match.group("base") == base_name and path.is_file():
                serials.append(int(match.group("serial")))
        return sorted(serials)

    # === Rotation ===

    def _plan(self, base_name: str) -> tuple[list[tuple[Path, Path]], list[Path]]:
        """Ordered renames and discards for one rotation.

        The i-th newest existing backup moves to serial i+1, which also
        compacts gaps; anything landing at or beyond ``max_backups`` is
        discarded. Downward moves run lowest first and upward moves
        highest first, so no rename targets a file that has not moved yet.
        """
        upward, downward, discards = [], [], []
        for index, serial in enumerate(self.existing_serials(base_name)):
            source = self.backup_path(base_name, serial)
            target = index + 1
            if target >= self.max_backups:
                discards.append(source)
            elif serial < target:
                upward.append((source, self.backup_path(base_name, target)))
            elif serial > target:
                downward.append((source, self.backup_path(base_name, target)))
        upward.reverse()
        return downward + upward, discards

    def _commit(self, base_name: str, content: Optional[bytes]) -> Optional[Path]:
        """Rotate and, if ``content`` is given, write it as serial 0.

        Runs without awaiting so the rotation cannot be interrupted halfway
        by task cancellation.

        Raises:
            BackupError: If any step fails; the directory is restored
        """
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise BackupError(f"cannot create backup directory: {e}", self.backup_dir) from e

        staged: Optional[Path] = None
        if content is not None:
            try:
                fd, name = tempfile.mkstemp(prefix=f".{base_name}.", suffix=".tmp", dir=self.backup_dir)
                with os.fdopen(fd, "wb") as f:
                    f.write(content)
                staged = Path(name)
            except OSError as e:
                raise BackupError(f"cannot stage backup for {base_name}: {e}", self.backup_dir) from e

        renames, discards = self._plan(base_name)
        done: list[tuple[Path, Path]] = []
        parked: list[Path] = []
        try:
            for path in discards:
                aside = path.with_name(f".{path.name}.discard")
                os.replace(path, aside)
                done.append((path, aside))
                parked.append(aside)
            for source, target in renames:
                os.replace(source, target)
                done.append((source, target))
                logger.debug(f"Rotated backup: {source.name} -> {target.name}")
            final = None
            if staged is not None:
                final = self.backup_path(base_name, 0)
                os.replace(staged, final)
        except OSError as e:
            for source, target in reversed(done):
                try:
                    os.replace(target, source)
                except OSError as undo_error:
                    logger.error(f"Failed to restore {source.name} during rotation undo: {undo_error}")
            if staged is not None and staged.exists():
                staged.unlink()
            raise BackupError(f"backup rotation for {base_name} failed: {e}", self.backup_dir) from e

        for aside in parked:
            try:
                aside.unlink()
                logger.debug(f"Removed old backup: {aside.name}")
            except OSError as e:
                logger.warning(f"Failed to remove old backup {aside}: {e}")
        return final

    def rotate(self, base_name: str) -> None:
        """Shift every backup of ``base_name`` up one serial."""
        self._commit(base_name, None)

    def write_backup(self, base_name: str, content: bytes) -> Path:
        """Rotate, then store ``content`` as serial 0."""
        path = self._commit(base_name, content)
        logger.info(f"Backup saved: {path.name}")
        return path

    def create_backup_after_apply(self, source_path: Path) -> Path:
        """Back up a site file with ``last_modified`` stamped at root and per site.

        Raises:
            BackupError: If the source cannot be read or parsed, or the
                write fails
        """
        source_path = Path(source_path)
        try:
            data = json.loads(source_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise BackupError(f"cannot read {source_path} for backup: {e}", source_path) from e
        if not isinstance(data, dict):
            raise BackupError(f"{source_path} does not hold a JSON object", source_path)

        stamp = utc_timestamp()
        data["last_modified"] = stamp
        for site in _sites(data).values():
            if isinstance(site, dict):
                site["last_modified"] = stamp

        content = json.dumps(data, indent=2).encode("utf-8")
        return self.write_backup(source_path.name, content)

    # === Rollback ===

    def rollback(self, site_name: str, live_path: Path, serial: int = 0) -> RollbackResult:
        """Swap a site file with backup ``serial``.

        The pre-rollback live bytes become the new serial 0 and the live
        file receives the bytes of backup ``serial`` as they were before
        rotation. Local only: nothing is sent to any API.

        Raises:
            BackupError: If the backup is missing or unparseable, or a
                write fails
        """
        live_path = Path(live_path)
        base_name = live_path.name
        if serial < 0:
            raise BackupError(f"invalid backup serial {serial}")
        source = self.backup_path(base_name, serial)
        if not source.is_file():
            available = ", ".join(str(s) for s in self.existing_serials(base_name)) or "none"
            raise BackupError(f"backup {source.name} not found (available serials: {available})", source)

        try:
            restored = source.read_bytes()
            current = live_path.read_bytes()
        except OSError as e:
            raise BackupError(f"cannot read files for rollback: {e}", source) from e
        try:
            json.loads(restored.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise BackupError(f"backup {source.name} is not valid JSON: {e}", source) from e

        previous = self._commit(base_name, current)

        try:
            fd, name = tempfile.mkstemp(prefix=f".{base_name}.", suffix=".tmp", dir=live_path.parent)
            with os.fdopen(fd, "wb") as f:
                f.write(restored)
            os.replace(name, live_path)
        except OSError as e:
            raise BackupError(f"cannot write restored config to {live_path}: {e}", live_path) from e

        logger.info(f"Rolled back {live_path} to backup {serial}; previous config saved as {previous.name}")
        return RollbackResult(
            site_name=site_name,
            serial=serial,
            live_path=live_path,
            restored_from=source,
            previous_backup=previous,
        )

    # === Listing, cleanup, validation ===

    def _iter_backups(self, include_state: bool = False):
        if not self.backup_dir.is_dir():
            return
        for path in self.backup_dir.iterdir():
            if path.name.startswith(".") or not path.is_file():
                continue
            match = _SERIAL_RE.match(path.name)
            if not match:
                continue
            if not include_state and STATE_BACKUP_MARKER in match.group("base"):
                continue
            yield path, match.group("base"), int(match.group("serial"))

    @staticmethod
    def _load(path: Path) -> Optional[Any]:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning(f"Failed to parse backup file {path}: {e}")
            return None

    @staticmethod
    def _timestamp(path: Path, data: Any) -> datetime:
        stamp = parse_timestamp(data.get("last_modified")) if isinstance(data, dict) else None
        if stamp is None:
            stamp = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
        return stamp

    def list_backups(self, site_name: Optional[str] = None) -> list[BackupInfo]:
        """Configuration backups, optionally only those containing a site.

        Sorted by base name, then serial (newest first within a file).
        """
        backups = []
        for path, base_name, serial in self._iter_backups():
            data = self._load(path)
            if data is None:
                continue
            names = _site_names(data)
            if site_name is not None and site_name not in names and site_name not in _sites(data):
                continue
            backups.append(BackupInfo(path, base_name, serial, self._timestamp(path, data), names))
        backups.sort(key=lambda b: (b.base_name, b.serial))
        return backups

    def cleanup(self, max_backups: Optional[int] = None, retention_days: Optional[int] = None) -> list[Path]:
        """Delete backups beyond the count limit or older than the cutoff.

        Returns:
            Paths removed, sorted
        """
        limit = self.max_backups if max_backups is None else max(1, int(max_backups))
        days = self.retention_days if retention_days is None else int(retention_days)
        cutoff = datetime.now(timezone.utc) - timedelta(days=days)

        removed = []
        for path, _, serial in list(self._iter_backups(include_state=True)):
            if serial >= limit:
                reason = f"serial {serial} beyond limit {limit}"
            else:
                if self._timestamp(path, self._load(path)) >= cutoff:
                    continue
                reason = f"older than {days} days"
            try:
                path.unlink()
            except OSError as e:
                logger.warning(f"Failed to remove old backup {path}: {e}")
                continue
            logger.debug(f"Removed backup {path.name} ({reason})")
            removed.append(path)

        if removed:
            logger.info(f"Cleaned up {len(removed)} configuration backup(s)")
        return sorted(removed)

    def validate_backup(self, path: Path) -> BackupValidation:
        """Read-only structural check of a backup file.

        Raises:
            BackupError: If the file is missing, unparseable or has no sites
        """
        path = Path(path)
        if not path.is_file():
            raise BackupError(f"backup file not found: {path}", path)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise BackupError(f"backup file {path} is not valid JSON: {e}", path) from e

        sites = _sites(data)
        if not sites:
            raise BackupError(f"backup file {path} contains no sites", path)

        result = BackupValidation(path=path, version=data.get("version"))
        if result.version is None:
            result.warnings.append("no version field")
        result.site_count = len(sites)
        result.site_names = _site_names(data)
        for site in sites.values():
            devices = site.get("devices") if isinstance(site, dict) else None
            if isinstance(devices, dict):
                result.device_count += sum(len(d) for d in devices.values() if isinstance(d, dict))
        result.last_modified = data.get("last_modified")
        if not result.last_modified:
            result.warnings.append("no last_modified timestamp")
        return result
