"""JSON audit trail of remote mutations and local rollbacks.

One line per assign, unassign, device update, WLAN create/update and
rollback, written by the ``wificraft.audit`` logger to ``audit.log``. The
audit logger never reaches the console.
"""
import json
import logging
import os
from collections import deque
from dataclasses import dataclass, asdict, fields
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional, Union

audit_logger = logging.getLogger("wificraft.audit")

AUDIT_MAX_BYTES = 10 * 1024 * 1024
AUDIT_BACKUP_COUNT = 10


def default_audit_dir() -> Path:
    return Path(os.path.expanduser("~/.wificraft"))


def setup_audit_logging(log_dir: Optional[Union[str, Path]] = None) -> Path:
    """Route the audit logger to ``<log_dir>/audit.log`` (default ``~/.wificraft``).

    Replaces any handler installed by an earlier call.
    """
    directory = Path(log_dir) if log_dir is not None else default_audit_dir()
    directory.mkdir(parents=True, exist_ok=True)
    audit_file = directory / "audit.log"

    for old in list(audit_logger.handlers):
        audit_logger.removeHandler(old)
        old.close()

    handler = RotatingFileHandler(
        audit_file, maxBytes=AUDIT_MAX_BYTES, backupCount=AUDIT_BACKUP_COUNT, encoding="utf-8"
    )
    handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger.addHandler(handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False
    return audit_file


@dataclass
class ChangeRecord:
    """One mutation as written to the audit log."""
    timestamp: str
    site: str
    device_type: str
    operation: str  # assign, unassign, update_device, create_wlan, update_wlan, rollback
    target: str     # MAC, SSID or file name
    user: str
    dry_run: bool
    success: bool
    parameters: dict
    before_state: Optional[dict] = None
    after_state: Optional[dict] = None
    error: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), default=str)

    @classmethod
    def from_json(cls, json_str: str) -> "ChangeRecord":
        data = json.loads(json_str)
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})


class ChangeTracker:
    """Writes audit records for one site and device type."""

    def __init__(self, site: str, device_type: str = "", user: Optional[str] = None):
        self.site = site
        self.device_type = device_type
        self.user = user or os.environ.get("USER", "system")

    def log_change(
        self,
        operation: str,
        target: str,
        success: bool,
        parameters: Optional[dict] = None,
        error: Optional[str] = None,
        dry_run: bool = False,
        before_state: Optional[dict[str, Any]] = None,
        after_state: Optional[dict[str, Any]] = None,
    ) -> ChangeRecord:
        """Record ``operation`` on ``target`` (a MAC, SSID or file) and return the record."""
        record = ChangeRecord(
            timestamp=datetime.now(timezone.utc).isoformat(),
            site=self.site,
            device_type=self.device_type,
            operation=operation,
            target=target,
            user=self.user,
            dry_run=dry_run,
            success=success,
            parameters=parameters or {},
            before_state=before_state,
            after_state=after_state,
            error=error,
        )
        audit_logger.info(record.to_json())
        return record


def get_recent_changes(
    log_file: Optional[Union[str, Path]] = None,
    site: Optional[str] = None,
    operation: Optional[str] = None,
    limit: int = 100,
) -> list[ChangeRecord]:
    """Newest-first records from the audit log, optionally filtered.

    Malformed lines are skipped.
    """
    path = Path(log_file) if log_file is not None else default_audit_dir() / "audit.log"
    if not path.exists():
        return []

    recent: deque = deque(maxlen=max(0, limit))
    with open(path, encoding="utf-8") as f:
        for raw in f:
            raw = raw.strip()
            if not raw:
                continue
            try:
                record = ChangeRecord.from_json(raw)
            except (json.JSONDecodeError, TypeError, AttributeError):
                continue
            if site and record.site != site:
                continue
            if operation and record.operation != operation:
                continue
            recent.append(record)

    return list(reversed(recent))
