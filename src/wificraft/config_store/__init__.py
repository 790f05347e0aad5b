"""Local backup storage for site configuration and device state.

This package provides:
- BackupManager: rotating ``<basename>.<serial>`` backups, rollback,
  listing, cleanup and validation
- save_state_backup: pre-apply snapshots of live device configuration
- FileHashCache: SHA-256 change detection for site files

Files managed:
    <backup_dir>/
    ├── <site-file>.json.0          # newest configuration backup
    ├── <site-file>.json.1
    └── <site>-api-state-ap.json.0  # pre-apply device state
    <config_dir>/.file_hashes.json
"""

from .backups import (
    BackupManager,
    BackupInfo,
    BackupValidation,
    RollbackResult,
    DEFAULT_MAX_BACKUPS,
    DEFAULT_RETENTION_DAYS,
)
from .state_backup import save_state_backup, build_state_document
from .file_hash import FileHashCache, compute_file_hash

__all__ = [
    "BackupManager",
    "BackupInfo",
    "BackupValidation",
    "RollbackResult",
    "DEFAULT_MAX_BACKUPS",
    "DEFAULT_RETENTION_DAYS",
    "save_state_backup",
    "build_state_document",
    "FileHashCache",
    "compute_file_hash",
]
