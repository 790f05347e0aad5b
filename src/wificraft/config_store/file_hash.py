"""SHA-256 change detection for site configuration files.

The cache is a JSON file in the config directory:

```json
{"hashes": {"/abs/path/site.json": {"hash": "<sha256 hex>", "mod_time": "2025-01-01T00:00:00Z"}}}
```
"""
import hashlib
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .backups import utc_timestamp

logger = logging.getLogger(__name__)


def compute_file_hash(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


class FileHashCache:
    """Remembers the last applied hash of each site file."""

    def __init__(self, cache_path: Path):
        self.cache_path = Path(cache_path)

    @staticmethod
    def _key(path: Path) -> str:
        return str(Path(path).resolve())

    def load(self) -> dict[str, dict[str, Any]]:
        if not self.cache_path.exists():
            return {}
        try:
            data = json.loads(self.cache_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning(f"Ignoring unreadable file hash cache {self.cache_path}: {e}")
            return {}
        hashes = data.get("hashes") if isinstance(data, dict) else None
        return hashes if isinstance(hashes, dict) else {}

    def has_changed(self, path: Path) -> bool:
        """True if the file differs from the cached hash or was never recorded."""
        try:
            current = compute_file_hash(path)
        except OSError as e:
            logger.warning(f"Cannot hash {path}: {e} - treating as changed")
            return True
        entry = self.load().get(self._key(path))
        if not isinstance(entry, dict):
            return True
        return entry.get("hash") != current

    def update(self, path: Path) -> None:
        """Record the file's current hash and modification time.

        Raises:
            OSError: If the file cannot be hashed or the cache written
        """
        hashes = self.load()
        mtime = datetime.fromtimestamp(os.path.getmtime(path), tz=timezone.utc)
        hashes[self._key(path)] = {"hash": compute_file_hash(path), "mod_time": utc_timestamp(mtime)}

        self.cache_path.parent.mkdir(parents=True, exist_ok=True)
        fd, name = tempfile.mkstemp(prefix=".file_hashes.", suffix=".tmp", dir=self.cache_path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump({"hashes": hashes}, f, indent=2, sort_keys=True)
            os.replace(name, self.cache_path)
        except OSError:
            if os.path.exists(name):
                os.unlink(name)
            raise
        logger.debug(f"Updated file hash for {path}")
