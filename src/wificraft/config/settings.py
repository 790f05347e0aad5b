"""Runtime settings loaded from ``wificraft.yaml`` plus environment overrides.

```yaml
config_dir: ./config
site_files: []
inventory_file: inventory.yaml
template_files: [templates.yaml]
backups:
  dir: null
  max: 10
  retention_days: 30
collaborators: mypackage.backends:build
apis:
  mist-prod:
    vendor: mist
    org_id: 1234
    managed_keys:
      ap: [name, radio_config, tags]
```

Environment:
    WIFICRAFT_CONFIG                 Settings file path
    WIFICRAFT_CONFIG_DIR             Override config_dir
    WIFICRAFT_BACKUP_DIR             Override backups.dir
    WIFICRAFT_MAX_BACKUPS            Override backups.max
    WIFICRAFT_BACKUP_RETENTION_DAYS  Override backups.retention_days
"""
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

import yaml

from ..utils import keypath
from ..errors import ConfigurationError
from .templates import vendor_from_api_label

logger = logging.getLogger(__name__)

DEFAULT_MAX_BACKUPS = 10
DEFAULT_RETENTION_DAYS = 30
FILE_HASH_CACHE_NAME = ".file_hashes.json"


@dataclass
class ApiSettings:
    """One vendor API label and the fields this tool owns on it."""
    label: str
    vendor: str
    org_id: str = ""
    managed_keys: dict[str, list[str]] = field(default_factory=dict)

    def managed_keys_for(self, device_type: str) -> Optional[list[str]]:
        """Managed keys for a device type, or None if none were declared.

        An explicit empty list means every non-status field is owned.
        """
        keys = self.managed_keys.get(str(device_type))
        return None if keys is None else list(keys)

    @classmethod
    def from_dict(cls, label: str, data: dict[str, Any]) -> "ApiSettings":
        data = data or {}
        raw_keys = data.get("managed_keys") or {}
        managed = {
            str(device_type): [str(k) for k in (keys or [])]
            for device_type, keys in raw_keys.items()
        }
        return cls(
            label=label,
            vendor=str(data.get("vendor") or vendor_from_api_label(label)),
            org_id=str(data.get("org_id") or ""),
            managed_keys=managed,
        )


@dataclass
class WificraftSettings:
    """Settings for one process."""
    config_dir: Path = field(default_factory=lambda: Path("config"))
    site_files: list[str] = field(default_factory=list)
    inventory_file: str = "inventory.yaml"
    template_files: list[str] = field(default_factory=list)
    backup_dir: Optional[Path] = None
    max_backups: int = DEFAULT_MAX_BACKUPS
    retention_days: int = DEFAULT_RETENTION_DAYS
    apis: dict[str, ApiSettings] = field(default_factory=dict)
    collaborators: Optional[str] = None
    settings_path: Optional[Path] = None

    @property
    def backups_path(self) -> Path:
        return self.backup_dir if self.backup_dir else self.config_dir / "backups"

    @property
    def inventory_path(self) -> Path:
        return self._resolve(self.inventory_file)

    @property
    def template_paths(self) -> list[Path]:
        return [self._resolve(f) for f in self.template_files]

    @property
    def file_hash_path(self) -> Path:
        return self.config_dir / FILE_HASH_CACHE_NAME

    def _resolve(self, name: str) -> Path:
        path = Path(name).expanduser()
        return path if path.is_absolute() else self.config_dir / path

    def get_api(self, label: str) -> ApiSettings:
        if label not in self.apis:
            raise ConfigurationError(f"Unknown API label: {label}")
        return self.apis[label]

    def resolve_api_label(self, requested: Optional[str]) -> str:
        """Pick the API label for a site: its declared label, else the only one configured."""
        if requested:
            self.get_api(requested)
            return requested
        if len(self.apis) == 1:
            return next(iter(self.apis))
        if not self.apis:
            raise ConfigurationError("no APIs configured")
        raise ConfigurationError(
            f"site does not declare site_config.api and {len(self.apis)} APIs are configured"
        )

    def validate(self) -> list[str]:
        """Structural problems in the settings, empty if usable."""
        errors: list[str] = []
        if self.max_backups < 1:
            errors.append(f"backups.max must be at least 1 (got {self.max_backups})")
        if self.retention_days < 0:
            errors.append(f"backups.retention_days must not be negative (got {self.retention_days})")
        for label, api in sorted(self.apis.items()):
            for device_type, keys in sorted(api.managed_keys.items()):
                if device_type not in ("ap", "switch", "gateway"):
                    errors.append(f"apis.{label}.managed_keys: unknown device type '{device_type}'")
                for key in keys:
                    problem = keypath.validate(key)
                    if problem:
                        errors.append(f"apis.{label}.managed_keys.{device_type}: {problem}")
        return errors

    @classmethod
    def from_dict(cls, data: dict[str, Any], base_dir: Optional[Path] = None) -> "WificraftSettings":
        data = data or {}
        base_dir = base_dir or Path.cwd()

        def _path(value: Any) -> Path:
            path = Path(str(value)).expanduser()
            return path if path.is_absolute() else base_dir / path

        backups = data.get("backups") or {}
        apis = {
            str(label): ApiSettings.from_dict(str(label), api_data)
            for label, api_data in (data.get("apis") or {}).items()
        }
        return cls(
            config_dir=_path(data.get("config_dir", "config")),
            site_files=[str(f) for f in (data.get("site_files") or [])],
            inventory_file=str(data.get("inventory_file") or "inventory.yaml"),
            template_files=[str(f) for f in (data.get("template_files") or [])],
            backup_dir=_path(backups["dir"]) if backups.get("dir") else None,
            max_backups=int(backups.get("max", DEFAULT_MAX_BACKUPS)),
            retention_days=int(backups.get("retention_days", DEFAULT_RETENTION_DAYS)),
            apis=apis,
            collaborators=data.get("collaborators"),
        )

    @classmethod
    def from_file(cls, path: Path) -> "WificraftSettings":
        """Load settings from a YAML file; relative paths resolve against its directory."""
        path = Path(path)
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(f"cannot load settings file {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"settings file {path} must contain a mapping")
        settings = cls.from_dict(data, base_dir=path.parent)
        settings.settings_path = path
        return settings

    @classmethod
    def from_env(cls, path: Optional[Path] = None) -> "WificraftSettings":
        """Load settings from the located file, then apply environment overrides."""
        if path is None:
            path = find_settings_file()
        settings = cls.from_file(path) if path else cls()

        if os.environ.get("WIFICRAFT_CONFIG_DIR"):
            settings.config_dir = Path(os.environ["WIFICRAFT_CONFIG_DIR"]).expanduser()
        if os.environ.get("WIFICRAFT_BACKUP_DIR"):
            settings.backup_dir = Path(os.environ["WIFICRAFT_BACKUP_DIR"]).expanduser()
        if os.environ.get("WIFICRAFT_MAX_BACKUPS"):
            settings.max_backups = int(os.environ["WIFICRAFT_MAX_BACKUPS"])
        if os.environ.get("WIFICRAFT_BACKUP_RETENTION_DAYS"):
            settings.retention_days = int(os.environ["WIFICRAFT_BACKUP_RETENTION_DAYS"])

        return settings


def find_settings_file() -> Optional[Path]:
    """Find wificraft.yaml; None if no candidate exists."""
    env_path = os.environ.get("WIFICRAFT_CONFIG")
    if env_path:
        path = Path(env_path).expanduser()
        if not path.exists():
            raise ConfigurationError(f"WIFICRAFT_CONFIG points to a missing file: {path}")
        return path

    search_paths = [
        Path.cwd() / "wificraft.yaml",
        Path.cwd() / "config" / "wificraft.yaml",
        Path.home() / ".config" / "wificraft" / "wificraft.yaml",
        Path("/etc/wificraft/wificraft.yaml"),
    ]
    for path in search_paths:
        if path.exists():
            return path

    logger.debug("No wificraft.yaml found; using defaults")
    return None
