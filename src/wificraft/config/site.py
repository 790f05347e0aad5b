"""Site configuration documents.

Site files are JSON:

```json
{
  "version": 1,
  "config": {
    "sites": {
      "hq": {
        "site_config": {"name": "HQ", "api": "mist-prod"},
        "profiles": {"wlan": ["corp", "guest"], "radio": [], "device": []},
        "wlan": ["corp"],
        "devices": {
          "ap": {"aa:bb:cc:dd:ee:01": {"name": "ap-lobby", "wlan": ["guest"]}},
          "switch": {},
          "gateway": {}
        }
      }
    }
  }
}
```

Files are re-read on every lookup; nothing here caches parsed sites.
"""
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from ..errors import ConfigurationError
from ..utils.macaddr import normalize_or_empty
from ..vendors.base import DeviceType

logger = logging.getLogger(__name__)


def _string_list(value: Any) -> list[str]:
    """Coerce a list-or-string config value to a list of strings."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value else []
    if isinstance(value, (list, tuple)):
        return [str(v) for v in value if v is not None and str(v) != ""]
    return []


@dataclass
class SiteConfiguration:
    """Desired state for one named site."""
    key: str
    name: str
    source_path: Optional[Path] = None
    site_config: dict[str, Any] = field(default_factory=dict)
    profiles: dict[str, list[str]] = field(default_factory=dict)
    wlan: list[str] = field(default_factory=list)
    devices: dict[DeviceType, dict[str, dict[str, Any]]] = field(default_factory=dict)

    @property
    def api_label(self) -> Optional[str]:
        label = self.site_config.get("api")
        return str(label) if label else None

    @property
    def wlan_profiles(self) -> list[str]:
        """Labels of WLAN templates declared for creation at this site."""
        return list(self.profiles.get("wlan", []))

    def device_configs(self, device_type: DeviceType) -> dict[str, dict[str, Any]]:
        """Device config maps of one type keyed by normalized MAC."""
        return self.devices.get(DeviceType.parse(device_type), {})

    @classmethod
    def from_dict(cls, key: str, data: dict[str, Any], source_path: Optional[Path] = None) -> "SiteConfiguration":
        """Build a SiteConfiguration from one entry of ``config.sites``."""
        if not isinstance(data, dict):
            raise ConfigurationError(f"site '{key}' must be an object")

        site_config = data.get("site_config") or {}
        name = str(site_config.get("name") or key)

        raw_profiles = data.get("profiles") or {}
        profiles = {k: _string_list(v) for k, v in raw_profiles.items()}

        devices: dict[DeviceType, dict[str, dict[str, Any]]] = {}
        raw_devices = data.get("devices") or {}
        for device_type in DeviceType:
            by_mac: dict[str, dict[str, Any]] = {}
            for mac, device_config in (raw_devices.get(device_type.value) or {}).items():
                normalized = normalize_or_empty(mac)
                if not normalized:
                    logger.warning(f"Site {name}: skipping {device_type} entry with invalid MAC '{mac}'")
                    continue
                by_mac[normalized] = dict(device_config or {})
            devices[device_type] = by_mac

        return cls(
            key=key,
            name=name,
            source_path=source_path,
            site_config=dict(site_config),
            profiles=profiles,
            wlan=_string_list(data.get("wlan")),
            devices=devices,
        )


class SiteConfigLoader:
    """Locate and parse site configuration files.

    Args:
        config_dir: Directory containing site JSON files
        site_files: Explicit file names (relative to config_dir); empty means
            every ``*.json`` file in config_dir
    """

    def __init__(self, config_dir: Path, site_files: Optional[list[str]] = None):
        self.config_dir = Path(config_dir)
        self.site_files = list(site_files or [])

    def files(self) -> list[Path]:
        """Site files to search, in a stable order."""
        if self.site_files:
            paths = [self._resolve(f) for f in self.site_files]
            missing = [str(p) for p in paths if not p.exists()]
            if missing:
                raise ConfigurationError(f"site config files not found: {', '.join(missing)}")
        else:
            paths = sorted(
                p for p in self.config_dir.glob("*.json")
                if not p.name.startswith(".")
            )
        if not paths:
            raise ConfigurationError(f"no site configuration files found in {self.config_dir}")
        return paths

    def _resolve(self, name: str) -> Path:
        path = Path(name).expanduser()
        return path if path.is_absolute() else self.config_dir / path

    @staticmethod
    def load_file(path: Path) -> dict[str, Any]:
        """Parse one site file."""
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"malformed JSON in {path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"cannot read {path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"{path} must contain a JSON object")
        return data

    @staticmethod
    def sites_in(data: dict[str, Any]) -> dict[str, Any]:
        return ((data.get("config") or {}).get("sites")) or {}

    def iter_sites(self):
        """Yield every SiteConfiguration across all files."""
        for path in self.files():
            data = self.load_file(path)
            for key, site_data in self.sites_in(data).items():
                yield SiteConfiguration.from_dict(key, site_data, source_path=path)

    def find_site(self, site_name: str) -> SiteConfiguration:
        """Find a site by name (``site_config.name``) or by its map key.

        Raises:
            ConfigurationError: If no file defines the site
        """
        for site in self.iter_sites():
            if site.name == site_name or site.key == site_name:
                logger.debug(f"Found site {site_name} in {site.source_path}")
                return site
        available = ", ".join(self.list_site_names()) or "none"
        raise ConfigurationError(
            f"site '{site_name}' not found in any configuration file (available sites: {available})"
        )

    def list_site_names(self) -> list[str]:
        return sorted(site.name for site in self.iter_sites())
