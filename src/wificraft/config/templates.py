"""Named WLAN, radio and device templates.

Template files (YAML or JSON) hold three sections:

```yaml
wlan:
  corp:
    ssid: Corp
    band: dual
    vlan_id: 20
    auth: {type: psk, psk: secret}
    "meraki:":
      encryption_mode: wpa
radio:
  high-density:
    band_5: {power: 17}
device:
  lobby-ap:
    led: {enabled: false}
```

Keys ending in ``:`` are vendor override blocks. Expanding a template for a
vendor drops every vendor block and deep-merges the matching one over the
common fields.
"""
import copy
import logging
from pathlib import Path
from typing import Any, Optional

import yaml

from ..errors import ConfigurationError

logger = logging.getLogger(__name__)

# Device config keys that reference templates rather than carry settings
TEMPLATE_REFERENCE_FIELDS = ("device_template", "radio_profile", "wlan")

TEMPLATE_LABEL_KEY = "_template_label"


def vendor_from_api_label(api_label: Optional[str]) -> str:
    """Vendor name from an API label: ``mist-prod`` -> ``mist``."""
    if not api_label:
        return ""
    return api_label.split("-", 1)[0].lower()


def is_vendor_block(key: str) -> bool:
    return isinstance(key, str) and key.endswith(":")


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict with ``override`` merged over ``base`` recursively."""
    result = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = deep_merge(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


def expand_for_vendor(template: dict[str, Any], vendor: str) -> dict[str, Any]:
    """Resolve a vendor-neutral template for one vendor."""
    common = {k: copy.deepcopy(v) for k, v in template.items() if not is_vendor_block(k)}
    block = template.get(f"{vendor}:")
    if isinstance(block, dict):
        logger.debug(f"Merged vendor block '{vendor}:' into template")
        return deep_merge(common, block)
    return common


class TemplateStore:
    """In-memory template lookup, loaded once per apply run."""

    def __init__(
        self,
        wlan: Optional[dict[str, dict]] = None,
        radio: Optional[dict[str, dict]] = None,
        device: Optional[dict[str, dict]] = None,
    ):
        self.wlan = dict(wlan or {})
        self.radio = dict(radio or {})
        self.device = dict(device or {})

    @classmethod
    def load(cls, paths: list[Path]) -> "TemplateStore":
        """Load and merge template files in order; later files win per label.

        Raises:
            ConfigurationError: If a file is missing or not a mapping
        """
        store = cls()
        for path in paths:
            path = Path(path)
            try:
                with open(path, encoding="utf-8") as f:
                    data = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigurationError(f"cannot load template file {path}: {e}") from e
            if not isinstance(data, dict):
                raise ConfigurationError(f"template file {path} must contain a mapping")

            for section in ("wlan", "radio", "device"):
                entries = data.get(section) or {}
                if not isinstance(entries, dict):
                    raise ConfigurationError(f"'{section}' in {path} must be a mapping of label to template")
                getattr(store, section).update(entries)

        logger.debug(
            f"Loaded templates: {len(store.wlan)} wlan, {len(store.radio)} radio, "
            f"{len(store.device)} device"
        )
        return store

    def is_empty(self) -> bool:
        return not (self.wlan or self.radio or self.device)

    def get_wlan_template(self, label: str) -> Optional[dict[str, Any]]:
        return self.wlan.get(label)

    def expand_wlan(self, label: str, vendor: str) -> Optional[dict[str, Any]]:
        """Expanded WLAN template tagged with its label, or None if undefined."""
        template = self.wlan.get(label)
        if template is None:
            return None
        expanded = expand_for_vendor(template, vendor)
        expanded[TEMPLATE_LABEL_KEY] = label
        return expanded

    def expand_device_config(self, device_config: dict[str, Any], vendor: str) -> dict[str, Any]:
        """Expand ``device_template`` and ``radio_profile`` references.

        Order: device template, then radio profile (wrapped into
        ``radio_config``), then the device's own fields, which win. Template
        reference fields are removed from the result. WLAN labels are not
        embedded; WLANs are reconciled separately.
        """
        result: dict[str, Any] = {}

        template_name = device_config.get("device_template")
        if isinstance(template_name, str):
            template = self.device.get(template_name)
            if template is not None:
                result = deep_merge(result, expand_for_vendor(template, vendor))
            else:
                logger.warning(f"Device template '{template_name}' not found")

        profile_name = device_config.get("radio_profile")
        if isinstance(profile_name, str):
            template = self.radio.get(profile_name)
            if template is not None:
                expanded = expand_for_vendor(template, vendor)
                existing = result.get("radio_config")
                result["radio_config"] = deep_merge(existing, expanded) if isinstance(existing, dict) else expanded
            else:
                logger.warning(f"Radio profile '{profile_name}' not found")

        own = {
            k: v for k, v in device_config.items()
            if k not in TEMPLATE_REFERENCE_FIELDS and not is_vendor_block(k)
        }
        result = deep_merge(result, own)

        block = device_config.get(f"{vendor}:")
        if isinstance(block, dict):
            result = deep_merge(result, block)

        return result
