"""WLAN reconciliation.

Collects every WLAN label a site references, validates the references,
expands the templates for the target vendor and creates or updates WLANs
keyed by SSID. Scoping a WLAN to a subset of APs is vendor specific:

- ID-list vendors (Mist) set ``ap_ids`` with ``apply_to="aps"``, or
  ``apply_to="site"`` to broadcast.
- Tag vendors (Meraki) restrict the WLAN to a synthetic availability tag
  and hand an AP -> tags map to the device-update phase.
"""
import logging
from typing import Any, Callable, Optional

from ..config.site import SiteConfiguration
from ..config.templates import TEMPLATE_LABEL_KEY, TemplateStore
from ..errors import ConfigurationError, VendorCapabilityError
from ..utils.connection import CONNECT_EXCEPTIONS, call_with_retry
from ..utils.logging_config import timed
from ..utils.macaddr import normalize_or_empty
from ..vendors.base import WLAN, DeviceType
from .comparator import diff_lines
from .schema import ApplyContext, ApplyReport
from .tags import build_ap_tag_mapping, generate_wlan_availability_tag, to_string_list
from .updaters import tags_are_managed

logger = logging.getLogger(__name__)

WPA3_HINT_MARKERS = ("security type", "6 ghz", "wi-fi 7")
WPA3_HINT = (
    "6GHz and Wi-Fi 7 require WPA3 security. Supported auth types for 6GHz: "
    "'sae' (WPA3-Personal), 'eap-192' (WPA3-Enterprise), 'owe'"
)

_MIST_KNOWN = frozenset({"ssid", "enabled", "band", "bands", "vlan_id", "auth", "hidden", "apply_to", "ap_ids"})
_NEUTRAL_KNOWN = frozenset({"ssid", "enabled", "hidden", "band", "vlan_id", "auth", "encryption_mode"})


def band_to_bands(band: str) -> list[str]:
    """Legacy single ``band`` value to a ``bands`` list.

    ``dual``/``all`` -> ``["24", "5"]``; ``2.4``/``24`` -> ``["24"]``;
    ``5`` and ``6`` map to themselves; anything else passes through.
    """
    value = str(band).lower()
    if value in ("dual", "all"):
        return ["24", "5"]
    if value in ("24", "2.4"):
        return ["24"]
    if value in ("5", "6"):
        return [value]
    return [str(band)]


def _vlan(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return None


def _base_wlan(config: dict[str, Any], site_id: str) -> WLAN:
    wlan = WLAN(ssid=str(config.get("ssid") or ""), site_id=site_id)
    if isinstance(config.get("enabled"), bool):
        wlan.enabled = config["enabled"]
    if isinstance(config.get("hidden"), bool):
        wlan.hidden = config["hidden"]
    if isinstance(config.get("band"), str):
        wlan.band = config["band"]
    wlan.vlan_id = _vlan(config.get("vlan_id"))
    auth = config.get("auth")
    if isinstance(auth, dict) and isinstance(auth.get("psk"), str):
        wlan.psk = auth["psk"]
    return wlan


def build_mist_wlan(config: dict[str, Any], site_id: str) -> WLAN:
    """Neutral WLAN for an ID-list vendor from an expanded template."""
    wlan = _base_wlan(config, site_id)
    if wlan.band:
        wlan.bands = band_to_bands(wlan.band)
    bands = to_string_list(config.get("bands")) if isinstance(config.get("bands"), list) else []
    if bands:
        wlan.bands = bands

    auth = config.get("auth")
    if isinstance(auth, dict):
        auth_type = auth.get("type")
        if auth_type == "sae":
            wlan.auth_type = "psk"
            wlan.pairwise = ["wpa3"]
        elif auth_type == "owe":
            wlan.auth_type = "open"
            wlan.config["auth_owe"] = True
        elif isinstance(auth_type, str):
            wlan.auth_type = auth_type
        pairwise = to_string_list(auth.get("pairwise")) if isinstance(auth.get("pairwise"), list) else []
        if pairwise:
            wlan.pairwise = pairwise

    if isinstance(config.get("apply_to"), str):
        wlan.config["apply_to"] = config["apply_to"]
    if isinstance(config.get("ap_ids"), list):
        wlan.config["ap_ids"] = list(config["ap_ids"])

    for key, value in config.items():
        if key not in _MIST_KNOWN and not key.startswith("_"):
            wlan.config[key] = value
    return wlan


def build_meraki_wlan(config: dict[str, Any], site_id: str) -> WLAN:
    """Neutral WLAN for a tag vendor from an expanded template."""
    wlan = _base_wlan(config, site_id)
    auth = config.get("auth")
    if isinstance(auth, dict) and isinstance(auth.get("type"), str):
        wlan.auth_type = auth["type"]
    if isinstance(config.get("encryption_mode"), str):
        wlan.encryption_mode = config["encryption_mode"]
    for key, value in config.items():
        if key not in _NEUTRAL_KNOWN and not key.startswith("_"):
            wlan.config[key] = value
    return wlan


def mist_needs_update(existing: WLAN, desired: WLAN) -> bool:
    """Compare the fields an ID-list vendor WLAN is reconciled on."""
    if existing.enabled != desired.enabled:
        return True
    if desired.band and existing.band != desired.band:
        return True
    if desired.bands and list(existing.bands) != list(desired.bands):
        return True
    if desired.vlan_id is not None and existing.vlan_id != desired.vlan_id:
        return True
    if desired.auth_type and existing.auth_type != desired.auth_type:
        return True
    if desired.pairwise and list(existing.pairwise) != list(desired.pairwise):
        return True
    if "apply_to" in desired.config and existing.config.get("apply_to", "") != desired.config["apply_to"]:
        return True
    if "ap_ids" in desired.config:
        if sorted(to_string_list(existing.config.get("ap_ids"))) != sorted(to_string_list(desired.config["ap_ids"])):
            return True
    return False


def _available_on_all(wlan: WLAN) -> bool:
    value = wlan.config.get("availableOnAllAps")
    return value if isinstance(value, bool) else True


def meraki_needs_update(existing: WLAN, desired: WLAN) -> bool:
    """Compare the fields a tag vendor WLAN is reconciled on."""
    if existing.ssid != desired.ssid:
        return True
    if existing.enabled != desired.enabled or existing.hidden != desired.hidden:
        return True
    if desired.band and existing.band != desired.band:
        return True
    if desired.vlan_id and existing.vlan_id != desired.vlan_id:
        return True
    if desired.auth_type and existing.auth_type != desired.auth_type:
        return True
    if desired.encryption_mode and existing.encryption_mode != desired.encryption_mode:
        return True
    existing_tags = sorted(to_string_list(existing.config.get("availabilityTags")))
    desired_tags = sorted(to_string_list(desired.config.get("availabilityTags")))
    if existing_tags != desired_tags:
        return True
    return _available_on_all(existing) != _available_on_all(desired)


class WLANReconciler:
    """Plans and applies the WLAN phase for one site.

    Args:
        site: Site whose WLAN references are reconciled
        templates: Template store for this run
        vendor: Vendor of the site's API label
    """

    def __init__(self, site: SiteConfiguration, templates: TemplateStore, vendor: str):
        self.site = site
        self.templates = templates
        self.vendor = vendor

    def _device_wlans(self) -> dict[str, Optional[list[str]]]:
        """Per-AP WLAN bindings; None for APs without their own ``wlan`` key."""
        result: dict[str, Optional[list[str]]] = {}
        for mac, config in sorted(self.site.device_configs(DeviceType.AP).items()):
            result[mac] = to_string_list(config["wlan"]) if "wlan" in config else None
        return result

    def collect_labels(self) -> list[str]:
        """Every referenced WLAN label, deduplicated in first-seen order.

        Order of sources: ``profiles.wlan``, site-level ``wlan``, then
        per-device ``wlan`` bindings.
        """
        labels: list[str] = []
        seen = set()
        sources = [self.site.wlan_profiles, self.site.wlan]
        sources.extend(bindings for bindings in self._device_wlans().values() if bindings)
        for source in sources:
            for label in source:
                if label not in seen:
                    seen.add(label)
                    labels.append(label)
        logger.info(f"Collected {len(labels)} unique WLAN label(s): {labels}")
        return labels

    def device_mapping(self) -> dict[str, list[str]]:
        """WLAN label -> sorted AP MACs that should broadcast it.

        Site-level labels apply to every AP without its own ``wlan`` key;
        an AP's own bindings replace the site-level ones for that AP.
        """
        mapping: dict[str, set[str]] = {}
        device_wlans = self._device_wlans()
        inheriting = [mac for mac, bindings in device_wlans.items() if bindings is None]
        for label in self.site.wlan:
            mapping.setdefault(label, set()).update(inheriting)
        for mac, bindings in device_wlans.items():
            for label in bindings or []:
                mapping.setdefault(label, set()).add(mac)
        return {label: sorted(macs) for label, macs in mapping.items()}

    def validate(self, check_templates: bool = True) -> None:
        """Check WLAN references before anything is expanded or written.

        Raises:
            ConfigurationError: Listing every violation found, sorted
        """
        declared = set(self.site.wlan_profiles)
        errors = []
        for label in self.site.wlan:
            if label not in declared:
                errors.append(f"site-level wlan references '{label}' which is not declared in profiles.wlan")
        for mac, bindings in self._device_wlans().items():
            for label in bindings or []:
                if label not in declared:
                    errors.append(f"device {mac} wlan references '{label}' which is not declared in profiles.wlan")
        if check_templates:
            for label in self.site.wlan_profiles:
                if self.templates.get_wlan_template(label) is None:
                    errors.append(f"profiles.wlan declares '{label}' but no WLAN template with that name exists")

        if errors:
            errors.sort()
            raise ConfigurationError("WLAN configuration errors:\n" + "\n".join(f"  - {e}" for e in errors))

    def expand(self, labels: list[str]) -> list[dict[str, Any]]:
        """Expanded template per label, each tagged with its label."""
        expanded = []
        for label in labels:
            config = self.templates.expand_wlan(label, self.vendor)
            if config is None:
                logger.warning(f"WLAN template '{label}' not found, skipping")
                continue
            expanded.append(config)
        return expanded

    # === Vendor scoping ===

    def _scope_by_ids(self, ctx: ApplyContext, label: str, config: dict[str, Any], macs: list[str]) -> WLAN:
        if macs:
            ap_ids = []
            for mac in macs:
                device = ctx.cache.get_device_by_mac(normalize_or_empty(mac))
                if device is not None and device.id:
                    ap_ids.append(device.id)
                    logger.debug(f"WLAN '{label}': resolved MAC {mac} to AP ID {device.id}")
                else:
                    logger.warning(f"WLAN '{label}': could not resolve MAC {mac} to an AP ID")
            if ap_ids:
                config["ap_ids"] = sorted(ap_ids)
                config["apply_to"] = "aps"
                logger.info(f"WLAN '{label}' will apply to {len(ap_ids)} specific AP(s)")
        elif label in self.site.wlan:
            config["apply_to"] = "aps"
            config["ap_ids"] = []
            logger.info(f"WLAN '{label}' (site-level) explicitly set with no applicable APs")
        else:
            config["apply_to"] = "site"
            logger.debug(f"WLAN '{label}' (profile-only) will apply to entire site")
        return build_mist_wlan(config, ctx.site_id)

    def _scope_by_tags(self, ctx: ApplyContext, label: str, config: dict[str, Any], macs: list[str]) -> WLAN:
        wlan = build_meraki_wlan(config, ctx.site_id)
        if macs or label in self.site.wlan:
            tag = generate_wlan_availability_tag(label)
            wlan.config["availabilityTags"] = [tag]
            wlan.config["availableOnAllAps"] = False
            logger.info(f"WLAN '{label}' restricted to {len(macs)} AP(s) via tag '{tag}'")
        else:
            wlan.config["availableOnAllAps"] = True
            logger.debug(f"WLAN '{label}' (profile-only) will broadcast on all APs")
        return wlan

    def _scoping(self) -> tuple[Callable, Callable[[WLAN, WLAN], bool]]:
        if self.vendor == "mist":
            return self._scope_by_ids, mist_needs_update
        if self.vendor == "meraki":
            return self._scope_by_tags, meraki_needs_update
        raise VendorCapabilityError(f"vendor {self.vendor} has no WLAN scoping model")

    # === Apply ===

    @timed("wlan_phase")
    async def reconcile(self, ctx: ApplyContext, report: ApplyReport) -> int:
        """Create or update every referenced WLAN.

        Per-WLAN failures are reported and the loop continues. In diff mode
        nothing is written.

        Returns:
            Number of WLANs written, or that would be written in diff mode

        Raises:
            ConfigurationError: On invalid WLAN references
            VendorCapabilityError: If the vendor cannot manage WLANs
        """
        labels = self.collect_labels()
        if not labels:
            return 0

        service = ctx.client.wlans
        if service is None:
            raise VendorCapabilityError(f"vendor {ctx.api_label} does not support WLANs")
        scope, needs_update = self._scoping()

        mapping = self.device_mapping()
        if self.vendor == "meraki":
            ctx.ap_tag_mapping = build_ap_tag_mapping(mapping)
            if ctx.ap_tag_mapping and not tags_are_managed(ctx.managed_keys_for(DeviceType.AP)):
                report.warn(
                    "WLAN availability tags will not be written: 'tags' is not in the managed keys for ap"
                )

        try:
            existing_wlans = await call_with_retry(service.list_by_site, ctx.site_id)
        except Exception as e:
            logger.warning(f"Failed to get existing WLANs for site {ctx.site_id}: {e}")
            existing_wlans = []
        existing_by_ssid = {w.ssid: w for w in existing_wlans if w.ssid}
        logger.debug(f"Found {len(existing_by_ssid)} existing WLAN(s) at site {ctx.site_name}")

        changes = 0
        for config in self.expand(labels):
            ssid = config.get("ssid")
            if not isinstance(ssid, str) or not ssid:
                logger.warning("WLAN template has no ssid field, skipping")
                continue
            label = str(config.pop(TEMPLATE_LABEL_KEY, ""))
            desired = scope(ctx, label, config, mapping.get(label, []))
            existing = existing_by_ssid.get(ssid)

            if existing is None:
                if ctx.diff_mode:
                    report.say(f"Would create WLAN '{ssid}' (template: {label})")
                    report.diffs[f"wlan:{ssid}"] = diff_lines({}, desired.to_dict())
                    report.wlans_created.append(ssid)
                    changes += 1
                    continue
                if await self._write(ctx, report, "create", label, desired, config):
                    changes += 1
                continue

            changed = needs_update(existing, desired)
            if not (changed or ctx.options.force):
                logger.debug(f"WLAN '{ssid}' is up to date")
                continue
            if ctx.diff_mode:
                if changed:
                    report.say(f"Would update WLAN '{ssid}' (template: {label})")
                    report.diffs[f"wlan:{ssid}"] = diff_lines(existing.to_dict(), desired.to_dict())
                else:
                    report.say(f"Would force update WLAN '{ssid}' (template: {label}) - no changes detected")
                report.wlans_updated.append(ssid)
                changes += 1
                continue
            if not changed:
                logger.info(f"Force updating WLAN '{ssid}' (template: {label}) - no changes detected")
            if await self._write(ctx, report, "update", label, desired, config, existing.id):
                changes += 1

        if changes and not ctx.diff_mode:
            logger.info(f"Applied {changes} WLAN change(s)")
        return changes

    async def _write(
        self,
        ctx: ApplyContext,
        report: ApplyReport,
        operation: str,
        label: str,
        desired: WLAN,
        config: dict[str, Any],
        wlan_id: Optional[str] = None,
    ) -> bool:
        service = ctx.client.wlans
        ssid = desired.ssid
        logger.info(f"WLAN {operation}: '{ssid}' (template: {label})")
        try:
            if operation == "create":
                await call_with_retry(service.create, desired, exceptions=CONNECT_EXCEPTIONS)
            else:
                await call_with_retry(service.update, wlan_id, desired)
        except Exception as e:
            logger.error(f"Failed to {operation} WLAN '{ssid}': {e}")
            report.wlans_failed.append(ssid)
            report.warn(self._failure_message(operation, ssid, label, config, e))
            if ctx.tracker is not None:
                ctx.tracker.log_change(f"{operation}_wlan", ssid, False, parameters=desired.to_dict(), error=str(e))
            return False

        if operation == "create":
            report.wlans_created.append(ssid)
            report.say(f"Created WLAN '{ssid}'")
        else:
            report.wlans_updated.append(ssid)
            report.say(f"Updated WLAN '{ssid}'")
        if ctx.tracker is not None:
            ctx.tracker.log_change(f"{operation}_wlan", ssid, True, parameters=desired.to_dict())
        return True

    @staticmethod
    def _failure_message(operation: str, ssid: str, label: str, config: dict[str, Any], error: Exception) -> str:
        parts = [f"Failed to {operation} WLAN '{ssid}'"]
        if label:
            parts.append(f"template: {label}")
        auth = config.get("auth")
        if isinstance(auth, dict) and auth.get("type"):
            parts.append(f"auth type: {auth['type']}")
        if config.get("band"):
            parts.append(f"band: {config['band']}")
        parts.append(f"error: {error}")
        message = " | ".join(parts)
        text = str(error).lower()
        if any(marker in text for marker in WPA3_HINT_MARKERS):
            message += f" | hint: {WPA3_HINT}"
        return message
