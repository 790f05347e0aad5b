"""Per-device-type set computation and mutation.

One ``DeviceUpdater`` class serves every device type. Type-specific
behaviour is composed in as desired-config hooks; the AP variant adds
availability-tag merging for tag-scoped vendors.

Safety: every mutating method re-checks each target MAC against the
dual-inventory gate before the first remote call and refuses the whole
batch on a violation.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from ..errors import ApplyError, DeviceNotFoundError, InventorySafetyError
from ..utils import keypath
from ..utils.connection import CONNECT_EXCEPTIONS, call_with_retry
from ..utils.logging_config import timed
from ..utils.macaddr import normalize_or_empty
from ..vendors.base import CacheAccessor, DeviceType
from ..config.site import SiteConfiguration
from .batch_loader import DeviceBatchLoader
from .comparator import (
    TRANSLATED_FIELDS,
    compare,
    diff_lines,
    filter_by_managed_keys,
    filter_status_fields,
    is_alias_field,
)
from .inventory import InventoryChecker
from .schema import ApplyContext, BatchResult, DeviceInventoryStatus
from .tags import merge_wlan_tags_for_ap

logger = logging.getLogger(__name__)

# Vendors that scope WLANs to APs with availability tags
TAG_SCOPED_VENDORS = frozenset({"meraki"})

DesiredHook = Callable[[ApplyContext, str, dict[str, Any], dict[str, Any]], dict[str, Any]]


@dataclass
class UpdatePlan:
    """Devices whose live config diverges, plus per-device diff lines."""
    macs: list[str] = field(default_factory=list)
    diffs: dict[str, list[str]] = field(default_factory=dict)
    not_in_cache: list[str] = field(default_factory=list)


def translate_name_fields(config: dict[str, Any], profile_name_to_id: dict[str, str]) -> dict[str, Any]:
    """Replace ``*_name`` alias fields with their ID form.

    ``deviceprofile_name`` becomes ``deviceprofile_id`` via the run's
    profile map. Other alias fields (except ``name``) have no translation
    here and are dropped so they are never written.
    """
    result = {}
    for key, value in config.items():
        if not is_alias_field(key):
            result[key] = value
            continue
        if key == "deviceprofile_name":
            profile_id = profile_name_to_id.get(str(value))
            if profile_id:
                result[TRANSLATED_FIELDS[key]] = profile_id
            else:
                logger.warning(f"Device profile '{value}' not found - deviceprofile_id not set")
            continue
        logger.debug(f"Dropping untranslated alias field {key}")
    return result


def tags_are_managed(managed_keys: Optional[list[str]]) -> bool:
    return not managed_keys or keypath.is_key_managed("tags", managed_keys)


def ap_tag_hook(ctx: ApplyContext, mac: str, desired: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    """Merge WLAN availability tags into an AP's desired config."""
    if ctx.vendor not in TAG_SCOPED_VENDORS:
        return desired
    if not tags_are_managed(ctx.managed_keys_for(DeviceType.AP)):
        return desired
    return merge_wlan_tags_for_ap(mac, desired, current, ctx.ap_tag_mapping)


class DeviceUpdater:
    """Computes device sets and applies mutations for one device type.

    Args:
        device_type: The type this updater serves
        hooks: Functions applied in order to each device's desired config
            after template expansion
    """

    def __init__(self, device_type: DeviceType, hooks: tuple[DesiredHook, ...] = ()):
        self.device_type = DeviceType.parse(device_type)
        self.hooks = tuple(hooks)

    def get_device_type(self) -> DeviceType:
        return self.device_type

    # === Device sets ===

    def get_configured_devices(self, site: SiteConfiguration) -> list[str]:
        """Normalized MACs of every device of this type in the site config."""
        return sorted(site.device_configs(self.device_type))

    def get_assigned_devices(self, cache: CacheAccessor, site_id: str) -> list[str]:
        """Normalized MACs of devices of this type the cache shows at the site."""
        macs = {normalize_or_empty(d.mac) for d in cache.get_devices_by_site(site_id, str(self.device_type))}
        macs.discard("")
        return sorted(macs)

    def get_device_config_from_site(self, site: SiteConfiguration, mac: str) -> Optional[dict[str, Any]]:
        key = normalize_or_empty(mac)
        if not key:
            return None
        config = site.device_configs(self.device_type).get(key)
        return dict(config) if config is not None else None

    def find_devices_inventory_status(
        self, checker: InventoryChecker, configured: list[str]
    ) -> list[DeviceInventoryStatus]:
        """Membership and current site of each configured device."""
        statuses = []
        for mac in configured:
            status = DeviceInventoryStatus(
                mac=mac,
                in_cache=checker.is_in_api_inventory(mac),
                in_inventory=checker.is_in_local_inventory(mac),
            )
            if status.in_cache:
                site_id, site_name, found = checker.get_site_assignment(mac)
                if found:
                    status.current_site_id = site_id
                    status.current_site_name = site_name
            statuses.append(status)
        logger.debug(f"Inventory status check completed for {len(statuses)} {self.device_type} device(s)")
        return statuses

    def find_devices_to_unassign(
        self, checker: InventoryChecker, assigned: list[str], configured: list[str]
    ) -> list[str]:
        """Assigned devices no longer configured, limited to devices this tool may touch."""
        wanted = set(configured)
        result = []
        for mac in assigned:
            if mac in wanted:
                continue
            if checker.is_in_inventory(mac):
                result.append(mac)
                logger.debug(f"{self.device_type} {mac} will be unassigned (in inventory but not in config)")
            else:
                logger.info(f"{self.device_type} {mac} is assigned but not in config or inventory - skipping unassign")
        return sorted(result)

    def find_devices_to_assign(
        self, checker: InventoryChecker, configured: list[str], site_id: str
    ) -> list[str]:
        """Configured devices that are unassigned or assigned elsewhere.

        Only devices passing the dual-inventory gate are returned.
        """
        result = []
        for mac in configured:
            if not checker.is_in_api_inventory(mac):
                logger.warning(f"{self.device_type} {mac} is configured but not found in API inventory")
                continue
            if not checker.is_in_local_inventory(mac):
                logger.debug(f"{self.device_type} {mac} is not in the local inventory file - not assigning")
                continue
            current_site, _, found = checker.get_site_assignment(mac)
            if not found or current_site != site_id:
                result.append(mac)
        return sorted(result)

    # === Desired state ===

    def desired_config(self, ctx: ApplyContext, mac: str, current: dict[str, Any]) -> Optional[dict[str, Any]]:
        """Expanded desired config for one device with all hooks applied."""
        config = self.get_device_config_from_site(ctx.site, mac)
        if config is None:
            return None
        desired = ctx.templates.expand_device_config(config, ctx.vendor)
        for hook in self.hooks:
            desired = hook(ctx, mac, desired, current)
        return desired

    def find_devices_to_update(self, ctx: ApplyContext, configured: list[str]) -> UpdatePlan:
        """Devices whose live config diverges from desired under the managed keys."""
        loader = self._loader(ctx)
        managed = ctx.managed_keys_for(self.device_type)
        plan = UpdatePlan()

        for mac in configured:
            if not loader.has_device(mac):
                plan.not_in_cache.append(mac)
                continue
            device = loader.get_device_by_mac(mac)

            current = device.to_config_map()
            desired = self.desired_config(ctx, mac, current)
            if desired is None:
                logger.warning(f"{self.device_type} {mac} is in the list but not found in site configuration")
                continue

            if compare(current, desired, managed):
                plan.macs.append(mac)
                logger.debug(f"{self.device_type} {mac} needs configuration update")
                if ctx.diff_mode and ctx.options.show_diff:
                    plan.diffs[mac] = diff_lines(current, desired, managed)
            else:
                logger.debug(f"{self.device_type} {mac} configuration is up to date")

        plan.macs.sort()
        return plan

    def export_current_config(self, loader: DeviceBatchLoader, mac: str) -> dict[str, Any]:
        """Live config of one device without status fields."""
        return filter_status_fields(loader.get_device_by_mac(mac).to_config_map())

    # === Mutations ===

    def _gate(self, ctx: ApplyContext, macs: list[str], operation: str) -> None:
        checker = ctx.inventory.get(self.device_type)
        for mac in macs:
            if checker is None or not checker.is_in_inventory(mac):
                logger.error(f"SAFETY CHECK FAILED: {self.device_type} {mac} is not in inventory - refusing to {operation}")
                raise InventorySafetyError(mac, operation)

    def _loader(self, ctx: ApplyContext) -> DeviceBatchLoader:
        loader = ctx.loaders.get(self.device_type)
        if loader is None:
            loader = DeviceBatchLoader.load(ctx.cache, ctx.site_id, self.device_type)
            ctx.loaders[self.device_type] = loader
        return loader

    async def _profile_map(self, ctx: ApplyContext) -> dict[str, str]:
        if ctx.profile_name_to_id is None:
            try:
                profiles = await call_with_retry(ctx.client.get_device_profiles)
                ctx.profile_name_to_id = {
                    str(p["name"]): str(p["id"]) for p in profiles if p.get("name") and p.get("id")
                }
            except Exception as e:
                logger.warning(f"Could not build profile name map: {e} - profile translations may fail")
                ctx.profile_name_to_id = {}
        return ctx.profile_name_to_id

    def _audit(self, ctx: ApplyContext, operation: str, target: str, success: bool, **kwargs) -> None:
        if ctx.tracker is not None:
            ctx.tracker.log_change(operation, target, success, **kwargs)

    async def assign_devices(self, ctx: ApplyContext, macs: list[str]) -> None:
        """Assign devices to the run's site."""
        if not macs:
            return
        self._gate(ctx, macs, "assign")
        try:
            await call_with_retry(
                ctx.client.assign_devices, ctx.site_id, list(macs), exceptions=CONNECT_EXCEPTIONS
            )
        except Exception as e:
            self._audit(ctx, "assign", ",".join(macs), False, parameters={"site_id": ctx.site_id}, error=str(e))
            raise ApplyError(f"error assigning {self.device_type}s to site {ctx.site_name}: {e}") from e
        self._audit(ctx, "assign", ",".join(macs), True, parameters={"site_id": ctx.site_id})
        logger.info(f"Assigned {len(macs)} {self.device_type} device(s) to site {ctx.site_name}")

    async def unassign_devices(self, ctx: ApplyContext, macs: list[str]) -> None:
        """Release devices from the run's site."""
        if not macs:
            return
        self._gate(ctx, macs, "unassign")
        try:
            await call_with_retry(ctx.client.unassign_devices, list(macs))
        except Exception as e:
            self._audit(ctx, "unassign", ",".join(macs), False, error=str(e))
            raise ApplyError(f"error unassigning {self.device_type}s from site {ctx.site_name}: {e}") from e
        self._audit(ctx, "unassign", ",".join(macs), True)
        logger.info(f"Unassigned {len(macs)} {self.device_type} device(s) from site {ctx.site_name}")

    @timed("update_devices")
    async def update_device_configurations(self, ctx: ApplyContext, macs: list[str]) -> BatchResult:
        """Write managed fields to each device, one at a time.

        Every device is attempted; failures are collected rather than
        raised so the caller decides the policy (the orchestrator turns any
        failure into one aggregate error after the batch).

        Raises:
            InventorySafetyError: If any target fails the inventory gate;
                no device is written in that case
        """
        result = BatchResult()
        if not macs:
            return result

        self._gate(ctx, macs, "update")
        loader = self._loader(ctx)
        profile_map = await self._profile_map(ctx)
        managed = ctx.managed_keys_for(self.device_type)
        logger.info(f"Updating configuration for {len(macs)} {self.device_type} device(s) in site {ctx.site_name}")

        for mac in macs:
            try:
                device = loader.get_device_by_mac(mac)
            except DeviceNotFoundError as e:
                result.failed.append((mac, str(e)))
                continue
            if not device.id:
                result.failed.append((mac, "device has no ID"))
                continue

            current = device.to_config_map()
            desired = self.desired_config(ctx, mac, current)
            if desired is None:
                result.failed.append((mac, "not found in site configuration"))
                continue

            payload = filter_by_managed_keys(translate_name_fields(desired, profile_map), managed)
            payload["site_id"] = ctx.site_id

            try:
                await call_with_retry(ctx.client.update_device, ctx.site_id, device.id, payload)
            except Exception as e:
                logger.error(f"Error updating {self.device_type} {mac} configuration via API: {e}")
                result.failed.append((mac, str(e)))
                self._audit(ctx, "update_device", mac, False, parameters=payload,
                            before_state=filter_by_managed_keys(current, managed), error=str(e))
                continue

            result.succeeded.append(mac)
            self._audit(ctx, "update_device", mac, True, parameters=payload,
                        before_state=filter_by_managed_keys(current, managed))
            logger.info(f"Updated configuration for {self.device_type} {mac} ({device.name or '<unnamed>'})")

        if result.failed:
            logger.error(f"Configuration failed for {len(result.failed)} out of {len(macs)} {self.device_type} device(s)")
            for failed_mac, reason in result.failed:
                logger.error(f"  - Failed device: {failed_mac}: {reason}")
        return result


# Desired-config hooks per device type
UPDATER_HOOKS: dict[DeviceType, tuple[DesiredHook, ...]] = {
    DeviceType.AP: (ap_tag_hook,),
    DeviceType.SWITCH: (),
    DeviceType.GATEWAY: (),
}


def create_updater(device_type: str) -> DeviceUpdater:
    """Factory for the updater of a device type."""
    dt = DeviceType.parse(device_type)
    return DeviceUpdater(dt, UPDATER_HOOKS[dt])
