"""Apply orchestrator - runs the full reconciliation workflow for one site.

Phases, in order, for each requested device type:
1. Load templates (failure is a warning; configs stay unexpanded)
2. Managed-keys check (undeclared ownership forces diff-only mode)
3. Site file change detection (unchanged files skip device updates)
4. Resolve the site ID (cache first, then the API)
5. Optional cache refresh
6. Compute device sets and inventory eligibility
7. Assign
8. WLANs (APs only, before updates so new WLANs exist)
9. Update
10. Finalize (backup and file-hash update, or diff summary)
"""
import asyncio
import dataclasses
import logging
from pathlib import Path
from typing import Optional, Union

from ..config.settings import WificraftSettings
from ..config.site import SiteConfigLoader, SiteConfiguration
from ..config.templates import TemplateStore
from ..config_store.backups import BackupInfo, BackupManager, BackupValidation, RollbackResult
from ..config_store.file_hash import FileHashCache
from ..config_store.state_backup import save_state_backup
from ..errors import ApplyError, BackupError, ConfigurationError
from ..utils.audit_log import ChangeTracker
from ..utils.connection import call_with_retry
from ..utils.logging_config import timed_section
from ..vendors.base import CacheAccessor, DeviceType, VendorClient
from .batch_loader import DeviceBatchLoader
from .inventory import InventoryChecker
from .schema import ApplyContext, ApplyOptions, ApplyReport
from .updaters import DeviceUpdater, create_updater
from .wlan import WLANReconciler

logger = logging.getLogger(__name__)

DeviceTypesArg = Union[str, DeviceType, list]


def parse_device_types(value: DeviceTypesArg) -> list[DeviceType]:
    """``"all"``, one type, or a list of types; returned in canonical order.

    Raises:
        ConfigurationError: For unknown device types
    """
    try:
        if isinstance(value, (list, tuple, set)):
            requested = {DeviceType.parse(v) for v in value}
        elif str(value).lower() == "all":
            requested = set(DeviceType)
        else:
            requested = {DeviceType.parse(value)}
    except ValueError as e:
        raise ConfigurationError(str(e)) from e
    return [dt for dt in DeviceType if dt in requested]


class ApplyOrchestrator:
    """
    Reconciles site configuration files with vendor APIs.

    Usage:
        orchestrator = ApplyOrchestrator(settings, cache, {"mist-prod": client})
        report = await orchestrator.apply_site("HQ", "all", ApplyOptions(diff=True))
    """

    def __init__(
        self,
        settings: WificraftSettings,
        cache: Optional[CacheAccessor] = None,
        clients: Optional[dict[str, VendorClient]] = None,
        user: Optional[str] = None,
    ):
        """
        Initialize the orchestrator.

        Args:
            settings: Loaded settings
            cache: Cached vendor state (required for apply)
            clients: Vendor clients keyed by API label (required for apply)
            user: User recorded in the audit log
        """
        self.settings = settings
        self.cache = cache
        self.clients = dict(clients or {})
        self.user = user
        self.loader = SiteConfigLoader(settings.config_dir, settings.site_files)
        self.backups = BackupManager(settings.backups_path, settings.max_backups, settings.retention_days)
        self.file_hashes = FileHashCache(settings.file_hash_path)

    # === Apply ===

    async def apply_site(
        self,
        site_name: str,
        device_types: DeviceTypesArg = "all",
        options: Optional[ApplyOptions] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ApplyReport:
        """
        Apply a site's configuration for one or more device types.

        Args:
            site_name: Site name or key from the site files
            device_types: "all", a device type, or a list of types
            options: Mode flags (diff, force, refresh_cache)
            cancel_event: When set, the run stops at the next phase boundary

        Returns:
            ApplyReport with success/failure, planned or applied changes
        """
        options = options or ApplyOptions()
        report = ApplyReport(site_name=site_name, diff_mode=options.diff)

        try:
            await self._apply(site_name, device_types, options, cancel_event, report)
        except ApplyError as e:
            logger.error(f"Apply for site {site_name} failed: {e}")
            report.error = str(e)
            report.success = False
            return report

        report.success = True
        return report

    async def _apply(
        self,
        site_name: str,
        device_types: DeviceTypesArg,
        options: ApplyOptions,
        cancel_event: Optional[asyncio.Event],
        report: ApplyReport,
    ) -> None:
        types = parse_device_types(device_types)
        site = self.loader.find_site(site_name)
        report.site_name = site.name
        api_label = self.settings.resolve_api_label(site.api_label)
        api = self.settings.get_api(api_label)
        client = self.clients.get(api_label)
        if client is None or self.cache is None:
            raise ConfigurationError(f"no vendor client or cache available for API label {api_label}")
        logger.info(f"Applying {', '.join(str(t) for t in types)} configuration to site: {site.name} (API: {api_label})")

        # Step 1: Templates
        async with timed_section("load_templates", site.name):
            templates, templates_loaded = self._load_templates(report)

        # Step 2: Managed keys
        managed = {dt: api.managed_keys_for(str(dt)) for dt in DeviceType}
        forced_diff = set()
        for dt in types:
            if managed[dt] is None:
                forced_diff.add(dt)
                report.warn(
                    f"No managed keys configured for {dt} devices (apis.{api_label}.managed_keys.{dt}). "
                    "Configuration differences will be shown, but NO changes will be applied."
                )
        if forced_diff and forced_diff == set(types):
            report.diff_mode = True

        # WLAN references are validated before anything can be written
        if DeviceType.AP in types:
            WLANReconciler(site, templates, api.vendor).validate(check_templates=templates_loaded)

        # Step 3: Change detection
        changed = self._site_file_changed(site)

        # Step 4: Site ID
        async with timed_section("resolve_site", site.name):
            site_id = await self._resolve_site_id(site, client)
        logger.debug(f"Resolved site {site.name} to ID {site_id}")

        # Step 5: Cache refresh
        if options.refresh_cache:
            logger.info(f"Refreshing cache from API for site {site.name}...")
            async with timed_section("refresh_cache", site.name):
                await call_with_retry(client.refresh_cache, site_id)
        else:
            logger.debug("Using cached data (no API refresh)")

        applied = 0
        profile_map: Optional[dict[str, str]] = None
        for dt in types:
            type_options = dataclasses.replace(options, diff=options.diff or dt in forced_diff)
            ctx = ApplyContext(
                site=site,
                site_id=site_id,
                api_label=api_label,
                vendor=api.vendor,
                api=api,
                client=client,
                cache=self.cache,
                settings=self.settings,
                templates=templates,
                options=type_options,
                managed_keys=managed,
                tracker=ChangeTracker(site.name, str(dt), self.user),
                cancel_event=cancel_event,
                profile_name_to_id=profile_map,
            )
            skip_updates = not changed and not ctx.options.force and not ctx.diff_mode
            if skip_updates:
                logger.debug(f"No config file changes - skipping {dt} device updates but still checking WLANs")
            async with timed_section("apply_type", str(dt), site=site.name):
                applied += await self._apply_type(ctx, create_updater(dt), report, skip_updates)
            profile_map = ctx.profile_name_to_id

        # Step 10: Finalize
        self._finalize(site, report, applied)

    async def _apply_type(
        self,
        ctx: ApplyContext,
        updater: DeviceUpdater,
        report: ApplyReport,
        skip_updates: bool,
    ) -> int:
        """Steps 6-9 for one device type; returns the number of applied changes."""
        dt = updater.get_device_type()
        type_report = report.for_type(dt)

        # Step 6: Device sets
        ctx.checkpoint("inventory")
        configured = updater.get_configured_devices(ctx.site)
        assigned = updater.get_assigned_devices(ctx.cache, ctx.site_id)
        checker = InventoryChecker.build(ctx.cache, dt, self.settings.inventory_path, ctx.api_label)
        ctx.inventory[dt] = checker

        unassign = updater.find_devices_to_unassign(checker, assigned, configured)
        if unassign:
            logger.info(f"Found {len(unassign)} {dt}s to unassign from site {ctx.site_name} (in inventory but not in config)")

        ineligible = set()
        for status in updater.find_devices_inventory_status(checker, configured):
            if not status.in_cache:
                ineligible.add(status.mac)
                report.warn(f"{dt} {status.mac}: not found in API inventory")
                continue
            if not status.in_inventory:
                ineligible.add(status.mac)
                report.warn(f"{dt} {status.mac}: not in local inventory file")
            if status.current_site_id and status.current_site_id != ctx.site_id:
                where = status.current_site_id
                if status.current_site_name:
                    where = f"{status.current_site_name} ({status.current_site_id})"
                report.warn(f"{dt} {status.mac}: assigned to different site {where}")

        eligible = configured
        if ineligible and not ctx.options.force:
            eligible = [mac for mac in configured if mac not in ineligible]
            type_report.skipped_ineligible = len(ineligible)
            report.say(f"Skipping {len(ineligible)} {dt}(s) not in inventory.")
            if not eligible:
                report.say(f"No valid {dt}s to process. Use force to include devices not in inventory.")
                return 0

        # Step 7: Assign
        ctx.checkpoint("assign")
        assign: list[str] = []
        if not skip_updates:
            assign = checker.filter_by_inventory(updater.find_devices_to_assign(checker, eligible, ctx.site_id))
            if assign:
                logger.info(f"Found {len(assign)} {dt}s to assign to site {ctx.site_name}")

        # Step 8: WLANs
        applied = 0
        if dt == DeviceType.AP:
            ctx.checkpoint("wlan")
            try:
                written = await WLANReconciler(ctx.site, ctx.templates, ctx.vendor).reconcile(ctx, report)
                if not ctx.diff_mode:
                    applied += written
            except ConfigurationError as e:
                logger.error(f"Error applying WLANs: {e}")
                report.warn(f"Failed to apply WLANs: {e}")

        # Step 9: Update detection
        ctx.checkpoint("update")
        update: list[str] = []
        if not skip_updates:
            ctx.loaders[dt] = DeviceBatchLoader.load(ctx.cache, ctx.site_id, dt)
            plan = updater.find_devices_to_update(ctx, eligible)
            for mac in plan.not_in_cache:
                report.say(f"→ {dt} {mac}: not found in API cache for this site (skipping diff)")
            update = checker.filter_by_inventory(plan.macs)
            for mac in update:
                if mac in plan.diffs:
                    report.diffs[mac] = plan.diffs[mac]
            if update:
                logger.info(f"Found {len(update)} {dt}s to update in site {ctx.site_name}")

        type_report.unassign = list(unassign)
        type_report.assign = list(assign)
        type_report.update = list(update)

        if ctx.diff_mode:
            self._describe_plan(ctx, dt, report, eligible, unassign, assign, update)
            return applied

        # Mutations, in order: unassign, assign, update
        if unassign:
            ctx.checkpoint("unassign")
            await updater.unassign_devices(ctx, unassign)
            applied += len(unassign)
            report.say(f"Unassigned {len(unassign)} {dt}(s) from site {ctx.site_name}")
        if assign:
            ctx.checkpoint("assign_devices")
            await updater.assign_devices(ctx, assign)
            applied += len(assign)
            report.say(f"Assigned {len(assign)} {dt}(s) to site {ctx.site_name}")
        if update:
            ctx.checkpoint("update_devices")
            self._save_state(ctx, dt, update, report)
            result = await updater.update_device_configurations(ctx, update)
            type_report.failed = list(result.failed)
            applied += len(result.succeeded)
            if result.succeeded:
                report.say(f"Updated {len(result.succeeded)} {dt}(s) in site {ctx.site_name}")
            result.raise_for_failures(ctx.site_name)
        return applied

    def _describe_plan(
        self,
        ctx: ApplyContext,
        dt: DeviceType,
        report: ApplyReport,
        eligible: list[str],
        unassign: list[str],
        assign: list[str],
        update: list[str],
    ) -> None:
        steps = (("unassign", unassign, "from"), ("assign", assign, "to"), ("update", update, "in"))
        for verb, macs, preposition in steps:
            if macs:
                report.say(f"Would {verb} the following {dt}s {preposition} site {ctx.site_name}:")
                for mac in sorted(macs):
                    report.say(f"  - {mac}")
        total = len(eligible)
        if total:
            pending = len(update) + len(assign)
            if pending:
                report.say(f"Devices: {total} {dt}(s) checked, {pending} need updates, {total - pending} up to date")
            else:
                report.say(f"Devices: {total} {dt}(s) checked, all up to date")

    def _save_state(self, ctx: ApplyContext, dt: DeviceType, macs: list[str], report: ApplyReport) -> None:
        try:
            path = save_state_backup(
                self.backups, ctx.cache, ctx.site_name, ctx.site_id, ctx.api_label, dt, macs
            )
            report.state_backups.append(path)
        except BackupError as e:
            logger.warning(f"Failed to create API state backup: {e}")
            report.warn(f"Failed to create API state backup: {e}")

    def _finalize(self, site: SiteConfiguration, report: ApplyReport, applied: int) -> None:
        if report.no_changes:
            if report.warnings:
                report.say("No changes applied due to warnings in the configuration.")
            else:
                report.say("No changes needed - all devices and WLANs are already configured correctly.")
            return
        if applied == 0:
            if report.diff_mode:
                report.say("Diff mode completed - no changes have been applied")
            else:
                report.say("No changes were applied")
            return

        report.say(f"Successfully applied configuration to site {site.name}")
        if site.source_path is None:
            return
        try:
            report.backup_path = self.backups.create_backup_after_apply(site.source_path)
        except BackupError as e:
            logger.warning(f"Failed to create configuration backup: {e}")
            report.warn(f"Failed to create configuration backup: {e}")
        try:
            self.file_hashes.update(site.source_path)
        except OSError as e:
            logger.warning(f"Failed to update file hashes: {e}")
            report.warn(f"Failed to update file hashes: {e}")

    def _load_templates(self, report: ApplyReport) -> tuple[TemplateStore, bool]:
        try:
            return TemplateStore.load(self.settings.template_paths), True
        except ConfigurationError as e:
            logger.warning(f"Failed to load templates: {e} - continuing without template expansion")
            report.warn(f"Failed to load templates: {e}")
            return TemplateStore(), False

    def _site_file_changed(self, site: SiteConfiguration) -> bool:
        if site.source_path is None:
            return True
        changed = self.file_hashes.has_changed(site.source_path)
        if changed:
            logger.info(f"Changes detected in config file: {site.source_path}")
        return changed

    async def _resolve_site_id(self, site: SiteConfiguration, client: VendorClient) -> str:
        record = self.cache.get_site_by_name(site.name)
        if record is None and site.site_config.get("id"):
            record = self.cache.get_site_by_id(str(site.site_config["id"]))
        if record is None:
            logger.debug(f"Site {site.name} not in cache, asking the API")
            record = await call_with_retry(client.get_site_by_identifier, site.name)
        if record is None or not record.id:
            raise ConfigurationError(f"site '{site.name}' not found in cache or API")
        return record.id

    # === Backups ===

    def rollback(self, site_name: str, serial: int = 0) -> RollbackResult:
        """Restore a site file from backup ``serial``; never touches the API."""
        site = self.loader.find_site(site_name)
        if site.source_path is None:
            raise ConfigurationError(f"site '{site_name}' has no source file")
        tracker = ChangeTracker(site.name, user=self.user)
        try:
            result = self.backups.rollback(site.name, site.source_path, serial)
        except BackupError as e:
            tracker.log_change("rollback", str(site.source_path), False, parameters={"serial": serial}, error=str(e))
            raise
        tracker.log_change(
            "rollback", str(site.source_path), True,
            parameters={"serial": serial, "previous_backup": str(result.previous_backup)},
        )
        return result

    def list_backups(self, site_name: str) -> list[BackupInfo]:
        site = self.loader.find_site(site_name)
        return self.backups.list_backups(site.name)

    def cleanup_backups(self, retention_days: Optional[int] = None) -> list[Path]:
        return self.backups.cleanup(retention_days=retention_days)

    def validate_backup(self, path: Path) -> BackupValidation:
        return self.backups.validate_backup(path)
