"""Shared fixtures: in-memory cache and vendor client fakes plus an on-disk workspace."""
import copy
import json
from pathlib import Path
from typing import Any, Optional

import pytest
import yaml

from wificraft.apply_engine.schema import ApplyContext, ApplyOptions
from wificraft.config.settings import WificraftSettings
from wificraft.config.site import SiteConfiguration
from wificraft.config.templates import TemplateStore
from wificraft.utils.macaddr import normalize_or_empty
from wificraft.vendors.base import (
    WLAN,
    CacheAccessor,
    DeviceRecord,
    DeviceType,
    InventoryItem,
    SiteRecord,
    VendorClient,
    WLANService,
)

SITE_ID = "site-hq"
OTHER_SITE_ID = "site-branch"
AP1 = "aa:bb:cc:dd:ee:01"
AP2 = "aa:bb:cc:dd:ee:02"
AP3 = "aa:bb:cc:dd:ee:03"


class FakeCache(CacheAccessor):
    """Cache backed by plain dicts."""

    def __init__(self):
        self.sites: dict[str, SiteRecord] = {}
        self.inventory: dict[str, list[InventoryItem]] = {}
        self.devices: dict[str, DeviceRecord] = {}

    def add_site(self, site_id: str, name: str) -> None:
        self.sites[site_id] = SiteRecord(id=site_id, name=name)

    def add_inventory(self, mac: str, device_type: str = "ap", site_id: str = "") -> None:
        key = normalize_or_empty(mac)
        self.inventory.setdefault(device_type, []).append(
            InventoryItem(mac=key, device_type=device_type, site_id=site_id, id=f"dev-{key}")
        )

    def add_device(
        self,
        mac: str,
        device_type: str = "ap",
        site_id: str = SITE_ID,
        name: Optional[str] = None,
        config: Optional[dict[str, Any]] = None,
        inventory: bool = True,
    ) -> DeviceRecord:
        key = normalize_or_empty(mac)
        device = DeviceRecord(
            mac=key,
            device_type=device_type,
            id=f"dev-{key}",
            name=name,
            site_id=site_id,
            config=dict(config or {}),
        )
        self.devices[key] = device
        if inventory:
            self.add_inventory(mac, device_type, site_id)
        return device

    def get_inventory(self, device_type: str, api_label: Optional[str] = None) -> list[InventoryItem]:
        return list(self.inventory.get(device_type, []))

    def get_site_by_id(self, site_id: str) -> Optional[SiteRecord]:
        return self.sites.get(site_id)

    def get_site_by_name(self, name: str) -> Optional[SiteRecord]:
        for site in self.sites.values():
            if site.name == name:
                return site
        return None

    def get_devices_by_site(self, site_id: str, device_type: str) -> list[DeviceRecord]:
        return [
            d for d in self.devices.values()
            if d.site_id == site_id and d.device_type == device_type
        ]

    def get_device_by_mac(self, mac: str) -> Optional[DeviceRecord]:
        return self.devices.get(normalize_or_empty(mac))


class FakeWLANService(WLANService):
    """Stores WLANs in memory; SSIDs in ``fail_ssids`` raise on write.

    SSIDs in ``time_out_after_create`` are stored, then the first create
    call for them raises ``TimeoutError``.
    """

    def __init__(self):
        self.wlans: dict[str, WLAN] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail_ssids: dict[str, str] = {}
        self.time_out_after_create: set[str] = set()
        self._next_id = 1

    async def list_by_site(self, site_id: str) -> list[WLAN]:
        return [copy.deepcopy(w) for w in self.wlans.values() if w.site_id == site_id]

    def _check(self, wlan: WLAN) -> None:
        if wlan.ssid in self.fail_ssids:
            raise RuntimeError(self.fail_ssids[wlan.ssid])

    async def create(self, wlan: WLAN) -> WLAN:
        self.calls.append(("create", wlan.ssid))
        self._check(wlan)
        stored = copy.deepcopy(wlan)
        stored.id = f"wlan-{self._next_id}"
        self._next_id += 1
        self.wlans[stored.id] = stored
        if wlan.ssid in self.time_out_after_create:
            self.time_out_after_create.discard(wlan.ssid)
            raise TimeoutError("controller did not answer")
        return copy.deepcopy(stored)

    async def update(self, wlan_id: str, wlan: WLAN) -> WLAN:
        self.calls.append(("update", wlan.ssid))
        self._check(wlan)
        stored = copy.deepcopy(wlan)
        stored.id = wlan_id
        self.wlans[wlan_id] = stored
        return copy.deepcopy(stored)


class FakeClient(VendorClient):
    """Records every call; MACs in ``fail_updates`` fail their device update."""

    def __init__(self, label: str = "mist-prod", vendor: str = "mist", cache: Optional[FakeCache] = None,
                 supports_wlans: bool = True):
        super().__init__(label, vendor)
        self.cache = cache
        self.calls: list[tuple] = []
        self.fail_updates: dict[str, str] = {}
        self.fail_assign: Optional[str] = None
        self.profiles: list[dict[str, Any]] = []
        self._wlans = FakeWLANService() if supports_wlans else None

    @property
    def wlans(self) -> Optional[WLANService]:
        return self._wlans

    @property
    def mutations(self) -> list[tuple]:
        return [c for c in self.calls if c[0] in ("assign", "unassign", "update_device")]

    async def get_site_by_identifier(self, identifier: str) -> Optional[SiteRecord]:
        self.calls.append(("get_site", identifier))
        if self.cache is None:
            return None
        return self.cache.get_site_by_name(identifier) or self.cache.get_site_by_id(identifier)

    async def get_device_profiles(self) -> list[dict[str, Any]]:
        self.calls.append(("get_device_profiles",))
        return list(self.profiles)

    async def update_device(self, site_id: str, device_id: str, payload: dict[str, Any]) -> dict[str, Any]:
        self.calls.append(("update_device", device_id, copy.deepcopy(payload)))
        mac = device_id.replace("dev-", "")
        if mac in self.fail_updates:
            raise RuntimeError(self.fail_updates[mac])
        return payload

    async def assign_devices(self, site_id: str, macs: list[str]) -> None:
        self.calls.append(("assign", site_id, list(macs)))
        if self.fail_assign:
            raise RuntimeError(self.fail_assign)

    async def unassign_devices(self, macs: list[str]) -> None:
        self.calls.append(("unassign", list(macs)))

    async def refresh_cache(self, site_id: Optional[str] = None) -> None:
        self.calls.append(("refresh_cache", site_id))


class Workspace:
    """A config directory with settings, site file, inventory and templates."""

    def __init__(self, root: Path):
        self.root = root
        self.config_dir = root / "config"
        self.config_dir.mkdir()
        self.site_path = self.config_dir / "sites.json"
        self.backup_dir = root / "backups"

    def write_site(self, site: dict[str, Any], key: str = "hq") -> Path:
        document = {"version": 1, "config": {"sites": {key: site}}}
        self.site_path.write_text(json.dumps(document, indent=2), encoding="utf-8")
        return self.site_path

    def write_inventory(self, ap: list[str] = (), switch: list[str] = (), gateway: list[str] = ()) -> None:
        data = {"inventory": {"ap": list(ap), "switch": list(switch), "gateway": list(gateway)}}
        (self.config_dir / "inventory.yaml").write_text(yaml.safe_dump(data), encoding="utf-8")

    def write_templates(self, templates: dict[str, Any]) -> None:
        (self.config_dir / "templates.yaml").write_text(yaml.safe_dump(templates), encoding="utf-8")

    def settings(self, managed_keys: Optional[dict[str, list[str]]] = None,
                 label: str = "mist-prod", **extra) -> WificraftSettings:
        api: dict[str, Any] = {"vendor": label.split("-")[0]}
        if managed_keys is not None:
            api["managed_keys"] = managed_keys
        data = {
            "config_dir": "config",
            "site_files": ["sites.json"],
            "inventory_file": "inventory.yaml",
            "template_files": ["templates.yaml"],
            "backups": {"dir": "backups", "max": extra.pop("max_backups", 3)},
            "apis": {label: api},
        }
        data.update(extra)
        return WificraftSettings.from_dict(data, base_dir=self.root)


def site_document(
    aps: Optional[dict[str, dict]] = None,
    wlan: Optional[list[str]] = None,
    profiles_wlan: Optional[list[str]] = None,
    api: str = "mist-prod",
    switches: Optional[dict[str, dict]] = None,
) -> dict[str, Any]:
    """One site entry for ``config.sites``."""
    return {
        "site_config": {"name": "HQ", "api": api},
        "profiles": {"wlan": list(profiles_wlan or [])},
        "wlan": list(wlan or []),
        "devices": {"ap": aps or {}, "switch": switches or {}, "gateway": {}},
    }


CORP_TEMPLATE = {"ssid": "Corp", "band": "dual", "vlan_id": 20, "auth": {"type": "psk", "psk": "secret123"}}
GUEST_TEMPLATE = {"ssid": "Guest", "band": "5", "auth": {"type": "open"}}


@pytest.fixture
def cache() -> FakeCache:
    c = FakeCache()
    c.add_site(SITE_ID, "HQ")
    c.add_site(OTHER_SITE_ID, "Branch")
    return c


@pytest.fixture
def client(cache) -> FakeClient:
    return FakeClient(cache=cache)


@pytest.fixture
def workspace(tmp_path) -> Workspace:
    ws = Workspace(tmp_path)
    ws.write_templates({"wlan": {"corp": CORP_TEMPLATE, "guest": GUEST_TEMPLATE}})
    ws.write_inventory()
    return ws


def make_context(
    workspace: Workspace,
    cache: FakeCache,
    client: FakeClient,
    site_data: dict[str, Any],
    managed_keys: Optional[dict[str, list[str]]] = None,
    options: Optional[ApplyOptions] = None,
    label: str = "mist-prod",
) -> ApplyContext:
    """ApplyContext for driving a single phase directly."""
    workspace.write_site(site_data)
    settings = workspace.settings(managed_keys=managed_keys, label=label)
    api = settings.get_api(label)
    return ApplyContext(
        site=SiteConfiguration.from_dict("hq", site_data, workspace.site_path),
        site_id=SITE_ID,
        api_label=label,
        vendor=api.vendor,
        api=api,
        client=client,
        cache=cache,
        settings=settings,
        templates=TemplateStore.load(settings.template_paths),
        options=options or ApplyOptions(),
        managed_keys={dt: api.managed_keys_for(str(dt)) for dt in DeviceType},
    )
