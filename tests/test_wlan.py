"""Tests for WLAN reconciliation."""
import pytest

from wificraft.apply_engine.schema import ApplyOptions, ApplyReport
from wificraft.apply_engine.updaters import ap_tag_hook
from wificraft.apply_engine.wlan import (
    WLANReconciler,
    band_to_bands,
    build_meraki_wlan,
    build_mist_wlan,
    mist_needs_update,
)
from wificraft.config.site import SiteConfiguration
from wificraft.config.templates import TemplateStore
from wificraft.errors import ConfigurationError, VendorCapabilityError
from wificraft.vendors.base import WLAN

from conftest import AP1, AP2, SITE_ID, FakeClient, make_context, site_document


def reconciler(ctx) -> WLANReconciler:
    return WLANReconciler(ctx.site, ctx.templates, ctx.vendor)


class TestBuildWlan:
    """Tests for template -> WLAN conversion."""

    @pytest.mark.parametrize("band,expected", [
        ("dual", ["24", "5"]),
        ("all", ["24", "5"]),
        ("2.4", ["24"]),
        ("24", ["24"]),
        ("5", ["5"]),
        ("6", ["6"]),
    ])
    def test_band_to_bands(self, band, expected):
        assert band_to_bands(band) == expected

    def test_sae_maps_to_wpa3_psk(self):
        """SAE becomes PSK with WPA3 pairwise ciphers."""
        wlan = build_mist_wlan({"ssid": "Secure", "auth": {"type": "sae", "psk": "pw"}}, SITE_ID)
        assert wlan.auth_type == "psk"
        assert wlan.pairwise == ["wpa3"]
        assert wlan.psk == "pw"

    def test_owe_maps_to_open_with_flag(self):
        """OWE becomes open auth with the OWE flag set."""
        wlan = build_mist_wlan({"ssid": "Cafe", "auth": {"type": "owe"}}, SITE_ID)
        assert wlan.auth_type == "open"
        assert wlan.config["auth_owe"] is True

    def test_explicit_pairwise_wins(self):
        """An explicit pairwise list overrides the SAE default."""
        wlan = build_mist_wlan({"ssid": "S", "auth": {"type": "sae", "pairwise": ["wpa3", "wpa2-ccmp"]}}, SITE_ID)
        assert wlan.pairwise == ["wpa3", "wpa2-ccmp"]

    def test_unknown_fields_pass_through(self):
        """Fields outside the known set are carried in config; private ones are not."""
        wlan = build_mist_wlan({"ssid": "S", "roam_mode": "11r", "_template_label": "x"}, SITE_ID)
        assert wlan.config == {"roam_mode": "11r"}

    def test_vlan_coercion(self):
        """String VLANs are parsed; booleans are ignored."""
        assert build_mist_wlan({"ssid": "S", "vlan_id": "30"}, SITE_ID).vlan_id == 30
        assert build_mist_wlan({"ssid": "S", "vlan_id": True}, SITE_ID).vlan_id is None

    def test_meraki_keeps_auth_and_encryption(self):
        """Tag vendors keep the template's auth type and encryption mode."""
        wlan = build_meraki_wlan({"ssid": "G", "auth": {"type": "psk"}, "encryption_mode": "wpa"}, SITE_ID)
        assert wlan.auth_type == "psk"
        assert wlan.encryption_mode == "wpa"

    def test_enabled_always_compared(self):
        """A disabled live WLAN differs from a desired WLAN that defaults to enabled."""
        desired = build_mist_wlan({"ssid": "S"}, SITE_ID)
        assert mist_needs_update(WLAN(ssid="S", enabled=False), desired)
        assert not mist_needs_update(WLAN(ssid="S"), desired)


class TestValidation:
    """Tests for WLAN reference validation."""

    def test_collects_every_error_sorted(self, workspace):
        """All violations are reported together, sorted."""
        site = SiteConfiguration.from_dict("hq", site_document(
            aps={AP1: {"wlan": ["rogue"]}},
            wlan=["missing"],
            profiles_wlan=["corp", "ghost"],
        ))
        templates = TemplateStore.load([workspace.config_dir / "templates.yaml"])

        with pytest.raises(ConfigurationError) as exc:
            WLANReconciler(site, templates, "mist").validate()

        lines = str(exc.value).splitlines()
        assert lines[0] == "WLAN configuration errors:"
        assert lines[1:] == sorted(lines[1:])
        assert len(lines) == 4
        assert "'ghost'" in str(exc.value)
        assert "'missing'" in str(exc.value)
        assert "device aabbccddee01 wlan references 'rogue'" in str(exc.value)

    def test_template_check_can_be_skipped(self, workspace):
        """Missing templates are not reported when template checking is off."""
        site = SiteConfiguration.from_dict("hq", site_document(profiles_wlan=["ghost"]))
        WLANReconciler(site, TemplateStore(), "mist").validate(check_templates=False)

    def test_valid_config_passes(self, workspace):
        site = SiteConfiguration.from_dict("hq", site_document(wlan=["corp"], profiles_wlan=["corp"]))
        templates = TemplateStore.load([workspace.config_dir / "templates.yaml"])
        WLANReconciler(site, templates, "mist").validate()


class TestLabelsAndMapping:
    """Tests for label collection and AP mapping."""

    def test_collect_labels_first_seen_order(self):
        """Profiles, then site-level, then device bindings; deduplicated."""
        site = SiteConfiguration.from_dict("hq", site_document(
            aps={AP1: {"wlan": ["guest", "extra"]}},
            wlan=["corp"],
            profiles_wlan=["guest", "corp"],
        ))
        assert WLANReconciler(site, TemplateStore(), "mist").collect_labels() == ["guest", "corp", "extra"]

    def test_device_bindings_replace_site_level(self):
        """Site-level WLANs reach only APs without their own wlan key."""
        site = SiteConfiguration.from_dict("hq", site_document(
            aps={AP1: {}, AP2: {"wlan": ["guest"]}},
            wlan=["corp"],
            profiles_wlan=["corp", "guest"],
        ))
        mapping = WLANReconciler(site, TemplateStore(), "mist").device_mapping()
        assert mapping == {"corp": ["aabbccddee01"], "guest": ["aabbccddee02"]}


class TestMistReconcile:
    """Tests for ID-list scoping."""

    @pytest.mark.asyncio
    async def test_create_scoped_then_idempotent(self, workspace, cache, client):
        """A site-level WLAN is scoped to AP IDs; a second run writes nothing."""
        cache.add_device(AP1)
        ctx = make_context(workspace, cache, client, site_document(
            aps={AP1: {}}, wlan=["corp"], profiles_wlan=["corp"],
        ))

        report = ApplyReport(site_name="HQ")
        assert await reconciler(ctx).reconcile(ctx, report) == 1
        assert report.wlans_created == ["Corp"]
        stored = next(iter(client.wlans.wlans.values()))
        assert stored.config["apply_to"] == "aps"
        assert stored.config["ap_ids"] == ["dev-aabbccddee01"]
        assert stored.bands == ["24", "5"]
        assert stored.vlan_id == 20

        calls_before = list(client.wlans.calls)
        second = ApplyReport(site_name="HQ")
        assert await reconciler(ctx).reconcile(ctx, second) == 0
        assert client.wlans.calls == calls_before
        assert second.wlans_created == [] and second.wlans_updated == []

    @pytest.mark.asyncio
    async def test_profile_only_applies_to_site(self, workspace, cache, client):
        """A WLAN declared only in profiles broadcasts site-wide."""
        ctx = make_context(workspace, cache, client, site_document(profiles_wlan=["guest"]))
        await reconciler(ctx).reconcile(ctx, ApplyReport(site_name="HQ"))
        stored = next(iter(client.wlans.wlans.values()))
        assert stored.config["apply_to"] == "site"

    @pytest.mark.asyncio
    async def test_site_level_without_aps(self, workspace, cache, client):
        """A site-level WLAN with no inheriting APs gets an empty AP list."""
        ctx = make_context(workspace, cache, client, site_document(
            aps={AP1: {"wlan": ["guest"]}}, wlan=["corp"], profiles_wlan=["corp", "guest"],
        ))
        await reconciler(ctx).reconcile(ctx, ApplyReport(site_name="HQ"))
        corp = next(w for w in client.wlans.wlans.values() if w.ssid == "Corp")
        assert corp.config["apply_to"] == "aps"
        assert corp.config["ap_ids"] == []

    @pytest.mark.asyncio
    async def test_updates_divergent_wlan(self, workspace, cache, client):
        """An existing WLAN with a different VLAN is updated in place."""
        client.wlans.wlans["w1"] = WLAN(ssid="Guest", id="w1", site_id=SITE_ID, vlan_id=99,
                                        config={"apply_to": "site"})
        ctx = make_context(workspace, cache, client, site_document(profiles_wlan=["guest"]))
        report = ApplyReport(site_name="HQ")

        assert await reconciler(ctx).reconcile(ctx, report) == 1
        assert client.wlans.calls == [("update", "Guest")]
        assert report.wlans_updated == ["Guest"]
        assert "Updated WLAN 'Guest'" in report.messages

    @pytest.mark.asyncio
    async def test_diff_mode_writes_nothing(self, workspace, cache, client):
        """Diff mode describes the creation and masks the PSK."""
        ctx = make_context(workspace, cache, client, site_document(profiles_wlan=["corp"]),
                           options=ApplyOptions(diff=True))
        report = ApplyReport(site_name="HQ", diff_mode=True)

        assert await reconciler(ctx).reconcile(ctx, report) == 1
        assert client.wlans.calls == []
        assert "Would create WLAN 'Corp' (template: corp)" in report.messages
        assert not any("secret123" in line for line in report.diffs["wlan:Corp"])

    @pytest.mark.asyncio
    async def test_failure_continues_with_hint(self, workspace, cache, client):
        """A failed WLAN is reported with a WPA3 hint and the next one still runs."""
        client.wlans.fail_ssids["Corp"] = "Invalid security type for 6 GHz band"
        ctx = make_context(workspace, cache, client, site_document(profiles_wlan=["corp", "guest"]))
        report = ApplyReport(site_name="HQ")

        assert await reconciler(ctx).reconcile(ctx, report) == 1
        assert report.wlans_failed == ["Corp"]
        assert report.wlans_created == ["Guest"]
        warning = report.warnings[0]
        assert "template: corp" in warning
        assert "auth type: psk" in warning
        assert "hint:" in warning

    @pytest.mark.asyncio
    async def test_create_timeout_not_repeated(self, workspace, cache, client):
        """A create that times out after the controller stored it is not sent again."""
        client.wlans.time_out_after_create.add("Corp")
        ctx = make_context(workspace, cache, client, site_document(profiles_wlan=["corp"]))
        report = ApplyReport(site_name="HQ")

        assert await reconciler(ctx).reconcile(ctx, report) == 0
        assert client.wlans.calls == [("create", "Corp")]
        assert [w.ssid for w in client.wlans.wlans.values()] == ["Corp"]
        assert report.wlans_failed == ["Corp"]

        rerun = ApplyReport(site_name="HQ")
        assert await reconciler(ctx).reconcile(ctx, rerun) == 0
        assert client.wlans.calls == [("create", "Corp")]

    @pytest.mark.asyncio
    async def test_vendor_without_wlans(self, workspace, cache):
        """A client with no WLAN service cannot run the phase."""
        client = FakeClient(cache=cache, supports_wlans=False)
        ctx = make_context(workspace, cache, client, site_document(profiles_wlan=["corp"]))
        with pytest.raises(VendorCapabilityError):
            await reconciler(ctx).reconcile(ctx, ApplyReport(site_name="HQ"))

    @pytest.mark.asyncio
    async def test_no_labels_no_calls(self, workspace, cache, client):
        """Sites without WLAN references skip the phase entirely."""
        ctx = make_context(workspace, cache, client, site_document())
        assert await reconciler(ctx).reconcile(ctx, ApplyReport(site_name="HQ")) == 0
        assert client.wlans.calls == []


class TestMerakiReconcile:
    """Tests for tag scoping."""

    @pytest.fixture
    def meraki(self, cache) -> FakeClient:
        return FakeClient(label="meraki-prod", vendor="meraki", cache=cache)

    @pytest.mark.asyncio
    async def test_guest_scoped_by_tag(self, workspace, cache, meraki):
        """A WLAN bound to one AP is restricted to its availability tag."""
        cache.add_device(AP1, config={"tags": ["floor-3"]})
        ctx = make_context(
            workspace, cache, meraki,
            site_document(aps={AP1: {"wlan": ["guest"]}, AP2: {}}, profiles_wlan=["guest"], api="meraki-prod"),
            managed_keys={"ap": ["name", "tags"]},
            label="meraki-prod",
        )
        report = ApplyReport(site_name="HQ")

        await reconciler(ctx).reconcile(ctx, report)

        assert ctx.ap_tag_mapping == {"aabbccddee01": ["wifimgr-wlan-guest"]}
        stored = next(iter(meraki.wlans.wlans.values()))
        assert stored.config["availabilityTags"] == ["wifimgr-wlan-guest"]
        assert stored.config["availableOnAllAps"] is False

        desired = ap_tag_hook(ctx, "aabbccddee01", {"name": "ap1"}, {"tags": ["floor-3"]})
        assert desired["tags"] == ["floor-3", "wifimgr-wlan-guest"]

    @pytest.mark.asyncio
    async def test_second_run_is_idempotent(self, workspace, cache, meraki):
        """Re-reconciling the same config writes nothing."""
        ctx = make_context(
            workspace, cache, meraki,
            site_document(aps={AP1: {"wlan": ["guest"]}}, profiles_wlan=["guest", "corp"], api="meraki-prod"),
            managed_keys={"ap": ["tags"]},
            label="meraki-prod",
        )
        await reconciler(ctx).reconcile(ctx, ApplyReport(site_name="HQ"))
        calls = list(meraki.wlans.calls)

        assert await reconciler(ctx).reconcile(ctx, ApplyReport(site_name="HQ")) == 0
        assert meraki.wlans.calls == calls

    @pytest.mark.asyncio
    async def test_unmanaged_tags_warn(self, workspace, cache, meraki):
        """Tag scoping without 'tags' in the managed keys is reported and not written to APs."""
        ctx = make_context(
            workspace, cache, meraki,
            site_document(aps={AP1: {"wlan": ["guest"]}}, profiles_wlan=["guest"], api="meraki-prod"),
            managed_keys={"ap": ["name"]},
            label="meraki-prod",
        )
        report = ApplyReport(site_name="HQ")
        await reconciler(ctx).reconcile(ctx, report)

        assert any("'tags' is not in the managed keys" in w for w in report.warnings)
        assert ap_tag_hook(ctx, "aabbccddee01", {"name": "ap1"}, {}) == {"name": "ap1"}
