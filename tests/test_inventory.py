"""Tests for the dual-inventory safety gate."""
import pytest

from wificraft.apply_engine.inventory import InventoryChecker, load_local_inventory
from wificraft.errors import ConfigurationError
from wificraft.vendors.base import DeviceType

from conftest import AP1, AP2, AP3, OTHER_SITE_ID, SITE_ID


class TestLoadLocalInventory:
    """Tests for the allowlist file."""

    def test_normalizes_and_skips_invalid(self, workspace):
        """MACs in any accepted form are normalized; invalid entries are dropped."""
        workspace.write_inventory(ap=["AA-BB-CC-DD-EE-01", "aabb.ccdd.ee02", "bogus"])
        macs = load_local_inventory(workspace.config_dir / "inventory.yaml", DeviceType.AP)
        assert macs == {"aabbccddee01", "aabbccddee02"}

    def test_missing_file_is_empty(self, tmp_path):
        """A missing allowlist means nothing is eligible."""
        assert load_local_inventory(tmp_path / "nope.yaml", DeviceType.AP) == set()

    def test_malformed_file(self, tmp_path):
        """An unparseable allowlist is a configuration error."""
        path = tmp_path / "inventory.yaml"
        path.write_text("inventory: [unclosed", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_local_inventory(path, DeviceType.AP)

    def test_nested_config_section(self, tmp_path):
        """The allowlist may sit under a top-level ``config`` key."""
        path = tmp_path / "inventory.yaml"
        path.write_text("config:\n  inventory:\n    switch: ['aa:bb:cc:dd:ee:09']\n", encoding="utf-8")
        assert load_local_inventory(path, DeviceType.SWITCH) == {"aabbccddee09"}


class TestInventoryChecker:
    """Tests for membership checks."""

    @pytest.fixture
    def checker(self, cache, workspace):
        cache.add_inventory(AP1, site_id=SITE_ID)
        cache.add_inventory(AP2, site_id=OTHER_SITE_ID)
        workspace.write_inventory(ap=[AP1, AP3])
        return InventoryChecker.build(cache, DeviceType.AP, workspace.config_dir / "inventory.yaml")

    def test_gate_requires_both(self, checker):
        """Only devices in both inventories pass the write gate."""
        assert checker.is_in_inventory(AP1)
        assert checker.is_in_api_inventory(AP2) and not checker.is_in_inventory(AP2)
        assert checker.is_in_local_inventory(AP3) and not checker.is_in_inventory(AP3)

    @pytest.mark.parametrize("mac", ["", "garbage", None])
    def test_invalid_mac_fails_everywhere(self, checker, mac):
        """Invalid or empty MACs are never members."""
        assert not checker.is_in_api_inventory(mac)
        assert not checker.is_in_local_inventory(mac)
        assert not checker.is_in_inventory(mac)

    def test_gate_is_conjunction(self, checker):
        """is_in_inventory equals API membership and local membership for every MAC."""
        for mac in (AP1, AP2, AP3, "aa:bb:cc:dd:ee:99"):
            assert checker.is_in_inventory(mac) == (
                checker.is_in_api_inventory(mac) and checker.is_in_local_inventory(mac)
            )

    def test_filter_preserves_order(self, checker):
        """Filtering keeps gate-passing MACs in input order."""
        assert checker.filter_by_inventory([AP3, AP1, AP2]) == [AP1]

    def test_site_assignment(self, checker):
        """Current site is resolved through the cache."""
        assert checker.get_site_assignment(AP2) == (OTHER_SITE_ID, "Branch", True)
        assert checker.get_site_assignment(AP3) == ("", "", False)

    def test_counts(self, checker):
        """Both inventory sizes are exposed."""
        assert checker.api_count == 2
        assert checker.local_count == 2

    def test_status_message(self, checker):
        """Status lines name which inventory is missing the device."""
        assert "not in local inventory file" in checker.log_inventory_status(AP2)
        assert "not found in API inventory" in checker.log_inventory_status(AP3)
