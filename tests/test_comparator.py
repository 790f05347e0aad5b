"""Tests for managed-key comparison."""
from wificraft.apply_engine.comparator import (
    compare,
    diff_lines,
    filter_by_managed_keys,
    filter_status_fields,
    iter_divergences,
    values_equal,
)


class TestCompare:
    """Tests for compare()."""

    def test_scoped_divergence(self):
        """Only the managed field is considered; unrelated name differences are ignored."""
        keys = ["radio_config.band_5.power"]
        current = {"name": "old", "radio_config": {"band_5": {"power": 10}}}
        desired = {"name": "new", "radio_config": {"band_5": {"power": 17}}}

        assert compare(current, desired, keys)
        assert filter_by_managed_keys(desired, keys) == {"radio_config": {"band_5": {"power": 17}}}

    def test_unmanaged_difference_is_not_divergence(self):
        """Differences outside the managed keys do not count."""
        keys = ["radio_config.band_5.power"]
        current = {"name": "old", "radio_config": {"band_5": {"power": 17}}}
        desired = {"name": "new", "radio_config": {"band_5": {"power": 17}}}
        assert not compare(current, desired, keys)

    def test_full_ownership_ignores_status_fields(self):
        """With no managed keys, status and identity fields never diverge."""
        current = {"id": "x", "mac": "aabbccddeeff", "status": "connected", "name": "ap1", "site_id": "s1"}
        desired = {"name": "ap1", "site_id": "s2"}
        assert not compare(current, desired, [])

    def test_full_ownership_current_only_field(self):
        """A non-empty live-only field diverges under full ownership; empty ones do not."""
        assert compare({"name": "ap1", "notes": "x"}, {"name": "ap1"}, [])
        assert not compare({"name": "ap1", "notes": ""}, {"name": "ap1"}, [])
        assert not compare({"name": "ap1", "tags": []}, {"name": "ap1"}, [])

    def test_alias_fields_excluded(self):
        """``*_name`` alias fields are not compared."""
        assert not compare({"name": "ap1"}, {"name": "ap1", "deviceprofile_name": "lobby"}, [])

    def test_scalar_string_equivalence(self):
        """Numbers compare equal to their string form."""
        assert values_equal(17, "17")
        assert values_equal(17, 17.0)
        assert values_equal(True, "true")
        assert not values_equal([1, 2], [2, 1])

    def test_nested_managed_value_missing_live(self):
        """A managed value missing from the live config diverges."""
        keys = ["led.enabled"]
        assert compare({"led": {}}, {"led": {"enabled": False}}, keys)

    def test_divergences_sorted(self):
        """Divergent paths are reported in sorted order."""
        current = {"b": 1, "a": {"x": 1}}
        desired = {"b": 2, "a": {"x": 2}}
        assert list(iter_divergences(current, desired, [])) == ["a.x", "b"]

    def test_idempotent_after_write(self):
        """Once the filtered payload is applied, compare reports no divergence."""
        keys = ["radio_config.band_5.power", "name"]
        current = {"name": "old", "radio_config": {"band_5": {"power": 10, "channel": 36}}}
        desired = {"name": "new", "radio_config": {"band_5": {"power": 17}}, "led": {"enabled": False}}

        payload = filter_by_managed_keys(desired, keys)
        current["name"] = payload["name"]
        current["radio_config"]["band_5"]["power"] = payload["radio_config"]["band_5"]["power"]

        assert not compare(current, desired, keys)


class TestFilterByManagedKeys:
    """Tests for payload filtering."""

    def test_idempotent(self):
        """Filtering twice equals filtering once."""
        keys = ["radio_config.band_5", "port_config.*.vlan_id"]
        desired = {
            "name": "x",
            "radio_config": {"band_5": {"power": 17}, "band_24": {"power": 5}},
            "port_config": {"eth0": {"vlan_id": 1, "mode": "trunk"}},
        }
        once = filter_by_managed_keys(desired, keys)
        assert filter_by_managed_keys(once, keys) == once

    def test_empty_keys_copy_everything(self):
        """Full ownership returns a deep copy of the whole config."""
        desired = {"name": "ap1", "led": {"enabled": True}}
        result = filter_by_managed_keys(desired, [])
        assert result == desired
        result["led"]["enabled"] = False
        assert desired["led"]["enabled"] is True

    def test_none_keys(self):
        """Undeclared managed keys behave like full ownership for filtering."""
        assert filter_by_managed_keys({"name": "ap1"}, None) == {"name": "ap1"}

    def test_missing_paths_omitted(self):
        """Managed keys absent from the config produce nothing."""
        assert filter_by_managed_keys({"name": "ap1"}, ["led.enabled"]) == {}


class TestDiffLines:
    """Tests for human-readable diffs."""

    def test_markers_and_masking(self):
        """Added, removed and changed fields get their markers; secrets are masked."""
        current = {"name": "old", "notes": "gone", "auth": {"psk": "hunter2"}}
        desired = {"name": "new", "led": {"enabled": False}, "auth": {"psk": "swordfish"}}
        lines = diff_lines(current, desired)

        assert "[~] name: 'old' -> 'new'" in lines
        assert "[+] led.enabled: False" in lines
        assert "[-] notes: 'gone'" in lines
        assert not any("hunter2" in line or "swordfish" in line for line in lines)

    def test_status_fields_hidden(self):
        """Display status fields never show up in diffs."""
        assert diff_lines({"id": "a", "name": "x"}, {"id": "b", "name": "x"}) == []
        assert filter_status_fields({"id": "a", "name": "x"}) == {"name": "x"}
