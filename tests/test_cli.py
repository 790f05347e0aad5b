"""Tests for the wificraft command line."""
import io
import logging

import pytest
import yaml

from wificraft.apply_engine.schema import ApplyReport
from wificraft.cli import _split_line, build_parser, load_collaborators, main, render_report
from wificraft.config.settings import WificraftSettings
from wificraft.errors import ConfigurationError

from conftest import AP1, SITE_ID, FakeCache, FakeClient, site_document

COLLABORATORS = {}


def build_collaborators(settings):
    """Factory referenced from the settings file in these tests."""
    return COLLABORATORS["cache"], COLLABORATORS["clients"]


@pytest.fixture(autouse=True)
def isolated_logging(tmp_path, monkeypatch):
    """Keep log and audit files under tmp_path and drop handlers afterwards."""
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    monkeypatch.setenv("WIFICRAFT_LOG_FILE", str(tmp_path / "logs" / "wificraft.log"))
    yield
    for name in ("wificraft", "wificraft.perf", "wificraft.audit"):
        log = logging.getLogger(name)
        for handler in list(log.handlers):
            log.removeHandler(handler)
            handler.close()
        log.propagate = True
    COLLABORATORS.clear()


@pytest.fixture
def settings_file(workspace):
    data = {
        "config_dir": "config",
        "site_files": ["sites.json"],
        "template_files": ["templates.yaml"],
        "collaborators": "test_cli:build_collaborators",
        "apis": {"mist-prod": {"managed_keys": {"ap": ["name"]}}},
    }
    path = workspace.root / "wificraft.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


class TestParser:
    """Tests for argument parsing."""

    def test_apply_flags(self):
        args = build_parser().parse_args(["apply", "HQ", "ap", "diff", "split"])
        assert args.site == "HQ"
        assert args.device_type == "ap"
        assert args.flags == ["diff", "split"]

    def test_rollback_default_serial(self):
        assert build_parser().parse_args(["rollback", "HQ"]).serial == 0
        assert build_parser().parse_args(["rollback", "HQ", "2"]).serial == 2

    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])


class TestRendering:
    """Tests for report output."""

    def test_split_line(self):
        assert _split_line("[~] name: 'a' -> 'b'").split("\n")[1].strip() == "'a'" + " " * 35 + " | 'b'"
        assert _split_line("[+] led.enabled: False").endswith("| False")
        assert _split_line("[-] notes: 'x'").rstrip().endswith("'x'" + " " * 35 + " |")

    def test_render_order(self):
        report = ApplyReport(site_name="HQ", diff_mode=True, success=True)
        report.say("Would update the following aps in site HQ:")
        report.warn("ap aabbccddee02: not in local inventory file")
        report.diffs["aabbccddee01"] = ["[~] name: 'old' -> 'new'"]
        out = io.StringIO()

        render_report(report, out=out)

        text = out.getvalue()
        assert text.index("Would update") < text.index("Warning: ap aabbccddee02") < text.index("aabbccddee01:")
        assert "    [~] name: 'old' -> 'new'" in text

    def test_render_split_header(self):
        report = ApplyReport(site_name="HQ", diff_mode=True)
        report.diffs["aabbccddee01"] = ["[~] name: 'old' -> 'new'"]
        out = io.StringIO()
        render_report(report, split=True, out=out)
        assert "current" in out.getvalue() and "| desired" in out.getvalue()


class TestCollaborators:
    """Tests for loading the cache and client factory."""

    def test_not_configured(self):
        with pytest.raises(ConfigurationError, match="no collaborators factory"):
            load_collaborators(WificraftSettings())

    def test_bad_format(self):
        with pytest.raises(ConfigurationError, match="package.module:function"):
            load_collaborators(WificraftSettings(collaborators="no_colon_here"))

    def test_missing_module(self):
        with pytest.raises(ConfigurationError, match="cannot load"):
            load_collaborators(WificraftSettings(collaborators="wificraft_missing_module:build"))

    def test_factory_called(self):
        cache = FakeCache()
        COLLABORATORS.update(cache=cache, clients={"mist-prod": FakeClient(cache=cache)})
        loaded_cache, clients = load_collaborators(WificraftSettings(collaborators="test_cli:build_collaborators"))
        assert loaded_cache is cache
        assert list(clients) == ["mist-prod"]


class TestMain:
    """End-to-end runs through main()."""

    def test_apply_diff(self, workspace, cache, client, settings_file, capsys):
        cache.add_device(AP1, name="old")
        workspace.write_inventory(ap=[AP1])
        workspace.write_site(site_document(aps={AP1: {"name": "ap-1"}}))
        COLLABORATORS.update(cache=cache, clients={"mist-prod": client})

        code = main(["--config", str(settings_file), "apply", "HQ", "ap", "diff"])

        assert code == 0
        out = capsys.readouterr().out
        assert "Would update the following aps in site HQ:" in out
        assert "Diff mode completed - no changes have been applied" in out
        assert client.mutations == []

    def test_apply_writes(self, workspace, cache, client, settings_file):
        cache.add_device(AP1, name="old")
        workspace.write_inventory(ap=[AP1])
        workspace.write_site(site_document(aps={AP1: {"name": "ap-1"}}))
        COLLABORATORS.update(cache=cache, clients={"mist-prod": client})

        assert main(["--config", str(settings_file), "apply", "HQ", "ap"]) == 0
        assert client.mutations == [("update_device", "dev-aabbccddee01", {"name": "ap-1", "site_id": SITE_ID})]

    def test_unknown_flag(self, workspace, settings_file):
        workspace.write_site(site_document())
        assert main(["--config", str(settings_file), "apply", "HQ", "ap", "dry-run"]) == 1

    def test_invalid_settings(self, tmp_path):
        path = tmp_path / "wificraft.yaml"
        path.write_text(yaml.safe_dump({"backups": {"max": 0}}))
        assert main(["--config", str(path), "list-backups", "HQ"]) == 1

    def test_backup_commands(self, workspace, settings_file, capsys):
        workspace.write_site(site_document())

        assert main(["--config", str(settings_file), "list-backups", "HQ"]) == 0
        assert "No backups found for site HQ" in capsys.readouterr().out

        assert main(["--config", str(settings_file), "rollback", "HQ", "1"]) == 1

        assert main(["--config", str(settings_file), "validate-backup", str(workspace.site_path)]) == 0
        assert "Sites: 1 (HQ)" in capsys.readouterr().out

        assert main(["--config", str(settings_file), "cleanup-backups"]) == 0
        assert "No backups to clean up" in capsys.readouterr().out
