#!/usr/bin/env python3
"""wificraft command line.

Usage:
    wificraft apply <site> <ap|switch|gateway|all> [diff] [split] [force] [refresh-api]
    wificraft rollback <site> [serial]
    wificraft list-backups <site>
    wificraft cleanup-backups [--days N]
    wificraft validate-backup <path>

Environment variables:
    WIFICRAFT_CONFIG         Settings file (default: ./wificraft.yaml)
    WIFICRAFT_LOG_LEVEL      Console log level (default: INFO)
"""
import argparse
import asyncio
import getpass
import importlib
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Optional

from . import __version__
from .apply_engine.orchestrator import ApplyOrchestrator
from .apply_engine.schema import ApplyOptions, ApplyReport
from .config.settings import WificraftSettings
from .errors import ApplyError, ConfigurationError
from .utils.audit_log import setup_audit_logging
from .utils.logging_config import global_stats, setup_logging

logger = logging.getLogger(__name__)

APPLY_FLAGS = ("diff", "split", "force", "refresh-api")
SPLIT_WIDTH = 38


def load_collaborators(settings: WificraftSettings) -> tuple[Any, dict[str, Any]]:
    """Build ``(cache, {api_label: client})`` from the factory named in settings.

    The factory is given as ``"package.module:function"`` and is called with
    the settings object.
    """
    target = settings.collaborators
    if not target:
        raise ConfigurationError(
            "no collaborators factory configured; set 'collaborators: package.module:function' in wificraft.yaml"
        )
    module_name, _, attr = target.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"collaborators must look like 'package.module:function' (got {target!r})")
    try:
        factory: Callable = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"cannot load collaborators factory {target}: {e}") from e

    cache, clients = factory(settings)
    return cache, dict(clients or {})


def _split_line(line: str) -> str:
    """Render one ``[+]/[-]/[~]`` diff line as current | desired columns."""
    marker, _, rest = line.partition(" ")
    path, _, values = rest.partition(": ")
    if marker == "[~]":
        old, _, new = values.partition(" -> ")
    elif marker == "[+]":
        old, new = "", values
    else:
        old, new = values, ""
    return f"    {path}\n      {old[:SPLIT_WIDTH]:<{SPLIT_WIDTH}} | {new[:SPLIT_WIDTH]}"


def render_report(report: ApplyReport, split: bool = False, out=None) -> None:
    """Print messages, warnings, diffs and the summary, in that order."""
    out = out or sys.stdout
    for message in report.messages:
        print(message, file=out)
    for warning in report.warnings:
        print(f"Warning: {warning}", file=out)

    if report.diffs:
        print("", file=out)
        if split:
            print(f"      {'current':<{SPLIT_WIDTH}} | desired", file=out)
        for subject in sorted(report.diffs):
            print(f"  {subject}:", file=out)
            for line in report.diffs[subject]:
                print(_split_line(line) if split else f"    {line}", file=out)

    print("", file=out)
    for line in report.summary():
        print(line, file=out)
    if report.error:
        print(f"Error: {report.error}", file=out)


async def run_apply(args: argparse.Namespace, settings: WificraftSettings) -> int:
    unknown = [f for f in args.flags if f not in APPLY_FLAGS]
    if unknown:
        logger.error(f"Unknown apply option(s): {', '.join(unknown)} (expected: {', '.join(APPLY_FLAGS)})")
        return 1

    cache, clients = load_collaborators(settings)
    options = ApplyOptions(
        diff="diff" in args.flags,
        force="force" in args.flags,
        refresh_cache="refresh-api" in args.flags,
    )
    orchestrator = ApplyOrchestrator(settings, cache, clients, user=getpass.getuser())
    report = await orchestrator.apply_site(args.site, args.device_type, options)
    render_report(report, split="split" in args.flags)
    logger.debug(global_stats.summary())
    return 0 if report.success else 1


def run_rollback(args: argparse.Namespace, settings: WificraftSettings) -> int:
    orchestrator = ApplyOrchestrator(settings, user=getpass.getuser())
    result = orchestrator.rollback(args.site, args.serial)
    print(result.message)
    return 0


def run_list_backups(args: argparse.Namespace, settings: WificraftSettings) -> int:
    orchestrator = ApplyOrchestrator(settings)
    backups = orchestrator.list_backups(args.site)
    if not backups:
        print(f"No backups found for site {args.site}")
        return 0
    print(f"Backups for site {args.site}:")
    for info in backups:
        print(f"  [{info.serial}] {info.path.name}  {info.timestamp:%Y-%m-%d %H:%M:%S}")
    return 0


def run_cleanup(args: argparse.Namespace, settings: WificraftSettings) -> int:
    orchestrator = ApplyOrchestrator(settings)
    removed = orchestrator.cleanup_backups(args.days)
    if not removed:
        print("No backups to clean up")
        return 0
    print(f"Removed {len(removed)} backup(s):")
    for path in removed:
        print(f"  {path}")
    return 0


def run_validate(args: argparse.Namespace, settings: WificraftSettings) -> int:
    orchestrator = ApplyOrchestrator(settings)
    validation = orchestrator.validate_backup(args.path)
    for line in validation.summary():
        print(line)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wificraft",
        description="Apply declarative site configuration to cloud-managed network devices",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Preview AP changes for a site
    wificraft apply hq ap diff

    # Apply everything, refreshing the cache first
    wificraft apply hq all refresh-api

    # Restore the previous site file (does not touch the API)
    wificraft rollback hq 1
""",
    )
    parser.add_argument("--config", type=Path, help="Settings file (default: search for wificraft.yaml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    sub = parser.add_subparsers(dest="command", required=True)

    apply = sub.add_parser("apply", help="Apply a site's configuration")
    apply.add_argument("site", help="Site name")
    apply.add_argument("device_type", help="ap, switch, gateway or all")
    apply.add_argument("flags", nargs="*", help=f"Options: {', '.join(APPLY_FLAGS)}")
    apply.set_defaults(handler=run_apply)

    rollback = sub.add_parser("rollback", help="Restore a site file from backup")
    rollback.add_argument("site", help="Site name")
    rollback.add_argument("serial", nargs="?", type=int, default=0, help="Backup serial (default: 0)")
    rollback.set_defaults(handler=run_rollback)

    list_backups = sub.add_parser("list-backups", help="List backups for a site")
    list_backups.add_argument("site", help="Site name")
    list_backups.set_defaults(handler=run_list_backups)

    cleanup = sub.add_parser("cleanup-backups", help="Remove excess and expired backups")
    cleanup.add_argument("--days", type=int, default=None, help="Retention in days (default: from settings)")
    cleanup.set_defaults(handler=run_cleanup)

    validate = sub.add_parser("validate-backup", help="Check that a backup file is usable")
    validate.add_argument("path", type=Path, help="Backup file")
    validate.set_defaults(handler=run_validate)

    return parser


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point for the wificraft CLI."""
    args = build_parser().parse_args(argv)

    setup_logging(logging.DEBUG if args.verbose else None)
    setup_audit_logging()

    try:
        settings = WificraftSettings.from_env(args.config)
        problems = settings.validate()
        if problems:
            for problem in problems:
                logger.error(f"Settings: {problem}")
            return 1

        if asyncio.iscoroutinefunction(args.handler):
            return asyncio.run(args.handler(args, settings))
        return args.handler(args, settings)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        return 130
    except ApplyError as e:
        logger.error(str(e))
        return 1
    except Exception as e:
        logger.exception(f"wificraft {args.command} failed with exception: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
