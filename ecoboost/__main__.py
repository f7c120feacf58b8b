from __future__ import annotations

import argparse
import logging
import sys
import threading
from pathlib import Path

from ecoboost.config import SettingsStore, logs_path, settings_path
from ecoboost.log_files import clean_old_logs, list_log_files
from ecoboost.logging_setup import configure_logging
from ecoboost.matcher import ProcessMatcher, format_group_line, group_by_name
from ecoboost.scheduler import EnforcementScheduler

LOGGER = logging.getLogger("ecoboost.main")

_COMMANDS = {"run", "tray", "keywords", "preview", "status", "settings", "startup", "logs"}


def _add_common_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--settings", help="Path to settings.json (defaults to the per-user location)")
    parser.add_argument("--log-dir", help="Directory for daily log files")
    parser.add_argument("--log-level", default="INFO", help="Logging level")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Efficiency Booster process throttler")
    subparsers = parser.add_subparsers(dest="command")

    run_parser = subparsers.add_parser("run", help="Run one enforcement pass")
    _add_common_args(run_parser)
    run_parser.add_argument("--loop", action="store_true", help="Keep enforcing on the configured interval")

    tray_parser = subparsers.add_parser("tray", help="Run with the system tray UI")
    _add_common_args(tray_parser)

    keywords_parser = subparsers.add_parser("keywords", help="Manage process keywords")
    keywords_parser.add_argument("action", choices=["list", "add", "remove"])
    keywords_parser.add_argument("keyword", nargs="?", default="")
    _add_common_args(keywords_parser)

    preview_parser = subparsers.add_parser("preview", help="Show processes the keywords currently match")
    _add_common_args(preview_parser)

    status_parser = subparsers.add_parser("status", help="Show enforcement status")
    _add_common_args(status_parser)

    settings_parser = subparsers.add_parser("settings", help="Show or change run parameters")
    _add_common_args(settings_parser)
    settings_parser.add_argument("--interval-minutes", type=int, help="Minutes between enforcement runs")
    settings_parser.add_argument("--log-retention-days", type=int, help="Days to keep log files")
    settings_parser.add_argument("--success-policy", choices=["priority", "either"], help="What counts as throttled")
    toggle = settings_parser.add_mutually_exclusive_group()
    toggle.add_argument("--enable", dest="enabled", action="store_true", default=None, help="Resume enforcement")
    toggle.add_argument("--disable", dest="enabled", action="store_false", help="Pause enforcement")
    elevated = settings_parser.add_mutually_exclusive_group()
    elevated.add_argument("--elevated", dest="elevated", action="store_true", default=None)
    elevated.add_argument("--no-elevated", dest="elevated", action="store_false")

    startup_parser = subparsers.add_parser("startup", help="Manage start-with-Windows registration")
    startup_parser.add_argument("action", choices=["install", "remove", "status"])
    _add_common_args(startup_parser)

    logs_parser = subparsers.add_parser("logs", help="List or clean log files")
    logs_parser.add_argument("action", choices=["list", "clean"])
    _add_common_args(logs_parser)

    return parser


def _normalized_argv(raw_argv: list[str]) -> list[str]:
    if not raw_argv or raw_argv[0] not in _COMMANDS:
        return ["run", *raw_argv]
    return raw_argv


def _settings_file(args: argparse.Namespace) -> Path:
    raw = getattr(args, "settings", None)
    return Path(raw) if raw else settings_path()


def _log_dir(args: argparse.Namespace) -> Path:
    raw = getattr(args, "log_dir", None)
    return Path(raw) if raw else logs_path()


def _startup_registrar(settings_file: Path):
    def _register(enabled: bool) -> None:
        from ecoboost.startup import set_startup

        set_startup(enabled, settings_file)

    return _register


def _open_store(args: argparse.Namespace) -> SettingsStore:
    settings_file = _settings_file(args)
    return SettingsStore.open(settings_file, startup_registrar=_startup_registrar(settings_file))


def _build_scheduler(store: SettingsStore, log_dir: Path) -> EnforcementScheduler:
    return EnforcementScheduler(
        store,
        on_start=lambda: clean_old_logs(log_dir, store.snapshot().log_retention_days),
    )


def _run_command(args: argparse.Namespace) -> None:
    log_dir = _log_dir(args)
    configure_logging(args.log_level, log_dir)
    store = _open_store(args)
    scheduler = _build_scheduler(store, log_dir)

    settings = store.snapshot()
    if not args.loop:
        clean_old_logs(log_dir, settings.log_retention_days)

    if not settings.enforcement_enabled:
        LOGGER.info("Enforcement is paused, skipping run")
        return

    if not args.loop:
        scheduler.run_once()
        return

    scheduler.start()
    try:
        threading.Event().wait()
    except KeyboardInterrupt:
        LOGGER.info("Received interrupt, stopping enforcement")
    finally:
        scheduler.stop()


def _tray_command(args: argparse.Namespace) -> None:
    from ecoboost.instance import SingleInstance
    from ecoboost.tray import run_tray_app

    log_dir = _log_dir(args)
    configure_logging(args.log_level, log_dir)

    with SingleInstance() as instance:
        if not instance.acquire():
            print("Efficiency Booster is already running. Check the system tray for the icon.")
            return

        store = _open_store(args)
        run_tray_app(store=store, scheduler=_build_scheduler(store, log_dir), log_dir=log_dir)


def _keywords_command(args: argparse.Namespace) -> None:
    configure_logging(args.log_level)
    store = _open_store(args)

    if args.action == "list":
        for keyword in store.keywords():
            print(keyword)
        return

    if not args.keyword.strip():
        print("A keyword is required")
        return

    if args.action == "add":
        if store.add_keyword(args.keyword):
            print(f"Added keyword: {args.keyword.strip()}")
        else:
            print(f"Keyword '{args.keyword.strip()}' already exists.")
        return

    if store.remove_keyword(args.keyword):
        print(f"Removed keyword: {args.keyword.strip()}")
    else:
        print(f"Keyword '{args.keyword.strip()}' not found.")


def _preview_command(args: argparse.Namespace) -> None:
    configure_logging(args.log_level)
    keywords = _open_store(args).keywords()
    if not keywords:
        print("No keywords configured")
        return

    matches = ProcessMatcher().find_matches(keywords)
    groups = group_by_name(matches)
    if not groups:
        print("No matching processes found")
        return

    print(f"Found {len(matches)} processes in {len(groups)} groups:")
    for group in groups:
        print(f"  {format_group_line(group)}")


def _status_command(args: argparse.Namespace) -> None:
    configure_logging(args.log_level)
    store = _open_store(args)
    print(f"Status: {EnforcementScheduler(store).status_message()}")


def _settings_command(args: argparse.Namespace) -> None:
    configure_logging(args.log_level)
    store = _open_store(args)

    try:
        if args.interval_minutes is not None:
            store.set_interval_minutes(args.interval_minutes)
        if args.log_retention_days is not None:
            store.set_log_retention_days(args.log_retention_days)
        if args.success_policy:
            store.set_success_policy(args.success_policy)
    except ValueError as exc:
        print(f"Invalid setting: {exc}")
        return

    if args.enabled is not None:
        store.set_enforcement_enabled(args.enabled)
    if args.elevated is not None:
        store.set_elevated_mode(args.elevated)

    settings = store.snapshot()
    print(f"Keywords: {', '.join(settings.keywords) or '(none)'}")
    print(f"Interval: {settings.interval_minutes} minutes")
    print(f"Log retention: {settings.log_retention_days} days")
    print(f"Enforcement enabled: {settings.enforcement_enabled}")
    print(f"Start with Windows: {settings.start_with_windows}")
    print(f"Run as admin: {settings.elevated_mode_enabled}")
    print(f"Success policy: {settings.success_policy}")


def _startup_command(args: argparse.Namespace) -> None:
    from ecoboost.startup import registered_command

    configure_logging(args.log_level)

    if args.action == "status":
        command = registered_command()
        if command:
            print(f"Startup installed: {command}")
        else:
            print("Startup not installed")
        return

    store = _open_store(args)
    enabled = args.action == "install"
    if not store.set_start_with_windows(enabled):
        print("Could not update startup registration")
        return

    if enabled:
        print(f"Startup installed: {registered_command()}")
    else:
        print("Startup entry removed")


def _logs_command(args: argparse.Namespace) -> None:
    log_dir = _log_dir(args)
    configure_logging(args.log_level)

    if args.action == "list":
        for path in list_log_files(log_dir):
            print(path)
        return

    retention = _open_store(args).snapshot().log_retention_days
    removed = clean_old_logs(log_dir, retention)
    print(f"Removed {len(removed)} log files older than {retention} days")


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    parsed = parser.parse_args(_normalized_argv(sys.argv[1:] if argv is None else argv))

    handlers = {
        "run": _run_command,
        "tray": _tray_command,
        "keywords": _keywords_command,
        "preview": _preview_command,
        "status": _status_command,
        "settings": _settings_command,
        "startup": _startup_command,
        "logs": _logs_command,
    }
    handler = handlers.get(parsed.command)
    if handler is None:
        parser.error("Unknown command")
    handler(parsed)


if __name__ == "__main__":
    main()
