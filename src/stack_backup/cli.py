from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import sys
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from croniter import croniter
from zoneinfo import ZoneInfo

from .adapters import EngineAdapter, build_adapters
from .backends import BackendFactory, backend_factory
from .config import ENGINES, CoreConfig, SchedulerConfig, load_config, resolve_engine
from .errors import BackupError, ConfigurationError
from .logger import configure_logging
from .notify import build_notifier
from .pipeline import BackupPipeline, RestorePipeline
from .registry import TargetRegistry
from .secrets import SecretResolver
from .store import ResticStore
from .targets import parse_target

LOG = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/stack-backup/stack-backup.yaml"
EXIT_FAILED = 1
EXIT_CONFIG = 2


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="stack-backup", description="Back up and restore data stores through restic.")
    parser.add_argument(
        "--config",
        default=os.getenv("STACK_BACKUP_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to configuration YAML file.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Log level (default INFO).",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    backup = commands.add_parser("backup", help="Run a backup now.")
    backup.add_argument(
        "scope",
        nargs="?",
        default="all",
        help="all, databases, volumes or an engine name (default all).",
    )
    backup.add_argument("--target", help="Only back up this target (requires an engine scope).")

    restore = commands.add_parser(
        "restore",
        help="Inspect snapshots or restore a target.",
        description=(
            "restore list | show <id> | files <id> <path> | forget <id> | <engine> <id> <target> [<unit>]"
        ),
    )
    restore.add_argument("action", help="list, show, files, forget or an engine name.")
    restore.add_argument("arguments", nargs="*", help="Arguments for the action.")
    restore.add_argument("--confirm", help="Answer to the confirmation prompt (non-interactive use).")
    restore.add_argument("--limit", type=int, default=100, help="Entries shown by 'show' (0 for all).")

    targets = commands.add_parser("manage-targets", aliases=["targets"], help="Edit the target registry.")
    target_commands = targets.add_subparsers(dest="targets_command", required=True)

    list_cmd = target_commands.add_parser("list", help="List targets.")
    list_cmd.add_argument("engine", nargs="?", help="Only list targets of this engine.")

    for name in ("show", "enable", "disable", "remove"):
        cmd = target_commands.add_parser(name, help=f"{name.capitalize()} a target.")
        cmd.add_argument("engine")
        cmd.add_argument("name")

    add = target_commands.add_parser("add", help="Add a target.")
    add.add_argument("engine")
    add.add_argument("--name", required=True)
    add.add_argument("--mode", default="container", help="container, orchestrated, network or path.")
    add.add_argument("--container")
    add.add_argument("--volume")
    add.add_argument("--namespace")
    add.add_argument("--pod")
    add.add_argument("--pod-container")
    add.add_argument("--host")
    add.add_argument("--port", type=int)
    add.add_argument("--path")
    add.add_argument("--mount-path")
    add.add_argument("--data-dir")
    add.add_argument("--user")
    add.add_argument("--password-env")
    add.add_argument("--uri-env")
    add.add_argument("--api-key-env")
    add.add_argument("--databases", help="Comma-separated database or collection names.")
    add.add_argument("--custom-format", action="store_true", help="Use the custom dump format (postgres).")
    add.add_argument("--ssl", action="store_true")
    add.add_argument("--auth-db")
    add.add_argument("--replica-set")
    add.add_argument("--tls", action="store_true")
    add.add_argument("--tls-ca-file")
    add.add_argument("--tls-allow-invalid", action="store_true")
    add.add_argument("--disabled", action="store_true", help="Add the target disabled.")

    commands.add_parser("schedule", help="Run backups on the configured cron schedule.")
    return parser.parse_args(argv)


# --- Wiring ------------------------------------------------------------------


@dataclass
class Runtime:
    config: CoreConfig
    registry: TargetRegistry
    store: ResticStore
    adapters: Dict[str, EngineAdapter]
    backends: BackendFactory


def build_runtime(config: CoreConfig, secrets: Optional[SecretResolver] = None) -> Runtime:
    secrets = secrets or SecretResolver()
    backends = backend_factory(config.execution)
    return Runtime(
        config=config,
        registry=TargetRegistry(config.registry_dir),
        store=ResticStore(config.repository, secrets),
        adapters=build_adapters(backends, secrets, config.execution),
        backends=backends,
    )


@contextmanager
def cancel_on_signals(event: threading.Event) -> Iterator[None]:
    def _handle_signal(signum: int, _frame: Optional[object]) -> None:
        LOG.info("Received signal %s; cancelling", signum)
        event.set()

    previous = {sig: signal.signal(sig, _handle_signal) for sig in (signal.SIGTERM, signal.SIGINT)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


# --- Backup ------------------------------------------------------------------


def run_backup(
    config: CoreConfig,
    scope: str,
    target_name: Optional[str] = None,
    cancel_event: Optional[threading.Event] = None,
) -> int:
    runtime = build_runtime(config)
    pipeline = BackupPipeline(
        config=config,
        registry=runtime.registry,
        store=runtime.store,
        adapters=runtime.adapters,
        backends=runtime.backends,
        notifier=build_notifier(config.notifications),
        cancel_event=cancel_event,
    )
    report = pipeline.run(scope, target_name)
    return report.exit_code


def _command_backup(args: argparse.Namespace, config: CoreConfig, _config_path: Path) -> int:
    cancel_event = threading.Event()
    with cancel_on_signals(cancel_event):
        return run_backup(config, args.scope, args.target, cancel_event)


# --- Restore -----------------------------------------------------------------


def _confirmation(answer: Optional[str]) -> Callable[[str], str]:
    def _prompt(prompt: str) -> str:
        if answer is not None:
            print(f"{prompt}{answer}")
            return answer
        try:
            return input(prompt)
        except EOFError:
            return ""

    return _prompt


def _command_restore(args: argparse.Namespace, config: CoreConfig, _config_path: Path) -> int:
    runtime = build_runtime(config)
    pipeline = RestorePipeline(
        config=config,
        registry=runtime.registry,
        store=runtime.store,
        adapters=runtime.adapters,
        confirm=_confirmation(args.confirm),
    )
    action, arguments = args.action, list(args.arguments)

    if action == "list":
        _expect_arguments(action, arguments, 0)
        for snapshot in pipeline.list_snapshots():
            print(f"{snapshot.short_id}  {snapshot.time}  {snapshot.hostname}  {','.join(snapshot.tags)}")
        return 0
    if action == "show":
        _expect_arguments(action, arguments, 1)
        for entry in pipeline.show_snapshot(arguments[0], limit=args.limit):
            print(entry)
        return 0
    if action == "files":
        _expect_arguments(action, arguments, 2)
        destination = pipeline.restore_files(arguments[0], arguments[1])
        print(f"Files restored to {destination}")
        return 0
    if action == "forget":
        _expect_arguments(action, arguments, 1)
        if not pipeline.forget_snapshot(arguments[0]):
            print("Cancelled.")
        return 0

    if len(arguments) not in (2, 3):
        raise ConfigurationError(f"Usage: restore {action} <snapshot> <target> [<unit>]")
    engine = resolve_engine(action)
    unit = arguments[2] if len(arguments) == 3 else None
    result = pipeline.restore_target(engine, arguments[0], arguments[1], unit)
    print("Restore completed." if result.restored else "Cancelled.")
    return 0


def _expect_arguments(action: str, arguments: List[str], count: int) -> None:
    if len(arguments) != count:
        raise ConfigurationError(f"restore {action} expects {count} argument(s), got {len(arguments)}.")


# --- Target registry ---------------------------------------------------------


def _target_record(args: argparse.Namespace) -> Dict[str, Any]:
    record: Dict[str, Any] = {"name": args.name, "enabled": not args.disabled, "mode": args.mode}
    options = (
        "container", "volume", "namespace", "pod", "pod_container", "host", "port", "path",
        "mount_path", "data_dir", "user", "password_env", "uri_env", "api_key_env",
        "auth_db", "replica_set",
    )
    for option in options:
        value = getattr(args, option)
        if value is not None:
            record[option] = value
    if args.databases:
        record["databases"] = args.databases
    if args.custom_format:
        record["custom_format"] = True
    if args.ssl:
        record["ssl"] = True
    if args.tls or args.tls_ca_file or args.tls_allow_invalid:
        record["tls"] = {"enabled": True, "ca_file": args.tls_ca_file, "allow_invalid": args.tls_allow_invalid}
    return record


def _command_targets(args: argparse.Namespace, config: CoreConfig, _config_path: Path) -> int:
    registry = TargetRegistry(config.registry_dir)
    command = args.targets_command

    if command == "list":
        engines = [resolve_engine(args.engine)] if args.engine else list(ENGINES)
        for engine in engines:
            targets = registry.list_targets(engine, include_disabled=True)
            if not targets:
                continue
            print(f"{engine}:")
            for target in targets:
                state = "enabled" if target.enabled else "disabled"
                print(f"  {target.name:<24} {target.mode:<13} {state:<9} {target.location()}")
        return 0

    engine = resolve_engine(args.engine)
    if command == "add":
        target = parse_target(engine, _target_record(args))
        registry.add_target(target)
        print(f"Added {target.key}")
    elif command == "show":
        print(json.dumps(registry.get_target(engine, args.name).to_record(), indent=2))
    elif command == "enable":
        registry.set_enabled(engine, args.name, True)
        print(f"Enabled {engine}/{args.name}")
    elif command == "disable":
        registry.set_enabled(engine, args.name, False)
        print(f"Disabled {engine}/{args.name}")
    elif command == "remove":
        registry.remove_target(engine, args.name)
        print(f"Removed {engine}/{args.name}")
    return 0


# --- Scheduler ---------------------------------------------------------------


def _command_schedule(args: argparse.Namespace, config: CoreConfig, config_path: Path) -> int:
    return run_with_scheduler(config_path=config_path, initial_config=config)


def run_with_scheduler(config_path: Path, initial_config: CoreConfig) -> int:
    stop_event = threading.Event()
    cancel_event = threading.Event()

    def _handle_signal(signum: int, _frame: Optional[object]) -> None:
        LOG.info("Received signal %s; stopping scheduler", signum)
        stop_event.set()
        cancel_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    config = initial_config
    scheduler = _require_scheduler(config.scheduler)
    timezone = ZoneInfo(scheduler.timezone)
    next_run = datetime.now(timezone) if scheduler.run_on_startup else _next_run(scheduler.cron, datetime.now(timezone))

    if scheduler.run_on_startup:
        LOG.info("Executing initial run immediately")
    else:
        LOG.info("Next run scheduled for %s", next_run.isoformat())

    while not stop_event.is_set():
        now = datetime.now(timezone)
        if now >= next_run:
            try:
                config = load_config(config_path)
            except ConfigurationError as exc:
                LOG.error("Failed to reload configuration: %s; continuing with previous settings", exc)
            else:
                if not config.scheduler:
                    LOG.info("Scheduler removed from configuration; exiting loop")
                    break
                scheduler = _require_scheduler(config.scheduler)
                timezone = ZoneInfo(scheduler.timezone)

            try:
                exit_code = run_backup(config, scheduler.scope, cancel_event=cancel_event)
            except BackupError as exc:
                LOG.error("Scheduled run failed: %s", exc)
                exit_code = EXIT_FAILED
            if exit_code != 0:
                LOG.warning("Scheduled run completed with errors (exit code %s)", exit_code)

            next_run = _next_run(scheduler.cron, datetime.now(timezone))
            LOG.info("Next run scheduled for %s", next_run.isoformat())
            continue

        sleep_for = max((next_run - now).total_seconds(), 0)
        stop_event.wait(min(sleep_for, 60))

    LOG.info("Scheduler stopped")
    return 0


def _require_scheduler(scheduler: Optional[SchedulerConfig]) -> SchedulerConfig:
    if not scheduler:
        raise ConfigurationError("Scheduler configuration is required (add a 'scheduler' section).")
    return scheduler


def _next_run(cron_expression: str, reference: datetime) -> datetime:
    return croniter(cron_expression, reference).get_next(datetime)


# --- Entry point -------------------------------------------------------------

COMMANDS = {
    "backup": _command_backup,
    "restore": _command_restore,
    "manage-targets": _command_targets,
    "targets": _command_targets,
    "schedule": _command_schedule,
}


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    config_path = Path(args.config).expanduser()
    try:
        config = load_config(config_path)
        return COMMANDS[args.command](args, config, config_path)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_CONFIG
    except BackupError as exc:
        LOG.error("%s", exc)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
