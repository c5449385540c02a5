from __future__ import annotations

import logging
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from stack_backup.adapters import EngineAdapter, get_adapter
from stack_backup.backends import BackendFactory
from stack_backup.config import CoreConfig, engines_for_scope, resolve_engine
from stack_backup.errors import BackupError, ConfigurationError
from stack_backup.logger import expire_logs, run_log
from stack_backup.notify import Notifier
from stack_backup.registry import TargetRegistry
from stack_backup.store import ResticStore
from stack_backup.targets import Target

LOG = logging.getLogger(__name__)

TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S"
LOG_PREFIX = "backup"
AUTOMATED_TAG = "automated"


class RunState(str, Enum):
    IDLE = "idle"
    PREFLIGHT = "preflight"
    DUMP = "dump"
    STAGE = "stage"
    SNAPSHOT = "snapshot"
    RETAIN = "retain"
    CLEANUP = "cleanup"
    NOTIFY = "notify"


@dataclass
class UnitResult:
    engine: str
    target: str
    unit: str
    status: str
    artifact: Optional[Path] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == "success"


@dataclass
class RunReport:
    started_at: datetime
    completed_at: Optional[datetime] = None
    units: List[UnitResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    snapshot_id: Optional[str] = None
    log_path: Optional[Path] = None
    cancelled: bool = False
    aborted: bool = False
    snapshot_failed: bool = False
    retention_failed: bool = False

    @property
    def failed_targets(self) -> List[str]:
        names: List[str] = []
        for unit in self.units:
            if not unit.success and unit.target not in names:
                names.append(unit.target)
        return names

    @property
    def artifacts(self) -> int:
        return sum(1 for unit in self.units if unit.success)

    @property
    def duration(self) -> float:
        end = self.completed_at or datetime.now(timezone.utc)
        return (end - self.started_at).total_seconds()

    @property
    def status(self) -> str:
        if self.aborted or self.snapshot_failed:
            return "failed"
        if self.failed_targets and not self.artifacts:
            return "failed"
        if self.failed_targets or self.retention_failed or self.cancelled:
            return "partial"
        return "success"

    @property
    def exit_code(self) -> int:
        failed = self.aborted or self.snapshot_failed or self.retention_failed or bool(self.failed_targets)
        return 1 if failed else 0

    def summary(self) -> str:
        seconds = int(self.duration)
        if self.exit_code == 0:
            text = f"Backup completed in {seconds}s ({self.artifacts} artifacts"
            if self.snapshot_id:
                text += f", snapshot {self.snapshot_id[:8]}"
            text += ")"
            if self.cancelled:
                text += " - cancelled before all targets ran"
            return text
        failures = self.failed_targets or self.errors or ["unknown error"]
        return f"Backup failed after {seconds}s: {', '.join(failures)}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class BackupPipeline:
    """Dump every enabled target into staging, ingest once, then apply retention."""

    def __init__(
        self,
        config: CoreConfig,
        registry: TargetRegistry,
        store: ResticStore,
        adapters: Dict[str, EngineAdapter],
        backends: BackendFactory,
        notifier: Optional[Notifier] = None,
        cancel_event: Optional[threading.Event] = None,
        clock: Callable[[], datetime] = _utcnow,
        which: Optional[Callable[[str], Optional[str]]] = None,
    ) -> None:
        self._config = config
        self._registry = registry
        self._store = store
        self._adapters = adapters
        self._backends = backends
        self._notifier = notifier or Notifier()
        self._cancel_event = cancel_event or threading.Event()
        self._clock = clock
        self._which = which or shutil.which
        self._state = RunState.IDLE

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def cancel_event(self) -> threading.Event:
        return self._cancel_event

    def cancel(self) -> None:
        self._cancel_event.set()

    def run(self, scope: str = "all", target_name: Optional[str] = None) -> RunReport:
        started_at = self._clock()
        timestamp = started_at.strftime(TIMESTAMP_FORMAT)
        report = RunReport(started_at=started_at)

        with run_log(self._config.log_dir, LOG_PREFIX, timestamp) as log_path:
            report.log_path = log_path
            LOG.info("Starting backup run (scope=%s%s)", scope, f", target={target_name}" if target_name else "")
            try:
                self._execute(scope, target_name, timestamp, report)
            except Exception as exc:
                LOG.exception("Backup run crashed")
                report.aborted = True
                report.errors.append(repr(exc))
                raise
            finally:
                self._cleanup()
                report.completed_at = self._clock()
                self._log_report(report)

                self._state = RunState.NOTIFY
                self._notifier.notify(report)
                self._state = RunState.IDLE
        return report

    def _execute(self, scope: str, target_name: Optional[str], timestamp: str, report: RunReport) -> None:
        try:
            self._state = RunState.PREFLIGHT
            plan = self._plan(scope, target_name)
            self._preflight(plan)
        except BackupError as exc:
            LOG.error("Backup aborted: %s", exc)
            report.aborted = True
            report.errors.append(str(exc))
            return

        self._dump_all(plan, timestamp, report)
        self._snapshot(report)
        self._retain(report)

    # Planning ----------------------------------------------------------------
    def _plan(self, scope: str, target_name: Optional[str]) -> List[Tuple[EngineAdapter, Target]]:
        if target_name:
            if scope in ("all", "databases", "db"):
                raise ConfigurationError("A target name requires a single engine scope.")
            engine = resolve_engine(scope)
            target = self._registry.get_target(engine, target_name)
            if not target.enabled:
                raise ConfigurationError(f"Target '{target.key}' is disabled.")
            return [(get_adapter(self._adapters, engine), target)]

        plan: List[Tuple[EngineAdapter, Target]] = []
        for engine in engines_for_scope(scope):
            targets = self._registry.list_targets(engine)
            if not targets:
                LOG.debug("No enabled %s targets", engine)
                continue
            adapter = get_adapter(self._adapters, engine)
            plan.extend((adapter, target) for target in targets)
        return plan

    def _preflight(self, plan: List[Tuple[EngineAdapter, Target]]) -> None:
        tools: List[str] = list(self._store.required_tools())
        for adapter, target in plan:
            for tool in [*self._backends(target).required_tools(), *adapter.required_tools(target)]:
                if tool not in tools:
                    tools.append(tool)
        missing = [tool for tool in tools if self._which(tool) is None]
        if missing:
            raise ConfigurationError(f"Required tools not found on PATH: {', '.join(missing)}")
        self._store.ensure_initialized()
        LOG.info("Preflight passed for %s target(s)", len(plan))

    # Dump ------------------------------------------------------------------
    def _dump_all(self, plan: List[Tuple[EngineAdapter, Target]], timestamp: str, report: RunReport) -> None:
        self._state = RunState.DUMP
        for adapter, target in plan:
            if self._cancel_requested(report):
                return
            try:
                units = adapter.logical_units(target)
            except BackupError as exc:
                LOG.error("Could not enumerate units of %s: %s", target.key, exc)
                report.units.append(UnitResult(target.engine, target.name, "*", "failed", error=str(exc)))
                continue
            except Exception as exc:  # noqa: BLE001
                LOG.exception("Unexpected error enumerating units of %s", target.key)
                report.units.append(UnitResult(target.engine, target.name, "*", "failed", error=repr(exc)))
                continue

            for unit in units:
                if self._cancel_requested(report):
                    return
                report.units.append(self._dump_unit(adapter, target, unit, timestamp))
        self._state = RunState.STAGE

    def _dump_unit(self, adapter: EngineAdapter, target: Target, unit: str, timestamp: str) -> UnitResult:
        artifact = self.artifact_path(target, unit, timestamp, adapter.artifact_extension(target))
        artifact.parent.mkdir(parents=True, exist_ok=True)
        LOG.info("Dumping %s unit %s", target.key, unit)
        try:
            adapter.dump(target, unit, artifact)
        except (BackupError, OSError) as exc:
            LOG.error("Dump of %s unit %s failed: %s", target.key, unit, exc)
            artifact.unlink(missing_ok=True)
            return UnitResult(target.engine, target.name, unit, "failed", error=str(exc))
        except Exception as exc:  # noqa: BLE001
            LOG.exception("Unexpected error dumping %s unit %s", target.key, unit)
            artifact.unlink(missing_ok=True)
            return UnitResult(target.engine, target.name, unit, "failed", error=repr(exc))

        LOG.info("Staged %s (%s bytes)", artifact.name, artifact.stat().st_size)
        return UnitResult(target.engine, target.name, unit, "success", artifact=artifact)

    def artifact_path(self, target: Target, unit: str, timestamp: str, extension: str) -> Path:
        directory = self._config.staging_dir / target.engine / target.name / unit
        return directory / f"{target.name}_{unit}_{timestamp}{extension}"

    def _cancel_requested(self, report: RunReport) -> bool:
        if self._cancel_event.is_set():
            if not report.cancelled:
                LOG.warning("Cancellation requested; skipping remaining targets")
            report.cancelled = True
        return report.cancelled

    # Snapshot and retention ------------------------------------------------
    def _snapshot(self, report: RunReport) -> None:
        if not report.artifacts:
            LOG.warning("Nothing staged; skipping snapshot")
            return
        self._state = RunState.SNAPSHOT
        tags = [AUTOMATED_TAG, report.started_at.strftime("%Y-%m-%d")]
        try:
            report.snapshot_id = self._store.backup(self._config.staging_dir, tags, self._config.host_label())
        except BackupError as exc:
            LOG.error("Snapshot failed: %s", exc)
            report.snapshot_failed = True
            report.errors.append(str(exc))
            return
        LOG.info("Created snapshot %s", report.snapshot_id or "(id unknown)")

    def _retain(self, report: RunReport) -> None:
        if report.snapshot_failed or not report.artifacts:
            return
        self._state = RunState.RETAIN
        try:
            self._store.forget(self._config.retention)
        except BackupError as exc:
            LOG.error("Retention failed: %s", exc)
            report.retention_failed = True
            report.errors.append(str(exc))

    # Cleanup ---------------------------------------------------------------
    def _cleanup(self) -> None:
        self._state = RunState.CLEANUP
        staging = self._config.staging_dir
        if staging.exists():
            for child in staging.iterdir():
                try:
                    if child.is_dir() and not child.is_symlink():
                        shutil.rmtree(child)
                    else:
                        child.unlink()
                except OSError as exc:
                    LOG.warning("Could not remove %s: %s", child, exc)
        try:
            removed = expire_logs(self._config.log_dir, LOG_PREFIX, self._config.log_retention_days)
        except OSError as exc:
            LOG.warning("Could not expire old logs: %s", exc)
        else:
            if removed:
                LOG.info("Removed %s expired log file(s)", len(removed))

    def _log_report(self, report: RunReport) -> None:
        if report.exit_code == 0:
            LOG.info(report.summary())
        else:
            LOG.error(report.summary())
            for unit in report.units:
                if not unit.success:
                    LOG.error("  %s/%s [%s]: %s", unit.engine, unit.target, unit.unit, unit.error)
