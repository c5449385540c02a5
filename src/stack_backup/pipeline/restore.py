from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional

from stack_backup.adapters import EngineAdapter, get_adapter
from stack_backup.adapters.base import require_mode
from stack_backup.config import CoreConfig, resolve_engine
from stack_backup.errors import ArtifactNotFoundError, ConfigurationError
from stack_backup.registry import TargetRegistry
from stack_backup.store import ResticStore, Snapshot
from stack_backup.targets import Target

LOG = logging.getLogger(__name__)

CONFIRMATION_WORD = "yes"
SHOW_LIMIT = 100

Confirm = Callable[[str], str]


@dataclass
class RestoreResult:
    status: str
    engine: str
    target: str
    unit: str
    snapshot: str
    artifact: Optional[str] = None

    @property
    def restored(self) -> bool:
        return self.status == "restored"


def is_confirmed(answer: Optional[str]) -> bool:
    return (answer or "").strip() == CONFIRMATION_WORD


class RestorePipeline:
    """Pull one artifact out of a snapshot and hand it to the engine adapter."""

    def __init__(
        self,
        config: CoreConfig,
        registry: TargetRegistry,
        store: ResticStore,
        adapters: Dict[str, EngineAdapter],
        confirm: Confirm = input,
    ) -> None:
        self._config = config
        self._registry = registry
        self._store = store
        self._adapters = adapters
        self._confirm = confirm

    # Read-only -------------------------------------------------------------
    def list_snapshots(self) -> List[Snapshot]:
        return self._store.snapshots()

    def show_snapshot(self, snapshot_id: str, limit: int = SHOW_LIMIT) -> List[str]:
        entries = self._store.ls(snapshot_id)
        return entries[:limit] if limit else entries

    # Mutating --------------------------------------------------------------
    def restore_target(
        self,
        engine: str,
        snapshot_id: str,
        target_name: str,
        unit: Optional[str] = None,
    ) -> RestoreResult:
        engine = resolve_engine(engine)
        adapter = get_adapter(self._adapters, engine)
        target = self._registry.get_target(engine, target_name)
        unit = unit or adapter.default_unit
        if not unit:
            raise ConfigurationError(f"A unit name is required to restore {engine} target '{target.name}'.")
        require_mode(target, adapter.restore_modes, "Restore")

        self._config.restore_dir.mkdir(parents=True, exist_ok=True)
        scratch = Path(tempfile.mkdtemp(prefix="restore-", dir=self._config.restore_dir))
        try:
            include = f"{engine}/{target.name}/{unit}"
            LOG.info("Extracting %s from snapshot %s", include, snapshot_id)
            self._store.restore(snapshot_id, scratch, include=include)
            artifact = self.locate_artifact(scratch, adapter, target, unit)
            LOG.info("Found artifact %s", artifact.name)

            warning = adapter.overwrite_warning(target, unit)
            LOG.warning(warning)
            answer = self._confirm(f"{warning}\nType '{CONFIRMATION_WORD}' to continue: ")
            if not is_confirmed(answer):
                LOG.info("Restore of %s cancelled", target.key)
                return RestoreResult("cancelled", engine, target.name, unit, snapshot_id, artifact.name)

            adapter.restore(target, unit, artifact)
            LOG.info("Restored %s unit %s from snapshot %s", target.key, unit, snapshot_id)
            return RestoreResult("restored", engine, target.name, unit, snapshot_id, artifact.name)
        finally:
            shutil.rmtree(scratch, ignore_errors=True)

    def restore_files(self, snapshot_id: str, pattern: str) -> Path:
        destination = self._config.restore_dir / f"files_{snapshot_id[:8]}"
        destination.mkdir(parents=True, exist_ok=True)
        self._store.restore(snapshot_id, destination, include=pattern)
        LOG.info("Restored files matching %s into %s", pattern, destination)
        return destination

    def forget_snapshot(self, snapshot_id: str) -> bool:
        answer = self._confirm(f"This will permanently delete snapshot {snapshot_id}.\nType '{CONFIRMATION_WORD}' to continue: ")
        if not is_confirmed(answer):
            LOG.info("Deletion of snapshot %s cancelled", snapshot_id)
            return False
        self._store.forget_snapshot(snapshot_id)
        LOG.info("Deleted snapshot %s", snapshot_id)
        return True

    @staticmethod
    def locate_artifact(root: Path, adapter: EngineAdapter, target: Target, unit: str) -> Path:
        """Return the newest ``<target>_<unit>_*<ext>`` below ``root``."""

        prefix = f"{target.name}_{unit}_"
        candidates = [
            path
            for path in root.rglob(f"{prefix}*")
            if path.is_file()
            and path.parent.name == unit
            and path.parent.parent.name == target.name
            and path.name.endswith(adapter.extensions)
        ]
        if not candidates:
            raise ArtifactNotFoundError(
                f"No {target.engine} artifact for target '{target.name}' unit '{unit}' in snapshot",
                details={"pattern": f"{prefix}*"},
            )
        # Timestamps sort lexicographically
        return max(candidates, key=lambda path: path.name)
