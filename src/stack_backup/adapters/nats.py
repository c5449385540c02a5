from __future__ import annotations

import logging
import tarfile
import tempfile
from pathlib import Path, PurePosixPath
from typing import List

from stack_backup.errors import ArtifactNotFoundError, ExecutionFailedError
from stack_backup.targets import Target

from .base import AdapterContext, ensure_artifact, require_mode

LOG = logging.getLogger(__name__)

DEFAULT_DATA_DIR = "/data/jetstream"


class NatsAdapter:
    """Filesystem-level archive of the JetStream store directory."""

    engine = "nats"
    supported_modes = frozenset({"container", "orchestrated"})
    restore_modes = frozenset({"container"})
    extensions = (".tar.gz",)
    default_unit = "jetstream"

    def __init__(self, context: AdapterContext) -> None:
        self._ctx = context

    def logical_units(self, target: Target) -> List[str]:
        return [self.default_unit]

    def artifact_extension(self, target: Target) -> str:
        return ".tar.gz"

    def required_tools(self, target: Target) -> List[str]:
        return []

    def overwrite_warning(self, target: Target, unit: str) -> str:
        return f"This will STOP NATS on {target.location()} and REPLACE all JetStream data"

    def dump(self, target: Target, unit: str, output: Path) -> None:
        require_mode(target, self.supported_modes, "Dump")
        backend = self._ctx.backends(target)
        data_dir = PurePosixPath(target.data_dir or DEFAULT_DATA_DIR)

        try:
            backend.exec(["test", "-d", str(data_dir)])
        except ExecutionFailedError as exc:
            if exc.exit_code != 1:
                raise
            raise ArtifactNotFoundError(f"JetStream directory {data_dir} not found on {target.location()}") from exc

        backend.exec(["tar", "-czf", "-", "-C", str(data_dir.parent), data_dir.name], stdout=output)
        ensure_artifact(output, target, unit)

    def restore(self, target: Target, unit: str, artifact: Path) -> None:
        require_mode(target, self.restore_modes, "Restore")
        backend = self._ctx.backends(target)
        data_dir = PurePosixPath(target.data_dir or DEFAULT_DATA_DIR)

        with tempfile.TemporaryDirectory(prefix=".nats-", dir=artifact.parent) as tmp:
            with tarfile.open(artifact, "r:gz") as tar:
                tar.extractall(tmp, filter="data")
            extracted = Path(tmp) / data_dir.name
            if not extracted.is_dir():
                raise ArtifactNotFoundError(f"{artifact.name} does not contain '{data_dir.name}/'")

            LOG.info("Stopping %s before replacing %s", target.location(), data_dir)
            backend.stop_engine()
            try:
                backend.copy_in(extracted, str(data_dir))
            finally:
                LOG.info("Starting %s", target.location())
                backend.start_engine()
