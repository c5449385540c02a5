from __future__ import annotations

import logging
import shlex
import shutil
import tarfile
from pathlib import Path
from typing import List

from stack_backup.backends import ContainerBackend
from stack_backup.errors import ArtifactNotFoundError
from stack_backup.targets import Target

from .base import AdapterContext, ensure_artifact, require_mode

LOG = logging.getLogger(__name__)

SOURCE_MOUNT = "/source"
TARGET_MOUNT = "/target"


class VolumeAdapter:
    """Whole-tree tar.gz archives with no engine semantics."""

    engine = "volumes"
    supported_modes = frozenset({"container", "orchestrated", "path"})
    restore_modes = supported_modes
    extensions = (".tar.gz",)
    default_unit = "data"

    def __init__(self, context: AdapterContext) -> None:
        self._ctx = context

    def logical_units(self, target: Target) -> List[str]:
        return [self.default_unit]

    def artifact_extension(self, target: Target) -> str:
        return ".tar.gz"

    def required_tools(self, target: Target) -> List[str]:
        return []

    def overwrite_warning(self, target: Target, unit: str) -> str:
        return f"This will REPLACE all data in volume target '{target.name}' ({target.location()})"

    def dump(self, target: Target, unit: str, output: Path) -> None:
        require_mode(target, self.supported_modes, "Dump")
        if target.mode == "path":
            self._archive_path(target, output)
        elif target.mode == "container" and target.volume:
            helper: ContainerBackend = self._ctx.backends(target)  # type: ignore[assignment]
            helper.run_helper(
                target.volume,
                SOURCE_MOUNT,
                ["tar", "-czf", "-", "-C", SOURCE_MOUNT, "."],
                read_only=True,
                stdout=output,
            )
        else:
            backend = self._ctx.backends(target)
            backend.exec(["tar", "-czf", "-", "-C", str(target.mount_path), "."], stdout=output)
        ensure_artifact(output, target, unit)

    def restore(self, target: Target, unit: str, artifact: Path) -> None:
        require_mode(target, self.restore_modes, "Restore")
        if target.mode == "path":
            self._extract_path(target, artifact)
        elif target.mode == "container" and target.volume:
            helper: ContainerBackend = self._ctx.backends(target)  # type: ignore[assignment]
            helper.ensure_volume(target.volume)
            helper.run_helper(target.volume, TARGET_MOUNT, ["sh", "-c", _replace_script(TARGET_MOUNT)], stdin=artifact)
        else:
            backend = self._ctx.backends(target)
            backend.exec(["sh", "-c", _replace_script(str(target.mount_path))], stdin=artifact)

    def _archive_path(self, target: Target, output: Path) -> None:
        source = Path(str(target.path)).expanduser()
        if not source.exists():
            raise ArtifactNotFoundError(f"Path {source} of volume target '{target.name}' does not exist")
        LOG.debug("Archiving %s", source)
        with tarfile.open(output, "w:gz") as tar:
            tar.add(source, arcname=source.name)

    def _extract_path(self, target: Target, artifact: Path) -> None:
        destination = Path(str(target.path)).expanduser()
        with tarfile.open(artifact, "r:gz") as tar:
            names = tar.getnames()
            if not any(name == destination.name or name.startswith(f"{destination.name}/") for name in names):
                raise ArtifactNotFoundError(f"{artifact.name} does not contain '{destination.name}'")
            if destination.is_dir() and not destination.is_symlink():
                shutil.rmtree(destination)
            elif destination.exists():
                destination.unlink()
            destination.parent.mkdir(parents=True, exist_ok=True)
            LOG.info("Extracting %s into %s", artifact.name, destination.parent)
            tar.extractall(destination.parent, filter="data")


def _replace_script(mount_path: str) -> str:
    quoted = shlex.quote(mount_path)
    return f"mkdir -p {quoted} && find {quoted} -mindepth 1 -delete && tar -xzf - -C {quoted}"
