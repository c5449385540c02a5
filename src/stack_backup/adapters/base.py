from __future__ import annotations

import gzip
import os
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, FrozenSet, Iterator, List, Optional, Protocol, Tuple

from stack_backup.backends import ExecutionBackend
from stack_backup.config import ExecutionConfig
from stack_backup.errors import ArtifactNotFoundError, UnsupportedCombinationError
from stack_backup.secrets import SecretResolver
from stack_backup.targets import Target

COPY_CHUNK = 1024 * 1024


@dataclass
class AdapterContext:
    """Collaborators every adapter needs: transport factory, secrets and limits."""

    backends: Callable[[Target], ExecutionBackend]
    secrets: SecretResolver
    settings: ExecutionConfig


class EngineAdapter(Protocol):
    engine: str
    supported_modes: FrozenSet[str]
    restore_modes: FrozenSet[str]
    extensions: Tuple[str, ...]
    default_unit: Optional[str]

    def logical_units(self, target: Target) -> List[str]:
        ...

    def artifact_extension(self, target: Target) -> str:
        ...

    def dump(self, target: Target, unit: str, output: Path) -> None:
        ...

    def restore(self, target: Target, unit: str, artifact: Path) -> None:
        ...

    def overwrite_warning(self, target: Target, unit: str) -> str:
        ...

    def required_tools(self, target: Target) -> List[str]:
        ...


def require_mode(target: Target, modes: FrozenSet[str], operation: str) -> None:
    if target.mode not in modes:
        raise UnsupportedCombinationError(
            f"{operation} of {target.engine} target '{target.name}' is not supported in {target.mode} mode "
            f"(supported: {', '.join(sorted(modes)) or 'none'})",
            details={"engine": target.engine, "mode": target.mode, "operation": operation},
        )


def ensure_artifact(path: Path, target: Target, unit: str) -> None:
    if not path.exists() or path.stat().st_size == 0:
        raise ArtifactNotFoundError(
            f"{target.engine} target '{target.name}' produced no data for '{unit}'",
            details={"path": str(path)},
        )


def gzip_file(source: Path, destination: Path) -> None:
    with source.open("rb") as src, gzip.open(destination, "wb") as dst:
        shutil.copyfileobj(src, dst, COPY_CHUNK)


def gunzip_file(source: Path, destination: Path) -> None:
    with gzip.open(source, "rb") as src, destination.open("wb") as dst:
        shutil.copyfileobj(src, dst, COPY_CHUNK)


@contextmanager
def scratch_file(directory: Path, suffix: str) -> Iterator[Path]:
    """Yield a temporary file path next to the artifact, removed afterwards."""

    directory.mkdir(parents=True, exist_ok=True)
    fd, name = tempfile.mkstemp(prefix=".scratch-", suffix=suffix, dir=directory)
    os.close(fd)
    path = Path(name)
    try:
        yield path
    finally:
        path.unlink(missing_ok=True)
