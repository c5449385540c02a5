from __future__ import annotations

import shutil
from pathlib import Path
from typing import List, Optional, Sequence

from stack_backup.config import ExecutionConfig
from stack_backup.errors import ArtifactNotFoundError, UnsupportedCombinationError
from stack_backup.targets import Target

from .base import Env, run_command


class NetworkBackend:
    """Runs the engine's native client locally against a remote host."""

    name = "network"

    def __init__(self, target: Target, settings: ExecutionConfig) -> None:
        self._target = target
        self._settings = settings

    def exec(
        self,
        argv: Sequence[str],
        *,
        env: Optional[Env] = None,
        stdin: Optional[Path] = None,
        stdout: Optional[Path] = None,
        sensitive: Sequence[str] = (),
    ) -> bytes:
        return run_command(
            argv,
            target=self._target.key,
            backend=self.name,
            timeout=self._settings.command_timeout,
            env=env,
            stdin=stdin,
            stdout=stdout,
            sensitive=sensitive,
        )

    def copy_out(self, remote_path: str, local_path: Path) -> None:
        raise UnsupportedCombinationError(
            f"Network target '{self._target.key}' offers no remote file copy for {remote_path}"
        )

    def copy_in(self, local_path: Path, remote_path: str) -> None:
        raise UnsupportedCombinationError(
            f"Network target '{self._target.key}' offers no remote file copy for {remote_path}"
        )

    def stop_engine(self) -> None:
        raise UnsupportedCombinationError(f"Network target '{self._target.key}' has no process control")

    def start_engine(self) -> None:
        raise UnsupportedCombinationError(f"Network target '{self._target.key}' has no process control")

    def required_tools(self) -> List[str]:
        return []


class PathBackend(NetworkBackend):
    """Degrades every operation to the local filesystem."""

    name = "path"

    def copy_out(self, remote_path: str, local_path: Path) -> None:
        source = Path(remote_path)
        if not source.exists():
            raise ArtifactNotFoundError(f"{source} does not exist for target '{self._target.key}'")
        if source.is_dir():
            shutil.copytree(source, local_path, dirs_exist_ok=True)
        else:
            shutil.copy2(source, local_path)

    def copy_in(self, local_path: Path, remote_path: str) -> None:
        destination = Path(remote_path)
        if local_path.is_dir():
            shutil.copytree(local_path, destination, dirs_exist_ok=True)
        else:
            destination.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(local_path, destination)

    def stop_engine(self) -> None:
        raise UnsupportedCombinationError(f"Path target '{self._target.key}' has no process control")

    def start_engine(self) -> None:
        raise UnsupportedCombinationError(f"Path target '{self._target.key}' has no process control")
