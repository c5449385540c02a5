from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence

from stack_backup.config import ExecutionConfig
from stack_backup.errors import ConfigurationError
from stack_backup.targets import Target

from .base import Env, run_command


class ContainerBackend:
    """Runs commands inside a named, running container."""

    name = "container"

    def __init__(self, target: Target, settings: ExecutionConfig) -> None:
        self._target = target
        self._settings = settings
        self._runtime = settings.container_runtime

    @property
    def container(self) -> str:
        if not self._target.container:
            raise ConfigurationError(f"Target '{self._target.name}' has no container configured.")
        return self._target.container

    def exec(
        self,
        argv: Sequence[str],
        *,
        env: Optional[Env] = None,
        stdin: Optional[Path] = None,
        stdout: Optional[Path] = None,
        sensitive: Sequence[str] = (),
    ) -> bytes:
        cmd = [self._runtime, "exec"]
        if stdin is not None:
            cmd.append("-i")
        # "-e NAME" makes the runtime copy the value from its own environment
        for key in env or {}:
            cmd.extend(["-e", key])
        cmd.append(self.container)
        cmd.extend(argv)
        return self._run(cmd, env=env, stdin=stdin, stdout=stdout, sensitive=sensitive)

    def run_helper(
        self,
        volume: str,
        mount_point: str,
        argv: Sequence[str],
        *,
        read_only: bool = False,
        stdin: Optional[Path] = None,
        stdout: Optional[Path] = None,
    ) -> bytes:
        """Run ``argv`` in a throwaway helper container with ``volume`` mounted."""

        spec = f"{volume}:{mount_point}:ro" if read_only else f"{volume}:{mount_point}"
        cmd = [self._runtime, "run", "--rm"]
        if stdin is not None:
            cmd.append("-i")
        cmd.extend(["-v", spec, self._settings.helper_image])
        cmd.extend(argv)
        return self._run(cmd, stdin=stdin, stdout=stdout)

    def ensure_volume(self, volume: str) -> None:
        self._run([self._runtime, "volume", "create", volume])

    def copy_out(self, remote_path: str, local_path: Path) -> None:
        self._run([self._runtime, "cp", f"{self.container}:{remote_path}", str(local_path)])

    def copy_in(self, local_path: Path, remote_path: str) -> None:
        source = str(local_path)
        if local_path.is_dir():
            source = source.rstrip("/") + "/."
        self._run([self._runtime, "cp", source, f"{self.container}:{remote_path}"])

    def stop_engine(self) -> None:
        self._run([self._runtime, "stop", self.container])

    def start_engine(self) -> None:
        self._run([self._runtime, "start", self.container])

    def required_tools(self) -> List[str]:
        return [self._runtime]

    def _run(
        self,
        cmd: Sequence[str],
        *,
        env: Optional[Env] = None,
        stdin: Optional[Path] = None,
        stdout: Optional[Path] = None,
        sensitive: Sequence[str] = (),
    ) -> bytes:
        return run_command(
            cmd,
            target=self._target.key,
            backend=self.name,
            timeout=self._settings.command_timeout,
            env=env,
            stdin=stdin,
            stdout=stdout,
            sensitive=sensitive,
        )
