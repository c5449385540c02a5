from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Sequence

from stack_backup.config import ExecutionConfig
from stack_backup.errors import UnsupportedCombinationError
from stack_backup.targets import Target

from .base import Env, run_command


class OrchestratedBackend:
    """Runs commands inside a pod of an orchestration cluster via kubectl."""

    name = "orchestrated"

    def __init__(self, target: Target, settings: ExecutionConfig) -> None:
        self._target = target
        self._settings = settings
        self._kubectl = settings.kubectl

    def _scope(self) -> List[str]:
        return ["-n", str(self._target.namespace)]

    def _container_args(self) -> List[str]:
        if self._target.pod_container:
            return ["-c", self._target.pod_container]
        return []

    def exec(
        self,
        argv: Sequence[str],
        *,
        env: Optional[Env] = None,
        stdin: Optional[Path] = None,
        stdout: Optional[Path] = None,
        sensitive: Sequence[str] = (),
    ) -> bytes:
        cmd = [self._kubectl, "exec"]
        if stdin is not None:
            cmd.append("-i")
        cmd.extend(self._scope())
        cmd.append(str(self._target.pod))
        cmd.extend(self._container_args())
        cmd.append("--")
        # kubectl exec has no environment flag; values travel through env(1)
        if env:
            cmd.append("env")
            cmd.extend(f"{key}={value}" for key, value in env.items())
        cmd.extend(argv)
        secrets = list(sensitive) + [value for value in (env or {}).values() if value]
        return self._run(cmd, stdin=stdin, stdout=stdout, sensitive=secrets)

    def copy_out(self, remote_path: str, local_path: Path) -> None:
        self._run(
            [self._kubectl, "cp", *self._scope(), *self._container_args(), f"{self._target.pod}:{remote_path}", str(local_path)]
        )

    def copy_in(self, local_path: Path, remote_path: str) -> None:
        self._run(
            [self._kubectl, "cp", *self._scope(), *self._container_args(), str(local_path), f"{self._target.pod}:{remote_path}"]
        )

    def stop_engine(self) -> None:
        raise UnsupportedCombinationError(
            f"Cannot stop the engine of pod {self._target.namespace}/{self._target.pod}: "
            "scale down the owning workload, copy the data onto its volume and scale it up again."
        )

    def start_engine(self) -> None:
        raise UnsupportedCombinationError(
            f"Cannot start the engine of pod {self._target.namespace}/{self._target.pod} from kubectl exec."
        )

    def required_tools(self) -> List[str]:
        return [self._kubectl]

    def _run(
        self,
        cmd: Sequence[str],
        *,
        stdin: Optional[Path] = None,
        stdout: Optional[Path] = None,
        sensitive: Sequence[str] = (),
    ) -> bytes:
        return run_command(
            cmd,
            target=self._target.key,
            backend=self.name,
            timeout=self._settings.command_timeout,
            stdin=stdin,
            stdout=stdout,
            sensitive=sensitive,
        )
