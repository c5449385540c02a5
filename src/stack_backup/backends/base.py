from __future__ import annotations

import logging
import os
import shlex
import subprocess
from contextlib import ExitStack
from pathlib import Path
from typing import List, Mapping, Optional, Protocol, Sequence

from stack_backup.errors import ExecutionFailedError

LOG = logging.getLogger(__name__)

Env = Mapping[str, str]


class ExecutionBackend(Protocol):
    """Runs commands against one target over a single transport."""

    name: str

    def exec(
        self,
        argv: Sequence[str],
        *,
        env: Optional[Env] = None,
        stdin: Optional[Path] = None,
        stdout: Optional[Path] = None,
        sensitive: Sequence[str] = (),
    ) -> bytes:
        ...

    def copy_out(self, remote_path: str, local_path: Path) -> None:
        ...

    def copy_in(self, local_path: Path, remote_path: str) -> None:
        ...

    def stop_engine(self) -> None:
        ...

    def start_engine(self) -> None:
        ...

    def required_tools(self) -> List[str]:
        ...


def run_command(
    argv: Sequence[str],
    *,
    target: str,
    backend: str,
    timeout: int,
    env: Optional[Env] = None,
    stdin: Optional[Path] = None,
    stdout: Optional[Path] = None,
    sensitive: Sequence[str] = (),
) -> bytes:
    """Run ``argv`` locally and return its stdout unless redirected to ``stdout``.

    Non-zero exit, timeout and a missing executable all raise
    :class:`ExecutionFailedError` so callers handle a single failure type.
    """

    secrets = [value for value in list(sensitive) + list((env or {}).values()) if value]
    LOG.debug("Running: %s", redact(argv, secrets))

    process_env = None
    if env:
        process_env = os.environ.copy()
        process_env.update(env)

    with ExitStack() as stack:
        stdin_handle = stack.enter_context(stdin.open("rb")) if stdin else subprocess.DEVNULL
        stdout_handle = stack.enter_context(stdout.open("wb")) if stdout else subprocess.PIPE
        try:
            completed = subprocess.run(
                list(argv),
                stdin=stdin_handle,
                stdout=stdout_handle,
                stderr=subprocess.PIPE,
                env=process_env,
                timeout=timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as exc:
            raise ExecutionFailedError(
                target,
                backend,
                None,
                _decode(exc.stderr),
                message=f"{backend} command for '{target}' timed out after {timeout}s",
            ) from exc
        except OSError as exc:
            raise ExecutionFailedError(target, backend, 127, str(exc)) from exc

    stderr = _mask(_decode(completed.stderr), secrets)
    if completed.returncode != 0:
        LOG.debug("Command failed with exit %s: %s", completed.returncode, stderr)
        raise ExecutionFailedError(target, backend, completed.returncode, stderr)
    if stderr.strip():
        LOG.debug("stderr: %s", stderr.strip())
    return completed.stdout or b""


def redact(argv: Sequence[str], secrets: Sequence[str]) -> str:
    return _mask(" ".join(shlex.quote(str(part)) for part in argv), secrets)


def _mask(text: str, secrets: Sequence[str]) -> str:
    for secret in secrets:
        text = text.replace(secret, "***")
    return text


def _decode(data: Optional[bytes]) -> str:
    if not data:
        return ""
    if isinstance(data, str):
        return data
    return data.decode("utf-8", "replace")
