from __future__ import annotations

import logging
import time
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, List, Optional

from stack_backup.backends import ExecutionBackend
from stack_backup.errors import ExecutionFailedError, UnsupportedCombinationError
from stack_backup.targets import Target

from .base import AdapterContext, ensure_artifact, gunzip_file, gzip_file, require_mode, scratch_file

LOG = logging.getLogger(__name__)

DEFAULT_DATA_DIR = "/data"
RDB_FILENAME = "dump.rdb"


class RedisAdapter:
    """Point-in-time RDB copies taken after a completed BGSAVE.

    Completion is detected from ``INFO persistence`` rather than a fixed delay:
    the save is done once no background save is running and either a running
    save was observed or ``rdb_last_save_time`` moved past the value seen
    before ``BGSAVE`` (the timestamp has one-second resolution).
    """

    engine = "redis"
    supported_modes = frozenset({"container", "orchestrated"})
    restore_modes = frozenset({"container"})
    extensions = (".rdb.gz",)
    default_unit = "dump"

    def __init__(
        self,
        context: AdapterContext,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ctx = context
        self._sleep = sleep
        self._clock = clock

    def logical_units(self, target: Target) -> List[str]:
        return [self.default_unit]

    def artifact_extension(self, target: Target) -> str:
        return ".rdb.gz"

    def required_tools(self, target: Target) -> List[str]:
        return []

    def overwrite_warning(self, target: Target, unit: str) -> str:
        return f"This will STOP Redis on {target.location()} and REPLACE all of its data"

    def dump(self, target: Target, unit: str, output: Path) -> None:
        if target.mode == "network":
            raise UnsupportedCombinationError(
                f"Redis target '{target.name}' uses network mode: the RDB file cannot be copied remotely. "
                "Back it up through a replica in container or orchestrated mode instead."
            )
        require_mode(target, self.supported_modes, "Dump")
        backend = self._ctx.backends(target)
        env = self._env(target)

        before = int(self._persistence(backend, env).get("rdb_last_save_time", "0"))
        reply = backend.exec(["redis-cli", "BGSAVE"], env=env).decode("utf-8", "replace").strip()
        if not (reply.startswith("Background saving") or "already in progress" in reply):
            raise ExecutionFailedError(target.key, backend.name, 0, reply, message=f"BGSAVE rejected by {target.key}: {reply}")
        LOG.debug("BGSAVE on %s: %s", target.key, reply)

        self._wait_for_save(target, backend, env, before)

        with scratch_file(output.parent, ".rdb") as raw:
            backend.copy_out(self._rdb_path(target), raw)
            ensure_artifact(raw, target, unit)
            gzip_file(raw, output)

    def restore(self, target: Target, unit: str, artifact: Path) -> None:
        require_mode(target, self.restore_modes, "Restore")
        backend = self._ctx.backends(target)

        with scratch_file(artifact.parent, ".rdb") as raw:
            gunzip_file(artifact, raw)
            LOG.info("Stopping %s before replacing %s", target.location(), RDB_FILENAME)
            backend.stop_engine()
            try:
                backend.copy_in(raw, self._rdb_path(target))
            finally:
                LOG.info("Starting %s", target.location())
                backend.start_engine()

    def _wait_for_save(self, target: Target, backend: ExecutionBackend, env: Dict[str, str], before: int) -> None:
        deadline = self._clock() + self._ctx.settings.settle_timeout
        seen_running = False
        while True:
            info = self._persistence(backend, env)
            in_progress = info.get("rdb_bgsave_in_progress", "0") != "0"
            last_save = int(info.get("rdb_last_save_time", "0"))
            if in_progress:
                seen_running = True
            elif seen_running or last_save > before:
                status = info.get("rdb_last_bgsave_status", "ok")
                if status != "ok":
                    raise ExecutionFailedError(
                        target.key, backend.name, 0, status, message=f"Background save on {target.key} reported '{status}'"
                    )
                return
            if self._clock() >= deadline:
                raise ExecutionFailedError(
                    target.key,
                    backend.name,
                    None,
                    message=(
                        f"Background save on {target.key} did not complete within "
                        f"{self._ctx.settings.settle_timeout}s"
                    ),
                )
            self._sleep(self._ctx.settings.settle_poll_interval)

    def _persistence(self, backend: ExecutionBackend, env: Dict[str, str]) -> Dict[str, str]:
        output = backend.exec(["redis-cli", "INFO", "persistence"], env=env).decode("utf-8", "replace")
        info: Dict[str, str] = {}
        for line in output.splitlines():
            line = line.strip()
            if not line or line.startswith("#") or ":" not in line:
                continue
            key, _, value = line.partition(":")
            info[key] = value
        return info

    def _rdb_path(self, target: Target) -> str:
        return str(PurePosixPath(target.data_dir or DEFAULT_DATA_DIR) / RDB_FILENAME)

    def _env(self, target: Target) -> Dict[str, str]:
        password: Optional[str] = self._ctx.secrets.resolve(target.password_env)
        return {"REDISCLI_AUTH": password} if password else {}
