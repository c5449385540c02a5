from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from .backends.base import run_command
from .config import RepositoryConfig, RetentionConfig
from .errors import ConfigurationError, ExecutionFailedError, SnapshotStoreError
from .secrets import SecretResolver

LOG = logging.getLogger(__name__)

Runner = Callable[..., bytes]


@dataclass
class Snapshot:
    id: str
    short_id: str
    time: str
    hostname: str = ""
    tags: List[str] = field(default_factory=list)
    paths: List[str] = field(default_factory=list)

    @classmethod
    def from_json(cls, data: Dict[str, Any]) -> "Snapshot":
        snapshot_id = data.get("id", "")
        return cls(
            id=snapshot_id,
            short_id=data.get("short_id") or snapshot_id[:8],
            time=data.get("time", ""),
            hostname=data.get("hostname", ""),
            tags=list(data.get("tags") or []),
            paths=list(data.get("paths") or []),
        )


def retention_args(policy: RetentionConfig) -> List[str]:
    # --keep-last is never below 1 so the newest snapshot always survives
    return [
        "--keep-last", str(max(1, policy.keep_last)),
        "--keep-hourly", str(policy.keep_hourly),
        "--keep-daily", str(policy.keep_daily),
        "--keep-weekly", str(policy.keep_weekly),
        "--keep-monthly", str(policy.keep_monthly),
        "--keep-yearly", str(policy.keep_yearly),
    ]


class ResticStore:
    """Deduplicating snapshot store reached only through restic verbs."""

    name = "restic"

    def __init__(
        self,
        config: RepositoryConfig,
        secrets: SecretResolver,
        runner: Runner = run_command,
    ) -> None:
        self._config = config
        self._secrets = secrets
        self._runner = runner

    @property
    def binary(self) -> str:
        return self._config.binary

    def repository_url(self) -> str:
        url = self._config.url or self._secrets.resolve(self._config.url_env)
        if not url:
            raise ConfigurationError(f"Repository location not set (config 'repository.url' or ${self._config.url_env}).")
        return url

    # Verbs -----------------------------------------------------------------
    def is_initialized(self) -> bool:
        try:
            self._run(["cat", "config"], "check repository")
        except SnapshotStoreError:
            return False
        return True

    def init(self) -> None:
        self._run(["init"], "init")

    def ensure_initialized(self) -> None:
        if self.is_initialized():
            return
        LOG.info("Initializing restic repository at %s", self.repository_url())
        self.init()

    def backup(self, path: Path, tags: Sequence[str], host: str) -> Optional[str]:
        args = ["backup", str(path), "--json", "--host", host]
        for tag in tags:
            args.extend(["--tag", tag])
        output = self._run(args, "backup")
        snapshot_id = None
        for message in _json_lines(output):
            if message.get("message_type") == "summary":
                snapshot_id = message.get("snapshot_id")
        return snapshot_id

    def snapshots(self, tags: Sequence[str] = ()) -> List[Snapshot]:
        args = ["snapshots", "--json"]
        for tag in tags:
            args.extend(["--tag", tag])
        output = self._run(args, "snapshots")
        try:
            payload = json.loads(output.decode("utf-8") or "[]")
        except ValueError as exc:
            raise SnapshotStoreError(f"Unexpected output from restic snapshots: {exc}") from exc
        return [Snapshot.from_json(item) for item in payload or []]

    def ls(self, snapshot_id: str) -> List[str]:
        output = self._run(["ls", snapshot_id, "--json"], "ls")
        return [
            message["path"]
            for message in _json_lines(output)
            if message.get("struct_type") == "node" and message.get("path")
        ]

    def restore(self, snapshot_id: str, target_dir: Path, include: Optional[str] = None) -> None:
        args = ["restore", snapshot_id, "--target", str(target_dir)]
        if include:
            args.extend(["--include", include])
        self._run(args, "restore")

    def forget(self, policy: RetentionConfig) -> None:
        self._run(["forget", *retention_args(policy), "--prune"], "forget")

    def forget_snapshot(self, snapshot_id: str) -> None:
        self._run(["forget", snapshot_id, "--prune"], "forget")

    def required_tools(self) -> List[str]:
        return [self._config.binary]

    # Internal helpers ------------------------------------------------------
    def _env(self) -> Dict[str, str]:
        env = {"RESTIC_REPOSITORY": self.repository_url()}
        password = self._secrets.resolve(self._config.password_env)
        if not password:
            raise ConfigurationError(f"Repository password variable ${self._config.password_env} is not set.")
        env["RESTIC_PASSWORD"] = password
        return env

    def _run(self, args: List[str], action: str) -> bytes:
        try:
            return self._runner(
                [self._config.binary, *args],
                target="repository",
                backend=self.name,
                timeout=self._config.timeout,
                env=self._env(),
            )
        except ExecutionFailedError as exc:
            raise SnapshotStoreError(
                f"restic {action} failed: {exc.message}",
                details={"exit_code": exc.exit_code, "stderr": exc.stderr},
            ) from exc


def _json_lines(output: bytes) -> List[Dict[str, Any]]:
    messages: List[Dict[str, Any]] = []
    for line in output.decode("utf-8", "replace").splitlines():
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            messages.append(json.loads(line))
        except ValueError:
            LOG.debug("Ignoring non-JSON restic output: %s", line)
    return messages
