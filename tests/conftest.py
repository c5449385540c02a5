"""Shared fixtures: temporary config, fake transports and a fake snapshot store."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from stack_backup.adapters import AdapterContext
from stack_backup.config import CoreConfig, ExecutionConfig, RetentionConfig
from stack_backup.errors import ExecutionFailedError, SnapshotStoreError
from stack_backup.registry import TargetRegistry
from stack_backup.secrets import SecretResolver
from stack_backup.store import Snapshot
from stack_backup.targets import Target, parse_target


@pytest.fixture
def config(tmp_path: Path) -> CoreConfig:
    return CoreConfig(
        registry_dir=tmp_path / "registry",
        staging_dir=tmp_path / "staging",
        restore_dir=tmp_path / "restore",
        log_dir=tmp_path / "logs",
        host="test-host",
    )


@pytest.fixture
def registry(config: CoreConfig) -> TargetRegistry:
    config.registry_dir.mkdir(parents=True, exist_ok=True)
    return TargetRegistry(config.registry_dir)


class FakeBackend:
    """Records every call; ``responses`` maps an argv prefix to stdout bytes or a callable."""

    name = "fake"

    def __init__(self, responses: Optional[Dict[str, object]] = None) -> None:
        self.calls: List[tuple] = []
        self.responses = dict(responses or {})
        self.copied_in: Dict[str, bytes] = {}
        self.copied_trees: Dict[str, Dict[str, bytes]] = {}
        self.remote_files: Dict[str, bytes] = {}
        self.received: List[bytes] = []
        self.fail_copy_in = False

    def _response(self, argv) -> bytes:
        joined = " ".join(argv)
        for prefix, response in self.responses.items():
            if joined.startswith(prefix):
                if callable(response):
                    return response(argv)
                return response
        return b""

    def exec(self, argv, *, env=None, stdin=None, stdout=None, sensitive=()):
        self.calls.append(("exec", list(argv), dict(env or {}), stdin, stdout))
        if stdin is not None:
            self.received.append(Path(stdin).read_bytes())
        data = self._response(argv)
        if stdout is not None:
            Path(stdout).write_bytes(data)
            return b""
        return data

    def copy_out(self, remote_path, local_path):
        self.calls.append(("copy_out", remote_path, local_path))
        Path(local_path).write_bytes(self.remote_files.get(remote_path, b""))

    def copy_in(self, local_path, remote_path):
        self.calls.append(("copy_in", local_path, remote_path))
        if self.fail_copy_in:
            raise ExecutionFailedError("test", self.name, 1, "copy failed")
        path = Path(local_path)
        if path.is_dir():
            self.copied_trees[remote_path] = {
                child.relative_to(path).as_posix(): child.read_bytes() for child in path.rglob("*") if child.is_file()
            }
        else:
            self.copied_in[remote_path] = path.read_bytes()

    def run_helper(self, volume, mount_point, argv, *, read_only=False, stdin=None, stdout=None):
        self.calls.append(("run_helper", volume, mount_point, list(argv), read_only))
        if stdin is not None:
            self.received.append(Path(stdin).read_bytes())
        if stdout is not None:
            Path(stdout).write_bytes(self._response(argv))
        return b""

    def ensure_volume(self, volume):
        self.calls.append(("ensure_volume", volume))

    def stop_engine(self):
        self.calls.append(("stop_engine",))

    def start_engine(self):
        self.calls.append(("start_engine",))

    def required_tools(self):
        return []

    def call_names(self) -> List[str]:
        return [call[0] for call in self.calls]


@pytest.fixture
def fake_backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def adapter_context(fake_backend: FakeBackend) -> AdapterContext:
    secrets = SecretResolver({"DB_PASSWORD": "s3cret", "QDRANT_KEY": "qkey"})
    settings = ExecutionConfig(settle_timeout=5, settle_poll_interval=1.0)
    return AdapterContext(backends=lambda target: fake_backend, secrets=secrets, settings=settings)


def make_target(engine: str, **fields) -> Target:
    record = {"name": "main", "mode": "container", "container": "main-db"}
    record.update(fields)
    return parse_target(engine, record)


class FakeStore:
    """In-memory stand-in for the restic repository."""

    name = "restic"

    def __init__(self, archive: Path) -> None:
        self.archive = archive
        self.calls: List[tuple] = []
        self.fail_on: Optional[str] = None
        self.snapshot_counter = 0

    def _check(self, verb: str) -> None:
        if self.fail_on == verb:
            raise SnapshotStoreError(f"restic {verb} failed")

    def required_tools(self) -> List[str]:
        return ["restic"]

    def ensure_initialized(self) -> None:
        self.calls.append(("ensure_initialized",))
        self._check("init")

    def backup(self, path: Path, tags, host: str) -> str:
        self.calls.append(("backup", Path(path), list(tags), host))
        self._check("backup")
        self.snapshot_counter += 1
        snapshot_id = f"{self.snapshot_counter:08d}deadbeef"
        shutil.copytree(path, self.archive / snapshot_id / "staging")
        return snapshot_id

    def forget(self, policy: RetentionConfig) -> None:
        self.calls.append(("forget", policy))
        self._check("forget")

    def forget_snapshot(self, snapshot_id: str) -> None:
        self.calls.append(("forget_snapshot", snapshot_id))

    def snapshots(self, tags=()) -> List[Snapshot]:
        return [
            Snapshot(id=path.name, short_id=path.name[:8], time="", hostname="test-host")
            for path in sorted(self.archive.iterdir())
        ]

    def ls(self, snapshot_id: str) -> List[str]:
        root = self.archive / snapshot_id
        return sorted(f"/{path.relative_to(root)}" for path in root.rglob("*"))

    def restore(self, snapshot_id: str, target_dir: Path, include: Optional[str] = None) -> None:
        self.calls.append(("restore", snapshot_id, Path(target_dir), include))
        self._check("restore")
        source = self.archive / snapshot_id
        if not source.exists():
            raise SnapshotStoreError(f"snapshot {snapshot_id} not found")
        for path in source.rglob("*"):
            relative = path.relative_to(source)
            if include and include not in str(relative):
                continue
            if path.is_file():
                destination = Path(target_dir) / relative
                destination.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(path, destination)


@pytest.fixture
def fake_store(tmp_path: Path) -> FakeStore:
    archive = tmp_path / "archive"
    archive.mkdir()
    return FakeStore(archive)


class FakeAdapter:
    """Writes a fixed payload per unit; raises for units listed in ``failures``."""

    supported_modes = frozenset({"container", "orchestrated", "network", "path"})
    restore_modes = supported_modes
    extensions = (".sql.gz",)
    default_unit = "app"

    def __init__(self, engine: str = "postgres", units: Optional[List[str]] = None) -> None:
        self.engine = engine
        self.units = units or ["app"]
        self.failures: Dict[str, Exception] = {}
        self.dumped: List[tuple] = []
        self.restored: List[tuple] = []
        self.on_dump: Optional[Callable[[Target, str], None]] = None

    def logical_units(self, target: Target) -> List[str]:
        return list(target.databases) or list(self.units)

    def artifact_extension(self, target: Target) -> str:
        return ".sql.gz"

    def required_tools(self, target: Target) -> List[str]:
        return []

    def overwrite_warning(self, target: Target, unit: str) -> str:
        return f"This will OVERWRITE '{unit}' on {target.location()}"

    def dump(self, target: Target, unit: str, output: Path) -> None:
        self.dumped.append((target.name, unit))
        if self.on_dump:
            self.on_dump(target, unit)
        failure = self.failures.get(f"{target.name}/{unit}")
        if failure:
            output.write_bytes(b"partial")
            raise failure
        output.write_bytes(f"dump of {target.name}/{unit}".encode())

    def restore(self, target: Target, unit: str, artifact: Path) -> None:
        self.restored.append((target.name, unit, artifact.read_bytes()))
