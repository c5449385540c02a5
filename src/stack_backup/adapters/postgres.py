from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List

from stack_backup.targets import Target

from .base import AdapterContext, ensure_artifact, gunzip_file, gzip_file, require_mode, scratch_file

LOG = logging.getLogger(__name__)

DUMP_OPTIONS = ["--no-owner", "--no-acl", "--clean", "--if-exists"]
RESTORE_OPTIONS = ["--no-owner", "--clean", "--if-exists"]


class PostgresAdapter:
    """Logical pg_dump exports; custom format enables selective pg_restore."""

    engine = "postgres"
    supported_modes = frozenset({"container", "orchestrated", "network"})
    restore_modes = supported_modes
    extensions = (".sql.gz", ".dump.gz")
    default_unit = "postgres"

    def __init__(self, context: AdapterContext) -> None:
        self._ctx = context

    def logical_units(self, target: Target) -> List[str]:
        return list(target.databases) or [self.default_unit]

    def artifact_extension(self, target: Target) -> str:
        return ".dump.gz" if target.custom_format else ".sql.gz"

    def required_tools(self, target: Target) -> List[str]:
        return ["pg_dump"] if target.mode == "network" else []

    def overwrite_warning(self, target: Target, unit: str) -> str:
        return f"This will OVERWRITE the existing database '{unit}' on {target.location()}"

    def dump(self, target: Target, unit: str, output: Path) -> None:
        require_mode(target, self.supported_modes, "Dump")
        backend = self._ctx.backends(target)
        argv = ["pg_dump", *self._connection_args(target), "-d", unit, *DUMP_OPTIONS]
        if target.custom_format:
            argv.append("-Fc")

        with scratch_file(output.parent, ".raw") as raw:
            backend.exec(argv, env=self._env(target), stdout=raw)
            ensure_artifact(raw, target, unit)
            gzip_file(raw, output)

    def restore(self, target: Target, unit: str, artifact: Path) -> None:
        require_mode(target, self.restore_modes, "Restore")
        backend = self._ctx.backends(target)
        if artifact.name.endswith(".dump.gz"):
            argv = ["pg_restore", *self._connection_args(target), "-d", unit, *RESTORE_OPTIONS]
        else:
            argv = ["psql", "-q", *self._connection_args(target), "-d", unit]

        with scratch_file(artifact.parent, ".raw") as raw:
            gunzip_file(artifact, raw)
            LOG.info("Replaying %s into %s on %s", artifact.name, unit, target.location())
            backend.exec(argv, env=self._env(target), stdin=raw)

    def _connection_args(self, target: Target) -> List[str]:
        user = target.user or "postgres"
        if target.mode == "network":
            return ["-h", str(target.host), "-p", str(target.port or 5432), "-U", user]
        return ["-h", "localhost", "-U", user]

    def _env(self, target: Target) -> Dict[str, str]:
        env: Dict[str, str] = {}
        password = self._ctx.secrets.resolve(target.password_env)
        if password:
            env["PGPASSWORD"] = password
        if target.ssl and target.mode == "network":
            env["PGSSLMODE"] = "require"
        return env
