from __future__ import annotations

import logging
from pathlib import Path
from typing import List, Tuple

from stack_backup.targets import Target

from .base import AdapterContext, ensure_artifact, require_mode

LOG = logging.getLogger(__name__)

ALL_DATABASES = "all"
SYSTEM_DATABASES = frozenset({"admin", "local", "config"})


class MongoAdapter:
    """Archive-format mongodump/mongorestore with replica-aware reads."""

    engine = "mongo"
    supported_modes = frozenset({"container", "orchestrated", "network"})
    restore_modes = supported_modes
    extensions = (".archive.gz",)
    default_unit = ALL_DATABASES

    def __init__(self, context: AdapterContext) -> None:
        self._ctx = context

    def logical_units(self, target: Target) -> List[str]:
        if not target.databases:
            return [ALL_DATABASES]
        units = [db for db in target.databases if db not in SYSTEM_DATABASES]
        skipped = sorted(set(target.databases) & SYSTEM_DATABASES)
        if skipped:
            LOG.info("Skipping system databases for %s: %s", target.key, ", ".join(skipped))
        return units

    def artifact_extension(self, target: Target) -> str:
        return ".archive.gz"

    def required_tools(self, target: Target) -> List[str]:
        return ["mongodump"] if target.mode == "network" else []

    def overwrite_warning(self, target: Target, unit: str) -> str:
        if unit == ALL_DATABASES:
            return f"This will DROP and replace every collection in the archive on {target.location()}"
        return f"This will OVERWRITE the existing database '{unit}' on {target.location()}"

    def dump(self, target: Target, unit: str, output: Path) -> None:
        require_mode(target, self.supported_modes, "Dump")
        backend = self._ctx.backends(target)
        args, sensitive = self._client_args(target)
        argv = ["mongodump", *args]
        if target.replica_set:
            argv.append("--readPreference=secondaryPreferred")
        if unit != ALL_DATABASES:
            argv.append(f"--db={unit}")
        argv.extend(["--archive", "--gzip"])

        backend.exec(argv, stdout=output, sensitive=sensitive)
        ensure_artifact(output, target, unit)

    def restore(self, target: Target, unit: str, artifact: Path) -> None:
        require_mode(target, self.restore_modes, "Restore")
        backend = self._ctx.backends(target)
        args, sensitive = self._client_args(target)
        argv = ["mongorestore", *args, "--drop", "--archive", "--gzip"]
        if unit != ALL_DATABASES:
            argv.append(f"--nsInclude={unit}.*")
        backend.exec(argv, stdin=artifact, sensitive=sensitive)

    def _client_args(self, target: Target) -> Tuple[List[str], List[str]]:
        args: List[str] = []
        sensitive: List[str] = []

        if target.mode == "network" and target.uri_env:
            uri = self._ctx.secrets.require(target.uri_env, f"{target.key} connection URI")
            args.append(f"--uri={uri}")
            sensitive.append(uri)
        else:
            if target.mode == "network":
                args.extend(["--host", str(target.host), "--port", str(target.port or 27017)])
            password = self._ctx.secrets.resolve(target.password_env)
            if target.user and password:
                args.extend(
                    [
                        f"--username={target.user}",
                        f"--password={password}",
                        f"--authenticationDatabase={target.auth_db}",
                    ]
                )
                sensitive.append(password)

        if target.tls.enabled:
            args.append("--tls")
            if target.tls.ca_file:
                args.append(f"--tlsCAFile={target.tls.ca_file}")
            if target.tls.allow_invalid:
                args.extend(["--tlsAllowInvalidCertificates", "--tlsAllowInvalidHostnames"])
        return args, sensitive
