from __future__ import annotations

from pathlib import Path
from typing import Dict, List

from stack_backup.targets import Target

from .base import AdapterContext, ensure_artifact, gunzip_file, gzip_file, require_mode, scratch_file

ALL_DATABASES = "all-databases"
DUMP_OPTIONS = ["--single-transaction", "--routines", "--triggers", "--events"]


class MySQLAdapter:
    engine = "mysql"
    supported_modes = frozenset({"container", "orchestrated", "network"})
    restore_modes = supported_modes
    extensions = (".sql.gz",)
    default_unit = ALL_DATABASES

    def __init__(self, context: AdapterContext) -> None:
        self._ctx = context

    def logical_units(self, target: Target) -> List[str]:
        return list(target.databases) or [ALL_DATABASES]

    def artifact_extension(self, target: Target) -> str:
        return ".sql.gz"

    def required_tools(self, target: Target) -> List[str]:
        return ["mysqldump"] if target.mode == "network" else []

    def overwrite_warning(self, target: Target, unit: str) -> str:
        if unit == ALL_DATABASES:
            return f"This will OVERWRITE every database on {target.location()}"
        return f"This will OVERWRITE the existing database '{unit}' on {target.location()}"

    def dump(self, target: Target, unit: str, output: Path) -> None:
        require_mode(target, self.supported_modes, "Dump")
        backend = self._ctx.backends(target)
        scope = ["--all-databases"] if unit == ALL_DATABASES else [unit]
        argv = ["mysqldump", *self._connection_args(target), *scope, *DUMP_OPTIONS]

        with scratch_file(output.parent, ".raw") as raw:
            backend.exec(argv, env=self._env(target), stdout=raw)
            ensure_artifact(raw, target, unit)
            gzip_file(raw, output)

    def restore(self, target: Target, unit: str, artifact: Path) -> None:
        require_mode(target, self.restore_modes, "Restore")
        backend = self._ctx.backends(target)
        argv = ["mysql", *self._connection_args(target)]
        if unit != ALL_DATABASES:
            argv.append(unit)

        with scratch_file(artifact.parent, ".raw") as raw:
            gunzip_file(artifact, raw)
            backend.exec(argv, env=self._env(target), stdin=raw)

    def _connection_args(self, target: Target) -> List[str]:
        args = ["-u", target.user or "root"]
        if target.mode == "network":
            args.extend(["-h", str(target.host), "-P", str(target.port or 3306)])
            if target.ssl:
                args.append("--ssl-mode=REQUIRED")
        return args

    def _env(self, target: Target) -> Dict[str, str]:
        password = self._ctx.secrets.resolve(target.password_env)
        return {"MYSQL_PWD": password} if password else {}
