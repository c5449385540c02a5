from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, List

from .config import ENGINES
from .errors import ConfigurationError, DuplicateTargetError, TargetNotFoundError
from .targets import Target, parse_target

LOG = logging.getLogger(__name__)


class TargetRegistry:
    """Per-engine JSON files holding the ordered list of backup targets."""

    def __init__(self, config_dir: Path) -> None:
        self._config_dir = config_dir

    @property
    def config_dir(self) -> Path:
        return self._config_dir

    def path_for(self, engine: str) -> Path:
        if engine not in ENGINES:
            raise ConfigurationError(f"Unknown engine '{engine}'.")
        return self._config_dir / f"{engine}.json"

    def engines(self) -> List[str]:
        return [engine for engine in ENGINES if self.path_for(engine).exists()]

    # Queries ---------------------------------------------------------------
    def load(self, engine: str) -> List[Target]:
        """Return every target of an engine, enabled or not, in file order."""

        document = self._read(engine)
        targets = [parse_target(engine, record) for record in document["targets"]]
        seen = set()
        for target in targets:
            if target.name in seen:
                raise ConfigurationError(
                    f"Duplicate {engine} target '{target.name}' in {self.path_for(engine)}"
                )
            seen.add(target.name)
        return targets

    def list_targets(self, engine: str, include_disabled: bool = False) -> List[Target]:
        return [target for target in self.load(engine) if include_disabled or target.enabled]

    def get_target(self, engine: str, name: str) -> Target:
        for target in self.load(engine):
            if target.name == name:
                return target
        raise TargetNotFoundError(
            f"{engine} target '{name}' not found",
            details={"engine": engine, "name": name},
        )

    # Mutations -------------------------------------------------------------
    def add_target(self, target: Target) -> None:
        document = self._read(target.engine)
        for record in document["targets"]:
            if isinstance(record, dict) and record.get("name") == target.name:
                raise DuplicateTargetError(
                    f"{target.engine} target '{target.name}' already exists",
                    details={"engine": target.engine, "name": target.name},
                )
        document["targets"].append(target.to_record())
        self._write(target.engine, document)
        LOG.info("Added %s target %s", target.engine, target.name)

    def remove_target(self, engine: str, name: str) -> None:
        document = self._read(engine)
        remaining = [
            record
            for record in document["targets"]
            if not (isinstance(record, dict) and record.get("name") == name)
        ]
        if len(remaining) == len(document["targets"]):
            raise TargetNotFoundError(f"{engine} target '{name}' not found")
        document["targets"] = remaining
        self._write(engine, document)
        LOG.info("Removed %s target %s", engine, name)

    def set_enabled(self, engine: str, name: str, enabled: bool) -> None:
        document = self._read(engine)
        for record in document["targets"]:
            if isinstance(record, dict) and record.get("name") == name:
                record["enabled"] = enabled
                break
        else:
            raise TargetNotFoundError(f"{engine} target '{name}' not found")
        self._write(engine, document)
        LOG.info("%s %s target %s", "Enabled" if enabled else "Disabled", engine, name)

    # Internal helpers ------------------------------------------------------
    def _read(self, engine: str) -> Dict[str, Any]:
        path = self.path_for(engine)
        if not path.exists():
            return {"targets": []}
        try:
            with path.open("r", encoding="utf-8") as fh:
                document = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            raise ConfigurationError(f"Cannot read registry file {path}: {exc}") from exc
        if not isinstance(document, dict):
            raise ConfigurationError(f"Registry file {path} must contain a JSON object.")
        targets = document.setdefault("targets", [])
        if not isinstance(targets, list):
            raise ConfigurationError(f"'targets' in {path} must be a list.")
        return document

    def _write(self, engine: str, document: Dict[str, Any]) -> None:
        path = self.path_for(engine)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{engine}-", suffix=".json", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(document, fh, indent=2)
                fh.write("\n")
                fh.flush()
                os.fsync(fh.fileno())
            if path.exists():
                os.chmod(tmp_name, path.stat().st_mode & 0o777)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
