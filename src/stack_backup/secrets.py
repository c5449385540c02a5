from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Mapping, Optional

from .errors import ConfigurationError

LOG = logging.getLogger(__name__)


class SecretResolver:
    """Resolves credential references (environment variable names) at call time.

    Registry entries only ever hold the *name* of a variable. A ``<NAME>_FILE``
    variable pointing at a mounted secret file is honoured when ``<NAME>``
    itself is unset.
    """

    def __init__(self, environ: Optional[Mapping[str, str]] = None) -> None:
        self._environ = environ

    def _env(self) -> Mapping[str, str]:
        return os.environ if self._environ is None else self._environ

    def resolve(self, name: Optional[str]) -> Optional[str]:
        if not name:
            return None
        env = self._env()
        value = env.get(name)
        if value:
            return value
        file_ref = env.get(f"{name}_FILE")
        if file_ref:
            file_path = Path(file_ref)
            if file_path.exists():
                return file_path.read_text(encoding="utf-8").strip()
            LOG.warning("Secret file %s referenced by %s_FILE does not exist", file_path, name)
        return None

    def require(self, name: Optional[str], purpose: str) -> str:
        value = self.resolve(name)
        if value is None:
            raise ConfigurationError(f"Environment variable '{name}' for {purpose} is not set.")
        return value
