from __future__ import annotations

from typing import Any, Dict, Optional


class BackupError(Exception):
    """Base class for every error raised by stack-backup."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


# --- Configuration -----------------------------------------------------------


class ConfigurationError(BackupError):
    """Raised when configuration or a registry entry is malformed or missing."""


class DuplicateTargetError(ConfigurationError):
    """Raised when a target with the same engine and name already exists."""


class InvalidModeConfigurationError(ConfigurationError):
    """Raised when a target lacks the connection fields its mode requires."""


class TargetNotFoundError(ConfigurationError):
    """Raised when a named target is absent from the registry."""


# --- Runtime -----------------------------------------------------------------


class ExecutionFailedError(BackupError):
    """Raised when an external command exits non-zero, times out or cannot start."""

    def __init__(
        self,
        target: str,
        backend: str,
        exit_code: Optional[int],
        stderr: str = "",
        message: Optional[str] = None,
    ) -> None:
        self.target = target
        self.backend = backend
        self.exit_code = exit_code
        self.stderr = stderr
        if message is None:
            detail = stderr.strip().splitlines()[-1] if stderr.strip() else "no error output"
            message = f"{backend} command for '{target}' failed (exit {exit_code}): {detail}"
        super().__init__(
            message,
            details={"target": target, "backend": backend, "exit_code": exit_code},
        )


class ArtifactNotFoundError(BackupError):
    """Raised when an expected dump artifact is missing or empty."""


class SnapshotStoreError(BackupError):
    """Raised when the snapshot store cannot ingest, list or restore data."""


class UnsupportedCombinationError(BackupError):
    """Raised for engine/mode pairings that have no valid adapter path."""
