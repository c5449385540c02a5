"""Backup and restore of heterogeneous data stores through restic."""

from __future__ import annotations

from .config import CoreConfig, load_config  # noqa: F401
from .pipeline import BackupPipeline, RestorePipeline  # noqa: F401
from .registry import TargetRegistry  # noqa: F401
