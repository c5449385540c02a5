from __future__ import annotations

from .backup import BackupPipeline, RunReport, RunState, UnitResult
from .restore import RestorePipeline, RestoreResult, is_confirmed

__all__ = [
    "BackupPipeline",
    "RestorePipeline",
    "RestoreResult",
    "RunReport",
    "RunState",
    "UnitResult",
    "is_confirmed",
]
