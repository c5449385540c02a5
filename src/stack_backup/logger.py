from __future__ import annotations

import logging
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, List

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))
    for handler in list(root.handlers):
        if getattr(handler, "_stack_backup_console", False):
            root.removeHandler(handler)
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler._stack_backup_console = True  # type: ignore[attr-defined]
    root.addHandler(handler)


@contextmanager
def run_log(log_dir: Path, prefix: str, timestamp: str) -> Iterator[Path]:
    """Mirror every log record to ``<log_dir>/<prefix>_<timestamp>.log`` for one run."""

    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"{prefix}_{timestamp}.log"
    handler = logging.FileHandler(log_path, encoding="utf-8")
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root = logging.getLogger()
    root.addHandler(handler)
    try:
        yield log_path
    finally:
        root.removeHandler(handler)
        handler.close()


def expire_logs(log_dir: Path, prefix: str, max_age_days: int) -> List[Path]:
    if max_age_days <= 0 or not log_dir.exists():
        return []

    cutoff = time.time() - max_age_days * 86400
    removed: List[Path] = []
    for path in log_dir.glob(f"{prefix}_*.log"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed.append(path)
        except FileNotFoundError:
            continue
    return removed
