from __future__ import annotations

from typing import Callable, Dict, Type

from stack_backup.config import ExecutionConfig
from stack_backup.errors import UnsupportedCombinationError
from stack_backup.targets import Target

from .base import ExecutionBackend, run_command
from .container import ContainerBackend
from .local import NetworkBackend, PathBackend
from .orchestrated import OrchestratedBackend

BACKENDS: Dict[str, Type] = {
    "container": ContainerBackend,
    "orchestrated": OrchestratedBackend,
    "network": NetworkBackend,
    "path": PathBackend,
}

BackendFactory = Callable[[Target], ExecutionBackend]


def create_backend(target: Target, settings: ExecutionConfig) -> ExecutionBackend:
    try:
        backend_cls = BACKENDS[target.mode]
    except KeyError as exc:
        raise UnsupportedCombinationError(f"No execution backend registered for mode '{target.mode}'.") from exc
    return backend_cls(target, settings)


def backend_factory(settings: ExecutionConfig) -> BackendFactory:
    def _factory(target: Target) -> ExecutionBackend:
        return create_backend(target, settings)

    return _factory


__all__ = [
    "BACKENDS",
    "BackendFactory",
    "ContainerBackend",
    "ExecutionBackend",
    "NetworkBackend",
    "OrchestratedBackend",
    "PathBackend",
    "backend_factory",
    "create_backend",
    "run_command",
]
