from __future__ import annotations

from typing import Dict, Type

from stack_backup.backends import BackendFactory
from stack_backup.config import ExecutionConfig
from stack_backup.errors import ConfigurationError
from stack_backup.secrets import SecretResolver

from .base import AdapterContext, EngineAdapter
from .mongo import MongoAdapter
from .mysql import MySQLAdapter
from .nats import NatsAdapter
from .postgres import PostgresAdapter
from .qdrant import QdrantAdapter
from .redis import RedisAdapter
from .volume import VolumeAdapter

ADAPTERS: Dict[str, Type] = {
    "postgres": PostgresAdapter,
    "mysql": MySQLAdapter,
    "redis": RedisAdapter,
    "mongo": MongoAdapter,
    "nats": NatsAdapter,
    "qdrant": QdrantAdapter,
    "volumes": VolumeAdapter,
}


def build_adapters(
    backends: BackendFactory,
    secrets: SecretResolver,
    settings: ExecutionConfig,
) -> Dict[str, EngineAdapter]:
    context = AdapterContext(backends=backends, secrets=secrets, settings=settings)
    return {engine: adapter_cls(context) for engine, adapter_cls in ADAPTERS.items()}


def get_adapter(adapters: Dict[str, EngineAdapter], engine: str) -> EngineAdapter:
    try:
        return adapters[engine]
    except KeyError as exc:
        raise ConfigurationError(f"No adapter registered for engine '{engine}'.") from exc


__all__ = [
    "ADAPTERS",
    "AdapterContext",
    "EngineAdapter",
    "build_adapters",
    "get_adapter",
]
