"""Bucket registry: bucket configs, file records, and their stores."""

from typing import TYPE_CHECKING

from stowage.registry.models import (
    BucketConfig,
    BucketDraft,
    FileRecord,
    UsageSnapshot,
)
from stowage.registry.store import RegistryStore

if TYPE_CHECKING:
    from stowage.config import RegistryConfig

__all__ = [
    "BucketConfig",
    "BucketDraft",
    "create_registry_store",
    "FileRecord",
    "RegistryStore",
    "UsageSnapshot",
]


def create_registry_store(config: "RegistryConfig") -> RegistryStore:
    """Create a registry store instance based on configuration.

    Args:
        config: The registry configuration.

    Returns:
        A store implementing the RegistryStore protocol.

    Raises:
        ValueError: If the engine is unknown.
    """
    engine = config.engine

    if engine == "sqlite":
        from stowage.registry.sqlite import SQLiteRegistryStore

        return SQLiteRegistryStore(config.sqlite_path)

    elif engine == "memory":
        from stowage.registry.memory import MemoryRegistryStore

        return MemoryRegistryStore()

    else:
        raise ValueError(f"Unknown registry engine: {engine}")
