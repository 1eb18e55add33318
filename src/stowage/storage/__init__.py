"""Storage provider access for Stowage."""

from stowage.storage.gateway import ObjectInfo, StorageGateway

__all__ = ["ObjectInfo", "StorageGateway"]
