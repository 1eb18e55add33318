"""In-memory registry store for Stowage.

Useful for testing and ephemeral deployments. Data is lost on restart.
"""

import itertools
from datetime import datetime, timezone
from typing import Any


def _now_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


class MemoryRegistryStore:
    """In-memory registry store using Python dicts.

    Rows are copied on the way in and out so callers never share mutable
    state with the store.
    """

    def __init__(self) -> None:
        self._buckets: dict[int, dict[str, Any]] = {}
        self._files: dict[str, dict[str, Any]] = {}
        self._ids = itertools.count(1)

    async def init_db(self) -> None:
        pass

    async def close(self) -> None:
        self._buckets.clear()
        self._files.clear()

    async def ping(self) -> None:
        pass

    async def insert_bucket(
        self,
        name: str,
        provider: str,
        region: str,
        endpoint: str,
        access_key_encrypted: str,
        secret_key_encrypted: str,
        total_capacity_gb: float | None = None,
        is_private: bool = False,
        cdn_url: str | None = None,
    ) -> dict[str, Any]:
        now = _now_iso()
        bucket_id = next(self._ids)
        self._buckets[bucket_id] = {
            "id": bucket_id,
            "name": name,
            "provider": provider,
            "region": region,
            "endpoint": endpoint,
            "access_key_encrypted": access_key_encrypted,
            "secret_key_encrypted": secret_key_encrypted,
            "total_capacity_gb": total_capacity_gb,
            "storage_used_bytes": 0,
            "is_private": is_private,
            "cdn_url": cdn_url,
            "created_at": now,
            "updated_at": now,
        }
        return dict(self._buckets[bucket_id])

    async def get_bucket(self, bucket_id: int) -> dict[str, Any] | None:
        row = self._buckets.get(bucket_id)
        return dict(row) if row is not None else None

    async def list_buckets(self) -> list[dict[str, Any]]:
        return [dict(self._buckets[k]) for k in sorted(self._buckets)]

    async def update_bucket_secrets(
        self, bucket_id: int, access_key_encrypted: str, secret_key_encrypted: str
    ) -> bool:
        row = self._buckets.get(bucket_id)
        if row is None:
            return False
        row["access_key_encrypted"] = access_key_encrypted
        row["secret_key_encrypted"] = secret_key_encrypted
        row["updated_at"] = _now_iso()
        return True

    async def update_bucket_usage(self, bucket_id: int, storage_used_bytes: int) -> bool:
        row = self._buckets.get(bucket_id)
        if row is None:
            return False
        row["storage_used_bytes"] = storage_used_bytes
        row["updated_at"] = _now_iso()
        return True

    async def create_file(
        self,
        file_id: str,
        bucket_id: int,
        key: str,
        file_name: str,
        content_type: str,
        final_url: str,
        upload_id: str | None = None,
    ) -> dict[str, Any]:
        if file_id in self._files:
            raise KeyError(f"File record already exists: {file_id}")
        self._files[file_id] = {
            "file_id": file_id,
            "bucket_id": bucket_id,
            "key": key,
            "file_name": file_name,
            "content_type": content_type,
            "size_bytes": None,
            "upload_id": upload_id,
            "status": "pending",
            "final_url": final_url,
            "created_at": _now_iso(),
            "completed_at": None,
        }
        return dict(self._files[file_id])

    async def get_file(self, file_id: str) -> dict[str, Any] | None:
        row = self._files.get(file_id)
        return dict(row) if row is not None else None

    async def complete_file(
        self,
        file_id: str,
        size_bytes: int,
        content_type: str,
        final_url: str,
    ) -> dict[str, Any] | None:
        row = self._files.get(file_id)
        if row is None:
            return None
        if row["status"] == "pending":
            row.update(
                status="complete",
                size_bytes=size_bytes,
                content_type=content_type,
                final_url=final_url,
                completed_at=_now_iso(),
            )
        return dict(row)
