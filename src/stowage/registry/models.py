"""Data model types for the bucket registry.

These dataclasses represent the rows the registry stores (bucket configs and
file records), the unvalidated registration input, and the usage snapshots
produced by capacity accounting.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

GIB = 1024 * 1024 * 1024
MIB = 1024 * 1024

FILE_PENDING = "pending"
FILE_COMPLETE = "complete"

USAGE_SUCCESS = "Success"
USAGE_ERROR = "Error"
USAGE_NOT_FOUND = "NotFound"


@dataclass
class BucketConfig:
    """A registered storage bucket.

    Attributes:
        id: Numeric registry id.
        name: Provider-side bucket name.
        provider: Free-form provider tag (e.g. 'r2', 'minio', 'aws').
        region: Provider region, 'auto' when the provider ignores it.
        endpoint: S3 API endpoint URL.
        access_key_encrypted: JWE-encrypted access key id.
        secret_key_encrypted: JWE-encrypted secret access key.
        total_capacity_gb: Configured capacity, None to use the default.
        storage_used_bytes: Cached usage from the last successful refresh.
        is_private: Whether objects are served without a public URL.
        cdn_url: Public base URL for final object URLs, if any.
        created_at: ISO 8601 creation timestamp.
        updated_at: ISO 8601 timestamp of the last mutation.
    """

    id: int
    name: str
    provider: str
    region: str
    endpoint: str
    access_key_encrypted: str
    secret_key_encrypted: str
    total_capacity_gb: float | None = None
    storage_used_bytes: int = 0
    is_private: bool = False
    cdn_url: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> BucketConfig:
        return cls(
            id=int(row["id"]),
            name=row["name"],
            provider=row["provider"],
            region=row["region"],
            endpoint=row["endpoint"],
            access_key_encrypted=row["access_key_encrypted"],
            secret_key_encrypted=row["secret_key_encrypted"],
            total_capacity_gb=row.get("total_capacity_gb"),
            storage_used_bytes=int(row.get("storage_used_bytes") or 0),
            is_private=bool(row.get("is_private")),
            cdn_url=row.get("cdn_url"),
            created_at=row.get("created_at", ""),
            updated_at=row.get("updated_at", ""),
        )

    def to_public(self) -> dict[str, Any]:
        """Serialize for API responses, leaving out both encrypted secrets."""
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.provider,
            "region": self.region,
            "endpoint": self.endpoint,
            "totalCapacityGb": self.total_capacity_gb,
            "storageUsedBytes": self.storage_used_bytes,
            "isPrivate": self.is_private,
            "cdnUrl": self.cdn_url,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class BucketDraft:
    """Unvalidated bucket registration input.

    Fields are loosely typed; :func:`stowage.validation.validate_bucket_draft`
    reports every problem at once.
    """

    name: str = ""
    region: str = ""
    endpoint: str = ""
    provider: str = ""
    total_capacity_gb: Any = None
    access_key: str = ""
    secret_key: str = ""
    is_private: bool = False
    cdn_url: str | None = None


@dataclass
class FileRecord:
    """A broker catalog row for one uploaded object.

    Attributes:
        file_id: Opaque uuid hex id handed to the client.
        bucket_id: Registry id of the target bucket.
        key: Storage object key.
        file_name: Original client-side file name.
        content_type: MIME type declared at presign time.
        size_bytes: Final size, None until completion.
        upload_id: Provider multipart upload id, multipart only.
        status: 'pending' until completion, then 'complete'.
        final_url: Access URL of the stored object.
        created_at: ISO 8601 creation timestamp.
        completed_at: ISO 8601 completion timestamp, if complete.
    """

    file_id: str
    bucket_id: int
    key: str
    file_name: str
    content_type: str = "application/octet-stream"
    size_bytes: int | None = None
    upload_id: str | None = None
    status: str = FILE_PENDING
    final_url: str = ""
    created_at: str = ""
    completed_at: str | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> FileRecord:
        return cls(
            file_id=row["file_id"],
            bucket_id=int(row["bucket_id"]),
            key=row["key"],
            file_name=row["file_name"],
            content_type=row.get("content_type") or "application/octet-stream",
            size_bytes=row.get("size_bytes"),
            upload_id=row.get("upload_id"),
            status=row.get("status", FILE_PENDING),
            final_url=row.get("final_url") or "",
            created_at=row.get("created_at", ""),
            completed_at=row.get("completed_at"),
        )

    @property
    def is_complete(self) -> bool:
        return self.status == FILE_COMPLETE


def format_mb(num_bytes: int) -> str:
    return f"{num_bytes / MIB:.2f} MB"


def format_gb(value_gb: float) -> str:
    return f"{value_gb:.2f} GB"


@dataclass
class UsageSnapshot:
    """Result of one capacity accounting pass for one bucket.

    Only ``Success`` snapshots carry usage figures.
    """

    bucket_id: int
    status: str
    name: str = ""
    storage_used_bytes: int | None = None
    total_capacity_gb: float | None = None
    message: str = ""

    @property
    def storage_used_mb(self) -> str | None:
        if self.storage_used_bytes is None:
            return None
        return format_mb(self.storage_used_bytes)

    @property
    def storage_used_gb(self) -> str | None:
        if self.storage_used_bytes is None:
            return None
        return format_gb(self.storage_used_bytes / GIB)

    @property
    def available_capacity_gb(self) -> str | None:
        if self.storage_used_bytes is None or self.total_capacity_gb is None:
            return None
        remaining = max(self.total_capacity_gb - self.storage_used_bytes / GIB, 0.0)
        return format_gb(remaining)

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"bucketId": self.bucket_id, "status": self.status}
        if self.name:
            body["name"] = self.name
        if self.status == USAGE_SUCCESS:
            body.update(
                {
                    "storageUsedBytes": self.storage_used_bytes,
                    "storageUsedMB": self.storage_used_mb,
                    "storageUsedGB": self.storage_used_gb,
                    "availableCapacityGB": self.available_capacity_gb,
                    "totalCapacityGB": self.total_capacity_gb,
                }
            )
        if self.message:
            body["message"] = self.message
        return body
