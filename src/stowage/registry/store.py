"""Abstract registry store protocol for Stowage."""

from typing import Any, Protocol


class RegistryStore(Protocol):
    """Protocol defining the registry persistence interface.

    Backends store two tables: ``buckets`` (one row per registered bucket,
    secrets already encrypted) and ``files`` (the broker's upload catalog).
    Rows are exchanged as plain dicts keyed by column name.
    """

    async def init_db(self) -> None:
        """Initialize the schema.

        Must be idempotent (safe to call on every startup).
        """
        ...

    async def close(self) -> None:
        """Close the connection and release resources."""
        ...

    async def ping(self) -> None:
        """Raise if the store cannot serve a trivial query."""
        ...

    # -- Bucket operations -----------------------------------------------------

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
        """Insert a bucket row and return it with its assigned id.

        Args:
            name: Provider-side bucket name.
            provider: Provider tag.
            region: Provider region.
            endpoint: S3 API endpoint URL.
            access_key_encrypted: Encrypted access key.
            secret_key_encrypted: Encrypted secret key.
            total_capacity_gb: Configured capacity, if any.
            is_private: Visibility flag.
            cdn_url: Public base URL, if any.

        Returns:
            The stored row.
        """
        ...

    async def get_bucket(self, bucket_id: int) -> dict[str, Any] | None:
        """Retrieve one bucket row, or None if the id is unknown."""
        ...

    async def list_buckets(self) -> list[dict[str, Any]]:
        """List every bucket row ordered by id."""
        ...

    async def update_bucket_secrets(
        self, bucket_id: int, access_key_encrypted: str, secret_key_encrypted: str
    ) -> bool:
        """Replace a bucket's encrypted secrets.

        Returns:
            True if a row was updated, False if the id is unknown.
        """
        ...

    async def update_bucket_usage(self, bucket_id: int, storage_used_bytes: int) -> bool:
        """Set cached storage usage and bump ``updated_at``.

        Returns:
            True if a row was updated, False if the id is unknown.
        """
        ...

    # -- File catalog ------------------------------------------------------------

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
        """Insert a pending file record and return it."""
        ...

    async def get_file(self, file_id: str) -> dict[str, Any] | None:
        """Retrieve one file record, or None if unknown."""
        ...

    async def complete_file(
        self,
        file_id: str,
        size_bytes: int,
        content_type: str,
        final_url: str,
    ) -> dict[str, Any] | None:
        """Mark a pending file record complete.

        An already-complete record is left as it is.

        Returns:
            The row after the update, or None if the id is unknown.
        """
        ...
