"""Bucket registry service: lookups, registration and the file catalog.

:class:`BucketRegistry` sits on top of a :class:`RegistryStore` and is the
only component that turns rows into :class:`BucketConfig` objects. Lookups go
through a :class:`RequestScope`, a memo that lives for one inbound request so
the store is read at most once per bucket id within it.
"""

import logging
from collections.abc import Callable, Iterable

from stowage.errors import (
    BucketNotFound,
    ConnectionVerificationError,
    DecryptionError,
    Unauthorized,
)
from stowage.registry.models import BucketConfig, BucketDraft, FileRecord
from stowage.registry.store import RegistryStore
from stowage.storage.gateway import StorageGateway
from stowage.validation import validate_bucket_draft, validate_secret_pair
from stowage.vault import AdminCapability, BucketCredentials, CredentialVault

logger = logging.getLogger(__name__)

GatewayFactory = Callable[[BucketCredentials], StorageGateway]


class RequestScope:
    """Memo of bucket lookups for a single logical request.

    Misses are memoized too, so an unknown id is also looked up only once.
    """

    def __init__(self) -> None:
        self._buckets: dict[int, BucketConfig | None] = {}

    def __contains__(self, bucket_id: int) -> bool:
        return bucket_id in self._buckets

    def get(self, bucket_id: int) -> BucketConfig | None:
        return self._buckets.get(bucket_id)

    def put(self, bucket_id: int, bucket: BucketConfig | None) -> None:
        self._buckets[bucket_id] = bucket

    def clear(self) -> None:
        self._buckets.clear()


def _require_admin(authorization: object) -> None:
    if not isinstance(authorization, AdminCapability):
        raise Unauthorized()


class BucketRegistry:
    """Resolves bucket ids and owns bucket and file rows.

    Attributes:
        store: The backing registry store.
        vault: Used to encrypt secrets on registration and rotation.
    """

    def __init__(
        self,
        store: RegistryStore,
        vault: CredentialVault,
        gateway_factory: GatewayFactory = StorageGateway,
    ) -> None:
        self.store = store
        self.vault = vault
        self._gateway_factory = gateway_factory

    # -- Lookups -----------------------------------------------------------------

    async def resolve(
        self, ids: Iterable[int], scope: RequestScope | None = None
    ) -> list[BucketConfig]:
        """Resolve bucket ids to configs.

        Duplicates collapse, unknown ids are silently omitted, and results
        follow the first-seen order of ``ids``.

        Args:
            ids: Bucket ids to resolve.
            scope: The request's memo. A throwaway scope is used when omitted.

        Returns:
            The configs that exist.
        """
        if scope is None:
            scope = RequestScope()
        ordered = list(dict.fromkeys(ids))
        for bucket_id in ordered:
            if bucket_id not in scope:
                row = await self.store.get_bucket(bucket_id)
                scope.put(bucket_id, BucketConfig.from_row(row) if row else None)
        results = []
        for bucket_id in ordered:
            bucket = scope.get(bucket_id)
            if bucket is not None:
                results.append(bucket)
        return results

    async def resolve_one(
        self, bucket_id: int, scope: RequestScope | None = None
    ) -> BucketConfig | None:
        found = await self.resolve([bucket_id], scope)
        return found[0] if found else None

    async def require(self, bucket_id: int, scope: RequestScope | None = None) -> BucketConfig:
        """Resolve one bucket or raise BucketNotFound."""
        bucket = await self.resolve_one(bucket_id, scope)
        if bucket is None:
            raise BucketNotFound(bucket_id)
        return bucket

    async def list_buckets(self) -> list[BucketConfig]:
        rows = await self.store.list_buckets()
        return [BucketConfig.from_row(row) for row in rows]

    # -- Mutations -----------------------------------------------------------------

    async def verify_connection(self, credentials: BucketCredentials) -> bool:
        """Probe the bucket with plaintext credentials.

        A gateway that cannot be opened counts as a failed check.
        """
        try:
            async with self._gateway_factory(credentials) as gateway:
                return await gateway.probe()
        except Exception as exc:
            logger.warning(
                "Could not open a gateway for bucket '%s': %s",
                credentials.name,
                exc,
                extra={"bucket_id": credentials.bucket_id},
            )
            return False

    async def register_bucket(
        self, draft: BucketDraft, *, authorization: AdminCapability | None
    ) -> BucketConfig:
        """Validate, probe and persist a new bucket.

        Args:
            draft: The registration input.
            authorization: Admin capability of the caller.

        Returns:
            The stored bucket.

        Raises:
            Unauthorized: If ``authorization`` is not an admin capability.
            ValidationError: If any field is invalid.
            ConnectionVerificationError: If the probe fails. Nothing is stored.
        """
        _require_admin(authorization)
        clean = validate_bucket_draft(draft)

        access_key_encrypted = self.vault.encrypt_secret(clean.access_key)
        secret_key_encrypted = self.vault.encrypt_secret(clean.secret_key)

        credentials = BucketCredentials(
            bucket_id=None,
            name=clean.name,
            endpoint=clean.endpoint,
            region=clean.region,
            access_key=clean.access_key,
            secret_key=clean.secret_key,
            cdn_url=clean.cdn_url,
        )
        if not await self.verify_connection(credentials):
            raise ConnectionVerificationError()

        row = await self.store.insert_bucket(
            name=clean.name,
            provider=clean.provider,
            region=clean.region,
            endpoint=clean.endpoint,
            access_key_encrypted=access_key_encrypted,
            secret_key_encrypted=secret_key_encrypted,
            total_capacity_gb=clean.total_capacity_gb,
            is_private=clean.is_private,
            cdn_url=clean.cdn_url,
        )
        bucket = BucketConfig.from_row(row)
        logger.info(
            "Registered bucket '%s' (%s) by %s",
            bucket.name,
            bucket.provider,
            authorization.subject,
            extra={"bucket_id": bucket.id},
        )
        return bucket

    async def rotate_secrets(
        self,
        bucket_id: int,
        access_key: str,
        secret_key: str,
        *,
        authorization: AdminCapability | None,
    ) -> BucketConfig:
        """Replace a bucket's secrets after probing the new pair.

        Raises:
            Unauthorized: If ``authorization`` is not an admin capability.
            ValidationError: If either key is empty.
            BucketNotFound: If ``bucket_id`` is unknown.
            ConnectionVerificationError: If the new pair fails the probe.
        """
        _require_admin(authorization)
        validate_secret_pair(access_key, secret_key)
        bucket = await self.require(bucket_id)

        access_key_encrypted = self.vault.encrypt_secret(access_key)
        secret_key_encrypted = self.vault.encrypt_secret(secret_key)

        credentials = BucketCredentials(
            bucket_id=bucket.id,
            name=bucket.name,
            endpoint=bucket.endpoint,
            region=bucket.region,
            access_key=access_key,
            secret_key=secret_key,
            cdn_url=bucket.cdn_url,
        )
        if not await self.verify_connection(credentials):
            raise ConnectionVerificationError()

        if not await self.store.update_bucket_secrets(
            bucket_id, access_key_encrypted, secret_key_encrypted
        ):
            raise BucketNotFound(bucket_id)
        logger.info(
            "Rotated secrets for bucket '%s' by %s",
            bucket.name,
            authorization.subject,
            extra={"bucket_id": bucket_id},
        )
        return await self.require(bucket_id)

    async def record_usage(self, bucket_id: int, storage_used_bytes: int) -> bool:
        """Persist refreshed usage. Last writer wins."""
        return await self.store.update_bucket_usage(bucket_id, storage_used_bytes)

    # -- File catalog ----------------------------------------------------------------

    async def create_file(
        self,
        file_id: str,
        bucket_id: int,
        key: str,
        file_name: str,
        content_type: str,
        final_url: str,
        upload_id: str | None = None,
    ) -> FileRecord:
        row = await self.store.create_file(
            file_id=file_id,
            bucket_id=bucket_id,
            key=key,
            file_name=file_name,
            content_type=content_type,
            final_url=final_url,
            upload_id=upload_id,
        )
        return FileRecord.from_row(row)

    async def get_file(self, file_id: str) -> FileRecord | None:
        row = await self.store.get_file(file_id)
        return FileRecord.from_row(row) if row else None

    async def complete_file(
        self, file_id: str, size_bytes: int, content_type: str, final_url: str
    ) -> FileRecord | None:
        row = await self.store.complete_file(file_id, size_bytes, content_type, final_url)
        return FileRecord.from_row(row) if row else None

    # -- Connectivity ------------------------------------------------------------------

    async def test_connections(
        self, bucket_ids: Iterable[int], scope: RequestScope | None = None
    ) -> list[dict]:
        """Probe each requested bucket with its stored credentials.

        Returns:
            One ``{bucket, name, status, message}`` dict per distinct id, in
            request order. Unknown ids report an ``Error`` status.
        """
        ordered = list(dict.fromkeys(bucket_ids))
        found = {b.id: b for b in await self.resolve(ordered, scope)}
        results = []
        for bucket_id in ordered:
            bucket = found.get(bucket_id)
            if bucket is None:
                results.append(
                    {
                        "bucket": bucket_id,
                        "name": "N/A",
                        "status": "Error",
                        "message": "Bucket configuration not found.",
                    }
                )
                continue
            try:
                healthy = await self.verify_connection(self.vault.decrypt_credentials(bucket))
            except DecryptionError as exc:
                healthy, message = False, exc.message
            else:
                message = (
                    "Bucket is healthy!"
                    if healthy
                    else ConnectionVerificationError().message
                )
            results.append(
                {
                    "bucket": bucket.id,
                    "name": bucket.name,
                    "status": "Success" if healthy else "Error",
                    "message": message,
                }
            )
        return results
