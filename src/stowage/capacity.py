"""Capacity accounting for registered buckets.

The accountant walks each bucket's full object listing, sums object sizes,
compares the total against the bucket's configured capacity and persists the
result. Buckets are refreshed concurrently and independently: a bucket that
fails reports an ``Error`` snapshot and keeps its previous stored usage.
"""

import asyncio
import logging
from collections.abc import Iterable

from stowage import metrics
from stowage.errors import StowageError
from stowage.registry.models import (
    USAGE_ERROR,
    USAGE_NOT_FOUND,
    USAGE_SUCCESS,
    BucketConfig,
    UsageSnapshot,
)
from stowage.registry.resolver import BucketRegistry, GatewayFactory, RequestScope
from stowage.storage.gateway import StorageGateway
from stowage.vault import CredentialVault

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY_GB = 25.0


class CapacityAccountant:
    """Computes and persists per-bucket storage usage.

    Attributes:
        registry: Resolves bucket ids and stores refreshed usage.
        vault: Decrypts credentials for the listing calls.
        default_capacity_gb: Capacity assumed for buckets without one.
    """

    def __init__(
        self,
        registry: BucketRegistry,
        vault: CredentialVault,
        default_capacity_gb: float = DEFAULT_CAPACITY_GB,
        gateway_factory: GatewayFactory = StorageGateway,
    ) -> None:
        self.registry = registry
        self.vault = vault
        self.default_capacity_gb = default_capacity_gb
        self._gateway_factory = gateway_factory

    async def measure(self, bucket: BucketConfig) -> int:
        """Return the total size in bytes of every object in ``bucket``.

        Raises:
            DecryptionError: If the stored secrets cannot be decrypted.
            TransportError: If HeadBucket or a listing page fails.
            PaginationError: If the listing repeats a continuation token.
        """
        credentials = self.vault.decrypt_credentials(bucket)
        total = 0
        async with self._gateway_factory(credentials) as gateway:
            await gateway.head_bucket()
            async for obj in gateway.list_all_objects():
                total += obj.size_bytes
        return total

    async def _refresh_bucket(self, bucket_id: int, bucket: BucketConfig | None) -> UsageSnapshot:
        if bucket is None:
            metrics.record_refresh(str(bucket_id), USAGE_NOT_FOUND)
            return UsageSnapshot(
                bucket_id=bucket_id,
                status=USAGE_NOT_FOUND,
                message="Bucket configuration not found.",
            )

        capacity = bucket.total_capacity_gb or self.default_capacity_gb
        try:
            used = await self.measure(bucket)
            await self.registry.record_usage(bucket.id, used)
        except StowageError as exc:
            logger.warning(
                "Usage refresh failed for bucket '%s': %s",
                bucket.name,
                exc.message,
                extra={"bucket_id": bucket.id},
            )
            metrics.record_refresh(bucket.name, USAGE_ERROR)
            return UsageSnapshot(
                bucket_id=bucket.id,
                name=bucket.name,
                status=USAGE_ERROR,
                message=exc.message,
            )
        except Exception as exc:
            logger.exception(
                "Unexpected error refreshing bucket '%s'",
                bucket.name,
                extra={"bucket_id": bucket.id},
            )
            metrics.record_refresh(bucket.name, USAGE_ERROR)
            return UsageSnapshot(
                bucket_id=bucket.id,
                name=bucket.name,
                status=USAGE_ERROR,
                message=str(exc) or exc.__class__.__name__,
            )

        metrics.record_refresh(bucket.name, USAGE_SUCCESS, used_bytes=used)
        logger.info(
            "Bucket '%s' uses %d bytes",
            bucket.name,
            used,
            extra={"bucket_id": bucket.id},
        )
        return UsageSnapshot(
            bucket_id=bucket.id,
            name=bucket.name,
            status=USAGE_SUCCESS,
            storage_used_bytes=used,
            total_capacity_gb=capacity,
        )

    async def refresh(
        self, bucket_ids: Iterable[int], scope: RequestScope | None = None
    ) -> list[UsageSnapshot]:
        """Refresh usage for the given buckets.

        Args:
            bucket_ids: Ids to refresh. Duplicates collapse.
            scope: Request memo for the registry lookups.

        Returns:
            One snapshot per distinct id, in request order. Unknown ids get a
            ``NotFound`` snapshot.
        """
        ordered = list(dict.fromkeys(bucket_ids))
        found = {b.id: b for b in await self.registry.resolve(ordered, scope)}
        snapshots = await asyncio.gather(
            *(self._refresh_bucket(bucket_id, found.get(bucket_id)) for bucket_id in ordered)
        )
        return list(snapshots)

    async def refresh_all(self) -> list[UsageSnapshot]:
        """Refresh every registered bucket."""
        buckets = await self.registry.list_buckets()
        snapshots = await asyncio.gather(
            *(self._refresh_bucket(bucket.id, bucket) for bucket in buckets)
        )
        return list(snapshots)


class CapacityScheduler:
    """Runs :meth:`CapacityAccountant.refresh_all` on a fixed interval.

    A failed run is logged and the loop carries on. An interval of zero
    disables the scheduler.
    """

    def __init__(self, accountant: CapacityAccountant, interval_seconds: float) -> None:
        self.accountant = accountant
        self.interval_seconds = interval_seconds
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.interval_seconds <= 0 or self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="stowage-capacity-refresh")
        logger.info("Capacity refresh scheduled every %ss", self.interval_seconds)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def run_once(self) -> list[UsageSnapshot]:
        snapshots = await self.accountant.refresh_all()
        failed = sum(1 for s in snapshots if s.status != USAGE_SUCCESS)
        logger.info("Capacity refresh finished: %d buckets, %d failed", len(snapshots), failed)
        return snapshots

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.run_once()
            except Exception:
                logger.exception("Capacity refresh run failed")
