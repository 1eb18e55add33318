"""Tests for BucketRegistry: resolution, registration, rotation and probes."""

import pytest

from stowage.errors import (
    BucketNotFound,
    ConnectionVerificationError,
    Unauthorized,
    ValidationError,
)
from stowage.registry.memory import MemoryRegistryStore
from stowage.registry.resolver import BucketRegistry, RequestScope
from stowage.vault import AdminCapability

from conftest import ADMIN, FakeProvider, make_draft


class UnopenableGateway:
    """Gateway whose client cannot be built."""

    def __init__(self, credentials) -> None:
        self.credentials = credentials

    async def __aenter__(self):
        raise ValueError(f"Invalid endpoint: {self.credentials.endpoint}")

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None


class CountingStore(MemoryRegistryStore):
    """Memory store that counts get_bucket calls."""

    def __init__(self) -> None:
        super().__init__()
        self.lookups = 0

    async def get_bucket(self, bucket_id):
        self.lookups += 1
        return await super().get_bucket(bucket_id)


@pytest.fixture
def store() -> CountingStore:
    return CountingStore()


@pytest.fixture
def registry(store, vault, provider) -> BucketRegistry:
    return BucketRegistry(store, vault, gateway_factory=provider.factory)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------


class TestResolve:
    """resolve() and the per-request scope."""

    async def test_duplicates_hit_store_once(self, registry, store):
        bucket = await registry.register_bucket(make_draft(), authorization=ADMIN)
        store.lookups = 0

        scope = RequestScope()
        found = await registry.resolve([bucket.id, bucket.id, bucket.id], scope)

        assert [b.id for b in found] == [bucket.id]
        assert store.lookups == 1

    async def test_scope_memoizes_across_calls(self, registry, store):
        bucket = await registry.register_bucket(make_draft(), authorization=ADMIN)
        store.lookups = 0

        scope = RequestScope()
        await registry.resolve([bucket.id], scope)
        await registry.require(bucket.id, scope)
        await registry.resolve_one(bucket.id, scope)
        assert store.lookups == 1

    async def test_misses_are_memoized(self, registry, store):
        scope = RequestScope()
        assert await registry.resolve([404, 404], scope) == []
        assert await registry.resolve_one(404, scope) is None
        assert store.lookups == 1

    async def test_fresh_scope_reads_again(self, registry, store):
        bucket = await registry.register_bucket(make_draft(), authorization=ADMIN)
        store.lookups = 0
        await registry.resolve([bucket.id])
        await registry.resolve([bucket.id])
        assert store.lookups == 2

    async def test_unknown_ids_omitted_in_first_seen_order(self, registry):
        a = await registry.register_bucket(make_draft(name="alpha"), authorization=ADMIN)
        b = await registry.register_bucket(make_draft(name="bravo"), authorization=ADMIN)
        found = await registry.resolve([b.id, 999, a.id, b.id])
        assert [x.name for x in found] == ["bravo", "alpha"]

    async def test_require_missing(self, registry):
        with pytest.raises(BucketNotFound) as exc_info:
            await registry.require(42)
        assert exc_info.value.extra_fields == {"bucketId": 42}


# ---------------------------------------------------------------------------
# Registration
# ---------------------------------------------------------------------------


class TestRegister:
    """register_bucket()."""

    async def test_stores_encrypted_secrets(self, registry, vault):
        bucket = await registry.register_bucket(make_draft(), authorization=ADMIN)
        assert bucket.access_key_encrypted != "AKIAEXAMPLE"
        assert vault.decrypt_secret(bucket.access_key_encrypted) == "AKIAEXAMPLE"
        assert vault.decrypt_secret(bucket.secret_key_encrypted) == "wJalrXUtnFEMI/K7MDENG"
        assert bucket.total_capacity_gb == 25.0

    async def test_requires_admin(self, registry, store):
        with pytest.raises(Unauthorized):
            await registry.register_bucket(make_draft(), authorization=None)
        assert await store.list_buckets() == []

    async def test_validation_runs_before_probe(self, registry, provider: FakeProvider):
        with pytest.raises(ValidationError):
            await registry.register_bucket(make_draft(endpoint="nope"), authorization=ADMIN)
        assert provider.calls == []

    async def test_failed_probe_stores_nothing(self, registry, store, provider):
        provider.valid_keys = {"SOMETHING-ELSE"}
        with pytest.raises(ConnectionVerificationError) as exc_info:
            await registry.register_bucket(make_draft(), authorization=ADMIN)
        assert exc_info.value.http_status == 502
        assert await store.list_buckets() == []

    async def test_unusable_endpoint_is_a_failed_probe(self, store, vault):
        registry = BucketRegistry(store, vault)
        with pytest.raises(ConnectionVerificationError):
            await registry.register_bucket(
                make_draft(endpoint="http://bad_host!:x"), authorization=ADMIN
            )
        assert await store.list_buckets() == []

    async def test_public_view_has_no_secrets(self, registry):
        bucket = await registry.register_bucket(make_draft(), authorization=ADMIN)
        public = bucket.to_public()
        assert "accessKeyEncrypted" not in public
        assert not any("secret" in key.lower() for key in public)


class TestRotate:
    """rotate_secrets()."""

    async def test_rotates_after_probe(self, registry, vault):
        bucket = await registry.register_bucket(make_draft(), authorization=ADMIN)
        rotated = await registry.rotate_secrets(
            bucket.id, "NEWKEY", "newsecret", authorization=ADMIN
        )
        assert vault.decrypt_secret(rotated.access_key_encrypted) == "NEWKEY"
        assert vault.decrypt_secret(rotated.secret_key_encrypted) == "newsecret"

    async def test_failed_probe_keeps_old_secrets(self, registry, vault, provider):
        bucket = await registry.register_bucket(make_draft(), authorization=ADMIN)
        provider.valid_keys = {"AKIAEXAMPLE"}
        with pytest.raises(ConnectionVerificationError):
            await registry.rotate_secrets(bucket.id, "BADKEY", "x", authorization=ADMIN)
        current = await registry.require(bucket.id)
        assert vault.decrypt_secret(current.access_key_encrypted) == "AKIAEXAMPLE"

    async def test_unknown_bucket(self, registry):
        with pytest.raises(BucketNotFound):
            await registry.rotate_secrets(5, "a", "b", authorization=ADMIN)

    async def test_requires_admin(self, registry):
        with pytest.raises(Unauthorized):
            await registry.rotate_secrets(1, "a", "b", authorization="admin")

    async def test_empty_keys(self, registry):
        with pytest.raises(ValidationError):
            await registry.rotate_secrets(
                1, "", "", authorization=AdminCapability(subject="ops")
            )


# ---------------------------------------------------------------------------
# Connectivity
# ---------------------------------------------------------------------------


class TestConnections:
    """test_connections()."""

    async def test_healthy_and_missing(self, registry):
        bucket = await registry.register_bucket(make_draft(), authorization=ADMIN)
        results = await registry.test_connections([bucket.id, 77])
        assert results == [
            {
                "bucket": bucket.id,
                "name": "media-bucket",
                "status": "Success",
                "message": "Bucket is healthy!",
            },
            {
                "bucket": 77,
                "name": "N/A",
                "status": "Error",
                "message": "Bucket configuration not found.",
            },
        ]

    async def test_unreachable_bucket(self, registry, provider):
        bucket = await registry.register_bucket(make_draft(), authorization=ADMIN)
        provider.broken.add(bucket.name)
        [result] = await registry.test_connections([bucket.id])
        assert result["status"] == "Error"
        assert result["message"] == ConnectionVerificationError().message

    async def test_undecryptable_secrets(self, registry, store):
        bucket = await registry.register_bucket(make_draft(), authorization=ADMIN)
        await store.update_bucket_secrets(bucket.id, "garbage", "garbage")
        [result] = await registry.test_connections([bucket.id])
        assert result["status"] == "Error"
        assert result["message"] == "Failed to decrypt secret."

    async def test_gateway_open_failure_reports_error(self, registry, store, vault, provider):
        healthy = await registry.register_bucket(make_draft(), authorization=ADMIN)
        broken = await registry.register_bucket(
            make_draft(name="other-bucket"), authorization=ADMIN
        )
        flaky = BucketRegistry(
            store,
            vault,
            gateway_factory=lambda creds: UnopenableGateway(creds)
            if creds.name == "other-bucket"
            else provider.factory(creds),
        )
        results = await flaky.test_connections([healthy.id, broken.id])
        assert [r["status"] for r in results] == ["Success", "Error"]
        assert results[1]["message"] == ConnectionVerificationError().message


class TestFiles:
    """File catalog passthroughs."""

    async def test_create_get_complete(self, registry):
        bucket = await registry.register_bucket(make_draft(), authorization=ADMIN)
        record = await registry.create_file(
            "abc", bucket.id, "uploads/abc/a.txt", "a.txt", "text/plain", "https://x/a.txt"
        )
        assert record.is_complete is False
        done = await registry.complete_file("abc", 3, "text/plain", "https://x/a.txt")
        assert done.is_complete is True
        assert (await registry.get_file("abc")).size_bytes == 3
        assert await registry.get_file("missing") is None
