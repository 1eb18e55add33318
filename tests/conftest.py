"""Shared pytest fixtures for Stowage tests.

A single FastAPI app is created per test session to avoid duplicate
Prometheus metric registration errors (the instrumentator registers
collectors in the global prometheus_client registry).

Services are wired onto ``app.state`` by each ``client`` fixture instead of
the lifespan (which does not run under ``ASGITransport``). Storage-provider
calls go to :class:`FakeProvider`, an in-memory stand-in that hands out
predictable presigned URLs and records every call.
"""

import itertools
from urllib.parse import quote

import pytest
from httpx import ASGITransport, AsyncClient

from stowage.config import (
    AuthConfig,
    RegistryConfig,
    StowageConfig,
    UploadConfig,
    VaultConfig,
)
from stowage.errors import TransportError
from stowage.registry.memory import MemoryRegistryStore
from stowage.registry.models import BucketDraft
from stowage.server import build_services, create_app
from stowage.storage.gateway import ObjectInfo
from stowage.vault import UPLOAD_SCOPE, AdminCapability, CredentialVault

MASTER_KEY = "MDEyMzQ1Njc4OWFiY2RlZjAxMjM0NTY3ODlhYmNkZWY="
SIGNING_KEY = "test-signing-key"
ADMIN_TOKEN = "test-admin-token"
ADMIN = AdminCapability(subject="tests")


# ---------------------------------------------------------------------------
# Fake storage provider
# ---------------------------------------------------------------------------


class FakeProvider:
    """In-memory S3 provider shared by every gateway a test creates.

    Attributes:
        objects: Object sizes per bucket name, keyed by object key.
        valid_keys: Access keys the provider accepts; empty accepts all.
        broken: Bucket names whose HeadBucket fails.
        calls: Ordered ``(operation, bucket, args)`` tuples.
    """

    def __init__(self) -> None:
        self.objects: dict[str, dict[str, int]] = {}
        self.valid_keys: set[str] = set()
        self.broken: set[str] = set()
        self.calls: list[tuple] = []
        self.completed: dict[str, list[tuple[int, str]]] = {}
        self.aborted: list[str] = []
        self.gateways_opened = 0
        self._upload_ids = itertools.count(1)

    def factory(self, credentials) -> "FakeGateway":
        return FakeGateway(self, credentials)

    def next_upload_id(self) -> str:
        return f"upload-{next(self._upload_ids)}"

    def operations(self) -> list[str]:
        return [call[0] for call in self.calls]


class FakeGateway:
    """Stand-in for StorageGateway backed by a FakeProvider."""

    def __init__(self, provider: FakeProvider, credentials) -> None:
        self.provider = provider
        self.credentials = credentials
        self.bucket_name = credentials.name

    async def __aenter__(self) -> "FakeGateway":
        self.provider.gateways_opened += 1
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        return None

    def _record(self, operation: str, *args) -> None:
        self.provider.calls.append((operation, self.bucket_name, args))

    def _authorized(self) -> bool:
        valid = self.provider.valid_keys
        return not valid or self.credentials.access_key in valid

    async def head_bucket(self) -> None:
        self._record("head_bucket")
        if self.bucket_name in self.provider.broken or not self._authorized():
            raise TransportError(f"head_bucket failed for bucket '{self.bucket_name}': 403")

    async def probe(self) -> bool:
        try:
            await self.head_bucket()
        except TransportError:
            return False
        return True

    async def list_all_objects(self):
        self._record("list_objects_v2")
        for key, size in self.provider.objects.get(self.bucket_name, {}).items():
            yield ObjectInfo(key=key, size_bytes=size)

    async def presign_put(self, key: str, content_type: str, expires_in: int) -> str:
        self._record("presign_put", key, content_type)
        return f"https://storage.test/{self.bucket_name}/{quote(key)}?X-Amz-Signature=put"

    async def presign_upload_part(
        self, key: str, upload_id: str, part_number: int, expires_in: int
    ) -> str:
        self._record("presign_upload_part", key, upload_id, part_number)
        return (
            f"https://storage.test/{self.bucket_name}/{quote(key)}"
            f"?partNumber={part_number}&uploadId={upload_id}"
        )

    async def create_multipart_upload(self, key: str, content_type: str) -> str:
        self._record("create_multipart_upload", key, content_type)
        return self.provider.next_upload_id()

    async def complete_multipart_upload(self, key, upload_id, parts) -> str:
        self._record("complete_multipart_upload", key, upload_id)
        self.provider.completed[upload_id] = list(parts)
        return "final-etag"

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        self._record("abort_multipart_upload", key, upload_id)
        self.provider.aborted.append(upload_id)

    def object_url(self, key: str) -> str:
        quoted = quote(key, safe="/")
        if self.credentials.cdn_url:
            return f"{self.credentials.cdn_url}/{quoted}"
        return f"{self.credentials.endpoint}/{self.bucket_name}/{quoted}"


def make_draft(**overrides) -> BucketDraft:
    """Return a valid registration draft with optional overrides."""
    fields = dict(
        name="media-bucket",
        region="auto",
        endpoint="https://account.r2.example.com",
        provider="r2",
        total_capacity_gb=25,
        access_key="AKIAEXAMPLE",
        secret_key="wJalrXUtnFEMI/K7MDENG",
        is_private=False,
        cdn_url=None,
    )
    fields.update(overrides)
    return BucketDraft(**fields)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def config() -> StowageConfig:
    """Create a test StowageConfig backed by the in-memory registry."""
    return StowageConfig(
        auth=AuthConfig(admin_tokens=[ADMIN_TOKEN]),
        vault=VaultConfig(master_key=MASTER_KEY, signing_key=SIGNING_KEY),
        registry=RegistryConfig(engine="memory"),
        upload=UploadConfig(key_prefix="uploads"),
    )


@pytest.fixture(scope="session")
def app(config: StowageConfig):
    """Create a single test FastAPI application for the whole session."""
    return create_app(config)


@pytest.fixture
def vault() -> CredentialVault:
    return CredentialVault(MASTER_KEY, SIGNING_KEY)


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
async def client(app, config, provider) -> AsyncClient:
    """Create an async test client with fresh services on app.state."""
    build_services(app, config, store=MemoryRegistryStore(), gateway_factory=provider.factory)
    await app.state.store.init_db()

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as ac:
        yield ac

    await app.state.store.close()


@pytest.fixture
async def bucket(client, app):
    """A bucket registered directly through the registry."""
    return await app.state.registry.register_bucket(make_draft(), authorization=ADMIN)


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@pytest.fixture
def upload_headers(app, bucket) -> dict[str, str]:
    """Capability headers valid for the ``bucket`` fixture."""
    token = app.state.vault.issue_capability(bucket_id=bucket.id, scope=UPLOAD_SCOPE)
    return {"x-access-token": token}
