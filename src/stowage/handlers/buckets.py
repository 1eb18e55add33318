"""Admin request handlers for the Stowage broker.

Implements bucket management and capability minting:
    - ListBuckets (GET /buckets)
    - RegisterBucket (POST /buckets)
    - RotateSecrets (POST /buckets/{id}/rotate)
    - RefreshUsage (POST /buckets/usage/refresh)
    - TestConnections (POST /buckets/test)
    - IssueCapability (POST /capabilities)

Every route here runs behind the admin bearer check, which leaves an
:class:`AdminCapability` on ``request.state.admin``.
"""

import logging
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from stowage import metrics
from stowage.errors import ValidationError
from stowage.handlers.files import read_json
from stowage.registry.models import BucketDraft
from stowage.vault import UPLOAD_SCOPE

logger = logging.getLogger(__name__)


def _bucket_ids(body: dict[str, Any], field: str = "bucketIds") -> list[int]:
    raw = body.get(field, [])
    if not isinstance(raw, list) or any(
        isinstance(item, bool) or not isinstance(item, int) for item in raw
    ):
        raise ValidationError(fields={field: ["Must be a list of bucket ids."]})
    return raw


def _draft_from_body(body: dict[str, Any]) -> BucketDraft:
    return BucketDraft(
        name=str(body.get("name") or ""),
        region=str(body.get("region") or ""),
        endpoint=str(body.get("endpoint") or ""),
        provider=str(body.get("provider") or ""),
        total_capacity_gb=body.get("totalCapacityGb"),
        access_key=str(body.get("accessKey") or ""),
        secret_key=str(body.get("secretKey") or ""),
        is_private=bool(body.get("isPrivate", False)),
        cdn_url=body.get("cdnUrl") or None,
    )


class BucketHandler:
    """Handles bucket administration.

    Attributes:
        app: The parent FastAPI application.
    """

    def __init__(self, app: FastAPI) -> None:
        self.app = app

    @property
    def registry(self):
        """Shortcut to the BucketRegistry on app.state."""
        return self.app.state.registry

    @property
    def accountant(self):
        """Shortcut to the CapacityAccountant on app.state."""
        return self.app.state.accountant

    @property
    def vault(self):
        """Shortcut to the CredentialVault on app.state."""
        return self.app.state.vault

    async def list_buckets(self, request: Request) -> Response:
        """List registered buckets without their secrets.

        Implements: GET /buckets
        """
        request.state.operation = "list_buckets"
        buckets = await self.registry.list_buckets()
        return JSONResponse([bucket.to_public() for bucket in buckets])

    async def register_bucket(self, request: Request) -> Response:
        """Validate, probe and store a new bucket.

        Implements: POST /buckets

        Returns:
            201 with the stored bucket.
        """
        request.state.operation = "register_bucket"
        body = await read_json(request)
        bucket = await self.registry.register_bucket(
            _draft_from_body(body), authorization=request.state.admin
        )
        metrics.record_operation("register_bucket", "ok")
        return JSONResponse(bucket.to_public(), status_code=201)

    async def rotate_secrets(self, request: Request, bucket_id: int) -> Response:
        """Replace a bucket's access key pair.

        Implements: POST /buckets/{id}/rotate
        """
        request.state.operation = "rotate_secrets"
        body = await read_json(request)
        bucket = await self.registry.rotate_secrets(
            bucket_id,
            str(body.get("accessKey") or ""),
            str(body.get("secretKey") or ""),
            authorization=request.state.admin,
        )
        metrics.record_operation("rotate_secrets", "ok")
        return JSONResponse(bucket.to_public())

    async def refresh_usage(self, request: Request) -> Response:
        """Recompute storage usage.

        Implements: POST /buckets/usage/refresh

        An empty ``bucketIds`` list refreshes every bucket.
        """
        request.state.operation = "refresh_usage"
        body = await read_json(request)
        bucket_ids = _bucket_ids(body)
        if bucket_ids:
            snapshots = await self.accountant.refresh(bucket_ids, request.state.scope)
        else:
            snapshots = await self.accountant.refresh_all()
        metrics.record_operation("refresh_usage", "ok")
        return JSONResponse([snapshot.to_dict() for snapshot in snapshots])

    async def test_connections(self, request: Request) -> Response:
        """Probe each bucket with its stored credentials.

        Implements: POST /buckets/test
        """
        request.state.operation = "test_connections"
        body = await read_json(request)
        results = await self.registry.test_connections(_bucket_ids(body), request.state.scope)
        return JSONResponse(results)

    async def issue_capability(self, request: Request) -> Response:
        """Mint an upload capability for one bucket.

        Implements: POST /capabilities

        Returns:
            JSON with ``token`` and ``expiresIn`` seconds.
        """
        request.state.operation = "issue_capability"
        body = await read_json(request)
        bucket_id = body.get("bucketId")
        if isinstance(bucket_id, str) and bucket_id.isdigit():
            bucket_id = int(bucket_id)
        if isinstance(bucket_id, bool) or not isinstance(bucket_id, int):
            raise ValidationError(fields={"bucketId": ["Must be a bucket id."]})
        bucket = await self.registry.require(bucket_id, request.state.scope)

        admin = request.state.admin
        token = self.vault.issue_capability(
            {"sub": admin.subject}, bucket_id=bucket.id, scope=UPLOAD_SCOPE
        )
        metrics.record_operation("issue_capability", "ok")
        logger.info(
            "Issued upload capability for bucket '%s' to %s",
            bucket.name,
            admin.subject,
            extra={"bucket_id": bucket.id},
        )
        return JSONResponse({"token": token, "expiresIn": self.vault.capability_ttl})
