"""File upload request handlers for the Stowage broker.

Implements the six capability-protected routes:
    - Presign (POST /files/presign)
    - Complete (POST /files/complete)
    - InitiateMultipart (POST /files/multipart/initiate)
    - PresignPart (POST /files/multipart/presign)
    - CompleteMultipart (POST /files/multipart/complete)
    - AbortMultipart (POST /files/multipart/abort)

The broker never sees file bytes. It signs URLs against the bucket's
decrypted credentials and keeps a catalog row per upload.
"""

import json
import logging
import uuid
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from stowage import metrics
from stowage.client.source import DEFAULT_CONTENT_TYPE
from stowage.errors import FileNotFound, ValidationError
from stowage.registry.models import FileRecord
from stowage.storage.gateway import StorageGateway
from stowage.validation import safe_key_segment, validate_file_name, validate_part_list

logger = logging.getLogger(__name__)

_MAX_PART_NUMBER = 10000


async def read_json(request: Request) -> dict[str, Any]:
    """Parse the request body as a JSON object.

    Raises:
        ValidationError: If the body is not a JSON object.
    """
    raw = await request.body()
    try:
        body = json.loads(raw) if raw else {}
    except ValueError:
        raise ValidationError("Request body must be valid JSON.")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object.")
    return body


def require_fields(body: dict[str, Any], *names: str) -> list[Any]:
    """Pull required string fields from ``body``, reporting all missing ones."""
    missing = {
        name: ["This field is required."]
        for name in names
        if not isinstance(body.get(name), str) or not body[name]
    }
    if missing:
        raise ValidationError(fields=missing)
    return [body[name] for name in names]


def _size_bytes(body: dict[str, Any]) -> int:
    value = body.get("sizeBytes")
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(fields={"sizeBytes": ["Must be a non-negative integer."]})
    return value


def _part_list(body: dict[str, Any]) -> list[tuple[int, str]]:
    raw = body.get("parts")
    if not isinstance(raw, list):
        raise ValidationError(fields={"parts": ["Must be a list of parts."]})
    parts = []
    for item in raw:
        if not isinstance(item, dict):
            raise ValidationError(fields={"parts": ["Each part must be an object."]})
        number = item.get("PartNumber")
        if isinstance(number, bool) or not isinstance(number, int):
            raise ValidationError(fields={"parts": ["PartNumber must be an integer."]})
        parts.append((number, str(item.get("ETag") or "")))
    return parts


class FileHandler:
    """Handles presigning and completion of uploads.

    All handlers read the registry, vault and config from ``app.state``.

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
    def vault(self):
        """Shortcut to the CredentialVault on app.state."""
        return self.app.state.vault

    @property
    def config(self):
        """Shortcut to the StowageConfig on app.state."""
        return self.app.state.config

    async def _gateway(self, request: Request, bucket_id: int) -> StorageGateway:
        """Resolve the bucket and build an unopened gateway for it."""
        bucket = await self.registry.require(bucket_id, request.state.scope)
        credentials = self.vault.decrypt_credentials(bucket)
        return self.app.state.gateway_factory(credentials)

    def _object_key(self, file_id: str, file_name: str) -> str:
        prefix = self.config.upload.key_prefix.strip("/")
        segment = safe_key_segment(file_name)
        return f"{prefix}/{file_id}/{segment}" if prefix else f"{file_id}/{segment}"

    async def _pending_record(
        self, bucket_id: int, file_id: str, key: str, upload_id: str | None = None
    ) -> FileRecord:
        """Fetch the catalog row an upload refers to.

        Raises:
            FileNotFound: If the row is missing or belongs to another bucket,
                key or upload.
        """
        record = await self.registry.get_file(file_id)
        if record is None or record.bucket_id != bucket_id or record.key != key:
            raise FileNotFound(file_id)
        if upload_id is not None and record.upload_id != upload_id:
            raise FileNotFound(file_id)
        return record

    # -- Single part ---------------------------------------------------------------

    async def presign(self, request: Request, bucket_id: int) -> Response:
        """Issue a presigned PUT URL for a new object.

        Implements: POST /files/presign?bucketId=B

        Returns:
            JSON with ``uploadUrl``, ``fileId``, ``key`` and ``finalUrl``.
        """
        request.state.operation = "presign"
        body = await read_json(request)
        file_name = validate_file_name(body.get("fileName") or "")
        content_type = body.get("contentType") or DEFAULT_CONTENT_TYPE

        file_id = uuid.uuid4().hex
        key = self._object_key(file_id, file_name)
        async with await self._gateway(request, bucket_id) as gateway:
            upload_url = await gateway.presign_put(
                key, content_type, self.config.upload.presign_expires_seconds
            )
            final_url = gateway.object_url(key)

        await self.registry.create_file(
            file_id=file_id,
            bucket_id=bucket_id,
            key=key,
            file_name=file_name,
            content_type=content_type,
            final_url=final_url,
        )
        metrics.record_operation("presign", "ok")
        logger.debug("Presigned %s", key, extra={"bucket_id": bucket_id, "file_id": file_id})
        return JSONResponse(
            {"uploadUrl": upload_url, "fileId": file_id, "key": key, "finalUrl": final_url}
        )

    async def complete(self, request: Request, bucket_id: int) -> Response:
        """Mark a single-part upload complete.

        Implements: POST /files/complete?bucketId=B

        Completing an already-complete file returns its existing URL.
        """
        request.state.operation = "complete"
        body = await read_json(request)
        file_id, key = require_fields(body, "fileId", "key")
        size_bytes = _size_bytes(body)

        record = await self._pending_record(bucket_id, file_id, key)
        final_url = await self._finish(record, size_bytes, body.get("contentType"))
        metrics.record_operation("complete", "ok")
        return JSONResponse({"finalUrl": final_url})

    async def _finish(
        self, record: FileRecord, size_bytes: int, content_type: str | None
    ) -> str:
        if record.is_complete:
            return record.final_url
        done = await self.registry.complete_file(
            record.file_id,
            size_bytes,
            content_type or record.content_type,
            record.final_url,
        )
        if done is None:
            raise FileNotFound(record.file_id)
        logger.info(
            "Completed %s (%d bytes)",
            done.key,
            size_bytes,
            extra={"bucket_id": done.bucket_id, "file_id": done.file_id},
        )
        return done.final_url

    # -- Multipart -----------------------------------------------------------------

    async def initiate_multipart(self, request: Request, bucket_id: int) -> Response:
        """Start a provider multipart upload.

        Implements: POST /files/multipart/initiate?bucketId=B

        Returns:
            JSON with ``fileId``, ``key`` and ``uploadId``.
        """
        request.state.operation = "initiate_multipart"
        body = await read_json(request)
        file_name = validate_file_name(body.get("fileName") or "")
        content_type = body.get("contentType") or DEFAULT_CONTENT_TYPE

        file_id = uuid.uuid4().hex
        key = self._object_key(file_id, file_name)
        async with await self._gateway(request, bucket_id) as gateway:
            upload_id = await gateway.create_multipart_upload(key, content_type)
            final_url = gateway.object_url(key)

        await self.registry.create_file(
            file_id=file_id,
            bucket_id=bucket_id,
            key=key,
            file_name=file_name,
            content_type=content_type,
            final_url=final_url,
            upload_id=upload_id,
        )
        metrics.record_operation("initiate_multipart", "ok")
        return JSONResponse({"fileId": file_id, "key": key, "uploadId": upload_id})

    async def presign_part(self, request: Request, bucket_id: int) -> Response:
        """Issue a presigned URL for one part.

        Implements: POST /files/multipart/presign?bucketId=B
        """
        request.state.operation = "presign_part"
        body = await read_json(request)
        key, upload_id = require_fields(body, "key", "uploadId")
        part_number = body.get("partNumber")
        if (
            isinstance(part_number, bool)
            or not isinstance(part_number, int)
            or not 1 <= part_number <= _MAX_PART_NUMBER
        ):
            raise ValidationError(
                fields={"partNumber": [f"Must be an integer from 1 to {_MAX_PART_NUMBER}."]}
            )

        async with await self._gateway(request, bucket_id) as gateway:
            upload_url = await gateway.presign_upload_part(
                key, upload_id, part_number, self.config.upload.presign_expires_seconds
            )
        metrics.record_operation("presign_part", "ok")
        return JSONResponse({"uploadUrl": upload_url})

    async def complete_multipart(self, request: Request, bucket_id: int) -> Response:
        """Stitch the uploaded parts and mark the file complete.

        Implements: POST /files/multipart/complete?bucketId=B

        The part list must run 1..N in order. Quoted ETags are accepted and
        stripped before the provider call.
        """
        request.state.operation = "complete_multipart"
        body = await read_json(request)
        file_id, key, upload_id = require_fields(body, "fileId", "key", "uploadId")
        size_bytes = _size_bytes(body)
        parts = _part_list(body)

        record = await self._pending_record(bucket_id, file_id, key, upload_id)
        if record.is_complete:
            metrics.record_operation("complete_multipart", "ok")
            return JSONResponse({"finalUrl": record.final_url})

        parts = validate_part_list(parts)
        async with await self._gateway(request, bucket_id) as gateway:
            await gateway.complete_multipart_upload(key, upload_id, parts)

        final_url = await self._finish(record, size_bytes, None)
        metrics.record_operation("complete_multipart", "ok")
        return JSONResponse({"finalUrl": final_url})

    async def abort_multipart(self, request: Request, bucket_id: int) -> Response:
        """Abort a provider multipart upload and drop its parts.

        Implements: POST /files/multipart/abort?bucketId=B
        """
        request.state.operation = "abort_multipart"
        body = await read_json(request)
        file_id, key, upload_id = require_fields(body, "fileId", "key", "uploadId")
        await self._pending_record(bucket_id, file_id, key, upload_id)

        async with await self._gateway(request, bucket_id) as gateway:
            await gateway.abort_multipart_upload(key, upload_id)
        metrics.record_operation("abort_multipart", "ok")
        return JSONResponse({"aborted": True})
