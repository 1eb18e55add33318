"""S3-compatible storage gateway for Stowage.

A thin, typed wrapper over the provider's control operations: bucket probes,
paginated listing, presigned URLs and multipart bookkeeping. Signing is left
to botocore; the gateway only assembles parameters and scopes credentials.

Each gateway instance is bound to one set of decrypted credentials and is
used as an async context manager so the client (and the plaintext secrets it
holds) live no longer than a single operation::

    async with StorageGateway(credentials) as gateway:
        url = await gateway.presign_put(key, "application/pdf", 900)

Provider ``ClientError``s and connection failures surface as
:class:`~stowage.errors.TransportError`. Nothing is retried here.
"""

import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from urllib.parse import quote

from aiobotocore.session import AioSession
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from stowage.errors import PaginationError, TransportError
from stowage.vault import BucketCredentials

logger = logging.getLogger(__name__)

DEFAULT_REGION = "auto"


@dataclass(frozen=True)
class ObjectInfo:
    """One entry of a bucket listing."""

    key: str
    size_bytes: int


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


def _http_status(exc: ClientError) -> int | None:
    return exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")


class StorageGateway:
    """Storage operations scoped to one bucket's credentials.

    Attributes:
        credentials: The decrypted credentials this gateway signs with.
        bucket_name: The provider-side bucket name.
    """

    def __init__(
        self,
        credentials: BucketCredentials,
        request_timeout: float = 30.0,
        session: AioSession | None = None,
    ) -> None:
        self.credentials = credentials
        self.bucket_name = credentials.name
        self.request_timeout = request_timeout
        self._session = session or AioSession()
        self._client = None
        self._client_ctx = None

    async def __aenter__(self) -> "StorageGateway":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def open(self) -> None:
        """Create the aiobotocore S3 client with path-style SigV4 signing.

        Raises:
            TransportError: If botocore rejects the endpoint or configuration.
        """
        if self._client is not None:
            return
        boto_config = BotoConfig(
            signature_version="s3v4",
            s3={"addressing_style": "path"},
            connect_timeout=self.request_timeout,
            read_timeout=self.request_timeout,
            retries={"mode": "standard", "total_max_attempts": 1},
        )
        try:
            client_ctx = self._session.create_client(
                "s3",
                region_name=self.credentials.region or DEFAULT_REGION,
                endpoint_url=self.credentials.endpoint,
                aws_access_key_id=self.credentials.access_key,
                aws_secret_access_key=self.credentials.secret_key,
                config=boto_config,
            )
            self._client = await client_ctx.__aenter__()
        except (BotoCoreError, ValueError) as exc:
            raise TransportError(
                f"Could not open a client for bucket '{self.bucket_name}': {exc}"
            ) from exc
        self._client_ctx = client_ctx

    async def close(self) -> None:
        """Close the aiobotocore client."""
        if self._client_ctx is not None:
            await self._client_ctx.__aexit__(None, None, None)
            self._client = None
            self._client_ctx = None

    async def _call(self, operation: str, **kwargs):
        """Invoke one client operation, wrapping failures in TransportError."""
        if self._client is None:
            raise RuntimeError("StorageGateway used outside of its context")
        method = getattr(self._client, operation)
        try:
            return await method(**kwargs)
        except ClientError as exc:
            code = _error_code(exc) or "UnknownError"
            raise TransportError(
                f"{operation} failed for bucket '{self.bucket_name}': {code}",
                status=_http_status(exc),
            ) from exc
        except (BotoCoreError, OSError) as exc:
            raise TransportError(
                f"{operation} failed for bucket '{self.bucket_name}': {exc}"
            ) from exc

    # -- Bucket-level ------------------------------------------------------------

    async def head_bucket(self) -> None:
        """Check the bucket exists and the credentials can reach it.

        Raises:
            TransportError: If the provider rejects the request.
        """
        await self._call("head_bucket", Bucket=self.bucket_name)

    async def probe(self) -> bool:
        """Return True if HeadBucket succeeds. Never raises."""
        try:
            await self.head_bucket()
        except Exception as exc:
            logger.warning(
                "Connectivity probe failed for bucket '%s': %s",
                self.bucket_name,
                exc,
                extra={"bucket_id": self.credentials.bucket_id},
            )
            return False
        return True

    async def list_all_objects(self) -> AsyncIterator[ObjectInfo]:
        """Yield every object in the bucket, following continuation tokens.

        Raises:
            PaginationError: If the provider repeats a continuation token or
                reports a truncated page without one.
            TransportError: If any page request fails.
        """
        seen: set[str] = set()
        token: str | None = None
        while True:
            kwargs: dict = {"Bucket": self.bucket_name}
            if token is not None:
                kwargs["ContinuationToken"] = token
            page = await self._call("list_objects_v2", **kwargs)

            for obj in page.get("Contents") or []:
                yield ObjectInfo(key=obj["Key"], size_bytes=int(obj.get("Size") or 0))

            token = page.get("NextContinuationToken")
            if not page.get("IsTruncated"):
                return
            if not token or token in seen:
                raise PaginationError(token or "")
            seen.add(token)

    # -- Presigning --------------------------------------------------------------

    async def presign_put(self, key: str, content_type: str, expires_in: int) -> str:
        """Return a presigned single-request PUT URL for ``key``."""
        return await self._call(
            "generate_presigned_url",
            ClientMethod="put_object",
            Params={"Bucket": self.bucket_name, "Key": key, "ContentType": content_type},
            ExpiresIn=expires_in,
        )

    async def presign_upload_part(
        self, key: str, upload_id: str, part_number: int, expires_in: int
    ) -> str:
        """Return a presigned URL valid only for one part of one upload."""
        return await self._call(
            "generate_presigned_url",
            ClientMethod="upload_part",
            Params={
                "Bucket": self.bucket_name,
                "Key": key,
                "UploadId": upload_id,
                "PartNumber": part_number,
            },
            ExpiresIn=expires_in,
        )

    # -- Multipart ---------------------------------------------------------------

    async def create_multipart_upload(self, key: str, content_type: str) -> str:
        """Initiate a multipart upload and return its upload id."""
        resp = await self._call(
            "create_multipart_upload",
            Bucket=self.bucket_name,
            Key=key,
            ContentType=content_type,
        )
        upload_id = resp.get("UploadId")
        if not upload_id:
            raise TransportError(
                f"create_multipart_upload for bucket '{self.bucket_name}' returned no UploadId"
            )
        logger.info(
            "Initiated multipart upload for %s",
            key,
            extra={"bucket_id": self.credentials.bucket_id, "upload_id": upload_id},
        )
        return upload_id

    async def complete_multipart_upload(
        self, key: str, upload_id: str, parts: list[tuple[int, str]]
    ) -> str:
        """Stitch uploaded parts into the final object.

        Args:
            key: The object key.
            upload_id: The provider upload id.
            parts: ``(part_number, etag)`` pairs, ascending, bare ETags.

        Returns:
            The final object's ETag, quotes stripped.
        """
        resp = await self._call(
            "complete_multipart_upload",
            Bucket=self.bucket_name,
            Key=key,
            UploadId=upload_id,
            MultipartUpload={
                "Parts": [{"PartNumber": number, "ETag": etag} for number, etag in parts]
            },
        )
        return (resp.get("ETag") or "").replace('"', "")

    async def abort_multipart_upload(self, key: str, upload_id: str) -> None:
        """Abort a multipart upload and discard its parts."""
        await self._call(
            "abort_multipart_upload",
            Bucket=self.bucket_name,
            Key=key,
            UploadId=upload_id,
        )
        logger.info(
            "Aborted multipart upload for %s",
            key,
            extra={"bucket_id": self.credentials.bucket_id, "upload_id": upload_id},
        )

    # -- URLs --------------------------------------------------------------------

    def object_url(self, key: str) -> str:
        """Return the access URL for ``key``.

        Uses the CDN/public base when configured, otherwise the path-style
        endpoint URL.
        """
        quoted = quote(key, safe="/")
        if self.credentials.cdn_url:
            return f"{self.credentials.cdn_url.rstrip('/')}/{quoted}"
        return f"{self.credentials.endpoint.rstrip('/')}/{self.bucket_name}/{quoted}"
