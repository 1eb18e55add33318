"""HTTP client for the Stowage broker's file and capability routes."""

import logging
from dataclasses import dataclass
from typing import Any

import httpx

from stowage.errors import InvalidCapabilityError, TransportError

logger = logging.getLogger(__name__)

CAPABILITY_HEADER = "x-access-token"


@dataclass(frozen=True)
class PresignedUpload:
    upload_url: str
    file_id: str
    key: str
    final_url: str


@dataclass(frozen=True)
class MultipartInit:
    file_id: str
    key: str
    upload_id: str


def _require(body: dict[str, Any], *names: str) -> list[Any]:
    """Pull required fields out of a broker response."""
    missing = [name for name in names if not body.get(name)]
    if missing:
        raise TransportError(f"Broker response is missing {', '.join(missing)}.")
    return [body[name] for name in names]


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    error = body.get("error") if isinstance(body, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    return response.reason_phrase


class BrokerClient:
    """Calls the broker on behalf of one uploader.

    Every file route carries the capability token in the ``x-access-token``
    header. Non-2xx answers raise :class:`InvalidCapabilityError` for 401 and
    :class:`TransportError` otherwise; network failures and timeouts raise
    :class:`TransportError` too.

    Attributes:
        base_url: Broker root URL.
        token: Capability token sent with file routes.
    """

    def __init__(
        self,
        base_url: str,
        token: str = "",
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self._client = httpx.AsyncClient(
            base_url=self.base_url, timeout=timeout, transport=transport
        )

    async def __aenter__(self) -> "BrokerClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _post(
        self,
        path: str,
        payload: dict[str, Any],
        *,
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
    ) -> dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise TransportError(f"POST {path} failed: {exc.__class__.__name__}") from exc

        if response.status_code == 401:
            raise InvalidCapabilityError(_error_message(response))
        if response.is_error:
            raise TransportError(
                f"POST {path} returned {response.status_code}: {_error_message(response)}",
                status=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise TransportError(f"POST {path} returned a non-JSON body.") from exc
        if not isinstance(body, dict):
            raise TransportError(f"POST {path} returned an unexpected body.")
        return body

    async def _post_file_route(
        self, path: str, bucket_id: int, payload: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._post(
            path,
            payload,
            params={"bucketId": bucket_id},
            headers={CAPABILITY_HEADER: self.token},
        )

    # -- Single part ---------------------------------------------------------------

    async def presign(self, bucket_id: int, file_name: str, content_type: str) -> PresignedUpload:
        body = await self._post_file_route(
            "/files/presign",
            bucket_id,
            {"fileName": file_name, "contentType": content_type},
        )
        upload_url, file_id, key, final_url = _require(
            body, "uploadUrl", "fileId", "key", "finalUrl"
        )
        return PresignedUpload(upload_url=upload_url, file_id=file_id, key=key, final_url=final_url)

    async def complete(
        self,
        bucket_id: int,
        file_id: str,
        key: str,
        file_name: str,
        size_bytes: int,
        content_type: str,
    ) -> str:
        body = await self._post_file_route(
            "/files/complete",
            bucket_id,
            {
                "fileId": file_id,
                "key": key,
                "fileName": file_name,
                "sizeBytes": size_bytes,
                "contentType": content_type,
            },
        )
        (final_url,) = _require(body, "finalUrl")
        return final_url

    # -- Multipart -----------------------------------------------------------------

    async def initiate_multipart(
        self, bucket_id: int, file_name: str, content_type: str
    ) -> MultipartInit:
        body = await self._post_file_route(
            "/files/multipart/initiate",
            bucket_id,
            {"fileName": file_name, "contentType": content_type},
        )
        file_id, key, upload_id = _require(body, "fileId", "key", "uploadId")
        return MultipartInit(file_id=file_id, key=key, upload_id=upload_id)

    async def presign_part(
        self, bucket_id: int, key: str, upload_id: str, part_number: int
    ) -> str:
        body = await self._post_file_route(
            "/files/multipart/presign",
            bucket_id,
            {"key": key, "uploadId": upload_id, "partNumber": part_number},
        )
        (upload_url,) = _require(body, "uploadUrl")
        return upload_url

    async def complete_multipart(
        self,
        bucket_id: int,
        file_id: str,
        key: str,
        upload_id: str,
        parts: list[tuple[int, str]],
        size_bytes: int,
    ) -> str:
        body = await self._post_file_route(
            "/files/multipart/complete",
            bucket_id,
            {
                "fileId": file_id,
                "key": key,
                "uploadId": upload_id,
                "parts": [{"PartNumber": number, "ETag": etag} for number, etag in parts],
                "sizeBytes": size_bytes,
            },
        )
        (final_url,) = _require(body, "finalUrl")
        return final_url

    async def abort_multipart(self, bucket_id: int, file_id: str, key: str, upload_id: str) -> None:
        await self._post_file_route(
            "/files/multipart/abort",
            bucket_id,
            {"fileId": file_id, "key": key, "uploadId": upload_id},
        )

    # -- Capabilities --------------------------------------------------------------

    async def request_capability(self, bucket_id: int, admin_token: str) -> str:
        """Mint an upload capability through the admin route and keep it.

        Raises:
            TransportError: If the broker refuses or cannot be reached.
        """
        body = await self._post(
            "/capabilities",
            {"bucketId": bucket_id},
            headers={"Authorization": f"Bearer {admin_token}"},
        )
        (token,) = _require(body, "token")
        self.token = token
        logger.debug("Obtained capability for bucket %s", bucket_id, extra={"bucket_id": bucket_id})
        return token

