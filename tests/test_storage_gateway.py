"""Unit tests for the S3-compatible storage gateway.

All tests use mocked aiobotocore, with no real credentials or network
access. The mock S3 client is injected directly onto gateway._client to
bypass session creation.
"""

from unittest.mock import AsyncMock, patch

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from stowage.errors import PaginationError, TransportError
from stowage.storage.gateway import StorageGateway
from stowage.vault import BucketCredentials


def _client_error(code: str, message: str = "error", status: int = 400) -> ClientError:
    """Create a botocore ClientError with the given error code."""
    return ClientError(
        {
            "Error": {"Code": code, "Message": message},
            "ResponseMetadata": {"HTTPStatusCode": status},
        },
        "TestOperation",
    )


def _credentials(**overrides) -> BucketCredentials:
    fields = dict(
        bucket_id=1,
        name="media",
        endpoint="https://r2.example.com",
        region="auto",
        access_key="AKIA",
        secret_key="secret",
        cdn_url=None,
    )
    fields.update(overrides)
    return BucketCredentials(**fields)


def _make_gateway(**overrides) -> StorageGateway:
    """Create a StorageGateway with a mock client (skip open)."""
    gateway = StorageGateway(_credentials(**overrides))
    gateway._client = AsyncMock()
    gateway._client_ctx = AsyncMock()
    return gateway


async def _collect(gateway):
    return [obj async for obj in gateway.list_all_objects()]


class TestLifecycle:
    """open() and close()."""

    async def test_open_creates_path_style_client(self):
        with patch("stowage.storage.gateway.AioSession") as mock_session_cls:
            mock_client = AsyncMock()
            mock_ctx = AsyncMock()
            mock_ctx.__aenter__ = AsyncMock(return_value=mock_client)
            mock_ctx.__aexit__ = AsyncMock(return_value=False)
            mock_session_cls.return_value.create_client.return_value = mock_ctx

            async with StorageGateway(_credentials(region="")) as gateway:
                assert gateway._client is mock_client

            _, kwargs = mock_session_cls.return_value.create_client.call_args
            assert kwargs["region_name"] == "auto"
            assert kwargs["endpoint_url"] == "https://r2.example.com"
            assert kwargs["aws_access_key_id"] == "AKIA"
            assert kwargs["config"].s3 == {"addressing_style": "path"}
            assert kwargs["config"].signature_version == "s3v4"
            mock_ctx.__aexit__.assert_awaited_once()

    async def test_close_exits_context(self):
        gateway = _make_gateway()
        ctx_ref = gateway._client_ctx
        await gateway.close()
        ctx_ref.__aexit__.assert_awaited_once()
        assert gateway._client is None

    async def test_invalid_endpoint_becomes_transport_error(self):
        with patch("stowage.storage.gateway.AioSession") as mock_session_cls:
            mock_session_cls.return_value.create_client.side_effect = ValueError(
                "Invalid endpoint: http://bad_host!:x"
            )
            gateway = StorageGateway(_credentials(endpoint="http://bad_host!:x"))
            with pytest.raises(TransportError, match="Invalid endpoint"):
                await gateway.open()
        assert gateway._client is None
        await gateway.close()

    async def test_call_outside_context(self):
        gateway = StorageGateway(_credentials())
        with pytest.raises(RuntimeError):
            await gateway.head_bucket()


class TestProbe:
    """head_bucket() and probe()."""

    async def test_head_bucket(self):
        gateway = _make_gateway()
        await gateway.head_bucket()
        gateway._client.head_bucket.assert_awaited_once_with(Bucket="media")

    async def test_client_error_becomes_transport_error(self):
        gateway = _make_gateway()
        gateway._client.head_bucket.side_effect = _client_error("403", "Forbidden", 403)
        with pytest.raises(TransportError) as exc_info:
            await gateway.head_bucket()
        assert exc_info.value.status == 403

    async def test_connection_error_becomes_transport_error(self):
        gateway = _make_gateway()
        gateway._client.head_bucket.side_effect = EndpointConnectionError(
            endpoint_url="https://r2.example.com"
        )
        with pytest.raises(TransportError):
            await gateway.head_bucket()

    async def test_probe_true(self):
        assert await _make_gateway().probe() is True

    async def test_probe_false(self):
        gateway = _make_gateway()
        gateway._client.head_bucket.side_effect = _client_error("NoSuchBucket", status=404)
        assert await gateway.probe() is False


class TestListing:
    """list_all_objects() pagination."""

    async def test_follows_continuation_tokens(self):
        gateway = _make_gateway()
        gateway._client.list_objects_v2.side_effect = [
            {
                "Contents": [{"Key": "a", "Size": 10}, {"Key": "b", "Size": 20}],
                "IsTruncated": True,
                "NextContinuationToken": "t1",
            },
            {"Contents": [{"Key": "c", "Size": 5}], "IsTruncated": False},
        ]
        objects = await _collect(gateway)
        assert [(o.key, o.size_bytes) for o in objects] == [("a", 10), ("b", 20), ("c", 5)]
        second_call = gateway._client.list_objects_v2.await_args_list[1]
        assert second_call.kwargs == {"Bucket": "media", "ContinuationToken": "t1"}

    async def test_stops_on_last_page_with_token(self):
        gateway = _make_gateway()
        gateway._client.list_objects_v2.side_effect = [
            {
                "Contents": [{"Key": "a", "Size": 5}],
                "IsTruncated": False,
                "NextContinuationToken": "t1",
            },
            {"Contents": [{"Key": "a", "Size": 5}], "IsTruncated": False},
        ]
        objects = await _collect(gateway)
        assert [o.size_bytes for o in objects] == [5]
        assert gateway._client.list_objects_v2.await_count == 1

    async def test_empty_bucket(self):
        gateway = _make_gateway()
        gateway._client.list_objects_v2.return_value = {"IsTruncated": False}
        assert await _collect(gateway) == []

    async def test_repeated_token_raises(self):
        gateway = _make_gateway()
        page = {"Contents": [], "IsTruncated": True, "NextContinuationToken": "same"}
        gateway._client.list_objects_v2.side_effect = [page, page]
        with pytest.raises(PaginationError):
            await _collect(gateway)

    async def test_truncated_without_token_raises(self):
        gateway = _make_gateway()
        gateway._client.list_objects_v2.return_value = {"Contents": [], "IsTruncated": True}
        with pytest.raises(PaginationError):
            await _collect(gateway)

    async def test_page_failure_raises_transport_error(self):
        gateway = _make_gateway()
        gateway._client.list_objects_v2.side_effect = _client_error("AccessDenied", status=403)
        with pytest.raises(TransportError):
            await _collect(gateway)


class TestPresign:
    """Presigned URL generation."""

    async def test_presign_put_binds_content_type(self):
        gateway = _make_gateway()
        gateway._client.generate_presigned_url.return_value = "https://signed/put"
        url = await gateway.presign_put("uploads/x/a.pdf", "application/pdf", 900)
        assert url == "https://signed/put"
        gateway._client.generate_presigned_url.assert_awaited_once_with(
            ClientMethod="put_object",
            Params={"Bucket": "media", "Key": "uploads/x/a.pdf", "ContentType": "application/pdf"},
            ExpiresIn=900,
        )

    async def test_presign_upload_part(self):
        gateway = _make_gateway()
        gateway._client.generate_presigned_url.return_value = "https://signed/part"
        await gateway.presign_upload_part("k", "up-1", 3, 600)
        gateway._client.generate_presigned_url.assert_awaited_once_with(
            ClientMethod="upload_part",
            Params={"Bucket": "media", "Key": "k", "UploadId": "up-1", "PartNumber": 3},
            ExpiresIn=600,
        )


class TestMultipart:
    """Multipart bookkeeping."""

    async def test_create_returns_upload_id(self):
        gateway = _make_gateway()
        gateway._client.create_multipart_upload.return_value = {"UploadId": "up-9"}
        assert await gateway.create_multipart_upload("k", "video/mp4") == "up-9"
        gateway._client.create_multipart_upload.assert_awaited_once_with(
            Bucket="media", Key="k", ContentType="video/mp4"
        )

    async def test_create_without_upload_id(self):
        gateway = _make_gateway()
        gateway._client.create_multipart_upload.return_value = {}
        with pytest.raises(TransportError):
            await gateway.create_multipart_upload("k", "video/mp4")

    async def test_complete_sends_parts(self):
        gateway = _make_gateway()
        gateway._client.complete_multipart_upload.return_value = {"ETag": '"abc-2"'}
        etag = await gateway.complete_multipart_upload("k", "up-1", [(1, "e1"), (2, "e2")])
        assert etag == "abc-2"
        gateway._client.complete_multipart_upload.assert_awaited_once_with(
            Bucket="media",
            Key="k",
            UploadId="up-1",
            MultipartUpload={
                "Parts": [{"PartNumber": 1, "ETag": "e1"}, {"PartNumber": 2, "ETag": "e2"}]
            },
        )

    async def test_abort(self):
        gateway = _make_gateway()
        await gateway.abort_multipart_upload("k", "up-1")
        gateway._client.abort_multipart_upload.assert_awaited_once_with(
            Bucket="media", Key="k", UploadId="up-1"
        )


class TestObjectUrl:
    """object_url()."""

    def test_path_style_endpoint(self):
        gateway = _make_gateway()
        assert gateway.object_url("uploads/a b.txt") == (
            "https://r2.example.com/media/uploads/a%20b.txt"
        )

    def test_cdn_base(self):
        gateway = _make_gateway(cdn_url="https://cdn.example.com/")
        assert gateway.object_url("uploads/a.txt") == "https://cdn.example.com/uploads/a.txt"
