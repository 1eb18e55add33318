"""Client-side upload orchestrator.

Moves one file into a bucket through the broker. Files below the multipart
threshold go up in a single presigned PUT. Larger files are cut into
fixed-size parts, each PUT to its own presigned URL, then stitched together
by the broker.

Each upload is an :class:`UploadSession` driven through an explicit state
machine::

    Idle -> StrategySelected -> SinglePutInFlight  -> Finalizing -> Completed
                             -> MultipartInitiated -> PartsUploading
                                                   -> Finalizing -> Completed
    (any active state) -> Failed

Bytes always flow straight from the source to the storage provider; the
broker only hands out URLs and records the result.
"""

import asyncio
import enum
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field

import httpx

from stowage import metrics
from stowage.client.broker import BrokerClient, MultipartInit
from stowage.client.source import UploadSource
from stowage.config import MIB, UploadConfig
from stowage.errors import (
    InvalidStateTransition,
    MissingETagError,
    StowageError,
    TransportError,
    UploadFailed,
)
from stowage.validation import strip_etag

logger = logging.getLogger(__name__)

DEFAULT_MULTIPART_THRESHOLD = 50 * MIB
DEFAULT_CHUNK_SIZE = 5 * MIB


class UploadState(str, enum.Enum):
    IDLE = "Idle"
    STRATEGY_SELECTED = "StrategySelected"
    SINGLE_PUT_IN_FLIGHT = "SinglePutInFlight"
    MULTIPART_INITIATED = "MultipartInitiated"
    PARTS_UPLOADING = "PartsUploading"
    FINALIZING = "Finalizing"
    COMPLETED = "Completed"
    FAILED = "Failed"


class Strategy(str, enum.Enum):
    SINGLE = "single"
    MULTIPART = "multipart"


TRANSITIONS: dict[UploadState, frozenset[UploadState]] = {
    UploadState.IDLE: frozenset({UploadState.STRATEGY_SELECTED}),
    UploadState.STRATEGY_SELECTED: frozenset(
        {UploadState.SINGLE_PUT_IN_FLIGHT, UploadState.MULTIPART_INITIATED, UploadState.FAILED}
    ),
    UploadState.SINGLE_PUT_IN_FLIGHT: frozenset({UploadState.FINALIZING, UploadState.FAILED}),
    UploadState.MULTIPART_INITIATED: frozenset({UploadState.PARTS_UPLOADING, UploadState.FAILED}),
    UploadState.PARTS_UPLOADING: frozenset({UploadState.FINALIZING, UploadState.FAILED}),
    UploadState.FINALIZING: frozenset({UploadState.COMPLETED, UploadState.FAILED}),
    UploadState.COMPLETED: frozenset(),
    UploadState.FAILED: frozenset(),
}


class FileReference:
    """The caller-visible pointer to the uploaded file.

    Holds the final URL of the last successful upload. A failed upload puts
    back whatever value was there before it started.
    """

    def __init__(self, value: str | None = None) -> None:
        self.value = value

    def __repr__(self) -> str:
        return f"FileReference({self.value!r})"


def choose_strategy(size: int, threshold: int) -> Strategy:
    return Strategy.SINGLE if size < threshold else Strategy.MULTIPART


def part_count(size: int, chunk_size: int) -> int:
    return math.ceil(size / chunk_size)


def part_range(part_number: int, size: int, chunk_size: int) -> tuple[int, int]:
    """Byte range ``[start, end)`` of a 1-based part."""
    start = (part_number - 1) * chunk_size
    return start, min(start + chunk_size, size)


@dataclass
class UploadSession:
    """State of one upload attempt. Single use; never persisted.

    Attributes:
        strategy: Fixed at creation from the file size.
        size: Total payload size in bytes.
        content_type: MIME type sent to the broker and on single PUTs.
        total_parts: Number of parts (1 for single-part uploads).
        file_id: Broker-issued catalog id.
        key: Storage object key.
        upload_id: Provider multipart id, multipart only.
        parts: Bare ETag per completed part number.
        progress: Fraction of parts uploaded, never decreasing.
        state: Current state machine position.
        error: Human-readable failure reason once ``Failed``.
        final_url: Access URL once ``Completed``.
    """

    strategy: Strategy
    size: int
    content_type: str
    file_name: str
    total_parts: int
    file_id: str = ""
    key: str = ""
    upload_id: str = ""
    parts: dict[int, str] = field(default_factory=dict)
    progress: float = 0.0
    state: UploadState = UploadState.IDLE
    error: str | None = None
    final_url: str | None = None

    def transition(self, target: UploadState) -> None:
        """Move to ``target``.

        Raises:
            InvalidStateTransition: If the table does not allow the move.
        """
        if target not in TRANSITIONS[self.state]:
            raise InvalidStateTransition(f"{self.state.value} -> {target.value}")
        logger.debug("Upload %s: %s -> %s", self.file_id or "-", self.state.value, target.value)
        self.state = target

    def record_part(self, part_number: int, etag: str) -> None:
        self.parts[part_number] = etag
        self.progress = max(self.progress, len(self.parts) / self.total_parts)

    def completed_parts(self) -> list[tuple[int, str]]:
        """Parts sorted by part number, checked to cover ``1..N`` exactly.

        Raises:
            InvalidStateTransition: If a part is missing.
        """
        ordered = sorted(self.parts.items())
        if [number for number, _ in ordered] != list(range(1, self.total_parts + 1)):
            raise InvalidStateTransition(
                f"cannot finalize with parts {[n for n, _ in ordered]} of {self.total_parts}"
            )
        return ordered

    @property
    def terminal(self) -> bool:
        return self.state in (UploadState.COMPLETED, UploadState.FAILED)


ProgressCallback = Callable[[UploadSession], None]


class UploadOrchestrator:
    """Drives upload sessions for one bucket.

    Attributes:
        broker: Client for the broker's file routes.
        bucket_id: Target bucket.
        multipart_threshold: Sizes at or above this go multipart.
        chunk_size: Part size for multipart uploads.
        part_concurrency: Parts in flight at once (1 means strictly ordered).
        part_timeout: Timeout for each byte PUT.
        signing_retries: Extra attempts for presign-part calls.
        abort_on_failure: Ask the broker to abort a failed multipart upload.
    """

    def __init__(
        self,
        broker: BrokerClient,
        bucket_id: int,
        multipart_threshold: int = DEFAULT_MULTIPART_THRESHOLD,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        part_concurrency: int = 1,
        part_timeout: float = 300.0,
        signing_retries: int = 2,
        abort_on_failure: bool = False,
        retry_backoff: float = 0.25,
        http_client: httpx.AsyncClient | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        if chunk_size <= 0 or multipart_threshold <= 0:
            raise ValueError("chunk_size and multipart_threshold must be positive")
        if part_concurrency < 1:
            raise ValueError("part_concurrency must be at least 1")
        self.broker = broker
        self.bucket_id = bucket_id
        self.multipart_threshold = multipart_threshold
        self.chunk_size = chunk_size
        self.part_concurrency = part_concurrency
        self.part_timeout = part_timeout
        self.signing_retries = signing_retries
        self.abort_on_failure = abort_on_failure
        self.retry_backoff = retry_backoff
        self.on_progress = on_progress
        self._http = http_client

    @classmethod
    def from_config(
        cls, broker: BrokerClient, bucket_id: int, config: UploadConfig, **kwargs
    ) -> "UploadOrchestrator":
        return cls(
            broker,
            bucket_id,
            multipart_threshold=config.multipart_threshold_bytes,
            chunk_size=config.chunk_size_bytes,
            part_concurrency=config.part_concurrency,
            part_timeout=config.part_timeout,
            signing_retries=config.signing_retries,
            abort_on_failure=config.abort_on_failure,
            **kwargs,
        )

    # -- Public API ----------------------------------------------------------------

    def select(self, source: UploadSource) -> UploadSession:
        """Create a session for ``source`` and fix its strategy."""
        strategy = choose_strategy(source.size, self.multipart_threshold)
        total = part_count(source.size, self.chunk_size) if strategy is Strategy.MULTIPART else 1
        session = UploadSession(
            strategy=strategy,
            size=source.size,
            content_type=source.content_type,
            file_name=source.name,
            total_parts=total,
        )
        session.transition(UploadState.STRATEGY_SELECTED)
        return session

    async def upload(
        self, source: UploadSource, reference: FileReference | None = None
    ) -> UploadSession:
        """Upload ``source`` and return the completed session.

        Raises:
            UploadFailed: With a readable reason; the cause is chained.
        """
        session = self.select(source)
        await self.run(session, source, reference)
        return session

    async def run(
        self,
        session: UploadSession,
        source: UploadSource,
        reference: FileReference | None = None,
    ) -> None:
        """Drive a selected session to ``Completed`` or ``Failed``.

        On failure or cancellation ``reference`` is restored to its value at
        the start of the run.

        Raises:
            UploadFailed: When any step fails.
            asyncio.CancelledError: When the calling task is cancelled.
        """
        reference = reference if reference is not None else FileReference()
        previous = reference.value
        try:
            if self._http is not None:
                await self._drive(session, source, self._http)
            else:
                async with httpx.AsyncClient() as client:
                    await self._drive(session, source, client)
        except asyncio.CancelledError:
            reference.value = previous
            self._fail(session, "Upload cancelled.")
            raise
        except UploadFailed as exc:
            reference.value = previous
            self._fail(session, exc.message)
            await self._maybe_abort(session)
            raise
        except (StowageError, httpx.HTTPError) as exc:
            reference.value = previous
            reason = exc.message if isinstance(exc, StowageError) else str(exc)
            self._fail(session, reason)
            await self._maybe_abort(session)
            raise UploadFailed(reason) from exc

        reference.value = session.final_url
        metrics.record_upload(session.strategy.value, "completed")
        logger.info(
            "Uploaded %s (%d bytes, %s)",
            session.key,
            session.size,
            session.strategy.value,
            extra={"file_id": session.file_id, "bucket_id": self.bucket_id},
        )

    # -- Internals -----------------------------------------------------------------

    def _fail(self, session: UploadSession, reason: str) -> None:
        if session.state is not UploadState.FAILED:
            session.transition(UploadState.FAILED)
        session.error = reason
        metrics.record_upload(session.strategy.value, "failed")
        logger.warning(
            "Upload of %s failed: %s",
            session.file_name,
            reason,
            extra={"file_id": session.file_id or None, "bucket_id": self.bucket_id},
        )

    def _report(self, session: UploadSession) -> None:
        if self.on_progress is not None:
            self.on_progress(session)

    async def _drive(
        self, session: UploadSession, source: UploadSource, http: httpx.AsyncClient
    ) -> None:
        if session.strategy is Strategy.SINGLE:
            await self._single_part(session, source, http)
        else:
            await self._multipart(session, source, http)

    async def _put(
        self,
        http: httpx.AsyncClient,
        url: str,
        data: bytes,
        headers: dict[str, str],
    ) -> httpx.Response:
        """PUT bytes to storage. Never retried."""
        try:
            response = await http.put(url, content=data, headers=headers, timeout=self.part_timeout)
        except httpx.HTTPError as exc:
            raise TransportError(f"PUT to storage failed: {exc.__class__.__name__}") from exc
        if response.is_error:
            raise TransportError(
                f"Storage rejected the upload with HTTP {response.status_code}.",
                status=response.status_code,
            )
        return response

    async def _read(
        self, session: UploadSession, source: UploadSource, start: int, end: int
    ) -> bytes:
        """Read one slice of the source, failing the upload if it changed."""
        try:
            data = await source.read_range(start, end)
        except OSError as exc:
            raise UploadFailed(f"Could not read {session.file_name}. {exc}") from exc
        if len(data) != end - start:
            raise UploadFailed(
                f"Could not read {session.file_name}. "
                f"Expected {end - start} bytes at offset {start}, got {len(data)}."
            )
        return data

    async def _single_part(
        self, session: UploadSession, source: UploadSource, http: httpx.AsyncClient
    ) -> None:
        try:
            presigned = await self.broker.presign(
                self.bucket_id, session.file_name, session.content_type
            )
        except StowageError as exc:
            raise UploadFailed(f"Could not get an upload URL. {exc.message}") from exc
        session.file_id = presigned.file_id
        session.key = presigned.key

        session.transition(UploadState.SINGLE_PUT_IN_FLIGHT)
        data = await self._read(session, source, 0, session.size)
        try:
            await self._put(http, presigned.upload_url, data, {"Content-Type": session.content_type})
        except TransportError as exc:
            raise UploadFailed(f"File upload to storage failed. {exc.message}") from exc
        session.record_part(1, "")
        self._report(session)

        session.transition(UploadState.FINALIZING)
        try:
            final_url = await self.broker.complete(
                self.bucket_id,
                session.file_id,
                session.key,
                session.file_name,
                session.size,
                session.content_type,
            )
        except StowageError as exc:
            raise UploadFailed(f"Failed to finalize upload record. {exc.message}") from exc
        session.final_url = final_url
        session.transition(UploadState.COMPLETED)

    async def _multipart(
        self, session: UploadSession, source: UploadSource, http: httpx.AsyncClient
    ) -> None:
        try:
            init = await self.broker.initiate_multipart(
                self.bucket_id, session.file_name, session.content_type
            )
        except StowageError as exc:
            raise UploadFailed(f"Could not initiate multipart upload. {exc.message}") from exc
        session.file_id = init.file_id
        session.key = init.key
        session.upload_id = init.upload_id
        session.transition(UploadState.MULTIPART_INITIATED)

        session.transition(UploadState.PARTS_UPLOADING)
        await self._upload_parts(session, source, http, init)

        session.transition(UploadState.FINALIZING)
        parts = session.completed_parts()
        try:
            final_url = await self.broker.complete_multipart(
                self.bucket_id,
                init.file_id,
                init.key,
                init.upload_id,
                parts,
                session.size,
            )
        except StowageError as exc:
            raise UploadFailed(f"Failed to finalize multipart upload. {exc.message}") from exc
        session.final_url = final_url
        session.transition(UploadState.COMPLETED)

    async def _upload_parts(
        self,
        session: UploadSession,
        source: UploadSource,
        http: httpx.AsyncClient,
        init: MultipartInit,
    ) -> None:
        numbers = range(1, session.total_parts + 1)
        if self.part_concurrency == 1:
            for part_number in numbers:
                await self._upload_part(session, source, http, init, part_number)
            return

        semaphore = asyncio.Semaphore(self.part_concurrency)

        async def bounded(part_number: int) -> None:
            async with semaphore:
                await self._upload_part(session, source, http, init, part_number)

        tasks = [asyncio.create_task(bounded(n)) for n in numbers]
        try:
            await asyncio.gather(*tasks)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _presign_part(self, init: MultipartInit, part_number: int) -> str:
        """Request a part URL, retrying transport failures only."""
        attempt = 0
        while True:
            try:
                return await self.broker.presign_part(
                    self.bucket_id, init.key, init.upload_id, part_number
                )
            except TransportError as exc:
                if attempt >= self.signing_retries:
                    raise UploadFailed(
                        f"Could not get URL for part #{part_number}. {exc.message}"
                    ) from exc
                attempt += 1
                logger.info(
                    "Retrying presign for part %d (attempt %d): %s",
                    part_number,
                    attempt + 1,
                    exc.message,
                    extra={"upload_id": init.upload_id},
                )
                await asyncio.sleep(self.retry_backoff * attempt)
            except StowageError as exc:
                raise UploadFailed(
                    f"Could not get URL for part #{part_number}. {exc.message}"
                ) from exc

    async def _upload_part(
        self,
        session: UploadSession,
        source: UploadSource,
        http: httpx.AsyncClient,
        init: MultipartInit,
        part_number: int,
    ) -> None:
        url = await self._presign_part(init, part_number)
        start, end = part_range(part_number, session.size, self.chunk_size)
        data = await self._read(session, source, start, end)
        try:
            response = await self._put(http, url, data, {})
        except TransportError as exc:
            raise UploadFailed(f"Upload failed for part #{part_number}. {exc.message}") from exc

        etag = response.headers.get("etag")
        if not etag:
            raise MissingETagError(part_number)
        session.record_part(part_number, strip_etag(etag))
        self._report(session)

    async def _maybe_abort(self, session: UploadSession) -> None:
        """Best-effort abort of a failed multipart upload, when enabled."""
        if not (self.abort_on_failure and session.upload_id):
            return
        try:
            await self.broker.abort_multipart(
                self.bucket_id, session.file_id, session.key, session.upload_id
            )
        except StowageError as exc:
            logger.warning(
                "Abort of multipart upload failed: %s",
                exc.message,
                extra={"upload_id": session.upload_id},
            )
