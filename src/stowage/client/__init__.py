"""Uploader-side client: broker calls, byte sources and the upload state machine."""

from stowage.client.broker import BrokerClient, MultipartInit, PresignedUpload
from stowage.client.orchestrator import (
    FileReference,
    Strategy,
    UploadOrchestrator,
    UploadSession,
    UploadState,
)
from stowage.client.source import BytesSource, FileSource, UploadSource

__all__ = [
    "BrokerClient",
    "BytesSource",
    "FileReference",
    "FileSource",
    "MultipartInit",
    "PresignedUpload",
    "Strategy",
    "UploadOrchestrator",
    "UploadSession",
    "UploadSource",
    "UploadState",
]
