"""Structured logging configuration for Stowage.

Two output formats are supported: human-readable text lines and one JSON
object per line. Both pass through :class:`RedactingFilter`, which masks
presigned URL signatures and bearer-style tokens before anything reaches a
handler.
"""

import json
import logging
import re
import sys
from datetime import datetime, timezone
from typing import TextIO

# Record attributes copied into JSON output when set via ``extra=``.
_EXTRA_FIELDS = (
    "method",
    "path",
    "status",
    "duration_ms",
    "request_id",
    "bucket_id",
    "file_id",
    "upload_id",
)

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_REDACTIONS = (
    (re.compile(r"(X-Amz-(?:Signature|Credential|Security-Token)=)[^&\s\"']+", re.I), r"\1***"),
    (re.compile(r"\beyJ[\w-]+\.[\w-]+\.[\w-]+(?:\.[\w-]+\.[\w-]+)?"), "***"),
)


def redact(text: str) -> str:
    """Mask presign signatures and JWT/JWE-shaped tokens in ``text``."""
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    return text


class RedactingFilter(logging.Filter):
    """Rewrites each record's message with :func:`redact` applied."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        cleaned = redact(message)
        if cleaned != message:
            record.msg = cleaned
            record.args = None
        return True


class JSONFormatter(logging.Formatter):
    """Formats log records as single-line JSON objects.

    Keys: timestamp, level, logger, message, ``exception`` when the record
    carries one, and any of the request/upload extras that are set.
    """

    def format(self, record: logging.LogRecord) -> str:
        created = datetime.fromtimestamp(record.created, tz=timezone.utc)
        entry = {
            "timestamp": created.isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(
            (key, getattr(record, key))
            for key in _EXTRA_FIELDS
            if getattr(record, key, None) is not None
        )
        return json.dumps(entry, default=str)


def configure_logging(
    level: str = "INFO", fmt: str = "text", stream: TextIO | None = None
) -> None:
    """Replace the root handlers with one stream handler.

    Args:
        level: Log level name. Unknown names fall back to INFO.
        fmt: ``"text"`` or ``"json"``.
        stream: Destination, stderr by default.
    """
    numeric_level = getattr(logging, level.upper(), None)
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handler = logging.StreamHandler(stream or sys.stderr)
    handler.setLevel(numeric_level)
    handler.addFilter(RedactingFilter())
    handler.setFormatter(JSONFormatter() if fmt == "json" else logging.Formatter(_TEXT_FORMAT))

    root = logging.getLogger()
    for existing in root.handlers[:]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(numeric_level)

    # botocore logs signing details at DEBUG.
    logging.getLogger("botocore").setLevel(max(numeric_level, logging.INFO))
