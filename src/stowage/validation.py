"""Input validation helpers for Stowage.

These functions check registration drafts, object naming and multipart part
lists independently of any HTTP handler so they can be unit-tested in
isolation.

Each function raises an appropriate ``StowageError`` subclass on invalid input.
"""

import math
import re
from urllib.parse import urlparse

from stowage.errors import InvalidPartOrder, ValidationError
from stowage.registry.models import BucketDraft

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_NAME_MIN = 3
_NAME_MAX = 63

_MAX_FILE_NAME_BYTES = 255
_MAX_PARTS = 10000

# Anything outside this set is replaced in object keys.
_UNSAFE_KEY_CHARS = re.compile(r"[^A-Za-z0-9._\-]+")


# ---------------------------------------------------------------------------
# Bucket registration
# ---------------------------------------------------------------------------


def _is_http_url(value: object) -> bool:
    if not isinstance(value, str) or not value:
        return False
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _positive_number(value: object) -> float | None:
    """Coerce ``value`` to a positive finite float, or return None."""
    if isinstance(value, bool) or value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number) or number <= 0:
        return None
    return number


def validate_bucket_draft(draft: BucketDraft) -> BucketDraft:
    """Validate a registration draft, reporting every failing field together.

    Args:
        draft: The unvalidated input.

    Returns:
        A normalized copy: strings stripped, capacity coerced to float, and
        ``cdn_url`` without a trailing slash.

    Raises:
        ValidationError: With ``fields`` mapping each bad field to messages.
    """
    errors: dict[str, list[str]] = {}

    def fail(field_name: str, message: str) -> None:
        errors.setdefault(field_name, []).append(message)

    name = (draft.name or "").strip()
    if len(name) < _NAME_MIN:
        fail("name", f"Name must be at least {_NAME_MIN} characters.")
    elif len(name) > _NAME_MAX:
        fail("name", f"Name must be at most {_NAME_MAX} characters.")

    region = (draft.region or "").strip()
    if not region:
        fail("region", "Region is required.")

    provider = (draft.provider or "").strip()
    if not provider:
        fail("provider", "Provider is required.")

    endpoint = (draft.endpoint or "").strip()
    if not _is_http_url(endpoint):
        fail("endpoint", "Must be a valid URL.")

    capacity = _positive_number(draft.total_capacity_gb)
    if capacity is None:
        fail("totalCapacityGb", "Capacity must be a positive number.")

    if not draft.access_key:
        fail("accessKey", "Access Key is required.")
    if not draft.secret_key:
        fail("secretKey", "Secret Key is required.")

    cdn_url = (draft.cdn_url or "").strip() or None
    if cdn_url is not None and not _is_http_url(cdn_url):
        fail("cdnUrl", "Must be a valid URL.")

    if errors:
        raise ValidationError(fields=errors)

    return BucketDraft(
        name=name,
        region=region,
        endpoint=endpoint.rstrip("/"),
        provider=provider,
        total_capacity_gb=capacity,
        access_key=draft.access_key,
        secret_key=draft.secret_key,
        is_private=bool(draft.is_private),
        cdn_url=cdn_url.rstrip("/") if cdn_url else None,
    )


def validate_secret_pair(access_key: str, secret_key: str) -> None:
    """Require both halves of a credential pair.

    Raises:
        ValidationError: If either key is empty.
    """
    errors: dict[str, list[str]] = {}
    if not access_key:
        errors["accessKey"] = ["Access Key is required."]
    if not secret_key:
        errors["secretKey"] = ["Secret Key is required."]
    if errors:
        raise ValidationError(fields=errors)


# ---------------------------------------------------------------------------
# Uploads
# ---------------------------------------------------------------------------


def validate_file_name(file_name: str) -> str:
    """Validate a client-supplied file name and return it stripped.

    Raises:
        ValidationError: If the name is empty or longer than 255 bytes.
    """
    stripped = (file_name or "").strip()
    if not stripped:
        raise ValidationError(fields={"fileName": ["File name is required."]})
    if len(stripped.encode("utf-8")) > _MAX_FILE_NAME_BYTES:
        raise ValidationError(
            fields={"fileName": [f"File name must be at most {_MAX_FILE_NAME_BYTES} bytes."]}
        )
    return stripped


def safe_key_segment(file_name: str) -> str:
    """Reduce a file name to characters safe in an object key."""
    base = file_name.replace("\\", "/").rsplit("/", 1)[-1]
    cleaned = _UNSAFE_KEY_CHARS.sub("-", base).strip("-.")
    return cleaned or "file"


def strip_etag(etag: str) -> str:
    """Remove every double quote from a provider ETag."""
    return etag.replace('"', "")


def validate_part_list(parts: list[tuple[int, str]]) -> list[tuple[int, str]]:
    """Check a completion part list and return it with bare ETags.

    Parts must be listed as 1, 2, ..., N with no gaps, duplicates or
    reordering, and every ETag must be non-empty.

    Args:
        parts: ``(part_number, etag)`` pairs in submission order.

    Returns:
        The same pairs with quotes stripped from each ETag.

    Raises:
        InvalidPartOrder: If the list is empty, out of order, gapped,
            duplicated, too long, or has an empty ETag.
    """
    if not parts:
        raise InvalidPartOrder("At least one part must be specified.")
    if len(parts) > _MAX_PARTS:
        raise InvalidPartOrder(f"At most {_MAX_PARTS} parts are allowed.")

    cleaned: list[tuple[int, str]] = []
    for expected, (part_number, etag) in enumerate(parts, start=1):
        if part_number != expected:
            raise InvalidPartOrder(
                f"Expected part number {expected} but got {part_number}."
            )
        bare = strip_etag(etag or "").strip()
        if not bare:
            raise InvalidPartOrder(f"Part {part_number} has an empty ETag.")
        cleaned.append((part_number, bare))
    return cleaned
