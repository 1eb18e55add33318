"""Error definitions for Stowage.

Every error raised across a component boundary derives from
:class:`StowageError`, which carries a stable code, a human-readable message,
and the HTTP status the broker renders it with.
"""


class StowageError(Exception):
    """A Stowage error with code, message, and HTTP status.

    Attributes:
        code: Stable error code string (e.g. "ValidationError").
        message: Human-readable error description.
        http_status: The HTTP status code to return.
        extra_fields: Additional key-value pairs included in the JSON error body.
    """

    def __init__(
        self,
        code: str,
        message: str,
        http_status: int = 400,
        extra_fields: dict | None = None,
    ) -> None:
        """Initialize the error.

        Args:
            code: Error code.
            message: Error description.
            http_status: HTTP status code (default 400).
            extra_fields: Optional extra body fields.
        """
        super().__init__(message)
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra_fields = extra_fields or {}


# -- Input and registration ---------------------------------------------------


class ValidationError(StowageError):
    """Input failed shape validation.

    ``fields`` maps each offending field name to its list of messages.
    """

    def __init__(
        self,
        message: str = "Validation failed. Please check the fields.",
        fields: dict[str, list[str]] | None = None,
    ) -> None:
        self.fields = fields or {}
        super().__init__(
            code="ValidationError",
            message=message,
            http_status=422,
            extra_fields={"fields": self.fields} if self.fields else {},
        )


class ConnectionVerificationError(StowageError):
    """The connectivity probe against a bucket failed."""

    def __init__(
        self,
        message: str = "Connection failed. Please check your credentials and endpoint.",
    ) -> None:
        super().__init__(code="ConnectionVerificationError", message=message, http_status=502)


class BucketNotFound(StowageError):
    """The requested bucket configuration does not exist."""

    def __init__(self, bucket_id: int | None = None) -> None:
        super().__init__(
            code="BucketNotFound",
            message="Bucket configuration not found.",
            http_status=404,
            extra_fields={"bucketId": bucket_id} if bucket_id is not None else {},
        )


class FileNotFound(StowageError):
    """The referenced file record does not exist or does not match."""

    def __init__(self, file_id: str = "") -> None:
        super().__init__(
            code="FileNotFound",
            message="The specified file record does not exist.",
            http_status=404,
            extra_fields={"fileId": file_id} if file_id else {},
        )


# -- Credentials and authorization ---------------------------------------------


class ConfigurationError(StowageError):
    """Invalid configuration or key material, detected at startup."""

    def __init__(self, message: str = "Invalid configuration.") -> None:
        super().__init__(code="ConfigurationError", message=message, http_status=500)


class DecryptionError(StowageError):
    """A stored secret could not be decrypted (wrong key or tampered data).

    Fatal for the credential; never retried.
    """

    def __init__(self, message: str = "Failed to decrypt secret.") -> None:
        super().__init__(code="DecryptionError", message=message, http_status=500)


class InvalidCapabilityError(StowageError):
    """A capability token is missing, expired, mis-signed, or out of scope."""

    def __init__(self, message: str = "Invalid or expired capability token.") -> None:
        super().__init__(code="InvalidCapability", message=message, http_status=401)


class Unauthorized(StowageError):
    """The caller lacks the admin capability required for a mutation."""

    def __init__(
        self, message: str = "Unauthorized: You are not authorized to perform this action."
    ) -> None:
        super().__init__(code="Unauthorized", message=message, http_status=403)


# -- Storage protocol ----------------------------------------------------------


class TransportError(StowageError):
    """A network or HTTP failure talking to the broker or the storage provider."""

    def __init__(self, message: str = "Transport failure.", status: int | None = None) -> None:
        self.status = status
        super().__init__(
            code="TransportError",
            message=message,
            http_status=502,
            extra_fields={"upstreamStatus": status} if status is not None else {},
        )


class PaginationError(StowageError):
    """The provider returned the same continuation token twice."""

    def __init__(self, token: str = "") -> None:
        super().__init__(
            code="PaginationError",
            message="Object listing repeated a continuation token.",
            http_status=502,
        )
        self.token = token


class MissingETagError(StowageError):
    """A part upload response carried no ETag header."""

    def __init__(self, part_number: int) -> None:
        super().__init__(
            code="MissingETag",
            message=f"ETag not found for part #{part_number}.",
            http_status=502,
            extra_fields={"partNumber": part_number},
        )
        self.part_number = part_number


class InvalidPartOrder(StowageError):
    """A completion part list was unordered, gapped, or duplicated."""

    def __init__(
        self,
        message: str = "Parts must be listed in ascending order starting at 1 with no gaps.",
    ) -> None:
        super().__init__(code="InvalidPartOrder", message=message, http_status=400)


class InternalError(StowageError):
    """An unexpected server error occurred."""

    def __init__(self, message: str = "We encountered an internal error. Please try again.") -> None:
        super().__init__(code="InternalError", message=message, http_status=500)


# -- Orchestrator --------------------------------------------------------------


class UploadFailed(StowageError):
    """Terminal failure of an upload session, with a single readable reason."""

    def __init__(self, message: str) -> None:
        super().__init__(code="UploadFailed", message=message, http_status=500)


class InvalidStateTransition(Exception):
    """An upload session was driven through a transition its table forbids.

    Signals a programming error; never caught.
    """
