"""Credential vault: secrets at rest and short-lived capability tokens.

Bucket secrets are stored as JWE compact tokens (``alg=dir``,
``enc=A256GCM``) under a single 256-bit master key. Capability tokens are
HS256 JWTs carrying an optional bucket id (``bid``) and scope.

The vault is pure computation. Key material is loaded once, validated at
construction, and never mutated afterwards.
"""

import base64
import binascii
import secrets
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from jose import jwe, jwt
from jose.exceptions import ExpiredSignatureError, JOSEError, JWTError

from stowage.errors import ConfigurationError, DecryptionError, InvalidCapabilityError

if TYPE_CHECKING:
    from stowage.config import VaultConfig
    from stowage.registry.models import BucketConfig

MASTER_KEY_BYTES = 32
DEFAULT_CAPABILITY_TTL = 300
UPLOAD_SCOPE = "upload"

_JWE_ALGORITHM = "dir"
_JWE_ENCRYPTION = "A256GCM"
_JWT_ALGORITHM = "HS256"


@dataclass(frozen=True, repr=False)
class BucketCredentials:
    """Decrypted connection parameters for exactly one storage operation.

    Never persisted or logged; ``repr`` masks both secrets.
    """

    bucket_id: int | None
    name: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    cdn_url: str | None = None

    def __repr__(self) -> str:
        return (
            f"BucketCredentials(bucket_id={self.bucket_id!r}, name={self.name!r}, "
            f"endpoint={self.endpoint!r}, region={self.region!r}, "
            "access_key='***', secret_key='***')"
        )


@dataclass(frozen=True)
class AdminCapability:
    """Proof that the caller passed the admin check.

    Mutating registry operations take one of these as their ``authorization``
    argument instead of consulting ambient state.
    """

    subject: str


def generate_master_key() -> str:
    """Return a fresh base64-encoded 256-bit master key."""
    return base64.b64encode(secrets.token_bytes(MASTER_KEY_BYTES)).decode("ascii")


def _decode_master_key(master_key: str) -> bytes:
    """Decode and length-check a base64 master key.

    Raises:
        ConfigurationError: If the key is missing, not base64, or not 32 bytes.
    """
    if not master_key:
        raise ConfigurationError("vault.master_key is not set")
    try:
        raw = base64.b64decode(master_key, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ConfigurationError("vault.master_key is not valid base64") from exc
    if len(raw) != MASTER_KEY_BYTES:
        raise ConfigurationError(
            f"vault.master_key must decode to {MASTER_KEY_BYTES} bytes, got {len(raw)}"
        )
    return raw


class CredentialVault:
    """Encrypts bucket secrets and issues capability tokens.

    Attributes:
        capability_ttl: Lifetime of issued capability tokens, in seconds.
    """

    def __init__(
        self,
        master_key: str,
        signing_key: str,
        capability_ttl: int = DEFAULT_CAPABILITY_TTL,
    ) -> None:
        """Validate key material.

        Args:
            master_key: Base64-encoded 256-bit encryption key.
            signing_key: HMAC secret for capability tokens.
            capability_ttl: Token lifetime in seconds.

        Raises:
            ConfigurationError: If either key is unusable.
        """
        self._key = _decode_master_key(master_key)
        if not signing_key:
            raise ConfigurationError("vault.signing_key is not set")
        if capability_ttl <= 0:
            raise ConfigurationError("vault.capability_ttl_seconds must be positive")
        self._signing_key = signing_key
        self.capability_ttl = capability_ttl

    @classmethod
    def from_config(cls, config: "VaultConfig") -> "CredentialVault":
        return cls(
            master_key=config.master_key,
            signing_key=config.signing_key,
            capability_ttl=config.capability_ttl_seconds,
        )

    # -- Secrets at rest -------------------------------------------------------

    def encrypt_secret(self, plaintext: str) -> str:
        """Encrypt a secret into a JWE compact token."""
        token = jwe.encrypt(
            plaintext.encode("utf-8"),
            self._key,
            algorithm=_JWE_ALGORITHM,
            encryption=_JWE_ENCRYPTION,
        )
        return token.decode("ascii") if isinstance(token, bytes) else token

    def decrypt_secret(self, ciphertext: str) -> str:
        """Decrypt a JWE compact token produced by :meth:`encrypt_secret`.

        Raises:
            DecryptionError: On malformed input, tampering, or a wrong key.
        """
        if not ciphertext:
            raise DecryptionError("Encrypted value is empty.")
        try:
            plaintext = jwe.decrypt(ciphertext, self._key)
        except (JOSEError, ValueError, TypeError) as exc:
            raise DecryptionError() from exc
        if plaintext is None:
            raise DecryptionError()
        return plaintext.decode("utf-8")

    def decrypt_credentials(self, bucket: "BucketConfig") -> BucketCredentials:
        """Decrypt both secrets of a bucket into transient credentials.

        Raises:
            DecryptionError: If either secret fails to decrypt or is empty.
        """
        access_key = self.decrypt_secret(bucket.access_key_encrypted)
        secret_key = self.decrypt_secret(bucket.secret_key_encrypted)
        if not access_key or not secret_key:
            raise DecryptionError("Decrypted credentials are empty.")
        return BucketCredentials(
            bucket_id=bucket.id,
            name=bucket.name,
            endpoint=bucket.endpoint,
            region=bucket.region,
            access_key=access_key,
            secret_key=secret_key,
            cdn_url=bucket.cdn_url,
        )

    # -- Capability tokens -----------------------------------------------------

    def issue_capability(
        self,
        claims: dict[str, Any] | None = None,
        *,
        bucket_id: int | None = None,
        scope: str | None = None,
    ) -> str:
        """Mint a signed capability token.

        Args:
            claims: Extra claims to embed (e.g. ``sub``).
            bucket_id: Restrict the token to one bucket.
            scope: Restrict the token to one operation family.

        Returns:
            The encoded JWT.
        """
        now = int(time.time())
        payload: dict[str, Any] = dict(claims or {})
        if bucket_id is not None:
            payload["bid"] = bucket_id
        if scope is not None:
            payload["scope"] = scope
        payload["iat"] = now
        payload["exp"] = now + self.capability_ttl
        return jwt.encode(payload, self._signing_key, algorithm=_JWT_ALGORITHM)

    def verify_capability(
        self,
        token: str | None,
        *,
        bucket_id: int | None = None,
        scope: str | None = None,
    ) -> dict[str, Any]:
        """Verify a capability token and return its claims.

        A token minted without ``bid`` is accepted for any bucket, and one
        minted without ``scope`` for any scope.

        Raises:
            InvalidCapabilityError: If the token is missing, expired,
                mis-signed, malformed, or bound to another bucket or scope.
        """
        if not token:
            raise InvalidCapabilityError("Missing capability token.")
        try:
            claims = jwt.decode(token, self._signing_key, algorithms=[_JWT_ALGORITHM])
        except ExpiredSignatureError as exc:
            raise InvalidCapabilityError("Capability token has expired.") from exc
        except JWTError as exc:
            raise InvalidCapabilityError() from exc

        if bucket_id is not None and "bid" in claims and str(claims["bid"]) != str(bucket_id):
            raise InvalidCapabilityError("Capability token is not valid for this bucket.")
        if scope is not None and "scope" in claims and claims["scope"] != scope:
            raise InvalidCapabilityError("Capability token is not valid for this operation.")
        return claims
