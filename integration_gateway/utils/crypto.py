"""
Credential encryption for the Integration Gateway.

Connection credentials are stored as a map of field name to ciphertext. This
module encrypts and decrypts those maps with Fernet symmetric encryption and
supports key rotation through MultiFernet.

Security features:
- Fernet encryption (AES 128 in CBC mode with HMAC-SHA256 authentication)
- Key rotation: the newest key encrypts, every configured key decrypts
- No plaintext credential logging (automatic redaction)
"""

from typing import Dict, Iterable, List, Mapping, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet

from ..config import Settings, get_settings


class CredentialCodecError(Exception):
    """Base exception for CredentialCodec operations."""

    pass


class DecryptionError(CredentialCodecError):
    """Raised when decryption fails (invalid ciphertext, wrong key, etc.)."""

    pass


class CredentialCodec:
    """
    Encrypts and decrypts credential material at rest.

    The primary key is always used for encryption; older keys are kept only so
    existing ciphertext stays readable until it is re-encrypted with
    ``rotate_value``.

    Usage:
        codec = CredentialCodec(primary_key_b64=key)
        stored = codec.encrypt_credentials({"token": "ghp_..."})
        plain = codec.decrypt_credentials(stored)
    """

    def __init__(
        self,
        primary_key_b64: Optional[str] = None,
        additional_keys_b64: Optional[Iterable[str]] = None,
    ):
        """Initialize the codec.

        Args:
            primary_key_b64: Base64-encoded Fernet key used for encryption.
                Falls back to ``Settings.fernet_key``.
            additional_keys_b64: Older keys tried during decryption.
                Falls back to ``Settings.fernet_keys``.
        """
        if primary_key_b64 is None:
            settings = get_settings()
            primary_key_b64 = settings.fernet_key
            if additional_keys_b64 is None:
                additional_keys_b64 = settings.fernet_keys

        if not primary_key_b64:
            raise CredentialCodecError("A primary Fernet key is required")

        keys: List[Fernet] = []

        try:
            keys.append(Fernet(primary_key_b64.encode()))
        except Exception as e:
            raise CredentialCodecError(f"Invalid FERNET_KEY: {e}") from e

        for key_b64 in additional_keys_b64 or []:
            key_b64 = key_b64.strip()
            if not key_b64:
                continue
            try:
                keys.append(Fernet(key_b64.encode()))
            except Exception as e:
                raise CredentialCodecError(f"Invalid key in FERNET_KEYS: {e}") from e

        self._multi_fernet = MultiFernet(keys)
        self._key_count = len(keys)

    def encrypt_value(self, plaintext: str) -> str:
        """
        Encrypt a single credential value.

        Returns:
            URL-safe ciphertext string suitable for JSON storage

        Raises:
            CredentialCodecError: If encryption fails
        """
        if plaintext is None:
            raise CredentialCodecError("Cannot encrypt a missing value")

        try:
            return self._multi_fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")
        except Exception as e:
            raise CredentialCodecError(f"Encryption failed: {e}") from e

    def decrypt_value(self, ciphertext: str) -> str:
        """
        Decrypt a single credential value, trying every configured key.

        Raises:
            DecryptionError: If no key can decrypt the value
        """
        if not ciphertext:
            raise DecryptionError("Cannot decrypt empty ciphertext")

        try:
            token = ciphertext.encode("ascii") if isinstance(ciphertext, str) else ciphertext
            return self._multi_fernet.decrypt(token).decode("utf-8")
        except InvalidToken as e:
            raise DecryptionError(
                f"Failed to decrypt credential with any of the {self._key_count} "
                "available keys"
            ) from e
        except Exception as e:
            raise DecryptionError(f"Decryption failed: {e}") from e

    def encrypt_credentials(self, credentials: Mapping[str, str]) -> Dict[str, str]:
        """Encrypt every value of a credential map; keys stay readable."""
        return {key: self.encrypt_value(value) for key, value in credentials.items()}

    def decrypt_credentials(
        self, encrypted: Optional[Mapping[str, str]]
    ) -> Dict[str, str]:
        """
        Decrypt a stored credential map.

        Raises:
            DecryptionError: Naming the field that failed, never its value
        """
        if not encrypted:
            return {}

        decrypted: Dict[str, str] = {}
        for key, ciphertext in encrypted.items():
            try:
                decrypted[key] = self.decrypt_value(ciphertext)
            except DecryptionError as e:
                raise DecryptionError(f"Credential field '{key}' could not be decrypted") from e
        return decrypted

    def rotate_value(self, old_ciphertext: str) -> str:
        """Re-encrypt a value with the current primary key."""
        try:
            token = old_ciphertext.encode("ascii")
            return self._multi_fernet.rotate(token).decode("ascii")
        except InvalidToken as e:
            raise DecryptionError("Cannot rotate a value no configured key can read") from e

    def get_key_count(self) -> int:
        """Number of configured keys (for diagnostics)."""
        return self._key_count


def generate_fernet_key() -> str:
    """
    Generate a new Fernet key.

    Returns:
        Base64-encoded key suitable for the FERNET_KEY environment variable
    """
    return Fernet.generate_key().decode()


def redact_for_logging(value: str) -> str:
    """
    Redact a secret for safe logging.

    Shows only the first 8 and last 4 characters.

    Example:
        redact_for_logging("ghp_verylongpersonalaccesstoken")
        # Returns: "ghp_very...oken"
    """
    if not value or len(value) < 12:
        return "***REDACTED***"

    return f"{value[:8]}...{value[-4:]}"


_credential_codec: Optional[CredentialCodec] = None


def get_credential_codec(settings: Optional[Settings] = None) -> CredentialCodec:
    """Get the process-wide CredentialCodec (singleton pattern)."""
    global _credential_codec

    if _credential_codec is None:
        settings = settings or get_settings()
        _credential_codec = CredentialCodec(
            primary_key_b64=settings.fernet_key,
            additional_keys_b64=settings.fernet_keys,
        )

    return _credential_codec
