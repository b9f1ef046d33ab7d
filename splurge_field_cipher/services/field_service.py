"""Field encryption service used at the persistence boundary."""

from typing import Optional

from splurge_field_cipher.codec import AeadCodec
from splurge_field_cipher.exceptions import CryptoError
from splurge_field_cipher.key_store import KeyStore
from splurge_field_cipher.models import EncryptedEnvelope


class FieldEncryptionService:
    """Encrypts attribute values under the active key and decrypts by stamped version."""

    def __init__(self, key_store: KeyStore, codec: AeadCodec | None = None):
        """Initialize the field encryption service.

        Args:
            key_store: Source of the active key and of keys by version
            codec: AEAD codec (default: a new AeadCodec)
        """
        self._key_store = key_store
        self._codec = codec or AeadCodec()

    def encrypt_field(self, plaintext: Optional[bytes]) -> Optional[str]:
        """Encrypt a field value into an envelope string.

        Raises:
            CryptoError: If the plaintext or active key is malformed
        """
        if plaintext is None:
            return None
        return self._codec.encrypt_to_string(plaintext, self._key_store.get_active())

    def decrypt_field(self, value: Optional[str]) -> Optional[bytes]:
        """Decrypt an envelope string into the field value.

        Raises:
            CryptoError: If the envelope is malformed
            AuthenticationError: If the envelope fails verification
            UnknownKeyVersionError: If the stamped key version is unknown
        """
        return self._codec.decrypt_from_string(value, self._key_store.get_by_version)

    def encrypt_text(self, text: Optional[str]) -> Optional[str]:
        """Encrypt a UTF-8 string field."""
        if text is None:
            return None
        if not isinstance(text, str):
            raise CryptoError("Text value must be a string")
        return self.encrypt_field(text.encode("utf-8"))

    def decrypt_text(self, value: Optional[str]) -> Optional[str]:
        """Decrypt an envelope string into a UTF-8 string field."""
        plaintext = self.decrypt_field(value)
        if plaintext is None:
            return None
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CryptoError(f"Decrypted value is not valid UTF-8: {e}") from e

    def key_version_of(self, value: str) -> int:
        """Key version stamped on an envelope string."""
        return EncryptedEnvelope.peek_version(value)

    def needs_rotation(self, value: Optional[str]) -> bool:
        """Whether a stored envelope was written under a key other than the active one."""
        if value is None:
            return False
        return self.key_version_of(value) != self._key_store.get_active().version

    @property
    def codec(self) -> AeadCodec:
        return self._codec

    @property
    def key_store(self) -> KeyStore:
        return self._key_store
