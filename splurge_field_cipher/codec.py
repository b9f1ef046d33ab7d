"""AES-256-GCM codec producing self-describing envelopes."""

from typing import Callable, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from splurge_field_cipher.constants import Constants
from splurge_field_cipher.crypto_utils import CryptoUtils
from splurge_field_cipher.exceptions import (
    AuthenticationError,
    CryptoError,
    UnknownKeyVersionError,
)
from splurge_field_cipher.models import EncryptedEnvelope, KeyMaterial

KeyLookup = Callable[[int], Optional[KeyMaterial]]


class AeadCodec:
    """Stateless encrypt/decrypt of one payload under one key.

    A new ``AESGCM`` context is built for every call, so one codec instance
    can be shared freely between threads.
    """

    @staticmethod
    def _cipher_for(key: KeyMaterial) -> AESGCM:
        if not isinstance(key, KeyMaterial):
            raise CryptoError("Key must be a KeyMaterial instance")
        if not isinstance(key.secret, (bytes, bytearray)) or len(key.secret) != Constants.KEY_SIZE_BYTES():
            raise CryptoError(
                f"Key version {key.version} secret must be exactly {Constants.KEY_SIZE_BYTES()} bytes"
            )
        return AESGCM(bytes(key.secret))

    def encrypt(
        self,
        plaintext: Optional[bytes],
        key: KeyMaterial
    ) -> Optional[EncryptedEnvelope]:
        """Encrypt a payload under a key.

        Args:
            plaintext: Payload to encrypt, or None
            key: Key material to encrypt with; its version is stamped on the envelope

        Returns:
            EncryptedEnvelope, or None when plaintext is None

        Raises:
            CryptoError: If the key material or plaintext is malformed
        """
        if plaintext is None:
            return None
        if not isinstance(plaintext, (bytes, bytearray, memoryview)):
            raise CryptoError("Plaintext must be bytes")

        cipher = self._cipher_for(key)
        nonce = CryptoUtils.generate_nonce()
        sealed = cipher.encrypt(nonce, bytes(plaintext), EncryptedEnvelope.header_for(key.version))

        tag_size = Constants.TAG_SIZE_BYTES()
        return EncryptedEnvelope(
            version=key.version,
            nonce=nonce,
            ciphertext=sealed[:-tag_size],
            tag=sealed[-tag_size:],
        )

    def decrypt(
        self,
        envelope: Optional[EncryptedEnvelope],
        key_lookup: KeyLookup
    ) -> Optional[bytes]:
        """Decrypt an envelope, resolving the key by its stamped version.

        Args:
            envelope: Envelope to decrypt, or None
            key_lookup: Callable returning the key material for a version

        Returns:
            Plaintext bytes, or None when envelope is None

        Raises:
            UnknownKeyVersionError: If no key exists for the stamped version
            AuthenticationError: If the tag does not verify
            CryptoError: If the resolved key material is malformed
        """
        if envelope is None:
            return None

        key = key_lookup(envelope.version)
        if key is None:
            raise UnknownKeyVersionError(envelope.version)
        if key.version != envelope.version:
            raise CryptoError(
                f"Key lookup returned version {key.version} for envelope version {envelope.version}"
            )

        cipher = self._cipher_for(key)
        try:
            return cipher.decrypt(envelope.nonce, envelope.ciphertext + envelope.tag, envelope.header)
        except InvalidTag as e:
            raise AuthenticationError(
                f"Authentication failed for envelope version {envelope.version}"
            ) from e

    def encrypt_to_string(
        self,
        plaintext: Optional[bytes],
        key: KeyMaterial
    ) -> Optional[str]:
        """Encrypt and serialize in one step."""
        envelope = self.encrypt(plaintext, key)
        return envelope.serialize() if envelope is not None else None

    def decrypt_from_string(
        self,
        value: Optional[str],
        key_lookup: KeyLookup
    ) -> Optional[bytes]:
        """Parse and decrypt in one step."""
        if value is None:
            return None
        return self.decrypt(EncryptedEnvelope.parse(value), key_lookup)
