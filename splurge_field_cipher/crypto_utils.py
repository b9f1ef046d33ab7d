"""Cryptographic utilities for the Splurge Field Cipher system."""

import base64
import hmac
import secrets

from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from splurge_field_cipher.constants import Constants
from splurge_field_cipher.exceptions import CryptoError
from splurge_field_cipher.exceptions import ValidationError


class CryptoUtils:
    """Cryptographic primitives shared by the codec and the key store."""

    @staticmethod
    def constant_time_compare(a: bytes, b: bytes) -> bool:
        """Perform constant-time comparison of two byte strings.

        Args:
            a: First byte string
            b: Second byte string

        Returns:
            True if strings are equal, False otherwise
        """
        return hmac.compare_digest(a, b)

    @classmethod
    def generate_random_key(cls) -> bytes:
        """Generate a random 256-bit data encryption key.

        Returns:
            Random 256-bit key as bytes
        """
        return secrets.token_bytes(Constants.KEY_SIZE_BYTES())

    @classmethod
    def generate_nonce(cls) -> bytes:
        """Generate a random 96-bit AES-GCM nonce."""
        return secrets.token_bytes(Constants.NONCE_SIZE_BYTES())

    @classmethod
    def generate_salt(cls) -> bytes:
        """Generate a random salt.

        Returns:
            Random salt as bytes
        """
        return secrets.token_bytes(Constants.DEFAULT_SALT_SIZE())

    @classmethod
    def derive_key_from_password(
        cls,
        password: str,
        salt: bytes,
        *,
        iterations: Optional[int] = None
    ) -> bytes:
        """Derive a key-encryption key from a password using PBKDF2.

        Args:
            password: Password to derive key from
            salt: Salt for key derivation
            iterations: Number of iterations (default: Constants.DEFAULT_ITERATIONS())

        Returns:
            Derived key as bytes

        Raises:
            CryptoError: If key derivation fails
            ValidationError: If parameters are invalid
        """
        if not password or not isinstance(password, str):
            raise ValidationError("Password must be a non-empty string")

        if not salt or len(salt) < Constants.DEFAULT_SALT_SIZE():
            raise ValidationError(f"Salt must be at least {Constants.DEFAULT_SALT_SIZE()} bytes")

        if iterations is None:
            iterations = Constants.DEFAULT_ITERATIONS()
        elif iterations < Constants.MIN_ITERATIONS():
            raise ValidationError(f"Iterations must be at least {Constants.MIN_ITERATIONS()}")

        try:
            kdf = PBKDF2HMAC(
                algorithm=hashes.SHA256(),
                length=Constants.KEY_SIZE_BYTES(),
                salt=salt,
                iterations=iterations,
            )
            return kdf.derive(password.encode("utf-8"))
        except Exception as e:
            raise CryptoError(f"Key derivation failed: {e}") from e

    @staticmethod
    def wrap_secret(wrapping_key: bytes, secret: bytes) -> bytes:
        """Encrypt a key secret with Fernet under a derived wrapping key.

        Args:
            wrapping_key: Key-encryption key (32 bytes)
            secret: Secret to protect

        Returns:
            Fernet token as bytes

        Raises:
            CryptoError: If wrapping fails
        """
        if len(wrapping_key) != Constants.KEY_SIZE_BYTES():
            raise CryptoError(f"Wrapping key must be exactly {Constants.KEY_SIZE_BYTES()} bytes")

        try:
            fernet = Fernet(base64.urlsafe_b64encode(wrapping_key))
            return fernet.encrypt(secret)
        except Exception as e:
            raise CryptoError(f"Secret wrapping failed: {e}") from e

    @staticmethod
    def unwrap_secret(wrapping_key: bytes, token: bytes) -> bytes:
        """Decrypt a Fernet-wrapped key secret.

        Raises:
            CryptoError: If the token is invalid or the wrapping key is wrong
        """
        if len(wrapping_key) != Constants.KEY_SIZE_BYTES():
            raise CryptoError(f"Wrapping key must be exactly {Constants.KEY_SIZE_BYTES()} bytes")

        try:
            fernet = Fernet(base64.urlsafe_b64encode(wrapping_key))
            return fernet.decrypt(token)
        except InvalidToken as e:
            raise CryptoError("Secret unwrapping failed: wrong password or corrupted key store") from e
        except Exception as e:
            raise CryptoError(f"Secret unwrapping failed: {e}") from e

