"""Services package for Splurge Field Cipher."""

from splurge_field_cipher.services.field_service import FieldEncryptionService
from splurge_field_cipher.services.rotation import KeyRotationManager, RotationCancelToken

__all__ = [
    "FieldEncryptionService",
    "KeyRotationManager",
    "RotationCancelToken",
]
