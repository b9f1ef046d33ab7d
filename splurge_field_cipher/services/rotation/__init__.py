"""Rotation services package for Splurge Field Cipher."""

from splurge_field_cipher.services.rotation.manager import KeyRotationManager, RotationCancelToken
from splurge_field_cipher.services.rotation.operations import (
    as_field_record,
    re_encrypt_with_new_key,
)

__all__ = [
    "KeyRotationManager",
    "RotationCancelToken",
    "as_field_record",
    "re_encrypt_with_new_key",
]
