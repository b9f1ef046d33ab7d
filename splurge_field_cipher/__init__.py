"""Splurge Field Cipher - field-level authenticated encryption with live key rotation.

This package encrypts individual record attributes with AES-256-GCM before
persistence and re-encrypts stored data under a new key while a maintenance
gate holds protected writes back.
"""

from splurge_field_cipher.codec import AeadCodec
from splurge_field_cipher.config import FailureTolerance, FieldCipherConfig
from splurge_field_cipher.exceptions import (
    AuthenticationError,
    ConfigurationError,
    CryptoError,
    DrainTimeoutError,
    FieldCipherError,
    FileOperationError,
    KeyStoreError,
    MaintenanceGateError,
    MaintenanceInProgressError,
    RecordNotFoundError,
    RotationAlreadyInProgressError,
    RotationError,
    UnknownKeyVersionError,
    ValidationError,
)
from splurge_field_cipher.field_cipher import FieldCipher
from splurge_field_cipher.gate import ConflictPolicy, GateState, MaintenanceGate
from splurge_field_cipher.key_store import FileKeyStore, KeyStore
from splurge_field_cipher.models import (
    EncryptedEnvelope,
    FieldRecord,
    KeyMaterial,
    KeyStatus,
    RotationFailure,
    RotationReport,
)
from splurge_field_cipher.persistence import (
    InMemoryFieldStore,
    JsonFileFieldStore,
    RegistryScanner,
)
from splurge_field_cipher.registry import FieldRegistry
from splurge_field_cipher.services import KeyRotationManager, RotationCancelToken

try:
    from importlib.metadata import version
    __version__ = version("splurge-field-cipher")
except Exception:
    # Not installed as a distribution (e.g. running from a source checkout)
    __version__ = "unknown"

__all__ = [
    "AeadCodec",
    "AuthenticationError",
    "ConfigurationError",
    "ConflictPolicy",
    "CryptoError",
    "DrainTimeoutError",
    "EncryptedEnvelope",
    "FailureTolerance",
    "FieldCipher",
    "FieldCipherConfig",
    "FieldCipherError",
    "FieldRecord",
    "FieldRegistry",
    "FileKeyStore",
    "FileOperationError",
    "GateState",
    "InMemoryFieldStore",
    "JsonFileFieldStore",
    "KeyMaterial",
    "KeyRotationManager",
    "KeyStatus",
    "KeyStore",
    "KeyStoreError",
    "MaintenanceGate",
    "MaintenanceGateError",
    "MaintenanceInProgressError",
    "RecordNotFoundError",
    "RegistryScanner",
    "RotationAlreadyInProgressError",
    "RotationCancelToken",
    "RotationError",
    "RotationFailure",
    "RotationReport",
    "UnknownKeyVersionError",
    "ValidationError",
]
