"""Custom exceptions for the Splurge Field Cipher system."""


class FieldCipherError(Exception):
    """Base exception for all Field Cipher errors."""


class CryptoError(FieldCipherError):
    """Raised when key material, input or an envelope is malformed."""


class AuthenticationError(CryptoError):
    """Raised when an envelope's authentication tag does not verify."""


class KeyStoreError(FieldCipherError):
    """Raised when the key store is inconsistent or a commit is stale."""


class UnknownKeyVersionError(KeyStoreError):
    """Raised when no key material exists for a requested version."""

    def __init__(self, version: int):
        super().__init__(f"No key material for version {version}")
        self.version = version


class FileOperationError(FieldCipherError):
    """Raised when file operations fail."""


class MaintenanceGateError(FieldCipherError):
    """Raised when the maintenance gate is misused."""


class MaintenanceInProgressError(MaintenanceGateError):
    """Raised when a protected operation cannot run because maintenance is active."""


class RotationAlreadyInProgressError(MaintenanceGateError):
    """Raised when exclusive maintenance is requested while another one runs."""


class DrainTimeoutError(MaintenanceGateError):
    """Raised when in-flight protected operations do not drain in time."""


class RotationError(FieldCipherError):
    """Raised when a rotation sweep aborts."""


class ValidationError(FieldCipherError):
    """Raised when data validation fails."""


class ConfigurationError(FieldCipherError):
    """Raised when configuration is missing or invalid."""


class RecordNotFoundError(FieldCipherError):
    """Raised when a field store has no record with the requested id."""
