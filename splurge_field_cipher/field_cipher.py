"""Field Cipher facade wiring codec, key store, gate and rotation together."""

import logging
from typing import Any, Mapping, Optional

from splurge_field_cipher.codec import AeadCodec
from splurge_field_cipher.config import FieldCipherConfig
from splurge_field_cipher.exceptions import ConfigurationError, ValidationError
from splurge_field_cipher.file_manager import FileManager
from splurge_field_cipher.gate import MaintenanceGate
from splurge_field_cipher.key_store import FileKeyStore, KeyStore
from splurge_field_cipher.models import RotationHistory, RotationReport
from splurge_field_cipher.persistence import EntityScanner, FieldStore, RegistryScanner
from splurge_field_cipher.registry import FieldRegistry
from splurge_field_cipher.services import (
    FieldEncryptionService,
    KeyRotationManager,
    RotationCancelToken,
)

logger = logging.getLogger(__name__)

_DEFAULT = object()


class FieldCipher:
    """Field-level encryption with live key rotation for a persistence layer."""

    @classmethod
    def from_data_dir(
        cls,
        data_dir: str,
        *,
        config: FieldCipherConfig | None = None,
        master_password: str | None = None,
        iterations: int | None = None,
        field_store: FieldStore | None = None,
        registry: FieldRegistry | None = None,
        scanner: EntityScanner | None = None
    ) -> "FieldCipher":
        """Create a FieldCipher whose keys and rotation history live in a directory.

        Args:
            data_dir: Directory for the key file and rotation history
            config: Configuration (default: FieldCipherConfig())
            master_password: Password wrapping stored key secrets (optional)
            iterations: PBKDF2 iterations for key wrapping (optional)
            field_store: Persistence boundary used by protected writes and rotation
            registry: Encrypted-field registry
            scanner: Entity enumeration for rotation

        Raises:
            ValidationError: If data_dir is empty
        """
        if data_dir is None or not str(data_dir).strip():
            raise ValidationError("Data directory cannot be empty")

        file_manager = FileManager(data_dir)
        key_store = FileKeyStore(
            file_manager,
            master_password=master_password,
            iterations=iterations
        )
        return cls(
            key_store,
            config=config,
            field_store=field_store,
            registry=registry,
            scanner=scanner,
            file_manager=file_manager,
        )

    def __init__(
        self,
        key_store: KeyStore,
        *,
        config: FieldCipherConfig | None = None,
        gate: MaintenanceGate | None = None,
        codec: AeadCodec | None = None,
        field_store: FieldStore | None = None,
        registry: FieldRegistry | None = None,
        scanner: EntityScanner | None = None,
        file_manager: FileManager | None = None
    ) -> None:
        """Initialize the Field Cipher.

        Args:
            key_store: Key store holding the active and prior keys
            config: Configuration (default: FieldCipherConfig())
            gate: Maintenance gate (default: built from config)
            codec: AEAD codec (default: AeadCodec())
            field_store: Persistence boundary (optional)
            registry: Encrypted-field registry (default: empty)
            scanner: Entity enumeration; defaults to a RegistryScanner over
                field_store when field_store can list its records
            file_manager: File manager for rotation history (optional)
        """
        self._config = config or FieldCipherConfig()
        self._key_store = key_store
        self._gate = gate or MaintenanceGate(
            block_timeout=self._config.maintenance_block_timeout,
            drain_timeout=self._config.drain_timeout,
            conflict_policy=self._config.rotation_conflict_policy,
        )
        codec = codec or AeadCodec()
        self._field_store = field_store
        self._registry = registry if registry is not None else FieldRegistry()

        if scanner is None and field_store is not None and hasattr(field_store, "record_ids"):
            scanner = RegistryScanner(field_store, self._registry)
        self._scanner = scanner

        self._field_service = FieldEncryptionService(key_store, codec)
        self._rotation_manager = KeyRotationManager(
            key_store,
            self._gate,
            codec=codec,
            file_manager=file_manager,
            failure_tolerance=self._config.rotation_failure_tolerance,
        )

        if not self._config.encryption_enabled:
            logger.warning("Field encryption is disabled; text values pass through unchanged", extra={
                "event": "encryption_disabled"
            })

    def _require_enabled(self) -> None:
        if not self._config.encryption_enabled:
            raise ConfigurationError("Field encryption is disabled")

    def _require_field_store(self) -> FieldStore:
        if self._field_store is None:
            raise ConfigurationError("No field store configured")
        return self._field_store

    # Converter surface

    def encrypt_field(self, plaintext: Optional[bytes]) -> Optional[str]:
        """Encrypt a byte value into an envelope string under the active key."""
        self._require_enabled()
        return self._field_service.encrypt_field(plaintext)

    def decrypt_field(self, value: Optional[str]) -> Optional[bytes]:
        """Decrypt an envelope string, resolving the key by its stamped version."""
        self._require_enabled()
        return self._field_service.decrypt_field(value)

    def encrypt_text(self, text: Optional[str]) -> Optional[str]:
        """Encrypt a string value; passes it through when encryption is disabled."""
        if not self._config.encryption_enabled:
            return text
        return self._field_service.encrypt_text(text)

    def decrypt_text(self, value: Optional[str]) -> Optional[str]:
        """Decrypt a string value; passes it through when encryption is disabled."""
        if not self._config.encryption_enabled:
            return value
        return self._field_service.decrypt_text(value)

    def encode_record(self, record_type: str, values: Mapping[str, Any]) -> dict[str, Any]:
        """Encrypt the registered fields of a record, leaving the others as is."""
        encoded = dict(values)
        for field_name in self._registry.fields_for(record_type):
            if field_name in encoded:
                encoded[field_name] = self.encrypt_text(encoded[field_name])
        return encoded

    def decode_record(self, record_type: str, raw: Mapping[str, Any]) -> dict[str, Any]:
        """Decrypt the registered fields of a stored record."""
        decoded = dict(raw)
        for field_name in self._registry.fields_for(record_type):
            if field_name in decoded:
                decoded[field_name] = self.decrypt_text(decoded[field_name])
        return decoded

    # Persistence boundary

    def write_field(
        self,
        record_id: str,
        field_name: str,
        value: Optional[str],
        *,
        blocking: bool = True,
        timeout: Optional[float] = _DEFAULT
    ) -> None:
        """Encrypt and store a field as a protected write.

        Encryption happens inside the protected section so the value is
        always stamped with the key that is active when it commits.

        Raises:
            MaintenanceInProgressError: If a rotation is running and the caller
                does not wait or the wait times out
            ConfigurationError: If no field store is configured
        """
        store = self._require_field_store()

        def _write() -> None:
            store.store_raw_field(record_id, field_name, self.encrypt_text(value))

        if timeout is _DEFAULT:
            self._gate.run_protected(_write, blocking=blocking)
        else:
            self._gate.run_protected(_write, blocking=blocking, timeout=timeout)

    def read_field(self, record_id: str, field_name: str) -> Optional[str]:
        """Load and decrypt a field. Reads are never blocked by maintenance."""
        store = self._require_field_store()
        return self.decrypt_text(store.load_raw_field(record_id, field_name))

    # Rotation

    def trigger_rotation(self, *, cancel_token: RotationCancelToken | None = None) -> RotationReport:
        """Re-encrypt every field in the configured scan scope under a new key.

        Raises:
            ConfigurationError: If encryption is disabled, or the scan scope,
                field store or scanner is missing
            RotationAlreadyInProgressError: If another rotation is running
            RotationError: If enumeration fails
        """
        self._require_enabled()
        scope = self._config.require_scan_scope()
        store = self._require_field_store()
        if self._scanner is None:
            raise ConfigurationError("No entity scanner configured")

        scanner = self._scanner

        def _write_back(record_id: str, field_name: Optional[str], envelope: str) -> None:
            if field_name is None:
                raise ValidationError(f"Record {record_id} was enumerated without a field name")
            store.store_raw_field(record_id, field_name, envelope)

        return self._rotation_manager.re_encrypt_all(
            lambda: scanner.scan(scope),
            _write_back,
            cancel_token=cancel_token,
        )

    def is_maintenance_active(self) -> bool:
        """Whether a rotation currently holds the maintenance gate."""
        return self._gate.is_maintenance_active()

    def purge_retired_keys(self, *, keep_latest: int = 0) -> list[int]:
        """Delete retired keys under exclusive maintenance.

        Any record still stamped with a purged version becomes unreadable.

        Raises:
            RotationAlreadyInProgressError: If a rotation is running
        """
        with self._gate.exclusive():
            return self._key_store.purge_retired(keep_latest=keep_latest)

    def key_status(self) -> list[dict[str, Any]]:
        """Metadata of every key version, secrets excluded."""
        self._key_store.get_active()
        return [key.to_dict() for key in self._key_store.list_keys()]

    def rotation_history(self, *, limit: int | None = None) -> list[RotationHistory]:
        return self._rotation_manager.get_rotation_history(limit=limit)

    @property
    def config(self) -> FieldCipherConfig:
        return self._config

    @property
    def gate(self) -> MaintenanceGate:
        return self._gate

    @property
    def key_store(self) -> KeyStore:
        return self._key_store

    @property
    def registry(self) -> FieldRegistry:
        return self._registry

    @property
    def field_service(self) -> FieldEncryptionService:
        return self._field_service

    @property
    def rotation_manager(self) -> KeyRotationManager:
        return self._rotation_manager
