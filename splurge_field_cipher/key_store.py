"""Versioned key store with atomic active-key replacement."""

import base64
import binascii
import logging
import threading
from types import MappingProxyType
from typing import Any, Mapping, NamedTuple, Optional

from splurge_field_cipher.constants import Constants
from splurge_field_cipher.crypto_utils import CryptoUtils
from splurge_field_cipher.exceptions import (
    CryptoError,
    KeyStoreError,
    UnknownKeyVersionError,
    ValidationError,
)
from splurge_field_cipher.file_manager import FileManager
from splurge_field_cipher.models import KeyMaterial, KeyStatus

logger = logging.getLogger(__name__)


class _KeyRing(NamedTuple):
    """Immutable snapshot of every known key version."""

    active: Optional[KeyMaterial]
    pending: Optional[KeyMaterial]
    keys: Mapping[int, KeyMaterial]


_EMPTY_RING = _KeyRing(active=None, pending=None, keys=MappingProxyType({}))


class KeyStore:
    """In-memory key store.

    All state lives in a single immutable ``_KeyRing`` that writers replace
    under ``_lock`` with one reference assignment. Readers never take the
    lock once the ring is loaded, and always see either the previous or the
    next ring in full.

    Subclasses persist keys by overriding ``_load`` and ``_save``.
    """

    def __init__(self) -> None:
        """Initialize an empty key store."""
        self._lock = threading.RLock()
        self._ring: Optional[_KeyRing] = None

    def _load(self) -> list[KeyMaterial]:
        """Load persisted keys. The in-memory store starts empty."""
        return []

    def _save(self, keys: list[KeyMaterial]) -> None:
        """Persist keys. The in-memory store keeps nothing beyond the ring."""

    @staticmethod
    def _build_ring(keys: list[KeyMaterial]) -> _KeyRing:
        """Validate a key set and build its snapshot.

        Raises:
            KeyStoreError: If the key set violates the lifecycle invariants
        """
        by_version: dict[int, KeyMaterial] = {}
        active = None
        pending = None

        for key in keys:
            if key.version in by_version:
                raise KeyStoreError(f"Duplicate key version {key.version}")
            by_version[key.version] = key

            if key.status == KeyStatus.ACTIVE:
                if active is not None:
                    raise KeyStoreError("More than one active key")
                active = key
            elif key.status == KeyStatus.PENDING:
                if pending is not None:
                    raise KeyStoreError("More than one pending key")
                pending = key

        if by_version and active is None:
            raise KeyStoreError("Key store has keys but no active key")
        if pending is not None and pending.version != active.version + 1:
            raise KeyStoreError(
                f"Pending key version {pending.version} does not follow active version {active.version}"
            )

        return _KeyRing(active=active, pending=pending, keys=MappingProxyType(by_version))

    def _snapshot(self) -> _KeyRing:
        ring = self._ring
        if ring is None:
            with self._lock:
                if self._ring is None:
                    self._ring = self._build_ring(self._load())
                ring = self._ring
        return ring

    def _install(self, keys: list[KeyMaterial]) -> _KeyRing:
        """Persist a new key set and swap it in. Caller holds ``_lock``."""
        ring = self._build_ring(keys)
        self._save(sorted(keys, key=lambda k: k.version))
        self._ring = ring
        return ring

    @staticmethod
    def _check_secret(key: KeyMaterial) -> None:
        if not isinstance(key.secret, (bytes, bytearray)) or len(key.secret) != Constants.KEY_SIZE_BYTES():
            raise CryptoError(f"Key secret must be exactly {Constants.KEY_SIZE_BYTES()} bytes")

    def get_active(self) -> KeyMaterial:
        """Return the active key, creating version 1 on first use.

        Returns:
            The ACTIVE KeyMaterial

        Raises:
            KeyStoreError: If the store cannot be loaded or persisted
        """
        ring = self._snapshot()
        if ring.active is not None:
            return ring.active

        with self._lock:
            # Another thread may have created it while we waited
            ring = self._snapshot()
            if ring.active is not None:
                return ring.active

            key = KeyMaterial(
                version=1,
                secret=CryptoUtils.generate_random_key(),
                status=KeyStatus.ACTIVE,
            )
            self._install([key])

            logger.info("Initial encryption key created", extra={
                "key_version": key.version,
                "event": "key_initialized"
            })
            return key

    def get_by_version(self, version: int) -> KeyMaterial:
        """Return the key for a version regardless of its status.

        Raises:
            UnknownKeyVersionError: If no key exists for the version
        """
        key = self._snapshot().keys.get(version)
        if key is None:
            raise UnknownKeyVersionError(version)
        return key

    def has_version(self, version: int) -> bool:
        """Check whether a key version is known."""
        return version in self._snapshot().keys

    def get_pending(self) -> Optional[KeyMaterial]:
        """Return the staged key, if any."""
        return self._snapshot().pending

    def list_keys(self) -> list[KeyMaterial]:
        """Return every known key ordered by version."""
        keys = self._snapshot().keys
        return [keys[v] for v in sorted(keys)]

    def stage_next_key(self) -> KeyMaterial:
        """Generate and persist the next key as PENDING without activating it.

        Idempotent: an already staged key is returned as is, so an interrupted
        sweep can be retried with the same key material.

        Returns:
            The PENDING KeyMaterial with version active + 1
        """
        with self._lock:
            active = self.get_active()
            ring = self._snapshot()
            if ring.pending is not None:
                return ring.pending

            key = KeyMaterial(
                version=active.version + 1,
                secret=CryptoUtils.generate_random_key(),
                status=KeyStatus.PENDING,
            )
            self._install(list(ring.keys.values()) + [key])

            logger.info("Encryption key staged", extra={
                "key_version": key.version,
                "event": "key_staged"
            })
            return key

    def commit_new_key(self, new_key: KeyMaterial) -> None:
        """Install a key as ACTIVE and retire the previous active key.

        Compare-and-set: the new key's version must directly follow the
        current active version.

        Args:
            new_key: Key material to activate

        Raises:
            KeyStoreError: If the commit is stale or conflicts with a staged key
            CryptoError: If the key secret is malformed
        """
        self._check_secret(new_key)

        with self._lock:
            ring = self._snapshot()
            active = ring.active
            if active is None:
                raise KeyStoreError("No active key to replace")

            if new_key.version != active.version + 1:
                raise KeyStoreError(
                    f"Stale commit: expected version {active.version + 1}, got {new_key.version}"
                )

            pending = ring.pending
            if pending is not None and not CryptoUtils.constant_time_compare(
                bytes(pending.secret), bytes(new_key.secret)
            ):
                raise KeyStoreError(f"Key version {new_key.version} does not match the staged key")

            keys = dict(ring.keys)
            keys[active.version] = active.with_status(KeyStatus.RETIRED)
            keys[new_key.version] = new_key.with_status(KeyStatus.ACTIVE)
            self._install(list(keys.values()))

            logger.info("Encryption key committed", extra={
                "key_version": new_key.version,
                "retired_version": active.version,
                "event": "key_committed"
            })

    def discard_pending_key(self) -> Optional[int]:
        """Drop the staged key.

        Only safe when no stored envelope carries the staged version.

        Returns:
            The discarded version, or None if nothing was staged
        """
        with self._lock:
            ring = self._snapshot()
            if ring.pending is None:
                return None

            keys = {v: k for v, k in ring.keys.items() if v != ring.pending.version}
            self._install(list(keys.values()))

            logger.warning("Staged encryption key discarded", extra={
                "key_version": ring.pending.version,
                "event": "key_discarded"
            })
            return ring.pending.version

    def purge_retired(self, *, keep_latest: int = 0) -> list[int]:
        """Delete retired keys.

        Envelopes stamped with a purged version can no longer be decrypted.

        Args:
            keep_latest: Number of most recent retired keys to keep

        Returns:
            Purged versions in ascending order
        """
        if keep_latest < 0:
            raise ValidationError("keep_latest must be non-negative")

        with self._lock:
            ring = self._snapshot()
            retired = sorted(
                (v for v, k in ring.keys.items() if k.status == KeyStatus.RETIRED),
                reverse=True,
            )
            purged = sorted(retired[keep_latest:])
            if not purged:
                return []

            keys = {v: k for v, k in ring.keys.items() if v not in purged}
            self._install(list(keys.values()))

            logger.info("Retired encryption keys purged", extra={
                "purged_versions": purged,
                "event": "keys_purged"
            })
            return purged

    def reload(self) -> None:
        """Drop the cached ring so the next access reloads persisted keys."""
        with self._lock:
            self._ring = None


class FileKeyStore(KeyStore):
    """Key store persisted as one JSON file through the FileManager.

    With a master password, each secret is wrapped with Fernet under a
    PBKDF2-derived key. Without one, secrets are stored base64 encoded and
    protection relies on file permissions alone.
    """

    _ENCODING_PLAIN = "base64"
    _ENCODING_WRAPPED = "fernet-pbkdf2"

    def __init__(
        self,
        file_manager: FileManager,
        *,
        master_password: str | None = None,
        iterations: int | None = None
    ) -> None:
        """Initialize the file-backed key store.

        Args:
            file_manager: File manager owning the key file
            master_password: Password used to wrap stored secrets (optional)
            iterations: PBKDF2 iterations for wrapping (default: Constants.DEFAULT_ITERATIONS())

        Raises:
            ValidationError: If the password or iterations are invalid
        """
        super().__init__()

        if master_password is not None and len(master_password) < Constants.MIN_PASSWORD_LENGTH():
            raise ValidationError(
                f"Master password must be at least {Constants.MIN_PASSWORD_LENGTH()} characters long"
            )
        if iterations is not None and iterations < Constants.MIN_ITERATIONS():
            raise ValidationError(f"Iterations must be at least {Constants.MIN_ITERATIONS():,}")

        self._file_manager = file_manager
        self._master_password = master_password
        self._iterations = iterations or Constants.DEFAULT_ITERATIONS()
        self._salt: bytes | None = None
        self._derived_keys: dict[tuple[bytes, int], bytes] = {}

        if master_password is None:
            logger.warning("Key store secrets are not password protected", extra={
                "path": str(file_manager.keys_file_path),
                "event": "key_store_unprotected"
            })

    def _wrapping_key(self, salt: bytes, iterations: int) -> bytes:
        cache_key = (salt, iterations)
        derived = self._derived_keys.get(cache_key)
        if derived is None:
            derived = CryptoUtils.derive_key_from_password(
                self._master_password,
                salt,
                iterations=iterations
            )
            self._derived_keys[cache_key] = derived
        return derived

    def _encode_secret(self, secret: bytes) -> dict[str, Any]:
        if self._master_password is None:
            return {
                "encoding": self._ENCODING_PLAIN,
                "value": base64.b64encode(secret).decode("ascii"),
            }

        if self._salt is None:
            self._salt = CryptoUtils.generate_salt()
        token = CryptoUtils.wrap_secret(self._wrapping_key(self._salt, self._iterations), secret)
        return {
            "encoding": self._ENCODING_WRAPPED,
            "value": token.decode("ascii"),
            "salt": base64.b64encode(self._salt).decode("ascii"),
            "iterations": self._iterations,
        }

    def _decode_secret(self, version: int, data: dict[str, Any]) -> bytes:
        encoding = data.get("encoding")
        try:
            if encoding == self._ENCODING_PLAIN:
                return base64.b64decode(data["value"], validate=True)

            if encoding == self._ENCODING_WRAPPED:
                if self._master_password is None:
                    raise KeyStoreError("Key store is password protected; a master password is required")
                salt = base64.b64decode(data["salt"], validate=True)
                iterations = int(data["iterations"])
                # Reuse the stored salt so later saves don't re-derive
                if self._salt is None:
                    self._salt = salt
                    self._iterations = iterations
                return CryptoUtils.unwrap_secret(
                    self._wrapping_key(salt, iterations),
                    data["value"].encode("ascii"),
                )
        except (KeyError, TypeError, ValueError, binascii.Error) as e:
            raise KeyStoreError(f"Malformed secret for key version {version}: {e}") from e

        raise KeyStoreError(f"Unsupported secret encoding for key version {version}: {encoding}")

    def _load(self) -> list[KeyMaterial]:
        keys = []
        for entry in self._file_manager.read_keys():
            try:
                version = int(entry["version"])
                secret_data = entry["secret"]
                status = KeyStatus(entry["status"])
                created_at = entry["created_at"]
            except (KeyError, TypeError, ValueError) as e:
                raise KeyStoreError(f"Malformed key entry: {e}") from e

            keys.append(KeyMaterial(
                version=version,
                secret=self._decode_secret(version, secret_data),
                created_at=created_at,
                status=status,
            ))

        logger.debug("Key store loaded", extra={
            "key_count": len(keys),
            "event": "key_store_loaded"
        })
        return keys

    def _save(self, keys: list[KeyMaterial]) -> None:
        entries = []
        for key in keys:
            entry = key.to_dict()
            entry["secret"] = self._encode_secret(bytes(key.secret))
            entries.append(entry)
        self._file_manager.save_keys(entries)

    @property
    def is_password_protected(self) -> bool:
        """Whether stored secrets are wrapped with a master password."""
        return self._master_password is not None
