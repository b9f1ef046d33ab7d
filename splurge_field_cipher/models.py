"""Data models for the Splurge Field Cipher system."""

import base64
import binascii
import struct
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, NamedTuple, Optional

from splurge_field_cipher.constants import Constants
from splurge_field_cipher.exceptions import CryptoError, ValidationError

_HEADER = struct.Struct(">BI")


def _parse_datetime(value: str) -> datetime:
    """Parse datetime string to datetime object."""
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


class KeyStatus(str, Enum):
    """Lifecycle status of a key version."""

    PENDING = "pending"
    ACTIVE = "active"
    RETIRED = "retired"


@dataclass(frozen=True)
class KeyMaterial:
    """One version of the data encryption key."""

    version: int
    secret: bytes = field(repr=False)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    status: KeyStatus = KeyStatus.ACTIVE

    def __post_init__(self) -> None:
        """Validate and process fields after initialization."""
        if not isinstance(self.version, int) or isinstance(self.version, bool):
            raise ValidationError("version must be an integer")
        if self.version < 1 or self.version > Constants.MAX_KEY_VERSION():
            raise ValidationError(f"version must be between 1 and {Constants.MAX_KEY_VERSION()}")

        # Frozen dataclass, so coerce through object.__setattr__
        if isinstance(self.created_at, str):
            object.__setattr__(self, "created_at", _parse_datetime(self.created_at))
        if isinstance(self.status, str) and not isinstance(self.status, KeyStatus):
            object.__setattr__(self, "status", KeyStatus(self.status))

    def with_status(self, status: KeyStatus) -> "KeyMaterial":
        """Return a copy of this key with a different status."""
        return replace(self, status=status)

    def to_dict(self) -> dict[str, Any]:
        """Convert key metadata to a dictionary. The secret is never included."""
        return {
            "version": self.version,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class EncryptedEnvelope:
    """Self-describing AEAD ciphertext bundle.

    The serialized form is URL-safe base64 of::

        format (1 byte) || version (4 bytes, big endian) || nonce || ciphertext || tag
    """

    version: int
    nonce: bytes
    ciphertext: bytes
    tag: bytes

    def __post_init__(self) -> None:
        """Validate fixed-length fields."""
        if not 1 <= self.version <= Constants.MAX_KEY_VERSION():
            raise CryptoError(f"Envelope version out of range: {self.version}")
        if len(self.nonce) != Constants.NONCE_SIZE_BYTES():
            raise CryptoError(f"Nonce must be exactly {Constants.NONCE_SIZE_BYTES()} bytes")
        if len(self.tag) != Constants.TAG_SIZE_BYTES():
            raise CryptoError(f"Tag must be exactly {Constants.TAG_SIZE_BYTES()} bytes")

    @property
    def header(self) -> bytes:
        """Header bytes, also used as associated data."""
        return self.header_for(self.version)

    @staticmethod
    def header_for(version: int) -> bytes:
        """Build the header for a key version."""
        return _HEADER.pack(Constants.ENVELOPE_FORMAT(), version)

    def to_bytes(self) -> bytes:
        """Concatenate header, nonce, ciphertext and tag."""
        return self.header + self.nonce + self.ciphertext + self.tag

    @classmethod
    def from_bytes(cls, raw: bytes) -> "EncryptedEnvelope":
        """Split raw envelope bytes.

        Raises:
            CryptoError: If the bytes are not a well-formed envelope
        """
        if len(raw) < Constants.MIN_ENVELOPE_SIZE():
            raise CryptoError("Envelope is too short")

        header_size = Constants.ENVELOPE_HEADER_SIZE()
        nonce_end = header_size + Constants.NONCE_SIZE_BYTES()
        tag_start = len(raw) - Constants.TAG_SIZE_BYTES()

        envelope_format, version = _HEADER.unpack(raw[:header_size])
        if envelope_format != Constants.ENVELOPE_FORMAT():
            raise CryptoError(f"Unsupported envelope format: {envelope_format}")

        return cls(
            version=version,
            nonce=raw[header_size:nonce_end],
            ciphertext=raw[nonce_end:tag_start],
            tag=raw[tag_start:],
        )

    def serialize(self) -> str:
        """Encode the envelope as a URL-safe base64 string."""
        return base64.urlsafe_b64encode(self.to_bytes()).decode("ascii")

    @classmethod
    def parse(cls, value: str) -> "EncryptedEnvelope":
        """Decode an envelope string.

        Raises:
            CryptoError: If the string is not a well-formed envelope
        """
        if not isinstance(value, str) or not value:
            raise CryptoError("Envelope must be a non-empty string")
        try:
            raw = base64.b64decode(value.encode("ascii"), altchars=b"-_", validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise CryptoError(f"Envelope is not valid base64: {e}") from e
        return cls.from_bytes(raw)

    @staticmethod
    def peek_version(value: str) -> int:
        """Read the key version stamped on an envelope string without decrypting."""
        return EncryptedEnvelope.parse(value).version


class FieldRecord(NamedTuple):
    """One encrypted field of one record, as produced by entity enumeration."""

    record_id: str
    field_name: Optional[str]
    envelope: Optional[str]


@dataclass
class RotationFailure:
    """A record the sweep could not migrate."""

    record_id: str
    field_name: Optional[str]
    error_type: str
    message: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "record_id": self.record_id,
            "field_name": self.field_name,
            "error_type": self.error_type,
            "message": self.message,
        }


@dataclass
class RotationReport:
    """Outcome of one re-encryption sweep."""

    rotation_id: str
    old_version: int
    new_version: int
    migrated: int = 0
    skipped: int = 0
    already_current: int = 0
    failures: list[RotationFailure] = field(default_factory=list)
    cancelled: bool = False
    committed: bool = False
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: datetime | None = None

    @property
    def failed(self) -> int:
        """Number of records that failed to migrate."""
        return len(self.failures)

    @property
    def processed(self) -> int:
        """Number of records seen by the sweep."""
        return self.migrated + self.skipped + self.already_current + self.failed

    def record_failure(self, record: FieldRecord, error: Exception) -> RotationFailure:
        """Append a failure for a record."""
        failure = RotationFailure(
            record_id=record.record_id,
            field_name=record.field_name,
            error_type=type(error).__name__,
            message=str(error),
        )
        self.failures.append(failure)
        return failure

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary with proper datetime serialization."""
        return {
            "rotation_id": self.rotation_id,
            "old_version": self.old_version,
            "new_version": self.new_version,
            "migrated": self.migrated,
            "skipped": self.skipped,
            "already_current": self.already_current,
            "failed": self.failed,
            "failures": [f.to_dict() for f in self.failures],
            "cancelled": self.cancelled,
            "committed": self.committed,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class RotationHistory:
    """Track key rotation sweeps for audit purposes."""

    rotation_id: str
    old_version: int
    new_version: int
    committed: bool
    migrated: int = 0
    skipped: int = 0
    failed: int = 0
    cancelled: bool = False
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        """Validate and process fields after initialization."""
        if not self.rotation_id:
            raise ValueError("rotation_id cannot be empty")

        # Parse datetime string if provided
        if isinstance(self.created_at, str):
            self.created_at = _parse_datetime(self.created_at)

    @classmethod
    def from_report(cls, report: RotationReport) -> "RotationHistory":
        """Summarize a rotation report."""
        return cls(
            rotation_id=report.rotation_id,
            old_version=report.old_version,
            new_version=report.new_version,
            committed=report.committed,
            migrated=report.migrated,
            skipped=report.skipped + report.already_current,
            failed=report.failed,
            cancelled=report.cancelled,
            created_at=report.finished_at or datetime.now(timezone.utc),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary with proper serialization."""
        return {
            "rotation_id": self.rotation_id,
            "old_version": self.old_version,
            "new_version": self.new_version,
            "committed": self.committed,
            "migrated": self.migrated,
            "skipped": self.skipped,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RotationHistory":
        """Create RotationHistory from dictionary."""
        return cls(
            rotation_id=data["rotation_id"],
            old_version=data["old_version"],
            new_version=data["new_version"],
            committed=data["committed"],
            migrated=data.get("migrated", 0),
            skipped=data.get("skipped", 0),
            failed=data.get("failed", 0),
            cancelled=data.get("cancelled", False),
            created_at=data.get("created_at") or datetime.now(timezone.utc),
        )
