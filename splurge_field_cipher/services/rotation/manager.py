"""Key rotation manager that orchestrates the re-encryption sweep."""

import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional, Union

from splurge_field_cipher.codec import AeadCodec
from splurge_field_cipher.config import FailureTolerance
from splurge_field_cipher.constants import Constants
from splurge_field_cipher.exceptions import FileOperationError, RotationError
from splurge_field_cipher.file_manager import FileManager
from splurge_field_cipher.gate import MaintenanceGate
from splurge_field_cipher.key_store import KeyStore
from splurge_field_cipher.models import (
    EncryptedEnvelope,
    FieldRecord,
    KeyMaterial,
    RotationHistory,
    RotationReport,
)
from splurge_field_cipher.services.rotation.operations import (
    as_field_record,
    re_encrypt_with_new_key,
)

logger = logging.getLogger(__name__)

RecordSource = Union[Callable[[], Iterable[Any]], Iterable[Any]]
WriteBack = Callable[[str, Optional[str], str], None]


class RotationCancelToken:
    """Asks a running sweep to stop before its next record."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


class KeyRotationManager:
    """Re-encrypts every enumerated field under a new key and commits it."""

    def __init__(
        self,
        key_store: KeyStore,
        gate: MaintenanceGate,
        *,
        codec: AeadCodec | None = None,
        file_manager: FileManager | None = None,
        failure_tolerance: FailureTolerance = FailureTolerance.STRICT
    ):
        """Initialize the key rotation manager.

        Args:
            key_store: Key store to stage and commit keys in
            gate: Gate held exclusively for the duration of the sweep
            codec: AEAD codec (default: a new AeadCodec)
            file_manager: File manager for rotation history (optional)
            failure_tolerance: Whether per-record failures block the key commit
        """
        self._key_store = key_store
        self._gate = gate
        self._codec = codec or AeadCodec()
        self._file_manager = file_manager
        self._failure_tolerance = FailureTolerance(failure_tolerance)

    def re_encrypt_all(
        self,
        record_source: RecordSource,
        write_back: WriteBack,
        *,
        cancel_token: RotationCancelToken | None = None
    ) -> RotationReport:
        """Re-encrypt every record under a new key.

        The new key is staged (persisted as PENDING) once the gate is held and
        before any record is touched, so records migrated by a sweep that
        later fails or is cancelled stay decryptable, and a retry reuses the
        same key. A rotation queued behind another one stages the version
        after the one that was just committed.

        Args:
            record_source: Zero-argument callable returning a fresh iterable of
                FieldRecord, (record_id, envelope) or (record_id, field_name, envelope)
            write_back: Idempotent ``(record_id, field_name, envelope)`` writer
            cancel_token: Token checked between records (optional)

        Returns:
            RotationReport describing the sweep

        Raises:
            RotationAlreadyInProgressError: If another sweep holds the gate
            RotationError: If the record source fails or the new key cannot be
                committed; the new key is not active
        """
        with self._gate.exclusive():
            old_key = self._key_store.get_active()
            new_key = self._key_store.stage_next_key()

            report = RotationReport(
                rotation_id=str(uuid.uuid4()),
                old_version=old_key.version,
                new_version=new_key.version,
            )

            logger.info("Key rotation started", extra={
                "rotation_id": report.rotation_id,
                "old_version": report.old_version,
                "new_version": report.new_version,
                "event": "rotation_started"
            })

            try:
                self._sweep(record_source, write_back, new_key, report, cancel_token)
            except Exception as e:
                report.finished_at = datetime.now(timezone.utc)
                logger.error("Key rotation aborted", extra={
                    "rotation_id": report.rotation_id,
                    "processed": report.processed,
                    "error": str(e),
                    "event": "rotation_aborted"
                })
                raise RotationError(f"Rotation {report.rotation_id} aborted: {e}") from e

            if self._should_commit(report):
                try:
                    self._key_store.commit_new_key(new_key)
                except Exception as e:
                    report.finished_at = datetime.now(timezone.utc)
                    logger.error("Key rotation commit failed", extra={
                        "rotation_id": report.rotation_id,
                        "new_version": report.new_version,
                        "error": str(e),
                        "event": "rotation_commit_failed"
                    })
                    self._record_rotation_history(report)
                    raise RotationError(
                        f"Rotation {report.rotation_id} could not commit key version {new_key.version}: {e}"
                    ) from e
                report.committed = True

            report.finished_at = datetime.now(timezone.utc)

        self._record_rotation_history(report)

        log = logger.info if report.committed else logger.warning
        log("Key rotation finished", extra={
            "rotation_id": report.rotation_id,
            "migrated": report.migrated,
            "skipped": report.skipped,
            "already_current": report.already_current,
            "failed": report.failed,
            "cancelled": report.cancelled,
            "committed": report.committed,
            "event": "rotation_completed"
        })
        return report

    def _sweep(
        self,
        record_source: RecordSource,
        write_back: WriteBack,
        new_key: KeyMaterial,
        report: RotationReport,
        cancel_token: RotationCancelToken | None
    ) -> None:
        """Migrate every record. Only enumeration errors escape."""
        interval = Constants.ROTATION_PROGRESS_INTERVAL()

        records = record_source() if callable(record_source) else record_source
        for item in records:
            if cancel_token is not None and cancel_token.is_cancelled:
                report.cancelled = True
                logger.warning("Key rotation cancelled", extra={
                    "rotation_id": report.rotation_id,
                    "processed": report.processed,
                    "event": "rotation_cancelled"
                })
                break

            self._migrate_one(item, write_back, new_key, report)

            if report.processed % interval == 0:
                logger.info("Key rotation progress", extra={
                    "rotation_id": report.rotation_id,
                    "processed": report.processed,
                    "event": "rotation_progress"
                })

    def _migrate_one(
        self,
        item: Any,
        write_back: WriteBack,
        new_key: KeyMaterial,
        report: RotationReport
    ) -> None:
        record = None
        try:
            record = as_field_record(item)
            if record.envelope is None or record.envelope == "":
                report.skipped += 1
                return

            envelope = EncryptedEnvelope.parse(record.envelope)
            if envelope.version == new_key.version:
                report.already_current += 1
                return

            migrated = re_encrypt_with_new_key(
                envelope=envelope,
                key_lookup=self._key_store.get_by_version,
                new_key=new_key,
                codec=self._codec,
            )
            write_back(record.record_id, record.field_name, migrated.serialize())
            report.migrated += 1

        except Exception as e:
            if record is None:
                record = FieldRecord(record_id=repr(item), field_name=None, envelope=None)
            failure = report.record_failure(record, e)
            logger.warning("Record could not be re-encrypted", extra={
                "rotation_id": report.rotation_id,
                "record_id": failure.record_id,
                "field_name": failure.field_name,
                "error_type": failure.error_type,
                "event": "rotation_record_failed"
            })

    def _should_commit(self, report: RotationReport) -> bool:
        if report.cancelled:
            return False
        if report.failed and self._failure_tolerance == FailureTolerance.STRICT:
            return False
        return True

    def get_rotation_history(self, *, limit: int | None = None) -> list[RotationHistory]:
        """Get rotation history.

        Args:
            limit: Maximum number of history entries to return (optional)

        Returns:
            List of rotation history entries, oldest first
        """
        if self._file_manager is None:
            return []
        history = self._file_manager.read_rotation_history()
        if limit is not None:
            history = history[-limit:] if limit > 0 else []
        return history

    def _record_rotation_history(self, report: RotationReport) -> None:
        """Append a sweep to the persisted rotation history."""
        if self._file_manager is None:
            return

        try:
            history = self._file_manager.read_rotation_history()
            history.append(RotationHistory.from_report(report))

            # Keep only the most recent entries
            max_history = Constants.MAX_ROTATION_HISTORY()
            if len(history) > max_history:
                history = history[-max_history:]

            self._file_manager.save_rotation_history(history)
        except FileOperationError as e:
            # The sweep outcome stands; only the audit entry is lost
            logger.error("Failed to record rotation history", extra={
                "rotation_id": report.rotation_id,
                "error": str(e),
                "event": "rotation_history_failed"
            })

    @property
    def failure_tolerance(self) -> FailureTolerance:
        return self._failure_tolerance
