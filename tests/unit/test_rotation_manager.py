"""Tests for the key rotation manager."""

import shutil
import tempfile
import threading

import pytest

from splurge_field_cipher.config import FailureTolerance
from splurge_field_cipher.constants import Constants
from splurge_field_cipher.exceptions import (
    FileOperationError,
    RotationAlreadyInProgressError,
    RotationError,
    ValidationError,
)
from splurge_field_cipher.file_manager import FileManager
from splurge_field_cipher.gate import ConflictPolicy, GateState, MaintenanceGate
from splurge_field_cipher.key_store import FileKeyStore, KeyStore
from splurge_field_cipher.models import FieldRecord, KeyStatus
from splurge_field_cipher.services.field_service import FieldEncryptionService
from splurge_field_cipher.services.rotation import (
    KeyRotationManager,
    RotationCancelToken,
    as_field_record,
)
from tests.test_utility import TestDataHelper, TestUtilities


class _FailingSaveFileManager(FileManager):
    """File manager whose key-file writes fail once switched on."""

    fail_key_saves = False

    def save_keys(self, keys):
        if self.fail_key_saves:
            raise FileOperationError("disk full")
        super().save_keys(keys)


class TestKeyRotationManager:
    """Test cases for KeyRotationManager."""

    def setup_method(self):
        self.key_store = KeyStore()
        self.gate = MaintenanceGate()
        self.service = FieldEncryptionService(self.key_store)
        self.plaintexts = TestDataHelper.create_customer_values(5)
        self.records = {
            record_id: self.service.encrypt_text(value)
            for record_id, value in self.plaintexts.items()
        }
        self.writes = []

    def _manager(self, **kwargs) -> KeyRotationManager:
        return KeyRotationManager(self.key_store, self.gate, **kwargs)

    def _source(self):
        return list(self.records.items())

    def _write_back(self, record_id, field_name, envelope):
        self.writes.append(record_id)
        self.records[record_id] = envelope

    def test_successful_rotation(self):
        self.records["empty"] = ""
        self.records["null"] = None

        report = self._manager().re_encrypt_all(self._source, self._write_back)

        assert report.committed
        assert report.old_version == 1
        assert report.new_version == 2
        assert report.migrated == 5
        assert report.skipped == 2
        assert report.failed == 0
        assert report.finished_at is not None
        assert self.key_store.get_active().version == 2
        assert self.key_store.get_by_version(1).status == KeyStatus.RETIRED
        for record_id, value in self.plaintexts.items():
            assert self.service.key_version_of(self.records[record_id]) == 2
            assert self.service.decrypt_text(self.records[record_id]) == value
        assert self.records["empty"] == ""
        assert self.records["null"] is None
        assert self.gate.state == GateState.OPEN

    def test_accepts_an_iterable_source(self):
        report = self._manager().re_encrypt_all(
            [FieldRecord(rid, "card", env) for rid, env in self.records.items()],
            self._write_back,
        )

        assert report.migrated == 5
        assert report.committed

    def test_strict_failure_does_not_commit(self):
        self.records["cust-002"] = "corrupted!"

        report = self._manager().re_encrypt_all(self._source, self._write_back)

        assert not report.committed
        assert report.migrated == 4
        assert report.failed == 1
        assert report.failures[0].record_id == "cust-002"
        assert report.failures[0].error_type == "CryptoError"
        assert self.key_store.get_active().version == 1
        # Migrated records stay readable through the staged key
        assert self.key_store.get_pending().version == 2
        assert self.service.decrypt_text(self.records["cust-000"]) == self.plaintexts["cust-000"]
        assert self.gate.state == GateState.OPEN

    def test_best_effort_commits_despite_failures(self):
        self.records["cust-002"] = "corrupted!"

        report = self._manager(failure_tolerance=FailureTolerance.BEST_EFFORT).re_encrypt_all(
            self._source,
            self._write_back,
        )

        assert report.committed
        assert report.failed == 1
        assert self.key_store.get_active().version == 2

    def test_retry_reuses_staged_key(self):
        good = self.records["cust-002"]
        self.records["cust-002"] = "corrupted!"
        manager = self._manager()
        first = manager.re_encrypt_all(self._source, self._write_back)
        assert not first.committed

        self.records["cust-002"] = good
        self.writes.clear()
        second = manager.re_encrypt_all(self._source, self._write_back)

        assert second.committed
        assert second.new_version == first.new_version == 2
        assert second.already_current == 4
        assert second.migrated == 1
        assert self.writes == ["cust-002"]
        assert self.key_store.get_active().version == 2

    def test_write_back_failure_is_reported(self):
        def _failing_write_back(record_id, field_name, envelope):
            if record_id == "cust-004":
                raise IOError("disk full")
            self._write_back(record_id, field_name, envelope)

        report = self._manager().re_encrypt_all(self._source, _failing_write_back)

        assert report.failed == 1
        assert report.failures[0].error_type == "OSError"
        assert not report.committed

    def test_unsupported_item_is_reported(self):
        report = self._manager().re_encrypt_all(
            lambda: ["not a record"] + self._source(),
            self._write_back,
        )

        assert report.failed == 1
        assert report.failures[0].error_type == "ValidationError"
        assert report.migrated == 5

    def test_enumeration_failure_aborts(self):
        def _source():
            yield from self._source()[:2]
            raise IOError("connection lost")

        with pytest.raises(RotationError) as exc_info:
            self._manager().re_encrypt_all(_source, self._write_back)

        assert isinstance(exc_info.value.__cause__, OSError)
        assert self.gate.state == GateState.OPEN
        assert self.key_store.get_active().version == 1
        for record_id, value in self.plaintexts.items():
            assert self.service.decrypt_text(self.records[record_id]) == value

    def test_cancelled_before_start(self):
        token = RotationCancelToken()
        token.cancel()

        report = self._manager().re_encrypt_all(self._source, self._write_back, cancel_token=token)

        assert token.is_cancelled
        assert report.cancelled
        assert not report.committed
        assert report.processed == 0
        assert self.key_store.get_active().version == 1

    def test_cancelled_mid_sweep(self):
        token = RotationCancelToken()

        def _write_back(record_id, field_name, envelope):
            self._write_back(record_id, field_name, envelope)
            if len(self.writes) == 2:
                token.cancel()

        report = self._manager().re_encrypt_all(self._source, _write_back, cancel_token=token)

        assert report.cancelled
        assert report.migrated == 2
        assert not report.committed
        for record_id, value in self.plaintexts.items():
            assert self.service.decrypt_text(self.records[record_id]) == value

    def test_concurrent_rotation_rejected(self):
        entered = threading.Event()
        release = threading.Event()

        holder = TestUtilities.run_in_thread(
            lambda: self.gate.with_exclusive_maintenance(lambda: (entered.set(), release.wait(5)))
        )
        assert entered.wait(5)
        try:
            with pytest.raises(RotationAlreadyInProgressError):
                self._manager().re_encrypt_all(self._source, self._write_back)
        finally:
            release.set()
            holder["thread"].join(5)

        assert self.key_store.get_active().version == 1

    def test_queued_rotation_under_block_policy_commits_next_version(self):
        gate = MaintenanceGate(conflict_policy=ConflictPolicy.BLOCK)
        manager = KeyRotationManager(self.key_store, gate)
        entered = threading.Event()
        release = threading.Event()
        calls = []

        def _source():
            calls.append(len(calls))
            if len(calls) == 1:
                entered.set()
                release.wait(5)
            return self._source()

        first = TestUtilities.run_in_thread(lambda: manager.re_encrypt_all(_source, self._write_back))
        assert entered.wait(5)
        second = TestUtilities.run_in_thread(lambda: manager.re_encrypt_all(_source, self._write_back))
        # Give the second rotation time to queue on the gate
        second["thread"].join(0.2)
        assert second["thread"].is_alive()
        assert self.key_store.get_pending().version == 2

        release.set()
        first["thread"].join(5)
        second["thread"].join(5)

        assert first.get("error") is None
        assert second.get("error") is None
        assert first["result"].new_version == 2
        assert second["result"].old_version == 2
        assert second["result"].new_version == 3
        assert first["result"].committed
        assert second["result"].committed
        assert second["result"].migrated == 5
        assert self.key_store.get_active().version == 3
        for record_id, value in self.plaintexts.items():
            assert self.service.key_version_of(self.records[record_id]) == 3
            assert self.service.decrypt_text(self.records[record_id]) == value

    def test_commit_failure_raises_rotation_error_and_records_history(self):
        temp_dir = tempfile.mkdtemp()
        try:
            file_manager = _FailingSaveFileManager(temp_dir)
            key_store = FileKeyStore(file_manager)
            service = FieldEncryptionService(key_store)
            records = {rid: service.encrypt_text(v) for rid, v in self.plaintexts.items()}

            def _write_back(record_id, field_name, envelope):
                records[record_id] = envelope
                file_manager.fail_key_saves = True

            manager = KeyRotationManager(key_store, self.gate, file_manager=file_manager)
            with pytest.raises(RotationError) as exc_info:
                manager.re_encrypt_all(lambda: list(records.items()), _write_back)

            assert isinstance(exc_info.value.__cause__, FileOperationError)
            assert self.gate.state == GateState.OPEN
            assert key_store.get_active().version == 1
            assert key_store.get_pending().version == 2

            history = manager.get_rotation_history()
            assert len(history) == 1
            assert not history[0].committed
            assert history[0].migrated == 5

            file_manager.fail_key_saves = False
            for record_id, value in self.plaintexts.items():
                assert service.decrypt_text(records[record_id]) == value
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def test_rotation_history(self):
        temp_dir = tempfile.mkdtemp()
        try:
            manager = self._manager(file_manager=FileManager(temp_dir))
            assert manager.get_rotation_history() == []

            manager.re_encrypt_all(self._source, self._write_back)
            manager.re_encrypt_all(self._source, self._write_back)

            history = manager.get_rotation_history()
            assert [h.new_version for h in history] == [2, 3]
            assert history[0].migrated == 5
            assert all(h.committed for h in history)
            assert [h.new_version for h in manager.get_rotation_history(limit=1)] == [3]
            assert manager.get_rotation_history(limit=0) == []
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def test_rotation_history_is_capped(self):
        temp_dir = tempfile.mkdtemp()
        try:
            manager = self._manager(file_manager=FileManager(temp_dir))
            for _ in range(Constants.MAX_ROTATION_HISTORY() + 2):
                manager.re_encrypt_all([], self._write_back)

            history = manager.get_rotation_history()
            assert len(history) == Constants.MAX_ROTATION_HISTORY()
            assert history[-1].new_version == Constants.MAX_ROTATION_HISTORY() + 3
        finally:
            shutil.rmtree(temp_dir, ignore_errors=True)

    def test_failure_tolerance_property(self):
        assert self._manager().failure_tolerance == FailureTolerance.STRICT
        assert self._manager(failure_tolerance="best_effort").failure_tolerance == FailureTolerance.BEST_EFFORT


class TestRotationOperations:
    """Test cases for per-record rotation helpers."""

    def test_as_field_record(self):
        record = FieldRecord("r", "f", "e")

        assert as_field_record(record) is record
        assert as_field_record(("r", "e")) == FieldRecord("r", None, "e")
        assert as_field_record(("r", "f", "e")) == FieldRecord("r", "f", "e")

    def test_as_field_record_rejects_other_shapes(self):
        for item in ("r", ("r",), ["r", "e"], ("a", "b", "c", "d")):
            with pytest.raises(ValidationError):
                as_field_record(item)
