"""Tests for the key store."""

import base64
import json
import shutil
import tempfile
import threading

import pytest

from splurge_field_cipher.exceptions import (
    CryptoError,
    FileOperationError,
    KeyStoreError,
    UnknownKeyVersionError,
    ValidationError,
)
from splurge_field_cipher.file_manager import FileManager
from splurge_field_cipher.key_store import FileKeyStore, KeyStore
from splurge_field_cipher.models import KeyMaterial, KeyStatus
from tests.test_utility import TestDataHelper


def _rotate(store: KeyStore) -> KeyMaterial:
    staged = store.stage_next_key()
    store.commit_new_key(staged)
    return staged


class TestKeyStore:
    """Test cases for the in-memory KeyStore."""

    def setup_method(self):
        self.store = KeyStore()

    def test_first_access_creates_version_one(self):
        key = self.store.get_active()

        assert key.version == 1
        assert key.status == KeyStatus.ACTIVE
        assert self.store.get_active() is key
        assert [k.version for k in self.store.list_keys()] == [1]

    def test_concurrent_first_access_creates_one_key(self):
        barrier = threading.Barrier(16)
        results = []

        def _worker():
            barrier.wait()
            results.append(self.store.get_active())

        threads = [threading.Thread(target=_worker) for _ in range(16)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(results) == 16
        assert {k.version for k in results} == {1}
        assert len({k.secret for k in results}) == 1
        assert len(self.store.list_keys()) == 1

    def test_stage_next_key(self):
        self.store.get_active()
        staged = self.store.stage_next_key()

        assert staged.version == 2
        assert staged.status == KeyStatus.PENDING
        assert self.store.get_active().version == 1
        assert self.store.get_pending() == staged
        assert self.store.has_version(2)

    def test_stage_next_key_is_idempotent(self):
        first = self.store.stage_next_key()
        second = self.store.stage_next_key()

        assert first.version == second.version == 2
        assert first.secret == second.secret

    def test_commit_new_key(self):
        old = self.store.get_active()
        staged = self.store.stage_next_key()

        self.store.commit_new_key(staged)

        active = self.store.get_active()
        assert active.version == 2
        assert active.status == KeyStatus.ACTIVE
        assert active.secret == staged.secret
        assert self.store.get_pending() is None
        retired = self.store.get_by_version(1)
        assert retired.status == KeyStatus.RETIRED
        assert retired.secret == old.secret

    def test_stale_commit_rejected(self):
        staged = _rotate(self.store)

        with pytest.raises(KeyStoreError):
            self.store.commit_new_key(staged)
        assert self.store.get_active().version == 2

    def test_commit_skipping_a_version_rejected(self):
        self.store.get_active()

        with pytest.raises(KeyStoreError):
            self.store.commit_new_key(TestDataHelper.create_key(version=3))

    def test_commit_must_match_staged_secret(self):
        self.store.stage_next_key()

        with pytest.raises(KeyStoreError):
            self.store.commit_new_key(TestDataHelper.create_key(version=2))
        assert self.store.get_active().version == 1

    def test_commit_without_staging(self):
        self.store.get_active()
        new_key = TestDataHelper.create_key(version=2)

        self.store.commit_new_key(new_key)

        assert self.store.get_active().secret == new_key.secret

    def test_commit_malformed_secret(self):
        self.store.get_active()

        with pytest.raises(CryptoError):
            self.store.commit_new_key(KeyMaterial(version=2, secret=b"short"))

    def test_unknown_version(self):
        self.store.get_active()

        with pytest.raises(UnknownKeyVersionError) as exc_info:
            self.store.get_by_version(9)
        assert exc_info.value.version == 9
        assert not self.store.has_version(9)

    def test_discard_pending_key(self):
        self.store.stage_next_key()

        assert self.store.discard_pending_key() == 2
        assert self.store.discard_pending_key() is None
        assert not self.store.has_version(2)

    def test_purge_retired(self):
        _rotate(self.store)
        _rotate(self.store)

        assert self.store.purge_retired(keep_latest=1) == [1]
        assert self.store.has_version(2)
        assert self.store.purge_retired() == [2]
        assert [k.version for k in self.store.list_keys()] == [3]
        with pytest.raises(UnknownKeyVersionError):
            self.store.get_by_version(1)

    def test_purge_never_touches_active_or_pending(self):
        _rotate(self.store)
        self.store.stage_next_key()

        assert self.store.purge_retired() == [1]
        assert {k.version for k in self.store.list_keys()} == {2, 3}

    def test_purge_negative_keep(self):
        with pytest.raises(ValidationError):
            self.store.purge_retired(keep_latest=-1)

    def test_readers_see_a_consistent_active_key_during_commits(self):
        self.store.get_active()
        stop = threading.Event()
        errors = []

        def _reader():
            while not stop.is_set():
                active = self.store.get_active()
                if active.status != KeyStatus.ACTIVE:
                    errors.append(f"active key has status {active.status}")
                if self.store.get_by_version(active.version).secret is None:
                    errors.append("missing secret")

        readers = [threading.Thread(target=_reader) for _ in range(4)]
        for reader in readers:
            reader.start()
        for _ in range(25):
            _rotate(self.store)
        stop.set()
        for reader in readers:
            reader.join()

        assert errors == []
        assert self.store.get_active().version == 26

    def test_inconsistent_key_set_rejected(self):
        class _TwoActive(KeyStore):
            def _load(self):
                return [TestDataHelper.create_key(version=1), TestDataHelper.create_key(version=2)]

        with pytest.raises(KeyStoreError):
            _TwoActive().get_active()


class TestFileKeyStore:
    """Test cases for the file-backed key store."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.file_manager = FileManager(self.temp_dir)
        self.password = TestDataHelper.create_test_master_password()
        self.iterations = TestDataHelper.fast_iterations()

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _protected_store(self, password=None):
        return FileKeyStore(
            FileManager(self.temp_dir),
            master_password=password or self.password,
            iterations=self.iterations
        )

    def test_keys_survive_reload(self):
        first = FileKeyStore(self.file_manager)
        key = first.get_active()

        second = FileKeyStore(FileManager(self.temp_dir))
        assert second.get_active().secret == key.secret
        assert not second.is_password_protected

    def test_staged_key_is_persisted(self):
        first = FileKeyStore(self.file_manager)
        staged = first.stage_next_key()

        second = FileKeyStore(FileManager(self.temp_dir))
        assert second.get_pending().secret == staged.secret
        assert second.stage_next_key().secret == staged.secret

    def test_commit_is_persisted(self):
        first = FileKeyStore(self.file_manager)
        _rotate(first)

        second = FileKeyStore(FileManager(self.temp_dir))
        assert second.get_active().version == 2
        assert second.get_by_version(1).status == KeyStatus.RETIRED

    def test_password_wraps_secrets(self):
        store = self._protected_store()
        key = store.get_active()

        with open(self.file_manager.keys_file_path, encoding="utf-8") as f:
            data = json.load(f)
        entry = data["keys"][0]
        assert entry["secret"]["encoding"] == "fernet-pbkdf2"
        assert entry["secret"]["iterations"] == self.iterations
        assert base64.b64encode(key.secret).decode("ascii") not in json.dumps(data)

        reopened = self._protected_store()
        assert reopened.is_password_protected
        assert reopened.get_active().secret == key.secret

    def test_wrong_password(self):
        self._protected_store().get_active()

        with pytest.raises(CryptoError):
            self._protected_store("AnotherPassword456!").get_active()

    def test_missing_password_for_wrapped_store(self):
        self._protected_store().get_active()

        with pytest.raises(KeyStoreError):
            FileKeyStore(FileManager(self.temp_dir)).get_active()

    def test_password_and_iterations_validation(self):
        with pytest.raises(ValidationError):
            FileKeyStore(self.file_manager, master_password="short")
        with pytest.raises(ValidationError):
            FileKeyStore(self.file_manager, master_password=self.password, iterations=10)

    def test_malformed_key_file(self):
        self.file_manager.keys_file_path.write_text(json.dumps({"keys": "broken"}), encoding="utf-8")

        with pytest.raises(FileOperationError):
            FileKeyStore(self.file_manager).get_active()

    def test_malformed_key_entry(self):
        self.file_manager.save_keys([{"version": 1, "status": "active"}])

        with pytest.raises(KeyStoreError):
            FileKeyStore(self.file_manager).get_active()

    def test_reload_picks_up_external_changes(self):
        first = FileKeyStore(self.file_manager)
        first.get_active()
        other = FileKeyStore(FileManager(self.temp_dir))
        _rotate(other)

        assert first.get_active().version == 1
        first.reload()
        assert first.get_active().version == 2
