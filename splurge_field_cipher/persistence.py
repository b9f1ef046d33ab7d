"""Persistence boundary and entity enumeration.

The core only needs two things from a persistence layer: read and write
the serialized envelope of one field of one record, and enumerate the
encrypted fields in a scope. ``InMemoryFieldStore``, ``JsonFileFieldStore``
and ``RegistryScanner`` are small reference implementations of both.
"""

import logging
import threading
from pathlib import Path
from typing import Iterator, Mapping, Optional, Protocol

from splurge_field_cipher.exceptions import FileOperationError, RecordNotFoundError
from splurge_field_cipher.file_manager import FileManager
from splurge_field_cipher.models import FieldRecord
from splurge_field_cipher.registry import ALL_SCOPES, FieldRegistry, validate_name

logger = logging.getLogger(__name__)


class FieldStore(Protocol):
    """Raw field access implemented by the persistence layer."""

    def load_raw_field(self, record_id: str, field_name: str) -> Optional[str]:
        ...

    def store_raw_field(self, record_id: str, field_name: str, value: Optional[str]) -> None:
        ...


class EnumerableFieldStore(FieldStore, Protocol):
    """Field store that can list its records by type."""

    def record_ids(self, record_type: Optional[str] = None) -> list[str]:
        ...


class EntityScanner(Protocol):
    """Produces every encrypted field in a scope."""

    def scan(self, scope: str) -> Iterator[FieldRecord]:
        ...


class InMemoryFieldStore:
    """Thread-safe dictionary-backed field store."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: dict[str, dict[str, Optional[str]]] = {}
        self._types: dict[str, str] = {}

    def add_record(
        self,
        record_id: str,
        record_type: str,
        fields: Optional[Mapping[str, Optional[str]]] = None
    ) -> None:
        """Create or replace a record with raw field values."""
        validate_name(record_id, "Record id")
        validate_name(record_type, "Record type")
        with self._lock:
            self._records[record_id] = dict(fields or {})
            self._types[record_id] = record_type
            self._persist()

    def remove_record(self, record_id: str) -> None:
        with self._lock:
            if self._records.pop(record_id, None) is not None:
                self._types.pop(record_id, None)
                self._persist()

    def load_raw_field(self, record_id: str, field_name: str) -> Optional[str]:
        """Return the raw stored value of a field.

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        with self._lock:
            fields = self._records.get(record_id)
            if fields is None:
                raise RecordNotFoundError(f"Record not found: {record_id}")
            return fields.get(field_name)

    def store_raw_field(self, record_id: str, field_name: str, value: Optional[str]) -> None:
        """Overwrite the raw value of a field.

        Raises:
            RecordNotFoundError: If the record does not exist
        """
        with self._lock:
            fields = self._records.get(record_id)
            if fields is None:
                raise RecordNotFoundError(f"Record not found: {record_id}")
            fields[field_name] = value
            self._persist()

    def record_ids(self, record_type: Optional[str] = None) -> list[str]:
        """List record ids, optionally of one type, sorted."""
        with self._lock:
            if record_type is None:
                return sorted(self._records)
            return sorted(r for r, t in self._types.items() if t == record_type)

    def record_type_of(self, record_id: str) -> str:
        with self._lock:
            try:
                return self._types[record_id]
            except KeyError:
                raise RecordNotFoundError(f"Record not found: {record_id}") from None

    def raw_record(self, record_id: str) -> dict[str, Optional[str]]:
        """Return a copy of a record's raw fields."""
        with self._lock:
            fields = self._records.get(record_id)
            if fields is None:
                raise RecordNotFoundError(f"Record not found: {record_id}")
            return dict(fields)

    def _persist(self) -> None:
        """Hook for durable subclasses; called with ``_lock`` held."""

    def __len__(self) -> int:
        return len(self._records)


class JsonFileFieldStore(InMemoryFieldStore):
    """Field store kept in one JSON file, rewritten atomically on every change.

    Every ``store_raw_field`` rewrites the whole file, so a rotation sweep
    costs one full write per migrated field. Suited to small record sets;
    large data sets belong in a store with per-row updates.

    File layout::

        {
          "entities": {"<record type>": ["<field>", ...]},
          "records": {"<record id>": {"type": "<record type>", "fields": {...}}}
        }
    """

    def __init__(self, path: str) -> None:
        super().__init__()
        self._path = Path(path)
        self._file_manager = FileManager(str(self._path.parent))
        self._registry = FieldRegistry()
        self._load()

    def _load(self) -> None:
        data = self._file_manager.read_json(self._path)
        if data is None:
            return

        try:
            self._registry = FieldRegistry.from_dict(data.get("entities", {}))
            for record_id, record in data.get("records", {}).items():
                self._records[record_id] = dict(record.get("fields", {}))
                self._types[record_id] = record["type"]
        except (AttributeError, KeyError, TypeError) as e:
            raise FileOperationError(f"Malformed records file {self._path}: {e}") from e

        logger.debug("Records file loaded", extra={
            "path": str(self._path),
            "record_count": len(self._records),
            "event": "records_loaded"
        })

    def _persist(self) -> None:
        data = {
            "entities": self._registry.to_dict(),
            "records": {
                record_id: {"type": self._types[record_id], "fields": fields}
                for record_id, fields in sorted(self._records.items())
            },
        }
        self._file_manager.write_json_atomic(self._path, data)

    @property
    def registry(self) -> FieldRegistry:
        """Encrypted-field registry stored alongside the records."""
        return self._registry

    def register_fields(self, record_type: str, *field_names: str) -> None:
        """Register encrypted fields and persist the registry."""
        with self._lock:
            self._registry.register(record_type, *field_names)
            self._persist()

    @property
    def path(self) -> Path:
        return self._path


class RegistryScanner:
    """Enumerates registered encrypted fields of every record in a scope."""

    def __init__(self, store: EnumerableFieldStore, registry: FieldRegistry) -> None:
        self._store = store
        self._registry = registry

    def scan(self, scope: str = ALL_SCOPES) -> Iterator[FieldRecord]:
        """Yield one FieldRecord per registered field of each in-scope record.

        Values are read lazily, one field at a time.
        """
        for record_type in self._registry.record_types(scope):
            fields = sorted(self._registry.fields_for(record_type))
            for record_id in self._store.record_ids(record_type):
                for field_name in fields:
                    yield FieldRecord(
                        record_id=record_id,
                        field_name=field_name,
                        envelope=self._store.load_raw_field(record_id, field_name),
                    )
