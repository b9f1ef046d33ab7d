"""Declarative registry of encrypted record fields."""

import threading
from typing import Any, Iterable

from splurge_field_cipher.exceptions import ValidationError

ALL_SCOPES = "*"


def validate_name(value: str, what: str) -> None:
    """Validate a record type or field name.

    Raises:
        ValidationError: If the name is empty, blank or contains null bytes
    """
    if value is None:
        raise ValidationError(f"{what} cannot be None")
    if not isinstance(value, str) or value.strip() == "":
        raise ValidationError(f"{what} must be a non-empty string")
    if "\x00" in value:
        raise ValidationError(f"{what} cannot contain null bytes")


class FieldRegistry:
    """Maps record types to the names of their encrypted fields.

    Record types are dotted names (``"billing.Customer"``); a scan scope
    selects every type equal to it or nested under it.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._fields: dict[str, frozenset[str]] = {}

    def register(self, record_type: str, *field_names: str) -> None:
        """Mark fields of a record type as encrypted."""
        validate_name(record_type, "Record type")
        if not field_names:
            raise ValidationError("At least one field name is required")
        for name in field_names:
            validate_name(name, "Field name")

        with self._lock:
            existing = self._fields.get(record_type, frozenset())
            self._fields[record_type] = existing | frozenset(field_names)

    def unregister(self, record_type: str) -> None:
        with self._lock:
            self._fields.pop(record_type, None)

    def is_encrypted(self, record_type: str, field_name: str) -> bool:
        return field_name in self._fields.get(record_type, frozenset())

    def fields_for(self, record_type: str) -> frozenset[str]:
        return self._fields.get(record_type, frozenset())

    def record_types(self, scope: str = ALL_SCOPES) -> list[str]:
        """Record types inside a scan scope, sorted."""
        if scope == ALL_SCOPES:
            return sorted(self._fields)
        base = scope.rstrip(".")
        return sorted(
            t for t in self._fields
            if t == base or t.startswith(base + ".")
        )

    def to_dict(self) -> dict[str, list[str]]:
        """Convert to dictionary."""
        return {t: sorted(names) for t, names in sorted(self._fields.items())}

    @classmethod
    def from_dict(cls, data: dict[str, Iterable[Any]]) -> "FieldRegistry":
        """Create FieldRegistry from dictionary."""
        registry = cls()
        for record_type, names in (data or {}).items():
            registry.register(record_type, *names)
        return registry

    def __len__(self) -> int:
        return len(self._fields)
