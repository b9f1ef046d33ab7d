"""File management utilities with atomic JSON writes."""

import json
import os
import tempfile
from pathlib import Path
from typing import Any, Optional

from splurge_field_cipher.exceptions import FileOperationError
from splurge_field_cipher.models import RotationHistory

KEYS_FILE_NAME = "field-cipher-keys.json"
ROTATION_HISTORY_FILE_NAME = "field-cipher-rotation-history.json"
FILE_FORMAT_VERSION = "1.0"
TEMP_SUFFIX = ".temp"


class FileManager:
    """Owns the key and rotation history files of one data directory.

    Every write goes to a uniquely named temporary file in the target
    directory and is renamed over the target, so readers never observe a
    partially written file.
    """

    def __init__(self, data_dir: str):
        self._data_dir = Path(data_dir)
        self._keys_file = self._data_dir / KEYS_FILE_NAME
        self._rotation_history_file = self._data_dir / ROTATION_HISTORY_FILE_NAME
        self._data_dir.mkdir(parents=True, exist_ok=True)

    def write_json_atomic(self, file_path: Path, data: dict[str, Any]) -> None:
        """Write JSON data atomically.

        Args:
            file_path: Target file; its directory is created if missing
            data: JSON-serializable data

        Raises:
            FileOperationError: If the data cannot be serialized or written
        """
        file_path = Path(file_path)
        temp_name = None

        try:
            file_path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(
                dir=file_path.parent,
                prefix=f".{file_path.name}.",
                suffix=TEMP_SUFFIX,
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2, ensure_ascii=False)
                f.flush()
                os.fsync(f.fileno())

            self._set_secure_permissions(Path(temp_name))
            os.replace(temp_name, file_path)
            temp_name = None

        except (OSError, TypeError, ValueError) as e:
            raise FileOperationError(f"Failed to write file {file_path}: {e}") from e
        finally:
            if temp_name is not None and os.path.exists(temp_name):
                os.unlink(temp_name)

    def read_json(self, file_path: Path) -> Optional[dict[str, Any]]:
        """Read a JSON file, returning None if it does not exist.

        Raises:
            FileOperationError: If the file cannot be read or parsed
        """
        file_path = Path(file_path)
        if not file_path.exists():
            return None

        try:
            with file_path.open(encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise FileOperationError(f"Failed to read file {file_path}: {e}") from e

    def save_keys(self, keys: list[dict[str, Any]]) -> None:
        """Replace the key file with serialized key entries."""
        self.write_json_atomic(self._keys_file, {
            "keys": keys,
            "version": FILE_FORMAT_VERSION,
        })

    def read_keys(self) -> list[dict[str, Any]]:
        """Read serialized key entries, empty if the key file does not exist.

        Raises:
            FileOperationError: If the file is unreadable or malformed
        """
        data = self.read_json(self._keys_file)
        if data is None:
            return []
        keys = data.get("keys") if isinstance(data, dict) else None
        if not isinstance(keys, list):
            raise FileOperationError(f"Malformed key file {self._keys_file}")
        return keys

    def save_rotation_history(self, history: list[RotationHistory]) -> None:
        """Replace the rotation history file."""
        self.write_json_atomic(self._rotation_history_file, {
            "rotation_history": [entry.to_dict() for entry in history],
            "version": FILE_FORMAT_VERSION,
        })

    def read_rotation_history(self) -> list[RotationHistory]:
        """Read rotation history, oldest first.

        Raises:
            FileOperationError: If the file is unreadable or malformed
        """
        data = self.read_json(self._rotation_history_file)
        if data is None:
            return []

        try:
            return [RotationHistory.from_dict(entry) for entry in data.get("rotation_history", [])]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise FileOperationError(f"Malformed rotation history {self._rotation_history_file}: {e}") from e

    @staticmethod
    def _set_secure_permissions(file_path: Path) -> None:
        try:
            os.chmod(file_path, 0o600)
        except OSError:
            # Not supported on every platform/filesystem
            pass

    @property
    def data_directory(self) -> Path:
        return self._data_dir

    @property
    def keys_file_path(self) -> Path:
        return self._keys_file

    @property
    def rotation_history_file_path(self) -> Path:
        return self._rotation_history_file
