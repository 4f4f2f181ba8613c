"""
Local durable key-value store.

A small string-keyed store that survives process restarts. It backs
the fallback write queue and the user's local lists. Calls are
synchronous and never fail observably: I/O errors are logged and the
in-memory view keeps serving.
"""

from __future__ import annotations

import json
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path

from ..exceptions import StorageIOError

logger = logging.getLogger(__name__)


class DurableStore(ABC):
    """String-keyed persistent store."""

    @abstractmethod
    def get_string(self, key: str) -> str | None:
        """Value stored under ``key``, or None."""

    @abstractmethod
    def set_string(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``."""

    def remove(self, key: str) -> None:
        """Forget ``key``. Default: overwrite is the only primitive, so no-op."""
        return None


class MemoryDurableStore(DurableStore):
    """Process-local store for tests and ephemeral clients."""

    def __init__(self, initial: dict[str, str] | None = None) -> None:
        self._data: dict[str, str] = dict(initial or {})

    def get_string(self, key: str) -> str | None:
        return self._data.get(key)

    def set_string(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._data)


def _write_with_backup(path: Path, content: str) -> None:
    """Write content to file with atomic write and backup.

    Args:
        path: Path to write to
        content: Content to write
    """
    # Keep the last good version next to the file
    if path.exists():
        backup_path = path.with_suffix(path.suffix + ".backup")
        shutil.copy2(path, backup_path)

    # Write to temp file then rename (atomic on POSIX)
    temp_path = path.with_suffix(path.suffix + ".tmp")
    try:
        temp_path.write_text(content, encoding="utf-8")
        temp_path.replace(path)
    except Exception:
        if temp_path.exists():
            temp_path.unlink()
        raise


class FileDurableStore(DurableStore):
    """JSON-file backed store.

    The whole key space is one JSON object, rewritten atomically on
    every ``set_string``. A corrupted file is recovered from its backup,
    and failing that the store starts empty.

    Contract:
    - Inputs: string keys and values
    - Side Effects: writes ``path`` (plus ``.backup`` and transient ``.tmp``)
    - Errors: logged, never raised
    """

    def __init__(self, path: Path | str) -> None:
        """Initialize the store, loading any existing file.

        Args:
            path: Location of the JSON file; parent directories are created
        """
        self.path = Path(path).expanduser()
        self._data: dict[str, str] = self._load()

    def _load(self) -> dict[str, str]:
        backup_path = self.path.with_suffix(self.path.suffix + ".backup")

        for candidate in (self.path, backup_path):
            if not candidate.exists():
                continue
            try:
                with open(candidate, encoding="utf-8") as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError("store root is not an object")
                if candidate is backup_path:
                    logger.info(f"Loaded durable store from backup: {backup_path}")
                return {str(k): str(v) for k, v in data.items()}
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load durable store {candidate}: {e}")

        return {}

    def _persist(self) -> None:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            _write_with_backup(self.path, json.dumps(self._data, indent=2, sort_keys=True))
        except OSError as e:
            error = StorageIOError("write_store", str(self.path), e)
            logger.error(f"{error.message}; keeping in-memory value ({e})")

    def get_string(self, key: str) -> str | None:
        return self._data.get(key)

    def set_string(self, key: str, value: str) -> None:
        self._data[key] = value
        self._persist()

    def remove(self, key: str) -> None:
        if self._data.pop(key, None) is not None:
            self._persist()


def read_json_list(store: DurableStore, key: str) -> list:
    """Decode a JSON list stored under ``key``; anything else reads as empty."""
    raw = store.get_string(key)
    if not raw:
        return []
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning(f"Discarding undecodable value under {key}")
        return []
    return value if isinstance(value, list) else []


def write_json_list(store: DurableStore, key: str, items: list) -> None:
    store.set_string(key, json.dumps(items, default=str))
