"""
Key-value storage backends for the outbox.

The outbox only needs get/set/remove of strings under a key, so storage is
injected: MemoryStorage for tests and short-lived processes, JsonFileStorage
for a durable client-local queue.
"""

import json
import logging
import os
import threading
from pathlib import Path
from typing import Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@runtime_checkable
class KeyValueStorage(Protocol):
    """String storage keyed by name."""

    def get(self, key: str) -> str | None: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


class MemoryStorage:
    """In-process dict storage."""

    def __init__(self):
        self._data: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


class JsonFileStorage:
    """
    Simple JSON file persistence with atomic writes.

    All keys live in one JSON object on disk. Writes go to a temp file that
    is then renamed over the original. A corrupt file is moved aside to
    ``<name>.bak`` and reads as empty.
    """

    def __init__(self, path: str = "~/.discovery/outbox.json"):
        self.path = Path(os.path.expanduser(path))
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def _load(self) -> dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with open(self.path) as f:
                data = json.load(f)
        except json.JSONDecodeError:
            backup = self.path.with_suffix(".json.bak")
            logger.warning("Corrupt storage file %s, moved to %s", self.path, backup)
            self.path.rename(backup)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: dict[str, str]):
        # Write to temp file then rename (atomic on POSIX)
        temp_file = self.path.with_suffix(".json.tmp")
        with open(temp_file, "w") as f:
            json.dump(data, f, indent=2)
        temp_file.replace(self.path)

    def get(self, key: str) -> str | None:
        with self._lock:
            value = self._load().get(key)
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def remove(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if data.pop(key, None) is not None:
                self._save(data)
