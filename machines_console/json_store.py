"""Durable JSON key-value storage for client-side console state."""

from __future__ import annotations

import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Any


class JsonFileStore:
    """Small JSON object on disk, read once and rewritten atomically on every change.

    A missing, unreadable or non-object file is treated as an empty store.
    """

    def __init__(self, path: str):
        self._path = Path(path).expanduser()
        self._lock = threading.Lock()
        self._data: dict[str, Any] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _state(self) -> dict[str, Any]:
        if self._data is None:
            try:
                raw = json.loads(self._path.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                raw = None
            self._data = raw if isinstance(raw, dict) else {}
        return self._data

    def _flush(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, temp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(self._data, fh, ensure_ascii=True, indent=2, sort_keys=True)
            os.replace(temp_name, self._path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._state().get(key, default)

    def set(self, key: str, value: Any) -> None:
        self.update({key: value})

    def update(self, values: dict[str, Any]) -> None:
        with self._lock:
            self._state().update(values)
            self._flush()

    def remove(self, key: str) -> bool:
        with self._lock:
            state = self._state()
            if key not in state:
                return False
            del state[key]
            self._flush()
            return True
