"""
Process-wide key-value configuration store.

Values live in one JSON document on disk. Keys use dot notation
(``groups.grp_123``) to address nested objects. Every ``set`` is written
through immediately under an exclusive ``fcntl`` lock and an atomic rename,
so callers observe synchronous persistence.
"""

from __future__ import annotations

import copy
import fcntl
import json
import os
from pathlib import Path
from typing import Any, Dict, List

from groupguard.util.logger import get_logger

logger = get_logger("config_store")

_MISSING = object()


class JsonConfigStore:
    """Dotted-key ``get``/``set`` store backed by a JSON file."""

    def __init__(self, path: Path, defaults: Dict[str, Any] | None = None) -> None:
        self.path = path
        self._defaults = copy.deepcopy(defaults or {})
        self._data: Dict[str, Any] = {}
        self.reload()

    # --------------------------
    # Private helpers
    # --------------------------
    @staticmethod
    def _split(key: str) -> List[str]:
        parts = [part for part in key.split(".") if part]
        if not parts:
            raise KeyError("Empty configuration key")
        return parts

    def _read_disk(self) -> Dict[str, Any]:
        try:
            with self.path.open("r", encoding="utf-8") as f:
                fcntl.flock(f.fileno(), fcntl.LOCK_SH)
                try:
                    data = json.load(f)
                finally:
                    fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("[CONFIG STORE] Failed to read %s, starting empty: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _write_disk(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                json.dump(self._data, f, indent=2, sort_keys=True)
                f.flush()
                os.fsync(f.fileno())
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)
        os.replace(tmp_path, self.path)

    # --------------------------
    # Public API
    # --------------------------
    def reload(self) -> None:
        """Discard in-memory state and re-read the file, applying defaults for missing keys."""
        data = copy.deepcopy(self._defaults)
        data.update(self._read_disk())
        self._data = data

    def get(self, key: str, default: Any = None) -> Any:
        """Return a deep copy of the value at ``key`` or ``default`` when absent."""
        node: Any = self._data
        for part in self._split(key):
            if not isinstance(node, dict):
                return default
            node = node.get(part, _MISSING)
            if node is _MISSING:
                return default
        return copy.deepcopy(node)

    def set(self, key: str, value: Any) -> None:
        """Store ``value`` at ``key`` and persist the whole document."""
        parts = self._split(key)
        node = self._data
        for part in parts[:-1]:
            child = node.get(part)
            if not isinstance(child, dict):
                child = {}
                node[part] = child
            node = child
        node[parts[-1]] = copy.deepcopy(value)
        self._write_disk()

    def delete(self, key: str) -> bool:
        """Remove ``key``. Returns False when it did not exist."""
        parts = self._split(key)
        node: Any = self._data
        for part in parts[:-1]:
            node = node.get(part) if isinstance(node, dict) else None
            if node is None:
                return False
        if not isinstance(node, dict) or parts[-1] not in node:
            return False
        del node[parts[-1]]
        self._write_disk()
        return True

    def has(self, key: str) -> bool:
        return self.get(key, _MISSING) is not _MISSING
