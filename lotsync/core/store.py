"""Key-value persistence for LotSync.

The sync queue, upload backups and sync metadata are stored through a small
key-value port organised in named collections ("sync_queue",
"pending_uploads", ...). Values are JSON-compatible dicts.

Backends:
- MemoryStore: process-local, for tests and ephemeral sessions
- JsonFileStore: one JSON document per collection in a directory
- SqliteStore: a single SQLite table keyed by (collection, key)

CRITICAL: This module must have NO Textual/Flask dependencies.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import sqlite3
import tempfile
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Protocol, Union

if TYPE_CHECKING:
    from .config import Config

logger = logging.getLogger(__name__)

__all__ = ["KeyValueStore", "MemoryStore", "JsonFileStore", "SqliteStore", "open_store"]

SYNC_QUEUE = "sync_queue"
PENDING_UPLOADS = "pending_uploads"
SYNC_METADATA = "sync_metadata"


class KeyValueStore(Protocol):
    """Persistence port used by the queue and upload retry."""

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        ...

    def put(self, collection: str, key: str, value: Dict[str, Any]) -> None:
        ...

    def delete(self, collection: str, key: str) -> bool:
        ...

    def all(self, collection: str) -> List[Dict[str, Any]]:
        ...

    def clear(self, collection: str) -> None:
        ...

    def close(self) -> None:
        ...


class MemoryStore:
    """In-memory store. Values are deep-copied in and out."""

    def __init__(self) -> None:
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            value = self._data.get(collection, {}).get(key)
            return copy.deepcopy(value) if value is not None else None

    def put(self, collection: str, key: str, value: Dict[str, Any]) -> None:
        with self._lock:
            self._data.setdefault(collection, {})[key] = copy.deepcopy(value)

    def delete(self, collection: str, key: str) -> bool:
        with self._lock:
            return self._data.get(collection, {}).pop(key, None) is not None

    def all(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [copy.deepcopy(v) for v in self._data.get(collection, {}).values()]

    def clear(self, collection: str) -> None:
        with self._lock:
            self._data.pop(collection, None)

    def close(self) -> None:
        pass


class JsonFileStore:
    """Stores each collection as `<directory>/<collection>.json`.

    Writes go to a temporary file that replaces the original, so a crash
    never leaves a half-written collection behind.
    """

    def __init__(self, directory: Union[Path, str]) -> None:
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        logger.info(f"Opened JSON store at {self.directory}")

    def _path(self, collection: str) -> Path:
        return self.directory / f"{collection}.json"

    def _load(self, collection: str) -> Dict[str, Dict[str, Any]]:
        path = self._path(collection)
        if not path.exists():
            return {}
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            logger.error(f"Corrupt store file {path}: {e}")
            raise
        if not isinstance(data, dict):
            raise ValueError(f"Store file {path} does not contain an object")
        return data

    def _save(self, collection: str, data: Dict[str, Dict[str, Any]]) -> None:
        path = self._path(collection)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, ensure_ascii=False, indent=2)
            os.replace(tmp_name, path)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._load(collection).get(key)

    def put(self, collection: str, key: str, value: Dict[str, Any]) -> None:
        with self._lock:
            data = self._load(collection)
            data[key] = value
            self._save(collection, data)

    def delete(self, collection: str, key: str) -> bool:
        with self._lock:
            data = self._load(collection)
            if key not in data:
                return False
            del data[key]
            self._save(collection, data)
            return True

    def all(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._load(collection).values())

    def clear(self, collection: str) -> None:
        with self._lock:
            path = self._path(collection)
            if path.exists():
                path.unlink()

    def close(self) -> None:
        pass


class SqliteStore:
    """SQLite-backed store, one row per (collection, key)."""

    def __init__(self, db_path: Union[Path, str]) -> None:
        path_str = str(db_path) if isinstance(db_path, Path) else db_path
        if path_str != ":memory:":
            Path(path_str).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(path_str, check_same_thread=False)
        self._lock = threading.Lock()
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv_store (
                collection TEXT NOT NULL,
                key TEXT NOT NULL,
                value TEXT NOT NULL,
                seq INTEGER NOT NULL,
                PRIMARY KEY (collection, key)
            )
            """
        )
        self._conn.commit()
        logger.info(f"Opened SQLite store at {path_str}")

    def get(self, collection: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT value FROM kv_store WHERE collection = ? AND key = ?",
                (collection, key),
            ).fetchone()
        return json.loads(row[0]) if row else None

    def put(self, collection: str, key: str, value: Dict[str, Any]) -> None:
        payload = json.dumps(value, ensure_ascii=False)
        with self._lock:
            # Keep the original insertion sequence on update
            self._conn.execute(
                """
                INSERT INTO kv_store (collection, key, value, seq)
                VALUES (?, ?, ?, (SELECT COALESCE(MAX(seq), 0) + 1 FROM kv_store))
                ON CONFLICT (collection, key) DO UPDATE SET value = excluded.value
                """,
                (collection, key, payload),
            )
            self._conn.commit()

    def delete(self, collection: str, key: str) -> bool:
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM kv_store WHERE collection = ? AND key = ?",
                (collection, key),
            )
            self._conn.commit()
            return cursor.rowcount > 0

    def all(self, collection: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT value FROM kv_store WHERE collection = ? ORDER BY seq",
                (collection,),
            ).fetchall()
        return [json.loads(row[0]) for row in rows]

    def clear(self, collection: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM kv_store WHERE collection = ?", (collection,))
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def open_store(config: "Config") -> KeyValueStore:
    """Open the store backend selected in config ("sqlite", "json" or "memory")."""
    backend = config.get("store_backend", "sqlite")
    if backend == "memory":
        return MemoryStore()
    if backend == "json":
        return JsonFileStore(config.get_config_dir() / "store")
    if backend == "sqlite":
        return SqliteStore(Path(config.get("database_file")))
    raise ValueError(f"Unknown store backend: {backend}")
