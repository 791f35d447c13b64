"""Storage engine interface and the embedded-database engine."""

from __future__ import annotations

import os
import sqlite3
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from .errors import KeyNotFoundError, KvsError


class KvsEngine(ABC):
    """A key/value storage engine, safe to share between threads."""

    @abstractmethod
    def set(self, key: str, value: str) -> None:
        """Set ``key`` to ``value``, overwriting any previous value."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        """Return the value of ``key``, or ``None`` if it does not exist."""

    @abstractmethod
    def remove(self, key: str) -> None:
        """Remove ``key``; raise KeyNotFoundError if it does not exist."""

    def close(self) -> None:
        """Release the engine's resources."""

    def __enter__(self) -> "KvsEngine":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


_DB_NAME = "sled.sqlite3"


@contextmanager
def _sqlite_errors() -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        raise KvsError(f"sled error: {exc}") from exc


class SledKvsEngine(KvsEngine):
    """Engine backed by an embedded SQLite database in a directory."""

    def __init__(self, path: Union[str, os.PathLike]) -> None:
        directory = Path(path)
        self._lock = threading.Lock()
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise KvsError(f"IO error: {exc}") from exc
        with _sqlite_errors():
            self._conn = sqlite3.connect(
                directory / _DB_NAME, check_same_thread=False, isolation_level=None
            )
        self._execute(
            "CREATE TABLE IF NOT EXISTS kv (key TEXT PRIMARY KEY, value BLOB NOT NULL)"
        )

    def _execute(self, sql: str, params: tuple = ()) -> tuple[list[Any], int]:
        """Run one statement under the lock; return its rows and row count."""
        with self._lock, _sqlite_errors():
            cursor = self._conn.execute(sql, params)
            return cursor.fetchall(), cursor.rowcount

    def set(self, key: str, value: str) -> None:
        self._execute(
            "INSERT OR REPLACE INTO kv (key, value) VALUES (?, ?)",
            (key, value.encode("utf-8")),
        )

    def get(self, key: str) -> Optional[str]:
        rows, _ = self._execute("SELECT value FROM kv WHERE key = ?", (key,))
        if not rows:
            return None
        try:
            return bytes(rows[0][0]).decode("utf-8")
        except UnicodeDecodeError as exc:
            raise KvsError(f"UTF-8 error: {exc}") from exc

    def remove(self, key: str) -> None:
        _, count = self._execute("DELETE FROM kv WHERE key = ?", (key,))
        if count == 0:
            raise KeyNotFoundError()

    def close(self) -> None:
        """Close the database; later operations raise KvsError."""
        with self._lock, _sqlite_errors():
            self._conn.close()