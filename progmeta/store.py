"""
ProgramStore - Persist program metadata under content hashes.

The ProgramStore is a plain key-value mapping:
- key: 32-byte content hash of a built program
- value: manifest JSON for that program

The build pipeline's commit stage is the only writer. The HTTP surface reads
concurrently (list/get) and must tolerate the store changing between a list
and a subsequent get.

Storage backends:
- In-memory (for testing)
- SQLite (for the service)
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from progmeta.errors import StorageFailure

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"


class ProgramStore(ABC):
    """
    Abstract base class for program metadata storage.

    Implementations must provide:
    - put: idempotent overwrite by key
    - get: value for a key, or None if absent
    - list: all keys, in no particular order
    """

    @abstractmethod
    def put(self, program_hash: bytes, value: bytes) -> None:
        """
        Store a value under a hash, replacing any existing value.

        Args:
            program_hash: Content hash of the program
            value: Serialized manifest

        Raises:
            StorageFailure: If the backend cannot be written
        """
        pass

    @abstractmethod
    def get(self, program_hash: bytes) -> Optional[bytes]:
        """
        Retrieve the value stored under a hash.

        Args:
            program_hash: Content hash of the program

        Returns:
            The stored value if found, None otherwise

        Raises:
            StorageFailure: If the backend cannot be read
        """
        pass

    @abstractmethod
    def list(self) -> list[bytes]:
        """
        Return every stored hash. Order is unspecified.

        Raises:
            StorageFailure: If the backend cannot be read
        """
        pass

    def close(self) -> None:
        """Release backend resources."""
        pass


class InMemoryProgramStore(ProgramStore):
    """
    In-memory implementation of ProgramStore for testing.

    All data is lost when the instance is garbage collected.
    """

    def __init__(self):
        self._programs: dict[bytes, bytes] = {}
        self._lock = threading.Lock()

    def put(self, program_hash: bytes, value: bytes) -> None:
        with self._lock:
            self._programs[bytes(program_hash)] = bytes(value)

    def get(self, program_hash: bytes) -> Optional[bytes]:
        with self._lock:
            return self._programs.get(bytes(program_hash))

    def list(self) -> list[bytes]:
        with self._lock:
            return list(self._programs)

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        with self._lock:
            self._programs.clear()


class SqliteProgramStore(ProgramStore):
    """
    SQLite implementation of ProgramStore.

    Stores one row per program:
        programs(hash BLOB PRIMARY KEY, manifest BLOB NOT NULL)

    A connection is opened per operation so the store can be shared between
    the build worker thread and the HTTP request threads.
    """

    def __init__(self, db_path: Path | str, timeout: float = 5.0):
        self._db_path = Path(db_path)
        self._timeout = timeout
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._ensure_schema()

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self._db_path, timeout=self._timeout)

    def _ensure_schema(self) -> None:
        """Create the programs table if needed."""
        try:
            conn = self._connect()
            try:
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute(
                    "CREATE TABLE IF NOT EXISTS programs ("
                    "hash BLOB PRIMARY KEY, "
                    "manifest BLOB NOT NULL)"
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageFailure(f"Cannot initialize database {self._db_path}: {e}")

    def put(self, program_hash: bytes, value: bytes) -> None:
        try:
            conn = self._connect()
            try:
                conn.execute(
                    "INSERT OR REPLACE INTO programs (hash, manifest) VALUES (?, ?)",
                    (bytes(program_hash), bytes(value)),
                )
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageFailure(f"Database error: {e}")
        logger.debug("Stored program %s", program_hash.hex())

    def get(self, program_hash: bytes) -> Optional[bytes]:
        try:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT manifest FROM programs WHERE hash = ?",
                    (bytes(program_hash),),
                ).fetchone()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageFailure(f"Database error: {e}")
        if row is None:
            return None
        return bytes(row[0])

    def list(self) -> list[bytes]:
        try:
            conn = self._connect()
            try:
                rows = conn.execute("SELECT hash FROM programs").fetchall()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise StorageFailure(f"Database error: {e}")
        return [bytes(row[0]) for row in rows]


def open_store(db_path: str) -> ProgramStore:
    """Open the store named by a config db_path (":memory:" for in-memory)."""
    if db_path == MEMORY_PATH:
        return InMemoryProgramStore()
    return SqliteProgramStore(db_path)
