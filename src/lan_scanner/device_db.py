"""
Device snapshot persistence.

SQLite database storing the last known device list per persistence key.
Each snapshot is one JSON document (ISO-8601 timestamps, enums by value)
so that a save/load round trip is lossless.

Uses WAL mode for crash safety and concurrent reads.
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator, Optional

from pydantic import TypeAdapter, ValidationError

from ._types import Device, now_utc
from .errors import PersistenceError

logger = logging.getLogger(__name__)

DEFAULT_KEY = "devices"

SCHEMA = """
CREATE TABLE IF NOT EXISTS snapshots (
    key TEXT PRIMARY KEY,
    payload TEXT NOT NULL,
    device_count INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
);
"""

_DEVICE_LIST = TypeAdapter(list[Device])


def _iso_format(dt: datetime) -> str:
    """Format datetime as ISO string."""
    return dt.isoformat()


def _parse_datetime(s: Optional[str]) -> Optional[datetime]:
    """Parse ISO datetime string."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        return None


def encode_devices(devices: list[Device]) -> str:
    return _DEVICE_LIST.dump_json(devices).decode("utf-8")


def decode_devices(payload: str) -> list[Device]:
    return _DEVICE_LIST.validate_json(payload)


class DeviceDatabase:
    """
    SQLite store for device snapshots.

    Args:
        db_path: Database file (parent directories are created)
    """

    def __init__(self, db_path: Path | str = "/var/lib/lan-scanner/devices.db"):
        self.db_path = Path(db_path)
        self._ensure_directory()
        self._init_db()

    def _ensure_directory(self) -> None:
        """Ensure database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def _init_db(self) -> None:
        """Initialize database with schema."""
        with self._get_connection() as conn:
            conn.executescript(SCHEMA)
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.commit()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def load(self, key: str = DEFAULT_KEY) -> list[Device]:
        """
        Load the snapshot stored under a key.

        Returns:
            Stored devices, or an empty list if nothing was saved

        Raises:
            PersistenceError: The database or payload is unreadable
        """
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT payload FROM snapshots WHERE key = ?", (key,)
                ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read snapshot '{key}': {e}") from e

        if row is None:
            return []
        try:
            return decode_devices(row["payload"])
        except ValidationError as e:
            raise PersistenceError(f"Corrupt snapshot '{key}': {e.error_count()} errors") from e

    def save(self, devices: list[Device], key: str = DEFAULT_KEY) -> None:
        """Replace the snapshot stored under a key."""
        payload = encode_devices(devices)
        try:
            with self._get_connection() as conn:
                conn.execute("""
                    INSERT INTO snapshots (key, payload, device_count, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        payload = excluded.payload,
                        device_count = excluded.device_count,
                        updated_at = excluded.updated_at
                """, (key, payload, len(devices), _iso_format(now_utc())))
                conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to write snapshot '{key}': {e}") from e

    def clear(self, key: str = DEFAULT_KEY) -> None:
        """Remove the snapshot stored under a key."""
        try:
            with self._get_connection() as conn:
                conn.execute("DELETE FROM snapshots WHERE key = ?", (key,))
                conn.commit()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to clear snapshot '{key}': {e}") from e

    def updated_at(self, key: str = DEFAULT_KEY) -> Optional[datetime]:
        """When the snapshot under a key was last written, or None if absent."""
        try:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT updated_at FROM snapshots WHERE key = ?", (key,)
                ).fetchone()
        except sqlite3.Error as e:
            raise PersistenceError(f"Failed to read snapshot time '{key}': {e}") from e
        return _parse_datetime(row["updated_at"]) if row else None
