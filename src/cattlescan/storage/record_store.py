"""SQLite-backed record store.

Records are insert-only from this service's side. The ``synced`` column is
written as false on insert and only ever flipped by an external sync
process; nothing here updates or deletes rows.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import UTC, datetime
from typing import Protocol

from cattlescan.analysis.results import Measurements
from cattlescan.errors import StoreWriteError
from cattlescan.storage.records import PersistedRecord, RecordStats, UnpersistedRecord, filter_records

logger = logging.getLogger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS animals (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    image_url TEXT NOT NULL,
    breed TEXT NOT NULL,
    species TEXT NOT NULL,
    confidence INTEGER NOT NULL CHECK (confidence BETWEEN 0 AND 100),
    body_length INTEGER NOT NULL,
    height_at_withers INTEGER NOT NULL,
    chest_width INTEGER NOT NULL,
    detected_at TEXT NOT NULL,
    synced INTEGER NOT NULL DEFAULT 0,
    farmer_id TEXT
);
CREATE INDEX IF NOT EXISTS idx_animals_breed ON animals(breed);
CREATE INDEX IF NOT EXISTS idx_animals_species ON animals(species);
CREATE INDEX IF NOT EXISTS idx_animals_detected_at ON animals(detected_at);
CREATE INDEX IF NOT EXISTS idx_animals_synced ON animals(synced);
"""

_COLUMNS = (
    "id, image_url, breed, species, confidence, body_length, height_at_withers, "
    "chest_width, detected_at, synced, farmer_id"
)


class RecordStore(Protocol):
    """Protocol for durable animal record storage."""

    def insert(self, record: UnpersistedRecord) -> PersistedRecord:
        """Store a new record and return it with its assigned id."""
        ...

    def list_all(self, descending: bool = True) -> list[PersistedRecord]:
        """Return every record ordered by detection time."""
        ...

    def filter(self, term: str) -> list[PersistedRecord]:
        """Return records whose breed or species contains ``term``."""
        ...

    def list_unsynced(self) -> list[PersistedRecord]:
        """Return records not yet delivered to the remote store."""
        ...

    def stats(self) -> RecordStats:
        """Return summary figures over all records."""
        ...

    def close(self) -> None:
        """Release the underlying storage."""
        ...


def _encode_timestamp(value: datetime) -> str:
    # Fixed-width UTC text so that string order is time order.
    if value.tzinfo is None:
        raise ValueError("detected_at must be timezone-aware")
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _row_to_record(row: sqlite3.Row) -> PersistedRecord:
    return PersistedRecord(
        id=row["id"],
        image_url=row["image_url"],
        breed=row["breed"],
        species=row["species"],
        confidence=row["confidence"],
        measurements=Measurements(
            body_length=row["body_length"],
            height_at_withers=row["height_at_withers"],
            chest_width=row["chest_width"],
        ),
        detected_at=datetime.fromisoformat(row["detected_at"]),
        synced=bool(row["synced"]),
        farmer_id=row["farmer_id"],
    )


class SqliteRecordStore:
    """Stores animal records in a single SQLite table.

    Args:
        path: Database file path, or ``":memory:"`` for a throwaway store.
    """

    def __init__(self, path: str) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        with self._conn:
            self._conn.executescript(_SCHEMA)
        logger.info("Opened record store at %s", path)

    def insert(self, record: UnpersistedRecord) -> PersistedRecord:
        """Insert ``record`` and return it with its new id.

        Raises:
            StoreWriteError: If the write fails.
        """
        m = record.measurements
        try:
            detected_at = _encode_timestamp(record.detected_at)
            with self._lock, self._conn:
                cursor = self._conn.execute(
                    "INSERT INTO animals (image_url, breed, species, confidence, body_length, "
                    "height_at_withers, chest_width, detected_at, synced, farmer_id) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.image_url,
                        record.breed,
                        record.species,
                        record.confidence,
                        m.body_length,
                        m.height_at_withers,
                        m.chest_width,
                        detected_at,
                        int(record.synced),
                        record.farmer_id,
                    ),
                )
                record_id = cursor.lastrowid
        except (sqlite3.Error, ValueError) as exc:
            raise StoreWriteError(f"Failed to store record: {exc}") from exc

        if record_id is None:
            raise StoreWriteError("Store did not assign a record id")
        logger.debug("Inserted record %d (%s)", record_id, record.breed)
        return PersistedRecord(
            id=record_id,
            image_url=record.image_url,
            breed=record.breed,
            species=record.species,
            confidence=record.confidence,
            measurements=record.measurements,
            detected_at=record.detected_at,
            synced=record.synced,
            farmer_id=record.farmer_id,
        )

    def list_all(self, descending: bool = True) -> list[PersistedRecord]:
        direction = "DESC" if descending else "ASC"
        return self._select(f"ORDER BY detected_at {direction}, id {direction}")

    def filter(self, term: str) -> list[PersistedRecord]:
        return filter_records(self.list_all(), term)

    def list_unsynced(self) -> list[PersistedRecord]:
        return self._select("WHERE synced = 0 ORDER BY detected_at DESC, id DESC")

    def stats(self) -> RecordStats:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS total, AVG(confidence) AS avg_confidence, "
                "COUNT(DISTINCT breed) AS breeds, "
                "COALESCE(SUM(CASE WHEN synced = 0 THEN 1 ELSE 0 END), 0) AS unsynced "
                "FROM animals"
            ).fetchone()
        average = row["avg_confidence"]
        return RecordStats(
            total=row["total"],
            average_confidence=int(average + 0.5) if average is not None else 0,
            breed_count=row["breeds"],
            unsynced=row["unsynced"],
        )

    def close(self) -> None:
        with self._lock:
            self._conn.close()
        logger.info("Closed record store at %s", self._path)

    def _select(self, clause: str) -> list[PersistedRecord]:
        with self._lock:
            rows = self._conn.execute(f"SELECT {_COLUMNS} FROM animals {clause}").fetchall()  # noqa: S608
        return [_row_to_record(row) for row in rows]
