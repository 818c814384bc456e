"""Persistence backends for the memory store."""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path

from colony.errors import MemoryWriteConflict, RecordConflict
from colony.logging import get_logger
from colony.memory.records import MemoryLayer, RecordSchema

logger = get_logger("memory.backends")


class InMemoryBackend:
    """Process-local backend. Records vanish when the process exits."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._records: dict[str, RecordSchema] = {}
        self._order: list[str] = []
        self._heads: dict[str, RecordSchema] = {}
        self._history: dict[str, list[RecordSchema]] = {}

    def append(self, record: RecordSchema) -> tuple[int, bool]:
        with self._lock:
            existing = self._records.get(record.id)
            if existing is not None:
                if not existing.same_content(record):
                    raise RecordConflict(record.id)
                return existing.seq, False
            seq = len(self._order) + 1
            self._records[record.id] = record.model_copy(update={"seq": seq})
            self._order.append(record.id)
            return seq, True

    def get(self, record_id: str) -> RecordSchema | None:
        with self._lock:
            if record_id in self._records:
                return self._records[record_id]
            return self._heads.get(record_id)

    def records(self, layer: MemoryLayer, fingerprint: str | None = None) -> list[RecordSchema]:
        with self._lock:
            return [
                self._records[rid]
                for rid in self._order
                if self._records[rid].layer == layer
                and (fingerprint is None or self._records[rid].fingerprint == fingerprint)
            ]

    def write_skill(self, record: RecordSchema, expected_version: int) -> None:
        with self._lock:
            current = self._heads.get(record.id)
            current_version = current.version if current else 0
            if current_version != expected_version:
                raise MemoryWriteConflict(record.fingerprint or "", record.id, expected_version)
            self._heads[record.id] = record
            self._history.setdefault(record.id, []).append(record)

    def skill_heads(self, fingerprint: str | None = None) -> list[RecordSchema]:
        with self._lock:
            return [
                head
                for head in self._heads.values()
                if fingerprint is None or head.fingerprint == fingerprint
            ]

    def skill_history(self, skill_id: str) -> list[RecordSchema]:
        with self._lock:
            return list(self._history.get(skill_id, []))

    def close(self) -> None:
        pass


_SCHEMA = """\
CREATE TABLE IF NOT EXISTS records (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    id TEXT NOT NULL UNIQUE,
    layer TEXT NOT NULL,
    fingerprint TEXT,
    embedding TEXT NOT NULL,
    payload BLOB NOT NULL,
    timestamp TEXT NOT NULL,
    provenance TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_records_class ON records(layer, fingerprint);
CREATE TABLE IF NOT EXISTS skill_versions (
    skill_id TEXT NOT NULL,
    version INTEGER NOT NULL,
    fingerprint TEXT NOT NULL,
    embedding TEXT NOT NULL,
    payload BLOB NOT NULL,
    timestamp TEXT NOT NULL,
    provenance TEXT NOT NULL,
    PRIMARY KEY (skill_id, version)
);
CREATE TABLE IF NOT EXISTS skill_heads (
    skill_id TEXT PRIMARY KEY,
    fingerprint TEXT NOT NULL,
    version INTEGER NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_skill_heads_class ON skill_heads(fingerprint);
"""

_RECORD_COLUMNS = "seq, id, layer, fingerprint, embedding, payload, timestamp, provenance"


class SQLiteBackend:
    """
    SQLite-backed persistence.

    Records are insert-only. Skills keep every version in ``skill_versions``;
    ``skill_heads`` points at the current one and is updated with a version
    check so writers in other processes cannot silently overwrite each other.
    """

    def __init__(self, db_path: Path):
        self._db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.executescript(_SCHEMA)
        logger.debug(f"SQLiteBackend opened: {db_path}")

    @staticmethod
    def _row_to_record(row: tuple) -> RecordSchema:
        return RecordSchema(
            seq=row[0],
            id=row[1],
            layer=MemoryLayer(row[2]),
            fingerprint=row[3],
            embedding=json.loads(row[4]),
            payload=bytes(row[5]),
            timestamp=datetime.fromisoformat(row[6]),
            provenance_refs=json.loads(row[7]),
        )

    def append(self, record: RecordSchema) -> tuple[int, bool]:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM records WHERE id = ?", (record.id,)
            ).fetchone()
            if row is not None:
                existing = self._row_to_record(row)
                if not existing.same_content(record):
                    raise RecordConflict(record.id)
                return existing.seq, False
            with self._conn:
                cursor = self._conn.execute(
                    "INSERT INTO records "
                    "(id, layer, fingerprint, embedding, payload, timestamp, provenance) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        record.id,
                        record.layer.value,
                        record.fingerprint,
                        json.dumps(record.embedding),
                        sqlite3.Binary(record.payload),
                        record.timestamp.isoformat(),
                        json.dumps(record.provenance_refs),
                    ),
                )
            return cursor.lastrowid, True

    def get(self, record_id: str) -> RecordSchema | None:
        with self._lock:
            row = self._conn.execute(
                f"SELECT {_RECORD_COLUMNS} FROM records WHERE id = ?", (record_id,)
            ).fetchone()
            if row is not None:
                return self._row_to_record(row)
            heads = self._heads("WHERE h.skill_id = ?", (record_id,))
            return heads[0] if heads else None

    def records(self, layer: MemoryLayer, fingerprint: str | None = None) -> list[RecordSchema]:
        query = f"SELECT {_RECORD_COLUMNS} FROM records WHERE layer = ?"
        params: tuple = (layer.value,)
        if fingerprint is not None:
            query += " AND fingerprint = ?"
            params += (fingerprint,)
        with self._lock:
            rows = self._conn.execute(query + " ORDER BY seq", params).fetchall()
        return [self._row_to_record(r) for r in rows]

    def write_skill(self, record: RecordSchema, expected_version: int) -> None:
        fingerprint = record.fingerprint or ""
        with self._lock, self._conn:
            if expected_version == 0:
                cursor = self._conn.execute(
                    "INSERT OR IGNORE INTO skill_heads (skill_id, fingerprint, version) "
                    "VALUES (?, ?, ?)",
                    (record.id, fingerprint, record.version),
                )
            else:
                cursor = self._conn.execute(
                    "UPDATE skill_heads SET version = ? WHERE skill_id = ? AND version = ?",
                    (record.version, record.id, expected_version),
                )
            if cursor.rowcount != 1:
                raise MemoryWriteConflict(fingerprint, record.id, expected_version)
            self._conn.execute(
                "INSERT INTO skill_versions "
                "(skill_id, version, fingerprint, embedding, payload, timestamp, provenance) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    record.id,
                    record.version,
                    fingerprint,
                    json.dumps(record.embedding),
                    sqlite3.Binary(record.payload),
                    record.timestamp.isoformat(),
                    json.dumps(record.provenance_refs),
                ),
            )

    def _heads(self, where: str = "", params: tuple = ()) -> list[RecordSchema]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT v.skill_id, v.version, v.fingerprint, v.embedding, v.payload, "
                "v.timestamp, v.provenance FROM skill_heads h "
                "JOIN skill_versions v ON v.skill_id = h.skill_id AND v.version = h.version "
                f"{where} ORDER BY h.skill_id",
                params,
            ).fetchall()
        return [self._row_to_skill(r) for r in rows]

    @staticmethod
    def _row_to_skill(row: tuple) -> RecordSchema:
        return RecordSchema(
            id=row[0],
            version=row[1],
            layer=MemoryLayer.SKILL,
            fingerprint=row[2],
            embedding=json.loads(row[3]),
            payload=bytes(row[4]),
            timestamp=datetime.fromisoformat(row[5]),
            provenance_refs=json.loads(row[6]),
        )

    def skill_heads(self, fingerprint: str | None = None) -> list[RecordSchema]:
        if fingerprint is None:
            return self._heads()
        return self._heads("WHERE h.fingerprint = ?", (fingerprint,))

    def skill_history(self, skill_id: str) -> list[RecordSchema]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT skill_id, version, fingerprint, embedding, payload, timestamp, provenance "
                "FROM skill_versions WHERE skill_id = ? ORDER BY version",
                (skill_id,),
            ).fetchall()
        return [self._row_to_skill(r) for r in rows]

    def close(self) -> None:
        """Close the database connection."""
        with self._lock:
            self._conn.close()
        logger.debug(f"SQLiteBackend closed: {self._db_path}")
