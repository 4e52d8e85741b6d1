"""Persistent store for undo records, grouped by batch and workspace."""

from __future__ import annotations

import json
import os
import sqlite3
import threading
import time

from shared.env import env_int
from shared.models import UndoRecord

DEFAULT_TTL_SECONDS = 24 * 60 * 60


class UndoStore:
    """SQLite-backed store of inverse operations. Records expire after a TTL."""

    def __init__(self, db_path: str | None = None, ttl_seconds: int | None = None):
        self.db_path = db_path or os.getenv("UNDO_DB_PATH", "undo.db")
        self.ttl_seconds = ttl_seconds if ttl_seconds is not None else env_int("UNDO_BATCH_TTL_SECONDS", DEFAULT_TTL_SECONDS)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            isolation_level="DEFERRED",
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._init_db()

    def _init_db(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS undo_records (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                batch_id TEXT NOT NULL,
                workspace_id TEXT NOT NULL,
                record_json TEXT NOT NULL,
                created_at REAL NOT NULL
            )
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_undo_records_batch
            ON undo_records(workspace_id, batch_id)
            """
        )
        self._conn.commit()

    def append(self, batch_id: str, workspace_id: str, record: UndoRecord) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO undo_records (batch_id, workspace_id, record_json, created_at)
                VALUES (?, ?, ?, ?)
                """,
                (
                    batch_id,
                    workspace_id,
                    json.dumps(record.model_dump(mode="json"), ensure_ascii=False),
                    time.time(),
                ),
            )
            self._conn.commit()

    def list_batch(self, workspace_id: str, batch_id: str) -> list[UndoRecord]:
        """Live records of one batch in the order they were applied."""
        cutoff = time.time() - self.ttl_seconds
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT record_json
                FROM undo_records
                WHERE workspace_id = ? AND batch_id = ? AND created_at >= ?
                ORDER BY seq ASC
                """,
                (workspace_id, batch_id, cutoff),
            ).fetchall()
        return [UndoRecord(**json.loads(row["record_json"])) for row in rows]

    def pop_batch(self, workspace_id: str, batch_id: str) -> list[UndoRecord]:
        """Remove and return the live records of one batch, oldest first."""
        cutoff = time.time() - self.ttl_seconds
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT seq, record_json
                FROM undo_records
                WHERE workspace_id = ? AND batch_id = ? AND created_at >= ?
                ORDER BY seq ASC
                """,
                (workspace_id, batch_id, cutoff),
            ).fetchall()
            self._conn.execute(
                "DELETE FROM undo_records WHERE workspace_id = ? AND batch_id = ?",
                (workspace_id, batch_id),
            )
            self._conn.commit()
        return [UndoRecord(**json.loads(row["record_json"])) for row in rows]

    def purge_expired(self) -> int:
        cutoff = time.time() - self.ttl_seconds
        with self._lock:
            cursor = self._conn.execute("DELETE FROM undo_records WHERE created_at < ?", (cutoff,))
            self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()
