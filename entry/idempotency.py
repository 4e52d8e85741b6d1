"""Replay cache for chat-command requests, keyed by team and request id."""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
import time
from typing import Any

from shared.env import env_int

logger = logging.getLogger(__name__)


def idempotency_key(team_id: str, request_id: str) -> str:
    return f"team:{team_id}:request:{request_id}"


class IdempotencyStore:
    def __init__(self, db_path: str | None = None, ttl_hours: int | None = None, clock=time.time):
        self.db_path = db_path or os.getenv("CHAT_DB_PATH", "chat.db")
        self.ttl_seconds = (ttl_hours if ttl_hours is not None else env_int("CHAT_IDEMPOTENCY_TTL_HOURS", 24)) * 3600
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_idempotency_keys (
                idempotency_key TEXT PRIMARY KEY,
                response_json TEXT NOT NULL,
                expires_at REAL NOT NULL
            )
            """
        )
        self._conn.commit()

    def get(self, key: str) -> dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT response_json FROM chat_idempotency_keys WHERE idempotency_key = ? AND expires_at > ?",
                (key, self._clock()),
            ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row[0])
        except ValueError:
            logger.warning("Corrupt idempotency entry for %s", key)
            return None

    def save(self, key: str, response: dict[str, Any]) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO chat_idempotency_keys (idempotency_key, response_json, expires_at)
                VALUES (?, ?, ?)
                ON CONFLICT(idempotency_key) DO UPDATE SET
                    response_json=excluded.response_json,
                    expires_at=excluded.expires_at
                """,
                (key, json.dumps(response, ensure_ascii=False, default=str), self._clock() + self.ttl_seconds),
            )
            self._conn.commit()

    def purge_expired(self) -> int:
        with self._lock:
            cursor = self._conn.execute("DELETE FROM chat_idempotency_keys WHERE expires_at <= ?", (self._clock(),))
            self._conn.commit()
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()
