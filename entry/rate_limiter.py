"""Fixed-window rate limits for the chat-command channel (per user, per team)."""

from __future__ import annotations

import logging
import math
import os
import sqlite3
import threading
import time
from dataclasses import dataclass

from shared.env import env_int

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    message: str | None = None


def rate_limit_key(team_id: str, user_id: str | None = None) -> str:
    if user_id:
        return f"team:{team_id}:user:{user_id}"
    return f"team:{team_id}"


class RateLimiter:
    """SQLite counters; increment-and-check happens under one lock."""

    def __init__(
        self,
        db_path: str | None = None,
        user_limit: int | None = None,
        team_limit: int | None = None,
        window_seconds: int = WINDOW_SECONDS,
        clock=time.time,
    ):
        self.db_path = db_path or os.getenv("CHAT_DB_PATH", "chat.db")
        self.user_limit = user_limit if user_limit is not None else env_int("CHAT_RATE_LIMIT_PER_USER_PER_MINUTE", 20)
        self.team_limit = team_limit if team_limit is not None else env_int("CHAT_RATE_LIMIT_PER_TEAM_PER_MINUTE", 100)
        self.window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS chat_rate_limits (
                identifier TEXT PRIMARY KEY,
                request_count INTEGER NOT NULL,
                window_start REAL NOT NULL
            )
            """
        )
        self._conn.commit()

    def _hit(self, identifier: str, limit: int, now: float) -> RateLimitResult:
        row = self._conn.execute(
            "SELECT request_count, window_start FROM chat_rate_limits WHERE identifier = ?",
            (identifier,),
        ).fetchone()

        if row is None or now - row[1] >= self.window_seconds:
            self._conn.execute(
                """
                INSERT INTO chat_rate_limits (identifier, request_count, window_start)
                VALUES (?, 1, ?)
                ON CONFLICT(identifier) DO UPDATE SET request_count=1, window_start=excluded.window_start
                """,
                (identifier, now),
            )
            return RateLimitResult(allowed=True, remaining=limit - 1)

        count, window_start = int(row[0]), float(row[1])
        if count >= limit:
            retry_in = max(1, math.ceil(window_start + self.window_seconds - now))
            return RateLimitResult(
                allowed=False,
                remaining=0,
                message=f"Rate limit exceeded. Try again in {retry_in} seconds.",
            )

        self._conn.execute(
            "UPDATE chat_rate_limits SET request_count = request_count + 1 WHERE identifier = ?",
            (identifier,),
        )
        return RateLimitResult(allowed=True, remaining=limit - count - 1)

    def check(self, team_id: str, user_id: str) -> RateLimitResult:
        """Count one request against both the user and the team window."""
        now = self._clock()
        with self._lock:
            user_result = self._hit(rate_limit_key(team_id, user_id), self.user_limit, now)
            if not user_result.allowed:
                self._conn.commit()
                return user_result
            team_result = self._hit(rate_limit_key(team_id), self.team_limit, now)
            self._conn.commit()
        if not team_result.allowed:
            logger.info("Team %s exceeded chat rate limit", team_id)
            return team_result
        return RateLimitResult(allowed=True, remaining=min(user_result.remaining, team_result.remaining))

    def close(self) -> None:
        self._conn.close()
