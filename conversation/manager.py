"""
Conversation State Manager — SQLite-backed.

Responsibility:
- Store the user/assistant turns of each interactive session
- Return them as role-tagged Messages for the next Command's history

Performance:
- Persistent SQLite connection (no reconnect per query)
- WAL mode for concurrent reads

Prohibitions:
- Never stores tool traffic (the execution core rebuilds it per Command)
- Never alters domain data
"""

import json
import os
import sqlite3
import threading
from datetime import datetime, timezone

from shared.models import Message


class ConversationManager:
    """SQLite-backed conversation history with a persistent connection."""

    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or os.getenv("CONVERSATION_DB_PATH", "conversations.db")
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
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS conversations (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                session_id TEXT NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                metadata TEXT DEFAULT '{}',
                created_at TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_session_id
            ON conversations(session_id)
        """)
        self._conn.commit()

    def save(self, session_id: str, role: str, content: str, metadata: dict | None = None) -> None:
        """Persist a conversation turn."""
        with self._lock:
            self._conn.execute(
                """INSERT INTO conversations (session_id, role, content, metadata, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (
                    session_id,
                    role,
                    content,
                    json.dumps(metadata or {}, default=str),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            self._conn.commit()

    def get_history(self, session_id: str, limit: int = 20) -> list[Message]:
        """Last `limit` turns of a session, oldest first."""
        with self._lock:
            rows = self._conn.execute(
                """SELECT role, content
                   FROM conversations
                   WHERE session_id = ?
                   ORDER BY id DESC
                   LIMIT ?""",
                (session_id, limit),
            ).fetchall()

        return [Message(role=row["role"], content=row["content"]) for row in reversed(rows)]

    def clear_session(self, session_id: str) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM conversations WHERE session_id = ?", (session_id,))
            self._conn.commit()

    def close(self) -> None:
        self._conn.close()
