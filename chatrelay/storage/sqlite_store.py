"""
SQLite storage for chat messages.
Append-only log per thread (or per project context). Single portable file.
"""

import sqlite3
import logging
from pathlib import Path
from contextlib import contextmanager

from chatrelay.storage.base import MessageStore

logger = logging.getLogger(__name__)

CREATE_TABLES = """
CREATE TABLE IF NOT EXISTS threads (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    thread_id TEXT NOT NULL,
    role TEXT NOT NULL,
    content TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    hidden INTEGER DEFAULT 0,
    FOREIGN KEY (thread_id) REFERENCES threads(id)
);

CREATE INDEX IF NOT EXISTS idx_messages_thread
    ON messages(thread_id);
CREATE INDEX IF NOT EXISTS idx_messages_timestamp
    ON messages(timestamp);
"""

REQUIRED_FIELDS = ("message_id", "thread_id", "role", "content", "timestamp")


class SQLiteStore(MessageStore):
    """Thread-safe SQLite message store (one connection per call)."""

    def __init__(self, db_path: str):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self):
        with self._connect() as conn:
            conn.executescript(CREATE_TABLES)
        logger.info("SQLite store initialized at %s", self.db_path)

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def create(self, record: dict) -> None:
        """Store a single message record. Creates the thread row if needed."""
        missing = [f for f in REQUIRED_FIELDS if record.get(f) is None]
        if missing:
            raise ValueError(f"Message record missing fields: {', '.join(missing)}")

        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO threads (id, created_at) VALUES (?, ?)",
                (record["thread_id"], record["timestamp"]),
            )
            conn.execute(
                """INSERT OR REPLACE INTO messages
                   (id, thread_id, role, content, timestamp, hidden)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                (record["message_id"], record["thread_id"], record["role"],
                 record["content"], record["timestamp"], int(bool(record.get("hidden")))),
            )
        logger.debug("Stored message %s (role=%s, thread=%s)",
                     record["message_id"], record["role"], record["thread_id"])

    def list_by_thread(self, thread_id: str, limit: int = 100) -> list[dict]:
        """Most recent `limit` messages for a thread, returned oldest first."""
        with self._connect() as conn:
            rows = conn.execute(
                """SELECT * FROM (
                       SELECT rowid AS seq, * FROM messages
                       WHERE thread_id = ?
                       ORDER BY timestamp DESC, seq DESC
                       LIMIT ?
                   ) ORDER BY timestamp ASC, seq ASC""",
                (thread_id, limit),
            ).fetchall()
        return [
            {
                "message_id": r["id"],
                "thread_id": r["thread_id"],
                "role": r["role"],
                "content": r["content"],
                "timestamp": r["timestamp"],
                "hidden": bool(r["hidden"]),
            }
            for r in rows
        ]

    def delete_thread(self, thread_id: str) -> int:
        """Remove every message for a thread. Returns rows deleted."""
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM messages WHERE thread_id = ?", (thread_id,))
            conn.execute("DELETE FROM threads WHERE id = ?", (thread_id,))
        return cur.rowcount

    def get_stats(self) -> dict:
        """Message and thread counts."""
        with self._connect() as conn:
            threads = conn.execute("SELECT COUNT(*) FROM threads").fetchone()[0]
            messages = conn.execute("SELECT COUNT(*) FROM messages").fetchone()[0]
            by_role = conn.execute(
                "SELECT role, COUNT(*) AS n FROM messages GROUP BY role"
            ).fetchall()
        stats = {"threads": threads, "messages": messages}
        for row in by_role:
            stats[f"{row['role']}_messages"] = row["n"]
        return stats
