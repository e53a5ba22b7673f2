"""SQLite storage for chat threads, messages and share links."""

import json
import logging
import secrets
import sqlite3
import string
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Generator, Optional

logger = logging.getLogger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits

# Columns a PATCH may change; JSON columns are encoded on write
UPDATABLE_FIELDS = (
    "title", "pinned", "archived", "tags", "folder",
    "enabled_tools", "model", "agent_style",
)
_JSON_FIELDS = ("tags", "enabled_tools")
_BOOL_FIELDS = ("pinned", "archived", "tools_enabled")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id(prefix: str) -> str:
    """`<prefix>_<epoch ms>_<7 random base36 chars>`."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(7))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


class ChatDatabase:
    """SQLite database for chat history."""

    DB_FILE = "chat.db"

    def __init__(self, data_dir: Optional[str] = None):
        if data_dir is None:
            from homedeck.config import get_settings
            data_dir = get_settings().data_dir
        self.DB_DIR = Path(data_dir)
        self.db_path = self.DB_DIR / self.DB_FILE
        self.DB_DIR.mkdir(parents=True, exist_ok=True)
        self._init_database()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """Context manager for database connections."""
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    def _init_database(self) -> None:
        """Initialize database schema if needed."""
        with self._get_connection() as conn:
            conn.executescript(self._get_schema_sql())
            conn.commit()

    def _get_schema_sql(self) -> str:
        """Return the full database schema SQL."""
        return """
        CREATE TABLE IF NOT EXISTS chat_threads (
            id TEXT PRIMARY KEY,
            title TEXT NOT NULL DEFAULT 'New Chat',
            agent_id TEXT NOT NULL DEFAULT 'default',
            tools_enabled INTEGER NOT NULL DEFAULT 1,
            pinned INTEGER NOT NULL DEFAULT 0,
            archived INTEGER NOT NULL DEFAULT 0,
            tags TEXT NOT NULL DEFAULT '[]',
            folder TEXT,
            enabled_tools TEXT,
            model TEXT,
            agent_style TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            deleted_at TEXT
        );

        CREATE INDEX IF NOT EXISTS idx_threads_updated
            ON chat_threads(deleted_at, updated_at DESC);

        CREATE TABLE IF NOT EXISTS chat_messages (
            id TEXT PRIMARY KEY,
            thread_id TEXT NOT NULL,
            role TEXT NOT NULL,
            content TEXT NOT NULL,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_messages_thread
            ON chat_messages(thread_id, created_at);

        CREATE TABLE IF NOT EXISTS shared_threads (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            thread_id TEXT NOT NULL,
            share_token TEXT NOT NULL UNIQUE,
            expires_at TEXT,
            view_count INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_shared_thread
            ON shared_threads(thread_id);
        """

    @staticmethod
    def _thread_row(row: sqlite3.Row) -> dict[str, Any]:
        data = dict(row)
        for field in _JSON_FIELDS:
            if data.get(field) is not None:
                data[field] = json.loads(data[field])
        for field in _BOOL_FIELDS:
            data[field] = bool(data[field])
        return data

    def ping(self) -> bool:
        """Whether the store answers a trivial query."""
        try:
            with self._get_connection() as conn:
                conn.execute("SELECT 1").fetchone()
            return True
        except sqlite3.Error as e:
            logger.warning(f"Chat database unavailable: {e}")
            return False

    # ==================== Thread Operations ====================

    def list_threads(self) -> list[dict[str, Any]]:
        """Threads that are not deleted, most recently updated first."""
        with self._get_connection() as conn:
            rows = conn.execute(
                """SELECT * FROM chat_threads
                   WHERE deleted_at IS NULL
                   ORDER BY updated_at DESC, rowid DESC"""
            ).fetchall()
        return [self._thread_row(row) for row in rows]

    def get_thread(self, thread_id: str, include_deleted: bool = False) -> Optional[dict[str, Any]]:
        query = "SELECT * FROM chat_threads WHERE id = ?"
        if not include_deleted:
            query += " AND deleted_at IS NULL"
        with self._get_connection() as conn:
            row = conn.execute(query, (thread_id,)).fetchone()
        return self._thread_row(row) if row else None

    def create_thread(self, title: str = "New Chat", agent_id: str = "default") -> dict[str, Any]:
        thread_id = new_id("thread")
        now = _now()
        with self._get_connection() as conn:
            conn.execute(
                """INSERT INTO chat_threads (id, title, agent_id, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (thread_id, title, agent_id, now, now),
            )
            conn.commit()
        return self.get_thread(thread_id)

    def update_thread(self, thread_id: str, **fields) -> Optional[dict[str, Any]]:
        """Apply the given fields and bump `updated_at`. Unknown fields are ignored."""
        changes = {k: v for k, v in fields.items() if k in UPDATABLE_FIELDS}
        values = []
        for name, value in changes.items():
            if name in _JSON_FIELDS and value is not None:
                value = json.dumps(value)
            elif name in _BOOL_FIELDS:
                value = int(bool(value))
            values.append(value)

        assignments = ", ".join([f"{name} = ?" for name in changes] + ["updated_at = ?"])
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"UPDATE chat_threads SET {assignments} WHERE id = ? AND deleted_at IS NULL",
                (*values, _now(), thread_id),
            )
            conn.commit()
            if cursor.rowcount == 0:
                return None
        return self.get_thread(thread_id)

    def delete_thread(self, thread_id: str) -> bool:
        """Soft delete; messages are kept."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "UPDATE chat_threads SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL",
                (_now(), thread_id),
            )
            conn.commit()
            return cursor.rowcount > 0

    # ==================== Message Operations ====================

    def list_messages(self, thread_id: str) -> list[dict[str, Any]]:
        with self._get_connection() as conn:
            rows = conn.execute(
                """SELECT * FROM chat_messages
                   WHERE thread_id = ?
                   ORDER BY created_at ASC, rowid ASC""",
                (thread_id,),
            ).fetchall()
        return [dict(row) for row in rows]

    def create_message(self, thread_id: str, role: str, content: str) -> dict[str, Any]:
        """Insert a message and touch its thread's `updated_at`."""
        message_id = new_id("msg")
        now = _now()
        with self._get_connection() as conn:
            conn.execute(
                """INSERT INTO chat_messages (id, thread_id, role, content, created_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (message_id, thread_id, role, content, now),
            )
            conn.execute(
                "UPDATE chat_threads SET updated_at = ? WHERE id = ?",
                (now, thread_id),
            )
            conn.commit()
        return {
            "id": message_id,
            "thread_id": thread_id,
            "role": role,
            "content": content,
            "created_at": now,
        }

    # ==================== Share Operations ====================

    def create_share(self, thread_id: str, expires_in_days: Optional[float] = None) -> dict[str, Any]:
        token = secrets.token_urlsafe(16)
        expires_at = None
        if expires_in_days:
            expires_at = (datetime.now(timezone.utc) + timedelta(days=expires_in_days)).isoformat()
        with self._get_connection() as conn:
            conn.execute(
                """INSERT INTO shared_threads (thread_id, share_token, expires_at, created_at)
                   VALUES (?, ?, ?, ?)""",
                (thread_id, token, expires_at, _now()),
            )
            conn.commit()
        return {"thread_id": thread_id, "share_token": token, "expires_at": expires_at}

    def get_share(self, token: str) -> Optional[dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT * FROM shared_threads WHERE share_token = ?", (token,)
            ).fetchone()
        return dict(row) if row else None

    def record_share_view(self, token: str) -> None:
        with self._get_connection() as conn:
            conn.execute(
                "UPDATE shared_threads SET view_count = view_count + 1 WHERE share_token = ?",
                (token,),
            )
            conn.commit()

    def delete_shares(self, thread_id: str) -> int:
        with self._get_connection() as conn:
            cursor = conn.execute("DELETE FROM shared_threads WHERE thread_id = ?", (thread_id,))
            conn.commit()
            return cursor.rowcount


_database: Optional[ChatDatabase] = None


def get_database() -> ChatDatabase:
    """Get or create the chat database singleton."""
    global _database
    if _database is None:
        _database = ChatDatabase()
    return _database
