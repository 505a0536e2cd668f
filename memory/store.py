"""
Message store - durable, thread-scoped conversation history.

Uses SQLite. Every write goes through a single IMMEDIATE transaction so an
append either lands completely (messages, tool-call bookkeeping, working
memory) or not at all.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable

from .models import (
    ROLES,
    Message,
    NewMessage,
    QueryResult,
    Thread,
    WorkingMemory,
    decode_content,
    encode_content,
    generate_id,
    merge_working_memory,
)
from .normalize import to_ui_messages

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when the store cannot durably read or write."""


def _next_timestamp(last: str | None) -> str:
    """Current time, bumped past `last` so timestamps strictly increase within a thread."""
    now = datetime.now(timezone.utc)
    if last:
        last_dt = datetime.fromisoformat(last)
        if now <= last_dt:
            now = last_dt + timedelta(microseconds=1)
    return now.isoformat(timespec="microseconds")


class MessageStore:
    """
    SQLite-based storage for threads, messages and working memory.

    Pass ":memory:" for an in-process database.

    One connection is shared by all callers and every statement runs under
    one lock, so work on different conversation threads is serialized statement by
    statement. Statements are short; a store that needs parallel readers
    should open a connection per worker on the same WAL database.
    """

    def __init__(self, db_path: str = "~/.threadmem/memory.db"):
        if db_path == ":memory:":
            self.db_path = db_path
        else:
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def conn(self) -> sqlite3.Connection:
        """Get database connection (lazy initialization)."""
        if self._conn is None:
            try:
                # Autocommit mode, transactions are explicit
                self._conn = sqlite3.connect(
                    self.db_path, check_same_thread=False, isolation_level=None
                )
                self._conn.row_factory = sqlite3.Row
                if self.db_path != ":memory:":
                    self._conn.execute("PRAGMA journal_mode=WAL")
                self._create_tables()
            except sqlite3.Error as e:
                raise StorageError(f"Could not open message store at {self.db_path}: {e}") from e
        return self._conn

    def initialize(self):
        """Create the schema eagerly."""
        with self._lock:
            self.conn

    def _create_tables(self):
        self._conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS threads (
                id TEXT PRIMARY KEY,
                resource_id TEXT,
                title TEXT,
                metadata TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                thread_id TEXT NOT NULL,
                resource_id TEXT,
                seq INTEGER NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                tool_call_id TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (thread_id, seq)
            );

            CREATE TABLE IF NOT EXISTS tool_calls (
                thread_id TEXT NOT NULL,
                tool_call_id TEXT NOT NULL,
                request_id TEXT NOT NULL,
                result_id TEXT,
                PRIMARY KEY (thread_id, tool_call_id)
            );

            CREATE TABLE IF NOT EXISTS working_memory (
                thread_id TEXT PRIMARY KEY,
                resource_id TEXT,
                data TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_messages_thread_seq ON messages(thread_id, seq);
            CREATE INDEX IF NOT EXISTS idx_threads_resource ON threads(resource_id, updated_at);
            """
        )

    @contextmanager
    def _transaction(self):
        with self._lock:
            conn = self.conn
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise StorageError(f"Could not start transaction: {e}") from e
            try:
                yield conn
            except sqlite3.Error as e:
                self._rollback(conn)
                raise StorageError(str(e)) from e
            except BaseException:
                self._rollback(conn)
                raise
            try:
                conn.execute("COMMIT")
            except sqlite3.Error as e:
                self._rollback(conn)
                raise StorageError(f"Commit failed: {e}") from e

    def _rollback(self, conn: sqlite3.Connection):
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            logger.warning("Rollback failed: %s", e)

    def _read(self, sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
        with self._lock:
            try:
                return self.conn.execute(sql, tuple(params)).fetchall()
            except sqlite3.Error as e:
                raise StorageError(str(e)) from e

    # ═══════════════════════════════════════════════════════════
    # MESSAGES
    # ═══════════════════════════════════════════════════════════

    def append(self, thread_id: str, resource_id: str | None, message: NewMessage) -> Message:
        """Append one message and return it with its assigned id and seq."""
        return self.append_many(thread_id, resource_id, [message])[0]

    def append_many(
        self,
        thread_id: str,
        resource_id: str | None,
        messages: list[NewMessage],
        working_memory_update: dict | None = None,
    ) -> list[Message]:
        """
        Append messages (and optionally merge a working-memory update) atomically.

        Raises:
            ValueError: A tool message does not answer an open tool call in
                this thread, or a tool call id is reused. Nothing is written.
            StorageError: The write could not be made durable. Nothing is written.
        """
        if not thread_id:
            raise ValueError("thread_id is required")

        with self._transaction() as conn:
            thread_resource = self._ensure_thread(conn, thread_id, resource_id)
            row = conn.execute(
                "SELECT MAX(seq) AS seq, MAX(created_at) AS created_at FROM messages WHERE thread_id = ?",
                (thread_id,),
            ).fetchone()
            seq = row["seq"] or 0
            last_ts = row["created_at"]

            appended = []
            for new in messages:
                if new.role not in ROLES:
                    raise ValueError(f"Unknown role '{new.role}'")
                seq += 1
                last_ts = _next_timestamp(last_ts)
                message = Message(
                    id=generate_id("msg"),
                    thread_id=thread_id,
                    role=new.role,
                    content=new.content,
                    created_at=last_ts,
                    seq=seq,
                    resource_id=thread_resource,
                    tool_call_id=new.tool_call_id,
                )
                self._link_tool_calls(conn, message)
                conn.execute(
                    """
                    INSERT INTO messages (id, thread_id, resource_id, seq, role, content, tool_call_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message.id,
                        thread_id,
                        thread_resource,
                        seq,
                        message.role,
                        encode_content(message.content),
                        message.tool_call_id,
                        message.created_at,
                    ),
                )
                appended.append(message)

            if working_memory_update:
                self._merge_working_memory(conn, thread_id, thread_resource, working_memory_update)

            if appended:
                conn.execute(
                    "UPDATE threads SET updated_at = ? WHERE id = ?", (last_ts, thread_id)
                )

        logger.debug("Appended %d message(s) to thread %s", len(appended), thread_id)
        return appended

    def _ensure_thread(self, conn: sqlite3.Connection, thread_id: str, resource_id: str | None) -> str | None:
        row = conn.execute("SELECT resource_id FROM threads WHERE id = ?", (thread_id,)).fetchone()
        if row is not None:
            if row["resource_id"] is None and resource_id is not None:
                conn.execute("UPDATE threads SET resource_id = ? WHERE id = ?", (resource_id, thread_id))
                return resource_id
            return row["resource_id"]

        now = _next_timestamp(None)
        conn.execute(
            "INSERT INTO threads (id, resource_id, title, metadata, created_at, updated_at) VALUES (?, ?, NULL, '{}', ?, ?)",
            (thread_id, resource_id, now, now),
        )
        return resource_id

    def _link_tool_calls(self, conn: sqlite3.Connection, message: Message):
        """Record tool-call requests and match tool results against open requests."""
        if message.role == "tool":
            if not message.tool_call_id:
                raise ValueError("Tool messages must carry a tool_call_id")
            cur = conn.execute(
                """
                UPDATE tool_calls SET result_id = ?
                WHERE thread_id = ? AND tool_call_id = ? AND result_id IS NULL
                """,
                (message.id, message.thread_id, message.tool_call_id),
            )
            if cur.rowcount == 0:
                raise ValueError(
                    f"Tool result '{message.tool_call_id}' does not answer an open tool call "
                    f"in thread {message.thread_id}"
                )
            return

        for part in message.tool_calls:
            exists = conn.execute(
                "SELECT 1 FROM tool_calls WHERE thread_id = ? AND tool_call_id = ?",
                (message.thread_id, part.tool_call_id),
            ).fetchone()
            if exists:
                raise ValueError(f"Tool call id '{part.tool_call_id}' already used in thread {message.thread_id}")
            conn.execute(
                "INSERT INTO tool_calls (thread_id, tool_call_id, request_id) VALUES (?, ?, ?)",
                (message.thread_id, part.tool_call_id, message.id),
            )

    def query(
        self,
        thread_id: str,
        limit: int | None = None,
        before_seq: int | None = None,
    ) -> QueryResult:
        """
        Most recent messages of a thread, oldest first.

        Args:
            thread_id: Thread to read
            limit: Keep only the newest `limit` messages
            before_seq: Only messages with seq strictly below this

        Returns:
            QueryResult with raw and UI-normalized messages (empty for unknown threads).
        """
        sql = "SELECT * FROM messages WHERE thread_id = ?"
        params: list = [thread_id]
        if before_seq is not None:
            sql += " AND seq < ?"
            params.append(before_seq)
        sql += " ORDER BY seq DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(0, limit))

        messages = [self._row_to_message(r) for r in reversed(self._read(sql, params))]
        return QueryResult(messages=messages, ui_messages=to_ui_messages(messages))

    def get_message(self, message_id: str) -> Message | None:
        rows = self._read("SELECT * FROM messages WHERE id = ?", (message_id,))
        return self._row_to_message(rows[0]) if rows else None

    def get_messages(self, message_ids: list[str]) -> list[Message]:
        """Messages by id, in chronological order. Unknown ids are skipped."""
        if not message_ids:
            return []
        placeholders = ",".join("?" * len(message_ids))
        rows = self._read(
            f"SELECT * FROM messages WHERE id IN ({placeholders}) ORDER BY created_at, seq",
            message_ids,
        )
        return [self._row_to_message(r) for r in rows]

    def get_message_range(self, thread_id: str, seq: int, before: int = 0, after: int = 0) -> list[Message]:
        """The message at `seq` plus up to `before`/`after` neighbours on each side."""
        rows = self._read(
            "SELECT * FROM messages WHERE thread_id = ? AND seq BETWEEN ? AND ? ORDER BY seq",
            (thread_id, seq - max(0, before), seq + max(0, after)),
        )
        return [self._row_to_message(r) for r in rows]

    def count_messages(self, thread_id: str) -> int:
        rows = self._read("SELECT COUNT(*) FROM messages WHERE thread_id = ?", (thread_id,))
        return rows[0][0]

    def get_open_tool_calls(self, thread_id: str) -> dict[str, Message]:
        """Tool calls in a thread still waiting for a result, keyed by tool_call_id.

        Each value is the assistant message holding the request.
        """
        rows = self._read(
            """
            SELECT tc.tool_call_id AS open_call_id, m.* FROM tool_calls tc
            JOIN messages m ON m.id = tc.request_id
            WHERE tc.thread_id = ? AND tc.result_id IS NULL
            ORDER BY m.seq
            """,
            (thread_id,),
        )
        return {r["open_call_id"]: self._row_to_message(r) for r in rows}

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            thread_id=row["thread_id"],
            role=row["role"],
            content=decode_content(row["content"]),
            created_at=row["created_at"],
            seq=row["seq"],
            resource_id=row["resource_id"],
            tool_call_id=row["tool_call_id"],
        )

    # ═══════════════════════════════════════════════════════════
    # THREADS
    # ═══════════════════════════════════════════════════════════

    def get_thread(self, thread_id: str) -> Thread | None:
        rows = self._read("SELECT * FROM threads WHERE id = ?", (thread_id,))
        return self._row_to_thread(rows[0]) if rows else None

    def list_threads(self, resource_id: str | None = None, limit: int | None = None) -> list[Thread]:
        """Threads, most recently updated first, optionally for one resource."""
        sql = "SELECT * FROM threads"
        params: list = []
        if resource_id is not None:
            sql += " WHERE resource_id = ?"
            params.append(resource_id)
        sql += " ORDER BY updated_at DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)
        return [self._row_to_thread(r) for r in self._read(sql, params)]

    def update_thread_title(self, thread_id: str, title: str) -> Thread | None:
        with self._transaction() as conn:
            conn.execute("UPDATE threads SET title = ? WHERE id = ?", (title, thread_id))
        return self.get_thread(thread_id)

    def update_thread_metadata(self, thread_id: str, metadata: dict) -> Thread | None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE threads SET metadata = ? WHERE id = ?", (json.dumps(metadata), thread_id)
            )
        return self.get_thread(thread_id)

    def delete_thread(self, thread_id: str) -> bool:
        """Delete a thread with its messages and working memory. Returns False if absent."""
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM threads WHERE id = ?", (thread_id,))
            existed = cur.rowcount > 0
            conn.execute("DELETE FROM messages WHERE thread_id = ?", (thread_id,))
            conn.execute("DELETE FROM tool_calls WHERE thread_id = ?", (thread_id,))
            conn.execute("DELETE FROM working_memory WHERE thread_id = ?", (thread_id,))
        if existed:
            logger.info("Deleted thread %s", thread_id)
        return existed

    def _row_to_thread(self, row: sqlite3.Row) -> Thread:
        return Thread(
            id=row["id"],
            resource_id=row["resource_id"],
            title=row["title"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )

    # ═══════════════════════════════════════════════════════════
    # WORKING MEMORY
    # ═══════════════════════════════════════════════════════════

    def get_working_memory(self, thread_id: str) -> WorkingMemory:
        """Current working memory for a thread (empty if never written)."""
        rows = self._read("SELECT * FROM working_memory WHERE thread_id = ?", (thread_id,))
        if not rows:
            return WorkingMemory(thread_id=thread_id)
        return WorkingMemory(
            thread_id=thread_id,
            data=json.loads(rows[0]["data"]),
            updated_at=rows[0]["updated_at"],
        )

    def update_working_memory(
        self, thread_id: str, updates: dict, resource_id: str | None = None
    ) -> WorkingMemory:
        """Merge `updates` into the thread's working memory (None removes a key)."""
        with self._transaction() as conn:
            thread_resource = self._ensure_thread(conn, thread_id, resource_id)
            memory = self._merge_working_memory(conn, thread_id, thread_resource, updates)
        return memory

    def _merge_working_memory(
        self, conn: sqlite3.Connection, thread_id: str, resource_id: str | None, updates: dict
    ) -> WorkingMemory:
        row = conn.execute(
            "SELECT data FROM working_memory WHERE thread_id = ?", (thread_id,)
        ).fetchone()
        current = json.loads(row["data"]) if row else {}
        merged = merge_working_memory(current, updates)
        updated_at = _next_timestamp(None)
        conn.execute(
            """
            INSERT INTO working_memory (thread_id, resource_id, data, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(thread_id) DO UPDATE SET data = excluded.data, updated_at = excluded.updated_at
            """,
            (thread_id, resource_id, json.dumps(merged, default=str), updated_at),
        )
        return WorkingMemory(thread_id=thread_id, data=merged, updated_at=updated_at)

    def close(self):
        """Close database connection."""
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None
