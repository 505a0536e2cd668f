"""
Vector index over persisted messages, for semantic recall.

Embeddings live in their own SQLite table keyed by message id. Search is a
brute-force cosine scan over the requested scope, which is adequate for
per-thread and per-resource histories.

Indexing is eventually consistent: `EmbeddingQueue` embeds messages in the
background after they have been appended to the message store.
"""

import asyncio
import logging
import sqlite3
import threading
from dataclasses import dataclass
from pathlib import Path

from .embeddings import (
    EmbeddingProvider,
    cosine_similarity,
    deserialize_embedding,
    serialize_embedding,
)
from .models import EmbeddingRecord, Message, SearchHit

logger = logging.getLogger(__name__)


class RecallError(Exception):
    """Raised when indexing or vector search fails."""


@dataclass(frozen=True)
class Scope:
    """Which part of the index an operation touches: one thread or one resource."""

    thread_id: str | None = None
    resource_id: str | None = None

    @classmethod
    def thread(cls, thread_id: str) -> "Scope":
        return cls(thread_id=thread_id)

    @classmethod
    def resource(cls, resource_id: str) -> "Scope":
        return cls(resource_id=resource_id)

    def matches(self, thread_id: str | None, resource_id: str | None) -> bool:
        if self.thread_id is not None and thread_id != self.thread_id:
            return False
        if self.resource_id is not None and resource_id != self.resource_id:
            return False
        return True

    def where(self) -> tuple[str, list]:
        clauses, params = [], []
        if self.thread_id is not None:
            clauses.append("thread_id = ?")
            params.append(self.thread_id)
        if self.resource_id is not None:
            clauses.append("resource_id = ?")
            params.append(self.resource_id)
        if not clauses:
            raise ValueError("Scope needs a thread_id or a resource_id")
        return " AND ".join(clauses), params


class VectorIndex:
    """
    SQLite-backed embedding index.

    Re-indexing the same message ref replaces its vector, so indexing is
    idempotent per message.
    """

    def __init__(self, embedder: EmbeddingProvider, db_path: str = "~/.threadmem/vectors.db"):
        self.embedder = embedder
        if db_path == ":memory:":
            self.db_path = db_path
        else:
            path = Path(db_path).expanduser()
            path.parent.mkdir(parents=True, exist_ok=True)
            self.db_path = str(path)
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS embeddings (
                    ref_id TEXT PRIMARY KEY,
                    thread_id TEXT NOT NULL,
                    resource_id TEXT,
                    model TEXT,
                    created_at TEXT,
                    seq INTEGER DEFAULT 0,
                    vector BLOB NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_embeddings_thread ON embeddings(thread_id);
                CREATE INDEX IF NOT EXISTS idx_embeddings_resource ON embeddings(resource_id);
                """
            )
        return self._conn

    def index(
        self,
        scope: Scope,
        text: str,
        message_ref: str,
        created_at: str = "",
        seq: int = 0,
    ) -> EmbeddingRecord:
        """
        Embed `text` and store it under `message_ref`.

        Args:
            scope: Must name the thread; the resource is stored for resource-wide search
            text: Text to embed
            message_ref: Id of the message the text belongs to
            created_at: Message timestamp, used to break score ties
            seq: Message seq, secondary tie-breaker

        Raises:
            RecallError: Embedding or storage failed.
        """
        if scope.thread_id is None:
            raise ValueError("Indexing requires a thread scope")

        try:
            vector = self.embedder.embed(text)
        except Exception as e:
            raise RecallError(f"Embedding failed for {message_ref}: {e}") from e

        with self._lock:
            try:
                self.conn.execute(
                    """
                    INSERT OR REPLACE INTO embeddings
                        (ref_id, thread_id, resource_id, model, created_at, seq, vector)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message_ref,
                        scope.thread_id,
                        scope.resource_id,
                        getattr(self.embedder, "model", None),
                        created_at,
                        seq,
                        serialize_embedding(vector),
                    ),
                )
                self.conn.commit()
            except sqlite3.Error as e:
                raise RecallError(f"Could not store embedding for {message_ref}: {e}") from e

        return EmbeddingRecord(
            ref_id=message_ref,
            thread_id=scope.thread_id,
            resource_id=scope.resource_id,
            vector=vector,
            created_at=created_at,
            seq=seq,
        )

    def search(self, scope: Scope, query_text: str, top_k: int = 3) -> list[SearchHit]:
        """
        Most similar indexed messages within `scope`.

        Ordered by descending cosine similarity; equal scores put the more
        recent message first. Returns fewer than `top_k` hits when the scope
        holds fewer entries, and [] for an empty scope.

        Raises:
            RecallError: Embedding the query or reading the index failed.
        """
        if top_k <= 0:
            return []

        where, params = scope.where()
        with self._lock:
            try:
                rows = self.conn.execute(
                    f"SELECT ref_id, thread_id, created_at, seq, vector FROM embeddings WHERE {where}",
                    params,
                ).fetchall()
            except sqlite3.Error as e:
                raise RecallError(f"Vector search failed: {e}") from e

        if not rows:
            return []

        try:
            query_vector = self.embedder.embed(query_text)
        except Exception as e:
            raise RecallError(f"Query embedding failed: {e}") from e

        hits = [
            SearchHit(
                message_id=row["ref_id"],
                score=cosine_similarity(query_vector, deserialize_embedding(row["vector"])),
                thread_id=row["thread_id"],
                created_at=row["created_at"] or "",
                seq=row["seq"] or 0,
            )
            for row in rows
        ]
        hits.sort(key=lambda h: (h.score, h.created_at, h.seq), reverse=True)
        return hits[:top_k]

    def delete(self, message_refs: list[str]) -> int:
        if not message_refs:
            return 0
        placeholders = ",".join("?" * len(message_refs))
        with self._lock:
            cur = self.conn.execute(
                f"DELETE FROM embeddings WHERE ref_id IN ({placeholders})", list(message_refs)
            )
            self.conn.commit()
            return cur.rowcount

    def delete_thread(self, thread_id: str) -> int:
        with self._lock:
            cur = self.conn.execute("DELETE FROM embeddings WHERE thread_id = ?", (thread_id,))
            self.conn.commit()
            return cur.rowcount

    def count(self, scope: Scope) -> int:
        where, params = scope.where()
        with self._lock:
            return self.conn.execute(
                f"SELECT COUNT(*) FROM embeddings WHERE {where}", params
            ).fetchone()[0]

    def close(self):
        with self._lock:
            if self._conn:
                self._conn.close()
                self._conn = None


class EmbeddingQueue:
    """
    Background indexing of persisted messages.

    Each submitted batch becomes an asyncio task that embeds in a worker
    thread. Failures are logged; the index simply lags for those messages.
    """

    def __init__(self, index: VectorIndex):
        self.index = index
        self._pending: dict[asyncio.Task, tuple[str, str | None]] = {}

    @staticmethod
    def indexable_text(message: Message) -> str:
        if message.role not in ("user", "assistant"):
            return ""
        return message.text.strip()

    def submit(self, messages: list[Message]) -> asyncio.Task | None:
        """Schedule messages for indexing. Indexes inline when no event loop is running."""
        batch = [m for m in messages if self.indexable_text(m)]
        if not batch:
            return None

        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._index_batch(batch)
            return None

        task = loop.create_task(asyncio.to_thread(self._index_batch, batch))
        self._pending[task] = (batch[0].thread_id, batch[0].resource_id)
        task.add_done_callback(self._on_done)
        return task

    def _index_batch(self, batch: list[Message]):
        for message in batch:
            try:
                self.index.index(
                    Scope(thread_id=message.thread_id, resource_id=message.resource_id),
                    self.indexable_text(message),
                    message.id,
                    created_at=message.created_at,
                    seq=message.seq,
                )
            except RecallError as e:
                logger.warning("Indexing message %s failed: %s", message.id, e)

    def _on_done(self, task: asyncio.Task):
        self._pending.pop(task, None)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Indexing task failed: %s", task.exception())

    def pending(self, scope: Scope | None = None) -> list[asyncio.Task]:
        return [
            task
            for task, (thread_id, resource_id) in self._pending.items()
            if scope is None or scope.matches(thread_id, resource_id)
        ]

    async def settle(self, scope: Scope | None = None, timeout: float | None = None) -> bool:
        """
        Wait for pending indexing in `scope`.

        Args:
            scope: Only wait for tasks touching this thread/resource (None = all)
            timeout: Seconds to wait at most; None waits until done

        Returns:
            True if nothing in scope is still pending.
        """
        tasks = self.pending(scope)
        if not tasks:
            return True
        if timeout is not None and timeout <= 0:
            return False
        _, still_pending = await asyncio.wait(tasks, timeout=timeout)
        return not still_pending
