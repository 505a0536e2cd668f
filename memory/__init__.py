"""
Conversation memory for threadmem

Three parts behind one object:
1. Message Store - durable, ordered, per-thread history (SQLite)
2. Vector Index - embeddings of persisted messages for semantic recall
3. Working Memory - a small mutable JSON object per thread

Usage:
    from memory import Memory, MemoryConfig, NewMessage

    memory = Memory.from_config({"memory": {"path": "~/.threadmem/memory.db"}})

    memory.save_messages("thread-1", "user-42", [NewMessage("user", "Hello")])
    result = memory.query("thread-1", limit=20)
    window = await memory.assemble("thread-1", "user-42", "what did I say?")

A Memory is constructed once and passed to whoever needs it; nothing in
this package keeps module-level state.
"""

import logging
from pathlib import Path

from .context import MemoryAssembler, MemoryConfig, drop_unpaired_tool_messages
from .embeddings import (
    CacheConfig,
    EmbeddingCache,
    EmbeddingProvider,
    HashingEmbeddings,
    LiteLLMEmbeddings,
    LocalEmbeddings,
    create_provider,
)
from .models import (
    ContextWindow,
    Message,
    NewMessage,
    QueryResult,
    SearchHit,
    TextPart,
    Thread,
    ToolCallPart,
    ToolResultPart,
    UnknownPart,
    WorkingMemory,
)
from .normalize import to_ui_message, to_ui_messages
from .store import MessageStore, StorageError
from .vector_index import EmbeddingQueue, RecallError, Scope, VectorIndex

logger = logging.getLogger(__name__)


class Memory:
    """
    Store, index and assembler wired together.

    Every message saved through `save_messages` is queued for embedding
    once it is durable, so the index never holds a message the store lacks.
    """

    def __init__(
        self,
        store: MessageStore,
        index: VectorIndex | None = None,
        config: MemoryConfig | None = None,
    ):
        self.store = store
        self.index = index
        self.config = config or MemoryConfig()
        self.queue = EmbeddingQueue(index) if index is not None else None
        self.assembler = MemoryAssembler(store, index, self.queue, self.config)

    @classmethod
    def from_config(cls, config: dict) -> "Memory":
        """
        Build from a config dict (see config.py).

        Uses `memory.path` for the message store, `memory.vector_path` for
        the index and `llm.embedding_model` to pick the embedding provider.
        """
        section = config.get("memory", {}) or {}
        path = section.get("path", "~/.threadmem/memory.db")
        store = MessageStore(path)

        index = None
        memory_config = MemoryConfig.from_config(config)
        if memory_config.semantic_recall or section.get("index", False):
            if path == ":memory:":
                vector_path, cache_path = ":memory:", ":memory:"
            else:
                base = Path(path).expanduser().parent
                vector_path = section.get("vector_path", str(base / "vectors.db"))
                cache_path = section.get("embedding_cache_path", str(base / "embedding_cache.db"))
            model = (config.get("llm", {}) or {}).get("embedding_model", "text-embedding-3-small")
            cache = EmbeddingCache(CacheConfig(cache_path=cache_path))
            index = VectorIndex(create_provider(model, cache=cache), db_path=vector_path)

        return cls(store, index, memory_config)

    # ═══════════════════════════════════════════════════════════
    # MESSAGES
    # ═══════════════════════════════════════════════════════════

    def query(self, thread_id: str, limit: int | None = None, before_seq: int | None = None) -> QueryResult:
        return self.store.query(thread_id, limit=limit, before_seq=before_seq)

    def open_tool_calls(self, thread_id: str) -> dict[str, Message]:
        return self.store.get_open_tool_calls(thread_id)

    def save_messages(
        self,
        thread_id: str,
        resource_id: str | None,
        messages: list[NewMessage],
        working_memory_update: dict | None = None,
    ) -> list[Message]:
        """Persist messages atomically, then queue them for embedding."""
        saved = self.store.append_many(
            thread_id, resource_id, messages, working_memory_update=working_memory_update
        )
        if self.queue is not None:
            self.queue.submit(saved)
        return saved

    async def assemble(
        self,
        thread_id: str,
        resource_id: str | None,
        new_input: str,
        config: MemoryConfig | None = None,
    ) -> ContextWindow:
        return await self.assembler.assemble(thread_id, resource_id, new_input, config or self.config)

    async def flush_indexing(self, timeout: float | None = None) -> bool:
        """Wait for all queued embeddings. Returns False if some are still pending."""
        if self.queue is None:
            return True
        return await self.queue.settle(None, timeout=timeout)

    # ═══════════════════════════════════════════════════════════
    # THREADS AND WORKING MEMORY
    # ═══════════════════════════════════════════════════════════

    def get_thread(self, thread_id: str) -> Thread | None:
        return self.store.get_thread(thread_id)

    def list_threads(self, resource_id: str | None = None, limit: int | None = None) -> list[Thread]:
        return self.store.list_threads(resource_id, limit=limit)

    def update_thread_title(self, thread_id: str, title: str) -> Thread | None:
        return self.store.update_thread_title(thread_id, title)

    async def delete_thread(self, thread_id: str) -> bool:
        """Delete a thread. Pending indexing for it is drained and its embeddings removed first."""
        if self.queue is not None:
            await self.queue.settle(Scope.thread(thread_id), timeout=None)
        if self.index is not None:
            removed = self.index.delete_thread(thread_id)
            logger.debug("Removed %d embeddings for thread %s", removed, thread_id)
        return self.store.delete_thread(thread_id)

    def get_working_memory(self, thread_id: str) -> WorkingMemory:
        return self.store.get_working_memory(thread_id)

    def update_working_memory(
        self, thread_id: str, updates: dict, resource_id: str | None = None
    ) -> WorkingMemory:
        return self.store.update_working_memory(thread_id, updates, resource_id=resource_id)

    def close(self):
        self.store.close()
        if self.index is not None:
            self.index.close()


__all__ = [
    # Models
    "ContextWindow",
    "Message",
    "NewMessage",
    "QueryResult",
    "SearchHit",
    "TextPart",
    "Thread",
    "ToolCallPart",
    "ToolResultPart",
    "UnknownPart",
    "WorkingMemory",
    # Core
    "Memory",
    "MemoryConfig",
    "MemoryAssembler",
    "MessageStore",
    "VectorIndex",
    "EmbeddingQueue",
    "Scope",
    "drop_unpaired_tool_messages",
    "to_ui_message",
    "to_ui_messages",
    # Embeddings
    "EmbeddingProvider",
    "EmbeddingCache",
    "CacheConfig",
    "HashingEmbeddings",
    "LiteLLMEmbeddings",
    "LocalEmbeddings",
    "create_provider",
    # Errors
    "StorageError",
    "RecallError",
]
