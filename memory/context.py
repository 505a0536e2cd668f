"""
Context assembly for a single turn.

Builds the message window the model sees: the most recent messages of the
thread, plus semantically recalled messages (and their neighbours), merged
into one chronological, duplicate-free sequence, with the thread's working
memory attached.
"""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass

from .models import ContextWindow, Message
from .store import MessageStore
from .vector_index import EmbeddingQueue, RecallError, Scope, VectorIndex

logger = logging.getLogger(__name__)

RECALL_SCOPES = ("thread", "resource")
WORKING_MEMORY_MODES = ("enabled", "tool-call")


@dataclass
class MemoryConfig:
    """How much and what kind of memory a turn gets."""

    last_messages: int = 10
    semantic_recall: bool = False
    recall_top_k: int = 3
    recall_message_range: int = 1
    recall_scope: str = "thread"
    working_memory: bool = False
    working_memory_mode: str = "tool-call"
    generate_thread_title: bool = False
    # Max seconds to wait for background indexing before recall (None = wait for all)
    embedding_lag_seconds: float | None = 1.0

    def __post_init__(self):
        if self.recall_scope not in RECALL_SCOPES:
            raise ValueError(f"recall_scope must be one of {RECALL_SCOPES}, got '{self.recall_scope}'")
        if self.working_memory_mode not in WORKING_MEMORY_MODES:
            raise ValueError(
                f"working_memory_mode must be one of {WORKING_MEMORY_MODES}, got '{self.working_memory_mode}'"
            )
        if self.last_messages < 0:
            raise ValueError("last_messages must be >= 0")

    @classmethod
    def from_config(cls, config: dict) -> "MemoryConfig":
        """
        Build from the `memory` section of a config dict.

        `semantic_recall` and `working_memory` accept either a bool or a
        mapping with an `enabled` key plus their own options.
        """
        memory = config.get("memory", config) or {}
        instance = cls()

        if "last_messages" in memory:
            last = memory["last_messages"]
            instance.last_messages = 0 if last is False else int(last)

        recall = memory.get("semantic_recall")
        if isinstance(recall, dict):
            instance.semantic_recall = bool(recall.get("enabled", True))
            instance.recall_top_k = int(recall.get("top_k", instance.recall_top_k))
            instance.recall_message_range = int(recall.get("message_range", instance.recall_message_range))
            instance.recall_scope = recall.get("scope", instance.recall_scope)
        elif recall is not None:
            instance.semantic_recall = bool(recall)

        working = memory.get("working_memory")
        if isinstance(working, dict):
            instance.working_memory = bool(working.get("enabled", True))
            instance.working_memory_mode = working.get("mode", instance.working_memory_mode)
        elif working is not None:
            instance.working_memory = bool(working)

        threads = memory.get("threads") or {}
        if "generate_title" in threads:
            instance.generate_thread_title = bool(threads["generate_title"])

        if "embedding_lag_seconds" in memory:
            lag = memory["embedding_lag_seconds"]
            instance.embedding_lag_seconds = None if lag is None else float(lag)

        # Re-run validation on the assembled values
        instance.__post_init__()
        return instance

    def merged(self, overrides: dict | None) -> "MemoryConfig":
        """A copy with per-turn overrides applied."""
        if not overrides:
            return self
        return dataclasses.replace(self, **overrides)


def _chronological(messages: list[Message]) -> list[Message]:
    return sorted(messages, key=lambda m: (m.created_at, m.seq, m.id))


def drop_unpaired_tool_messages(messages: list[Message]) -> list[Message]:
    """
    Remove tool requests whose results are missing from the window, and
    tool results whose request is missing.

    Truncation by recency or recall neighbourhoods can cut a pair in half;
    model providers reject either half on its own.
    """
    requested = {p.tool_call_id for m in messages for p in m.tool_calls}
    answered = {m.tool_call_id for m in messages if m.role == "tool" and m.tool_call_id}

    kept = []
    for message in messages:
        if message.role == "tool":
            if message.tool_call_id in requested:
                kept.append(message)
            continue
        calls = message.tool_calls
        if calls and not all(c.tool_call_id in answered for c in calls):
            continue
        kept.append(message)

    # A dropped request orphans its answered results; run again until stable
    if len(kept) != len(messages):
        return drop_unpaired_tool_messages(kept)
    return kept


class MemoryAssembler:
    """Builds the ContextWindow for a turn from the store and the vector index."""

    def __init__(
        self,
        store: MessageStore,
        index: VectorIndex | None = None,
        queue: EmbeddingQueue | None = None,
        config: MemoryConfig | None = None,
    ):
        self.store = store
        self.index = index
        self.queue = queue
        self.config = config or MemoryConfig()

    async def assemble(
        self,
        thread_id: str,
        resource_id: str | None,
        new_input: str,
        config: MemoryConfig | None = None,
    ) -> ContextWindow:
        """
        Assemble the context for a new turn.

        Identical store and index contents give an identical window.
        A recall failure is logged and treated as no recall.
        """
        config = config or self.config

        recent: list[Message] = []
        if config.last_messages > 0:
            recent = self.store.query(thread_id, limit=config.last_messages).messages

        recalled: list[Message] = []
        if config.semantic_recall and new_input.strip():
            recalled = await self._recall(thread_id, resource_id, new_input, config)

        by_id = {m.id: m for m in recent}
        recalled_ids = set()
        for message in recalled:
            if message.id not in by_id:
                by_id[message.id] = message
                recalled_ids.add(message.id)

        messages = drop_unpaired_tool_messages(_chronological(list(by_id.values())))
        kept_ids = {m.id for m in messages}

        working_memory = self.store.get_working_memory(thread_id) if config.working_memory else None

        logger.debug(
            "Assembled context for %s: %d recent, %d recalled",
            thread_id, len(recent), len(recalled_ids & kept_ids),
        )
        return ContextWindow(
            thread_id=thread_id,
            messages=messages,
            working_memory=working_memory,
            recalled_ids=frozenset(recalled_ids & kept_ids),
        )

    def _scope(self, thread_id: str, resource_id: str | None, config: MemoryConfig) -> Scope:
        if config.recall_scope == "resource" and resource_id is not None:
            return Scope.resource(resource_id)
        return Scope.thread(thread_id)

    async def _recall(
        self, thread_id: str, resource_id: str | None, query: str, config: MemoryConfig
    ) -> list[Message]:
        if self.index is None:
            logger.warning(
                "Semantic recall requested for thread %s but no vector index is configured; "
                "set memory.semantic_recall or memory.index in the config to build one",
                thread_id,
            )
            return []

        scope = self._scope(thread_id, resource_id, config)
        if self.queue is not None:
            settled = await self.queue.settle(scope, timeout=config.embedding_lag_seconds)
            if not settled:
                logger.debug("Recall for %s proceeding with indexing still pending", thread_id)

        try:
            hits = await asyncio.to_thread(self.index.search, scope, query, config.recall_top_k)
        except RecallError as e:
            logger.warning("Semantic recall failed for thread %s: %s", thread_id, e)
            return []

        recalled: dict[str, Message] = {}
        for hit in hits:
            anchor = self.store.get_message(hit.message_id)
            if anchor is None:
                continue
            neighbourhood = self.store.get_message_range(
                anchor.thread_id,
                anchor.seq,
                before=config.recall_message_range,
                after=config.recall_message_range,
            )
            for message in neighbourhood:
                recalled.setdefault(message.id, message)

        return _chronological(list(recalled.values()))
