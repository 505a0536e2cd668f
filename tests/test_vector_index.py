"""
Unit tests for memory/vector_index.py

Tests cover:
- Scope construction and filtering
- Indexing is idempotent per message ref
- Search ordering by similarity, recency tie-break, top_k and empty scopes
- Embedder failures surface as RecallError
- EmbeddingQueue: inline indexing, background tasks and scoped settle
"""

import asyncio

import pytest

from memory.embeddings import EmbeddingProvider
from memory.models import Message
from memory.vector_index import EmbeddingQueue, RecallError, Scope, VectorIndex


class FixedEmbeddings(EmbeddingProvider):
    """Every text maps to the same vector, so all scores tie."""

    model = "fixed"

    def embed(self, text: str) -> list[float]:
        return [1.0, 0.0]


class BrokenEmbeddings(EmbeddingProvider):
    model = "broken"

    def embed(self, text: str) -> list[float]:
        raise ConnectionError("embedding service unreachable")


def _message(msg_id: str, text: str, thread_id: str = "t1", resource_id: str | None = "r1",
             role: str = "user", seq: int = 1, created_at: str = "2024-01-01T00:00:00.000000+00:00"):
    return Message(
        id=msg_id, thread_id=thread_id, role=role, content=text,
        created_at=created_at, seq=seq, resource_id=resource_id,
    )


# =============================================================================
# Scope
# =============================================================================


class TestScope:

    def test_thread_scope(self):
        scope = Scope.thread("t1")
        assert scope.matches("t1", "anything")
        assert not scope.matches("t2", None)
        assert scope.where() == ("thread_id = ?", ["t1"])

    def test_resource_scope(self):
        scope = Scope.resource("r1")
        assert scope.matches("t9", "r1")
        assert not scope.matches("t1", "r2")

    def test_empty_scope_rejected(self):
        with pytest.raises(ValueError):
            Scope().where()


# =============================================================================
# Index and search
# =============================================================================


class TestVectorIndex:

    def test_search_orders_by_similarity(self, index):
        scope = Scope("t1", "r1")
        index.index(scope, "my favourite colour is green", "m1", seq=1)
        index.index(scope, "the train leaves at noon", "m2", seq=2)
        index.index(scope, "green is a calm colour", "m3", seq=3)

        hits = index.search(Scope.thread("t1"), "what is my favourite colour", top_k=3)
        assert hits[0].message_id == "m1"
        assert hits[-1].message_id == "m2"
        assert [h.score for h in hits] == sorted((h.score for h in hits), reverse=True)

    def test_top_k_limits(self, index):
        scope = Scope("t1", "r1")
        for i in range(5):
            index.index(scope, f"note number {i}", f"m{i}", seq=i)
        assert len(index.search(scope, "note", top_k=2)) == 2
        assert index.search(scope, "note", top_k=0) == []

    def test_fewer_than_top_k(self, index):
        index.index(Scope("t1"), "only one", "m1")
        assert len(index.search(Scope.thread("t1"), "one", top_k=10)) == 1

    def test_empty_scope_returns_nothing(self, index):
        assert index.search(Scope.thread("nobody"), "anything") == []

    def test_reindex_replaces(self, index):
        scope = Scope("t1", "r1")
        index.index(scope, "first version", "m1")
        index.index(scope, "second version", "m1")
        assert index.count(Scope.thread("t1")) == 1

    def test_ties_prefer_recent(self, tmp_path):
        index = VectorIndex(FixedEmbeddings(), db_path=str(tmp_path / "v.db"))
        scope = Scope("t1")
        index.index(scope, "a", "old", created_at="2024-01-01T00:00:00.000000+00:00", seq=1)
        index.index(scope, "b", "new", created_at="2024-01-02T00:00:00.000000+00:00", seq=2)
        index.index(scope, "c", "middle", created_at="2024-01-01T12:00:00.000000+00:00", seq=3)

        assert [h.message_id for h in index.search(scope, "q", top_k=3)] == ["new", "middle", "old"]
        index.close()

    def test_resource_scope_spans_threads(self, index):
        index.index(Scope("t1", "r1"), "coffee order", "m1")
        index.index(Scope("t2", "r1"), "coffee beans", "m2")
        index.index(Scope("t3", "r2"), "coffee elsewhere", "m3")

        ids = {h.message_id for h in index.search(Scope.resource("r1"), "coffee", top_k=10)}
        assert ids == {"m1", "m2"}

    def test_index_needs_thread(self, index):
        with pytest.raises(ValueError):
            index.index(Scope.resource("r1"), "text", "m1")

    def test_embedder_failure_on_index(self, tmp_path):
        index = VectorIndex(BrokenEmbeddings(), db_path=str(tmp_path / "v.db"))
        with pytest.raises(RecallError):
            index.index(Scope("t1"), "text", "m1")

    def test_embedder_failure_on_search(self, tmp_path, embedder):
        path = str(tmp_path / "v.db")
        VectorIndex(embedder, db_path=path).index(Scope("t1"), "text", "m1")

        broken = VectorIndex(BrokenEmbeddings(), db_path=path)
        with pytest.raises(RecallError):
            broken.search(Scope.thread("t1"), "query")

    def test_delete(self, index):
        index.index(Scope("t1"), "a", "m1")
        index.index(Scope("t1"), "b", "m2")
        index.index(Scope("t2"), "c", "m3")

        assert index.delete(["m1"]) == 1
        assert index.delete_thread("t2") == 1
        assert index.count(Scope.thread("t1")) == 1


# =============================================================================
# EmbeddingQueue
# =============================================================================


class TestEmbeddingQueue:

    def test_indexable_text(self):
        assert EmbeddingQueue.indexable_text(_message("m", " hi ")) == "hi"
        assert EmbeddingQueue.indexable_text(_message("m", "result", role="tool")) == ""

    def test_submit_without_loop_indexes_inline(self, index):
        queue = EmbeddingQueue(index)
        assert queue.submit([_message("m1", "hello")]) is None
        assert index.count(Scope.thread("t1")) == 1

    def test_submit_skips_empty_batches(self, index):
        queue = EmbeddingQueue(index)
        assert queue.submit([_message("m1", "   ")]) is None
        assert index.count(Scope.thread("t1")) == 0

    @pytest.mark.asyncio
    async def test_settle_waits_for_background_indexing(self, index):
        queue = EmbeddingQueue(index)
        task = queue.submit([_message("m1", "hello"), _message("m2", "world", seq=2)])
        assert task is not None
        assert queue.pending(Scope.thread("t1")) == [task]

        assert await queue.settle(Scope.thread("t1")) is True
        assert queue.pending() == []
        assert index.count(Scope.thread("t1")) == 2

    @pytest.mark.asyncio
    async def test_settle_other_scope_does_not_wait(self, index):
        queue = EmbeddingQueue(index)
        queue.submit([_message("m1", "hello", thread_id="t1", resource_id="r1")])

        assert await queue.settle(Scope.thread("t2")) is True
        assert await queue.settle(Scope.resource("r1")) is True
        assert index.count(Scope.thread("t1")) == 1

    @pytest.mark.asyncio
    async def test_settle_zero_timeout_reports_pending(self, index):
        queue = EmbeddingQueue(index)
        queue.submit([_message("m1", "hello")])
        assert await queue.settle(Scope.thread("t1"), timeout=0) is False
        await queue.settle()

    @pytest.mark.asyncio
    async def test_failures_are_logged_not_raised(self, tmp_path, caplog):
        queue = EmbeddingQueue(VectorIndex(BrokenEmbeddings(), db_path=str(tmp_path / "v.db")))
        queue.submit([_message("m1", "hello")])
        assert await queue.settle() is True
        assert "m1" in caplog.text

    @pytest.mark.asyncio
    async def test_pending_empty_after_done(self, index):
        queue = EmbeddingQueue(index)
        task = queue.submit([_message("m1", "hello")])
        await asyncio.wait([task])
        # Done callbacks run on the next loop iteration
        await asyncio.sleep(0)
        assert queue.pending() == []
