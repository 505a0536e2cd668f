"""
Embedding providers for the vector index.

Supports several providers, chosen explicitly or by `create_provider`:
- LiteLLM embeddings (text-embedding-3-small, etc.) - requires a provider key
- Local models (sentence-transformers) - no API key required
- Hashing embeddings - deterministic bag-of-words vectors, always available

Provider selection logic in `create_provider`:
1. "hashing" → HashingEmbeddings
2. "local" → LocalEmbeddings
3. text-embedding-* model + OPENAI_API_KEY → LiteLLMEmbeddings
4. Fallback to LocalEmbeddings, then HashingEmbeddings

Providers never fall back silently once built: vectors from different
providers are not comparable, so a failing provider raises and the
index reports the failure.
"""

import hashlib
import logging
import os
import re
import sqlite3
import struct
import threading
import time
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "text-embedding-3-small"
HASHING_DIM = 256
MAX_EMBED_CHARS = 8000


def serialize_embedding(embedding: list[float]) -> bytes:
    """Pack a vector as little-endian float32."""
    return struct.pack(f"<{len(embedding)}f", *embedding)


def deserialize_embedding(data: bytes) -> list[float]:
    count = len(data) // 4
    return list(struct.unpack(f"<{count}f", data))


# ═══════════════════════════════════════════════════════════
# EMBEDDING CACHE
# ═══════════════════════════════════════════════════════════


@dataclass
class CacheConfig:
    """Configuration for embedding cache."""

    enabled: bool = True
    max_entries: int = 10000
    ttl_seconds: int = 86400 * 30  # 30 days
    cache_path: str = "~/.threadmem/embedding_cache.db"


class EmbeddingCache:
    """
    SQLite-based cache for embeddings.

    Caches embeddings by text hash to avoid redundant API calls.
    """

    def __init__(self, config: CacheConfig | None = None):
        self.config = config or CacheConfig()
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    @property
    def conn(self) -> sqlite3.Connection:
        """Get database connection (lazy initialization)."""
        if self._conn is None:
            if self.config.cache_path == ":memory:":
                target = ":memory:"
            else:
                cache_path = Path(self.config.cache_path).expanduser()
                cache_path.parent.mkdir(parents=True, exist_ok=True)
                target = str(cache_path)
            self._conn = sqlite3.connect(target, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._initialize_schema()
        return self._conn

    def _initialize_schema(self):
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS embedding_cache (
                text_hash TEXT PRIMARY KEY,
                model TEXT NOT NULL,
                embedding BLOB NOT NULL,
                created_at REAL NOT NULL
            )
        """
        )
        self._conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_cache_created ON embedding_cache(created_at)"
        )
        self._conn.commit()

    def _hash_text(self, text: str, model: str) -> str:
        return hashlib.sha256(f"{model}:{text}".encode()).hexdigest()

    def get(self, text: str, model: str) -> list[float] | None:
        """Get cached embedding, or None on miss or expiry."""
        if not self.config.enabled:
            return None

        text_hash = self._hash_text(text, model)
        with self._lock:
            cur = self.conn.cursor()
            cur.execute(
                "SELECT embedding, created_at FROM embedding_cache WHERE text_hash = ?",
                (text_hash,),
            )
            row = cur.fetchone()
            if row is None:
                return None

            if time.time() - row["created_at"] > self.config.ttl_seconds:
                cur.execute("DELETE FROM embedding_cache WHERE text_hash = ?", (text_hash,))
                self.conn.commit()
                return None

        return deserialize_embedding(row["embedding"])

    def put(self, text: str, model: str, embedding: list[float]):
        """Store embedding in cache."""
        if not self.config.enabled:
            return

        with self._lock:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO embedding_cache (text_hash, model, embedding, created_at)
                VALUES (?, ?, ?, ?)
            """,
                (self._hash_text(text, model), model, serialize_embedding(embedding), time.time()),
            )
            self.conn.commit()
            self._prune_if_needed()

    def _prune_if_needed(self):
        cur = self.conn.cursor()
        cur.execute("SELECT COUNT(*) FROM embedding_cache")
        count = cur.fetchone()[0]

        if count > self.config.max_entries:
            # Remove oldest 10%
            cur.execute(
                """
                DELETE FROM embedding_cache
                WHERE text_hash IN (
                    SELECT text_hash FROM embedding_cache
                    ORDER BY created_at ASC
                    LIMIT ?
                )
            """,
                (max(1, count // 10),),
            )
            self.conn.commit()

    def clear(self):
        with self._lock:
            self.conn.execute("DELETE FROM embedding_cache")
            self.conn.commit()

    def close(self):
        if self._conn:
            self._conn.close()
            self._conn = None


# ═══════════════════════════════════════════════════════════
# EMBEDDING PROVIDERS
# ═══════════════════════════════════════════════════════════


class EmbeddingProvider:
    """Base class for embedding providers."""

    model: str = "unknown"

    def embed(self, text: str) -> list[float]:
        """Generate embedding for a single text."""
        raise NotImplementedError

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts."""
        return [self.embed(text) for text in texts]


class LiteLLMEmbeddings(EmbeddingProvider):
    """LiteLLM-based embeddings supporting multiple providers."""

    def __init__(self, model: str = DEFAULT_MODEL, cache: EmbeddingCache | None = None):
        self.model = model
        self.cache = cache
        self._litellm = None

    @property
    def litellm(self):
        if self._litellm is None:
            try:
                import litellm
            except ImportError:
                raise ImportError("litellm package required for LiteLLM embeddings")
            self._litellm = litellm
        return self._litellm

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str], batch_size: int = 100) -> list[list[float]]:
        texts = [t[:MAX_EMBED_CHARS] for t in texts]

        results: list[list[float] | None] = [None] * len(texts)
        uncached_indices = []
        for i, text in enumerate(texts):
            cached = self.cache.get(text, self.model) if self.cache else None
            if cached is not None:
                results[i] = cached
            else:
                uncached_indices.append(i)

        for start in range(0, len(uncached_indices), batch_size):
            batch_indices = uncached_indices[start : start + batch_size]
            response = self.litellm.embedding(
                model=self.model, input=[texts[i] for i in batch_indices]
            )
            for idx, item in zip(batch_indices, response.data):
                embedding = item["embedding"] if isinstance(item, dict) else item.embedding
                results[idx] = embedding
                if self.cache:
                    self.cache.put(texts[idx], self.model, embedding)

        return results


class LocalEmbeddings(EmbeddingProvider):
    """Local embedding provider using sentence-transformers."""

    def __init__(self, model: str = "all-MiniLM-L6-v2"):
        self.model = model
        self._encoder = None

    @property
    def encoder(self):
        if self._encoder is None:
            try:
                from sentence_transformers import SentenceTransformer
            except ImportError:
                raise ImportError(
                    "sentence-transformers package required for local embeddings "
                    "(pip install 'threadmem[local]')"
                )
            self._encoder = SentenceTransformer(self.model)
        return self._encoder

    def embed(self, text: str) -> list[float]:
        return self.encoder.encode(text[:MAX_EMBED_CHARS]).tolist()

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return self.encoder.encode([t[:MAX_EMBED_CHARS] for t in texts]).tolist()


_TOKEN_RE = re.compile(r"[a-z0-9]+")


class HashingEmbeddings(EmbeddingProvider):
    """
    Deterministic bag-of-words embeddings via the hashing trick.

    Each lowercase token is hashed to a bucket with a sign, so texts that
    share words have positive cosine similarity. Useful offline and in tests.
    """

    model = "hashing"

    def __init__(self, dim: int = HASHING_DIM):
        self.dim = dim

    def embed(self, text: str) -> list[float]:
        vector = [0.0] * self.dim
        for token in _TOKEN_RE.findall(text.lower()):
            digest = hashlib.sha256(token.encode()).digest()
            bucket = int.from_bytes(digest[:4], "little") % self.dim
            sign = 1.0 if digest[4] & 1 else -1.0
            vector[bucket] += sign

        norm = sum(x * x for x in vector) ** 0.5
        if norm == 0:
            return vector
        return [x / norm for x in vector]


def create_provider(model: str = DEFAULT_MODEL, cache: EmbeddingCache | None = None) -> EmbeddingProvider:
    """Create an embedding provider based on the configured model and available keys."""
    if model in ("hashing", "mock"):
        return HashingEmbeddings()

    if model == "local" or model.startswith("sentence-transformers/"):
        name = "all-MiniLM-L6-v2" if model == "local" else model.split("/", 1)[1]
        return LocalEmbeddings(model=name)

    if not model.startswith("text-embedding") or os.environ.get("OPENAI_API_KEY"):
        return LiteLLMEmbeddings(model=model, cache=cache)

    try:
        provider = LocalEmbeddings()
        provider.encoder  # Test
        return provider
    except Exception as e:
        logger.debug("Local embeddings unavailable: %s", e)

    logger.warning(
        "No embedding provider available for '%s', using hashing embeddings", model
    )
    return HashingEmbeddings()


def cosine_similarity(a: list[float], b: list[float]) -> float:
    """Calculate cosine similarity between two vectors."""
    dot_product = sum(x * y for x, y in zip(a, b))
    norm_a = sum(x * x for x in a) ** 0.5
    norm_b = sum(x * x for x in b) ** 0.5
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot_product / (norm_a * norm_b)
