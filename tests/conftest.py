"""
Shared fixtures for the threadmem test suite.

Provides stores and indexes on temp databases, environment variable
management, and a couple of ready-made tools.
"""

import os
import sys
from pathlib import Path
from unittest.mock import patch

import pytest

# Ensure the project root is on sys.path so tests can import project modules
PROJECT_ROOT = Path(__file__).resolve().parent.parent
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from memory import HashingEmbeddings, Memory, MemoryConfig, MessageStore, VectorIndex  # noqa: E402
from tools import tool  # noqa: E402


@pytest.fixture
def store(tmp_path):
    """A message store on a temp database file."""
    s = MessageStore(str(tmp_path / "memory.db"))
    yield s
    s.close()


@pytest.fixture
def embedder():
    return HashingEmbeddings()


@pytest.fixture
def index(tmp_path, embedder):
    """A vector index on a temp database file using hashing embeddings."""
    idx = VectorIndex(embedder, db_path=str(tmp_path / "vectors.db"))
    yield idx
    idx.close()


@pytest.fixture
def memory(store):
    """Memory without a vector index (recency only)."""
    return Memory(store)


@pytest.fixture
def recall_memory(store, index):
    """Memory with semantic recall on and a short recency window."""
    config = MemoryConfig(last_messages=2, semantic_recall=True, embedding_lag_seconds=None)
    return Memory(store, index, config)


@pytest.fixture
def weather_tool():
    @tool
    def get_weather(postal_code: str) -> str:
        """Current weather for a postal code.

        Args:
            postal_code: The postal code to look up
        """
        return "70 degrees"

    return get_weather


@pytest.fixture
def clean_env():
    """Temporarily clear LLM-related env vars to avoid side effects."""
    keys = [
        "ANTHROPIC_API_KEY", "OPENAI_API_KEY",
        "THREADMEM_CONFIG", "THREADMEM_DB",
        "AGENT_NAME", "AGENT_INSTRUCTIONS",
    ]
    saved = {}
    for key in keys:
        if key in os.environ:
            saved[key] = os.environ.pop(key)
    yield
    for key, val in saved.items():
        os.environ[key] = val
    for key in keys:
        if key not in saved and key in os.environ:
            del os.environ[key]


@pytest.fixture
def mock_anthropic_key():
    """Set a fake ANTHROPIC_API_KEY for tests that need provider detection."""
    with patch.dict(os.environ, {"ANTHROPIC_API_KEY": "sk-ant-test-key-123"}):
        yield


@pytest.fixture
def mock_openai_key():
    """Set a fake OPENAI_API_KEY for tests that need provider detection."""
    with patch.dict(os.environ, {"OPENAI_API_KEY": "sk-test-key-123"}):
        yield


@pytest.fixture
def sample_config(tmp_path):
    """Return a minimal config dict for testing."""
    return {
        "agent": {
            "name": "TestAgent",
            "instructions": "Answer briefly.",
            "max_steps": 4,
        },
        "llm": {
            "agent_model": "claude-sonnet-4-20250514",
            "embedding_model": "hashing",
        },
        "memory": {
            "path": str(tmp_path / "memory.db"),
            "last_messages": 5,
            "semantic_recall": {"enabled": True, "top_k": 2, "message_range": 0},
        },
    }
