"""
LLM configuration for multi-provider support.

This module provides:
- Model settings for the two uses threadmem has (agent turns, thread titles)
- Multi-provider support (OpenAI, Anthropic) via LiteLLM, or the Anthropic SDK directly
- Automatic provider detection based on available API keys

Provider Detection:
- If ANTHROPIC_API_KEY is set: Uses Claude models by default
- If OPENAI_API_KEY is set: Uses GPT models by default
- If both are set: Prefers Anthropic (can be overridden in config)
- If neither is set: check_llm_configuration() raises NoLLMProviderError
"""

import os
from dataclasses import dataclass, field

BACKENDS = ("litellm", "anthropic")


def _get_api_key(name: str) -> str | None:
    """Get API key from environment, refreshing each time."""
    return os.environ.get(name)


@dataclass
class ModelConfig:
    """Configuration for a specific model."""

    model_id: str
    max_tokens: int = 4096
    temperature: float = 0.0
    provider: str = "auto"  # auto, openai, anthropic

    def get_litellm_model(self) -> str:
        """Get the model ID formatted for LiteLLM."""
        if self.provider == "anthropic" and not self.model_id.startswith("anthropic/"):
            return f"anthropic/{self.model_id}"
        if self.provider == "openai" and not self.model_id.startswith("openai/"):
            return f"openai/{self.model_id}"
        # LiteLLM auto-detects claude-* and gpt-*/o1 models
        return self.model_id


# ═══════════════════════════════════════════════════════════
# PROVIDER DETECTION AND VALIDATION
# ═══════════════════════════════════════════════════════════


class NoLLMProviderError(Exception):
    """Raised when no LLM provider API key is configured."""
    pass


def get_available_provider() -> str:
    """
    Detect which LLM provider is available based on API keys.

    Returns:
        'anthropic' if ANTHROPIC_API_KEY is set
        'openai' if OPENAI_API_KEY is set
        'none' if neither is set
    """
    if _get_api_key("ANTHROPIC_API_KEY"):
        return "anthropic"
    elif _get_api_key("OPENAI_API_KEY"):
        return "openai"
    return "none"


def is_llm_configured() -> bool:
    return bool(_get_api_key("OPENAI_API_KEY") or _get_api_key("ANTHROPIC_API_KEY"))


def get_missing_config_message() -> str:
    return """
LLM configuration required.

threadmem needs a model provider. Set one of these environment variables:

  export ANTHROPIC_API_KEY="sk-ant-..."   # Claude models
  export OPENAI_API_KEY="sk-..."          # GPT models (also used for embeddings)

Model choices can be overridden in config.yaml:

  llm:
    agent_model:
      model: "gpt-4o"   # or "claude-sonnet-4-20250514"
"""


def check_llm_configuration() -> None:
    """
    Raises:
        NoLLMProviderError: If no LLM provider is configured
    """
    if not is_llm_configured():
        raise NoLLMProviderError(get_missing_config_message())


# ═══════════════════════════════════════════════════════════
# DEFAULT MODEL CONFIGURATIONS BY PROVIDER
# ═══════════════════════════════════════════════════════════


ANTHROPIC_DEFAULTS = {
    "agent": "claude-sonnet-4-20250514",       # Conversation turns
    "title": "claude-3-5-haiku-20241022",      # Short thread titles
    "embedding": "text-embedding-3-small",     # Anthropic has no embeddings; OpenAI or local
}

OPENAI_DEFAULTS = {
    "agent": "gpt-4o",
    "title": "gpt-4o-mini",
    "embedding": "text-embedding-3-small",
}


def get_default_models_for_provider(provider: str) -> dict[str, str]:
    if provider == "openai":
        return OPENAI_DEFAULTS.copy()
    # No provider: Anthropic defaults, they fail on first use
    return ANTHROPIC_DEFAULTS.copy()


# ═══════════════════════════════════════════════════════════
# LLM CONFIGURATION CLASS
# ═══════════════════════════════════════════════════════════


@dataclass
class LLMConfig:
    """
    Models used by threadmem.

    - agent_model: streams the assistant's turns and requests tools
    - title_model: writes thread titles when title generation is on
    - embedding_model: vectors for semantic recall ("local" and "hashing" are
      handled without an API)
    - backend: "litellm" (any provider) or "anthropic" (Anthropic SDK)
    """

    agent_model: ModelConfig = field(default_factory=lambda: ModelConfig(
        model_id=ANTHROPIC_DEFAULTS["agent"],
        max_tokens=8096,
    ))

    title_model: ModelConfig = field(default_factory=lambda: ModelConfig(
        model_id=ANTHROPIC_DEFAULTS["title"],
        max_tokens=64,
    ))

    embedding_model: str = "text-embedding-3-small"
    backend: str = "litellm"

    @classmethod
    def from_config(cls, config: dict) -> "LLMConfig":
        """Create LLMConfig from a configuration dictionary."""
        llm_config = config.get("llm", {}) or {}

        # Start with provider-appropriate defaults
        provider = get_available_provider()
        defaults = get_default_models_for_provider(provider)

        instance = cls(
            agent_model=ModelConfig(model_id=defaults["agent"], max_tokens=8096),
            title_model=ModelConfig(model_id=defaults["title"], max_tokens=64),
            embedding_model=defaults["embedding"],
        )

        if "agent_model" in llm_config:
            instance.agent_model = cls._parse_model_config(llm_config["agent_model"], defaults["agent"])
        if "title_model" in llm_config:
            instance.title_model = cls._parse_model_config(llm_config["title_model"], defaults["title"])
        if "embedding_model" in llm_config:
            instance.embedding_model = llm_config["embedding_model"]
        if "backend" in llm_config:
            backend = llm_config["backend"]
            if backend not in BACKENDS:
                raise ValueError(f"llm.backend must be one of {BACKENDS}, got '{backend}'")
            instance.backend = backend

        return instance

    @staticmethod
    def _parse_model_config(config: dict | str, default_model: str) -> ModelConfig:
        """Parse a model configuration from dict or string."""
        if isinstance(config, str):
            return ModelConfig(model_id=config)
        return ModelConfig(
            model_id=config.get("model", config.get("model_id", default_model)),
            max_tokens=config.get("max_tokens", 4096),
            temperature=config.get("temperature", 0.0),
            provider=config.get("provider", "auto"),
        )


def create_default_config() -> LLMConfig:
    """Create a default LLMConfig based on available API keys."""
    return LLMConfig.from_config({})
