"""
Configuration loader for threadmem.

Loads configuration from a YAML file with environment variable substitution
and merges it over the defaults.

Example config.yaml:

    agent:
      instructions: "You are a concise assistant."
      max_steps: 5
    llm:
      agent_model: gpt-4o
      embedding_model: text-embedding-3-small
    memory:
      path: ${THREADMEM_DB:~/.threadmem/memory.db}
      last_messages: 20
      semantic_recall:
        enabled: true
        top_k: 3
        message_range: 2
        scope: resource
      working_memory:
        enabled: true
        mode: tool-call
"""

import logging
import os
import re
from pathlib import Path

import yaml

from memory.context import MemoryConfig

logger = logging.getLogger(__name__)


def load_config(config_path: str = None) -> dict:
    """Load configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $THREADMEM_CONFIG, then config.yaml.

    Returns:
        Configuration dict with env vars substituted.
    """
    if config_path is None:
        config_path = os.environ.get("THREADMEM_CONFIG", "config.yaml")

    path = Path(config_path).expanduser()
    if not path.exists():
        logger.debug("No config file at %s, using defaults", path)
        return _default_config()

    with open(path) as f:
        content = f.read()

    # Substitute environment variables: ${VAR_NAME} or ${VAR_NAME:default}
    content = _substitute_env_vars(content)

    config = yaml.safe_load(content) or {}
    if not isinstance(config, dict):
        raise ValueError(f"Config file {path} must contain a mapping, got {type(config).__name__}")

    return _merge_with_defaults(config)


def _substitute_env_vars(content: str) -> str:
    """Replace ${VAR} and ${VAR:default} with environment values."""

    def replace(match):
        var_expr = match.group(1)
        if ":" in var_expr:
            var_name, default = var_expr.split(":", 1)
        else:
            var_name, default = var_expr, ""
        return os.environ.get(var_name, default)

    pattern = r"\$\{([^}]+)\}"
    return re.sub(pattern, replace, content)


def _default_config() -> dict:
    """Return default configuration."""
    return {
        "agent": {
            "name": os.environ.get("AGENT_NAME", "assistant"),
            "instructions": os.environ.get("AGENT_INSTRUCTIONS", "You are a helpful assistant."),
            "max_steps": 5,
            "abort_on_cancel": False,
        },
        "llm": {
            "backend": "litellm",
        },
        "memory": {
            "path": "~/.threadmem/memory.db",
            "last_messages": 10,
            "semantic_recall": {
                "enabled": False,
                "top_k": 3,
                "message_range": 1,
                "scope": "thread",
            },
            "working_memory": {
                "enabled": False,
                "mode": "tool-call",
            },
            "threads": {
                "generate_title": False,
            },
            "embedding_lag_seconds": 1.0,
        },
    }


def _merge_with_defaults(config: dict) -> dict:
    """Merge user config with defaults."""
    defaults = _default_config()

    def merge(base, override):
        result = base.copy()
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = merge(result[key], value)
            else:
                result[key] = value
        return result

    return merge(defaults, config)


def get_memory_config(config: dict) -> MemoryConfig:
    """Typed memory settings from a full configuration dict."""
    return MemoryConfig.from_config(config)
