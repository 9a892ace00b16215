"""Model metadata and context lengths.

Pure utility functions with no engine dependency. Used by
ContextWindowManager to size its token budget per model.
"""

import logging
import os
from typing import Dict, Optional

logger = logging.getLogger(__name__)

CONTEXT_LENGTH_ENV = "ATERM_CONTEXT_LENGTH"

# Fallback for unknown models; matches the smallest local runtime we target.
# Override with ATERM_CONTEXT_LENGTH if needed.
SAFE_DEFAULT_CONTEXT_LENGTH = 32768

MAX_CHAT_HISTORY_MESSAGES = 50

DEFAULT_CONTEXT_LENGTHS: Dict[str, int] = {
    "gpt-4": 8192,
    "gpt-4-turbo": 128000,
    "gpt-4o": 128000,
    "gpt-4o-mini": 128000,
    "gpt-4.1": 1047576,
    "gpt-3.5-turbo": 16385,
    "gemini-pro": 32768,
    "gemini-1.5": 1048576,
    "gemini-2.0": 1000000,
    "gemini-2.5": 1048576,
    "claude-3": 200000,
    "claude-sonnet-4": 200000,
    "claude-opus-4": 200000,
    "llama-3.3-70b": 131072,
    "deepseek-chat": 65536,
    "qwen-2.5": 32768,
    "ollama": 32768,
}


def _get_fallback_context_length() -> int:
    """Get the fallback context length from env var or use safe default."""
    env_override = os.getenv(CONTEXT_LENGTH_ENV)
    if env_override:
        try:
            value = int(env_override)
            if value > 0:
                return value
        except ValueError:
            pass
        logger.warning("Invalid %s value: %s, using default", CONTEXT_LENGTH_ENV, env_override)
    return SAFE_DEFAULT_CONTEXT_LENGTH


def lookup_context_length(model: str) -> Optional[int]:
    """Match *model* against the built-in table, longest key first."""
    name = (model or "").lower()
    for known in sorted(DEFAULT_CONTEXT_LENGTHS, key=len, reverse=True):
        if known in name:
            return DEFAULT_CONTEXT_LENGTHS[known]
    return None


def get_model_context_length(model: str) -> int:
    """Get the context length for a model.

    Resolution order:
    1. Built-in DEFAULT_CONTEXT_LENGTHS table (substring match, longest wins)
    2. ATERM_CONTEXT_LENGTH env var (user override for unknown models)
    3. SAFE_DEFAULT_CONTEXT_LENGTH
    """
    known = lookup_context_length(model)
    if known is not None:
        return known

    fallback_length = _get_fallback_context_length()
    logger.debug(
        "Unknown model '%s' - using context length of %s tokens. Set %s to override.",
        model, f"{fallback_length:,}", CONTEXT_LENGTH_ENV,
    )
    return fallback_length
