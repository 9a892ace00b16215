"""Shared constants for aterm-agent.

Import-safe module with no dependencies; it can be imported from anywhere
without risk of circular imports.
"""

import os
from pathlib import Path

ATERM_HOME_ENV = "ATERM_HOME"
DEFAULT_ATERM_HOME = Path.home() / ".aterm"

CONFIG_FILENAME = "config.yaml"
CREDENTIALS_FILENAME = "credentials.yaml"

OPENAI_BASE_URL = "https://api.openai.com/v1"
GEMINI_OPENAI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta/openai"
ANTHROPIC_OPENAI_BASE_URL = "https://api.anthropic.com/v1"
MISTRAL_BASE_URL = "https://api.mistral.ai/v1"
OLLAMA_BASE_URL = "http://localhost:11434/v1"

CHARS_PER_TOKEN = 4


def get_aterm_home() -> Path:
    """Resolve the aterm home directory (``$ATERM_HOME`` or ``~/.aterm``)."""
    return Path(os.getenv(ATERM_HOME_ENV, DEFAULT_ATERM_HOME))
