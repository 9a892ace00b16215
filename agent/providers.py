"""
Backend provider catalog.

Lightweight and dependency-safe: provider ids, aliases, the environment
variables that carry API keys and base URLs, and each provider's default
endpoint and model. Every provider here speaks the OpenAI-compatible chat
completions protocol.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from aterm_constants import (
    ANTHROPIC_OPENAI_BASE_URL,
    GEMINI_OPENAI_BASE_URL,
    MISTRAL_BASE_URL,
    OLLAMA_BASE_URL,
    OPENAI_BASE_URL,
)

EnvGetter = Callable[[str], Optional[str]]

DEFAULT_PROVIDER = "openai"


@dataclass(frozen=True)
class ProviderMeta:
    id: str
    label: str
    default_base_url: str = ""
    default_model: str = ""
    api_key_env_vars: Tuple[str, ...] = ()
    base_url_env_var: Optional[str] = None
    aliases: Tuple[str, ...] = ()
    requires_api_key: bool = True


PROVIDERS: Dict[str, ProviderMeta] = {
    "openai": ProviderMeta(
        id="openai",
        label="OpenAI",
        default_base_url=OPENAI_BASE_URL,
        default_model="gpt-4o-mini",
        api_key_env_vars=("OPENAI_API_KEY",),
        base_url_env_var="OPENAI_BASE_URL",
    ),
    "gemini": ProviderMeta(
        id="gemini",
        label="Google Gemini",
        default_base_url=GEMINI_OPENAI_BASE_URL,
        default_model="gemini-2.0-flash",
        api_key_env_vars=("GEMINI_API_KEY", "GOOGLE_API_KEY"),
        base_url_env_var="GEMINI_BASE_URL",
        aliases=("google",),
    ),
    "anthropic": ProviderMeta(
        id="anthropic",
        label="Anthropic",
        default_base_url=ANTHROPIC_OPENAI_BASE_URL,
        default_model="claude-3-5-sonnet-latest",
        api_key_env_vars=("ANTHROPIC_API_KEY",),
        base_url_env_var="ANTHROPIC_BASE_URL",
        aliases=("claude",),
    ),
    "mistral": ProviderMeta(
        id="mistral",
        label="Mistral AI",
        default_base_url=MISTRAL_BASE_URL,
        default_model="mistral-small-latest",
        api_key_env_vars=("MISTRAL_API_KEY",),
        base_url_env_var="MISTRAL_BASE_URL",
    ),
    "ollama": ProviderMeta(
        id="ollama",
        label="Ollama (local)",
        default_base_url=OLLAMA_BASE_URL,
        default_model="ollama/qwen2.5-coder",
        base_url_env_var="OLLAMA_BASE_URL",
        aliases=("local",),
        requires_api_key=False,
    ),
    "custom": ProviderMeta(
        id="custom",
        label="Custom endpoint",
        api_key_env_vars=("ATERM_CUSTOM_API_KEY",),
        base_url_env_var="ATERM_CUSTOM_BASE_URL",
    ),
}

_ALIAS_TO_PROVIDER: Dict[str, str] = {}
for _pid, _meta in PROVIDERS.items():
    _ALIAS_TO_PROVIDER[_pid] = _pid
    for _alias in _meta.aliases:
        _ALIAS_TO_PROVIDER[_alias.lower()] = _pid


def normalize_provider_id(provider_id: Optional[str], default: str = DEFAULT_PROVIDER) -> str:
    """Normalize a provider ID or alias to a canonical ID."""
    if not provider_id:
        return default
    key = provider_id.strip().lower()
    if not key:
        return default
    return _ALIAS_TO_PROVIDER.get(key, key)


def get_provider(provider_id: str) -> Optional[ProviderMeta]:
    return PROVIDERS.get(normalize_provider_id(provider_id))


def is_supported_provider(provider_id: str) -> bool:
    return normalize_provider_id(provider_id) in PROVIDERS


def list_provider_ids() -> List[str]:
    return list(PROVIDERS)


def iter_api_key_env_vars(provider_id: str) -> Iterable[str]:
    meta = get_provider(provider_id)
    if not meta:
        return ()
    return meta.api_key_env_vars


def resolve_provider_api_keys(provider_id: str, *, env_get: EnvGetter = os.getenv) -> List[Tuple[str, str]]:
    """All non-empty ``(env_var, key)`` pairs for a provider, in declared order.

    A variable may hold several comma-separated keys; each becomes its own
    pair so it can join the rotation pool.
    """
    found: List[Tuple[str, str]] = []
    for env_var in iter_api_key_env_vars(provider_id):
        value = env_get(env_var)
        if not isinstance(value, str):
            continue
        for key in value.split(","):
            if key.strip():
                found.append((env_var, key.strip()))
    return found


def resolve_provider_base_url(
    provider_id: str,
    *,
    env_get: EnvGetter = os.getenv,
    explicit_base_url: Optional[str] = None,
) -> Optional[str]:
    """
    Resolve runtime base URL.

    Order:
    1) explicit base URL (CLI flag or config file)
    2) provider-specific base URL env override
    3) provider default base URL
    """
    if isinstance(explicit_base_url, str) and explicit_base_url.strip():
        return explicit_base_url.strip().rstrip("/")
    meta = get_provider(provider_id)
    if not meta:
        return None
    if meta.base_url_env_var:
        env_value = env_get(meta.base_url_env_var)
        if isinstance(env_value, str) and env_value.strip():
            return env_value.strip().rstrip("/")
    if meta.default_base_url:
        return meta.default_base_url.rstrip("/")
    return None


def has_any_provider_key(provider_id: str, *, env_get: EnvGetter = os.getenv) -> bool:
    return bool(resolve_provider_api_keys(provider_id, env_get=env_get))


def detect_auto_provider(*, env_get: EnvGetter = os.getenv) -> str:
    """
    Detect the provider to use from environment variables.

    Priority: custom endpoint when ATERM_CUSTOM_BASE_URL is set, then the
    first catalog provider with an API key, then the local Ollama runtime.
    """
    custom_base_url = env_get("ATERM_CUSTOM_BASE_URL")
    if isinstance(custom_base_url, str) and custom_base_url.strip():
        return "custom"

    for pid in ("openai", "gemini", "anthropic", "mistral"):
        if has_any_provider_key(pid, env_get=env_get):
            return pid
    return "ollama"
