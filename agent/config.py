"""Engine configuration: defaults, config.yaml and environment overrides.

Precedence (lowest to highest): built-in defaults, ``$ATERM_HOME/config.yaml``,
``ATERM_*`` environment variables, explicit keyword overrides.
"""

import dataclasses
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from agent.providers import (
    DEFAULT_PROVIDER,
    EnvGetter,
    get_provider,
    is_supported_provider,
    normalize_provider_id,
)
from aterm_constants import CONFIG_FILENAME, get_aterm_home

logger = logging.getLogger(__name__)


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""

    def __init__(self, problems: List[str]):
        self.problems = problems
        super().__init__("Invalid configuration: " + "; ".join(problems))


@dataclass(frozen=True)
class EngineConfig:
    provider: str = DEFAULT_PROVIDER
    model: str = ""
    base_url: Optional[str] = None
    max_tool_rounds: int = 25
    max_attempts: int = 10
    context_length: Optional[int] = None
    channel_size: int = 64
    shell_timeout: float = 30.0
    max_tool_result_chars: int = 100_000
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None

    @property
    def effective_model(self) -> str:
        if self.model:
            return self.model
        meta = get_provider(self.provider)
        return meta.default_model if meta else ""


_FIELD_TYPES: Dict[str, Tuple[type, ...]] = {
    "provider": (str,),
    "model": (str,),
    "base_url": (str, type(None)),
    "max_tool_rounds": (int,),
    "max_attempts": (int,),
    "context_length": (int, type(None)),
    "channel_size": (int,),
    "shell_timeout": (int, float),
    "max_tool_result_chars": (int,),
    "temperature": (int, float, type(None)),
    "max_tokens": (int, type(None)),
}

ENV_OVERRIDES = {
    "ATERM_PROVIDER": ("provider", str),
    "ATERM_MODEL": ("model", str),
    "ATERM_BASE_URL": ("base_url", str),
    "ATERM_MAX_TOOL_ROUNDS": ("max_tool_rounds", int),
    "ATERM_CONTEXT_LENGTH": ("context_length", int),
}


def get_config_path() -> Path:
    return get_aterm_home() / CONFIG_FILENAME


def _read_config_file(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise ConfigValidationError([f"{path}: invalid YAML ({e})"]) from e
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigValidationError([f"{path}: expected a mapping at the top level"])
    return loaded


def validate_config(config: EngineConfig) -> EngineConfig:
    """Check value types and ranges; raise ConfigValidationError listing every problem."""
    problems = []
    for name, allowed in _FIELD_TYPES.items():
        value = getattr(config, name)
        if isinstance(value, bool) or not isinstance(value, allowed):
            problems.append(f"{name} has invalid type {type(value).__name__}")

    if not problems:
        if not is_supported_provider(config.provider):
            problems.append(f"unknown provider '{config.provider}'")
        if config.max_tool_rounds < 1:
            problems.append("max_tool_rounds must be at least 1")
        if config.max_attempts < 1:
            problems.append("max_attempts must be at least 1")
        if config.context_length is not None and config.context_length < 1:
            problems.append("context_length must be positive")
        if config.channel_size < 1:
            problems.append("channel_size must be at least 1")
        if config.shell_timeout <= 0:
            problems.append("shell_timeout must be positive")
        if config.max_tool_result_chars < 1:
            problems.append("max_tool_result_chars must be positive")
        if not config.effective_model:
            problems.append(f"no model configured for provider '{config.provider}'")
        if config.provider == "custom" and not config.base_url:
            problems.append("provider 'custom' requires base_url")

    if problems:
        raise ConfigValidationError(problems)
    return config


def load_config(
    path: Union[str, Path, None] = None,
    *,
    env_get: EnvGetter = os.getenv,
    **overrides: Any,
) -> EngineConfig:
    """Merge defaults, the YAML config file, env vars and *overrides*, then validate."""
    path = Path(path) if path is not None else get_config_path()
    known = {f.name for f in dataclasses.fields(EngineConfig)}

    values: Dict[str, Any] = {}
    for key, value in _read_config_file(path).items():
        if key in known:
            values[key] = value
        else:
            logger.warning("Ignoring unknown config key '%s' in %s", key, path)

    problems = []
    for env_var, (name, cast) in ENV_OVERRIDES.items():
        raw = env_get(env_var)
        if raw is None or not str(raw).strip():
            continue
        try:
            values[name] = cast(str(raw).strip())
        except ValueError:
            problems.append(f"{env_var}={raw!r} is not a valid {cast.__name__}")
    if problems:
        raise ConfigValidationError(problems)

    values.update({k: v for k, v in overrides.items() if v is not None})
    if "provider" in values and isinstance(values["provider"], str):
        values["provider"] = normalize_provider_id(values["provider"])

    config = validate_config(EngineConfig(**values))
    logger.debug("Loaded config: provider=%s model=%s", config.provider, config.effective_model)
    return config
