"""Credential pools, rotation and retry for backend calls.

Each provider owns an ordered pool of credentials and a rotation cursor.
``call_with_retry`` walks the active pool once, rotating on transient
failures (rate limits, overload, quota, timeouts) and giving up immediately
on anything else. The cursor is reset at the start of every call, so
rotation state never carries over between calls or sessions.
"""

import asyncio
import dataclasses
import logging
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

import yaml

from agent.providers import (
    DEFAULT_PROVIDER,
    EnvGetter,
    normalize_provider_id,
    resolve_provider_api_keys,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 10

TRANSIENT_ERROR_KEYWORDS = (
    "rate limit",
    "429",
    "503",
    "overload",
    "quota",
    "too many requests",
    "timeout",
    "timed out",
    "unavailable",
)


# =============================================================================
# Errors
# =============================================================================


class BackendCallError(Exception):
    """Base class for failures of a backend call."""


class TransientBackendError(BackendCallError):
    """Rate-limit, overload, quota or 5xx-class failure worth retrying with another credential."""


class NonTransientBackendError(BackendCallError):
    """Any other backend failure; surfaced immediately without rotation."""


class NoCredentialsError(NonTransientBackendError):
    """The provider has no active credential to call with."""


class CredentialsExhaustedError(BackendCallError):
    """Every active credential failed transiently."""

    def __init__(self, last_error: Optional[BaseException], attempts: int = 0, provider: str = ""):
        self.last_error = last_error
        self.attempts = attempts
        self.provider = provider
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(
            f"All {attempts} credential(s) for '{provider}' exhausted after transient failures{detail}"
        )


def is_transient_error(error: Union[BaseException, str, None]) -> bool:
    """Classify an error (or its description) as transient by keyword match."""
    if error is None:
        return False
    if isinstance(error, (NonTransientBackendError, CredentialsExhaustedError)):
        return False
    if isinstance(error, (TransientBackendError, TimeoutError, asyncio.TimeoutError)):
        return True
    text = error if isinstance(error, str) else str(error)
    text = text.lower()
    return any(keyword in text for keyword in TRANSIENT_ERROR_KEYWORDS)


def mask_secret(secret: Optional[str]) -> Optional[str]:
    if not secret:
        return None
    if len(secret) <= 12:
        return "***"
    return f"{secret[:8]}...{secret[-4:]}"


# =============================================================================
# Pool
# =============================================================================


@dataclass(frozen=True)
class CredentialPoolEntry:
    secret: str = field(repr=False)
    label: str = ""
    active: bool = True
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def display_name(self) -> str:
        return self.label or mask_secret(self.secret) or self.id

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "secret": self.secret, "label": self.label, "active": self.active}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CredentialPoolEntry":
        secret = data.get("secret")
        if not isinstance(secret, str) or not secret.strip():
            raise ValueError("credential entry is missing a secret")
        kwargs: Dict[str, Any] = {
            "secret": secret.strip(),
            "label": str(data.get("label") or ""),
            "active": bool(data.get("active", True)),
        }
        if data.get("id"):
            kwargs["id"] = str(data["id"])
        return cls(**kwargs)


class CredentialRotationManager:
    """Per-provider credential pools with a circular rotation cursor."""

    def __init__(
        self,
        pools: Optional[Dict[str, List[CredentialPoolEntry]]] = None,
        default_provider: str = DEFAULT_PROVIDER,
    ):
        self.default_provider = normalize_provider_id(default_provider)
        self._pools: Dict[str, List[CredentialPoolEntry]] = {}
        self._cursors: Dict[str, int] = {}
        for provider, entries in (pools or {}).items():
            for entry in entries:
                self.add_credential(entry, provider)

    def _key(self, provider: Optional[str]) -> str:
        return normalize_provider_id(provider, default=self.default_provider)

    def providers(self) -> List[str]:
        return list(self._pools)

    def credentials(self, provider: Optional[str] = None) -> List[CredentialPoolEntry]:
        return list(self._pools.get(self._key(provider), []))

    def active_credentials(self, provider: Optional[str] = None) -> List[CredentialPoolEntry]:
        return [c for c in self._pools.get(self._key(provider), []) if c.active]

    def add_credential(self, entry: CredentialPoolEntry, provider: Optional[str] = None) -> CredentialPoolEntry:
        key = self._key(provider)
        pool = self._pools.setdefault(key, [])
        if any(c.id == entry.id for c in pool):
            raise ValueError(f"Credential id {entry.id} already exists for provider '{key}'")
        pool.append(entry)
        logger.debug("Added credential %s to provider %s", entry.display_name, key)
        return entry

    def update_credential(
        self,
        credential_id: str,
        provider: Optional[str] = None,
        *,
        secret: Optional[str] = None,
        label: Optional[str] = None,
        active: Optional[bool] = None,
    ) -> CredentialPoolEntry:
        key = self._key(provider)
        pool = self._pools.get(key, [])
        for i, entry in enumerate(pool):
            if entry.id != credential_id:
                continue
            changes: Dict[str, Any] = {}
            if secret is not None:
                changes["secret"] = secret
            if label is not None:
                changes["label"] = label
            if active is not None:
                changes["active"] = active
            pool[i] = dataclasses.replace(entry, **changes)
            return pool[i]
        raise KeyError(f"No credential {credential_id} for provider '{key}'")

    def remove_credential(self, credential_id: str, provider: Optional[str] = None) -> bool:
        key = self._key(provider)
        pool = self._pools.get(key, [])
        for i, entry in enumerate(pool):
            if entry.id == credential_id:
                del pool[i]
                return True
        return False

    def next_credential(self, provider: Optional[str] = None) -> Optional[CredentialPoolEntry]:
        """Return the credential under the cursor and advance it circularly."""
        key = self._key(provider)
        active = self.active_credentials(key)
        if not active:
            return None
        index = self._cursors.get(key, 0) % len(active)
        self._cursors[key] = (index + 1) % len(active)
        return active[index]

    def reset_rotation(self, provider: Optional[str] = None) -> None:
        self._cursors[self._key(provider)] = 0

    async def call_with_retry(
        self,
        operation: Callable[[CredentialPoolEntry], Awaitable[T]],
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        provider: Optional[str] = None,
    ) -> T:
        """Run *operation* with each active credential until one succeeds.

        Raises NoCredentialsError when the pool has no active credential,
        NonTransientBackendError on the first non-transient failure, and
        CredentialsExhaustedError once every attempt failed transiently.
        """
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        key = self._key(provider)
        self.reset_rotation(key)
        active = self.active_credentials(key)
        if not active:
            raise NoCredentialsError(f"No active credentials configured for provider '{key}'")

        attempts = min(max_attempts, len(active))
        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            credential = self.next_credential(key)
            try:
                return await operation(credential)
            except Exception as e:
                if not is_transient_error(e):
                    logger.error(
                        "Non-transient backend failure with credential %s: %s",
                        credential.display_name, e,
                    )
                    if isinstance(e, NonTransientBackendError):
                        raise
                    raise NonTransientBackendError(str(e)) from e
                last_error = e
                logger.warning(
                    "Transient backend failure with credential %s (attempt %d/%d): %s",
                    credential.display_name, attempt, attempts, e,
                )

        raise CredentialsExhaustedError(last_error, attempts=attempts, provider=key)


# =============================================================================
# Persistence
# =============================================================================


def credentials_from_env(provider: str, *, env_get: EnvGetter = os.getenv) -> List[CredentialPoolEntry]:
    """Build a pool from the provider's API-key environment variables."""
    entries = []
    for index, (env_var, key) in enumerate(resolve_provider_api_keys(provider, env_get=env_get), 1):
        entries.append(CredentialPoolEntry(secret=key, label=f"{env_var}#{index}", id=f"env-{env_var.lower()}-{index}"))
    return entries


def load_credentials(path: Union[str, Path], default_provider: str = DEFAULT_PROVIDER) -> CredentialRotationManager:
    """Load ``{providers: {id: [{id, secret, label, active}]}}`` from YAML.

    A missing file yields an empty manager.
    """
    manager = CredentialRotationManager(default_provider=default_provider)
    path = Path(path)
    if not path.exists():
        return manager

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{path}: expected a mapping at the top level")
    providers = data.get("providers") or {}
    if not isinstance(providers, dict):
        raise ValueError(f"{path}: 'providers' must be a mapping")

    for provider, entries in providers.items():
        if not isinstance(entries, list):
            raise ValueError(f"{path}: providers.{provider} must be a list")
        for item in entries:
            if not isinstance(item, dict):
                raise ValueError(f"{path}: providers.{provider} entries must be mappings")
            manager.add_credential(CredentialPoolEntry.from_dict(item), provider)
    logger.debug("Loaded credentials for %s provider(s) from %s", len(providers), path)
    return manager


def save_credentials(manager: CredentialRotationManager, path: Union[str, Path]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {
        "providers": {
            provider: [entry.to_dict() for entry in manager.credentials(provider)]
            for provider in manager.providers()
        }
    }
    path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    os.chmod(path, 0o600)
    return path
