"""Tests for agent.credentials -- pools, rotation, retry and persistence.

Run with:
    python -m pytest tests/agent/test_credentials.py -v
"""

import os
import stat
import sys

import pytest

from agent.credentials import (
    CredentialPoolEntry,
    CredentialRotationManager,
    CredentialsExhaustedError,
    NoCredentialsError,
    NonTransientBackendError,
    TransientBackendError,
    credentials_from_env,
    is_transient_error,
    load_credentials,
    mask_secret,
    save_credentials,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _manager(*secrets, provider="openai"):
    entries = [CredentialPoolEntry(secret=s, label=f"key{i}", id=f"id{i}") for i, s in enumerate(secrets)]
    return CredentialRotationManager({provider: entries}, default_provider=provider)


def _recording(outcomes):
    """An operation that records the secret it was called with and replays *outcomes*."""
    used = []

    async def operation(credential):
        used.append(credential.secret)
        outcome = outcomes[len(used) - 1]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    return operation, used


# ---------------------------------------------------------------------------
# Transient classification
# ---------------------------------------------------------------------------

class TestTransientClassification:
    @pytest.mark.parametrize("message", [
        "Rate limit reached for requests",
        "Error code: 429",
        "503 Service Unavailable",
        "The model is overloaded",
        "You exceeded your current quota",
        "Too Many Requests",
        "Request timed out",
        "upstream timeout",
    ])
    def test_transient_keywords(self, message):
        assert is_transient_error(message)
        assert is_transient_error(RuntimeError(message))

    @pytest.mark.parametrize("message", [
        "Invalid API key provided",
        "model not found",
        "400 Bad Request: messages is required",
    ])
    def test_non_transient(self, message):
        assert not is_transient_error(message)

    def test_typed_errors(self):
        assert is_transient_error(TransientBackendError("boom"))
        assert is_transient_error(TimeoutError())
        assert not is_transient_error(NonTransientBackendError("rate limit"))
        assert not is_transient_error(None)


class TestMaskSecret:
    def test_short_secret_fully_masked(self):
        assert mask_secret("short") == "***"

    def test_long_secret(self):
        assert mask_secret("sk-abcdefghijklmnop1234") == "sk-abcde...1234"

    def test_empty(self):
        assert mask_secret("") is None

    def test_repr_hides_secret(self):
        assert "supersecret" not in repr(CredentialPoolEntry(secret="supersecret-value"))


# ---------------------------------------------------------------------------
# Pool management
# ---------------------------------------------------------------------------

class TestPoolManagement:
    def test_add_and_list(self):
        manager = _manager("a", "b")
        assert [c.secret for c in manager.credentials()] == ["a", "b"]
        assert manager.providers() == ["openai"]

    def test_duplicate_id_rejected(self):
        manager = _manager("a")
        with pytest.raises(ValueError):
            manager.add_credential(CredentialPoolEntry(secret="x", id="id0"))

    def test_update_credential(self):
        manager = _manager("a", "b")
        updated = manager.update_credential("id1", active=False, label="disabled")
        assert updated.active is False
        assert updated.label == "disabled"
        assert [c.secret for c in manager.active_credentials()] == ["a"]

    def test_update_missing_raises(self):
        with pytest.raises(KeyError):
            _manager("a").update_credential("nope", active=False)

    def test_remove_credential(self):
        manager = _manager("a", "b")
        assert manager.remove_credential("id0") is True
        assert manager.remove_credential("id0") is False
        assert [c.secret for c in manager.credentials()] == ["b"]

    def test_next_credential_is_circular(self):
        manager = _manager("a", "b", "c")
        assert [manager.next_credential().secret for _ in range(4)] == ["a", "b", "c", "a"]

    def test_next_credential_skips_inactive(self):
        manager = _manager("a", "b", "c")
        manager.update_credential("id1", active=False)
        assert [manager.next_credential().secret for _ in range(3)] == ["a", "c", "a"]

    def test_providers_are_isolated(self):
        manager = _manager("a")
        manager.add_credential(CredentialPoolEntry(secret="g"), "google")
        assert [c.secret for c in manager.credentials("gemini")] == ["g"]
        assert [c.secret for c in manager.credentials()] == ["a"]

    def test_no_credentials(self):
        assert CredentialRotationManager().next_credential() is None


# ---------------------------------------------------------------------------
# call_with_retry
# ---------------------------------------------------------------------------

class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_first_success(self):
        manager = _manager("a", "b")
        operation, used = _recording(["ok"])
        assert await manager.call_with_retry(operation) == "ok"
        assert used == ["a"]

    @pytest.mark.asyncio
    async def test_rotates_on_transient_failure(self):
        manager = _manager("a", "b", "c")
        operation, used = _recording([TransientBackendError("429"), RuntimeError("overloaded"), "ok"])
        assert await manager.call_with_retry(operation) == "ok"
        assert used == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_non_transient_stops_immediately(self):
        manager = _manager("a", "b")
        operation, used = _recording([RuntimeError("invalid api key"), "ok"])
        with pytest.raises(NonTransientBackendError) as exc:
            await manager.call_with_retry(operation)
        assert used == ["a"]
        assert isinstance(exc.value.__cause__, RuntimeError)

    @pytest.mark.asyncio
    async def test_typed_non_transient_propagates_as_is(self):
        manager = _manager("a", "b")
        error = NonTransientBackendError("bad request")
        operation, _ = _recording([error])
        with pytest.raises(NonTransientBackendError) as exc:
            await manager.call_with_retry(operation)
        assert exc.value is error

    @pytest.mark.asyncio
    async def test_exhausted(self):
        manager = _manager("a", "b")
        last = TransientBackendError("rate limit")
        operation, used = _recording([TransientBackendError("503"), last])
        with pytest.raises(CredentialsExhaustedError) as exc:
            await manager.call_with_retry(operation)
        assert used == ["a", "b"]
        assert exc.value.last_error is last
        assert exc.value.attempts == 2

    @pytest.mark.asyncio
    async def test_max_attempts_bounds_tries(self):
        manager = _manager("a", "b", "c", "d")
        operation, used = _recording([TransientBackendError("429")] * 4)
        with pytest.raises(CredentialsExhaustedError):
            await manager.call_with_retry(operation, max_attempts=2)
        assert used == ["a", "b"]

    @pytest.mark.asyncio
    async def test_each_credential_tried_at_most_once(self):
        manager = _manager("a", "b")
        operation, used = _recording([TransientBackendError("429")] * 10)
        with pytest.raises(CredentialsExhaustedError):
            await manager.call_with_retry(operation, max_attempts=10)
        assert used == ["a", "b"]

    @pytest.mark.asyncio
    async def test_cursor_reset_between_calls(self):
        manager = _manager("a", "b")
        operation, used = _recording([TransientBackendError("429"), "ok", "ok"])
        await manager.call_with_retry(operation)
        await manager.call_with_retry(operation)
        assert used == ["a", "b", "a"]

    @pytest.mark.asyncio
    async def test_no_active_credentials(self):
        manager = _manager("a")
        manager.update_credential("id0", active=False)
        operation, used = _recording(["ok"])
        with pytest.raises(NoCredentialsError):
            await manager.call_with_retry(operation)
        assert used == []

    @pytest.mark.asyncio
    async def test_invalid_max_attempts(self):
        operation, _ = _recording(["ok"])
        with pytest.raises(ValueError):
            await _manager("a").call_with_retry(operation, max_attempts=0)


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

class TestPersistence:
    def test_from_env(self):
        env = {"OPENAI_API_KEY": "k1,k2"}
        entries = credentials_from_env("openai", env_get=env.get)
        assert [e.secret for e in entries] == ["k1", "k2"]
        assert [e.label for e in entries] == ["OPENAI_API_KEY#1", "OPENAI_API_KEY#2"]

    def test_missing_file_gives_empty_manager(self, tmp_path):
        manager = load_credentials(tmp_path / "credentials.yaml")
        assert manager.providers() == []

    def test_save_and_load(self, tmp_path):
        manager = _manager("a", "b")
        manager.update_credential("id1", active=False)
        path = save_credentials(manager, tmp_path / "home" / "credentials.yaml")
        loaded = load_credentials(path)
        assert loaded.credentials("openai") == manager.credentials("openai")

    @pytest.mark.skipif(sys.platform == "win32", reason="POSIX permissions")
    def test_saved_file_is_private(self, tmp_path):
        path = save_credentials(_manager("a"), tmp_path / "credentials.yaml")
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_entry_without_secret_rejected(self, tmp_path):
        path = tmp_path / "credentials.yaml"
        path.write_text("providers:\n  openai:\n    - label: broken\n")
        with pytest.raises(ValueError):
            load_credentials(path)

    def test_aliases_normalized_on_load(self, tmp_path):
        path = tmp_path / "credentials.yaml"
        path.write_text("providers:\n  google:\n    - secret: g-key\n      id: g1\n")
        manager = load_credentials(path)
        assert [c.id for c in manager.credentials("gemini")] == ["g1"]
