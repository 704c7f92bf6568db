"""Tests for the per-platform authentication lifecycle."""

import asyncio
from datetime import timedelta

import pytest

from adapters import utcnow
from auth_manager import AuthManager, AuthState
from clients import AuthenticationError, ConfigurationError, NetworkError, RateLimitError
from conftest import FakeAdapter
from models import PlatformCredential
from store import JsonStore


@pytest.fixture
def adapter():
    return FakeAdapter("cleo")


@pytest.fixture
def manager(adapter):
    auth = AuthManager(JsonStore())
    auth.register(adapter)
    return auth


class TestRegistration:

    def test_starts_unauthenticated(self, manager):
        assert manager.state("cleo") == AuthState.UNAUTHENTICATED

    def test_adapter_reads_credentials_through_manager(self, manager, adapter):
        assert adapter.credential_provider().api_key == "key-123"

    def test_snapshot_is_a_copy(self, manager, adapter):
        snapshot = adapter.credential_provider()
        snapshot.api_key = "tampered"
        assert manager.snapshot("cleo").api_key == "key-123"

    def test_persisted_credential_wins_over_config(self, adapter):
        store = JsonStore()
        store.save_credential(PlatformCredential(platform="cleo", api_key="rotated-key"))
        auth = AuthManager(store)
        auth.register(adapter)
        assert adapter.credential_provider().api_key == "rotated-key"

    def test_reload_adopts_credentials_loaded_later(self, adapter, tmp_path):
        path = str(tmp_path / "store.json")
        JsonStore(path).save_credential(PlatformCredential(platform="cleo", api_key="rotated-key"))
        store = JsonStore(path)
        auth = AuthManager(store)
        auth.register(adapter)
        assert adapter.credential_provider().api_key == "key-123"

        store.load()
        auth.reload()

        assert adapter.credential_provider().api_key == "rotated-key"
        assert auth.state("cleo") == AuthState.UNAUTHENTICATED


class TestEnsureValid:

    @pytest.mark.asyncio
    async def test_first_call_authenticates(self, manager, adapter):
        await manager.ensure_valid("cleo")
        assert manager.state("cleo") == AuthState.AUTHENTICATED
        assert adapter.count("authenticate") == 1

    @pytest.mark.asyncio
    async def test_valid_credential_is_not_touched(self, manager, adapter):
        await manager.ensure_valid("cleo")
        await manager.ensure_valid("cleo")
        assert adapter.count("authenticate") == 1
        assert adapter.count("refresh") == 0

    @pytest.mark.asyncio
    async def test_refreshes_inside_safety_margin(self, manager, adapter):
        await manager.ensure_valid("cleo")
        manager._slot("cleo").credential.expires_at = utcnow() + timedelta(minutes=2)

        await manager.ensure_valid("cleo")

        assert adapter.count("refresh") == 1
        assert manager.state("cleo") == AuthState.AUTHENTICATED
        assert manager.snapshot("cleo").expires_at > utcnow() + timedelta(days=300)

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_refresh(self, manager, adapter):
        await manager.ensure_valid("cleo")
        manager._slot("cleo").credential.needs_refresh = True

        await asyncio.gather(*(manager.ensure_valid("cleo") for _ in range(5)))

        assert adapter.count("refresh") == 1

    @pytest.mark.asyncio
    async def test_refresh_rejected_invalidates(self, manager, adapter):
        await manager.ensure_valid("cleo")
        manager._slot("cleo").credential.needs_refresh = True
        adapter.refresh_failures.append(AuthenticationError("cleo", "refresh token revoked"))

        with pytest.raises(AuthenticationError):
            await manager.ensure_valid("cleo")
        assert manager.state("cleo") == AuthState.INVALID

        # Invalid stays invalid: no further vendor calls
        with pytest.raises(AuthenticationError):
            await manager.ensure_valid("cleo")
        assert adapter.count("refresh") == 1

    @pytest.mark.asyncio
    async def test_transient_refresh_failure_stays_retryable(self, manager, adapter):
        await manager.ensure_valid("cleo")
        manager._slot("cleo").credential.needs_refresh = True
        adapter.refresh_failures.append(NetworkError("token endpoint down", "cleo", 503))

        with pytest.raises(NetworkError):
            await manager.ensure_valid("cleo")
        assert manager.state("cleo") == AuthState.EXPIRING

        await manager.ensure_valid("cleo")
        assert manager.state("cleo") == AuthState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_rate_limited_authentication(self, manager, adapter):
        adapter.auth_failures.append(RateLimitError("cleo", 3.0))
        with pytest.raises(RateLimitError) as exc:
            await manager.ensure_valid("cleo")
        assert exc.value.retry_after == 3.0
        assert manager.state("cleo") == AuthState.UNAUTHENTICATED


class TestUnauthorized:

    @pytest.mark.asyncio
    async def test_401_triggers_one_refresh(self, manager, adapter):
        await manager.ensure_valid("cleo")
        assert await manager.handle_unauthorized("cleo") is True
        assert adapter.count("refresh") == 1
        assert manager.state("cleo") == AuthState.AUTHENTICATED

    @pytest.mark.asyncio
    async def test_401_with_failed_refresh(self, manager, adapter):
        await manager.ensure_valid("cleo")
        adapter.refresh_failures.append(AuthenticationError("cleo"))
        assert await manager.handle_unauthorized("cleo") is False
        assert manager.state("cleo") == AuthState.INVALID


class TestReauthenticate:

    @pytest.mark.asyncio
    async def test_new_key_recovers_invalid_platform(self, manager, adapter):
        manager.invalidate("cleo", "key revoked")

        response = await manager.reauthenticate("cleo", api_key="new-key")

        assert response.success
        assert manager.state("cleo") == AuthState.AUTHENTICATED
        assert adapter.credential_provider().api_key == "new-key"
        assert manager.store.get_credential("cleo").api_key == "new-key"

    @pytest.mark.asyncio
    async def test_unknown_platform(self, manager):
        with pytest.raises(ConfigurationError):
            await manager.ensure_valid("mycase")
