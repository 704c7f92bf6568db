"""
Authentication lifecycle per platform.

    unauthenticated -> authenticated -> expiring -> refreshing -> authenticated
                                                            \\-> invalid

The manager is the only writer of PlatformCredential records. Adapters get a
fresh read-only copy on every request through their `credential_provider`,
so nothing holds a token across a refresh.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import timedelta
from enum import Enum

from adapters import PracticeManagementAdapter, credential_from_config, utcnow
from clients import TRANSIENT_CODES, AuthenticationError, ConfigurationError, NetworkError, RateLimitError
from models import ApiResponse, AuthToken, PlatformCredential
from store import JsonStore

logger = logging.getLogger(__name__)

SAFETY_MARGIN = timedelta(minutes=5)


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    EXPIRING = "expiring"
    REFRESHING = "refreshing"
    INVALID = "invalid"


@dataclass
class _PlatformAuth:
    adapter: PracticeManagementAdapter
    credential: PlatformCredential
    state: AuthState = AuthState.UNAUTHENTICATED
    last_error: str | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class AuthManager:
    def __init__(self, store: JsonStore | None = None, safety_margin: timedelta = SAFETY_MARGIN):
        self.store = store
        self.safety_margin = safety_margin
        self._platforms: dict[str, _PlatformAuth] = {}

    def register(self, adapter: PracticeManagementAdapter, credential: PlatformCredential | None = None) -> None:
        """Take ownership of an adapter's credentials."""
        platform = adapter.platform
        if credential is None and self.store:
            credential = self.store.get_credential(platform)
        if credential is None:
            credential = credential_from_config(adapter.config)
        self._platforms[platform] = _PlatformAuth(adapter=adapter, credential=credential)
        adapter.credential_provider = lambda: self.snapshot(platform)

    def reload(self) -> None:
        """Adopt credentials persisted by an earlier run. Call after the store is loaded."""
        if not self.store:
            return
        for platform, slot in self._platforms.items():
            stored = self.store.get_credential(platform)
            if stored is None or stored == slot.credential:
                continue
            slot.credential = replace(stored)
            slot.last_error = None
            self._set_state(slot, AuthState.UNAUTHENTICATED)
            logger.info("%s: using stored credentials", platform)

    def _slot(self, platform: str) -> _PlatformAuth:
        slot = self._platforms.get(platform)
        if slot is None:
            raise ConfigurationError(f"Platform '{platform}' is not registered", platform)
        return slot

    def is_registered(self, platform: str) -> bool:
        return platform in self._platforms

    def state(self, platform: str) -> AuthState:
        return self._slot(platform).state

    def states(self) -> dict[str, AuthState]:
        return {name: slot.state for name, slot in self._platforms.items()}

    def snapshot(self, platform: str) -> PlatformCredential:
        return replace(self._slot(platform).credential)

    def _due(self, slot: _PlatformAuth) -> bool:
        credential = slot.credential
        if credential.needs_refresh:
            return True
        return credential.expires_at is not None and utcnow() >= credential.expires_at - self.safety_margin

    def _set_state(self, slot: _PlatformAuth, state: AuthState) -> None:
        if slot.state != state:
            logger.info("%s auth %s -> %s", slot.adapter.platform, slot.state.value, state.value)
        slot.state = state

    def _apply(self, slot: _PlatformAuth, token: AuthToken) -> None:
        credential = slot.credential
        if token.token != credential.api_key:
            credential.access_token = token.token
        if token.refresh_token:
            credential.refresh_token = token.refresh_token
        credential.expires_at = token.expires_at
        credential.needs_refresh = False
        slot.last_error = None
        self._set_state(slot, AuthState.AUTHENTICATED)
        if self.store:
            self.store.save_credential(replace(credential))

    def _fail(self, slot: _PlatformAuth, response: ApiResponse, fallback: AuthState):
        """Transient failures keep the slot retryable; anything else invalidates it."""
        platform = slot.adapter.platform
        if response.code in TRANSIENT_CODES:
            self._set_state(slot, fallback)
            if response.code == RateLimitError.code:
                return RateLimitError(platform, response.retry_after)
            return NetworkError(response.error or "Authentication request failed", platform, response.status_code)
        self.invalidate(platform, response.error or "Authentication failed")
        return AuthenticationError(platform, slot.last_error)

    def invalidate(self, platform: str, reason: str) -> None:
        slot = self._slot(platform)
        slot.last_error = reason
        self._set_state(slot, AuthState.INVALID)
        logger.warning("%s credentials invalid: %s", platform, reason)

    def _raise_if_invalid(self, slot: _PlatformAuth) -> None:
        if slot.state == AuthState.INVALID:
            raise AuthenticationError(
                slot.adapter.platform,
                f"{slot.adapter.platform}: credentials are invalid ({slot.last_error}). Re-authenticate first.",
            )

    async def _authenticate(self, slot: _PlatformAuth) -> None:
        response = await slot.adapter.authenticate()
        if not response.success:
            raise self._fail(slot, response, AuthState.UNAUTHENTICATED)
        self._apply(slot, response.data)

    async def _refresh(self, slot: _PlatformAuth) -> None:
        self._set_state(slot, AuthState.REFRESHING)
        response = await slot.adapter.refresh_authentication()
        if not response.success:
            raise self._fail(slot, response, AuthState.EXPIRING)
        self._apply(slot, response.data)

    async def ensure_valid(self, platform: str) -> None:
        """Called before each adapter call. Raises when no usable credential can be had."""
        slot = self._slot(platform)
        self._raise_if_invalid(slot)
        if slot.state == AuthState.AUTHENTICATED and not self._due(slot):
            return

        async with slot.lock:
            # Another caller may have finished the work while we waited
            self._raise_if_invalid(slot)
            if slot.state == AuthState.UNAUTHENTICATED:
                await self._authenticate(slot)
            elif self._due(slot) or slot.state != AuthState.AUTHENTICATED:
                self._set_state(slot, AuthState.EXPIRING)
                await self._refresh(slot)

    async def handle_unauthorized(self, platform: str) -> bool:
        """A call came back 401: refresh once. Returns False if the platform is now invalid."""
        slot = self._slot(platform)
        async with slot.lock:
            if slot.state == AuthState.INVALID:
                return False
            slot.credential.needs_refresh = True
            self._set_state(slot, AuthState.EXPIRING)
            try:
                await self._refresh(slot)
            except AuthenticationError:
                return False
        return True

    async def reauthenticate(self, platform: str, **material) -> ApiResponse:
        """Replace credential material (e.g. a rotated key) and authenticate from scratch."""
        slot = self._slot(platform)
        async with slot.lock:
            slot.credential = replace(slot.credential, expires_at=None, needs_refresh=False, **material)
            slot.last_error = None
            self._set_state(slot, AuthState.UNAUTHENTICATED)
            response = await slot.adapter.authenticate()
            if response.success:
                self._apply(slot, response.data)
            else:
                self._fail(slot, response, AuthState.UNAUTHENTICATED)
            return response
