"""Shared test doubles: a fake requests session and an in-memory adapter."""

import asyncio
import json as jsonlib
from dataclasses import replace

import pytest
import requests

from adapters import key_token, missing_credentials
from clients import AuthenticationError, ConflictError, NetworkError, RateLimitError, ValidationError
from models import ApiResponse, PlatformConfig, PlatformCredential, TimeEntry


def make_response(status: int = 200, body=None, headers: dict | None = None) -> requests.Response:
    r = requests.Response()
    r.status_code = status
    r.reason = {200: "OK", 201: "Created", 204: "No Content"}.get(status, "Error")
    r._content = b"" if body is None else jsonlib.dumps(body).encode()
    r.headers.update(headers or {})
    r.encoding = "utf-8"
    return r


class FakeSession:
    """Records every request and answers from a queue (or a fixed response)."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []
        self.closed = False

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        if not self.responses:
            return make_response(200, {})
        item = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(item, Exception):
            raise item
        return item

    def close(self):
        self.closed = True

    @property
    def last(self) -> dict:
        return self.calls[-1]


class FakeAdapter:
    """In-memory vendor. Failures are scripted per operation as error codes."""

    def __init__(self, platform: str = "cleo"):
        self.platform = platform
        self.config = PlatformConfig(platform=platform, subdomain="acme", api_key="key-123")
        self.credential_provider = lambda: PlatformCredential(platform=platform, api_key="key-123")
        self.remote: dict[str, TimeEntry] = {}
        self.failures: dict[str, list] = {}
        self.calls: list[tuple[str, str | None]] = []
        self.healthy = True
        self.auth_failures: list = []
        self.refresh_failures: list = []
        self.clients = []
        self.matters = []
        self._next_id = 100
        self.delay = 0.0
        self.active = 0
        self.max_active = 0

    def fail(self, operation: str, *codes) -> None:
        self.failures.setdefault(operation, []).extend(codes)

    def _scripted(self, operation: str) -> ApiResponse | None:
        queue = self.failures.get(operation)
        if not queue:
            return None
        error = queue.pop(0)
        if error == "RATE_LIMIT":
            error = RateLimitError(self.platform, 2.0)
        elif error == "NETWORK_ERROR":
            error = NetworkError("Server error", self.platform, 503)
        elif error == "CONFLICT":
            error = ConflictError(self.platform)
        elif error == "AUTH_ERROR":
            error = AuthenticationError(self.platform)
        elif error == "VALIDATION_ERROR":
            error = ValidationError(self.platform, "matter_id", "Matter is closed")
        return ApiResponse.fail(error)

    async def authenticate(self):
        self.calls.append(("authenticate", None))
        if self.auth_failures:
            return ApiResponse.fail(self.auth_failures.pop(0))
        credential = self.credential_provider()
        if not credential.api_key:
            return missing_credentials(self.platform, "No API key")
        return key_token(credential.api_key)

    async def refresh_authentication(self):
        self.calls.append(("refresh", None))
        if self.refresh_failures:
            return ApiResponse.fail(self.refresh_failures.pop(0))
        return key_token(self.credential_provider().api_key)

    async def validate_connection(self):
        self.calls.append(("validate", None))
        return self.healthy

    async def _write(self):
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.active -= 1

    async def create_time_entry(self, entry):
        self.calls.append(("create", None))
        await self._write()
        scripted = self._scripted("create")
        if scripted:
            return scripted
        self._next_id += 1
        stored = replace(entry, id=f"te-{self._next_id}", metadata=dict(entry.metadata))
        self.remote[stored.id] = stored
        return ApiResponse.ok(replace(stored))

    async def get_time_entry(self, entry_id):
        self.calls.append(("get", entry_id))
        scripted = self._scripted("get")
        if scripted:
            return scripted
        return ApiResponse.ok(replace(self.remote[entry_id], metadata=dict(self.remote[entry_id].metadata)))

    async def update_time_entry(self, entry_id, entry):
        self.calls.append(("update", entry_id))
        await self._write()
        scripted = self._scripted("update")
        if scripted:
            return scripted
        stored = replace(entry, id=entry_id, metadata=dict(entry.metadata))
        self.remote[entry_id] = stored
        return ApiResponse.ok(replace(stored))

    async def delete_time_entry(self, entry_id):
        self.remote.pop(entry_id, None)
        return ApiResponse.ok()

    async def get_time_entries(self, filters=None):
        return ApiResponse.ok(list(self.remote.values()))

    async def get_clients(self, filters=None):
        self.calls.append(("get_clients", filters.search if filters else None))
        return ApiResponse.ok(list(self.clients))

    async def get_client(self, client_id):
        return ApiResponse.ok(next(c for c in self.clients if c.id == client_id))

    async def create_client(self, client):
        return ApiResponse.ok(client)

    async def get_matters(self, client_id=None, filters=None):
        self.calls.append(("get_matters", client_id))
        return ApiResponse.ok([m for m in self.matters if client_id is None or m.client_id == client_id])

    async def get_matter(self, matter_id):
        return ApiResponse.ok(next(m for m in self.matters if m.id == matter_id))

    async def create_matter(self, matter):
        return ApiResponse.ok(matter)

    async def get_users(self):
        return ApiResponse.ok([])

    async def get_current_user(self):
        return ApiResponse.ok(None)

    async def bulk_create_time_entries(self, entries):
        raise NotImplementedError

    async def sync_time_entries(self, entries):
        raise NotImplementedError

    def close(self):
        pass

    def count(self, operation: str) -> int:
        return sum(1 for name, _ in self.calls if name == operation)


@pytest.fixture
def fake_adapter():
    return FakeAdapter()


@pytest.fixture
def time_entry():
    return TimeEntry(
        client_id="c-1",
        matter_id="m-1",
        date="2026-02-03",
        hours=1.5,
        description="Draft engagement letter",
        billable_rate=250.0,
    )
