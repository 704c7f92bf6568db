"""Adapter contract and the helpers every vendor adapter shares.

Vendor adapters do not inherit from a base class. Each one composes an
HttpClient and calls the free functions below for pagination, date
formatting, lenient number parsing, envelope normalisation, validation,
bulk operations and OAuth token exchange.
"""

import logging
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Protocol
from urllib.parse import urlsplit

from clients import (
    AuthenticationError,
    ConfigurationError,
    HttpClient,
    PracticeManagementError,
    ValidationError,
)
from models import (
    ApiResponse,
    AuthToken,
    BulkError,
    BulkResult,
    Client,
    ClientFilters,
    ClientStatus,
    Matter,
    MatterFilters,
    MatterStatus,
    Pagination,
    PlatformConfig,
    PlatformCredential,
    TimeEntry,
    TimeEntryFilters,
    TimeEntryStatus,
)
from patterns import Patterns

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
KEY_EXPIRY = timedelta(days=365)  # API keys do not expire in practice


class PracticeManagementAdapter(Protocol):
    """Capability interface implemented by every vendor integration."""

    platform: str
    config: PlatformConfig
    credential_provider: Callable[[], PlatformCredential]

    async def authenticate(self) -> ApiResponse: ...
    async def refresh_authentication(self) -> ApiResponse: ...
    async def validate_connection(self) -> bool: ...

    async def create_time_entry(self, entry: TimeEntry) -> ApiResponse: ...
    async def get_time_entry(self, entry_id: str) -> ApiResponse: ...
    async def update_time_entry(self, entry_id: str, entry: TimeEntry) -> ApiResponse: ...
    async def delete_time_entry(self, entry_id: str) -> ApiResponse: ...
    async def get_time_entries(self, filters: TimeEntryFilters | None = None) -> ApiResponse: ...

    async def get_clients(self, filters: ClientFilters | None = None) -> ApiResponse: ...
    async def get_client(self, client_id: str) -> ApiResponse: ...
    async def create_client(self, client: Client) -> ApiResponse: ...

    async def get_matters(self, client_id: str | None = None, filters: MatterFilters | None = None) -> ApiResponse: ...
    async def get_matter(self, matter_id: str) -> ApiResponse: ...
    async def create_matter(self, matter: Matter) -> ApiResponse: ...

    async def get_users(self) -> ApiResponse: ...
    async def get_current_user(self) -> ApiResponse: ...

    async def bulk_create_time_entries(self, entries: list[TimeEntry]) -> ApiResponse: ...
    async def sync_time_entries(self, entries: list[TimeEntry]) -> ApiResponse: ...

    def close(self) -> None: ...


# ============================================================================
# Formatting & parsing
# ============================================================================


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_date(value: str | date | datetime | None) -> str | None:
    """Render a date as YYYY-MM-DD; ISO timestamps are cut to their date."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    m = Patterns.ISO_DATE_PREFIX.match(value)
    return m.group(1) if m else value


def parse_timestamp(value: Any) -> datetime | None:
    """Parse a vendor timestamp, returning None when it cannot be read."""
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def parse_number(value: Any, default: float = 0.0) -> float:
    """Vendors send numbers as strings; anything unreadable becomes the default."""
    if isinstance(value, bool):
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def parse_optional_number(value: Any) -> float | None:
    if value is None or value == "":
        return None
    return parse_number(value)


def to_str_id(value: Any) -> str | None:
    return None if value is None else str(value)


def to_int_id(value: str | None) -> int | str | None:
    """Send numeric ids as integers, but only when that round-trips exactly."""
    if value is None:
        return None
    return int(value) if Patterns.NUMERIC_ID.match(value) else value


def compact(payload: dict) -> dict:
    return {k: v for k, v in payload.items() if v is not None}


def vendor_timestamps(created: Any, updated: Any) -> dict[str, str]:
    """Normalised created_at/updated_at metadata, only for values the vendor sent."""
    stamps = {}
    for key, value in (("created_at", created), ("updated_at", updated)):
        parsed = parse_timestamp(value)
        if parsed is not None:
            stamps[key] = parsed.isoformat()
    return stamps


def build_pagination_params(limit: int = 50, offset: int = 0) -> dict[str, int]:
    return {"limit": max(min(limit, MAX_PAGE_SIZE), 1), "offset": max(offset, 0)}


# ============================================================================
# Envelope normalisation
# ============================================================================


def normalize_collection(payload: Any, key: str) -> list[dict]:
    """Accept `{key: [...]}`, `{"data": [...]}`, a bare array or a single object."""
    if payload is None:
        return []
    if isinstance(payload, list):
        return payload
    if isinstance(payload, dict):
        for candidate in (key, "data", "results"):
            if isinstance(payload.get(candidate), list):
                return payload[candidate]
        return [payload] if payload else []
    return []


def normalize_record(payload: Any, key: str) -> dict:
    if isinstance(payload, dict):
        inner = payload.get(key, payload.get("data"))
        if isinstance(inner, dict):
            return inner
        return payload
    return {}


def _envelope_total(payload: Any) -> int | None:
    if not isinstance(payload, dict):
        return None
    meta = payload.get("meta") if isinstance(payload.get("meta"), dict) else {}
    for source in (payload, meta):
        for key in ("total", "total_count", "TotalCount", "count"):
            value = source.get(key)
            if isinstance(value, int) and not isinstance(value, bool):
                return value
    return None


def map_record(response: ApiResponse, key: str, mapper: Callable[[dict], Any]) -> ApiResponse:
    if not response.success:
        return response
    return ApiResponse.ok(mapper(normalize_record(response.data, key)))


def map_collection(
    response: ApiResponse,
    key: str,
    mapper: Callable[[dict], Any],
    params: dict,
    keep: Callable[[dict], bool] | None = None,
) -> ApiResponse:
    """Map a listing. `keep` filters records after paging is worked out on the raw page."""
    if not response.success:
        return response
    items = normalize_collection(response.data, key)
    limit = params.get("limit")
    offset = params.get("offset", 0)
    total = _envelope_total(response.data)
    if total is not None:
        has_more = total > offset + len(items)
    else:
        # without a total, a full page suggests another one
        has_more = limit is not None and len(items) >= limit
    pagination = Pagination(limit=limit or len(items), offset=offset, total=total, has_more=has_more)
    if keep is not None:
        items = [item for item in items if keep(item)]
    return ApiResponse.ok([mapper(item) for item in items], pagination)


# ============================================================================
# Validation
# ============================================================================


def validate_time_entry(entry: TimeEntry, platform: str | None = None) -> None:
    """Raise ValidationError for entries that must never reach a vendor."""
    if not entry.client_id:
        raise ValidationError(platform, "client_id", "Client ID is required")
    if not entry.date or not Patterns.DATE_FORMAT.match(entry.date):
        raise ValidationError(platform, "date", "Date is required as YYYY-MM-DD")
    if isinstance(entry.hours, bool) or not isinstance(entry.hours, (int, float)) or entry.hours <= 0:
        raise ValidationError(platform, "hours", "Hours must be greater than 0")
    if not entry.description or not entry.description.strip():
        raise ValidationError(platform, "description", "Description is required")
    if entry.billable_rate is not None and entry.billable_rate < 0:
        raise ValidationError(platform, "billable_rate", "Rate cannot be negative")
    if entry.status not in {s.value for s in TimeEntryStatus}:
        raise ValidationError(platform, "status", f"Unknown status '{entry.status}'")


def validate_client(client: Client, platform: str | None = None) -> None:
    if not client.name or not client.name.strip():
        raise ValidationError(platform, "name", "Client name is required")
    if client.status not in {s.value for s in ClientStatus}:
        raise ValidationError(platform, "status", f"Unknown status '{client.status}'")


def validate_matter(matter: Matter, platform: str | None = None) -> None:
    if not matter.client_id:
        raise ValidationError(platform, "client_id", "Client ID is required")
    if not matter.name or not matter.name.strip():
        raise ValidationError(platform, "name", "Matter name is required")
    if not matter.open_date or not Patterns.DATE_FORMAT.match(matter.open_date):
        raise ValidationError(platform, "open_date", "Open date is required as YYYY-MM-DD")
    if matter.close_date:
        if not Patterns.DATE_FORMAT.match(matter.close_date):
            raise ValidationError(platform, "close_date", "Close date must be YYYY-MM-DD")
        if matter.close_date < matter.open_date:
            raise ValidationError(platform, "close_date", "Close date cannot be before open date")
    if matter.status not in {s.value for s in MatterStatus}:
        raise ValidationError(platform, "status", f"Unknown status '{matter.status}'")


def check(validator: Callable[..., None], record: Any, platform: str) -> ApiResponse | None:
    """Run a validator, turning its error into a failed envelope."""
    try:
        validator(record, platform)
    except ValidationError as e:
        logger.info("%s rejected before request: %s", platform, e)
        return ApiResponse.fail(e)
    return None


# ============================================================================
# Custom-field carrier for vendor-unmodeled data
# ============================================================================


def pack_custom_fields(entry: TimeEntry, unmodeled: tuple[str, ...]) -> dict:
    """Canonical metadata plus fields the vendor has no column for."""
    bag = dict(entry.metadata)
    for name in unmodeled:
        value = getattr(entry, name)
        if value is not None:
            bag[name] = value
    return bag


def unpack_custom_fields(bag: Any, unmodeled: tuple[str, ...]) -> tuple[dict, dict]:
    """Split a custom-field bag back into (unmodeled fields, metadata)."""
    metadata = dict(bag) if isinstance(bag, dict) else {}
    extracted = {name: metadata.pop(name) for name in unmodeled if name in metadata}
    return extracted, metadata


# ============================================================================
# Authentication helpers
# ============================================================================


def key_token(token: str) -> ApiResponse:
    """Local validation for key-based platforms: no round trip, far-future expiry."""
    return ApiResponse.ok(AuthToken(token=token, expires_at=utcnow() + KEY_EXPIRY))


def missing_credentials(platform: str, message: str) -> ApiResponse:
    return ApiResponse.fail(AuthenticationError(platform, message))


def credential_from_config(config: PlatformConfig) -> PlatformCredential:
    return PlatformCredential(
        platform=config.platform,
        api_key=config.api_key,
        api_secret=config.api_secret,
        access_token=config.access_token,
        refresh_token=config.refresh_token,
    )


def can_exchange(config: PlatformConfig, credential: PlatformCredential) -> bool:
    return bool(credential.refresh_token and config.client_id and config.client_secret)


def token_is_current(credential: PlatformCredential) -> bool:
    return bool(credential.access_token) and (
        credential.expires_at is None or credential.expires_at > utcnow()
    )


def token_url(base_url: str) -> str:
    parts = urlsplit(base_url)
    return f"{parts.scheme}://{parts.netloc}/oauth/token"


async def exchange_token(http: HttpClient, config: PlatformConfig, credential: PlatformCredential) -> ApiResponse:
    """OAuth refresh-token grant. The browser authorisation flow is not handled here."""
    response = await http.request(
        "POST",
        token_url(http.base_url),
        data={
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
            "client_id": config.client_id,
            "client_secret": config.client_secret,
        },
        absolute=True,
    )
    if not response.success:
        return response
    body = response.data or {}
    if not body.get("access_token"):
        return ApiResponse.fail(AuthenticationError(http.platform, "Token endpoint returned no access token"))
    expires_in = parse_number(body.get("expires_in"), default=3600)
    return ApiResponse.ok(
        AuthToken(
            token=body["access_token"],
            expires_at=utcnow() + timedelta(seconds=expires_in),
            refresh_token=body.get("refresh_token", credential.refresh_token),
        )
    )


async def authenticate_with_token(
    http: HttpClient, config: PlatformConfig, credential: PlatformCredential
) -> ApiResponse:
    """Use a still-valid access token as is, otherwise exchange the refresh token."""
    if token_is_current(credential):
        return ApiResponse.ok(
            AuthToken(
                token=credential.access_token,
                expires_at=credential.expires_at or utcnow() + KEY_EXPIRY,
                refresh_token=credential.refresh_token,
            )
        )
    if can_exchange(config, credential):
        return await exchange_token(http, config, credential)
    return missing_credentials(http.platform, "Access token expired and cannot be refreshed")


# ============================================================================
# Bulk operations
# ============================================================================


async def bulk_create(adapter: PracticeManagementAdapter, entries: list[TimeEntry]) -> ApiResponse:
    """Create entries one by one; a failing item never aborts the batch."""
    result = BulkResult()
    for entry in entries:
        try:
            response = await adapter.create_time_entry(entry)
        except PracticeManagementError as e:
            response = ApiResponse.fail(e)
        if response.success:
            result.created += 1
            result.entries.append(response.data)
        else:
            result.errors.append(BulkError(entry, response.error or "Unknown error", response.code))

    if result.errors:
        logger.warning(
            "%s bulk create had errors: total=%d created=%d errors=%d",
            adapter.platform, len(entries), result.created, len(result.errors),
        )
    return ApiResponse.ok(result)


async def bulk_sync(adapter: PracticeManagementAdapter, entries: list[TimeEntry]) -> ApiResponse:
    """Update entries that carry an id, create the rest."""
    result = BulkResult()
    for entry in entries:
        try:
            if entry.id:
                response = await adapter.update_time_entry(entry.id, entry)
            else:
                response = await adapter.create_time_entry(entry)
        except PracticeManagementError as e:
            response = ApiResponse.fail(e)
        if not response.success:
            result.errors.append(BulkError(entry, response.error or "Unknown error", response.code))
            continue
        if entry.id:
            result.updated += 1
        else:
            result.created += 1
        result.entries.append(response.data)

    logger.info(
        "%s sync completed: total=%d created=%d updated=%d errors=%d",
        adapter.platform, len(entries), result.created, result.updated, len(result.errors),
    )
    return ApiResponse.ok(result)


def require_base_url(config: PlatformConfig, build: Callable[[str], str]) -> str:
    """Base endpoint from an explicit URL or the platform subdomain."""
    if config.base_url:
        return config.base_url
    if config.subdomain:
        if not Patterns.SUBDOMAIN.match(config.subdomain):
            raise ConfigurationError(f"Invalid subdomain '{config.subdomain}'", config.platform)
        return build(config.subdomain)
    raise ConfigurationError(
        f"{config.platform}: either base_url or subdomain must be configured", config.platform
    )
