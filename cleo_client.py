"""
Cleo practice-management adapter.

Cleo speaks snake_case JSON under https://{subdomain}.gocleo.com/api/v1 and
accepts either an API key or an OAuth access token as a Bearer credential.
Canonical metadata travels in the `custom_fields` object of each record.
"""

import logging

import requests

from adapters import (
    authenticate_with_token,
    build_pagination_params,
    bulk_create,
    bulk_sync,
    can_exchange,
    check,
    compact,
    credential_from_config,
    exchange_token,
    format_date,
    key_token,
    map_collection,
    map_record,
    missing_credentials,
    parse_number,
    parse_optional_number,
    pack_custom_fields,
    require_base_url,
    to_str_id,
    unpack_custom_fields,
    validate_client,
    validate_matter,
    validate_time_entry,
    vendor_timestamps,
)
from clients import HttpClient
from models import (
    ApiResponse,
    Client,
    ClientFilters,
    ClientStatus,
    Matter,
    MatterFilters,
    MatterStatus,
    PlatformConfig,
    TimeEntry,
    TimeEntryFilters,
    TimeEntryStatus,
    User,
)

logger = logging.getLogger(__name__)

CUSTOM_FIELDS = "custom_fields"
UNMODELED: tuple[str, ...] = ()  # Cleo has a column for every canonical field


# ============================================================================
# Mappings
# ============================================================================


def to_cleo_time_entry(entry: TimeEntry) -> dict:
    return compact(
        {
            "id": entry.id,
            "contact_id": entry.client_id,
            "matter_id": entry.matter_id,
            "date": format_date(entry.date),
            "hours": entry.hours,
            "description": entry.description,
            "rate": entry.billable_rate,
            "billable": entry.billable,
            "activity_id": entry.activity_code,
            "task_id": entry.task_code,
            "user_id": entry.user_id,
            "status": entry.status or TimeEntryStatus.DRAFT.value,
            CUSTOM_FIELDS: pack_custom_fields(entry, UNMODELED) or None,
        }
    )


def from_cleo_time_entry(data: dict) -> TimeEntry:
    _, metadata = unpack_custom_fields(data.get(CUSTOM_FIELDS), UNMODELED)
    metadata.update(vendor_timestamps(data.get("created_at"), data.get("updated_at")))
    return TimeEntry(
        id=to_str_id(data.get("id")),
        client_id=to_str_id(data.get("contact_id")),
        matter_id=to_str_id(data.get("matter_id")),
        date=format_date(data.get("date")),
        hours=parse_number(data.get("hours")),
        description=data.get("description") or "",
        billable_rate=parse_optional_number(data.get("rate")),
        billable=data.get("billable") is not False,
        activity_code=to_str_id(data.get("activity_id")),
        task_code=to_str_id(data.get("task_id")),
        user_id=to_str_id(data.get("user_id")),
        status=data.get("status") or TimeEntryStatus.DRAFT.value,
        metadata=metadata,
    )


def to_cleo_client(client: Client) -> dict:
    return compact(
        {
            "id": client.id,
            "name": client.name,
            "email": client.email,
            "phone": client.phone,
            "address": client.address,
            "is_active": client.status == ClientStatus.ACTIVE.value,
            "default_rate": client.default_rate,
            CUSTOM_FIELDS: dict(client.metadata) or None,
        }
    )


def from_cleo_client(data: dict) -> Client:
    _, metadata = unpack_custom_fields(data.get(CUSTOM_FIELDS), ())
    metadata.update(vendor_timestamps(data.get("created_at"), data.get("updated_at")))
    return Client(
        id=to_str_id(data.get("id")),
        name=data.get("name") or "",
        email=data.get("email"),
        phone=data.get("phone"),
        address=data.get("address"),
        status=ClientStatus.ACTIVE.value if data.get("is_active") is not False else ClientStatus.INACTIVE.value,
        default_rate=parse_optional_number(data.get("default_rate")),
        metadata=metadata,
    )


def to_cleo_matter(matter: Matter) -> dict:
    is_active = matter.status == MatterStatus.ACTIVE.value
    bag = dict(matter.metadata)
    if _matter_status({"is_active": is_active, "close_date": matter.close_date}) != matter.status:
        # is_active + close_date cannot express it
        bag["status"] = matter.status
    return compact(
        {
            "id": matter.id,
            "contact_id": matter.client_id,
            "name": matter.name,
            "description": matter.description,
            "is_active": is_active,
            "open_date": format_date(matter.open_date),
            "close_date": format_date(matter.close_date),
            "practice_area": matter.practice_area,
            "responsible_attorney": matter.responsible_attorney,
            CUSTOM_FIELDS: bag or None,
        }
    )


def _matter_status(data: dict) -> str:
    # Cleo only has an active flag; an inactive matter with a close date is closed
    if data.get("is_active") is not False:
        return MatterStatus.ACTIVE.value
    return MatterStatus.CLOSED.value if data.get("close_date") else MatterStatus.INACTIVE.value


def from_cleo_matter(data: dict) -> Matter:
    extracted, metadata = unpack_custom_fields(data.get(CUSTOM_FIELDS), ("status",))
    metadata.update(vendor_timestamps(data.get("created_at"), data.get("updated_at")))
    return Matter(
        id=to_str_id(data.get("id")),
        client_id=to_str_id(data.get("contact_id")),
        name=data.get("name") or "",
        description=data.get("description"),
        status=extracted.get("status") or _matter_status(data),
        open_date=format_date(data.get("open_date")),
        close_date=format_date(data.get("close_date")),
        practice_area=data.get("practice_area"),
        responsible_attorney=to_str_id(data.get("responsible_attorney")),
        metadata=metadata,
    )


def from_cleo_user(data: dict) -> User:
    metadata = {"first_name": data.get("first_name"), "last_name": data.get("last_name")}
    metadata.update(vendor_timestamps(data.get("created_at"), data.get("updated_at")))
    return User(
        id=to_str_id(data.get("id")),
        name=f"{data.get('first_name') or ''} {data.get('last_name') or ''}".strip(),
        email=data.get("email") or "",
        role=data.get("role") or "user",
        is_active=data.get("is_active") is not False,
        default_rate=parse_optional_number(data.get("default_rate")),
        metadata=compact(metadata),
    )


# ============================================================================
# Filters
# ============================================================================


def time_entry_params(filters: TimeEntryFilters | None) -> dict:
    filters = filters or TimeEntryFilters()
    params = build_pagination_params(filters.limit, filters.offset)
    params.update(
        compact(
            {
                "start_date": filters.start_date,
                "end_date": filters.end_date,
                "contact_id": filters.client_id,
                "matter_id": filters.matter_id,
                "user_id": filters.user_id,
                "billable": filters.billable,
                "status": filters.status,
            }
        )
    )
    return params


def client_params(filters: ClientFilters | None) -> dict:
    filters = filters or ClientFilters()
    params = build_pagination_params(filters.limit, filters.offset)
    if filters.search:
        params["search"] = filters.search
    if filters.status:
        params["is_active"] = filters.status == ClientStatus.ACTIVE.value
    return params


def matter_params(client_id: str | None, filters: MatterFilters | None) -> dict:
    filters = filters or MatterFilters()
    params = build_pagination_params(filters.limit, filters.offset)
    params.update(
        compact(
            {
                "contact_id": client_id,
                "search": filters.search,
                "practice_area": filters.practice_area,
                "responsible_attorney": filters.responsible_attorney,
            }
        )
    )
    if filters.status:
        params["is_active"] = filters.status == MatterStatus.ACTIVE.value
    return params


# ============================================================================
# Adapter
# ============================================================================


class CleoClient:
    """Cleo REST API adapter."""

    platform = "cleo"

    to_vendor_time_entry = staticmethod(to_cleo_time_entry)
    from_vendor_time_entry = staticmethod(from_cleo_time_entry)
    to_vendor_client = staticmethod(to_cleo_client)
    from_vendor_client = staticmethod(from_cleo_client)
    to_vendor_matter = staticmethod(to_cleo_matter)
    from_vendor_matter = staticmethod(from_cleo_matter)

    def __init__(self, config: PlatformConfig, session: requests.Session | None = None, credential_provider=None):
        self.config = config
        self.credential_provider = credential_provider or (lambda: credential_from_config(config))
        base_url = require_base_url(config, lambda sub: f"https://{sub}.gocleo.com/api/v1")
        self.http = HttpClient(self.platform, base_url, self._auth, config.timeout_s, session)

    def _auth(self) -> dict:
        credential = self.credential_provider()
        token = credential.api_key or credential.access_token
        return {"headers": {"Authorization": f"Bearer {token}"}} if token else {}

    # --- Authentication ---

    async def authenticate(self) -> ApiResponse:
        credential = self.credential_provider()
        if credential.api_key:
            return key_token(credential.api_key)
        if credential.access_token or credential.refresh_token:
            return await authenticate_with_token(self.http, self.config, credential)
        return missing_credentials(self.platform, "No API key or access token provided")

    async def refresh_authentication(self) -> ApiResponse:
        credential = self.credential_provider()
        if credential.api_key:
            return key_token(credential.api_key)
        if can_exchange(self.config, credential):
            return await exchange_token(self.http, self.config, credential)
        return missing_credentials(self.platform, "No refresh token available")

    async def validate_connection(self) -> bool:
        response = await self.get_current_user()
        if not response.success:
            logger.info("cleo connection check failed: %s", response.error)
        return response.success

    # --- Time entries ---

    async def create_time_entry(self, entry: TimeEntry) -> ApiResponse:
        invalid = check(validate_time_entry, entry, self.platform)
        if invalid:
            return invalid
        response = await self.http.request("POST", "/time_entries", json=to_cleo_time_entry(entry))
        return map_record(response, "time_entry", from_cleo_time_entry)

    async def get_time_entry(self, entry_id: str) -> ApiResponse:
        response = await self.http.request("GET", f"/time_entries/{entry_id}")
        return map_record(response, "time_entry", from_cleo_time_entry)

    async def update_time_entry(self, entry_id: str, entry: TimeEntry) -> ApiResponse:
        invalid = check(validate_time_entry, entry, self.platform)
        if invalid:
            return invalid
        response = await self.http.request("PUT", f"/time_entries/{entry_id}", json=to_cleo_time_entry(entry))
        return map_record(response, "time_entry", from_cleo_time_entry)

    async def delete_time_entry(self, entry_id: str) -> ApiResponse:
        response = await self.http.request("DELETE", f"/time_entries/{entry_id}")
        return ApiResponse.ok() if response.success else response

    async def get_time_entries(self, filters: TimeEntryFilters | None = None) -> ApiResponse:
        params = time_entry_params(filters)
        response = await self.http.request("GET", "/time_entries", params=params)
        return map_collection(response, "time_entries", from_cleo_time_entry, params)

    # --- Clients ---

    async def get_clients(self, filters: ClientFilters | None = None) -> ApiResponse:
        params = client_params(filters)
        response = await self.http.request("GET", "/contacts", params=params)
        return map_collection(response, "contacts", from_cleo_client, params)

    async def get_client(self, client_id: str) -> ApiResponse:
        response = await self.http.request("GET", f"/contacts/{client_id}")
        return map_record(response, "contact", from_cleo_client)

    async def create_client(self, client: Client) -> ApiResponse:
        invalid = check(validate_client, client, self.platform)
        if invalid:
            return invalid
        response = await self.http.request("POST", "/contacts", json=to_cleo_client(client))
        return map_record(response, "contact", from_cleo_client)

    # --- Matters ---

    async def get_matters(self, client_id: str | None = None, filters: MatterFilters | None = None) -> ApiResponse:
        params = matter_params(client_id, filters)
        response = await self.http.request("GET", "/matters", params=params)
        return map_collection(response, "matters", from_cleo_matter, params)

    async def get_matter(self, matter_id: str) -> ApiResponse:
        response = await self.http.request("GET", f"/matters/{matter_id}")
        return map_record(response, "matter", from_cleo_matter)

    async def create_matter(self, matter: Matter) -> ApiResponse:
        invalid = check(validate_matter, matter, self.platform)
        if invalid:
            return invalid
        response = await self.http.request("POST", "/matters", json=to_cleo_matter(matter))
        return map_record(response, "matter", from_cleo_matter)

    # --- Users ---

    async def get_users(self) -> ApiResponse:
        response = await self.http.request("GET", "/users")
        return map_collection(response, "users", from_cleo_user, {})

    async def get_current_user(self) -> ApiResponse:
        response = await self.http.request("GET", "/user")
        return map_record(response, "user", from_cleo_user)

    # --- Bulk ---

    async def bulk_create_time_entries(self, entries: list[TimeEntry]) -> ApiResponse:
        return await bulk_create(self, entries)

    async def sync_time_entries(self, entries: list[TimeEntry]) -> ApiResponse:
        return await bulk_sync(self, entries)

    def close(self) -> None:
        self.http.close()
