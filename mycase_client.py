"""
MyCase practice-management adapter.

MyCase wraps request bodies in a singular key ({"time_entry": {...}}), uses
integer ids, calls matters "cases" and calls draft entries "unbilled". It
has no task codes, so `task_code` rides along in `custom_fields`.
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
    pack_custom_fields,
    parse_number,
    parse_optional_number,
    require_base_url,
    to_int_id,
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
UNMODELED = ("task_code",)

UNBILLED = "unbilled"


def to_mycase_status(status: str | None) -> str:
    if not status or status == TimeEntryStatus.DRAFT.value:
        return UNBILLED
    return status


def from_mycase_status(status: str | None) -> str:
    value = (status or "").lower()
    if value in (TimeEntryStatus.PENDING.value, TimeEntryStatus.APPROVED.value, TimeEntryStatus.BILLED.value):
        return value
    return TimeEntryStatus.DRAFT.value


def from_case_stage(stage: str | None) -> str:
    value = (stage or "").lower()
    if value in (MatterStatus.CLOSED.value, MatterStatus.INACTIVE.value):
        return value
    return MatterStatus.ACTIVE.value


# ============================================================================
# Mappings
# ============================================================================


def to_mycase_time_entry(entry: TimeEntry) -> dict:
    return compact(
        {
            "id": to_int_id(entry.id),
            "contact_id": to_int_id(entry.client_id),
            "case_id": to_int_id(entry.matter_id),
            "date_performed": format_date(entry.date),
            "quantity_in_hours": entry.hours,
            "description": entry.description,
            "rate": entry.billable_rate,
            "billable": entry.billable,
            "activity_type_id": to_int_id(entry.activity_code),
            "user_id": to_int_id(entry.user_id),
            "status": to_mycase_status(entry.status),
            CUSTOM_FIELDS: pack_custom_fields(entry, UNMODELED) or None,
        }
    )


def from_mycase_time_entry(data: dict) -> TimeEntry:
    extracted, metadata = unpack_custom_fields(data.get(CUSTOM_FIELDS), UNMODELED)
    metadata.update(vendor_timestamps(data.get("created_at"), data.get("updated_at")))
    return TimeEntry(
        id=to_str_id(data.get("id")),
        client_id=to_str_id(data.get("contact_id")),
        matter_id=to_str_id(data.get("case_id")),
        date=format_date(data.get("date_performed")),
        hours=parse_number(data.get("quantity_in_hours")),
        description=data.get("description") or "",
        billable_rate=parse_optional_number(data.get("rate")),
        billable=data.get("billable") is not False,
        activity_code=to_str_id(data.get("activity_type_id")),
        task_code=to_str_id(extracted.get("task_code")),
        user_id=to_str_id(data.get("user_id")),
        status=from_mycase_status(data.get("status")),
        metadata=metadata,
    )


def to_mycase_client(client: Client) -> dict:
    # MyCase keeps no default rate on contacts
    bag = dict(client.metadata)
    if client.default_rate is not None:
        bag["default_rate"] = client.default_rate
    return compact(
        {
            "id": to_int_id(client.id),
            "name": client.name,
            "email_address": client.email,
            "phone_number": client.phone,
            "address": client.address,
            "is_company": True,
            "contact_type": "Client",
            "status": client.status,
            CUSTOM_FIELDS: bag or None,
        }
    )


def from_mycase_client(data: dict) -> Client:
    extracted, metadata = unpack_custom_fields(data.get(CUSTOM_FIELDS), ("default_rate",))
    metadata.update(vendor_timestamps(data.get("created_at"), data.get("updated_at")))
    return Client(
        id=to_str_id(data.get("id")),
        name=data.get("name") or data.get("company_name") or "",
        email=data.get("email_address"),
        phone=data.get("phone_number"),
        address=data.get("address"),
        status=ClientStatus.ACTIVE.value if data.get("status") == "active" else ClientStatus.INACTIVE.value,
        default_rate=parse_optional_number(extracted.get("default_rate")),
        metadata=metadata,
    )


def to_mycase_matter(matter: Matter) -> dict:
    return compact(
        {
            "id": to_int_id(matter.id),
            "contact_id": to_int_id(matter.client_id),
            "name": matter.name,
            "description": matter.description,
            "case_stage": matter.status,
            "opened_date": format_date(matter.open_date),
            "closed_date": format_date(matter.close_date),
            "practice_area": matter.practice_area,
            "lead_counsel_user_id": to_int_id(matter.responsible_attorney),
            CUSTOM_FIELDS: dict(matter.metadata) or None,
        }
    )


def from_mycase_matter(data: dict) -> Matter:
    _, metadata = unpack_custom_fields(data.get(CUSTOM_FIELDS), ())
    metadata.update(vendor_timestamps(data.get("created_at"), data.get("updated_at")))
    return Matter(
        id=to_str_id(data.get("id")),
        client_id=to_str_id(data.get("contact_id")),
        name=data.get("name") or "",
        description=data.get("description"),
        status=from_case_stage(data.get("case_stage")),
        open_date=format_date(data.get("opened_date")),
        close_date=format_date(data.get("closed_date")),
        practice_area=data.get("practice_area"),
        responsible_attorney=to_str_id(data.get("lead_counsel_user_id")),
        metadata=metadata,
    )


def from_mycase_user(data: dict) -> User:
    metadata = {"first_name": data.get("first_name"), "last_name": data.get("last_name")}
    metadata.update(vendor_timestamps(data.get("created_at"), data.get("updated_at")))
    return User(
        id=to_str_id(data.get("id")),
        name=f"{data.get('first_name') or ''} {data.get('last_name') or ''}".strip(),
        email=data.get("email") or "",
        role=data.get("role") or "user",
        is_active=data.get("status") == "active",
        default_rate=parse_optional_number(data.get("hourly_rate")),
        metadata=compact(metadata),
    )


def is_client_contact(data: dict) -> bool:
    return bool(data.get("is_company")) or data.get("contact_type") == "Client"


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
                "case_id": filters.matter_id,
                "user_id": filters.user_id,
                "billable": filters.billable,
                "status": to_mycase_status(filters.status) if filters.status else None,
            }
        )
    )
    return params


def client_params(filters: ClientFilters | None) -> dict:
    filters = filters or ClientFilters()
    params = build_pagination_params(filters.limit, filters.offset)
    params.update(compact({"search": filters.search, "status": filters.status}))
    return params


def matter_params(client_id: str | None, filters: MatterFilters | None) -> dict:
    filters = filters or MatterFilters()
    params = build_pagination_params(filters.limit, filters.offset)
    params.update(
        compact(
            {
                "contact_id": client_id,
                "search": filters.search,
                "case_stage": filters.status,
                "practice_area": filters.practice_area,
            }
        )
    )
    return params


# ============================================================================
# Adapter
# ============================================================================


class MyCaseClient:
    """MyCase REST API adapter."""

    platform = "mycase"

    to_vendor_time_entry = staticmethod(to_mycase_time_entry)
    from_vendor_time_entry = staticmethod(from_mycase_time_entry)
    to_vendor_client = staticmethod(to_mycase_client)
    from_vendor_client = staticmethod(from_mycase_client)
    to_vendor_matter = staticmethod(to_mycase_matter)
    from_vendor_matter = staticmethod(from_mycase_matter)

    def __init__(self, config: PlatformConfig, session: requests.Session | None = None, credential_provider=None):
        self.config = config
        self.credential_provider = credential_provider or (lambda: credential_from_config(config))
        base_url = require_base_url(config, lambda sub: f"https://{sub}.mycase.com/api/v1")
        self.http = HttpClient(self.platform, base_url, self._auth, config.timeout_s, session)

    def _auth(self) -> dict:
        credential = self.credential_provider()
        if credential.access_token:
            return {"headers": {"Authorization": f"Bearer {credential.access_token}"}}
        if credential.api_key:
            return {"headers": {"Authorization": f"Token {credential.api_key}"}}
        return {}

    # --- Authentication ---

    async def authenticate(self) -> ApiResponse:
        credential = self.credential_provider()
        if credential.access_token or credential.refresh_token:
            return await authenticate_with_token(self.http, self.config, credential)
        if credential.api_key:
            return key_token(credential.api_key)
        return missing_credentials(self.platform, "No access token or API key provided")

    async def refresh_authentication(self) -> ApiResponse:
        credential = self.credential_provider()
        if can_exchange(self.config, credential):
            return await exchange_token(self.http, self.config, credential)
        if credential.api_key:
            return key_token(credential.api_key)
        return missing_credentials(self.platform, "No refresh token available")

    async def validate_connection(self) -> bool:
        response = await self.get_current_user()
        if not response.success:
            logger.info("mycase connection check failed: %s", response.error)
        return response.success

    # --- Time entries ---

    async def create_time_entry(self, entry: TimeEntry) -> ApiResponse:
        invalid = check(validate_time_entry, entry, self.platform)
        if invalid:
            return invalid
        body = {"time_entry": to_mycase_time_entry(entry)}
        response = await self.http.request("POST", "/time_entries", json=body)
        return map_record(response, "time_entry", from_mycase_time_entry)

    async def get_time_entry(self, entry_id: str) -> ApiResponse:
        response = await self.http.request("GET", f"/time_entries/{entry_id}")
        return map_record(response, "time_entry", from_mycase_time_entry)

    async def update_time_entry(self, entry_id: str, entry: TimeEntry) -> ApiResponse:
        invalid = check(validate_time_entry, entry, self.platform)
        if invalid:
            return invalid
        body = {"time_entry": to_mycase_time_entry(entry)}
        response = await self.http.request("PUT", f"/time_entries/{entry_id}", json=body)
        return map_record(response, "time_entry", from_mycase_time_entry)

    async def delete_time_entry(self, entry_id: str) -> ApiResponse:
        response = await self.http.request("DELETE", f"/time_entries/{entry_id}")
        return ApiResponse.ok() if response.success else response

    async def get_time_entries(self, filters: TimeEntryFilters | None = None) -> ApiResponse:
        params = time_entry_params(filters)
        response = await self.http.request("GET", "/time_entries", params=params)
        return map_collection(response, "time_entries", from_mycase_time_entry, params)

    # --- Clients ---

    async def get_clients(self, filters: ClientFilters | None = None) -> ApiResponse:
        params = client_params(filters)
        response = await self.http.request("GET", "/contacts", params=params)
        # Contacts include opposing parties and witnesses; keep the clients only
        return map_collection(response, "contacts", from_mycase_client, params, keep=is_client_contact)

    async def get_client(self, client_id: str) -> ApiResponse:
        response = await self.http.request("GET", f"/contacts/{client_id}")
        return map_record(response, "contact", from_mycase_client)

    async def create_client(self, client: Client) -> ApiResponse:
        invalid = check(validate_client, client, self.platform)
        if invalid:
            return invalid
        response = await self.http.request("POST", "/contacts", json={"contact": to_mycase_client(client)})
        return map_record(response, "contact", from_mycase_client)

    # --- Matters (cases) ---

    async def get_matters(self, client_id: str | None = None, filters: MatterFilters | None = None) -> ApiResponse:
        params = matter_params(client_id, filters)
        response = await self.http.request("GET", "/cases", params=params)
        return map_collection(response, "cases", from_mycase_matter, params)

    async def get_matter(self, matter_id: str) -> ApiResponse:
        response = await self.http.request("GET", f"/cases/{matter_id}")
        return map_record(response, "case", from_mycase_matter)

    async def create_matter(self, matter: Matter) -> ApiResponse:
        invalid = check(validate_matter, matter, self.platform)
        if invalid:
            return invalid
        response = await self.http.request("POST", "/cases", json={"case": to_mycase_matter(matter)})
        return map_record(response, "case", from_mycase_matter)

    # --- Users ---

    async def get_users(self) -> ApiResponse:
        response = await self.http.request("GET", "/users")
        return map_collection(response, "users", from_mycase_user, {})

    async def get_current_user(self) -> ApiResponse:
        response = await self.http.request("GET", "/users/me")
        return map_record(response, "user", from_mycase_user)

    # --- Bulk ---

    async def bulk_create_time_entries(self, entries: list[TimeEntry]) -> ApiResponse:
        return await bulk_create(self, entries)

    async def sync_time_entries(self, entries: list[TimeEntry]) -> ApiResponse:
        return await bulk_sync(self, entries)

    def close(self) -> None:
        self.http.close()
