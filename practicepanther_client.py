"""
PracticePanther practice-management adapter.

PascalCase fields, bare JSON arrays for collections, HTTP Basic with the API
key and secret (or a Bearer access token). Contacts are shared with other
parties, so client listings always ask for ContactType=Client.
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

CUSTOM_FIELDS = "CustomFields"
UNMODELED: tuple[str, ...] = ()

ENTRY_STATUSES = {s.value: s.value.capitalize() for s in TimeEntryStatus}
MATTER_STATUSES = {
    MatterStatus.ACTIVE.value: "Open",
    MatterStatus.CLOSED.value: "Closed",
    MatterStatus.INACTIVE.value: "Inactive",
}


def to_pp_status(status: str | None) -> str:
    return ENTRY_STATUSES.get(status or "", "Draft")


def from_pp_status(status: str | None) -> str:
    value = (status or "").lower()
    return value if value in ENTRY_STATUSES else TimeEntryStatus.DRAFT.value


def to_pp_matter_status(status: str | None) -> str:
    return MATTER_STATUSES.get(status or "", "Inactive")


def from_pp_matter_status(status: str | None) -> str:
    for canonical, vendor in MATTER_STATUSES.items():
        if (status or "").lower() == vendor.lower():
            return canonical
    return MatterStatus.ACTIVE.value


# ============================================================================
# Mappings
# ============================================================================


def to_pp_time_entry(entry: TimeEntry) -> dict:
    return compact(
        {
            "Id": entry.id,
            "ContactId": entry.client_id,
            "MatterId": entry.matter_id,
            "Date": format_date(entry.date),
            "Hours": entry.hours,
            "Description": entry.description,
            "Rate": entry.billable_rate,
            "IsBillable": entry.billable,
            "ActivityId": entry.activity_code,
            "TaskId": entry.task_code,
            "UserId": entry.user_id,
            "Status": to_pp_status(entry.status),
            CUSTOM_FIELDS: pack_custom_fields(entry, UNMODELED) or None,
        }
    )


def from_pp_time_entry(data: dict) -> TimeEntry:
    _, metadata = unpack_custom_fields(data.get(CUSTOM_FIELDS), UNMODELED)
    metadata.update(vendor_timestamps(data.get("CreatedDate"), data.get("ModifiedDate")))
    return TimeEntry(
        id=to_str_id(data.get("Id")),
        client_id=to_str_id(data.get("ContactId")),
        matter_id=to_str_id(data.get("MatterId")),
        date=format_date(data.get("Date")),
        hours=parse_number(data.get("Hours")),
        description=data.get("Description") or "",
        billable_rate=parse_optional_number(data.get("Rate")),
        billable=data.get("IsBillable") is not False,
        activity_code=to_str_id(data.get("ActivityId")),
        task_code=to_str_id(data.get("TaskId")),
        user_id=to_str_id(data.get("UserId")),
        status=from_pp_status(data.get("Status")),
        metadata=metadata,
    )


def to_pp_client(client: Client) -> dict:
    return compact(
        {
            "Id": client.id,
            "Name": client.name,
            "Email": client.email,
            "Phone": client.phone,
            "Address": client.address,
            "IsActive": client.status == ClientStatus.ACTIVE.value,
            "DefaultRate": client.default_rate,
            "ContactType": "Client",
            CUSTOM_FIELDS: dict(client.metadata) or None,
        }
    )


def from_pp_client(data: dict) -> Client:
    _, metadata = unpack_custom_fields(data.get(CUSTOM_FIELDS), ())
    metadata.update(vendor_timestamps(data.get("CreatedDate"), data.get("ModifiedDate")))
    return Client(
        id=to_str_id(data.get("Id")),
        name=data.get("Name") or "",
        email=data.get("Email"),
        phone=data.get("Phone"),
        address=data.get("Address"),
        status=ClientStatus.ACTIVE.value if data.get("IsActive") is not False else ClientStatus.INACTIVE.value,
        default_rate=parse_optional_number(data.get("DefaultRate")),
        metadata=metadata,
    )


def to_pp_matter(matter: Matter) -> dict:
    return compact(
        {
            "Id": matter.id,
            "ContactId": matter.client_id,
            "Name": matter.name,
            "Description": matter.description,
            "Status": to_pp_matter_status(matter.status),
            "OpenDate": format_date(matter.open_date),
            "CloseDate": format_date(matter.close_date),
            "PracticeArea": matter.practice_area,
            "ResponsibleAttorney": matter.responsible_attorney,
            CUSTOM_FIELDS: dict(matter.metadata) or None,
        }
    )


def from_pp_matter(data: dict) -> Matter:
    _, metadata = unpack_custom_fields(data.get(CUSTOM_FIELDS), ())
    metadata.update(vendor_timestamps(data.get("CreatedDate"), data.get("ModifiedDate")))
    return Matter(
        id=to_str_id(data.get("Id")),
        client_id=to_str_id(data.get("ContactId")),
        name=data.get("Name") or "",
        description=data.get("Description"),
        status=from_pp_matter_status(data.get("Status")),
        open_date=format_date(data.get("OpenDate")),
        close_date=format_date(data.get("CloseDate")),
        practice_area=data.get("PracticeArea"),
        responsible_attorney=to_str_id(data.get("ResponsibleAttorney")),
        metadata=metadata,
    )


def from_pp_user(data: dict) -> User:
    metadata = {"first_name": data.get("FirstName"), "last_name": data.get("LastName")}
    metadata.update(vendor_timestamps(data.get("CreatedDate"), data.get("ModifiedDate")))
    return User(
        id=to_str_id(data.get("Id")),
        name=f"{data.get('FirstName') or ''} {data.get('LastName') or ''}".strip(),
        email=data.get("Email") or "",
        role=data.get("Role") or "user",
        is_active=data.get("IsActive") is not False,
        default_rate=parse_optional_number(data.get("DefaultRate")),
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
                "StartDate": filters.start_date,
                "EndDate": filters.end_date,
                "ContactId": filters.client_id,
                "MatterId": filters.matter_id,
                "UserId": filters.user_id,
                "IsBillable": filters.billable,
                "Status": to_pp_status(filters.status) if filters.status else None,
            }
        )
    )
    return params


def client_params(filters: ClientFilters | None) -> dict:
    filters = filters or ClientFilters()
    params = build_pagination_params(filters.limit, filters.offset)
    if filters.search:
        params["Search"] = filters.search
    if filters.status:
        params["IsActive"] = filters.status == ClientStatus.ACTIVE.value
    params["ContactType"] = "Client"
    return params


def matter_params(client_id: str | None, filters: MatterFilters | None) -> dict:
    filters = filters or MatterFilters()
    params = build_pagination_params(filters.limit, filters.offset)
    params.update(
        compact(
            {
                "ContactId": client_id,
                "Search": filters.search,
                "Status": to_pp_matter_status(filters.status) if filters.status else None,
                "PracticeArea": filters.practice_area,
                "ResponsibleAttorney": filters.responsible_attorney,
            }
        )
    )
    return params


# ============================================================================
# Adapter
# ============================================================================


class PracticePantherClient:
    """PracticePanther REST API adapter."""

    platform = "practice-panther"

    to_vendor_time_entry = staticmethod(to_pp_time_entry)
    from_vendor_time_entry = staticmethod(from_pp_time_entry)
    to_vendor_client = staticmethod(to_pp_client)
    from_vendor_client = staticmethod(from_pp_client)
    to_vendor_matter = staticmethod(to_pp_matter)
    from_vendor_matter = staticmethod(from_pp_matter)

    def __init__(self, config: PlatformConfig, session: requests.Session | None = None, credential_provider=None):
        self.config = config
        self.credential_provider = credential_provider or (lambda: credential_from_config(config))
        base_url = require_base_url(config, lambda sub: f"https://{sub}.practicepanther.com/api/v1")
        self.http = HttpClient(self.platform, base_url, self._auth, config.timeout_s, session)

    def _auth(self) -> dict:
        credential = self.credential_provider()
        if credential.api_key and credential.api_secret:
            return {"auth": (credential.api_key, credential.api_secret)}
        if credential.access_token:
            return {"headers": {"Authorization": f"Bearer {credential.access_token}"}}
        return {}

    # --- Authentication ---

    async def authenticate(self) -> ApiResponse:
        credential = self.credential_provider()
        if credential.api_key and credential.api_secret:
            return key_token(credential.api_key)
        if credential.access_token or credential.refresh_token:
            return await authenticate_with_token(self.http, self.config, credential)
        return missing_credentials(self.platform, "No API key and secret provided")

    async def refresh_authentication(self) -> ApiResponse:
        credential = self.credential_provider()
        if credential.api_key and credential.api_secret:
            return key_token(credential.api_key)
        if can_exchange(self.config, credential):
            return await exchange_token(self.http, self.config, credential)
        return missing_credentials(self.platform, "No refresh token available")

    async def validate_connection(self) -> bool:
        response = await self.get_current_user()
        if not response.success:
            logger.info("practice-panther connection check failed: %s", response.error)
        return response.success

    # --- Time entries ---

    async def create_time_entry(self, entry: TimeEntry) -> ApiResponse:
        invalid = check(validate_time_entry, entry, self.platform)
        if invalid:
            return invalid
        response = await self.http.request("POST", "/TimeEntries", json=to_pp_time_entry(entry))
        return map_record(response, "TimeEntry", from_pp_time_entry)

    async def get_time_entry(self, entry_id: str) -> ApiResponse:
        response = await self.http.request("GET", f"/TimeEntries/{entry_id}")
        return map_record(response, "TimeEntry", from_pp_time_entry)

    async def update_time_entry(self, entry_id: str, entry: TimeEntry) -> ApiResponse:
        invalid = check(validate_time_entry, entry, self.platform)
        if invalid:
            return invalid
        response = await self.http.request("PUT", f"/TimeEntries/{entry_id}", json=to_pp_time_entry(entry))
        return map_record(response, "TimeEntry", from_pp_time_entry)

    async def delete_time_entry(self, entry_id: str) -> ApiResponse:
        response = await self.http.request("DELETE", f"/TimeEntries/{entry_id}")
        return ApiResponse.ok() if response.success else response

    async def get_time_entries(self, filters: TimeEntryFilters | None = None) -> ApiResponse:
        params = time_entry_params(filters)
        response = await self.http.request("GET", "/TimeEntries", params=params)
        return map_collection(response, "TimeEntries", from_pp_time_entry, params)

    # --- Clients ---

    async def get_clients(self, filters: ClientFilters | None = None) -> ApiResponse:
        params = client_params(filters)
        response = await self.http.request("GET", "/Contacts", params=params)
        return map_collection(response, "Contacts", from_pp_client, params)

    async def get_client(self, client_id: str) -> ApiResponse:
        response = await self.http.request("GET", f"/Contacts/{client_id}")
        return map_record(response, "Contact", from_pp_client)

    async def create_client(self, client: Client) -> ApiResponse:
        invalid = check(validate_client, client, self.platform)
        if invalid:
            return invalid
        response = await self.http.request("POST", "/Contacts", json=to_pp_client(client))
        return map_record(response, "Contact", from_pp_client)

    # --- Matters ---

    async def get_matters(self, client_id: str | None = None, filters: MatterFilters | None = None) -> ApiResponse:
        params = matter_params(client_id, filters)
        response = await self.http.request("GET", "/Matters", params=params)
        return map_collection(response, "Matters", from_pp_matter, params)

    async def get_matter(self, matter_id: str) -> ApiResponse:
        response = await self.http.request("GET", f"/Matters/{matter_id}")
        return map_record(response, "Matter", from_pp_matter)

    async def create_matter(self, matter: Matter) -> ApiResponse:
        invalid = check(validate_matter, matter, self.platform)
        if invalid:
            return invalid
        response = await self.http.request("POST", "/Matters", json=to_pp_matter(matter))
        return map_record(response, "Matter", from_pp_matter)

    # --- Users ---

    async def get_users(self) -> ApiResponse:
        response = await self.http.request("GET", "/Users")
        return map_collection(response, "Users", from_pp_user, {})

    async def get_current_user(self) -> ApiResponse:
        response = await self.http.request("GET", "/Users/current")
        return map_record(response, "User", from_pp_user)

    # --- Bulk ---

    async def bulk_create_time_entries(self, entries: list[TimeEntry]) -> ApiResponse:
        return await bulk_create(self, entries)

    async def sync_time_entries(self, entries: list[TimeEntry]) -> ApiResponse:
        return await bulk_sync(self, entries)

    def close(self) -> None:
        self.http.close()
