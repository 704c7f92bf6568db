"""Record store for billing entries, conflicts and credentials.

Everything lives in memory. When a path is given, the whole store is written
to a JSON file after every save and read back by `load()`.
"""

import json
import logging
import os

from models import (
    BillingEntry,
    ConflictOutcome,
    PlatformCredential,
    SyncConflict,
    SyncStatus,
    billing_entry_from_dict,
    conflict_from_dict,
    credential_from_dict,
    to_dict,
)

logger = logging.getLogger(__name__)


class JsonStore:
    def __init__(self, path: str | None = None):
        self.path = path
        self._entries: dict[str, BillingEntry] = {}
        self._conflicts: dict[str, SyncConflict] = {}
        self._credentials: dict[str, PlatformCredential] = {}

    # --- Persistence ---

    def load(self) -> None:
        if not self.path or not os.path.exists(self.path):
            return
        with open(self.path) as f:
            data = json.load(f)
        self._entries = {e["id"]: billing_entry_from_dict(e) for e in data.get("entries", [])}
        self._conflicts = {c["id"]: conflict_from_dict(c) for c in data.get("conflicts", [])}
        self._credentials = {c["platform"]: credential_from_dict(c) for c in data.get("credentials", [])}
        logger.info(
            "Loaded store %s: %d entries, %d conflicts", self.path, len(self._entries), len(self._conflicts)
        )

    def flush(self) -> None:
        if not self.path:
            return
        data = {
            "entries": [to_dict(e) for e in self._entries.values()],
            "conflicts": [to_dict(c) for c in self._conflicts.values()],
            "credentials": [to_dict(c) for c in self._credentials.values()],
        }
        with open(self.path, "w") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)

    # --- Billing entries ---

    def get_entry(self, entry_id: str) -> BillingEntry | None:
        return self._entries.get(entry_id)

    def save_entry(self, entry: BillingEntry) -> None:
        self._entries[entry.id] = entry
        self.flush()

    def delete_entry(self, entry_id: str) -> None:
        if self._entries.pop(entry_id, None) is not None:
            self.flush()

    def list_entries(
        self,
        status: SyncStatus | None = None,
        platform: str | None = None,
        owner_id: str | None = None,
    ) -> list[BillingEntry]:
        return [
            e
            for e in self._entries.values()
            if (status is None or e.status == status)
            and (platform is None or e.platform == platform)
            and (owner_id is None or e.owner_id == owner_id)
        ]

    # --- Conflicts ---

    def get_conflict(self, conflict_id: str) -> SyncConflict | None:
        return self._conflicts.get(conflict_id)

    def save_conflict(self, conflict: SyncConflict) -> None:
        self._conflicts[conflict.id] = conflict
        self.flush()

    def delete_conflict(self, conflict_id: str) -> None:
        if self._conflicts.pop(conflict_id, None) is not None:
            self.flush()

    def list_conflicts(
        self,
        entry_id: str | None = None,
        outcome: ConflictOutcome | None = None,
        owner_id: str | None = None,
    ) -> list[SyncConflict]:
        return [
            c
            for c in self._conflicts.values()
            if (entry_id is None or c.entry_id == entry_id)
            and (outcome is None or c.outcome == outcome)
            and (owner_id is None or c.owner_id == owner_id)
        ]

    # --- Credentials ---

    def get_credential(self, platform: str) -> PlatformCredential | None:
        return self._credentials.get(platform)

    def save_credential(self, credential: PlatformCredential) -> None:
        self._credentials[credential.platform] = credential
        self.flush()
