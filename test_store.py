"""Tests for the JSON-backed record store."""

from datetime import datetime, timezone

from models import (
    BillingEntry,
    Client,
    ConflictOutcome,
    ConflictReason,
    Matter,
    PlatformCredential,
    SyncAttempt,
    SyncConflict,
    SyncStatus,
    TimeEntry,
)
from store import JsonStore

T0 = datetime(2026, 2, 3, 12, 0, tzinfo=timezone.utc)


def make_entry(entry_id="be-1", status=SyncStatus.PENDING, platform="cleo", owner_id="u-1") -> BillingEntry:
    return BillingEntry(
        id=entry_id,
        time_entry=TimeEntry(client_id="c-1", date="2026-02-03", hours=0.5, description="Call",
                             metadata={"origin_id": "msg-1"}),
        client=Client(id="c-1", name="Acme", default_rate=200.0),
        matter=Matter(id="m-1", client_id="c-1", name="Lease", open_date="2026-01-01"),
        platform=platform,
        owner_id=owner_id,
        status=status,
        created_at=T0,
        next_retry_at=T0,
    )


class TestJsonStore:

    def test_filters(self):
        store = JsonStore()
        store.save_entry(make_entry("a", SyncStatus.APPROVED, "cleo", "u-1"))
        store.save_entry(make_entry("b", SyncStatus.APPROVED, "mycase", "u-1"))
        store.save_entry(make_entry("c", SyncStatus.SYNCED, "cleo", "u-2"))

        assert [e.id for e in store.list_entries(status=SyncStatus.APPROVED)] == ["a", "b"]
        assert [e.id for e in store.list_entries(platform="cleo")] == ["a", "c"]
        assert [e.id for e in store.list_entries(owner_id="u-2")] == ["c"]
        assert store.get_entry("missing") is None

    def test_persists_and_reloads(self, tmp_path):
        path = str(tmp_path / "store.json")
        store = JsonStore(path)
        original = make_entry(status=SyncStatus.FAILED)
        store.save_entry(original)
        conflict = SyncConflict(
            id="cf-1",
            entry_id="be-1",
            platform="cleo",
            local=original.time_entry,
            remote=None,
            reason=ConflictReason.VENDOR_CONFLICT,
            detected_at=T0,
        )
        store.save_conflict(conflict)
        store.save_credential(PlatformCredential(platform="cleo", access_token="at-1", expires_at=T0))

        reloaded = JsonStore(path)
        reloaded.load()

        assert reloaded.get_entry("be-1") == original
        assert reloaded.get_conflict("cf-1") == conflict
        assert reloaded.get_credential("cleo").expires_at == T0
        assert reloaded.list_conflicts(outcome=ConflictOutcome.PENDING_MANUAL) == [conflict]

    def test_missing_file_loads_empty(self, tmp_path):
        store = JsonStore(str(tmp_path / "nope.json"))
        store.load()
        assert store.list_entries() == []

    def test_memory_only_never_writes(self, tmp_path):
        store = JsonStore()
        store.save_entry(make_entry())
        store.flush()
        assert list(tmp_path.iterdir()) == []

    def test_history_survives_reload(self, tmp_path):
        path = str(tmp_path / "store.json")
        store = JsonStore(path)
        entry = make_entry(status=SyncStatus.SYNCED)
        entry.history = [
            SyncAttempt(
                operation="create", started_at=T0, completed_at=T0, code="RATE_LIMIT", error="Rate limit exceeded"
            ),
            SyncAttempt(operation="create", started_at=T0, completed_at=T0, success=True, external_id="555"),
        ]
        store.save_entry(entry)

        reloaded = JsonStore(path)
        reloaded.load()

        assert reloaded.get_entry("be-1").history == entry.history

    def test_delete(self, tmp_path):
        path = str(tmp_path / "store.json")
        store = JsonStore(path)
        store.save_entry(make_entry("a"))
        store.save_entry(make_entry("b"))
        store.delete_entry("a")
        store.delete_entry("missing")

        reloaded = JsonStore(path)
        reloaded.load()
        assert [e.id for e in reloaded.list_entries()] == ["b"]
