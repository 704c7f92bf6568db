"""Tests for conflict detection and the resolution policy."""

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from conflicts import (
    ConflictPolicy,
    ConflictResolver,
    complement,
    content_hash,
    decide,
    merge,
    same_value,
    substantive_diff,
)
from models import BillingEntry, Client, ConflictOutcome, ConflictReason, SyncStatus, TimeEntry

T0 = datetime(2026, 2, 3, 12, 0, tzinfo=timezone.utc)


def entry(**overrides) -> TimeEntry:
    values = dict(
        id="te-1",
        client_id="c-1",
        matter_id="m-1",
        date="2026-02-03",
        hours=1.0,
        description="Draft motion",
        billable_rate=250.0,
        status="approved",
    )
    values.update(overrides)
    return TimeEntry(**values)


def billing(time_entry: TimeEntry, **overrides) -> BillingEntry:
    values = dict(
        id="be-1",
        time_entry=time_entry,
        client=Client(id="c-1", name="Acme"),
        platform="cleo",
        status=SyncStatus.SYNCED,
        external_id="te-1",
        synced_at=T0,
        updated_at=T0,
        synced_hash=content_hash(time_entry),
    )
    values.update(overrides)
    return BillingEntry(**values)


def stamped(time_entry: TimeEntry, when: datetime) -> TimeEntry:
    return replace(time_entry, metadata={**time_entry.metadata, "updated_at": when.isoformat()})


# ---------------------------------------------------------------------------
# Field comparison
# ---------------------------------------------------------------------------

class TestComparison:

    @pytest.mark.parametrize(
        "a, b, expected",
        [
            (1.0, 1.004, True),      # inside tolerance
            (1.0, 1.02, False),
            ("Draft motion", " draft MOTION ", True),
            ("a", "b", False),
            (None, None, True),
            (None, 250.0, False),
        ],
    )
    def test_same_value(self, a, b, expected):
        assert same_value(a, b) is expected

    def test_diff_names_changed_fields(self):
        assert substantive_diff(entry(), entry(hours=2.0, description="Other")) == ["hours", "description"]

    def test_metadata_is_not_substantive(self):
        assert substantive_diff(entry(), entry(metadata={"note": "x"}, id="other")) == []

    def test_hash_ignores_formatting_noise(self):
        assert content_hash(entry()) == content_hash(entry(description="draft motion ", hours=1.001))
        assert content_hash(entry()) != content_hash(entry(hours=1.5))

    def test_merge_keeps_local_fields(self):
        local = entry(metadata={"origin_id": "msg-1"})
        remote = entry(hours=9.0, metadata={"updated_at": T0.isoformat()})
        merged = merge(local, remote)
        assert merged.hours == 1.0
        assert merged.metadata == {"origin_id": "msg-1", "updated_at": T0.isoformat()}


# ---------------------------------------------------------------------------
# Policy decisions
# ---------------------------------------------------------------------------

class TestDecide:

    def test_identical_merges(self):
        assert decide(entry(), entry()) == (ConflictOutcome.AUTO_MERGED, [])

    def test_manual_policy_waits(self):
        outcome, fields = decide(entry(), entry(hours=2.0), ConflictPolicy.MANUAL, T0, T0 + timedelta(hours=1))
        assert outcome == ConflictOutcome.PENDING_MANUAL
        assert fields == ["hours"]

    @pytest.mark.parametrize(
        "local_time, remote_time, expected",
        [
            (T0 + timedelta(hours=1), T0, ConflictOutcome.LOCAL_WINS),
            (T0, T0 + timedelta(hours=1), ConflictOutcome.REMOTE_WINS),
            (T0, T0, ConflictOutcome.PENDING_MANUAL),
            (None, T0, ConflictOutcome.PENDING_MANUAL),
        ],
    )
    def test_latest_wins(self, local_time, remote_time, expected):
        outcome, _ = decide(entry(), entry(hours=2.0), ConflictPolicy.LATEST_WINS, local_time, remote_time)
        assert outcome == expected

    @pytest.mark.parametrize("policy", list(ConflictPolicy))
    @pytest.mark.parametrize(
        "local, remote, local_time, remote_time",
        [
            (entry(), entry(), T0, T0),
            (entry(), entry(hours=2.0), T0 + timedelta(minutes=1), T0),
            (entry(), entry(hours=2.0), T0, T0 + timedelta(minutes=1)),
            (entry(), entry(description="Changed"), T0, T0),
            (entry(), entry(status="billed"), None, T0),
        ],
    )
    def test_swapping_sides_gives_complement(self, policy, local, remote, local_time, remote_time):
        forward, _ = decide(local, remote, policy, local_time, remote_time)
        backward, _ = decide(remote, local, policy, remote_time, local_time)
        assert backward == complement(forward)

    def test_complement(self):
        assert complement(ConflictOutcome.LOCAL_WINS) == ConflictOutcome.REMOTE_WINS
        assert complement(ConflictOutcome.REMOTE_WINS) == ConflictOutcome.LOCAL_WINS
        assert complement(ConflictOutcome.AUTO_MERGED) == ConflictOutcome.AUTO_MERGED
        assert complement(ConflictOutcome.PENDING_MANUAL) == ConflictOutcome.PENDING_MANUAL


# ---------------------------------------------------------------------------
# Detection
# ---------------------------------------------------------------------------

class TestDetect:

    def test_newer_timestamp(self):
        local = entry()
        resolver = ConflictResolver()
        remote = stamped(local, T0 + timedelta(minutes=1))
        assert resolver.detect(billing(local), remote) == ConflictReason.REMOTE_MODIFIED

    def test_timestamp_not_newer(self):
        local = entry()
        remote = stamped(entry(hours=3.0), T0 - timedelta(minutes=1))
        # The timestamp is authoritative when the vendor sends one
        assert ConflictResolver().detect(billing(local), remote) is None

    def test_baseline_is_last_seen_remote_timestamp(self):
        local = entry()
        seen = T0 + timedelta(hours=2)
        remote = stamped(local, seen)
        assert ConflictResolver().detect(billing(local, remote_updated_at=seen), remote) is None

    def test_hash_fallback(self):
        local = entry()
        assert ConflictResolver().detect(billing(local), entry(hours=1.5)) == ConflictReason.CONTENT_CHANGED
        assert ConflictResolver().detect(billing(local), entry()) is None

    def test_diff_fallback_without_hash(self):
        local = entry()
        record = billing(local, synced_hash=None, synced_at=None)
        assert ConflictResolver().detect(record, entry(matter_id="m-2")) == ConflictReason.CONTENT_CHANGED


class TestEvaluate:

    def test_record_stays_pending_until_applied(self):
        local = entry()
        remote = stamped(entry(hours=2.0), T0 + timedelta(hours=1))
        resolver = ConflictResolver(ConflictPolicy.LATEST_WINS)

        conflict, proposed = resolver.evaluate(billing(local, owner_id="u-1"), remote, ConflictReason.REMOTE_MODIFIED)

        assert proposed == ConflictOutcome.REMOTE_WINS
        assert conflict.outcome == ConflictOutcome.PENDING_MANUAL
        assert conflict.fields == ["hours"]
        assert conflict.owner_id == "u-1"
        assert conflict.entry_id == "be-1"

    def test_vendor_conflict_without_remote(self):
        conflict, proposed = ConflictResolver().evaluate(billing(entry()), None, ConflictReason.VENDOR_CONFLICT)
        assert proposed == ConflictOutcome.PENDING_MANUAL
        assert conflict.remote is None
