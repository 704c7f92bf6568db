"""
Conflict detection and resolution policy.

Detection prefers the vendor's last-modified timestamp (every adapter
normalises it into metadata["updated_at"]) and falls back to a content hash
of the substantive fields for vendors that do not send one.

Everything here is pure. The sync engine owns the entries and performs the
corrective call once a conflict is resolved.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import replace
from datetime import datetime
from enum import Enum

from adapters import parse_timestamp, utcnow
from models import BillingEntry, ConflictOutcome, ConflictReason, SyncConflict, TimeEntry

logger = logging.getLogger(__name__)

SUBSTANTIVE_FIELDS = ("hours", "billable_rate", "description", "status", "client_id", "matter_id", "date")
NUMBER_TOLERANCE = 0.01


class ConflictPolicy(str, Enum):
    MANUAL = "manual"  # any substantive difference waits for a person
    LATEST_WINS = "latest_wins"  # newer modification wins, ties go to a person


def complement(outcome: ConflictOutcome) -> ConflictOutcome:
    """The outcome seen from the other side."""
    if outcome == ConflictOutcome.LOCAL_WINS:
        return ConflictOutcome.REMOTE_WINS
    if outcome == ConflictOutcome.REMOTE_WINS:
        return ConflictOutcome.LOCAL_WINS
    return outcome


def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _normalize(value):
    if _is_number(value):
        return round(float(value), 2)
    if isinstance(value, str):
        return value.strip().lower()
    return value


def same_value(a, b) -> bool:
    if _is_number(a) and _is_number(b):
        return abs(a - b) <= NUMBER_TOLERANCE + 1e-9
    if isinstance(a, str) and isinstance(b, str):
        return a.strip().lower() == b.strip().lower()
    return a == b


def substantive_diff(local: TimeEntry, remote: TimeEntry) -> list[str]:
    return [name for name in SUBSTANTIVE_FIELDS if not same_value(getattr(local, name), getattr(remote, name))]


def content_hash(entry: TimeEntry) -> str:
    """SHA-256 over the substantive fields, insensitive to formatting noise."""
    payload = {name: _normalize(getattr(entry, name)) for name in SUBSTANTIVE_FIELDS}
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode()).hexdigest()


def modified_at(entry: TimeEntry) -> datetime | None:
    return parse_timestamp(entry.metadata.get("updated_at"))


def merge(local: TimeEntry, remote: TimeEntry) -> TimeEntry:
    """Keep local substantive fields, absorb remote metadata."""
    return replace(local, metadata={**local.metadata, **remote.metadata})


def decide(
    local: TimeEntry,
    remote: TimeEntry,
    policy: ConflictPolicy = ConflictPolicy.MANUAL,
    local_modified: datetime | None = None,
    remote_modified: datetime | None = None,
) -> tuple[ConflictOutcome, list[str]]:
    """Outcome for one local/remote pair.

    Swapping the two sides (and their timestamps) yields complement(outcome).
    """
    fields = substantive_diff(local, remote)
    if not fields:
        return ConflictOutcome.AUTO_MERGED, []
    if policy == ConflictPolicy.LATEST_WINS and local_modified and remote_modified:
        if local_modified > remote_modified:
            return ConflictOutcome.LOCAL_WINS, fields
        if remote_modified > local_modified:
            return ConflictOutcome.REMOTE_WINS, fields
    return ConflictOutcome.PENDING_MANUAL, fields


class ConflictResolver:
    def __init__(self, policy: ConflictPolicy = ConflictPolicy.MANUAL):
        self.policy = policy

    def detect(self, entry: BillingEntry, remote: TimeEntry) -> ConflictReason | None:
        """Has the vendor copy changed since we last synced it?"""
        remote_updated = modified_at(remote)
        baseline = entry.remote_updated_at or entry.synced_at
        if remote_updated is not None and baseline is not None:
            return ConflictReason.REMOTE_MODIFIED if remote_updated > baseline else None
        if entry.synced_hash:
            return ConflictReason.CONTENT_CHANGED if content_hash(remote) != entry.synced_hash else None
        return ConflictReason.CONTENT_CHANGED if substantive_diff(entry.time_entry, remote) else None

    def evaluate(
        self, entry: BillingEntry, remote: TimeEntry | None, reason: ConflictReason
    ) -> tuple[SyncConflict, ConflictOutcome]:
        """Open a pending-manual conflict record plus the outcome the policy proposes for it."""
        conflict = SyncConflict(
            id=str(uuid.uuid4()),
            entry_id=entry.id,
            platform=entry.platform,
            owner_id=entry.owner_id,
            local=entry.time_entry,
            remote=remote,
            reason=reason,
            detected_at=utcnow(),
        )
        if remote is None:
            # The vendor refused the write without telling us its version
            return conflict, ConflictOutcome.PENDING_MANUAL
        outcome, fields = decide(entry.time_entry, remote, self.policy, entry.updated_at, modified_at(remote))
        conflict.fields = fields
        logger.info(
            "Conflict on %s (%s): %s, fields=%s", entry.id, reason.value, outcome.value, ",".join(fields) or "-"
        )
        return conflict, outcome
