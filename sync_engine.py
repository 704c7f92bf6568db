"""
Billing-entry state machine and synchronisation engine.

    pending -> approved -> synced
                  |  ^
                  v  |
                 failed          pending|approved|failed -> rejected

The engine is the only place that changes BillingEntry.status and the only
place that turns an adapter error code into a retry or give-up decision.
"""

import asyncio
import logging
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable

from adapters import PracticeManagementAdapter, utcnow, validate_time_entry
from auth_manager import AuthManager
from clients import (
    TRANSIENT_CODES,
    AuthenticationError,
    ConflictError,
    NetworkError,
    PracticeManagementError,
)
from conflicts import ConflictResolver, content_hash, merge, modified_at
from health import HealthMonitor
from models import (
    ApiResponse,
    BillingEntry,
    Candidate,
    CleanupResult,
    Client,
    ClientFilters,
    ConflictOutcome,
    ConflictReason,
    EntrySyncStatus,
    Matter,
    MatterFilters,
    SyncAttempt,
    SyncConfig,
    SyncConflict,
    SyncResult,
    SyncRunSummary,
    SyncStats,
    SyncStatus,
    TimeEntry,
    User,
)
from store import JsonStore
from utils import backoff_delay, round_up_hours

logger = logging.getLogger(__name__)

TRANSITIONS = {
    SyncStatus.PENDING: {SyncStatus.APPROVED, SyncStatus.REJECTED},
    SyncStatus.APPROVED: {SyncStatus.SYNCED, SyncStatus.FAILED, SyncStatus.REJECTED},
    SyncStatus.FAILED: {SyncStatus.APPROVED, SyncStatus.REJECTED},
    SyncStatus.SYNCED: set(),
    SyncStatus.REJECTED: set(),
}

EDITABLE = (SyncStatus.PENDING, SyncStatus.FAILED)

ALREADY_IN_FLIGHT = "ALREADY_IN_FLIGHT"
PLATFORM_UNAVAILABLE = "PLATFORM_UNAVAILABLE"
NOT_RETRYABLE = "NOT_RETRYABLE"


class StateTransitionError(Exception):
    """Raised for a status change the billing-entry state machine does not allow."""

    def __init__(self, entry_id: str, current: SyncStatus, target: SyncStatus, reason: str | None = None):
        message = f"Entry {entry_id}: cannot move from {current.value} to {target.value}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message)
        self.entry_id = entry_id
        self.current = current
        self.target = target


class SyncEngine:
    def __init__(
        self,
        adapters: dict[str, PracticeManagementAdapter],
        store: JsonStore | None = None,
        auth: AuthManager | None = None,
        health: HealthMonitor | None = None,
        resolver: ConflictResolver | None = None,
        config: SyncConfig | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.adapters = adapters
        self.store = store if store is not None else JsonStore()
        self.config = config or SyncConfig()
        self.auth = auth or AuthManager(self.store)
        self.health = health
        self.resolver = resolver or ConflictResolver()
        self._sleep = sleep
        self._in_flight: set[str] = set()
        self._retry_tasks: dict[str, asyncio.Task] = {}
        # Adapter calls that outlived their timeout, by entry id
        self._stragglers: dict[str, asyncio.Future] = {}
        self._dispatching: set[asyncio.Task] = set()
        self._sync_task: asyncio.Task | None = None
        self._closing = False
        self._semaphores: dict[str, asyncio.Semaphore] = {}

        for adapter in adapters.values():
            if not self.auth.is_registered(adapter.platform):
                self.auth.register(adapter)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def init(self, start_health: bool = False, start_sync: bool | None = None) -> None:
        """Load persisted state and re-arm retries that were scheduled before a restart.

        The background sync loop starts when `start_sync` is true, or when it is
        left unset and the config enables `background_sync`.
        """
        self.store.load()
        self.auth.reload()
        if self.health and start_health:
            self.health.start()
        if start_sync is None:
            start_sync = self.config.background_sync
        if start_sync:
            self.start()
        if not self.config.auto_retry:
            return
        now = utcnow()
        for entry in self.store.list_entries(status=SyncStatus.FAILED):
            if entry.retryable and entry.next_retry_at:
                self._schedule_retry(entry.id, max((entry.next_retry_at - now).total_seconds(), 0.0))

    async def shutdown(self) -> None:
        """Stop background work, let running retries finish and close the adapters."""
        self._closing = True
        await self.stop()
        while self._retry_tasks:
            tasks = list(self._retry_tasks.values())
            for task in tasks:
                # A retry already talking to the vendor is allowed to settle
                if task not in self._dispatching:
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            self._prune_retries()
        if self._stragglers:
            logger.info("Waiting for %d abandoned request(s) to finish", len(self._stragglers))
            await asyncio.gather(*list(self._stragglers.values()), return_exceptions=True)
        if self.health:
            await self.health.stop()
        for adapter in self.adapters.values():
            adapter.close()
        self.store.flush()

    async def wait_for_retries(self) -> None:
        """Block until no automatic retry is scheduled."""
        while self._retry_tasks:
            await asyncio.gather(*list(self._retry_tasks.values()), return_exceptions=True)
            self._prune_retries()

    def _prune_retries(self) -> None:
        # Tasks cancelled before their first step never reach their own cleanup
        for entry_id, task in list(self._retry_tasks.items()):
            if task.done():
                del self._retry_tasks[entry_id]

    def start(self) -> None:
        """Run sync_all for every platform every `sync_interval_s` seconds."""
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._sync_task is None:
            return
        self._sync_task.cancel()
        try:
            await self._sync_task
        except asyncio.CancelledError:
            pass
        self._sync_task = None

    async def _run(self) -> None:
        logger.info("Background sync started (every %gs)", self.config.sync_interval_s)
        while True:
            for platform in self.adapters:
                try:
                    await self.sync_all(platform)
                except PracticeManagementError as e:
                    logger.error("%s background sync failed: %s", platform, e)
            await self._sleep(self.config.sync_interval_s)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _get(self, entry_id: str) -> BillingEntry:
        entry = self.store.get_entry(entry_id)
        if entry is None:
            raise KeyError(f"Unknown billing entry '{entry_id}'")
        return entry

    def entry(self, entry_id: str) -> BillingEntry:
        return self._get(entry_id)

    def _transition(self, entry: BillingEntry, target: SyncStatus) -> None:
        if target not in TRANSITIONS[entry.status]:
            raise StateTransitionError(entry.id, entry.status, target)
        logger.info("Entry %s: %s -> %s", entry.id, entry.status.value, target.value)
        entry.status = target
        entry.updated_at = utcnow()
        self.store.save_entry(entry)

    def _adapter(self, platform: str) -> PracticeManagementAdapter:
        adapter = self.adapters.get(platform)
        if adapter is None:
            raise KeyError(f"No adapter configured for platform '{platform}'")
        return adapter

    def _new_entry(self, **kwargs) -> BillingEntry:
        now = utcnow()
        entry = BillingEntry(
            id=str(uuid.uuid4()),
            status=SyncStatus.PENDING,
            created_at=now,
            updated_at=now,
            max_attempts=self.config.max_attempts,
            **kwargs,
        )
        self.store.save_entry(entry)
        logger.info("Entry %s created (pending) for %s", entry.id, entry.platform)
        return entry

    def _default_platform(self) -> str:
        if len(self.adapters) != 1:
            raise ValueError("Platform is required when more than one adapter is configured")
        return next(iter(self.adapters))

    async def create_from_candidate(
        self, candidate: Candidate, platform: str | None = None, owner_id: str | None = None
    ) -> BillingEntry:
        """New pending entry from an upstream candidate, with client/matter looked up remotely."""
        platform = platform or self._default_platform()
        self._adapter(platform)

        client = await self._resolve_client(platform, candidate.suggested_client)
        matter = await self._resolve_matter(platform, client, candidate.suggested_matter)
        time_entry = TimeEntry(
            client_id=client.id,
            matter_id=matter.id if matter else None,
            date=candidate.timestamp.date().isoformat(),
            hours=round_up_hours(candidate.suggested_hours),
            description=candidate.suggested_description,
            user_id=owner_id,
            billable_rate=client.default_rate,
        )
        return self._new_entry(
            time_entry=time_entry,
            client=client,
            matter=matter,
            platform=platform,
            origin_id=candidate.origin_id,
            owner_id=owner_id,
        )

    def create_entry(
        self,
        time_entry: TimeEntry,
        client: Client,
        platform: str,
        matter: Matter | None = None,
        user: User | None = None,
        owner_id: str | None = None,
    ) -> BillingEntry:
        """Manually created entry. Validation happens at approval."""
        self._adapter(platform)
        return self._new_entry(
            time_entry=time_entry, client=client, matter=matter, user=user, platform=platform, owner_id=owner_id
        )

    def update_entry(self, entry_id: str, **changes) -> BillingEntry:
        """Correct time-entry fields of a pending or failed entry before (re)approval."""
        entry = self._get(entry_id)
        if entry.status not in EDITABLE:
            raise StateTransitionError(entry.id, entry.status, entry.status, "only pending or failed entries can be edited")
        entry.time_entry = replace(entry.time_entry, **changes)
        entry.updated_at = utcnow()
        self.store.save_entry(entry)
        return entry

    def approve(self, entry_id: str) -> BillingEntry:
        """pending|failed -> approved. Local only; raises ValidationError for invalid entries."""
        entry = self._get(entry_id)
        if SyncStatus.APPROVED not in TRANSITIONS[entry.status]:
            raise StateTransitionError(entry.id, entry.status, SyncStatus.APPROVED)
        validate_time_entry(entry.time_entry, entry.platform)

        if entry.status == SyncStatus.FAILED:
            # Resubmission starts a fresh attempt budget
            self._cancel_retry(entry.id)
            entry.retry_count = 0
            entry.retryable = False
            entry.next_retry_at = None
            entry.last_error = None
            entry.last_error_code = None
        entry.approved_at = utcnow()
        self._transition(entry, SyncStatus.APPROVED)
        return entry

    def reject(self, entry_id: str) -> BillingEntry:
        entry = self._get(entry_id)
        if entry.id in self._in_flight:
            raise StateTransitionError(entry.id, entry.status, SyncStatus.REJECTED, "synchronization in flight")
        self._transition(entry, SyncStatus.REJECTED)
        self._cancel_retry(entry.id)
        entry.retryable = False
        entry.next_retry_at = None
        self.store.save_entry(entry)
        return entry

    # ------------------------------------------------------------------
    # Synchronisation
    # ------------------------------------------------------------------

    def _skipped(self, entry: BillingEntry, code: str, message: str) -> SyncResult:
        logger.info("Entry %s skipped: %s", entry.id, message)
        return SyncResult(
            entry_id=entry.id, success=False, status=entry.status, error=message, code=code, skipped=True
        )

    def _platform_available(self, platform: str) -> bool:
        return self.health is None or self.health.is_available(platform)

    async def sync_entry(self, entry_id: str) -> SyncResult:
        """Push one approved entry to its platform."""
        entry = self._get(entry_id)
        if entry.id in self._in_flight:
            return self._skipped(entry, ALREADY_IN_FLIGHT, "Synchronization already in flight")
        if entry.status != SyncStatus.APPROVED:
            raise StateTransitionError(entry.id, entry.status, SyncStatus.SYNCED, "only approved entries are synced")
        if not self._platform_available(entry.platform):
            return self._skipped(entry, PLATFORM_UNAVAILABLE, f"{entry.platform} is currently unreachable")

        self._in_flight.add(entry.id)
        try:
            return await self._dispatch(entry)
        finally:
            self._release(entry.id)

    async def retry(self, entry_id: str) -> SyncResult:
        """failed -> approved -> attempt, for entries that still have attempts left."""
        entry = self._get(entry_id)
        if entry.id in self._in_flight:
            return self._skipped(entry, ALREADY_IN_FLIGHT, "Synchronization already in flight")
        if entry.status != SyncStatus.FAILED:
            raise StateTransitionError(entry.id, entry.status, SyncStatus.APPROVED, "only failed entries are retried")
        if not entry.retryable:
            return SyncResult(
                entry_id=entry.id, success=False, status=entry.status, error=entry.last_error, code=NOT_RETRYABLE
            )
        if not self._platform_available(entry.platform):
            return self._skipped(entry, PLATFORM_UNAVAILABLE, f"{entry.platform} is currently unreachable")

        self._in_flight.add(entry.id)
        try:
            self._cancel_retry(entry.id)
            entry.next_retry_at = None
            self._transition(entry, SyncStatus.APPROVED)
            return await self._dispatch(entry)
        finally:
            self._release(entry.id)

    async def sync_all(self, platform: str) -> SyncRunSummary:
        """Sequentially sync every approved entry of one platform."""
        self._adapter(platform)
        summary = SyncRunSummary(platform=platform)
        for entry in self.store.list_entries(status=SyncStatus.APPROVED, platform=platform):
            try:
                result = await self.sync_entry(entry.id)
            except StateTransitionError as e:
                # Status changed since the listing (rejected, synced elsewhere)
                result = self._skipped(entry, "STATUS_CHANGED", str(e))
            summary.results.append(result)
            if result.skipped:
                summary.skipped_count += 1
                continue
            summary.total_processed += 1
            if result.success:
                summary.synced_count += 1
            else:
                summary.error_count += 1

        logger.info(
            "%s sync run: processed=%d synced=%d errors=%d skipped=%d",
            platform, summary.total_processed, summary.synced_count, summary.error_count, summary.skipped_count,
        )
        return summary

    def _semaphore(self, platform: str) -> asyncio.Semaphore:
        if platform not in self._semaphores:
            self._semaphores[platform] = asyncio.Semaphore(self.config.max_concurrency)
        return self._semaphores[platform]

    async def _call(
        self, platform: str, operation: Callable[[], Awaitable[ApiResponse]], entry_id: str | None = None
    ) -> ApiResponse:
        """One adapter call under the platform's concurrency cap and the request timeout.

        A worker thread cannot be interrupted, so a timed-out write keeps running.
        It is remembered per entry and the entry stays claimed until it returns.
        """
        async with self._semaphore(platform):
            call = asyncio.ensure_future(operation())
            try:
                return await asyncio.wait_for(asyncio.shield(call), self.config.request_timeout_s)
            except asyncio.TimeoutError:
                self._abandon(call, entry_id)
                return ApiResponse.fail(
                    NetworkError(f"{platform}: request timed out after {self.config.request_timeout_s:g}s", platform)
                )
            except asyncio.CancelledError:
                self._abandon(call, entry_id)
                raise
            except PracticeManagementError as e:
                return ApiResponse.fail(e)

    def _abandon(self, call: asyncio.Future, entry_id: str | None) -> None:
        if entry_id is None or call.done():
            call.cancel()
            return
        self._stragglers[entry_id] = call

    def _release(self, entry_id: str) -> None:
        """Drop the in-flight claim, or defer it until an abandoned write returns."""
        call = self._stragglers.get(entry_id)
        if call is None or call.done():
            self._stragglers.pop(entry_id, None)
            self._in_flight.discard(entry_id)
            return
        logger.warning("Entry %s: request still running after timeout, entry stays claimed", entry_id)
        call.add_done_callback(lambda done: self._settle(entry_id, done))

    def _settle(self, entry_id: str, call: asyncio.Future) -> None:
        if self._stragglers.get(entry_id) is call:
            del self._stragglers[entry_id]
        self._in_flight.discard(entry_id)
        if call.cancelled():
            return
        if call.exception() is not None:
            logger.warning("Entry %s: abandoned request failed: %s", entry_id, call.exception())
            return
        response = call.result()
        entry = self.store.get_entry(entry_id)
        if entry is None or entry.external_id or not response.success:
            return
        if isinstance(response.data, TimeEntry) and response.data.id:
            # The vendor created the record after all; a retry must update it
            entry.external_id = response.data.id
            self.store.save_entry(entry)
            logger.warning("Entry %s: late answer from %s, remote id %s", entry_id, entry.platform, entry.external_id)

    async def _send(
        self, platform: str, operation: Callable[[], Awaitable[ApiResponse]], entry_id: str | None = None
    ) -> ApiResponse:
        """Authenticated call with the refresh-then-fail sequence for 401s."""
        try:
            await self.auth.ensure_valid(platform)
        except PracticeManagementError as e:
            return ApiResponse.fail(e)

        response = await self._call(platform, operation, entry_id)
        if response.code != AuthenticationError.code:
            return response

        logger.info("%s answered 401, refreshing credentials once", platform)
        try:
            refreshed = await self.auth.handle_unauthorized(platform)
        except PracticeManagementError as e:
            return ApiResponse.fail(e)
        if not refreshed:
            return response
        response = await self._call(platform, operation, entry_id)
        if response.code == AuthenticationError.code:
            self.auth.invalidate(platform, response.error or "Rejected after refresh")
        return response

    async def _dispatch(self, entry: BillingEntry) -> SyncResult:
        """Create or update the vendor copy of an approved entry, then settle its status."""
        adapter = self._adapter(entry.platform)
        time_entry = entry.time_entry
        attempt = SyncAttempt(operation="update" if entry.external_id else "create", started_at=utcnow())
        if entry.external_id:
            external_id = entry.external_id
            response = await self._send(
                entry.platform, lambda: adapter.update_time_entry(external_id, time_entry), entry.id
            )
        else:
            response = await self._send(entry.platform, lambda: adapter.create_time_entry(time_entry), entry.id)

        if response.success and not (isinstance(response.data, TimeEntry) and response.data.id):
            response = ApiResponse(
                success=False, error=f"{entry.platform}: response carried no entry id", code="BAD_RESPONSE"
            )
        self._record(entry, attempt, response)
        if response.success:
            return self._on_success(entry, response.data)
        return self._on_failure(entry, response)

    def _record(self, entry: BillingEntry, attempt: SyncAttempt, response: ApiResponse) -> None:
        attempt.completed_at = utcnow()
        attempt.success = response.success
        attempt.code = response.code
        attempt.error = response.error
        if response.success and isinstance(response.data, TimeEntry):
            attempt.external_id = response.data.id
        entry.history.append(attempt)

    def _on_success(self, entry: BillingEntry, remote: TimeEntry) -> SyncResult:
        entry.external_id = remote.id
        entry.time_entry = replace(entry.time_entry, id=remote.id)
        entry.synced_at = utcnow()
        entry.synced_hash = content_hash(entry.time_entry)
        entry.remote_updated_at = modified_at(remote)
        entry.retryable = False
        entry.next_retry_at = None
        entry.last_error = None
        entry.last_error_code = None
        self._transition(entry, SyncStatus.SYNCED)
        if self.health:
            self.health.report_success(entry.platform)
        return SyncResult(entry_id=entry.id, success=True, status=entry.status, external_id=entry.external_id)

    def _on_failure(self, entry: BillingEntry, response: ApiResponse) -> SyncResult:
        """Map the error code to a retry decision. This is the only place that does so."""
        code = response.code
        entry.last_error = response.error
        entry.last_error_code = code
        entry.next_retry_at = None
        conflict_id = None
        delay = None

        if code == ConflictError.code:
            conflict, _ = self.resolver.evaluate(entry, None, ConflictReason.VENDOR_CONFLICT)
            self.store.save_conflict(conflict)
            conflict_id = conflict.id
            entry.retryable = False
        elif code in TRANSIENT_CODES:
            if code == NetworkError.code and self.health:
                self.health.report_failure(entry.platform, response.error)
            entry.retry_count += 1
            if entry.retry_count >= entry.max_attempts:
                entry.retryable = False
                logger.warning(
                    "Entry %s: giving up after %d attempts: %s", entry.id, entry.retry_count, response.error
                )
            else:
                entry.retryable = True
                delay = backoff_delay(
                    entry.retry_count,
                    self.config.base_delay_s,
                    self.config.multiplier,
                    self.config.max_delay_s,
                    response.retry_after,
                )
                entry.next_retry_at = utcnow() + timedelta(seconds=delay)
        else:
            entry.retryable = False

        self._transition(entry, SyncStatus.FAILED)
        logger.warning(
            "Entry %s failed (%s, %s): %s",
            entry.id, code, "retryable" if entry.retryable else "permanent", response.error,
        )
        if delay is not None and self.config.auto_retry:
            self._schedule_retry(entry.id, delay)
        return SyncResult(
            entry_id=entry.id,
            success=False,
            status=entry.status,
            error=response.error,
            code=code,
            conflict_id=conflict_id,
        )

    # ------------------------------------------------------------------
    # Automatic retries
    # ------------------------------------------------------------------

    def _schedule_retry(self, entry_id: str, delay: float) -> None:
        if self._closing:
            logger.info("Entry %s: shutting down, retry left to the next start", entry_id)
            return
        self._cancel_retry(entry_id)
        logger.info("Entry %s: retry scheduled in %.1fs", entry_id, delay)
        self._retry_tasks[entry_id] = asyncio.create_task(self._auto_retry(entry_id, delay))

    def _cancel_retry(self, entry_id: str) -> None:
        task = self._retry_tasks.get(entry_id)
        # The running retry task stays registered until it finishes
        if task is None or task is asyncio.current_task():
            return
        del self._retry_tasks[entry_id]
        task.cancel()

    async def _auto_retry(self, entry_id: str, delay: float) -> None:
        task = asyncio.current_task()
        try:
            await self._sleep(delay)
            entry = self.store.get_entry(entry_id)
            # A rejection (or manual resubmission) may have happened while we slept
            if entry is None or entry.status != SyncStatus.FAILED or not entry.retryable:
                logger.info("Entry %s: scheduled retry dropped", entry_id)
                return
            self._dispatching.add(task)
            result = await self.retry(entry_id)
            if result.skipped and result.code in (PLATFORM_UNAVAILABLE, ALREADY_IN_FLIGHT):
                wait = self.config.base_delay_s
                if result.code == PLATFORM_UNAVAILABLE and self.health:
                    wait = max(self.health.retry_in(entry.platform), wait)
                self._schedule_retry(entry_id, wait)
        finally:
            self._dispatching.discard(task)
            if self._retry_tasks.get(entry_id) is task:
                del self._retry_tasks[entry_id]

    # ------------------------------------------------------------------
    # Conflicts
    # ------------------------------------------------------------------

    def _open_conflict(self, entry_id: str) -> SyncConflict | None:
        for conflict in self.store.list_conflicts(entry_id=entry_id, outcome=ConflictOutcome.PENDING_MANUAL):
            return conflict
        return None

    async def check_conflicts(self, platform: str) -> list[SyncConflict]:
        """Compare every synced entry of a platform with its vendor copy."""
        adapter = self._adapter(platform)
        found = []
        for entry in self.store.list_entries(status=SyncStatus.SYNCED, platform=platform):
            if not entry.external_id or entry.id in self._in_flight or self._open_conflict(entry.id):
                continue
            external_id = entry.external_id
            response = await self._send(platform, lambda: adapter.get_time_entry(external_id))
            if not response.success:
                logger.warning("Entry %s: cannot read remote copy %s: %s", entry.id, external_id, response.error)
                continue
            remote = response.data
            reason = self.resolver.detect(entry, remote)
            if reason is None:
                continue

            conflict, proposed = self.resolver.evaluate(entry, remote, reason)
            self.store.save_conflict(conflict)
            found.append(conflict)
            if proposed == ConflictOutcome.PENDING_MANUAL:
                continue
            self._in_flight.add(entry.id)
            try:
                await self._apply_resolution(entry, conflict, proposed)
            finally:
                self._release(entry.id)
        return found

    def list_conflicts(self, user_id: str | None = None, include_resolved: bool = False) -> list[SyncConflict]:
        conflicts = self.store.list_conflicts(owner_id=user_id)
        if include_resolved:
            return conflicts
        return [c for c in conflicts if c.outcome == ConflictOutcome.PENDING_MANUAL]

    async def resolve_conflict(self, conflict_id: str, outcome: ConflictOutcome) -> SyncResult:
        """Settle a pending-manual conflict with one corrective action toward the losing side."""
        conflict = self.store.get_conflict(conflict_id)
        if conflict is None:
            raise KeyError(f"Unknown conflict '{conflict_id}'")
        outcome = ConflictOutcome(outcome)
        if conflict.outcome != ConflictOutcome.PENDING_MANUAL:
            raise ValueError(f"Conflict {conflict_id} is already resolved ({conflict.outcome.value})")
        if outcome == ConflictOutcome.PENDING_MANUAL:
            raise ValueError("Resolution outcome must be local-wins, remote-wins or auto-merged")

        entry = self._get(conflict.entry_id)
        if entry.id in self._in_flight:
            return self._skipped(entry, ALREADY_IN_FLIGHT, "Synchronization already in flight")
        self._in_flight.add(entry.id)
        try:
            return await self._apply_resolution(entry, conflict, outcome)
        finally:
            self._release(entry.id)

    async def _apply_resolution(
        self, entry: BillingEntry, conflict: SyncConflict, outcome: ConflictOutcome
    ) -> SyncResult:
        if outcome == ConflictOutcome.LOCAL_WINS:
            result = await self._push_local(entry)
        elif outcome == ConflictOutcome.REMOTE_WINS:
            result = self._keep_remote(entry, conflict)
        else:
            if conflict.remote is not None:
                entry.time_entry = merge(entry.time_entry, conflict.remote)
                entry.remote_updated_at = modified_at(conflict.remote) or entry.remote_updated_at
                self.store.save_entry(entry)
            result = SyncResult(entry_id=entry.id, success=True, status=entry.status, external_id=entry.external_id)

        if result.success:
            conflict.outcome = outcome
            conflict.resolved_at = utcnow()
            self.store.save_conflict(conflict)
            logger.info("Conflict %s resolved: %s", conflict.id, outcome.value)
        result.conflict_id = conflict.id
        return result

    async def _push_local(self, entry: BillingEntry) -> SyncResult:
        """local-wins: exactly one write of the local version to the vendor."""
        if entry.status == SyncStatus.FAILED:
            entry.retryable = False
            entry.next_retry_at = None
            self._transition(entry, SyncStatus.APPROVED)
            return await self._dispatch(entry)

        adapter = self._adapter(entry.platform)
        external_id, time_entry = entry.external_id, entry.time_entry
        attempt = SyncAttempt(operation="update", started_at=utcnow())
        response = await self._send(
            entry.platform, lambda: adapter.update_time_entry(external_id, time_entry), entry.id
        )
        self._record(entry, attempt, response)
        if not response.success:
            entry.last_error = response.error
            entry.last_error_code = response.code
            self.store.save_entry(entry)
            return SyncResult(
                entry_id=entry.id, success=False, status=entry.status, error=response.error, code=response.code
            )
        entry.synced_at = utcnow()
        entry.synced_hash = content_hash(entry.time_entry)
        entry.remote_updated_at = modified_at(response.data) if response.data else None
        self.store.save_entry(entry)
        return SyncResult(entry_id=entry.id, success=True, status=entry.status, external_id=entry.external_id)

    def _keep_remote(self, entry: BillingEntry, conflict: SyncConflict) -> SyncResult:
        """remote-wins: overwrite the local copy; the vendor already holds the winner."""
        remote = conflict.remote
        if remote is None or not remote.id:
            raise ValueError(f"Conflict {conflict.id} has no remote version to keep")
        entry.time_entry = replace(remote)
        entry.external_id = remote.id
        entry.updated_at = utcnow()
        entry.synced_at = utcnow()
        entry.synced_hash = content_hash(remote)
        entry.remote_updated_at = modified_at(remote)
        entry.last_error = None
        entry.last_error_code = None
        if entry.status == SyncStatus.FAILED:
            entry.retryable = False
            self._transition(entry, SyncStatus.APPROVED)
            self._transition(entry, SyncStatus.SYNCED)
        else:
            self.store.save_entry(entry)
        return SyncResult(entry_id=entry.id, success=True, status=entry.status, external_id=entry.external_id)

    # ------------------------------------------------------------------
    # Client / matter lookup for candidates
    # ------------------------------------------------------------------

    async def _resolve_client(self, platform: str, suggestion: str | None) -> Client:
        unresolved = Client(id="", name=suggestion or "")
        if not suggestion:
            return unresolved
        adapter = self._adapter(platform)
        response = await self._send(platform, lambda: adapter.get_clients(ClientFilters(search=suggestion, limit=10)))
        if not response.success:
            logger.warning("%s client lookup for '%s' failed: %s", platform, suggestion, response.error)
            return unresolved
        return _best_match(response.data, suggestion) or unresolved

    async def _resolve_matter(self, platform: str, client: Client, suggestion: str | None) -> Matter | None:
        if not suggestion or not client.id:
            return None
        adapter = self._adapter(platform)
        response = await self._send(
            platform, lambda: adapter.get_matters(client.id, MatterFilters(search=suggestion, limit=10))
        )
        if not response.success:
            logger.warning("%s matter lookup for '%s' failed: %s", platform, suggestion, response.error)
            return None
        return _best_match(response.data, suggestion)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def get_sync_stats(
        self, user_id: str | None = None, start: datetime | None = None, end: datetime | None = None
    ) -> SyncStats:
        entries = [
            e
            for e in self.store.list_entries(owner_id=user_id)
            if (start is None or (e.created_at and e.created_at >= start))
            and (end is None or (e.created_at and e.created_at <= end))
        ]
        stats = SyncStats(total_entries=len(entries))
        for entry in entries:
            stats.by_status[entry.status.value] = stats.by_status.get(entry.status.value, 0) + 1
            stats.platforms[entry.platform] = stats.platforms.get(entry.platform, 0) + 1
            if entry.status == SyncStatus.FAILED and entry.retryable:
                stats.retryable += 1
        if entries:
            synced = stats.by_status.get(SyncStatus.SYNCED.value, 0)
            stats.sync_rate = round(synced / len(entries) * 100, 1)

        entry_ids = {e.id for e in entries}
        conflicts = [c for c in self.store.list_conflicts(owner_id=user_id) if c.entry_id in entry_ids]
        stats.conflicts_total = len(conflicts)
        for conflict in conflicts:
            key = conflict.outcome.value
            stats.conflicts_by_outcome[key] = stats.conflicts_by_outcome.get(key, 0) + 1
        stats.conflicts_pending = stats.conflicts_by_outcome.get(ConflictOutcome.PENDING_MANUAL.value, 0)
        return stats

    def get_sync_status(self, entry_id: str, limit: int = 10) -> EntrySyncStatus:
        """Current state of one entry plus its last `limit` vendor writes, newest first."""
        entry = self._get(entry_id)
        return EntrySyncStatus(
            entry_id=entry.id,
            platform=entry.platform,
            status=entry.status,
            external_id=entry.external_id,
            retry_count=entry.retry_count,
            retryable=entry.retryable,
            last_error=entry.last_error,
            next_retry_at=entry.next_retry_at,
            synced_at=entry.synced_at,
            retry_scheduled=entry.id in self._retry_tasks,
            in_flight=entry.id in self._in_flight,
            history=list(reversed(entry.history))[:limit],
            open_conflicts=[c.id for c in self.store.list_conflicts(entry.id, ConflictOutcome.PENDING_MANUAL)],
        )

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def cleanup(self, older_than_days: float = 7, drop_synced: bool = False) -> CleanupResult:
        """Forget sync history, finished entries and settled conflicts older than the cutoff.

        Rejected entries are removed, synced ones only with `drop_synced`.
        Entries with an open conflict or a request in flight are kept.
        """
        cutoff = utcnow() - timedelta(days=older_than_days)
        result = CleanupResult()
        finished = {SyncStatus.REJECTED} | ({SyncStatus.SYNCED} if drop_synced else set())

        for entry in self.store.list_entries():
            if entry.id in self._in_flight:
                continue
            last_change = entry.updated_at or entry.created_at
            if entry.status in finished and last_change and last_change < cutoff and not self._open_conflict(entry.id):
                for conflict in self.store.list_conflicts(entry_id=entry.id):
                    self.store.delete_conflict(conflict.id)
                    result.conflicts_removed += 1
                self.store.delete_entry(entry.id)
                result.entries_removed += 1
                continue
            kept = [a for a in entry.history if (a.completed_at or a.started_at) >= cutoff]
            if len(kept) != len(entry.history):
                result.history_removed += len(entry.history) - len(kept)
                entry.history = kept
                self.store.save_entry(entry)

        for conflict in self.store.list_conflicts():
            settled = conflict.outcome != ConflictOutcome.PENDING_MANUAL
            if settled and conflict.resolved_at and conflict.resolved_at < cutoff:
                self.store.delete_conflict(conflict.id)
                result.conflicts_removed += 1

        logger.info(
            "Cleanup (older than %g days): history=%d entries=%d conflicts=%d",
            older_than_days, result.history_removed, result.entries_removed, result.conflicts_removed,
        )
        return result


def _best_match(records: list | None, suggestion: str):
    """Exact (case-insensitive) name match first, otherwise the vendor's first hit."""
    if not records:
        return None
    wanted = suggestion.strip().lower()
    for record in records:
        if record.name.strip().lower() == wanted:
            return record
    return records[0]
