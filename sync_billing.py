"""
Sync approved billing entries to practice-management platforms.

Usage:
    # Dry-run (default) - shows what would be synced
    python sync_billing.py sync cleo

    # Execute - actually creates the time entries
    python sync_billing.py sync cleo --execute

    # Remote time entries of a week
    python sync_billing.py entries mycase 202605 --client 42

    # Platform health, statistics, open conflicts
    python sync_billing.py health
    python sync_billing.py stats --user u-1
    python sync_billing.py conflicts --check practice-panther

    # One entry in detail, housekeeping, continuous sync
    python sync_billing.py status 3f2c9a10-...
    python sync_billing.py cleanup --days 30 --include-synced
    python sync_billing.py serve
"""

import argparse
import asyncio
import logging

from clients import PracticeManagementError
from conflicts import ConflictPolicy, ConflictResolver
from health import HealthMonitor
from models import ConflictOutcome, SyncStatus, TimeEntryFilters
from patterns import Patterns
from platforms import PLATFORM_ADAPTERS, create_adapters
from store import JsonStore
from sync_engine import StateTransitionError, SyncEngine
from utils import (
    CONFIG_FILE,
    get_current_week,
    get_week_dates,
    health_config,
    load_config_safe,
    platform_configs,
    setup_logging,
    sync_config,
)

logger = logging.getLogger(__name__)


def build_engine(config: dict) -> SyncEngine:
    """Wire adapters, store, health monitor and resolver from config.json."""
    adapters = create_adapters(platform_configs(config))
    store = JsonStore(config.get("store", {}).get("path"))
    health = HealthMonitor(adapters, health_config(config))
    policy = ConflictPolicy(config.get("conflicts", {}).get("policy", ConflictPolicy.MANUAL.value))
    return SyncEngine(
        adapters,
        store=store,
        health=health,
        resolver=ConflictResolver(policy),
        config=sync_config(config),
    )


def _header(title: str) -> None:
    print()
    print("=" * 70)
    print(title)
    print("=" * 70)
    print()


# ============================================================================
# Commands
# ============================================================================


async def cmd_sync(engine: SyncEngine, platform: str, execute: bool, wait: bool) -> int:
    mode = "EXECUTE" if execute else "DRY-RUN"
    _header(f"SYNC BILLING -> {platform.upper()} | Mode: {mode}")

    entries = engine.store.list_entries(status=SyncStatus.APPROVED, platform=platform)
    print(f"[1] Approved entries: {len(entries)}")
    total_hours = 0.0
    for entry in sorted(entries, key=lambda e: (e.time_entry.date, e.id)):
        te = entry.time_entry
        print(f"    {te.date} | {te.hours:5.2f}h | {entry.client.name or te.client_id:<25} | {te.description[:30]}")
        total_hours += te.hours
    print(f"    {'─' * 60}")
    print(f"    Total: {total_hours:.2f}h across {len(entries)} entries")

    if not entries:
        print()
        print("[*] Nothing to sync. Done.")
        return 0
    if not execute:
        print()
        print("[*] Dry-run: no changes made. Use --execute to sync.")
        return 0

    print()
    print("[2] Checking platform health...")
    health = await engine.health.probe(platform)
    if not health.healthy:
        print(f"    [!] {platform} is unreachable: {health.last_error}")
        return 1
    print(f"    OK ({health.latency_ms:.0f} ms)")

    print()
    print("[3] Syncing...")
    summary = await engine.sync_all(platform)
    for result in summary.results:
        if result.success:
            print(f"    [+] {result.entry_id} -> {result.external_id}")
        elif result.skipped:
            print(f"    [~] {result.entry_id} skipped: {result.error}")
        else:
            print(f"    [!] {result.entry_id} {result.code}: {result.error}")

    if wait:
        print()
        print("[4] Waiting for scheduled retries...")
        await engine.wait_for_retries()

    print()
    print(
        f"[*] Done. Synced {summary.synced_count}, errors {summary.error_count}, "
        f"processed {summary.total_processed}, skipped {summary.skipped_count}."
    )
    return 0 if summary.error_count == 0 else 1


async def cmd_entries(engine: SyncEngine, platform: str, week: str, args) -> int:
    date_from, date_to = get_week_dates(week)
    _header(f"{platform.upper()} TIME ENTRIES | Week {week}: {date_from} to {date_to}")

    adapter = engine.adapters[platform]
    filters = TimeEntryFilters(
        start_date=date_from,
        end_date=date_to,
        client_id=args.client,
        matter_id=args.matter,
        user_id=args.user,
        limit=args.limit,
        offset=args.offset,
    )
    await engine.auth.ensure_valid(platform)
    response = await adapter.get_time_entries(filters)
    if not response.success:
        print(f"[!] ERROR: {response.error}")
        return 1

    total_hours = 0.0
    for te in response.data:
        print(f"    {te.date} | {te.hours:5.2f}h | {te.client_id or '-':<10} | {te.status:<8} | {te.description[:35]}")
        total_hours += te.hours
    print(f"    {'─' * 60}")
    print(f"    Total: {total_hours:.2f}h across {len(response.data)} entries")
    if response.pagination and response.pagination.has_more:
        print(f"    More available: --offset {response.pagination.offset + len(response.data)}")
    return 0


async def cmd_health(engine: SyncEngine) -> int:
    _header("PLATFORM HEALTH")
    results = await engine.health.probe_all()
    for health in results:
        mark = "OK" if health.healthy else "DOWN"
        latency = f"{health.latency_ms:.0f} ms" if health.latency_ms is not None else "-"
        print(f"    {health.platform:<18} {mark:<5} {latency:>8}  {health.last_error or ''}")
    return 0 if all(h.healthy for h in results) else 1


def cmd_stats(engine: SyncEngine, user: str | None) -> int:
    _header(f"SYNC STATISTICS{f' | User {user}' if user else ''}")
    stats = engine.get_sync_stats(user)
    print(f"    Entries:   {stats.total_entries}")
    for status in SyncStatus:
        print(f"      {status.value:<10} {stats.by_status.get(status.value, 0)}")
    print(f"    Retryable: {stats.retryable}")
    print(f"    Sync rate: {stats.sync_rate:.1f}%")
    for platform, count in sorted(stats.platforms.items()):
        print(f"    {platform:<18} {count}")
    print(f"    Conflicts: {stats.conflicts_total} ({stats.conflicts_pending} pending)")
    return 0


async def cmd_conflicts(engine: SyncEngine, user: str | None, check: str | None) -> int:
    _header("CONFLICTS")
    if check:
        print(f"[*] Checking {check} for remote changes...")
        found = await engine.check_conflicts(check)
        print(f"    Detected {len(found)} conflicts")
        print()

    conflicts = engine.list_conflicts(user)
    if not conflicts:
        print("[*] No open conflicts.")
        return 0
    for conflict in conflicts:
        print(f"    {conflict.id} | entry {conflict.entry_id} | {conflict.platform} | {conflict.reason.value}")
        print(f"        fields: {', '.join(conflict.fields) or '-'}")
    return 0


async def cmd_resolve(engine: SyncEngine, conflict_id: str, outcome: str) -> int:
    result = await engine.resolve_conflict(conflict_id, ConflictOutcome(outcome))
    if result.success:
        print(f"[*] Conflict {conflict_id} resolved as {outcome}.")
        return 0
    print(f"[!] Could not resolve {conflict_id}: {result.error}")
    return 1


def cmd_status(engine: SyncEngine, entry_id: str, limit: int) -> int:
    status = engine.get_sync_status(entry_id, limit)
    _header(f"ENTRY {entry_id} | {status.platform}")
    print(f"    Status:      {status.status.value}")
    print(f"    Remote id:   {status.external_id or '-'}")
    print(f"    Attempts:    {status.retry_count} ({'retryable' if status.retryable else 'final'})")
    if status.next_retry_at:
        print(f"    Next retry:  {status.next_retry_at:%Y-%m-%d %H:%M:%S}")
    if status.last_error:
        print(f"    Last error:  {status.last_error}")
    if status.open_conflicts:
        print(f"    Conflicts:   {', '.join(status.open_conflicts)}")
    print()
    print("    History (newest first):")
    if not status.history:
        print("      -")
    for attempt in status.history:
        outcome = f"OK {attempt.external_id}" if attempt.success else f"{attempt.code}: {attempt.error}"
        print(f"      {attempt.started_at:%Y-%m-%d %H:%M:%S} | {attempt.operation:<6} | {outcome}")
    return 0


def cmd_cleanup(engine: SyncEngine, days: float, include_synced: bool) -> int:
    _header(f"CLEANUP | Older than {days:g} days")
    result = engine.cleanup(days, drop_synced=include_synced)
    print(f"    History records removed: {result.history_removed}")
    print(f"    Entries removed:         {result.entries_removed}")
    print(f"    Conflicts removed:       {result.conflicts_removed}")
    return 0


async def cmd_serve(engine: SyncEngine) -> int:
    print(f"[*] Syncing {', '.join(sorted(engine.adapters))} every {engine.config.sync_interval_s:g}s. Ctrl-C to stop.")
    await asyncio.Event().wait()
    return 0


async def run(args, config: dict) -> int:
    engine = build_engine(config)
    serve = args.command == "serve"
    await engine.init(start_health=serve, start_sync=serve)
    try:
        if args.command == "sync":
            return await cmd_sync(engine, args.platform, args.execute, args.wait)
        if args.command == "entries":
            return await cmd_entries(engine, args.platform, args.week or get_current_week(), args)
        if args.command == "health":
            return await cmd_health(engine)
        if args.command == "stats":
            return cmd_stats(engine, args.user)
        if args.command == "conflicts":
            return await cmd_conflicts(engine, args.user, args.check)
        if args.command == "resolve":
            return await cmd_resolve(engine, args.conflict_id, args.outcome)
        if args.command == "status":
            return cmd_status(engine, args.entry_id, args.limit)
        if args.command == "cleanup":
            return cmd_cleanup(engine, args.days, args.include_synced)
        if args.command == "serve":
            return await cmd_serve(engine)
        if args.command == "approve":
            engine.approve(args.entry_id)
            print(f"[*] Entry {args.entry_id} approved.")
            return 0
        if args.command == "reject":
            engine.reject(args.entry_id)
            print(f"[*] Entry {args.entry_id} rejected.")
            return 0
        if args.command == "retry":
            result = await engine.retry(args.entry_id)
            print(f"[*] Entry {args.entry_id}: {result.status.value if result.status else '-'} {result.error or ''}")
            return 0 if result.success else 1
    except (PracticeManagementError, StateTransitionError, KeyError, ValueError) as e:
        print(f"[!] ERROR: {e}")
        return 1
    finally:
        await engine.shutdown()
    return 1


# ============================================================================
# CLI
# ============================================================================


def main():
    parser = argparse.ArgumentParser(
        description="Sync billing entries to practice-management platforms",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__.split("Usage:")[1],
    )
    parser.add_argument("--config", default=CONFIG_FILE, help=f"Config file (default: {CONFIG_FILE})")
    sub = parser.add_subparsers(dest="command", required=True)

    platforms = sorted(PLATFORM_ADAPTERS)

    p = sub.add_parser("sync", help="Sync all approved entries of a platform")
    p.add_argument("platform", choices=platforms)
    p.add_argument("--execute", action="store_true", help="Actually execute changes (default: dry-run)")
    p.add_argument("--wait", action="store_true", help="Wait for scheduled retries before exiting")

    p = sub.add_parser("entries", help="List remote time entries for a week")
    p.add_argument("platform", choices=platforms)
    p.add_argument("week", nargs="?", default=None, help="Week (YYYYWW), default: current week")
    p.add_argument("--client", help="Client id")
    p.add_argument("--matter", help="Matter id")
    p.add_argument("--user", help="User id")
    p.add_argument("--limit", type=int, default=50)
    p.add_argument("--offset", type=int, default=0)

    sub.add_parser("health", help="Probe every configured platform")

    p = sub.add_parser("stats", help="Show sync statistics")
    p.add_argument("--user", help="Only entries owned by this user")

    p = sub.add_parser("conflicts", help="List open conflicts")
    p.add_argument("--user", help="Only conflicts of this user")
    p.add_argument("--check", choices=platforms, help="Look for remote changes on this platform first")

    p = sub.add_parser("resolve", help="Resolve a conflict")
    p.add_argument("conflict_id")
    p.add_argument("outcome", choices=[o.value for o in ConflictOutcome if o != ConflictOutcome.PENDING_MANUAL])

    for name in ("approve", "reject", "retry"):
        p = sub.add_parser(name, help=f"{name.capitalize()} a billing entry")
        p.add_argument("entry_id")

    p = sub.add_parser("status", help="Show the sync state and history of a billing entry")
    p.add_argument("entry_id")
    p.add_argument("--limit", type=int, default=10, help="History records to show (default: 10)")

    p = sub.add_parser("cleanup", help="Remove old sync history, rejected entries and settled conflicts")
    p.add_argument("--days", type=float, default=7, help="Keep records newer than this (default: 7)")
    p.add_argument("--include-synced", action="store_true", help="Also remove old synced entries")

    sub.add_parser("serve", help="Sync approved entries continuously until interrupted")

    args = parser.parse_args()

    if getattr(args, "week", None) and not Patterns.WEEK_FORMAT.match(args.week):
        print(f"Error: Invalid week format '{args.week}'. Expected YYYYWW (e.g., 202605)")
        return 1

    config = load_config_safe(args.config)
    if config is None:
        return 1
    setup_logging(config.get("logging", {}).get("level", "INFO"))

    if getattr(args, "platform", None) and args.platform not in config["platforms"]:
        print(f"[!] ERROR: platform '{args.platform}' is not configured in {args.config}")
        return 1

    return asyncio.run(run(args, config))


if __name__ == "__main__":
    exit(main())
