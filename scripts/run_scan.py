"""Manual scan runner for operating and debugging the deal scanner.

Runs full scans, single chunks (with a cursor to resume from) or the
scheduled chunk sequence, printing progress events as they arrive, or
keeps the daily scheduler running in the foreground.

Usage:
    python scripts/run_scan.py init-db
    python scripts/run_scan.py full
    python scripts/run_scan.py full --source oferta24 --source rantanofertas
    python scripts/run_scan.py chunk --source degusta
    python scripts/run_scan.py chunk --source degusta --cursor '{"source": "degusta", "offset": 25}'
    python scripts/run_scan.py sequence
    python scripts/run_scan.py serve
"""

import asyncio
import argparse
import signal
import sys
import os

# Add backend to path so we can import marketintel modules
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "backend"))

from marketintel.core.exceptions import MarketIntelException
from marketintel.core.logging import configure_logging
from marketintel.db.session import async_session_factory, engine
from marketintel.db.utils import check_database_health, init_db
from marketintel.schemas.scan import ScanChunkResult, ScanCursor, ScanEvent, ScanPhase
from marketintel.scrapers.register_adapters import register_all_adapters
from marketintel.scrapers.scan_service import ScanOrchestrator
from marketintel.scrapers.scheduler import ScanScheduler
from marketintel.services.scan_run_service import RUN_STATUS_FAILED, ScanRunService

PHASE_ICONS = {
    ScanPhase.CONNECTING: "🔌",
    ScanPhase.LISTING: "📋",
    ScanPhase.FETCHING_DETAIL: "🔍",
    ScanPhase.PERSISTING: "💾",
    ScanPhase.COMPLETE: "✅",
    ScanPhase.ERROR: "⚠️ ",
}


def print_event(event: ScanEvent) -> None:
    """Print one progress event as it arrives."""
    counter = ""
    if event.current is not None and event.total is not None:
        counter = f" [{event.current}/{event.total}]"
    print(f"  {PHASE_ICONS[event.phase]} {event.site}: {event.message}{counter}")


def _print_chunk(result: ScanChunkResult) -> None:
    print(f"\n{'='*70}")
    print(f"  Chunk Result: {result.site}")
    print(f"{'='*70}")
    print(f"  Processed: {result.processed}")
    print(f"  Created:   {result.created}")
    print(f"  Updated:   {result.updated}")
    print(f"  Snapshots: {result.snapshotted}")
    print(f"  Expired:   {result.expired}")
    print(f"  Duration:  {result.duration_seconds}s")
    if result.timed_out:
        print("  ⏱️  Timed out, re-run with the same cursor")
    if result.adapter_failed:
        print("  ❌ Listing failed, re-run with the same cursor")
    for error in result.errors:
        print(f"    - {error}")
    print(f"{'='*70}\n")

    if result.next_cursor is not None:
        print("Next cursor:")
        print(result.next_cursor.to_json())
    else:
        print("🏁 Source complete")


async def run_full(orchestrator: ScanOrchestrator, sources: list | None) -> int:
    result = await orchestrator.run_full_scan(sources, on_event=print_event)

    print(f"\n{'='*70}")
    print("  Summary")
    print(f"{'='*70}")
    for site, chunks in result.chunks.items():
        print(f"  {site}: {len(chunks)} chunk(s), {sum(c.processed for c in chunks)} deals")
    print(f"  Processed: {result.processed}")
    print(f"  Created:   {result.created}")
    print(f"  Updated:   {result.updated}")
    print(f"  Expired:   {result.expired}")
    print(f"  Duration:  {result.duration_seconds}s")
    if result.errors:
        print(f"  Errors ({len(result.errors)}):")
        for error in result.errors[:20]:
            print(f"    - {error}")
    print(f"{'='*70}\n")
    return 0 if result.success else 1


async def run_chunk(orchestrator: ScanOrchestrator, source: str, raw_cursor: str | None) -> int:
    cursor = ScanCursor.from_json(raw_cursor) if raw_cursor else None
    result = await orchestrator.run_chunked_scan(source, cursor, on_event=print_event)
    _print_chunk(result)
    return 1 if result.needs_retry else 0


async def run_sequence(orchestrator: ScanOrchestrator, sources: list | None) -> int:
    scheduler = ScanScheduler(async_session_factory, orchestrator)
    run_id = await scheduler.run_sequence(sources, trigger="cli", on_event=print_event)

    async with async_session_factory() as db:
        run = await ScanRunService(db).get_run(run_id)

    if run is None or run.status == RUN_STATUS_FAILED:
        print(f"\n❌ Sequence failed, scan run {run_id}")
        if run is not None and run.error_message:
            print(f"    {run.error_message}")
        print()
        return 1
    print(f"\n✅ Sequence finished, scan run {run_id}\n")
    return 0


async def serve(orchestrator: ScanOrchestrator) -> int:
    """Run the daily scheduler until SIGINT or SIGTERM."""
    scheduler = ScanScheduler(async_session_factory, orchestrator)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)

    scheduler.start()
    try:
        for job_id, job in scheduler.get_jobs_status().items():
            print(f"🕒 {job_id}: next run {job['next_run']}")
        print("Scheduler running, Ctrl+C to stop")
        await stop.wait()
    finally:
        scheduler.stop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(sig)
    print("\n👋 Scheduler stopped\n")
    return 0


async def dispatch(args: argparse.Namespace) -> int:
    if args.command == "init-db":
        try:
            health = await check_database_health()
            if not health["healthy"]:
                print(f"\n❌ Database unreachable: {health['error']}\n")
                return 2
            await init_db()
            print("✅ Tables created")
            return 0
        finally:
            await engine.dispose()

    orchestrator = ScanOrchestrator(async_session_factory, adapter_factory=register_all_adapters())
    try:
        if args.command == "full":
            return await run_full(orchestrator, args.source)
        if args.command == "chunk":
            return await run_chunk(orchestrator, args.source, args.cursor)
        if args.command == "serve":
            return await serve(orchestrator)
        return await run_sequence(orchestrator, args.source)
    except MarketIntelException as e:
        print(f"\n❌ {type(e).__name__}: {e.message}\n")
        return 2
    finally:
        await engine.dispose()


def main():
    """Parse arguments and run the requested command."""
    parser = argparse.ArgumentParser(
        description="Run deal scans by hand",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python scripts/run_scan.py full --source oferta24
  python scripts/run_scan.py chunk --source degusta
  python scripts/run_scan.py sequence
  python scripts/run_scan.py serve
        """,
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")
    subparsers = parser.add_subparsers(dest="command", required=True)

    full = subparsers.add_parser("full", help="Scan sources to completion in-process")
    full.add_argument("--source", action="append", help="Source slug, repeatable (default: ENABLED_SOURCES)")

    chunk = subparsers.add_parser("chunk", help="Run one chunk and print the next cursor")
    chunk.add_argument("--source", required=True, help="Source slug (e.g., 'rantanofertas')")
    chunk.add_argument("--cursor", help="Cursor JSON printed by the previous chunk")

    sequence = subparsers.add_parser("sequence", help="Run the scheduled chunk sequence once")
    sequence.add_argument("--source", action="append", help="Source slug, repeatable (default: ENABLED_SOURCES)")

    subparsers.add_parser("serve", help="Run the daily scheduler until interrupted")

    subparsers.add_parser("init-db", help="Create database tables")

    args = parser.parse_args()
    configure_logging(level=args.log_level)
    sys.exit(asyncio.run(dispatch(args)))


if __name__ == "__main__":
    main()
