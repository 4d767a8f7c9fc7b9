#!/usr/bin/env python3
"""
Feed Update Orchestrator

Command line entry point for the feed update pipeline:
1. update: update specific feeds by id, right now
2. outdated: update every feed that is due (optionally as an app-launch batch)
3. scheduled: keep running, updating feeds whenever they become due
4. status: summarize the store and the effective configuration

Uses direct imports and function calls; every mode shares the same wiring of
database queue, fetcher, scheduler, in-flight tracker and updater.
"""

import argparse
import asyncio
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Tuple

from config import config, get_logger
from fetcher import ConditionalFetcher
from models import DatabaseQueue, UpdateOutcome
from scheduler import AutoUpdateScheduler, UpdateScheduler
from telemetry import init_telemetry, get_tracer, trace_span
from tracker import InFlightTracker
from updater import FeedUpdater

# Module-specific logger
logger = get_logger("orchestrator")
init_telemetry("feed-updater")
_tracer = get_tracer("orchestrator")

OUTCOME_ICONS = {
    UpdateOutcome.CONTENT_CHANGED: "📰",
    UpdateOutcome.UNMODIFIED: "💤",
    UpdateOutcome.FAILED: "❌",
}


@asynccontextmanager
async def update_pipeline() -> AsyncIterator[Tuple[FeedUpdater, AutoUpdateScheduler]]:
    """Start every collaborator of the updater and tear them down afterwards."""
    db = DatabaseQueue(config.DATABASE_PATH)
    tracker = InFlightTracker()
    fetcher = ConditionalFetcher()
    await db.start()
    await tracker.start()

    auto_scheduler = AutoUpdateScheduler(db)
    updater = FeedUpdater(
        db=db,
        fetcher=fetcher,
        scheduler=UpdateScheduler(),
        tracker=tracker,
        reschedule=auto_scheduler.schedule,
    )
    tracker.subscribe(lambda ids: logger.debug(f"Feeds in flight: {sorted(ids) or 'none'}"))

    try:
        yield updater, auto_scheduler
    finally:
        updater.close()
        await fetcher.close()
        await tracker.stop()
        await db.stop()


def log_outcomes(outcomes) -> bool:
    """Log one line per feed; return True if no update failed."""
    for source_id, outcome in sorted(outcomes.items()):
        logger.info(f"{OUTCOME_ICONS.get(outcome, '•')} Feed {source_id}: {outcome.value}")
    return all(outcome != UpdateOutcome.FAILED for outcome in outcomes.values())


@trace_span(
    "run_update",
    tracer_name="orchestrator",
    attr_from_args=lambda source_ids: {"feed.ids": ",".join(str(i) for i in source_ids)},
)
async def run_update(source_ids: List[int]) -> bool:
    """Update the given feeds concurrently."""
    logger.info(f"📡 Updating {len(source_ids)} feed(s)")
    async with update_pipeline() as (updater, auto_scheduler):
        results = await asyncio.gather(*(updater.update_feed(i) for i in source_ids))
        await auto_scheduler.schedule()

    outcomes = {}
    for source_id, outcome in zip(source_ids, results):
        if outcome is None:
            logger.warning(f"⚠️ Feed {source_id} does not exist")
        else:
            outcomes[source_id] = outcome
    return log_outcomes(outcomes) and len(outcomes) == len(set(source_ids))


@trace_span(
    "run_outdated",
    tracer_name="orchestrator",
    attr_from_args=lambda app_launch=False: {"feed.app_launch": bool(app_launch)},
)
async def run_outdated(app_launch: bool = False) -> bool:
    """Update every feed that is due."""
    logger.info("🚀 Updating outdated feeds" + (" (app launch)" if app_launch else ""))
    start_time = time.time()
    async with update_pipeline() as (updater, _):
        outcomes = await updater.update_outdated_feeds(app_launch=app_launch)

    success = log_outcomes(outcomes)
    elapsed_time = time.time() - start_time
    logger.info(f"🎉 Updated {len(outcomes)} feed(s) in {elapsed_time:.1f}s")
    return success


async def run_scheduled_mode() -> None:
    """Keep updating feeds as they become due until interrupted."""
    logger.info("🕐 Starting scheduled mode")
    async with update_pipeline() as (updater, auto_scheduler):
        await auto_scheduler.run(updater)


async def check_status() -> dict:
    """Collect store statistics and the effective configuration."""
    logger.info("📊 Checking system status")
    now = int(time.time())
    status = {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'config': config.get_config_summary(),
    }

    db = DatabaseQueue(config.DATABASE_PATH)
    await db.start()
    try:
        status['database'] = await db.execute('get_status_counts', now=now)
        next_update = await db.execute('get_earliest_next_update_time')
        status['next_update'] = (
            datetime.fromtimestamp(next_update, timezone.utc).isoformat() if next_update is not None else None
        )
    finally:
        await db.stop()
    return status


def print_status(status: dict) -> None:
    """Print formatted status information."""
    db = status['database']
    print("\n📊 Feed Updater Status")
    print(f"⏰ {status['timestamp']}")
    print("\n💾 Database:")
    print(f"   📡 Feeds: {db['feeds']}")
    print(f"   📰 Entries: {db['entries']}")
    print(f"   ⏳ Due now: {db['due_feeds']}")
    print(f"   ❌ Failing: {db['failing_feeds']}")
    print(f"   🕐 Next update: {status['next_update'] or 'not scheduled'}")

    print("\n⚙️ Configuration:")
    for key, value in status['config'].items():
        print(f"   {key}: {value}")


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='Feed Update Orchestrator')
    subparsers = parser.add_subparsers(dest='mode', required=True, help='Operation mode')

    update_parser = subparsers.add_parser('update', help='Update specific feeds now')
    update_parser.add_argument('ids', type=int, nargs='+', help='Feed ids to update')

    outdated_parser = subparsers.add_parser('outdated', help='Update every feed that is due')
    outdated_parser.add_argument('--app-launch', action='store_true',
                                 help='Also update on-app-launch feeds and feeds due soon')

    subparsers.add_parser('scheduled', help='Keep updating feeds as they become due')
    subparsers.add_parser('status', help='Show store statistics and configuration')

    args = parser.parse_args()

    try:
        if args.mode == 'update':
            success = asyncio.run(run_update(args.ids))
            sys.exit(0 if success else 1)

        elif args.mode == 'outdated':
            success = asyncio.run(run_outdated(app_launch=args.app_launch))
            sys.exit(0 if success else 1)

        elif args.mode == 'scheduled':
            asyncio.run(run_scheduled_mode())

        elif args.mode == 'status':
            print_status(asyncio.run(check_status()))

    except KeyboardInterrupt:
        logger.info("👋 Feed updater shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
