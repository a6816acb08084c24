#!/usr/bin/env python3
"""
Feed Synchronization Orchestrator

Composition root for the sync core: owns the database worker, the feed
fetcher, the per-source syncer, the bounded sync queue, the scheduler and
the maintenance routines, and exposes the operations the API layer (or this
module's CLI) calls.

Modes:
    serve               run the scheduler until interrupted
    sync-all            run one full sync pass and wait for it
    sync <id>           sync one source through the queue (--direct bypasses it)
    add-source          add a source, detecting its feed URL when omitted
    detect <site>       list conventional feed URLs that validate for a site
    test-feed <url>     preview the first items of a feed without storing them
    cleanup-duplicates  delete duplicate articles by URL
    repair              backfill excerpts/descriptions and drop invalid image URLs
    status              show database and queue status
    schedule-status     show the next scheduled pass
"""

import argparse
import asyncio
import json
import sys
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from config import config, get_logger
from errors import FeedSyncError, SourceNotFoundError
from fetcher import FeedFetcher
from maintenance import ArticleMaintenance
from models import DatabaseQueue, Source, SyncResult
from scheduler import FeedScheduler
from sync_queue import SyncQueue
from syncer import SourceLockRegistry, SourceSyncer
from telemetry import init_telemetry, trace_span
from utils import normalize_site_url

# Module-specific logger
logger = get_logger("orchestrator")


class FeedSyncOrchestrator:
    """Wires the sync components together and exposes their public operations."""

    def __init__(self, db_path: Optional[str] = None, fetcher: Optional[FeedFetcher] = None,
                 concurrency: Optional[int] = None, **scheduler_options) -> None:
        self.db = DatabaseQueue(db_path or config.DATABASE_PATH)
        self.fetcher = fetcher or FeedFetcher()
        self.locks = SourceLockRegistry()
        self.syncer = SourceSyncer(self.db, self.fetcher, self.locks)
        self.queue = SyncQueue(self.syncer, concurrency=concurrency or config.SYNC_CONCURRENCY)
        self.scheduler = FeedScheduler(self.db, self.queue, **scheduler_options)
        self.maintenance = ArticleMaintenance(self.db)

    async def start(self) -> None:
        """Open the database and register seed sources from feeds.yaml."""
        await self.db.start()
        for name, source_cfg in config.FEED_SOURCES.items():
            try:
                await self.db.execute(
                    'register_source',
                    name=name,
                    url=source_cfg['url'],
                    feed_url=source_cfg['feed_url'],
                    sync_frequency=source_cfg['sync_frequency'],
                    active=source_cfg['active'],
                )
            except ValueError as e:
                logger.warning(f"Skipping seed source '{name}': {e}")
        logger.info("Orchestrator started")

    async def close(self) -> None:
        await self.scheduler.stop(cancel_passes=True)
        await self.fetcher.close()
        await self.db.stop()
        logger.info("Orchestrator closed")

    async def _require_source(self, source_id: int) -> Source:
        source = await self.db.execute('get_source', source_id=source_id)
        if source is None:
            raise SourceNotFoundError(source_id)
        return source

    # Sync operations
    def sync_all_sources(self) -> Optional[asyncio.Task]:
        """Fire-and-forget full pass. Returns None when a pass is already running."""
        return self.scheduler.trigger_pass("manual")

    @trace_span(
        "orchestrator.force_sync_source",
        tracer_name="orchestrator",
        attr_from_args=lambda self, source_id: {"source.id": source_id},
    )
    async def force_sync_source(self, source_id: int) -> SyncResult:
        """Sync one source through the queue and wait for its result."""
        source = await self._require_source(source_id)
        return await self.queue.enqueue(source)

    async def sync_source_direct(self, source_id: int) -> SyncResult:
        """Sync one source immediately, bypassing the queue's concurrency bound."""
        source = await self._require_source(source_id)
        return await self.syncer.sync_source(source)

    def is_source_syncing(self, source_id: int) -> bool:
        return self.locks.is_locked(source_id)

    def get_syncing_sources(self) -> List[int]:
        """Ids of sources currently holding the sync lock, queued or direct."""
        return sorted(self.locks.snapshot())

    def get_queue_status(self) -> Dict[str, Any]:
        return self.queue.get_status()

    def pause_queue(self) -> None:
        self.queue.pause()

    def resume_queue(self) -> None:
        self.queue.resume()

    def clear_queue(self) -> None:
        self.queue.clear()

    # Maintenance
    async def cleanup_duplicates(self, source_id: Optional[int] = None) -> int:
        return await self.maintenance.cleanup_duplicates(source_id)

    async def validate_and_repair_articles(self, source_id: Optional[int] = None) -> Dict[str, Any]:
        return await self.maintenance.validate_and_repair(source_id)

    # Sources
    async def add_source(self, name: str, url: str, feed_url: Optional[str] = None,
                         sync_frequency: Optional[int] = None, category_id: Optional[int] = None) -> Source:
        """Add a source; when no feed URL is given, use the first one detected under the site."""
        site_url = normalize_site_url(url)
        if not feed_url:
            detected = await self.fetcher.detect_feeds(site_url)
            if detected:
                feed_url = detected[0]
                logger.info(f"Using detected feed {feed_url} for {name}")
            else:
                logger.warning(f"No feed detected for {site_url}; source will not sync until a feed URL is set")
        return await self.db.execute(
            'add_source',
            name=name,
            url=site_url,
            feed_url=feed_url,
            sync_frequency=sync_frequency,
            category_id=category_id,
        )

    async def check_status(self) -> Dict[str, Any]:
        """Collect database, queue and schedule status."""
        sources = await self.db.execute('list_sources')
        return {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'database': {
                'path': self.db.db_path,
                'sources': len(sources),
                'active_sources': sum(1 for source in sources if source.is_active),
                'sources_with_errors': sum(1 for source in sources if source.last_error),
                'articles': await self.db.execute('count_articles'),
            },
            'queue': self.get_queue_status(),
            'schedule': self.scheduler.get_schedule_status(),
            'config': config.get_config_summary(),
        }


def print_status(status: Dict[str, Any]) -> None:
    """Human-readable rendering of check_status()."""
    db = status['database']
    queue = status['queue']
    schedule = status['schedule']
    print("\nFeed Sync Status")
    print(f"  Time: {status['timestamp']}")
    print(f"  Database: {db['path']}")
    print(f"    Sources: {db['sources']} ({db['active_sources']} active, {db['sources_with_errors']} with errors)")
    print(f"    Articles: {db['articles']}")
    print(f"  Queue: {queue['backlog_size']} backlogged, {queue['pending_count']} pending, paused={queue['is_paused']}")
    print(f"  Schedule: {schedule['schedule']} ({schedule['schedule_timezone']})")
    if schedule['next_run_time']:
        print(f"    Next run: {schedule['next_run_time']}")


def print_result(result: SyncResult) -> None:
    print(f"Found: {result.found}  New: {result.new}  Duplicates: {result.duplicates}  Failed: {result.failed}")
    for error in result.errors:
        print(f"  - {error}")


async def serve(orchestrator: FeedSyncOrchestrator) -> None:
    orchestrator.scheduler.start()
    logger.info("Serving; press Ctrl+C to stop")
    await asyncio.Event().wait()


async def run_mode(args: argparse.Namespace) -> int:
    orchestrator = FeedSyncOrchestrator()
    await orchestrator.start()
    try:
        if args.mode == 'serve':
            await serve(orchestrator)

        elif args.mode == 'sync-all':
            summary = await orchestrator.scheduler.run_full_pass("manual")
            print(json.dumps(summary, indent=2, default=str))

        elif args.mode == 'sync':
            if args.direct:
                result = await orchestrator.sync_source_direct(args.source_id)
            else:
                result = await orchestrator.force_sync_source(args.source_id)
            print_result(result)
            return 1 if result.failed else 0

        elif args.mode == 'add-source':
            source = await orchestrator.add_source(
                args.name, args.url, feed_url=args.feed_url,
                sync_frequency=args.frequency, category_id=args.category,
            )
            print(f"Added source {source.id}: {source.name} ({source.feed_url or 'no feed URL'})")

        elif args.mode == 'detect':
            feeds = await orchestrator.fetcher.detect_feeds(args.target)
            for feed_url in feeds:
                print(feed_url)
            return 0 if feeds else 1

        elif args.mode == 'test-feed':
            previews = await orchestrator.fetcher.test_feed(args.target, limit=args.limit)
            print(json.dumps(previews, indent=2, default=str))

        elif args.mode == 'cleanup-duplicates':
            deleted = await orchestrator.cleanup_duplicates(args.source)
            print(f"Deleted {deleted} duplicate articles")

        elif args.mode == 'repair':
            report = await orchestrator.validate_and_repair_articles(args.source)
            print(f"Repaired {report['repaired_count']} articles")
            for error in report['errors']:
                print(f"  - {error}")

        elif args.mode == 'status':
            print_status(await orchestrator.check_status())

        elif args.mode == 'schedule-status':
            print(json.dumps(orchestrator.scheduler.get_schedule_status(), indent=2, default=str))
        return 0
    finally:
        await orchestrator.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='Feed Synchronization Orchestrator')
    sub = parser.add_subparsers(dest='mode', required=True, help='Operation mode')

    sub.add_parser('serve', help='Run scheduled sync passes until interrupted')
    sub.add_parser('sync-all', help='Run one full sync pass')

    sync = sub.add_parser('sync', help='Sync one source')
    sync.add_argument('source_id', type=int)
    sync.add_argument('--direct', action='store_true', help='Bypass the queue')

    add = sub.add_parser('add-source', help='Add a feed source')
    add.add_argument('--name', required=True)
    add.add_argument('--url', required=True, help='Site URL')
    add.add_argument('--feed-url', help='Feed URL (detected when omitted)')
    add.add_argument('--frequency', type=int, help='Sync frequency in minutes (5-1440)')
    add.add_argument('--category', type=int, help='Category id')

    detect = sub.add_parser('detect', help='Detect feed URLs for a site')
    detect.add_argument('target', help='Site URL')

    test = sub.add_parser('test-feed', help='Preview a feed without storing it')
    test.add_argument('target', help='Feed URL')
    test.add_argument('--limit', type=int, default=5)

    for mode in ('cleanup-duplicates', 'repair'):
        maint = sub.add_parser(mode)
        maint.add_argument('--source', type=int, help='Restrict to one source id')

    sub.add_parser('status', help='Show system status')
    sub.add_parser('schedule-status', help='Show schedule status')
    return parser


def main():
    """Main entry point."""
    args = build_parser().parse_args()
    init_telemetry("feed-sync")

    try:
        sys.exit(asyncio.run(run_mode(args)))
    except KeyboardInterrupt:
        logger.info("Orchestrator shutting down")
    except (FeedSyncError, ValueError) as e:
        logger.error(f"{e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
