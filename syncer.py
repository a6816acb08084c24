#!/usr/bin/env python3
"""
Source synchronization unit.

Runs fetch -> normalize -> persist for exactly one source and records the
attempt on the source row. The SourceLockRegistry guarantees at most one
in-flight sync per source, whether it came through the queue or directly.
"""

import threading
from time import time
from typing import Optional, Set

from config import get_logger
from errors import FeedFetchError, MissingFeedUrlError
from models import Source, SyncResult
from normalizer import normalize_entry, resolve_entry_title, resolve_entry_url
from persistence import ArticleGate
from telemetry import trace_span

logger = get_logger("syncer")

SYNC_IN_PROGRESS = "Sync already in progress"


class SourceLockRegistry:
    """Set of source ids currently syncing, safe to share across triggers."""

    def __init__(self):
        self._active: Set[int] = set()
        self._lock = threading.Lock()

    def try_acquire(self, source_id: int) -> bool:
        with self._lock:
            if source_id in self._active:
                return False
            self._active.add(source_id)
            return True

    def release(self, source_id: int) -> None:
        with self._lock:
            self._active.discard(source_id)

    def is_locked(self, source_id: int) -> bool:
        with self._lock:
            return source_id in self._active

    def snapshot(self) -> Set[int]:
        with self._lock:
            return set(self._active)


class SourceSyncer:
    def __init__(self, db, fetcher, locks: Optional[SourceLockRegistry] = None):
        self.db = db
        self.fetcher = fetcher
        self.locks = locks or SourceLockRegistry()
        self.gate = ArticleGate(db)

    @trace_span(
        "syncer.sync_source",
        tracer_name="syncer",
        attr_from_args=lambda self, source: {"source.id": source.id, "source.name": source.name},
    )
    async def sync_source(self, source: Source) -> SyncResult:
        """Synchronize one source.

        Returns immediately with a "Sync already in progress" error when the
        source is already being synced. Raises MissingFeedUrlError when the
        source has no feed URL. Feed download or parse failures are recorded
        on the source and returned as a failed result. Storage errors are recorded
        on the source when possible and then propagate.
        """
        if not self.locks.try_acquire(source.id):
            logger.warning(f"Sync already in progress for source {source.id} ({source.name})")
            return SyncResult(errors=[SYNC_IN_PROGRESS])
        try:
            return await self._sync_locked(source)
        finally:
            self.locks.release(source.id)

    async def _sync_locked(self, source: Source) -> SyncResult:
        started = time()
        if not source.feed_url:
            error = MissingFeedUrlError(source.name)
            await self.db.execute('update_source_last_sync', source_id=source.id, error_message=str(error))
            raise error

        logger.info(f"Starting sync for source: {source.name} ({source.feed_url})")
        try:
            entries = await self.fetcher.fetch_feed(source.feed_url)
        except FeedFetchError as e:
            logger.error(f"Error syncing source {source.name}: {e}")
            await self.db.execute('update_source_last_sync', source_id=source.id, error_message=str(e))
            return SyncResult(failed=True, errors=[str(e)])

        result = SyncResult()
        drafts = []
        for entry in entries:
            url = resolve_entry_url(entry)
            if not url:
                result.errors.append(f"Item without URL: {resolve_entry_title(entry)}")
                continue
            result.found += 1
            try:
                drafts.append(normalize_entry(entry, source.id))
            except Exception as e:
                logger.warning(f"Failed to normalize item {url} from {source.name}: {e}")
                result.errors.append(f"Error processing item {url}: {e}")

        try:
            summary = await self.gate.persist_new(drafts, source.id)
        except Exception as e:
            logger.error(f"Failed to store articles for {source.name}: {e}")
            await self._record_failure(source, str(e))
            raise
        result.new = summary.new
        result.duplicates = summary.duplicates
        result.errors.extend(summary.errors)

        await self.db.execute('update_source_last_sync', source_id=source.id, error_message=result.first_error)

        logger.info(
            f"Sync completed for {source.name}: {result.found} found, {result.new} new, "
            f"{len(result.errors)} errors in {time() - started:.2f}s"
        )
        return result

    async def _record_failure(self, source: Source, message: str) -> None:
        try:
            await self.db.execute('update_source_last_sync', source_id=source.id, error_message=message)
        except Exception as e:
            logger.warning(f"Could not record sync failure for {source.name}: {e}")
