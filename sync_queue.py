#!/usr/bin/env python3
"""
Concurrency-bounded sync queue.

Sources wait in a FIFO backlog and are handed to the SourceSyncer at most
`concurrency` at a time. Each source's transient progress is kept in a live
map that observers can subscribe to; terminal entries expire after a delay.
"""

from asyncio import Future, Task, create_task, get_running_loop, sleep, CancelledError
from collections import deque
from dataclasses import replace
from time import time
from typing import Any, Callable, Deque, Dict, List, Optional, Set

from config import config, get_logger
from models import Source, SyncProgress, SyncResult, SyncStatus

logger = get_logger("sync_queue")

ProgressListener = Callable[[List[SyncProgress]], None]

INITIAL_PROGRESS = 10
PROGRESS_STEP = 10
PROGRESS_CEILING = 90
REMOVED_FROM_QUEUE = "Removed from queue before syncing"


class SyncQueue:
    """Runs source syncs with bounded parallelism and live progress.

    Args:
        syncer: Object exposing `async sync_source(source) -> SyncResult`
        concurrency: Maximum number of syncs in flight
        tick_interval: Seconds between simulated progress increments
        completed_ttl: Seconds a completed entry stays in the progress map
        failed_ttl: Seconds a failed entry stays in the progress map
        poll_interval: Seconds between idle checks in `enqueue_all`
    """

    def __init__(self, syncer, concurrency: Optional[int] = None, tick_interval: float = 0.5,
                 completed_ttl: float = 5.0, failed_ttl: float = 10.0, poll_interval: float = 0.1):
        self.syncer = syncer
        self.concurrency = max(1, concurrency or config.SYNC_CONCURRENCY)
        self.tick_interval = tick_interval
        self.completed_ttl = completed_ttl
        self.failed_ttl = failed_ttl
        self.poll_interval = poll_interval

        self._backlog: Deque[Source] = deque()
        self._futures: Dict[int, Future] = {}
        self._progress: Dict[int, SyncProgress] = {}
        self._listeners: List[ProgressListener] = []
        self._tasks: Set[Task] = set()
        self._active = 0
        self._paused = False
        logger.info(f"SyncQueue initialized (concurrency={self.concurrency})")

    @property
    def active_count(self) -> int:
        return self._active

    @property
    def is_paused(self) -> bool:
        return self._paused

    def is_idle(self) -> bool:
        return not self._backlog and self._active == 0

    # Observers
    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Register a progress listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _emit(self) -> None:
        snapshot = list(self._progress.values())
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Progress listener raised; ignoring")

    def _set_progress(self, entry: SyncProgress) -> SyncProgress:
        self._progress[entry.source_id] = entry
        self._emit()
        return entry

    # Queueing
    def _add(self, source: Source) -> Future:
        existing = self._futures.get(source.id)
        if existing is not None and not existing.done():
            logger.debug(f"Source {source.id} already queued or syncing")
            return existing

        future = get_running_loop().create_future()
        self._futures[source.id] = future
        self._progress[source.id] = SyncProgress(source_id=source.id, source_name=source.name)
        self._backlog.append(source)
        return future

    def enqueue(self, source: Source) -> Future:
        """Queue one source; the returned future resolves to its SyncResult.

        A source that is already pending or syncing is not queued twice; its
        existing future is returned instead.
        """
        future = self._add(source)
        self._emit()
        self._drain()
        return future

    async def enqueue_all(self, sources: List[Source]) -> List[SyncResult]:
        """Start a fresh pass over `sources` and wait until the queue is idle."""
        logger.info(f"Queueing sync for {len(sources)} sources")
        self._drop_backlog()
        self._progress.clear()

        futures = [self._add(source) for source in sources]
        self._emit()
        self._drain()

        while not self.is_idle():
            await sleep(self.poll_interval)

        logger.info("All sources sync completed")
        return [future.result() for future in futures if future.done()]

    # Control
    def pause(self) -> None:
        self._paused = True
        logger.info("Sync queue paused")

    def resume(self) -> None:
        self._paused = False
        logger.info("Sync queue resumed")
        self._drain()

    def clear(self) -> None:
        """Drop the backlog and every progress entry. In-flight syncs keep running."""
        self._drop_backlog()
        self._progress.clear()
        self._emit()
        logger.info("Sync queue cleared")

    def _drop_backlog(self) -> None:
        while self._backlog:
            source = self._backlog.popleft()
            future = self._futures.pop(source.id, None)
            if future is not None and not future.done():
                future.set_result(SyncResult(failed=True, errors=[REMOVED_FROM_QUEUE]))

    def get_status(self) -> Dict[str, Any]:
        return {
            'backlog_size': len(self._backlog),
            'pending_count': len(self._backlog) + self._active,
            'is_paused': self._paused,
            'progress': [entry.to_dict() for entry in self._progress.values()],
        }

    # Processing
    def _drain(self) -> None:
        while self._backlog and self._active < self.concurrency and not self._paused:
            source = self._backlog.popleft()
            self._active += 1
            task = create_task(self._process(source), name=f"sync-source-{source.id}")
            self._tasks.add(task)
            task.add_done_callback(self._on_task_done)

    def _on_task_done(self, task: Task) -> None:
        self._tasks.discard(task)
        self._active -= 1
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Sync task {task.get_name()} crashed: {task.exception()}")
        self._drain()

    async def _process(self, source: Source) -> None:
        self._set_progress(SyncProgress(
            source_id=source.id,
            source_name=source.name,
            status=SyncStatus.SYNCING,
            progress=INITIAL_PROGRESS,
        ))
        ticker = create_task(self._tick(source.id))
        try:
            result = await self.syncer.sync_source(source)
        except CancelledError:
            raise
        except Exception as e:
            logger.error(f"Failed to sync {source.name}: {e}")
            result = SyncResult(failed=True, errors=[str(e)])
        finally:
            ticker.cancel()

        if result.failed:
            entry = self._set_progress(SyncProgress(
                source_id=source.id,
                source_name=source.name,
                status=SyncStatus.FAILED,
                progress=0,
                error=result.first_error,
            ))
            ttl = self.failed_ttl
        else:
            entry = self._set_progress(SyncProgress(
                source_id=source.id,
                source_name=source.name,
                status=SyncStatus.COMPLETED,
                progress=100,
                articles_found=result.found,
                articles_new=result.new,
                error=result.first_error,
            ))
            ttl = self.completed_ttl
            logger.info(f"Completed sync for {source.name}: {result.new} new articles")

        future = self._futures.get(source.id)
        if future is not None:
            if not future.done():
                future.set_result(result)
            del self._futures[source.id]

        get_running_loop().call_later(ttl, self._expire, source.id, entry)

    async def _tick(self, source_id: int) -> None:
        while True:
            await sleep(self.tick_interval)
            current = self._progress.get(source_id)
            if current is not None and current.status is SyncStatus.SYNCING and current.progress < PROGRESS_CEILING:
                self._set_progress(replace(
                    current,
                    progress=min(current.progress + PROGRESS_STEP, PROGRESS_CEILING),
                    updated_at=time(),
                ))

    def _expire(self, source_id: int, entry: SyncProgress) -> None:
        # Only remove the entry if nothing has replaced it since
        if self._progress.get(source_id) is entry:
            del self._progress[source_id]
            self._emit()
