#!/usr/bin/env python3
"""
Full sync pass scheduler.

Runs a full sync pass (every active source that is due) on a cron expression
or fixed interval, and once shortly after startup. At most one pass runs at a
time: a trigger that fires while a pass is running is skipped. Each pass ends
with retention pruning of old, non-favorited articles.

Fire times come from APScheduler triggers; the waiting itself is a plain
asyncio sleep loop so passes share the event loop with the sync queue.
"""

import asyncio
from datetime import datetime, timezone
from time import time
from typing import Any, Dict, Optional, Set
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from config import config, get_logger
from errors import DatabaseError
from telemetry import trace_span
from utils import format_duration

# Module-specific logger
logger = get_logger("scheduler")


def _resolve_timezone(name: Optional[str]):
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning(f"Invalid timezone '{name}', falling back to UTC")
        return timezone.utc


class FeedScheduler:
    """Triggers full sync passes through the sync queue.

    Args:
        db: DatabaseQueue used to find due sources and prune old articles
        queue: SyncQueue that runs the pass
        cron: Five-field crontab expression (default: config.SYNC_CRON)
        interval_minutes: Fixed interval; overrides cron when set
        timezone_name: Timezone for cron evaluation (default: config.SCHEDULER_TIMEZONE)
        retention_days: Age in days after which non-favorite articles are pruned
        sync_on_startup: Run one pass `startup_delay` seconds after start()
        startup_delay: Seconds to wait before the startup pass
    """

    def __init__(self, db, queue, cron: Optional[str] = None, interval_minutes: Optional[int] = None,
                 timezone_name: Optional[str] = None, retention_days: Optional[int] = None,
                 sync_on_startup: Optional[bool] = None, startup_delay: Optional[float] = None):
        self.db = db
        self.queue = queue
        self.timezone_name = timezone_name or config.SCHEDULER_TIMEZONE
        self.timezone = _resolve_timezone(self.timezone_name)
        self.retention_days = retention_days or config.RETENTION_DAYS
        self.sync_on_startup = config.SYNC_ON_STARTUP if sync_on_startup is None else sync_on_startup
        self.startup_delay = config.SYNC_STARTUP_DELAY if startup_delay is None else startup_delay

        if cron is None and interval_minutes is None:
            cron, interval_minutes = config.SYNC_CRON, config.SYNC_INTERVAL_MINUTES
        self.cron = cron
        self.interval_minutes = interval_minutes
        self.trigger = self._build_trigger(cron, interval_minutes)

        self._pass_in_progress = False
        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._startup_task: Optional[asyncio.Task] = None
        self._pass_tasks: Set[asyncio.Task] = set()
        self.last_pass: Optional[Dict[str, Any]] = None

    def _build_trigger(self, cron: Optional[str], interval_minutes: Optional[int]):
        """Raises ValueError for an invalid crontab or a non-positive interval."""
        if interval_minutes is not None:
            if interval_minutes < 1:
                raise ValueError(f"Sync interval must be at least 1 minute, got {interval_minutes}")
            return IntervalTrigger(minutes=interval_minutes, timezone=self.timezone)
        return CronTrigger.from_crontab(cron or "*/30 * * * *", timezone=self.timezone)

    @property
    def pass_in_progress(self) -> bool:
        return self._pass_in_progress

    @property
    def running(self) -> bool:
        return self._running

    def get_next_run_time(self, from_time: Optional[datetime] = None) -> Optional[datetime]:
        """Next fire time of the current trigger, in UTC."""
        now = from_time or datetime.now(timezone.utc)
        next_time = self.trigger.get_next_fire_time(None, now.astimezone(self.timezone))
        return next_time.astimezone(timezone.utc) if next_time else None

    # Lifecycle
    def start(self) -> None:
        if self._running:
            logger.warning("Scheduler already running")
            return
        self._running = True
        self._loop_task = asyncio.create_task(self._run_loop(), name="feed-scheduler")
        if self.sync_on_startup:
            self._startup_task = asyncio.create_task(self._startup_pass(), name="feed-scheduler-startup")
        logger.info(f"Scheduler started ({self._describe_trigger()}, timezone: {self.timezone_name})")

    async def stop(self, cancel_passes: bool = False) -> None:
        """Stop the timer. Running passes continue unless `cancel_passes` is set."""
        self._running = False
        for task in (self._loop_task, self._startup_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._startup_task = None

        if cancel_passes:
            for task in list(self._pass_tasks):
                task.cancel()
            await asyncio.gather(*self._pass_tasks, return_exceptions=True)
        logger.info("Scheduler stopped")

    async def reschedule(self, cron: Optional[str] = None, interval_minutes: Optional[int] = None) -> None:
        """Swap the trigger and restart the timer; in-flight syncs are unaffected."""
        trigger = self._build_trigger(cron, interval_minutes)
        was_running = self._running
        if was_running:
            self._running = False
            if self._loop_task is not None and not self._loop_task.done():
                self._loop_task.cancel()
                try:
                    await self._loop_task
                except asyncio.CancelledError:
                    pass
        self.cron = cron
        self.interval_minutes = interval_minutes
        self.trigger = trigger
        if was_running:
            self._running = True
            self._loop_task = asyncio.create_task(self._run_loop(), name="feed-scheduler")
        logger.info(f"Scheduler rescheduled: {self._describe_trigger()}")

    def _describe_trigger(self) -> str:
        if self.interval_minutes is not None:
            return f"every {self.interval_minutes} minutes"
        return f"cron '{self.cron}'"

    async def _startup_pass(self) -> None:
        logger.info(f"Initial sync scheduled in {self.startup_delay}s")
        await asyncio.sleep(self.startup_delay)
        self.trigger_pass("startup")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                next_time = self.get_next_run_time()
                if next_time is None:
                    logger.error("Trigger has no further fire times; scheduler loop exiting")
                    break

                # Small buffer so we never wake before the fire time
                seconds_until = (next_time - datetime.now(timezone.utc)).total_seconds()
                sleep_time = max(1, seconds_until + 1)
                logger.info(f"Sleeping {format_duration(sleep_time)} until next full sync ({next_time.isoformat()})")
                await asyncio.sleep(sleep_time)

                self.trigger_pass("scheduled")
            except asyncio.CancelledError:
                logger.info("Scheduler loop cancelled")
                break

    def trigger_pass(self, reason: str = "manual") -> Optional[asyncio.Task]:
        """Spawn a full pass unless one is already running; returns its task."""
        if self._pass_in_progress:
            logger.info(f"Skipping {reason} sync pass: previous pass still in progress")
            return None
        task = asyncio.create_task(self.run_full_pass(reason), name=f"full-sync-{reason}")
        self._pass_tasks.add(task)
        task.add_done_callback(self._on_pass_done)
        return task

    def _on_pass_done(self, task: asyncio.Task) -> None:
        self._pass_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Full sync pass failed: {task.exception()}")

    @trace_span(
        "scheduler.full_pass",
        tracer_name="scheduler",
        attr_from_args=lambda self, reason="manual": {"pass.reason": reason},
    )
    async def run_full_pass(self, reason: str = "manual") -> Dict[str, Any]:
        """Sync every due source through the queue, then prune old articles."""
        if self._pass_in_progress:
            logger.info(f"Skipping {reason} sync pass: previous pass still in progress")
            return {'skipped': True, 'sources': 0, 'pruned': 0, 'duration': 0.0}

        self._pass_in_progress = True
        started = time()
        try:
            logger.info(f"Starting {reason} full sync pass")
            sources = await self.db.execute('find_sources_due_for_sync', active_only=True)
            results = []
            if sources:
                results = await self.queue.enqueue_all(sources)
            else:
                logger.info("No sources due for sync")

            pruned = await self._prune()
            duration = time() - started
            summary = {
                'skipped': False,
                'sources': len(sources),
                'new': sum(result.new for result in results),
                'failed': sum(1 for result in results if result.failed),
                'pruned': pruned,
                'duration': duration,
            }
            self.last_pass = dict(summary, finished_at=datetime.now(timezone.utc).isoformat(), reason=reason)
            logger.info(
                f"Full sync pass finished in {format_duration(duration)}: {summary['sources']} sources, "
                f"{summary['new']} new articles, {summary['failed']} failed, {pruned} pruned"
            )
            return summary
        finally:
            self._pass_in_progress = False

    async def _prune(self) -> int:
        try:
            return await self.db.execute(
                'delete_articles_older_than', days=self.retention_days, exclude_favorites=True
            )
        except DatabaseError as e:
            logger.error(f"Error cleaning up old articles: {e}")
            return 0

    def get_schedule_status(self) -> Dict[str, Any]:
        """Get current schedule status information."""
        now = datetime.now(timezone.utc)
        next_run = self.get_next_run_time(now)
        seconds_until = (next_run - now).total_seconds() if next_run else None
        return {
            'current_time': now.isoformat(),
            'running': self._running,
            'schedule': self._describe_trigger(),
            'schedule_timezone': self.timezone_name,
            'next_run_time': next_run.isoformat() if next_run else None,
            'seconds_until_next_run': seconds_until,
            'minutes_until_next_run': round(seconds_until / 60, 1) if seconds_until is not None else None,
            'pass_in_progress': self._pass_in_progress,
            'retention_days': self.retention_days,
            'last_pass': self.last_pass,
        }
