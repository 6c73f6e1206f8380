#!/usr/bin/env python3
"""
Refresh orchestrator.

RefreshWorker owns the trigger surface (a periodic tick plus a manual
trigger) and runs one batch at a time: list every feed, refresh them with a
bounded number in flight, then log the aggregate outcome.

Manual triggers go through a single-slot mailbox. A trigger that arrives
while one is already pending is dropped without blocking the caller, so a
burst of requests during a long batch results in exactly one follow-up batch.
"""

from asyncio import (
    FIRST_COMPLETED, Event, Queue, QueueFull, Semaphore, Task,
    create_task, gather, get_running_loop, wait,
)
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from time import monotonic
from typing import Optional

from config import get_logger
from errors import BatchError, StoreError
from models import DatabaseQueue, Feed
from refresher import FeedRefresher
from telemetry import trace_span
from utils import format_duration, utc_now

# Module-specific logger
logger = get_logger("worker")

DEFAULT_REFRESH_INTERVAL = timedelta(minutes=60)
DEFAULT_MAX_CONCURRENT_REFRESHES = 5


class WorkerState(str, Enum):
    IDLE = "idle"
    REFRESHING = "refreshing"


@dataclass
class BatchResult:
    forced: bool = False
    feeds: int = 0
    refreshed: int = 0
    throttled: int = 0
    failed: int = 0
    created: int = 0
    updated: int = 0


class RefreshWorker:
    """Schedules refresh batches and fans them out over a bounded pool."""

    def __init__(
        self,
        db: DatabaseQueue,
        refresher: FeedRefresher,
        interval: timedelta = DEFAULT_REFRESH_INTERVAL,
        max_concurrency: int = DEFAULT_MAX_CONCURRENT_REFRESHES,
        refresh_on_startup: bool = False,
    ) -> None:
        self.db = db
        self.refresher = refresher
        self.interval = interval
        self.max_concurrency = max_concurrency
        self.refresh_on_startup = refresh_on_startup
        self.state = WorkerState.IDLE
        self._triggers: Queue = Queue(maxsize=1)
        self._inflight: Optional[Task] = None

    def trigger_refresh(self) -> bool:
        """Request a forced refresh without blocking.

        Returns:
            True if the request was queued, False if one was already pending
            (the request is dropped).
        """
        try:
            self._triggers.put_nowait(None)
        except QueueFull:
            logger.info("Manual refresh already pending; dropping trigger")
            return False
        logger.info("Manual refresh requested")
        return True

    @property
    def trigger_pending(self) -> bool:
        return not self._triggers.empty()

    @trace_span(
        "refresh_batch",
        tracer_name="worker",
        attr_from_args=lambda self, forced=False: {"refresh.forced": bool(forced)},
    )
    async def refresh_all(self, forced: bool = False) -> BatchResult:
        """Refresh every feed once, at most max_concurrency at a time.

        Per-feed failures are logged and counted; they never cancel sibling
        refreshes.

        Raises:
            BatchError: if the feeds cannot be listed (no feed is touched).
        """
        if forced:
            logger.info("Starting feed refresh (forced)")
        else:
            logger.info(f"Starting feed refresh; next periodic refresh at {(utc_now() + self.interval).isoformat()}")

        try:
            feeds = await self.db.execute('list_feeds')
        except StoreError as e:
            raise BatchError(f"listing feeds: {e}") from e

        logger.info(f"Found {len(feeds)} feeds")
        result = BatchResult(forced=forced, feeds=len(feeds))
        started = monotonic()

        semaphore = Semaphore(self.max_concurrency)

        async def refresh_with_semaphore(feed: Feed) -> None:
            async with semaphore:
                try:
                    outcome = await self.refresher.refresh(feed)
                except Exception as e:
                    logger.error(f"Error refreshing feed {feed.id} ({feed.url}): {e}")
                    result.failed += 1
                    return
            if outcome.throttled:
                result.throttled += 1
            else:
                result.refreshed += 1
                result.created += outcome.created
                result.updated += outcome.updated

        await gather(*(create_task(refresh_with_semaphore(feed)) for feed in feeds))

        logger.info(
            f"Feed refresh finished in {format_duration(monotonic() - started)}: "
            f"{result.refreshed} refreshed, {result.throttled} throttled, {result.failed} failed, "
            f"{result.created} new items, {result.updated} updated items"
        )
        return result

    async def _guarded_refresh(self, forced: bool) -> Optional[BatchResult]:
        try:
            return await self.refresh_all(forced=forced)
        except BatchError as e:
            logger.error(f"Error refreshing feeds: {e}")
            return None

    def _batch_finished(self, task: Task) -> None:
        self.state = WorkerState.IDLE
        if self._inflight is task:
            self._inflight = None
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Refresh batch crashed: {task.exception()!r}")

    async def _run_batch(self, forced: bool, stop_waiter: Task) -> bool:
        """Run one batch; return False if a stop was requested before it finished."""
        self.state = WorkerState.REFRESHING
        batch = create_task(self._guarded_refresh(forced))
        self._inflight = batch
        batch.add_done_callback(self._batch_finished)

        done, _ = await wait({batch, stop_waiter}, return_when=FIRST_COMPLETED)
        if batch not in done:
            logger.info("Stop requested during a refresh batch; in-flight feeds will finish on their own")
            return False
        return True

    async def run_loop(self, stop_event: Event) -> None:
        """Run batches on every tick or manual trigger until stop_event is set."""
        logger.info(f"Starting worker (interval: {format_duration(self.interval.total_seconds())}, "
                    f"max concurrent refreshes: {self.max_concurrency})")
        loop = get_running_loop()
        interval_seconds = self.interval.total_seconds()
        next_tick = loop.time() + interval_seconds

        stop_waiter = create_task(stop_event.wait())
        trigger_waiter: Optional[Task] = None
        try:
            if self.refresh_on_startup and not await self._run_batch(False, stop_waiter):
                return

            while not stop_event.is_set():
                trigger_waiter = create_task(self._triggers.get())
                timeout = max(0.0, next_tick - loop.time())
                done, _ = await wait({stop_waiter, trigger_waiter}, timeout=timeout, return_when=FIRST_COMPLETED)

                if stop_waiter in done:
                    break

                forced = trigger_waiter in done
                if not forced:
                    # Stop listening so triggers during the batch stay in the mailbox
                    trigger_waiter.cancel()
                trigger_waiter = None

                # Coalesce ticks missed while waiting or refreshing
                while next_tick <= loop.time():
                    next_tick += interval_seconds

                if not await self._run_batch(forced, stop_waiter):
                    break
        finally:
            if trigger_waiter is not None:
                trigger_waiter.cancel()
            stop_waiter.cancel()
            logger.info("Worker stopped")

    async def wait_for_inflight(self, timeout: Optional[float] = None) -> bool:
        """Wait for a batch left running after stop. Returns True if none is still running."""
        task = self._inflight
        if task is None or task.done():
            return True
        done, _ = await wait({task}, timeout=timeout)
        return task in done
