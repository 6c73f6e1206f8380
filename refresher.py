#!/usr/bin/env python3
"""
Per-feed refresh: throttle, fetch, resolve and commit one feed.

The fetch runs without any lock so several feeds download in parallel. Only
the write phase holds the store's write lock, inside a single transaction,
so a feed's items and its refresh timestamp land together or not at all.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from logging import LoggerAdapter
from typing import Callable, Iterable, Optional

from config import get_logger
from errors import FeedFetchError, FeedRefreshError, StoreError
from fetcher import FeedDocument, FeedSource
from models import DatabaseQueue, Feed
from resolver import ItemAction, compile_link_patterns, is_ignored_link, resolve
from telemetry import trace_span
from utils import to_utc, utc_now

# Module-specific logger
logger = get_logger("refresher")

DEFAULT_THROTTLE_WINDOW = timedelta(minutes=10)
DEFAULT_FETCH_TIMEOUT = 15.0


class FeedLogAdapter(LoggerAdapter):
    """Prefix log messages with the feed they concern."""

    def process(self, msg, kwargs):
        return f"[feed {self.extra['feed_id']} {self.extra['url']}] {msg}", kwargs


@dataclass
class RefreshResult:
    feed_id: int
    created: int = 0
    updated: int = 0
    skipped: int = 0
    throttled: bool = False


class FeedRefresher:
    """Advances a single feed's stored state by at most one refresh per call."""

    def __init__(
        self,
        db: DatabaseQueue,
        source: FeedSource,
        throttle_window: timedelta = DEFAULT_THROTTLE_WINDOW,
        fetch_timeout: float = DEFAULT_FETCH_TIMEOUT,
        ignored_link_patterns: Iterable[str] = (),
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db = db
        self.source = source
        self.throttle_window = throttle_window
        self.fetch_timeout = fetch_timeout
        self.link_patterns = compile_link_patterns(ignored_link_patterns)
        self.clock = clock

    def next_allowed_refresh(self, feed: Feed) -> Optional[datetime]:
        """When the feed may next be refreshed, or None if it may be refreshed now."""
        if feed.last_refreshed_at is None:
            return None
        allowed_at = to_utc(feed.last_refreshed_at) + self.throttle_window
        if allowed_at > self.clock():
            return allowed_at
        return None

    @trace_span(
        "refresh_feed",
        tracer_name="refresher",
        attr_from_args=lambda self, feed: {"feed.id": int(feed.id), "feed.url": feed.url},
    )
    async def refresh(self, feed: Feed) -> RefreshResult:
        """Refresh one feed.

        Returns:
            Counts of created/updated/skipped items, or throttled=True if the
            feed was refreshed too recently (nothing fetched, nothing written).

        Raises:
            FeedRefreshError: if the fetch fails or the transaction cannot be
                committed. Nothing is written in either case.
        """
        log = FeedLogAdapter(logger, {"feed_id": feed.id, "url": feed.url})

        allowed_at = self.next_allowed_refresh(feed)
        if allowed_at is not None:
            log.warning(f"Refresh triggered too quickly; can refresh at {allowed_at.isoformat()}")
            return RefreshResult(feed_id=feed.id, throttled=True)

        log.info("Refreshing feed")
        try:
            document = await self.source.fetch(feed.url, self.fetch_timeout)
        except FeedFetchError as e:
            raise FeedRefreshError(feed.id, f"fetching feed: {e}") from e

        try:
            result = await self._commit(feed, document, log)
        except StoreError as e:
            raise FeedRefreshError(feed.id, f"writing feed items: {e}") from e

        log.info(f"Successfully refreshed feed: {result.created} new, {result.updated} updated, {result.skipped} unchanged")
        return result

    async def _commit(self, feed: Feed, document: FeedDocument, log: FeedLogAdapter) -> RefreshResult:
        result = RefreshResult(feed_id=feed.id)
        previous_refresh = to_utc(feed.last_refreshed_at)

        async with self.db.transaction() as tx:
            for item in document.items:
                if is_ignored_link(item.link, self.link_patterns):
                    log.debug(f"Ignoring filtered link {item.link}")
                    continue

                # Items older than the previous refresh are assumed to be covered by it
                if previous_refresh is not None and item.published_at is not None \
                        and to_utc(item.published_at) < previous_refresh:
                    result.skipped += 1
                    continue

                resolution = await resolve(tx, feed.id, item, log)
                if resolution is None:
                    result.skipped += 1
                    continue

                if resolution.action is ItemAction.CREATE:
                    await tx.execute(
                        'create_item',
                        feed_id=feed.id,
                        title=item.title,
                        link=item.link,
                        description=item.description,
                        published_at=to_utc(item.published_at),
                        hash=resolution.hash,
                    )
                    result.created += 1
                elif resolution.action is ItemAction.UPDATE:
                    await tx.execute(
                        'update_item',
                        item_id=resolution.existing.id,
                        title=item.title,
                        link=item.link,
                        description=item.description,
                        published_at=to_utc(item.published_at),
                    )
                    result.updated += 1
                else:
                    result.skipped += 1

            if document.image:
                try:
                    await tx.execute('update_feed_image', feed_id=feed.id, image=document.image)
                except StoreError as e:
                    log.error(f"Failed to update feeds.image: {e}")

            try:
                await tx.execute('update_feed_last_refreshed_at', feed_id=feed.id, refreshed_at=self.clock())
            except StoreError as e:
                log.error(f"Failed to update feeds.last_refreshed_at: {e}")

        return result
