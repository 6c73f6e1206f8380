#!/usr/bin/env python3
"""
Feed refresher entry point.

Wires the store, feed source, per-feed refresher and refresh worker together
and exposes them as a small command line:

    python main.py run              # refresh loop (SIGUSR1 forces a refresh)
    python main.py refresh          # one batch, then exit
    python main.py add-feed URL     # register a feed
    python main.py unread --page 0  # show a page of unread items
    python main.py mark-read ID     # mark an item read (mark-unread to undo)
"""

import argparse
import asyncio
import signal
import sys
from datetime import timedelta
from typing import Optional

from config import config, get_logger
from errors import BatchError, StoreError
from fetcher import FeedSource
from models import DatabaseQueue, ItemStatus
from refresher import FeedRefresher
from telemetry import init_telemetry
from utils import truncate_string, validate_url
from worker import RefreshWorker

# Module-specific logger
logger = get_logger("main")

# How long shutdown waits for a batch that was still running when stop was requested
SHUTDOWN_GRACE_SECONDS = 30.0


def build_worker(db: DatabaseQueue, source: FeedSource) -> RefreshWorker:
    """Create a RefreshWorker configured from the global config."""
    refresher = FeedRefresher(
        db,
        source,
        throttle_window=timedelta(minutes=config.REFRESH_THROTTLE_MINUTES),
        fetch_timeout=config.FEED_REFRESH_TIMEOUT,
        ignored_link_patterns=config.IGNORED_LINK_PATTERNS,
    )
    return RefreshWorker(
        db,
        refresher,
        interval=timedelta(minutes=config.REFRESH_INTERVAL_MINUTES),
        max_concurrency=config.MAX_CONCURRENT_REFRESHES,
        refresh_on_startup=config.REFRESH_ON_STARTUP,
    )


async def register_configured_feeds(db: DatabaseQueue) -> int:
    """Register every feed listed in feeds.yaml. Returns how many were processed."""
    registered = 0
    for slug, feed_cfg in config.FEED_SOURCES.items():
        if not validate_url(feed_cfg['url']):
            logger.warning(f"Skipping feed {slug}: invalid URL {feed_cfg['url']}")
            continue
        try:
            await db.execute('register_feed', url=feed_cfg['url'], title=feed_cfg['title'])
            registered += 1
        except StoreError as e:
            logger.error(f"Could not register feed {slug}: {e}")
    return registered


async def run_worker() -> None:
    """Run the refresh loop until SIGINT/SIGTERM."""
    db = DatabaseQueue(config.DATABASE_PATH)
    source = FeedSource()
    loop = asyncio.get_running_loop()
    handled_signals = []
    await db.start()
    try:
        await register_configured_feeds(db)
        worker = build_worker(db, source)

        stop_event = asyncio.Event()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, stop_event.set)
            handled_signals.append(sig)
        if hasattr(signal, "SIGUSR1"):
            loop.add_signal_handler(signal.SIGUSR1, worker.trigger_refresh)
            handled_signals.append(signal.SIGUSR1)
            logger.info("Send SIGUSR1 to force a refresh")

        await worker.run_loop(stop_event)
        if not await worker.wait_for_inflight(timeout=SHUTDOWN_GRACE_SECONDS):
            logger.warning(f"Refresh batch still running after {SHUTDOWN_GRACE_SECONDS:g}s; shutting down anyway")
    finally:
        for sig in handled_signals:
            loop.remove_signal_handler(sig)
        await source.close()
        await db.stop()


async def run_once(forced: bool) -> bool:
    """Run a single refresh batch."""
    db = DatabaseQueue(config.DATABASE_PATH)
    source = FeedSource()
    await db.start()
    try:
        await register_configured_feeds(db)
        worker = build_worker(db, source)
        try:
            result = await worker.refresh_all(forced=forced)
        except BatchError as e:
            logger.error(f"❌ Refresh failed: {e}")
            return False
        if result.failed:
            logger.warning(f"⚠️ {result.failed} of {result.feeds} feeds failed to refresh")
        return True
    finally:
        await source.close()
        await db.stop()


async def add_feed(url: str, title: Optional[str]) -> bool:
    if not validate_url(url):
        logger.error(f"Invalid feed URL: {url}")
        return False
    db = DatabaseQueue(config.DATABASE_PATH)
    await db.start()
    try:
        feed_id = await db.execute('register_feed', url=url, title=title or url)
        print(f"Feed {feed_id}: {url}")
        return True
    finally:
        await db.stop()


async def show_unread(page: int) -> bool:
    db = DatabaseQueue(config.DATABASE_PATH)
    await db.start()
    try:
        page = max(page, 0)
        items = await db.execute(
            'list_items',
            status=ItemStatus.UNREAD,
            limit=config.PAGE_SIZE,
            offset=page * config.PAGE_SIZE,
        )
        if not items:
            print(f"No unread items on page {page}")
        for item in items:
            published = item.published_at.isoformat() if item.published_at else "n/a"
            print(f"[{item.id}] {truncate_string(item.title or '(untitled)', 80)}")
            print(f"      {item.link}  ({published})")
        return True
    finally:
        await db.stop()


async def set_status(item_id: int, status: ItemStatus) -> bool:
    db = DatabaseQueue(config.DATABASE_PATH)
    await db.start()
    try:
        changed = await db.execute('set_item_status', item_id=item_id, status=status)
        if not changed:
            logger.error(f"Item {item_id} not found")
        return changed
    finally:
        await db.stop()


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Feed refresher')
    subparsers = parser.add_subparsers(dest='mode', required=True)

    subparsers.add_parser('run', help='Run the refresh loop')
    refresh_parser = subparsers.add_parser('refresh', help='Refresh all feeds once')
    refresh_parser.add_argument('--force', action='store_true', help='Log the batch as a forced refresh')

    add_parser = subparsers.add_parser('add-feed', help='Register a feed')
    add_parser.add_argument('url')
    add_parser.add_argument('--title', type=str, help='Display title (defaults to the URL)')

    unread_parser = subparsers.add_parser('unread', help='Show a page of unread items')
    unread_parser.add_argument('--page', type=int, default=0)

    for name in ('mark-read', 'mark-unread'):
        status_parser = subparsers.add_parser(name, help=f"{name.replace('-', ' ').capitalize()} an item")
        status_parser.add_argument('item_id', type=int)

    args = parser.parse_args()

    init_telemetry("feed-refresher")
    logger.debug(f"Configuration: {config.get_config_summary()}")

    try:
        if args.mode == 'run':
            asyncio.run(run_worker())
        elif args.mode == 'refresh':
            success = asyncio.run(run_once(forced=args.force))
            sys.exit(0 if success else 1)
        elif args.mode == 'add-feed':
            sys.exit(0 if asyncio.run(add_feed(args.url, args.title)) else 1)
        elif args.mode == 'unread':
            sys.exit(0 if asyncio.run(show_unread(args.page)) else 1)
        elif args.mode in ('mark-read', 'mark-unread'):
            status = ItemStatus.READ if args.mode == 'mark-read' else ItemStatus.UNREAD
            sys.exit(0 if asyncio.run(set_status(args.item_id, status)) else 1)
    except KeyboardInterrupt:
        logger.info("👋 Shutting down")
    except StoreError as e:
        logger.error(f"💥 Database error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
