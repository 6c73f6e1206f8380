#!/usr/bin/env python3
"""
Feed source: fetch a feed URL and parse it into a FeedDocument.

The HTTP request runs on a shared aiohttp session and feedparser runs in a
thread pool, since it is not async. The whole fetch+parse is bounded by a
single deadline; every failure surfaces as FeedFetchError so callers only
have one thing to catch.
"""

from asyncio import get_running_loop, wait_for, TimeoutError
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from time import struct_time
from typing import Any, List, Optional

import feedparser
from aiohttp import ClientSession, ClientError, ClientTimeout

from config import config, get_logger
from errors import FeedFetchError
from telemetry import trace_span

# Module-specific logger
logger = get_logger("fetcher")

# HTTP status codes
HTTP_OK = 200


@dataclass
class RemoteItem:
    """One entry of a fetched feed document."""

    title: str = ""
    link: str = ""
    guid: str = ""
    description: str = ""
    content: str = ""
    published_at: Optional[datetime] = None


@dataclass
class FeedDocument:
    """A parsed feed: title, optional image URL and its items in document order."""

    title: str = ""
    image: Optional[str] = None
    items: List[RemoteItem] = field(default_factory=list)


def _struct_to_utc(value: Any) -> Optional[datetime]:
    """Convert a feedparser time tuple (always UTC) to an aware datetime."""
    if not isinstance(value, (struct_time, tuple)) or len(value) < 6:
        return None
    try:
        return datetime(*value[:6], tzinfo=timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def parse_entry(entry) -> RemoteItem:
    """Map a feedparser entry onto a RemoteItem."""
    content = ""
    for content_item in entry.get('content') or []:
        value = content_item.get('value')
        if value:
            content = value
            break

    published_at = _struct_to_utc(entry.get('published_parsed')) or _struct_to_utc(entry.get('updated_parsed'))

    return RemoteItem(
        title=(entry.get('title') or "").strip(),
        link=(entry.get('link') or "").strip(),
        guid=(entry.get('id') or "").strip(),
        description=entry.get('summary') or entry.get('description') or "",
        content=content,
        published_at=published_at,
    )


def parse_document(parsed) -> FeedDocument:
    """Map a feedparser result onto a FeedDocument."""
    feed_meta = parsed.get('feed') or {}
    image = None
    image_meta = feed_meta.get('image')
    if image_meta:
        image = image_meta.get('href') or image_meta.get('url') or None

    return FeedDocument(
        title=(feed_meta.get('title') or "").strip(),
        image=image,
        items=[parse_entry(entry) for entry in parsed.get('entries') or []],
    )


class FeedSource:
    """Fetches and parses feed documents.

    A session may be supplied by the caller (e.g. shared across a batch);
    otherwise one is created lazily and closed by close().
    """

    def __init__(self, session: Optional[ClientSession] = None) -> None:
        self._session = session
        self._owns_session = session is None
        self.executor = ThreadPoolExecutor(max_workers=config.MAX_CONCURRENT_REFRESHES)

    async def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(headers={'User-Agent': config.USER_AGENT})
            self._owns_session = True
        return self._session

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, timeout: {"feed.url": url, "fetch.timeout": float(timeout)},
    )
    async def fetch(self, url: str, timeout: float) -> FeedDocument:
        """Fetch and parse a feed, giving up after `timeout` seconds.

        Raises:
            FeedFetchError: on timeout, network error, non-200 status or an
                unparseable document.
        """
        try:
            return await wait_for(self._fetch(url, timeout), timeout=timeout)
        except TimeoutError:
            raise FeedFetchError(url, f"timed out after {timeout:g}s") from None
        except ClientError as e:
            raise FeedFetchError(url, f"network error: {e.__class__.__name__} {e}") from e

    async def _fetch(self, url: str, timeout: float) -> FeedDocument:
        session = await self._get_session()
        async with session.get(
            url,
            timeout=ClientTimeout(total=timeout),
            max_redirects=config.MAX_REDIRECTS,
        ) as response:
            if response.status != HTTP_OK:
                raise FeedFetchError(url, f"HTTP {response.status}")
            content = await response.read()

        loop = get_running_loop()
        parsed = await loop.run_in_executor(self.executor, partial(feedparser.parse, content))

        if parsed.bozo and not parsed.entries and not (parsed.get('feed') or {}).get('title'):
            raise FeedFetchError(url, f"not a valid feed document: {parsed.get('bozo_exception')}")
        if parsed.bozo:
            logger.warning(f"Feed parsing warning for {url}: {parsed.get('bozo_exception')}")

        document = parse_document(parsed)
        logger.debug(f"Fetched {url}: {len(document.items)} items ({parsed.get('version') or 'unknown format'})")
        return document

    async def close(self) -> None:
        """Close the HTTP session (if owned) and the parser thread pool."""
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self.executor.shutdown(wait=False)
