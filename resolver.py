#!/usr/bin/env python3
"""
Dedup/update resolution for fetched feed items.

Every remote item gets a stable identity hash (GUID, else link, else
title + content). Against the stored item with the same (feed_id, hash) the
item resolves to exactly one of create, update or skip, so refreshing an
unchanged document any number of times writes nothing.
"""

import re
from dataclasses import dataclass
from enum import Enum
from hashlib import sha256
from logging import Logger, LoggerAdapter
from typing import Iterable, Optional, Union

from config import get_logger
from errors import StoreError
from fetcher import RemoteItem
from models import Item
from utils import to_utc

# Module-specific logger
logger = get_logger("resolver")

# Low-value links that are never stored
DEFAULT_IGNORED_LINK_PATTERNS = (
    r"^https?://(www\.|m\.)?youtube\.com/shorts/",
)


class ItemAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    SKIP = "skip"


@dataclass
class Resolution:
    action: ItemAction
    hash: str
    existing: Optional[Item] = None


def compute_item_hash(item: RemoteItem) -> str:
    """Return the hex SHA-256 identity of a remote item.

    Identity source, in priority order: GUID, link, title + content. Two items
    with neither GUID nor link and identical title + content share a hash.
    """
    if item.guid:
        source = item.guid
    elif item.link:
        source = item.link
    else:
        source = item.title + item.content
    return sha256(source.encode("utf-8")).hexdigest()


def compile_link_patterns(extra_patterns: Iterable[str] = ()) -> list:
    """Compile the built-in and configured ignored-link patterns.

    Invalid configured patterns are logged and dropped.
    """
    compiled = [re.compile(p) for p in DEFAULT_IGNORED_LINK_PATTERNS]
    for pattern in extra_patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            logger.warning(f"Ignoring invalid link filter pattern {pattern!r}: {e}")
    return compiled


def is_ignored_link(link: str, patterns: Optional[list] = None) -> bool:
    if not link:
        return False
    if patterns is None:
        patterns = compile_link_patterns()
    return any(p.search(link) for p in patterns)


def decide(existing: Optional[Item], item: RemoteItem) -> ItemAction:
    """Decide what to do with a remote item given the stored one (if any)."""
    if existing is None:
        return ItemAction.CREATE
    if (
        item.title != existing.title
        or item.link != existing.link
        or item.description != existing.description
        or to_utc(item.published_at) != to_utc(existing.published_at)
    ):
        return ItemAction.UPDATE
    return ItemAction.SKIP


async def resolve(tx, feed_id: int, item: RemoteItem,
                  log: Union[Logger, LoggerAdapter] = logger) -> Optional[Resolution]:
    """Look up a remote item's stored counterpart and resolve it.

    Args:
        tx: An open transaction (or a DatabaseQueue) exposing execute().
        feed_id: Owning feed.
        item: The fetched item.
        log: Logger carrying the feed context.

    Returns:
        The resolution, or None if the lookup failed. Lookup failures are
        logged and the item is skipped for this pass.
    """
    item_hash = compute_item_hash(item)
    try:
        existing = await tx.execute('find_item', feed_id=feed_id, hash=item_hash)
    except StoreError as e:
        log.error(f"Error checking if item exists (hash={item_hash}): {e}")
        return None
    return Resolution(action=decide(existing, item), hash=item_hash, existing=existing)
