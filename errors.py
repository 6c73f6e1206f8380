#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class FeedFetchError(Exception):
    """Raised when a feed document cannot be fetched or parsed.

    Attributes:
        url: The feed URL that failed.
    """

    def __init__(self, url: str, message: str):
        super().__init__(f"{url}: {message}")
        self.url = url


class StoreError(Exception):
    """Raised when a store operation fails for any reason other than "not found"."""


class FeedRefreshError(Exception):
    """Raised when a single feed refresh fails; prior state is left intact.

    Attributes:
        feed_id: Identifier of the feed whose refresh failed.
    """

    def __init__(self, feed_id: Optional[int], message: str):
        super().__init__(f"feed {feed_id}: {message}")
        self.feed_id = feed_id


class BatchError(Exception):
    """Raised when a whole refresh batch has to be abandoned (e.g. feeds cannot be listed)."""


__all__ = ["FeedFetchError", "StoreError", "FeedRefreshError", "BatchError"]
