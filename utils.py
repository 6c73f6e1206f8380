#!/usr/bin/env python3
"""
Utility functions for the feed refresher.

This module contains small helpers shared by the store, fetcher, refresher and
CLI: UTC timestamp conversion, URL validation and human-readable formatting.
"""

from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime with whole seconds."""
    return datetime.now(timezone.utc).replace(microsecond=0)


def to_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize a datetime to timezone-aware UTC.

    Naive datetimes are assumed to already be in UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_timestamp(value: Optional[datetime]) -> Optional[int]:
    """Convert a datetime into integer epoch seconds (UTC), as stored in the database."""
    value = to_utc(value)
    if value is None:
        return None
    return int(value.timestamp())


def from_timestamp(value: Optional[int]) -> Optional[datetime]:
    """Convert stored epoch seconds back into an aware UTC datetime."""
    if value is None:
        return None
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    return url.startswith(('http://', 'https://')) and '.' in url


def format_duration(seconds: float) -> str:
    """Format a duration in seconds to a human-readable string.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string (e.g., "1h 23m 45s")
    """
    if seconds < 0:
        return "0s"

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = int(seconds % 60)

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:  # Always show seconds if nothing else
        parts.append(f"{secs}s")

    return " ".join(parts)


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated.

    Args:
        text: The text to potentially truncate
        max_length: Maximum allowed length (including suffix)
        suffix: Suffix to add when truncating

    Returns:
        The original text or truncated version with suffix
    """
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix
