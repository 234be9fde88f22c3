#!/usr/bin/env python3
"""
Utility functions shared by the extractor and the service layer.

Includes stable episode identity hashing, publish-date parsing and small
helpers for picking the first usable value out of several candidates.
"""

from calendar import timegm
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from hashlib import sha256
from typing import Any, Optional

from feedparser.datetimes import _parse_date as feedparser_parse_date

from config import get_logger

# Module-specific logger
logger = get_logger("utils")


def first_non_empty(*values: Any) -> str:
    """Return the first value that is a non-blank string, stripped, else ''."""
    for value in values:
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def episode_id(
    guid: str = "",
    entry_id: str = "",
    uid: str = "",
    audio: str = "",
    link: str = "",
    title: str = "",
    published_at: Optional[int] = None,
) -> str:
    """Derive a stable, content-addressed episode identifier.

    The first non-empty candidate of guid, id, uid, enclosure audio URL and
    link is hashed. Without any of those, ``"{title}-{published_at}-{audio}"``
    is hashed instead; two distinct episodes that share title and date and
    have no audio collide on that fallback.

    Returns:
        64-character hex SHA-256 digest
    """
    candidate = first_non_empty(guid, entry_id, uid, audio, link)
    if not candidate:
        published = "" if published_at is None else str(published_at)
        candidate = f"{title or ''}-{published}-{audio or ''}"
    return sha256(candidate.encode("utf-8")).hexdigest()


def _parse_with_feedparser(date_str: str) -> Optional[datetime]:
    try:
        time_struct = feedparser_parse_date(date_str)
        if time_struct:
            return datetime.fromtimestamp(timegm(time_struct), tz=timezone.utc)
    except (ValueError, TypeError, OverflowError, OSError):
        return None
    return None


def _parse_with_email_utils(date_str: str) -> Optional[datetime]:
    try:
        return parsedate_to_datetime(date_str)
    except (TypeError, ValueError, IndexError, OverflowError):
        return None


def _parse_with_isoformat(date_str: str) -> Optional[datetime]:
    try:
        return datetime.fromisoformat(date_str.replace("Z", "+00:00"))
    except ValueError:
        return None


def _parse_with_custom_formats(date_str: str) -> Optional[datetime]:
    custom_formats = [
        "%d %b %Y %H:%M:%S %z",
        "%d %b %Y %H:%M:%S %Z",
        "%d %b %Y %H:%M:%S",
        "%Y-%m-%d",
    ]
    for fmt in custom_formats:
        try:
            return datetime.strptime(date_str, fmt)
        except (ValueError, TypeError):
            continue
    return None


def parse_timestamp_ms(value: Any) -> Optional[int]:
    """Parse a feed date string into epoch milliseconds, or None. Never raises."""
    if not value or not isinstance(value, str):
        return None
    date_str = value.strip()
    if not date_str:
        return None

    parsers = (
        _parse_with_feedparser,
        _parse_with_email_utils,
        _parse_with_isoformat,
        _parse_with_custom_formats,
    )
    for parser in parsers:
        dt = parser(date_str)
        if dt is None:
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        try:
            return int(dt.timestamp() * 1000)
        except (OverflowError, OSError, ValueError):
            logger.debug(f"Date out of range: {date_str!r}")
            return None

    logger.debug(f"Unparseable date: {date_str!r}")
    return None
