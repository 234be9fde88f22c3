#!/usr/bin/env python3
"""
Request pipeline: validate caller input, fetch, parse, extract.

Each call is independent; nothing is cached or shared between requests. The
returned CacheHint tells the HTTP layer whether the response may be stored by
shared caches.
"""

from typing import Optional, Tuple

from config import config, get_logger
from errors import BadInput
from extractor import extract_episodes_page, extract_podcast, has_podcast_info
from feedtree import FeedNode, parse_feed
from fetcher import SafeFetcher
from models import CacheHint, EpisodesPage, Podcast

# Module-specific logger
logger = get_logger("service")

FALSY_FLAGS = ("", "0", "false", "no")


def is_refresh_requested(value: Optional[str]) -> bool:
    """Query-flag truthiness: anything but empty, 0, false or no."""
    if value is None:
        return False
    return str(value).strip().lower() not in FALSY_FLAGS


def _parse_int(value: Optional[str], name: str) -> Optional[int]:
    if value is None or str(value).strip() == "":
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        raise BadInput(f"Invalid {name} parameter")


def parse_page_params(
    offset: Optional[str] = None,
    limit: Optional[str] = None,
    page: Optional[str] = None,
) -> Tuple[int, int]:
    """Turn raw query values into a validated (offset, limit) pair.

    ``page`` is the legacy 1-based page number and only counts when no
    ``offset`` was given; an unusable page silently means page 1.

    Raises:
        BadInput: non-integer or negative offset, non-integer or < 1 limit
    """
    size = _parse_int(limit, "limit")
    if size is None:
        size = config.DEFAULT_PAGE_SIZE
    elif size < 1:
        raise BadInput("limit must be at least 1")
    size = min(size, config.MAX_PAGE_SIZE)

    start = _parse_int(offset, "offset")
    if start is not None:
        if start < 0:
            raise BadInput("offset must not be negative")
        return start, size

    try:
        page_number = int(str(page).strip()) if page is not None else 1
    except ValueError:
        page_number = 1
    if page_number < 1:
        page_number = 1
    return (page_number - 1) * size, size


class PodcastFeedService:
    """Fetch-parse-extract pipeline behind both the HTTP surface and the CLI."""

    def __init__(self, fetcher: Optional[SafeFetcher] = None):
        self.fetcher = fetcher or SafeFetcher()

    @staticmethod
    def _require_url(url: Optional[str]) -> str:
        if not url or not url.strip():
            raise BadInput()
        return url.strip()

    async def load_feed(self, url: str) -> FeedNode:
        """Fetch ``url`` through the SSRF-safe fetcher and parse it."""
        url = self._require_url(url)
        text = await self.fetcher.fetch(url)
        return parse_feed(text)

    async def get_podcast(self, url: str, refresh: bool = False) -> Tuple[Podcast, CacheHint]:
        url = self._require_url(url)
        tree = await self.load_feed(url)
        podcast = extract_podcast(tree, url)

        if refresh or not has_podcast_info(podcast):
            return podcast, CacheHint.no_store()
        return podcast, CacheHint.for_seconds(config.PODCAST_CACHE_SECONDS)

    async def get_episodes_page(
        self,
        url: str,
        offset: int = 0,
        limit: Optional[int] = None,
        refresh: bool = False,
    ) -> Tuple[EpisodesPage, CacheHint]:
        """Podcast plus one window of episodes.

        Raises:
            BadInput: missing url, negative offset or limit below 1 (before any fetch)
        """
        url = self._require_url(url)
        if limit is None:
            limit = config.DEFAULT_PAGE_SIZE
        if offset < 0:
            raise BadInput("offset must not be negative")
        if limit < 1:
            raise BadInput("limit must be at least 1")
        limit = min(limit, config.MAX_PAGE_SIZE)

        tree = await self.load_feed(url)
        podcast = extract_podcast(tree, url)
        total, episodes = extract_episodes_page(tree, offset, limit)
        page = EpisodesPage(total=total, offset=offset, limit=limit, episodes=episodes, podcast=podcast)
        logger.info(f"Served {len(episodes)}/{total} episodes of {url} at offset {offset}")

        if refresh or not episodes:
            return page, CacheHint.no_store()
        return page, CacheHint.for_seconds(config.EPISODES_CACHE_SECONDS)
