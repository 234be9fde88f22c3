#!/usr/bin/env python3
"""
Entities returned by the podcast feed pipeline.

These are plain dataclasses; ``to_dict`` renders the camelCase payload shape
that the HTTP surface and the CLI emit.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class Podcast:
    """Channel-level metadata derived once per request."""

    name: str = ""
    author: str = ""
    image: str = ""
    website: str = ""
    rss: str = ""
    description_html: str = ""
    description_text: str = ""

    def is_empty(self) -> bool:
        return not any((self.name, self.author, self.image, self.website, self.description_text))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "author": self.author,
            "image": self.image,
            "website": self.website,
            "rss": self.rss,
            "description_html": self.description_html,
            "description_text": self.description_text,
        }


@dataclass
class Episode:
    """One feed item, fully decoded and sanitized."""

    id: str
    title: str = ""
    author: str = ""
    published_at: Optional[int] = None
    duration: str = ""
    audio: str = ""
    image: str = ""
    description_html: str = ""
    description_text: str = ""
    url: str = ""
    link: str = ""
    guid: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "author": self.author,
            "publishedAt": self.published_at,
            "duration": self.duration,
            "audio": self.audio,
            "image": self.image,
            "description_html": self.description_html,
            "description_text": self.description_text,
            "url": self.url,
            "link": self.link,
            "guid": self.guid,
        }


@dataclass
class EpisodesPage:
    """A window of episodes plus the totals needed to page further."""

    total: int
    offset: int
    limit: int
    episodes: List[Episode] = field(default_factory=list)
    podcast: Optional[Podcast] = None

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.episodes) < self.total

    @property
    def next_cursor(self) -> Optional[int]:
        return self.offset + len(self.episodes) if self.has_more else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "podcast": self.podcast.to_dict() if self.podcast else None,
            "total": self.total,
            "offset": self.offset,
            "limit": self.limit,
            "episodes": [episode.to_dict() for episode in self.episodes],
            "hasMore": self.has_more,
            "nextCursor": self.next_cursor,
        }


@dataclass(frozen=True)
class CacheHint:
    """How long a response may be cached by shared caches; None means no-store."""

    max_age: Optional[int] = None

    @classmethod
    def no_store(cls) -> "CacheHint":
        return cls(None)

    @classmethod
    def for_seconds(cls, seconds: int) -> "CacheHint":
        return cls(seconds if seconds > 0 else None)

    @property
    def cacheable(self) -> bool:
        return self.max_age is not None

    def header(self) -> str:
        """Render as a Cache-Control header value."""
        if self.max_age is None:
            return "no-store"
        return f"public, s-maxage={self.max_age}, max-age=0"
