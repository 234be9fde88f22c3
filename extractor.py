#!/usr/bin/env python3
"""
Podcast and episode extraction from a parsed feed tree.

Every output field is filled from an ordered list of accessors; the first one
yielding a non-blank value wins. RSS 2.0, RSS 1.0 (RDF) and Atom shapes are
handled by the same chains since the tree names Atom elements without a
prefix when the document itself is Atom.
"""

from typing import Any, Callable, List, Optional, Sequence, Tuple

from config import get_logger
from content import decode_entities, normalize_description, to_inline_text
from feedtree import FeedNode, channel_of, is_atom, items_of
from models import Episode, Podcast
from telemetry import annotate_span, trace_span
from utils import episode_id, first_non_empty, parse_timestamp_ms

# Module-specific logger
logger = get_logger("extractor")

Accessor = Callable[[FeedNode], Any]


def to_link(value: Any) -> str:
    """Best-effort URL out of a string, a node or a list of either.

    Nodes are read as ``href`` attribute, then ``url`` attribute or child,
    then their own text. Never raises; returns '' when nothing usable exists.
    """
    if isinstance(value, list):
        value = value[0] if value else None
    if isinstance(value, FeedNode):
        return first_non_empty(
            decode_entities(value.attr("href")),
            decode_entities(value.attr("url")),
            decode_entities(value.child_text("url")),
            decode_entities(value.text),
        )
    if isinstance(value, str):
        return decode_entities(value).strip()
    return ""


def first_of(node: Optional[FeedNode], accessors: Sequence[Accessor]) -> str:
    """Evaluate accessors in order and return the first non-blank string."""
    if node is None:
        return ""
    for accessor in accessors:
        value = accessor(node)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return ""


def _text(name: str) -> Accessor:
    return lambda node: node.child_text(name)


def _child_attr(name: str, attr: str) -> Accessor:
    def accessor(node: FeedNode) -> str:
        child = node.child(name)
        return child.attr(attr) if child is not None else ""
    return accessor


def _nested_text(name: str, inner: str) -> Accessor:
    def accessor(node: FeedNode) -> str:
        child = node.child(name)
        return child.child_text(inner) if child is not None else ""
    return accessor


def _person(name: str) -> Accessor:
    """Plain-text person element, or an Atom person construct's <name>."""
    def accessor(node: FeedNode) -> str:
        child = node.child(name)
        if child is None:
            return ""
        return child.text or child.child_text("name")
    return accessor


def _links(node: FeedNode) -> List[FeedNode]:
    # Atom links are unprefixed in Atom documents and atom:link inside RSS
    return node.children_named("link") + node.children_named("atom:link")


def _preferred_link(node: FeedNode) -> str:
    """The alternate (or rel-less) link, else whatever the first link holds."""
    links = [link for link in node.children_named("link") if link.attr("rel", "alternate") == "alternate"]
    return to_link(links) or to_link(node.children_named("link"))


def _enclosure_link(node: FeedNode) -> str:
    for link in _links(node):
        if link.attr("rel") == "enclosure":
            return to_link(link)
    return ""


def _permalink_guid(node: FeedNode) -> str:
    guid = node.child("guid")
    if guid is None or guid.attr("isPermaLink").lower() == "false":
        return ""
    return to_link(guid)


AUTHOR_CHAIN: Tuple[Accessor, ...] = (
    _text("itunes:author"),
    _person("author"),
    _text("managingEditor"),
)

ITEM_AUTHOR_CHAIN: Tuple[Accessor, ...] = AUTHOR_CHAIN + (_text("dc:creator"),)

IMAGE_CHAIN: Tuple[Accessor, ...] = (
    _child_attr("itunes:image", "href"),
    _nested_text("image", "url"),
    _text("itunes:image"),
    _text("logo"),
    _text("icon"),
)

WEBSITE_CHAIN: Tuple[Accessor, ...] = (
    _preferred_link,
    lambda node: to_link(node.child("itunes:link")),
)

CHANNEL_DESCRIPTION_CHAIN: Tuple[Accessor, ...] = (
    _text("itunes:summary"),
    _text("description"),
    _text("itunes:subtitle"),
    _text("subtitle"),
)

ITEM_DESCRIPTION_CHAIN: Tuple[Accessor, ...] = (
    _text("content:encoded"),
    _text("description"),
    _text("content"),
    _text("summary"),
    _text("itunes:summary"),
)

DURATION_CHAIN: Tuple[Accessor, ...] = (
    _text("itunes:duration"),
    _text("duration"),
)

DATE_CHAIN: Tuple[Accessor, ...] = (
    _text("pubDate"),
    _text("dc:date"),
    _text("published"),
    _text("updated"),
)

AUDIO_CHAIN: Tuple[Accessor, ...] = (
    _child_attr("enclosure", "url"),
    _nested_text("enclosure", "url"),
    _enclosure_link,
)


def extract_podcast(tree: FeedNode, source_url: str) -> Podcast:
    """Build the Podcast entity from channel-level fields."""
    channel = channel_of(tree)
    html, text = normalize_description(first_of(channel, CHANNEL_DESCRIPTION_CHAIN))
    return Podcast(
        name=to_inline_text(channel.child_text("title")),
        author=to_inline_text(first_of(channel, AUTHOR_CHAIN)),
        image=to_link(first_of(channel, IMAGE_CHAIN)),
        website=first_of(channel, WEBSITE_CHAIN),
        rss=source_url or "",
        description_html=html,
        description_text=text,
    )


def has_podcast_info(podcast: Optional[Podcast]) -> bool:
    """True when at least one identifying podcast field is populated."""
    return podcast is not None and not podcast.is_empty()


def _published_at(item: FeedNode) -> Optional[int]:
    for accessor in DATE_CHAIN:
        timestamp = parse_timestamp_ms(accessor(item))
        if timestamp is not None:
            return timestamp
    return None


def extract_episode(item: FeedNode, position: int, fallback_author: str = "", fallback_image: str = "") -> Episode:
    """Build one Episode; ``position`` is the 1-based index in the whole feed."""
    audio = to_link(first_of(item, AUDIO_CHAIN))
    link = first_non_empty(
        _preferred_link(item),
        _permalink_guid(item),
        to_link(item.child("feedburner:origLink")),
        audio,
    )
    title = to_inline_text(item.child_text("title")) or f"Episode {position}"
    published_at = _published_at(item)
    guid = decode_entities(item.child_text("guid")).strip()
    html, text = normalize_description(first_of(item, ITEM_DESCRIPTION_CHAIN))

    return Episode(
        id=episode_id(
            guid=guid,
            entry_id=decode_entities(item.child_text("id")),
            uid=decode_entities(item.child_text("uid")),
            audio=audio,
            link=link,
            title=title,
            published_at=published_at,
        ),
        title=title,
        author=to_inline_text(first_of(item, ITEM_AUTHOR_CHAIN)) or fallback_author,
        published_at=published_at,
        duration=to_inline_text(first_of(item, DURATION_CHAIN)),
        audio=audio,
        image=to_link(first_of(item, IMAGE_CHAIN)) or fallback_image,
        description_html=html,
        description_text=text,
        url=link,
        link=link,
        guid=guid,
    )


@trace_span(
    "extract_episodes_page",
    tracer_name="extractor",
    attr_from_args=lambda tree, offset, limit: {"page.offset": offset, "page.limit": limit},
)
def extract_episodes_page(tree: FeedNode, offset: int, limit: int) -> Tuple[int, List[Episode]]:
    """Extract only the items in ``[offset, offset + limit)``.

    Returns:
        (total item count of the whole feed, episodes of the window)

    Raises:
        ValueError: negative offset or limit
    """
    if offset < 0 or limit < 0:
        raise ValueError(f"offset and limit must be non-negative (got {offset}, {limit})")

    items = items_of(tree)
    total = len(items)
    annotate_span(total_items=total)
    window = items[offset:offset + limit]
    if not window:
        return total, []

    channel = channel_of(tree)
    fallback_author = to_inline_text(first_of(channel, AUTHOR_CHAIN))
    fallback_image = to_link(first_of(channel, IMAGE_CHAIN))

    episodes = [
        extract_episode(item, offset + index + 1, fallback_author, fallback_image)
        for index, item in enumerate(window)
    ]
    logger.debug(
        f"Extracted {len(episodes)} of {total} items ({'atom' if is_atom(tree) else 'rss'}) at offset {offset}"
    )
    return total, episodes
