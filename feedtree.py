#!/usr/bin/env python3
"""
Feed XML parsing into a small generic node tree.

The tree keeps element order, groups repeated elements under the same name,
and keeps attributes apart from character data. Element names are qualified
with conventional namespace prefixes (``itunes:image``, ``content:encoded``)
regardless of which prefix the document happened to declare.

Parsing goes through defusedxml so entity-expansion and external-entity
tricks are rejected. Malformed XML is terminal; there is no recovery mode.
"""

from __future__ import annotations

from typing import Dict, Iterator, List, Optional, Union

from defusedxml import DefusedXmlException
from defusedxml.ElementTree import DefusedXMLParser, ParseError as XMLParseError

from config import get_logger
from errors import ParseError
from telemetry import trace_span

logger = get_logger("feedtree")

ATOM_NS = "http://www.w3.org/2005/Atom"

KNOWN_PREFIXES = {
    "http://www.itunes.com/dtds/podcast-1.0.dtd": "itunes",
    "http://purl.org/rss/1.0/modules/content/": "content",
    "http://purl.org/dc/elements/1.1/": "dc",
    "http://search.yahoo.com/mrss/": "media",
    "http://rssnamespace.org/feedburner/ext/1.0": "feedburner",
    "http://www.google.com/schemas/play-podcasts/1.0": "googleplay",
    "https://podcastindex.org/namespace/1.0": "podcast",
    "http://www.w3.org/1999/02/22-rdf-syntax-ns#": "rdf",
    "http://www.w3.org/XML/1998/namespace": "xml",
    "http://purl.org/rss/1.0/": "",
}


class FeedNode:
    """One XML element: qualified name, attributes, direct text, children."""

    __slots__ = ("name", "attrs", "text", "children")

    def __init__(self, name: str, attrs: Optional[Dict[str, str]] = None) -> None:
        self.name = name
        self.attrs: Dict[str, str] = attrs or {}
        self.text = ""
        self.children: List[FeedNode] = []

    def __repr__(self) -> str:
        return f"FeedNode({self.name!r}, attrs={self.attrs!r}, children={len(self.children)})"

    def __iter__(self) -> Iterator[FeedNode]:
        return iter(self.children)

    def child(self, name: str) -> Optional[FeedNode]:
        """First child called ``name``, or None."""
        for node in self.children:
            if node.name == name:
                return node
        return None

    def children_named(self, name: str) -> List[FeedNode]:
        """All children called ``name``, in document order."""
        return [node for node in self.children if node.name == name]

    def attr(self, name: str, default: str = "") -> str:
        return self.attrs.get(name, default)

    def child_text(self, name: str) -> str:
        node = self.child(name)
        return node.text if node is not None else ""


class _NodeBuilder:
    """Parser target that builds FeedNodes and remembers namespace prefixes."""

    def __init__(self) -> None:
        self.root: Optional[FeedNode] = None
        self._stack: List[FeedNode] = []
        self._text: List[List[str]] = []
        self._doc_prefixes: Dict[str, str] = {}
        self._atom_root = False

    def start_ns(self, prefix: str, uri: str) -> None:
        self._doc_prefixes.setdefault(uri, prefix or "")

    def _qualify(self, name: str) -> str:
        if not name.startswith("{"):
            return name
        uri, local = name[1:].split("}", 1)
        if uri == ATOM_NS:
            prefix = "" if self._atom_root else "atom"
        elif uri in KNOWN_PREFIXES:
            prefix = KNOWN_PREFIXES[uri]
        else:
            prefix = self._doc_prefixes.get(uri, "ns")
        return f"{prefix}:{local}" if prefix else local

    def start(self, tag: str, attrs: Dict[str, str]) -> None:
        if self.root is None and tag.startswith("{" + ATOM_NS + "}"):
            self._atom_root = True
        node = FeedNode(self._qualify(tag), {self._qualify(k): v for k, v in attrs.items()})
        if self._stack:
            self._stack[-1].children.append(node)
        elif self.root is None:
            self.root = node
        self._stack.append(node)
        self._text.append([])

    def data(self, text: str) -> None:
        if self._text:
            self._text[-1].append(text)

    def end(self, tag: str) -> None:
        node = self._stack.pop()
        node.text = "".join(self._text.pop()).strip()

    def close(self) -> Optional[FeedNode]:
        return self.root


@trace_span("parse_feed", tracer_name="feedtree")
def parse_feed(content: Union[str, bytes]) -> FeedNode:
    """Parse feed XML into a FeedNode tree.

    Raises:
        ParseError: the document is empty, malformed or uses forbidden constructs
    """
    if not content or not content.strip():
        raise ParseError("Empty RSS feed")

    builder = _NodeBuilder()
    parser = DefusedXMLParser(target=builder)
    try:
        # The XML declaration must be the first thing the parser sees
        parser.feed(content.lstrip())
        root = parser.close()
    except XMLParseError as e:
        logger.warning(f"Malformed feed XML: {e}")
        raise ParseError()
    except DefusedXmlException as e:
        logger.warning(f"Rejected unsafe feed XML: {e!r}")
        raise ParseError()

    if root is None:
        raise ParseError()
    return root


def is_atom(root: FeedNode) -> bool:
    return root.name == "feed"


def channel_of(root: FeedNode) -> FeedNode:
    """The node carrying podcast-level fields (RSS channel or Atom feed)."""
    if is_atom(root):
        return root
    channel = root.child("channel")
    return channel if channel is not None else FeedNode("channel")


def items_of(root: FeedNode) -> List[FeedNode]:
    """Episode nodes in document order for RSS 2.0, RSS 1.0 and Atom."""
    if is_atom(root):
        return root.children_named("entry")
    if root.name == "rdf:RDF":
        return root.children_named("item")
    return channel_of(root).children_named("item")
