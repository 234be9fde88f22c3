#!/usr/bin/env python3
"""
Description normalization: sanitized HTML, plain text, synthesized HTML for
plain-text descriptions, and inline timestamp markers.

All raw feed text is HTML-entity-decoded first. Sanitization works on a
BeautifulSoup tree against a fixed allow-list; everything after that
(empty-tag stripping, timestamp wrapping) operates on the serialized markup.
"""

from html import escape, unescape
from typing import List, Optional, Tuple
import re

from bs4 import BeautifulSoup
from bs4.element import PreformattedString

from config import get_logger

# Module-specific logger
logger = get_logger("content")

ALLOWED_TAGS = frozenset([
    "p", "br", "strong", "b", "em", "i", "u", "ul", "ol", "li", "a",
    "blockquote", "code", "pre", "span", "hr", "sup", "sub",
    "h1", "h2", "h3", "h4", "h5", "h6",
    "table", "thead", "tbody", "tr", "th", "td",
    "dl", "dt", "dd", "figure", "figcaption", "img",
])

ALLOWED_ATTRIBUTES = {
    "a": ("href", "title", "target", "rel"),
    "img": ("src", "alt", "title", "width", "height", "loading"),
    "td": ("colspan", "rowspan"),
    "th": ("colspan", "rowspan"),
}

URL_ATTRIBUTES = frozenset(["href", "src"])
ALLOWED_SCHEMES = ("http", "https", "mailto")

# Removed together with everything inside them
DROP_WITH_CONTENT = [
    "script", "style", "textarea", "noscript", "option",
    "iframe", "object", "embed", "template", "title",
]

VOID_TAGS = frozenset([
    "area", "base", "br", "col", "embed", "hr", "img", "input",
    "link", "meta", "param", "source", "track", "wbr",
])

_SCHEME_RE = re.compile(r"^([a-zA-Z][a-zA-Z0-9+.\-]*):")
_URL_IGNORED_CHARS_RE = re.compile(r"[\x00-\x20\x7f]+")
_MARKUP_RE = re.compile(r"<[a-zA-Z!/][^>]*>")

_EMPTY_TAG_RE = re.compile(
    r"<(p|div|span|strong|b|em|i|u|a|li|ul|ol|blockquote|code|pre|sup|sub|h[1-6]|dl|dt|dd|figure|figcaption)"
    r"(?:\s[^>]*)?>(?:\s|&nbsp;|&#160;|\u00a0|<br\s*/?>)*</\1\s*>",
    re.I,
)
_BR_RUN_RE = re.compile(r"(?:<br\s*/?>\s*){2,}", re.I)

_DROP_BLOCK_RE = re.compile(r"<(script|style)\b[^>]*>.*?</\1\s*>", re.I | re.S)
_BR_RE = re.compile(r"<br\s*/?>", re.I)
_BLOCK_CLOSE_RE = re.compile(r"</(?:p|div|h[1-6]|blockquote)\s*>", re.I)
_ITEM_CLOSE_RE = re.compile(r"</(?:li|dt|dd|tr)\s*>", re.I)
_TAG_RE = re.compile(r"<[^>]*>")

_TAG_SPLIT_RE = re.compile(r"(<[^>]+>)")
_TAG_NAME_RE = re.compile(r"^<\s*(/)?\s*([a-zA-Z][a-zA-Z0-9:-]*)")
_MARKER_ATTR_RE = re.compile(r"\sdata-timestamp\s*=", re.I)
_TIMESTAMP_RE = re.compile(r"(?<![\w:])(\d{1,2}:[0-5]\d(?::[0-5]\d)?)(?![\w:])")

_SYNTH_TOKEN_RE = re.compile(r"(\[quote\]|\[/quote\]|\*\*|\*|\n)", re.I)


def decode_entities(value) -> str:
    """HTML-entity-decode a raw feed value; non-strings become ''."""
    if not value or not isinstance(value, str):
        return ""
    return unescape(value)


def has_markup(value: str) -> bool:
    return bool(value) and _MARKUP_RE.search(value) is not None


def _is_safe_url(value: str) -> bool:
    # Browsers ignore control characters and whitespace when reading the scheme
    cleaned = _URL_IGNORED_CHARS_RE.sub("", value or "")
    match = _SCHEME_RE.match(cleaned)
    if not match:
        return True
    return match.group(1).lower() in ALLOWED_SCHEMES


def strip_empty_tags(html: str) -> str:
    """Repeatedly remove empty elements, then collapse runs of <br>."""
    while True:
        stripped = _EMPTY_TAG_RE.sub("", html)
        if stripped == html:
            break
        html = stripped
    return _BR_RUN_RE.sub("<br/>", html)


def to_sanitized_html(raw) -> str:
    """Decode entities and reduce the markup to the allow-listed subset."""
    decoded = decode_entities(raw)
    if not decoded.strip():
        return ""

    soup = BeautifulSoup(decoded, "html.parser")

    # Comments, CDATA, doctypes and processing instructions never survive
    for node in soup.find_all(string=lambda s: isinstance(s, PreformattedString)):
        node.extract()

    for tag in soup.find_all(DROP_WITH_CONTENT):
        tag.decompose()

    for tag in soup.find_all(True):
        if tag.name not in ALLOWED_TAGS:
            tag.unwrap()
            continue

        allowed = ALLOWED_ATTRIBUTES.get(tag.name, ())
        attrs = {}
        for name, value in tag.attrs.items():
            if name not in allowed:
                continue
            if isinstance(value, list):
                value = " ".join(value)
            if name in URL_ATTRIBUTES and not _is_safe_url(value):
                logger.debug(f"Dropped unsafe {name} on <{tag.name}>")
                continue
            attrs[name] = value
        tag.attrs = attrs

        if tag.name == "a":
            tag["target"] = "_blank"
            tag["rel"] = "noopener noreferrer"
        elif tag.name == "img" and not tag.get("src"):
            tag.decompose()

    return strip_empty_tags(str(soup)).strip()


def to_plain_text(raw) -> str:
    """Turn raw (possibly HTML) text into plain text with paragraph breaks."""
    decoded = decode_entities(raw)
    if not decoded:
        return ""
    text = _DROP_BLOCK_RE.sub("", decoded)
    text = _BR_RE.sub("\n", text)
    text = _BLOCK_CLOSE_RE.sub("\n\n", text)
    text = _ITEM_CLOSE_RE.sub("\n", text)
    text = _TAG_RE.sub("", text)
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = re.sub(r"[ \t]+\n", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def to_inline_text(raw) -> str:
    """Plain text squeezed onto one line (titles, names)."""
    return " ".join(to_plain_text(raw).split())


class _HtmlSynthesizer:
    """Single-pass state machine turning plain text into paragraph HTML.

    Tokens: text, newline, ``**`` (strong), ``*`` (em), ``[quote]`` and
    ``[/quote]``. Inline markers live on an explicit stack and are closed at
    every paragraph end; quote regions buffer whole paragraphs.
    """

    def __init__(self) -> None:
        self.output: List[str] = []
        self.quote: Optional[List[str]] = None
        self.parts: List[str] = []
        self.inline: List[str] = []
        self.newlines = 0

    def run(self, text: str) -> str:
        tokens = [token for token in _SYNTH_TOKEN_RE.split(text) if token]
        for index, token in enumerate(tokens):
            following = tokens[index + 1] if index + 1 < len(tokens) else ""
            if token == "\n":
                self.newlines += 1
                continue
            self._settle_newlines()
            lowered = token.lower()
            if lowered == "[quote]":
                self._open_quote()
            elif lowered == "[/quote]":
                self._close_quote()
            elif token == "**":
                self._toggle("strong", token, following)
            elif token == "*":
                self._toggle("em", token, following)
            else:
                self._text(token)
        self._end_paragraph()
        self._flush_quote()
        return "".join(self.output)

    def _settle_newlines(self) -> None:
        if self.newlines >= 2:
            self._end_paragraph()
        elif self.newlines == 1 and self.parts:
            self.parts.append("<br>")
        self.newlines = 0

    def _text(self, token: str) -> None:
        if not self.parts or self.parts[-1] == "<br>":
            token = token.lstrip()
        if token:
            self.parts.append(escape(token))

    def _toggle(self, tag: str, marker: str, following: str) -> None:
        if tag not in self.inline and (not following or following[0].isspace()):
            # An opener must touch the text it emphasizes ("* item" is a bullet)
            self._text(marker)
            return
        if tag in self.inline:
            # Closing an outer marker closes everything opened inside it
            while self.inline:
                open_tag = self.inline.pop()
                self.parts.append(f"</{open_tag}>")
                if open_tag == tag:
                    break
        else:
            self.inline.append(tag)
            self.parts.append(f"<{tag}>")

    def _end_paragraph(self) -> None:
        while self.inline:
            self.parts.append(f"</{self.inline.pop()}>")
        while self.parts and self.parts[-1] == "<br>":
            self.parts.pop()
        body = "".join(self.parts).strip()
        self.parts = []
        if not body:
            return
        block = f"<p>{body}</p>"
        if self.quote is not None:
            self.quote.append(block)
        else:
            self.output.append(block)

    def _open_quote(self) -> None:
        self._end_paragraph()
        if self.quote is not None:
            # Nested open token: close the quote we are in first
            self._flush_quote()
        self.quote = []

    def _close_quote(self) -> None:
        if self.quote is None:
            # Stray closer
            return
        self._end_paragraph()
        self._flush_quote()

    def _flush_quote(self) -> None:
        if self.quote:
            self.output.append(f"<blockquote>{''.join(self.quote)}</blockquote>")
        self.quote = None


def synthesize_html(text: str) -> str:
    """Build paragraph HTML from plain text (blank lines separate paragraphs)."""
    if not text or not text.strip():
        return ""
    normalized = text.replace("\r\n", "\n").replace("\r", "\n")
    normalized = re.sub(r"[ \t]+\n", "\n", normalized)
    return _HtmlSynthesizer().run(normalized)


def _wrap_timestamp(match: re.Match) -> str:
    value = match.group(1)
    return f'<span class="timestamp" data-timestamp="{value}">{value}</span>'


def highlight_timestamps(html: str) -> str:
    """Wrap H:MM[:SS] occurrences in text segments with a timestamp marker.

    Tag-depth aware: text already inside a marker is left alone, so running
    this on its own output changes nothing.
    """
    if not html:
        return ""

    out: List[str] = []
    stack: List[Tuple[str, bool]] = []
    marker_depth = 0
    for segment in _TAG_SPLIT_RE.split(html):
        if not segment:
            continue
        if not segment.startswith("<"):
            out.append(segment if marker_depth else _TIMESTAMP_RE.sub(_wrap_timestamp, segment))
            continue

        out.append(segment)
        match = _TAG_NAME_RE.match(segment)
        if not match:
            continue
        closing, name = match.group(1), match.group(2).lower()
        if closing:
            for index in range(len(stack) - 1, -1, -1):
                if stack[index][0] == name:
                    marker_depth -= sum(1 for _, is_marker in stack[index:] if is_marker)
                    del stack[index:]
                    break
        elif name in VOID_TAGS or segment[:-1].rstrip().endswith("/"):
            continue
        else:
            is_marker = name == "span" and _MARKER_ATTR_RE.search(segment) is not None
            stack.append((name, is_marker))
            if is_marker:
                marker_depth += 1
    return "".join(out)


def build_description_html(html: str, fallback_plain_text: str) -> str:
    """Pick sanitized HTML, else synthesize from plain text; highlight timestamps."""
    if html and html.strip():
        return highlight_timestamps(html)
    if fallback_plain_text and fallback_plain_text.strip():
        return highlight_timestamps(strip_empty_tags(synthesize_html(fallback_plain_text)))
    return ""


def normalize_description(raw) -> Tuple[str, str]:
    """Return (description_html, description_text) for a raw feed description."""
    text = to_plain_text(raw)
    html = to_sanitized_html(raw) if has_markup(decode_entities(raw)) else ""
    return build_description_html(html, text), text
