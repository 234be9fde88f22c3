#!/usr/bin/env python3
"""
SSRF-resistant RSS feed fetcher.

Each fetch validates the target through the SSRF guard, connects to the
pinned address it resolved, follows a bounded number of redirects (each hop
re-validated), streams the body under a byte cap and finally decodes the
content-encoding (under a second cap on decoded size) into text. Every hop gets its own wall-clock timeout. There
are no retries; the first failure is surfaced to the caller.
"""

from asyncio import get_running_loop, wait_for, TimeoutError
from dataclasses import dataclass
from time import monotonic
from typing import Optional, Tuple, Union
from urllib.parse import urljoin, SplitResult
import re
import zlib

import brotli
from aiohttp import ClientError, ClientResponse, ClientSession, ClientTimeout, TCPConnector

from config import config, get_logger
from errors import DecodeFailure, HttpStatus, NetworkError, Timeout, TooLarge, TooManyRedirects
from ssrf import PinnedResolver, ascii_hostname, parse_ip, resolve_public_address, validate_url
from telemetry import annotate_span, trace_span

# Module-specific logger
logger = get_logger("fetcher")

ACCEPT_HEADER = "application/rss+xml, application/atom+xml, application/xml;q=0.9, */*;q=0.8"
ACCEPT_ENCODING = "gzip, deflate, br"

_XML_DECL_ENCODING_RE = re.compile(rb'^\s*<\?xml[^>]*encoding=["\']([A-Za-z0-9._-]+)["\']')
_CHARSET_RE = re.compile(r'charset=["\']?([A-Za-z0-9._-]+)', re.I)


@dataclass
class FetchResult:
    """Raw body of one successful hop, before content-decoding."""

    url: str
    body: bytes
    content_encoding: str
    content_type: str
    bytes_read: int


# Output is produced in slices of this size so the decoded cap is checked often
DECOMPRESS_SLICE = 64 * 1024

GZIP_WBITS = 16 + zlib.MAX_WBITS


def _check_decoded_size(size: int, max_bytes: Optional[int]) -> None:
    if max_bytes is not None and size > max_bytes:
        logger.warning(f"Decompressed body passed {size} bytes (limit {max_bytes})")
        raise TooLarge(bytes_read=size, limit=max_bytes, message="Decompressed RSS feed is too large")


def _inflate(body: bytes, wbits: int, max_bytes: Optional[int]) -> bytes:
    """zlib inflate that stops as soon as the output passes ``max_bytes``.

    gzip bodies may hold several members back to back; each one gets its own
    decompressor.
    """
    output = bytearray()
    pending = body
    while pending:
        inflater = zlib.decompressobj(wbits)
        while not inflater.eof:
            piece = inflater.decompress(pending, DECOMPRESS_SLICE)
            pending = inflater.unconsumed_tail
            if not piece and not pending:
                break
            output += piece
            _check_decoded_size(len(output), max_bytes)
        if not inflater.eof:
            raise zlib.error("Compressed stream ended early")
        pending = inflater.unused_data
        if wbits != GZIP_WBITS:
            break
        # gzip writers sometimes pad the last member with NULs
        pending = pending.lstrip(b"\x00")
    return bytes(output)


def _unbrotli(body: bytes, max_bytes: Optional[int]) -> bytes:
    """Brotli decode in bounded slices, stopping once ``max_bytes`` is passed."""
    decompressor = brotli.Decompressor()
    output = bytearray()
    data = body
    while True:
        output += decompressor.process(data, output_buffer_limit=DECOMPRESS_SLICE)
        data = b""
        _check_decoded_size(len(output), max_bytes)
        if decompressor.is_finished() or decompressor.can_accept_more_data():
            break
    if not decompressor.is_finished():
        raise brotli.error("Compressed stream ended early")
    return bytes(output)


def decompress_body(body: bytes, encoding: str, max_bytes: Optional[int] = None) -> bytes:
    """Undo the Content-Encoding of a response body (runs in an executor).

    Raises:
        TooLarge: the decompressed output passed ``max_bytes``
    """
    encoding = (encoding or "").strip().lower()
    if encoding in ("gzip", "x-gzip"):
        return _inflate(body, GZIP_WBITS, max_bytes)
    if encoding == "deflate":
        try:
            return _inflate(body, zlib.MAX_WBITS, max_bytes)
        except zlib.error:
            # Some servers send raw deflate without the zlib wrapper
            return _inflate(body, -zlib.MAX_WBITS, max_bytes)
    if encoding == "br":
        return _unbrotli(body, max_bytes)
    if encoding and encoding != "identity":
        logger.debug(f"Unknown content-encoding '{encoding}', treating body as identity")
    return body


def decode_text(data: bytes, content_type: str = "") -> str:
    """Decode feed bytes to text using the XML declaration, then the HTTP charset, then UTF-8."""
    candidates = []
    match = _XML_DECL_ENCODING_RE.match(data[:200])
    if match:
        candidates.append(match.group(1).decode("ascii"))
    charset = _CHARSET_RE.search(content_type or "")
    if charset:
        candidates.append(charset.group(1))
    candidates.append("utf-8")

    for encoding in candidates:
        try:
            text = data.decode(encoding, errors="replace")
        except LookupError:
            logger.debug(f"Unknown charset '{encoding}', trying next candidate")
            continue
        return text.lstrip("\ufeff")
    return data.decode("utf-8", errors="replace").lstrip("\ufeff")


class SafeFetcher:
    """Fetch feed text from untrusted URLs.

    Limits default to the global configuration but can be overridden per
    instance (tests use tiny caps and timeouts).
    """

    def __init__(
        self,
        user_agent: Optional[str] = None,
        timeout: Optional[float] = None,
        max_redirects: Optional[int] = None,
        max_bytes: Optional[int] = None,
        chunk_size: Optional[int] = None,
        max_decoded_bytes: Optional[int] = None,
    ) -> None:
        self.user_agent = user_agent or config.USER_AGENT
        self.timeout = timeout if timeout is not None else config.HTTP_TIMEOUT
        self.max_redirects = max_redirects if max_redirects is not None else config.MAX_REDIRECTS
        self.max_bytes = max_bytes if max_bytes is not None else config.MAX_FEED_BYTES
        self.chunk_size = chunk_size if chunk_size is not None else config.READ_CHUNK_SIZE
        self.max_decoded_bytes = (
            max_decoded_bytes if max_decoded_bytes is not None else config.MAX_DECODED_BYTES
        )

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url: {"feed.url": url},
    )
    async def fetch(self, url: str) -> str:
        """Fetch ``url`` and return the decoded feed text."""
        result = await self.fetch_raw(url)
        return await self.decode(result)

    async def fetch_raw(self, url: str) -> FetchResult:
        """Follow redirects hop by hop and return the final, still-encoded body."""
        current_url = url
        for hop in range(self.max_redirects + 1):
            parsed = validate_url(current_url)
            started_at = monotonic()
            try:
                outcome = await wait_for(self._fetch_hop(current_url, parsed), timeout=self.timeout)
            except TimeoutError:
                logger.warning(
                    "Timeout fetching %s (hop %d, timeout=%ss, elapsed=%.0fms)",
                    current_url,
                    hop,
                    self.timeout,
                    (monotonic() - started_at) * 1000,
                )
                raise Timeout()

            if isinstance(outcome, FetchResult):
                annotate_span(final_url=outcome.url, redirects=hop, bytes_read=outcome.bytes_read)
                logger.debug(
                    "fetch success url=%s bytes=%d ms=%.0f",
                    outcome.url,
                    outcome.bytes_read,
                    (monotonic() - started_at) * 1000,
                )
                return outcome

            logger.debug(f"Redirect {hop + 1}/{self.max_redirects}: {current_url} -> {outcome}")
            current_url = outcome

        logger.warning(f"Too many redirects fetching {url} (limit {self.max_redirects})")
        raise TooManyRedirects()

    async def _fetch_hop(self, url: str, parsed: SplitResult) -> Union[FetchResult, str]:
        """Perform one GET; return the body, or the absolute URL to redirect to."""
        hostname = ascii_hostname(url)
        connector_kwargs = {}
        if parse_ip(hostname) is None:
            pinned = await resolve_public_address(hostname)
            logger.debug(f"lookup ok {hostname} -> {pinned.address}")
            connector_kwargs["resolver"] = PinnedResolver(pinned)

        headers = {
            "User-Agent": self.user_agent,
            "Accept": ACCEPT_HEADER,
            "Accept-Encoding": ACCEPT_ENCODING,
        }
        connector = TCPConnector(force_close=True, use_dns_cache=False, **connector_kwargs)
        try:
            async with ClientSession(
                connector=connector,
                auto_decompress=False,
                timeout=ClientTimeout(total=None),
            ) as session:
                async with session.get(url, headers=headers, allow_redirects=False) as response:
                    status = response.status
                    annotate_span(http_status=status)
                    logger.debug(
                        "response url=%s status=%s content-type=%s content-encoding=%s",
                        url,
                        status,
                        response.headers.get("Content-Type"),
                        response.headers.get("Content-Encoding"),
                    )

                    location = response.headers.get("Location")
                    if 300 <= status < 400 and location:
                        await self._drain(response)
                        return urljoin(url, location.strip())

                    if not 200 <= status < 300:
                        await self._drain(response)
                        raise HttpStatus(status)

                    body, bytes_read = await self._read_capped(response)
                    return FetchResult(
                        url=url,
                        body=body,
                        content_encoding=response.headers.get("Content-Encoding", ""),
                        content_type=response.headers.get("Content-Type", ""),
                        bytes_read=bytes_read,
                    )
        except ClientError as e:
            detail = self._format_client_error(e)
            logger.warning(f"Network error fetching {url}: {detail}")
            raise NetworkError(str(e) or detail)

    async def _read_capped(self, response: ClientResponse) -> Tuple[bytes, int]:
        """Stream the body, aborting the connection as soon as the cap is crossed."""
        declared = response.content_length
        if declared is not None and declared > self.max_bytes:
            response.close()
            logger.warning(f"Rejected {response.url}: Content-Length {declared} exceeds {self.max_bytes}")
            raise TooLarge(bytes_read=0, limit=self.max_bytes)

        chunks = []
        total_bytes = 0
        async for chunk in response.content.iter_chunked(self.chunk_size):
            total_bytes += len(chunk)
            if total_bytes > self.max_bytes:
                response.close()
                logger.warning(f"Aborted {response.url} after {total_bytes} bytes (limit {self.max_bytes})")
                raise TooLarge(bytes_read=total_bytes, limit=self.max_bytes)
            chunks.append(chunk)
        return b"".join(chunks), total_bytes

    async def _drain(self, response: ClientResponse) -> None:
        """Discard a body we do not need, never holding more than one chunk."""
        drained = 0
        async for chunk in response.content.iter_chunked(self.chunk_size):
            drained += len(chunk)
            if drained > self.max_bytes:
                response.close()
                break

    async def decode(self, result: FetchResult) -> str:
        """Decompress per Content-Encoding off the event loop and decode to text."""
        loop = get_running_loop()
        try:
            data = await loop.run_in_executor(
                None, decompress_body, result.body, result.content_encoding, self.max_decoded_bytes
            )
        except (OSError, EOFError, zlib.error, brotli.error, ValueError) as e:
            logger.warning(f"Failed to decode {result.content_encoding} body from {result.url}: {e}")
            raise DecodeFailure()
        return decode_text(data, result.content_type)

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts = [error.__class__.__name__]
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)


async def fetch_feed(url: str) -> str:
    """Fetch a feed with the default limits."""
    return await SafeFetcher().fetch(url)
