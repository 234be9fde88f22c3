#!/usr/bin/env python3
"""Error taxonomy shared across the fetch/parse/extract pipeline.

Every failure a request can hit derives from ``FeedError``. The category
classes carry the HTTP status the boundary reports (400 for bad caller input,
502 for everything upstream); the leaf classes name the precise cause.
"""

from typing import Optional


class FeedError(Exception):
    """Base class for all request-terminal failures.

    Attributes:
        message: Caller-facing message (never contains stack detail).
        status: HTTP status the boundary should report.
        classification: Short category label for logs and payloads.
    """

    status = 502
    classification = "upstream_failure"
    default_message = "Failed to load RSS feed"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class BadInput(FeedError):
    """Missing or invalid caller parameters; raised before any fetch."""

    status = 400
    classification = "bad_request"
    default_message = "Please provide an RSS feed url"


class SsrfRejected(FeedError):
    """The target URL or the address it resolves to is not allowed."""

    classification = "ssrf_rejected"
    default_message = "RSS url is not allowed"


class InvalidUrl(SsrfRejected):
    default_message = "Invalid RSS url"


class UnsupportedScheme(SsrfRejected):
    default_message = "Only http/https RSS urls are supported"


class ForbiddenHost(SsrfRejected):
    default_message = "Access to local or private addresses is forbidden"


class DnsFailure(SsrfRejected):
    default_message = "DNS resolution failed"


class ForbiddenAddress(SsrfRejected):
    default_message = "Access to private network addresses is forbidden"


class UpstreamUnreachable(FeedError):
    """The feed host could not be reached or did not answer successfully."""

    classification = "upstream_unreachable"


class TooManyRedirects(UpstreamUnreachable):
    default_message = "Too many redirects while fetching RSS feed"


class HttpStatus(UpstreamUnreachable):
    """Non-2xx, non-redirect response."""

    def __init__(self, code: int, message: Optional[str] = None):
        self.code = code
        super().__init__(message or f"Failed to fetch RSS feed, status code {code}")


class Timeout(UpstreamUnreachable):
    default_message = "Timed out fetching RSS feed"


class NetworkError(UpstreamUnreachable):
    default_message = "Failed to reach RSS url"


class PayloadRejected(FeedError):
    classification = "payload_rejected"


class TooLarge(PayloadRejected):
    """Body exceeded the byte cap; ``bytes_read`` is how far the stream got."""

    default_message = "RSS feed is too large"

    def __init__(self, bytes_read: int = 0, limit: int = 0, message: Optional[str] = None):
        self.bytes_read = bytes_read
        self.limit = limit
        super().__init__(message)


class DecodeFailed(FeedError):
    classification = "decode_failed"


class DecodeFailure(DecodeFailed):
    default_message = "Failed to decompress RSS feed"


class ParseFailed(FeedError):
    classification = "parse_failed"


class ParseError(ParseFailed):
    default_message = "Failed to parse RSS feed"


__all__ = [
    "FeedError",
    "BadInput",
    "SsrfRejected",
    "InvalidUrl",
    "UnsupportedScheme",
    "ForbiddenHost",
    "DnsFailure",
    "ForbiddenAddress",
    "UpstreamUnreachable",
    "TooManyRedirects",
    "HttpStatus",
    "Timeout",
    "NetworkError",
    "PayloadRejected",
    "TooLarge",
    "DecodeFailed",
    "DecodeFailure",
    "ParseFailed",
    "ParseError",
]
