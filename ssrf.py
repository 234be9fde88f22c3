#!/usr/bin/env python3
"""
SSRF guard for outbound feed requests.

Validates caller-supplied URLs, classifies literal and resolved IP addresses,
and provides a pinned aiohttp resolver so the connection goes to exactly the
address that was validated (no second lookup an attacker could rebind).
"""

from asyncio import get_running_loop
from dataclasses import dataclass
import ipaddress
import socket
from typing import List, Optional, Tuple, Union
from urllib.parse import urlsplit, SplitResult

from aiohttp.abc import AbstractResolver
from yarl import URL

from config import get_logger
from errors import DnsFailure, ForbiddenAddress, ForbiddenHost, InvalidUrl, UnsupportedScheme

logger = get_logger("ssrf")

ALLOWED_SCHEMES = ("http", "https")

PRIVATE_NETWORKS = [ipaddress.ip_network(n) for n in (
    "0.0.0.0/8",
    "10.0.0.0/8",
    "127.0.0.0/8",
    "169.254.0.0/16",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "100.64.0.0/10",
    "::1/128",
    "fe80::/10",
    "fc00::/7",
)]


@dataclass(frozen=True)
class ResolvedAddress:
    """A validated public address for one hostname."""

    hostname: str
    address: str
    family: int


def parse_ip(host: str) -> Optional[Union[ipaddress.IPv4Address, ipaddress.IPv6Address]]:
    """Return an ip_address for a literal IP host, or None for a hostname."""
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        return None


def is_private_address(ip) -> bool:
    """Classify an address (string or ip_address) as private/reserved."""
    if isinstance(ip, str):
        ip = parse_ip(ip.split("%", 1)[0])
        if ip is None:
            # Unparseable addresses are never trusted
            return True

    if ip.version == 6 and ip.ipv4_mapped is not None:
        return is_private_address(ip.ipv4_mapped)

    if any(ip in net for net in PRIVATE_NETWORKS if net.version == ip.version):
        return True
    return ip.is_unspecified or ip.is_multicast or ip.is_reserved


def validate_url(url: str) -> SplitResult:
    """Validate scheme and host of ``url`` and return its split form.

    Raises:
        InvalidUrl: malformed URL or missing host
        UnsupportedScheme: anything other than http/https
        ForbiddenHost: localhost names or a private literal IP
    """
    if not url or not isinstance(url, str):
        raise InvalidUrl()
    try:
        parsed = urlsplit(url.strip())
        hostname = parsed.hostname
        # Accessing .port validates it
        parsed.port
    except ValueError:
        raise InvalidUrl()

    if not hostname:
        raise InvalidUrl()

    if parsed.scheme.lower() not in ALLOWED_SCHEMES:
        raise UnsupportedScheme()

    # Checks run on the IDNA form so Unicode look-alikes of local names are caught
    hostname = ascii_hostname(url)
    if hostname == "localhost" or hostname.endswith(".localhost"):
        raise ForbiddenHost("Access to local addresses is forbidden")

    literal = parse_ip(hostname)
    if literal is not None and is_private_address(literal):
        raise ForbiddenHost()

    return parsed


def ascii_hostname(url: str) -> str:
    """Lowercased host of ``url`` in the IDNA form aiohttp sends on the wire.

    Literal IPv6 hosts come back without brackets.
    """
    try:
        host = URL(url.strip()).raw_host
    except (ValueError, UnicodeError):
        raise InvalidUrl()
    if not host:
        raise InvalidUrl()
    return host.lower()


async def _lookup_all(hostname: str) -> List[Tuple[int, str]]:
    """Resolve every address for ``hostname`` without blocking the loop."""
    loop = get_running_loop()
    infos = await loop.getaddrinfo(hostname, None, type=socket.SOCK_STREAM)
    return [(family, sockaddr[0]) for family, _type, _proto, _canon, sockaddr in infos]


async def resolve_public_address(hostname: str) -> ResolvedAddress:
    """Resolve ``hostname`` and pick the first address that is not private.

    Raises:
        DnsFailure: lookup error or no records
        ForbiddenAddress: every record is private/reserved
    """
    try:
        records = await _lookup_all(hostname)
    except (OSError, UnicodeError) as e:
        logger.debug(f"DNS lookup failed for {hostname}: {e}")
        raise DnsFailure()

    if not records:
        raise DnsFailure()

    for family, address in records:
        if not is_private_address(address):
            return ResolvedAddress(hostname=hostname, address=address, family=family)

    logger.warning(f"Rejected {hostname}: all {len(records)} resolved addresses are private")
    raise ForbiddenAddress()


class PinnedResolver(AbstractResolver):
    """aiohttp resolver that only ever answers with one validated address."""

    def __init__(self, pinned: ResolvedAddress):
        self.pinned = pinned

    async def resolve(self, host: str, port: int = 0, family: int = socket.AF_INET):
        if host.lower().rstrip(".") != self.pinned.hostname.rstrip("."):
            raise OSError(f"Refusing to resolve unpinned host {host}")
        return [{
            "hostname": host,
            "host": self.pinned.address,
            "port": port,
            "family": self.pinned.family,
            "proto": 0,
            "flags": socket.AI_NUMERICHOST,
        }]

    async def close(self) -> None:
        pass
