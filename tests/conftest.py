import socket

import pytest

import ssrf


PODCAST_RSS = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"
     xmlns:itunes="http://www.itunes.com/dtds/podcast-1.0.dtd"
     xmlns:content="http://purl.org/rss/1.0/modules/content/"
     xmlns:dc="http://purl.org/dc/elements/1.1/">
  <channel>
    <title>The Long Walk</title>
    <link>https://longwalk.example.com/</link>
    <itunes:author>Sam Rivera</itunes:author>
    <itunes:image href="https://longwalk.example.com/cover.jpg"/>
    <description><![CDATA[<p>Weekly walks &amp; talks.</p><script>track()</script>]]></description>
    <item>
      <title>Into the Hills</title>
      <guid isPermaLink="false">walk-001</guid>
      <link>https://longwalk.example.com/1</link>
      <pubDate>Mon, 06 Jan 2025 08:00:00 +0000</pubDate>
      <itunes:duration>42:10</itunes:duration>
      <itunes:image href="https://longwalk.example.com/1.jpg"/>
      <enclosure url="https://cdn.example.com/1.mp3" length="123" type="audio/mpeg"/>
      <content:encoded><![CDATA[<p>We start at 0:00 and reach the top at 31:45.</p>]]></content:encoded>
    </item>
    <item>
      <guid>https://longwalk.example.com/2</guid>
      <dc:creator>Guest Walker</dc:creator>
      <dc:date>2025-01-13T08:00:00Z</dc:date>
      <enclosure url="https://cdn.example.com/2.mp3" type="audio/mpeg"/>
      <enclosure url="https://cdn.example.com/2-alt.mp3" type="audio/mpeg"/>
      <description>A **very** muddy day.

Bring boots.</description>
    </item>
    <item>
      <title>Q&amp;A at the Summit</title>
      <enclosure url="https://cdn.example.com/3.mp3?a=1&amp;b=2" type="audio/mpeg"/>
      <description>No date on this one.</description>
    </item>
  </channel>
</rss>
"""


@pytest.fixture
def podcast_rss():
    return PODCAST_RSS


@pytest.fixture
def allow_loopback(monkeypatch):
    """Treat 127.0.0.1 as public so a local test server is reachable."""
    original = ssrf.is_private_address

    def classify(ip):
        if str(ip).split("%", 1)[0] == "127.0.0.1":
            return False
        return original(ip)

    monkeypatch.setattr(ssrf, "is_private_address", classify)


@pytest.fixture
def fake_dns(monkeypatch):
    """Install a static hostname -> addresses table for the SSRF guard."""
    table = {}

    async def lookup(hostname):
        if hostname not in table:
            raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")
        return [
            (socket.AF_INET6 if ":" in address else socket.AF_INET, address)
            for address in table[hostname]
        ]

    monkeypatch.setattr(ssrf, "_lookup_all", lookup)
    return table
