from hashlib import sha256

import pytest

from extractor import extract_episodes_page, extract_podcast, has_podcast_info, to_link
from feedtree import FeedNode, parse_feed
from models import Podcast

ATOM = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom &amp; Audio</title>
  <subtitle>Short takes</subtitle>
  <author><name>Ada Byte</name></author>
  <link rel="self" href="https://atom.example.com/feed.xml"/>
  <link rel="alternate" href="https://atom.example.com/"/>
  <logo>https://atom.example.com/logo.png</logo>
  <entry>
    <id>tag:atom.example.com,2025:1</id>
    <title type="html">&lt;b&gt;Pilot&lt;/b&gt;</title>
    <link rel="alternate" href="https://atom.example.com/pilot"/>
    <link rel="enclosure" href="https://cdn.example.com/pilot.m4a" type="audio/mp4"/>
    <published>2025-02-01T12:00:00Z</published>
    <content type="html">&lt;p&gt;Welcome aboard&lt;/p&gt;</content>
  </entry>
</feed>
"""


def test_extract_podcast(podcast_rss):
    podcast = extract_podcast(parse_feed(podcast_rss), "https://longwalk.example.com/feed.xml")

    assert podcast.name == "The Long Walk"
    assert podcast.author == "Sam Rivera"
    assert podcast.image == "https://longwalk.example.com/cover.jpg"
    assert podcast.website == "https://longwalk.example.com/"
    assert podcast.rss == "https://longwalk.example.com/feed.xml"
    assert podcast.description_text == "Weekly walks & talks."
    assert podcast.description_html == "<p>Weekly walks &amp; talks.</p>"
    assert has_podcast_info(podcast)


def test_extract_episode_fields(podcast_rss):
    total, episodes = extract_episodes_page(parse_feed(podcast_rss), 0, 10)
    first, second, third = episodes

    assert total == 3
    assert first.title == "Into the Hills"
    assert first.id == sha256(b"walk-001").hexdigest()
    assert first.guid == "walk-001"
    assert first.url == first.link == "https://longwalk.example.com/1"
    assert first.published_at == 1736150400000
    assert first.duration == "42:10"
    assert first.audio == "https://cdn.example.com/1.mp3"
    assert first.image == "https://longwalk.example.com/1.jpg"
    assert first.author == "Sam Rivera"
    assert 'data-timestamp="31:45"' in first.description_html
    assert first.description_text == "We start at 0:00 and reach the top at 31:45."

    assert second.title == "Episode 2"
    assert second.author == "Guest Walker"
    assert second.link == "https://longwalk.example.com/2"
    assert second.audio == "https://cdn.example.com/2.mp3"
    assert second.image == "https://longwalk.example.com/cover.jpg"
    assert second.published_at == 1736755200000
    assert second.description_html == "<p>A <strong>very</strong> muddy day.</p><p>Bring boots.</p>"

    assert third.title == "Q&A at the Summit"
    assert third.audio == "https://cdn.example.com/3.mp3?a=1&b=2"
    assert third.link == third.audio
    assert third.published_at is None
    assert third.id == sha256(third.audio.encode("utf-8")).hexdigest()


def test_non_permalink_guid_is_not_used_as_link():
    feed = """<rss><channel><item>
      <guid isPermaLink="false">abc-123</guid>
      <enclosure url="https://cdn.example.com/x.mp3"/>
    </item></channel></rss>"""
    _, (episode,) = extract_episodes_page(parse_feed(feed), 0, 1)
    assert episode.link == "https://cdn.example.com/x.mp3"
    assert episode.guid == "abc-123"


def test_pages_are_a_disjoint_union(podcast_rss):
    tree = parse_feed(podcast_rss)
    _, everything = extract_episodes_page(tree, 0, 10)

    seen = []
    offset = 0
    while True:
        total, page = extract_episodes_page(tree, offset, 2)
        assert total == 3
        if not page:
            break
        seen.extend(episode.id for episode in page)
        offset += len(page)

    assert seen == [episode.id for episode in everything]
    assert len(set(seen)) == len(seen)


def test_window_titles_use_absolute_position(podcast_rss):
    _, (episode,) = extract_episodes_page(parse_feed(podcast_rss), 1, 1)
    assert episode.title == "Episode 2"


def test_offset_past_end(podcast_rss):
    assert extract_episodes_page(parse_feed(podcast_rss), 99, 10) == (3, [])


def test_negative_window_rejected(podcast_rss):
    with pytest.raises(ValueError):
        extract_episodes_page(parse_feed(podcast_rss), -1, 10)


def test_ids_are_stable_across_runs(podcast_rss):
    _, first_run = extract_episodes_page(parse_feed(podcast_rss), 0, 10)
    _, second_run = extract_episodes_page(parse_feed(podcast_rss), 0, 10)
    assert [e.id for e in first_run] == [e.id for e in second_run]


def test_atom_feed():
    tree = parse_feed(ATOM)
    podcast = extract_podcast(tree, "https://atom.example.com/feed.xml")

    assert podcast.name == "Atom & Audio"
    assert podcast.author == "Ada Byte"
    assert podcast.website == "https://atom.example.com/"
    assert podcast.image == "https://atom.example.com/logo.png"
    assert podcast.description_text == "Short takes"

    total, (entry,) = extract_episodes_page(tree, 0, 10)
    assert total == 1
    assert entry.title == "Pilot"
    assert entry.id == sha256(b"tag:atom.example.com,2025:1").hexdigest()
    assert entry.link == "https://atom.example.com/pilot"
    assert entry.audio == "https://cdn.example.com/pilot.m4a"
    assert entry.author == "Ada Byte"
    assert entry.image == "https://atom.example.com/logo.png"
    assert entry.description_html == "<p>Welcome aboard</p>"


def test_to_link_variants():
    node = FeedNode("link", {"href": " https://a.example.com/?x=1&amp;y=2 "})
    text_node = FeedNode("link")
    text_node.text = "https://b.example.com/"

    assert to_link(node) == "https://a.example.com/?x=1&y=2"
    assert to_link(text_node) == "https://b.example.com/"
    assert to_link([text_node, node]) == "https://b.example.com/"
    assert to_link(" https://c.example.com/ ") == "https://c.example.com/"
    assert to_link([]) == ""
    assert to_link(None) == ""
    assert to_link(42) == ""


def test_has_podcast_info():
    assert not has_podcast_info(None)
    assert not has_podcast_info(Podcast(rss="https://example.com/feed"))
    assert has_podcast_info(Podcast(name="Something"))
