#!/usr/bin/env python3
"""
Tests for feed fetching and feedparser mapping.
"""

import asyncio
import time
from datetime import datetime, timezone

import feedparser
import pytest
import pytest_asyncio
from aiohttp import web
from aiohttp.test_utils import TestServer

from errors import FeedFetchError
from fetcher import FeedSource, parse_document, parse_entry

RSS_DOCUMENT = """<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/">
  <channel>
    <title>Example Blog</title>
    <link>https://blog.example.com/</link>
    <description>Posts</description>
    <image>
      <url>https://blog.example.com/logo.png</url>
      <title>Example Blog</title>
      <link>https://blog.example.com/</link>
    </image>
    <item>
      <title>First post</title>
      <link>https://blog.example.com/first</link>
      <guid isPermaLink="false">post-1</guid>
      <description>Short summary</description>
      <content:encoded><![CDATA[<p>Full body</p>]]></content:encoded>
      <pubDate>Fri, 13 Feb 2026 09:30:00 GMT</pubDate>
    </item>
    <item>
      <title>Second post</title>
      <link>https://blog.example.com/second</link>
      <description>Another summary</description>
      <pubDate>Fri, 13 Feb 2026 11:30:00 +0200</pubDate>
    </item>
    <item>
      <title>Undated post</title>
      <link>https://blog.example.com/undated</link>
    </item>
  </channel>
</rss>
"""

ATOM_DOCUMENT = """<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom Example</title>
  <id>urn:uuid:feed</id>
  <updated>2026-02-13T10:00:00Z</updated>
  <entry>
    <title>Atom entry</title>
    <id>urn:uuid:entry-1</id>
    <link href="https://atom.example.com/entry-1"/>
    <updated>2026-02-13T10:00:00Z</updated>
    <summary>Atom summary</summary>
  </entry>
</feed>
"""

PUBLISHED = datetime(2026, 2, 13, 9, 30, tzinfo=timezone.utc)


class TestParsing:
    def test_rss_document(self):
        document = parse_document(feedparser.parse(RSS_DOCUMENT))

        assert document.title == "Example Blog"
        assert document.image == "https://blog.example.com/logo.png"
        assert [i.title for i in document.items] == ["First post", "Second post", "Undated post"]

    def test_rss_entry_fields(self):
        parsed = feedparser.parse(RSS_DOCUMENT)
        first = parse_entry(parsed.entries[0])

        assert first.guid == "post-1"
        assert first.link == "https://blog.example.com/first"
        assert first.description == "Short summary"
        assert first.content == "<p>Full body</p>"
        assert first.published_at == PUBLISHED

    def test_offsets_are_normalized_to_utc(self):
        parsed = feedparser.parse(RSS_DOCUMENT)
        second = parse_entry(parsed.entries[1])

        assert second.published_at == PUBLISHED
        assert second.published_at.tzinfo == timezone.utc

    def test_missing_date_is_none(self):
        parsed = feedparser.parse(RSS_DOCUMENT)
        assert parse_entry(parsed.entries[2]).published_at is None

    def test_atom_falls_back_to_updated(self):
        document = parse_document(feedparser.parse(ATOM_DOCUMENT))
        entry = document.items[0]

        assert document.title == "Atom Example"
        assert entry.guid == "urn:uuid:entry-1"
        assert entry.link == "https://atom.example.com/entry-1"
        assert entry.description == "Atom summary"
        assert entry.published_at == datetime(2026, 2, 13, 10, 0, tzinfo=timezone.utc)

    def test_feedparser_dict_entry(self):
        entry = feedparser.FeedParserDict({
            'title': '  Spaced title ',
            'link': 'https://example.com/a',
            'summary': '<p>Body</p>',
            'updated_parsed': time.struct_time((2026, 2, 13, 9, 30, 0, 4, 44, 0)),
        })

        item = parse_entry(entry)

        assert item.title == "Spaced title"
        assert item.guid == ""
        assert item.content == ""
        assert item.description == "<p>Body</p>"
        assert item.published_at == PUBLISHED

    def test_document_without_image(self):
        document = parse_document(feedparser.parse(ATOM_DOCUMENT))
        assert document.image is None


@pytest_asyncio.fixture
async def feed_server():
    release = asyncio.Event()

    async def rss(request):
        return web.Response(body=RSS_DOCUMENT.encode("utf-8"), content_type="application/rss+xml")

    async def missing(request):
        return web.Response(status=404, text="not here")

    async def garbage(request):
        return web.Response(text="this is not a feed at all", content_type="text/plain")

    async def slow(request):
        await asyncio.wait_for(release.wait(), timeout=5)
        return web.Response(body=RSS_DOCUMENT.encode("utf-8"))

    app = web.Application()
    app.router.add_get("/feed.xml", rss)
    app.router.add_get("/missing.xml", missing)
    app.router.add_get("/garbage.txt", garbage)
    app.router.add_get("/slow.xml", slow)

    server = TestServer(app)
    await server.start_server()
    server.release = release
    yield server
    release.set()
    await server.close()


@pytest_asyncio.fixture
async def source():
    feed_source = FeedSource()
    yield feed_source
    await feed_source.close()


@pytest.mark.asyncio
async def test_fetch_parses_document(feed_server, source):
    document = await source.fetch(str(feed_server.make_url("/feed.xml")), 5)

    assert document.title == "Example Blog"
    assert len(document.items) == 3


@pytest.mark.asyncio
async def test_fetch_non_200_raises(feed_server, source):
    url = str(feed_server.make_url("/missing.xml"))
    with pytest.raises(FeedFetchError, match="HTTP 404") as excinfo:
        await source.fetch(url, 5)
    assert excinfo.value.url == url


@pytest.mark.asyncio
async def test_fetch_unparseable_document_raises(feed_server, source):
    with pytest.raises(FeedFetchError, match="not a valid feed"):
        await source.fetch(str(feed_server.make_url("/garbage.txt")), 5)


@pytest.mark.asyncio
async def test_fetch_times_out(feed_server, source):
    with pytest.raises(FeedFetchError):
        await source.fetch(str(feed_server.make_url("/slow.xml")), 0.2)
    feed_server.release.set()


@pytest.mark.asyncio
async def test_fetch_connection_refused(source):
    with pytest.raises(FeedFetchError, match="network error"):
        await source.fetch("http://127.0.0.1:9/feed.xml", 2)
