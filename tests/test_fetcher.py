import asyncio

import pytest
from aiohttp import ClientConnectionError

from errors import FeedFetchError
from fetcher import FeedFetcher

RSS_FEED = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example</title>
    <link>https://example.com/</link>
    <description>Example feed</description>
    <item>
      <title>First post</title>
      <link>https://example.com/posts/1</link>
      <description>&lt;p&gt;The first post has a reasonably long body.&lt;/p&gt;</description>
      <pubDate>Sat, 15 Nov 2025 16:00:00 +0000</pubDate>
    </item>
    <item>
      <title>Second post</title>
      <link>https://example.com/posts/2</link>
      <description>Second body</description>
    </item>
  </channel>
</rss>
"""

EMPTY_FEED = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel><title>Empty</title><link>https://example.com/</link></channel></rss>
"""


class FakeResponse:
    def __init__(self, status, body=b""):
        self.status = status
        self._body = body

    async def read(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Minimal stand-in for aiohttp.ClientSession keyed by URL."""

    def __init__(self, routes=None, error=None):
        self.routes = routes or {}
        self.error = error
        self.closed = False
        self.requested = []
        self.request_headers = []

    def get(self, url, headers=None):
        self.requested.append(url)
        self.request_headers.append(headers)
        if self.error is not None:
            raise self.error
        status, body = self.routes.get(url, (404, b""))
        return FakeResponse(status, body)

    async def close(self):
        self.closed = True


@pytest.mark.asyncio
async def test_fetch_feed_returns_entries_in_order():
    fetcher = FeedFetcher(session=FakeSession({'https://example.com/rss': (200, RSS_FEED)}))
    try:
        entries = await fetcher.fetch_feed('https://example.com/rss')
    finally:
        await fetcher.close()

    assert [entry.link for entry in entries] == ['https://example.com/posts/1', 'https://example.com/posts/2']


@pytest.mark.asyncio
async def test_fetch_feed_non_200_fails():
    fetcher = FeedFetcher(session=FakeSession({'https://example.com/rss': (500, b"oops")}))
    try:
        with pytest.raises(FeedFetchError) as excinfo:
            await fetcher.fetch_feed('https://example.com/rss')
    finally:
        await fetcher.close()

    assert excinfo.value.reason == 'HTTP 500'
    assert 'https://example.com/rss' in str(excinfo.value)


@pytest.mark.asyncio
async def test_fetch_feed_rejects_non_feed_document():
    fetcher = FeedFetcher(session=FakeSession({'https://example.com/rss': (200, b"<html><body>nope</body></html>")}))
    try:
        with pytest.raises(FeedFetchError, match='Unparseable feed'):
            await fetcher.fetch_feed('https://example.com/rss')
    finally:
        await fetcher.close()


@pytest.mark.asyncio
async def test_empty_feed_is_valid_but_fails_validation():
    fetcher = FeedFetcher(session=FakeSession({'https://example.com/rss': (200, EMPTY_FEED)}))
    try:
        assert await fetcher.fetch_feed('https://example.com/rss') == []
        assert await fetcher.validate_feed('https://example.com/rss') is False
    finally:
        await fetcher.close()


@pytest.mark.asyncio
async def test_network_errors_become_fetch_errors():
    fetcher = FeedFetcher(session=FakeSession(error=ClientConnectionError("connection refused")))
    try:
        with pytest.raises(FeedFetchError, match='ClientConnectionError'):
            await fetcher.fetch_feed('https://example.com/rss')
    finally:
        await fetcher.close()

    fetcher = FeedFetcher(session=FakeSession(error=asyncio.TimeoutError()), timeout=3)
    try:
        with pytest.raises(FeedFetchError, match='Timed out after 3s'):
            await fetcher.fetch_feed('https://example.com/rss')
    finally:
        await fetcher.close()


@pytest.mark.asyncio
async def test_detect_feeds_probes_in_order():
    session = FakeSession({
        'https://example.com/atom.xml': (200, RSS_FEED),
        'https://example.com/feed': (200, RSS_FEED),
        'https://example.com/rss': (200, EMPTY_FEED),
    })
    fetcher = FeedFetcher(session=session)
    try:
        detected = await fetcher.detect_feeds('example.com/')
    finally:
        await fetcher.close()

    assert detected == ['https://example.com/feed', 'https://example.com/atom.xml']
    assert session.requested[0] == 'https://example.com/rss'
    assert session.requested[-1] == 'https://example.com/?feed=atom'
    # A session passed in by the caller is left open
    assert session.closed is False


@pytest.mark.asyncio
async def test_test_feed_previews_without_storage():
    fetcher = FeedFetcher(session=FakeSession({'https://example.com/rss': (200, RSS_FEED)}))
    try:
        previews = await fetcher.test_feed('https://example.com/rss', limit=1)
    finally:
        await fetcher.close()

    assert len(previews) == 1
    assert previews[0]['title'] == 'First post'
    assert previews[0]['url'] == 'https://example.com/posts/1'
    assert previews[0]['published_date'] is not None


@pytest.mark.asyncio
async def test_user_agent_is_set_once_on_the_session():
    fake = FakeSession({'https://example.com/rss': (200, RSS_FEED)})
    fetcher = FeedFetcher(session=fake, user_agent='feed-sync-test/1.0')
    try:
        await fetcher.fetch_feed('https://example.com/rss')
    finally:
        await fetcher.close()
    assert fake.request_headers == [None]

    fetcher = FeedFetcher(user_agent='feed-sync-test/1.0')
    try:
        session = fetcher._get_session()
        assert session.headers['User-Agent'] == 'feed-sync-test/1.0'
    finally:
        await fetcher.close()
