import asyncio

import feedparser
import pytest

from config import config
from errors import FeedFetchError, MissingFeedUrlError, SourceNotFoundError
from main import FeedSyncOrchestrator, build_parser


class FakeFetcher:
    def __init__(self, feeds=None, detected=None):
        self.feeds = feeds or {}
        self.detected = detected or []
        self.closed = False

    async def fetch_feed(self, url):
        return self.feeds.get(url, [])

    async def detect_feeds(self, site_url):
        return list(self.detected)

    async def close(self):
        self.closed = True


FEED_ENTRIES = [
    feedparser.FeedParserDict({'link': 'https://example.com/1', 'title': 'One', 'summary': 'First body'}),
    feedparser.FeedParserDict({'link': 'https://example.com/2', 'title': 'Two', 'summary': 'Second body'}),
]


def make_orchestrator(tmp_path, fetcher):
    return FeedSyncOrchestrator(
        db_path=str(tmp_path / "test.db"),
        fetcher=fetcher,
        cron="0 * * * *",
        sync_on_startup=False,
    )


@pytest.mark.asyncio
async def test_seed_sources_are_registered_once(monkeypatch, tmp_path):
    monkeypatch.setattr(config, 'FEED_SOURCES', {
        'example': {'name': 'example', 'url': 'https://example.com', 'feed_url': 'https://example.com/rss',
                    'sync_frequency': 30, 'active': True},
    })
    orchestrator = make_orchestrator(tmp_path, FakeFetcher())
    await orchestrator.start()
    await orchestrator.close()

    orchestrator = make_orchestrator(tmp_path, FakeFetcher())
    await orchestrator.start()
    try:
        sources = await orchestrator.db.execute('list_sources')
        assert [(source.name, source.feed_url) for source in sources] == [('example', 'https://example.com/rss')]
    finally:
        await orchestrator.close()


@pytest.mark.asyncio
async def test_add_source_detects_feed_and_syncs(monkeypatch, tmp_path):
    monkeypatch.setattr(config, 'FEED_SOURCES', {})
    fetcher = FakeFetcher(
        feeds={'https://example.com/feed': FEED_ENTRIES},
        detected=['https://example.com/feed', 'https://example.com/atom.xml'],
    )
    orchestrator = make_orchestrator(tmp_path, fetcher)
    await orchestrator.start()
    try:
        source = await orchestrator.add_source('Example', 'example.com/')
        assert source.url == 'https://example.com'
        assert source.feed_url == 'https://example.com/feed'

        result = await orchestrator.force_sync_source(source.id)
        assert (result.found, result.new, result.failed) == (2, 2, False)

        direct = await orchestrator.sync_source_direct(source.id)
        assert (direct.new, direct.duplicates) == (0, 2)

        status = await orchestrator.check_status()
        assert status['database']['articles'] == 2
        assert status['database']['sources'] == 1
    finally:
        await orchestrator.close()
    assert fetcher.closed


@pytest.mark.asyncio
async def test_unknown_and_feedless_sources(monkeypatch, tmp_path):
    monkeypatch.setattr(config, 'FEED_SOURCES', {})
    orchestrator = make_orchestrator(tmp_path, FakeFetcher())
    await orchestrator.start()
    try:
        with pytest.raises(SourceNotFoundError):
            await orchestrator.force_sync_source(999)

        source = await orchestrator.add_source('No feed', 'https://nofeed.example.com')
        assert source.feed_url is None

        with pytest.raises(MissingFeedUrlError):
            await orchestrator.sync_source_direct(source.id)

        queued = await orchestrator.force_sync_source(source.id)
        assert queued.failed is True
        assert 'has no feed URL' in queued.errors[0]
    finally:
        await orchestrator.close()


@pytest.mark.asyncio
async def test_queue_controls_and_full_pass(monkeypatch, tmp_path):
    monkeypatch.setattr(config, 'FEED_SOURCES', {})
    fetcher = FakeFetcher(feeds={'https://example.com/rss': FEED_ENTRIES})
    orchestrator = make_orchestrator(tmp_path, fetcher)
    await orchestrator.start()
    try:
        await orchestrator.add_source('Example', 'https://example.com', feed_url='https://example.com/rss')

        orchestrator.pause_queue()
        assert orchestrator.get_queue_status()['is_paused'] is True
        orchestrator.resume_queue()
        orchestrator.clear_queue()

        task = orchestrator.sync_all_sources()
        assert task is not None
        summary = await task
        assert summary['sources'] == 1
        assert summary['new'] == 2
        assert await orchestrator.cleanup_duplicates() == 0
        report = await orchestrator.validate_and_repair_articles()
        assert report['errors'] == []
    finally:
        await orchestrator.close()


def test_cli_parser_modes():
    parser = build_parser()
    args = parser.parse_args(['sync', '7', '--direct'])
    assert (args.mode, args.source_id, args.direct) == ('sync', 7, True)

    args = parser.parse_args(['add-source', '--name', 'Example', '--url', 'example.com', '--frequency', '60'])
    assert (args.name, args.url, args.feed_url, args.frequency) == ('Example', 'example.com', None, 60)

    args = parser.parse_args(['repair', '--source', '3'])
    assert args.source == 3
    assert parser.parse_args(['test-feed', 'https://example.com/rss']).limit == 5


class PartlyBrokenFetcher(FakeFetcher):
    async def fetch_feed(self, url):
        if 'broken' in url:
            raise FeedFetchError(url, 'Unparseable feed: syntax error')
        return await super().fetch_feed(url)


@pytest.mark.asyncio
async def test_malformed_feed_does_not_affect_other_sources(monkeypatch, tmp_path):
    monkeypatch.setattr(config, 'FEED_SOURCES', {})
    fetcher = PartlyBrokenFetcher(feeds={'https://example.com/rss': FEED_ENTRIES})
    orchestrator = make_orchestrator(tmp_path, fetcher)
    await orchestrator.start()
    try:
        good = await orchestrator.add_source('Good', 'https://example.com', feed_url='https://example.com/rss')
        bad = await orchestrator.add_source('Bad', 'https://broken.example.com',
                                            feed_url='https://broken.example.com/rss')

        summary = await orchestrator.scheduler.run_full_pass()

        assert summary['sources'] == 2
        assert summary['new'] == 2
        assert summary['failed'] == 1
        assert await orchestrator.db.execute('count_articles', source_id=good.id) == 2
        flagged = await orchestrator.db.execute('get_source', source_id=bad.id)
        assert 'Unparseable feed' in flagged.last_error
        assert flagged.is_active is True
    finally:
        await orchestrator.close()


class GatedFetcher(FakeFetcher):
    def __init__(self, feeds):
        super().__init__(feeds=feeds)
        self.entered = asyncio.Event()
        self.release = asyncio.Event()

    async def fetch_feed(self, url):
        self.entered.set()
        await self.release.wait()
        return await super().fetch_feed(url)


@pytest.mark.asyncio
async def test_source_syncing_state_is_visible(monkeypatch, tmp_path):
    monkeypatch.setattr(config, 'FEED_SOURCES', {})
    fetcher = GatedFetcher(feeds={'https://example.com/rss': FEED_ENTRIES})
    orchestrator = make_orchestrator(tmp_path, fetcher)
    await orchestrator.start()
    try:
        source = await orchestrator.add_source('Example', 'https://example.com', feed_url='https://example.com/rss')
        assert orchestrator.is_source_syncing(source.id) is False

        pending = asyncio.ensure_future(orchestrator.sync_source_direct(source.id))
        await fetcher.entered.wait()
        assert orchestrator.is_source_syncing(source.id) is True
        assert orchestrator.get_syncing_sources() == [source.id]

        fetcher.release.set()
        result = await pending
        assert result.new == 2
        assert orchestrator.is_source_syncing(source.id) is False
        assert orchestrator.get_syncing_sources() == []
    finally:
        await orchestrator.close()
