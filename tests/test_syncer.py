import feedparser
import pytest

from errors import DatabaseError, FeedFetchError, MissingFeedUrlError
from models import DatabaseQueue
from sync_queue import SyncQueue
from syncer import SYNC_IN_PROGRESS, SourceLockRegistry, SourceSyncer


class FakeFetcher:
    """Returns canned entries per feed URL, or raises the configured error."""

    def __init__(self, entries=None, error=None):
        self.entries = entries or []
        self.error = error
        self.calls = []

    async def fetch_feed(self, url):
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        return self.entries


def entry(**fields):
    return feedparser.FeedParserDict(fields)


async def make_source(db, feed_url='https://example.com/rss'):
    return await db.execute('add_source', name='Example', url='https://example.com', feed_url=feed_url)


@pytest.mark.asyncio
async def test_sync_stores_new_items_and_skips_known_ones(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await make_source(db)
        fetcher = FakeFetcher([
            entry(link='https://example.com/1', title='One', summary='<p>First article body text.</p>'),
            entry(link='https://example.com/2', title='Two', summary='<p>Second article body text.</p>'),
        ])
        syncer = SourceSyncer(db, fetcher)

        first = await syncer.sync_source(source)
        second = await syncer.sync_source(source)

        assert (first.found, first.new, first.errors, first.failed) == (2, 2, [], False)
        assert (second.found, second.new, second.duplicates) == (2, 0, 2)
        assert await db.execute('count_articles', source_id=source.id) == 2

        refreshed = await db.execute('get_source', source_id=source.id)
        assert refreshed.last_sync is not None
        assert refreshed.last_error is None
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_item_without_url_is_reported(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await make_source(db)
        fetcher = FakeFetcher([
            entry(title='Orphan', summary='No link anywhere'),
            entry(link='https://example.com/1', title='One'),
        ])

        result = await SourceSyncer(db, fetcher).sync_source(source)

        assert result.found == 1
        assert result.new == 1
        assert result.errors == ['Item without URL: Orphan']
        refreshed = await db.execute('get_source', source_id=source.id)
        assert refreshed.last_error == 'Item without URL: Orphan'
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_fetch_failure_is_recorded_on_source(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await make_source(db)
        error = FeedFetchError('https://example.com/rss', 'HTTP 503')

        result = await SourceSyncer(db, FakeFetcher(error=error)).sync_source(source)

        assert result.failed is True
        assert result.errors == [str(error)]
        refreshed = await db.execute('get_source', source_id=source.id)
        assert refreshed.last_error == str(error)
        assert refreshed.last_sync is not None
        assert await db.execute('count_articles') == 0
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_missing_feed_url_raises_and_records(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await make_source(db, feed_url=None)
        fetcher = FakeFetcher()

        with pytest.raises(MissingFeedUrlError, match='has no feed URL'):
            await SourceSyncer(db, fetcher).sync_source(source)

        assert fetcher.calls == []
        refreshed = await db.execute('get_source', source_id=source.id)
        assert 'has no feed URL' in refreshed.last_error
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_concurrent_sync_of_same_source_is_rejected(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await make_source(db)
        locks = SourceLockRegistry()
        fetcher = FakeFetcher([entry(link='https://example.com/1', title='One')])
        syncer = SourceSyncer(db, fetcher, locks)

        assert locks.try_acquire(source.id)
        result = await syncer.sync_source(source)
        assert result.errors == [SYNC_IN_PROGRESS]
        assert result.failed is False
        assert fetcher.calls == []

        locks.release(source.id)
        result = await syncer.sync_source(source)
        assert result.new == 1
        assert not locks.is_locked(source.id)
    finally:
        await db.stop()


def test_lock_registry():
    locks = SourceLockRegistry()
    assert locks.try_acquire(1)
    assert not locks.try_acquire(1)
    assert locks.try_acquire(2)
    assert locks.snapshot() == {1, 2}
    locks.release(1)
    assert not locks.is_locked(1)
    assert locks.is_locked(2)


async def failing_persist(drafts, source_id):
    raise DatabaseError("disk I/O error", operation='bulk_insert_articles')


@pytest.mark.asyncio
async def test_storage_error_is_recorded_on_source_and_propagates(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await make_source(db)
        syncer = SourceSyncer(db, FakeFetcher([entry(link='https://example.com/1', title='One')]))
        syncer.gate.persist_new = failing_persist

        with pytest.raises(DatabaseError):
            await syncer.sync_source(source)

        refreshed = await db.execute('get_source', source_id=source.id)
        assert refreshed.last_sync is not None
        assert refreshed.last_error == "disk I/O error"
        assert not syncer.locks.is_locked(source.id)
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_storage_error_through_queue_marks_entry_failed(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await make_source(db)
        syncer = SourceSyncer(db, FakeFetcher([entry(link='https://example.com/1', title='One')]))
        syncer.gate.persist_new = failing_persist
        queue = SyncQueue(syncer, concurrency=1)

        result = await queue.enqueue(source)

        assert result.failed is True
        assert result.errors == ["disk I/O error"]
        refreshed = await db.execute('get_source', source_id=source.id)
        assert refreshed.last_error == "disk I/O error"
    finally:
        await db.stop()
