import pytest

from models import ArticleDraft, DatabaseQueue, InsertOutcome
from persistence import ArticleGate


def draft(source_id, url, title='Title'):
    return ArticleDraft(source_id=source_id, title=title, url=url, content='<p>Body</p>')


@pytest.mark.asyncio
async def test_persist_is_idempotent(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await db.execute('add_source', name='Example', url='https://example.com',
                                  feed_url='https://example.com/rss')
        gate = ArticleGate(db)
        drafts = [draft(source.id, 'https://example.com/1'), draft(source.id, 'https://example.com/2')]

        first = await gate.persist_new(drafts, source.id)
        second = await gate.persist_new(drafts, source.id)

        assert (first.new, first.duplicates, first.errors) == (2, 0, [])
        assert (second.new, second.duplicates, second.errors) == (0, 2, [])
        assert await db.execute('count_articles') == 2
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_same_url_across_sources_is_stored_once(tmp_path):
    """Identical article URLs emitted by two sources produce one stored row."""
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source_a = await db.execute('add_source', name='A', url='https://a.example.com')
        source_b = await db.execute('add_source', name='B', url='https://b.example.com')
        gate = ArticleGate(db)

        await gate.persist_new([draft(source_a.id, 'https://theregister.co.uk/article/12345'),
                                draft(source_a.id, 'https://theregister.co.uk/article/67890')], source_a.id)
        summary = await gate.persist_new([draft(source_b.id, 'https://theregister.co.uk/article/12345', 'Dup'),
                                          draft(source_b.id, 'https://theregister.co.uk/article/99999')], source_b.id)

        assert summary.new == 1
        assert summary.duplicates == 1
        assert await db.execute('count_articles') == 3
        stored = await db.execute('find_article_by_url', url='https://theregister.co.uk/article/12345')
        assert stored.source_id == source_a.id
        assert stored.title == 'Title'
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_failed_row_does_not_abort_batch(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        source = await db.execute('add_source', name='Example', url='https://example.com')
        gate = ArticleGate(db)
        batch = [
            draft(source.id, 'https://example.com/ok-1'),
            draft(source.id, 'https://example.com/broken', title=None),
            draft(source.id, 'https://example.com/ok-2'),
        ]

        summary = await gate.persist_new(batch, source.id)

        assert summary.new == 2
        assert len(summary.errors) == 1
        assert summary.errors[0].startswith('Failed to save article https://example.com/broken:')
        assert [result.outcome for result in summary.results] == [
            InsertOutcome.INSERTED, InsertOutcome.ERROR, InsertOutcome.INSERTED,
        ]
        assert await db.execute('find_article_by_url', url='https://example.com/broken') is None
    finally:
        await db.stop()


@pytest.mark.asyncio
async def test_empty_batch_is_a_no_op(tmp_path):
    db = DatabaseQueue(str(tmp_path / "test.db"))
    await db.start()
    try:
        summary = await ArticleGate(db).persist_new([], 1)
        assert (summary.new, summary.duplicates, summary.errors) == (0, 0, [])
    finally:
        await db.stop()
