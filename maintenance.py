#!/usr/bin/env python3
"""
On-demand maintenance: duplicate cleanup and article data repair.
"""

from typing import Any, Dict, List, Optional

from config import config, get_logger
from normalizer import EXCERPT_MAX_LENGTH, extract_first_paragraphs, generate_excerpt
from telemetry import trace_span
from utils import validate_url

logger = get_logger("maintenance")

NO_DESCRIPTION = "No description available"


class ArticleMaintenance:
    def __init__(self, db, batch_size: Optional[int] = None):
        self.db = db
        self.batch_size = batch_size or config.REPAIR_BATCH_SIZE

    @trace_span("maintenance.cleanup_duplicates", tracer_name="maintenance")
    async def cleanup_duplicates(self, source_id: Optional[int] = None) -> int:
        """Keep the most recently created article per URL and delete the rest.

        An unscoped cleanup also restores the unique URL index.
        """
        groups = await self.db.execute('find_duplicate_articles_by_url', source_id=source_id)
        to_delete: List[int] = []
        for group in groups:
            # Groups arrive newest first
            keep, *duplicates = group
            for article in duplicates:
                logger.info(f"Deleting duplicate article {article.id} (kept {keep.id})")
                to_delete.append(article.id)

        deleted = await self.db.execute('delete_articles', ids=to_delete) if to_delete else 0
        if source_id is None:
            deleted += await self.db.execute('ensure_url_unique_index')
        logger.info(f"Duplicate cleanup removed {deleted} articles")
        return deleted

    @trace_span("maintenance.validate_and_repair", tracer_name="maintenance")
    async def validate_and_repair(self, source_id: Optional[int] = None) -> Dict[str, Any]:
        """Backfill excerpt/description and drop invalid image URLs for a batch of articles.

        Returns {'repaired_count': int, 'errors': [str]}.
        """
        articles = await self.db.execute('list_articles', source_id=source_id, limit=self.batch_size)
        repaired = 0
        errors: List[str] = []

        for article in articles:
            updates: Dict[str, Any] = {}

            if not article.excerpt and article.content:
                excerpt = extract_first_paragraphs(article.content) or generate_excerpt(article.content, EXCERPT_MAX_LENGTH)
                if excerpt:
                    updates['excerpt'] = excerpt

            if not article.description:
                updates['description'] = article.summary or updates.get('excerpt') or article.excerpt or NO_DESCRIPTION

            if article.image_url and not validate_url(article.image_url):
                updates['image_url'] = None
                errors.append(f"Invalid image URL for article {article.id}: {article.image_url}")

            if updates:
                await self.db.execute('update_article_content', article_id=article.id, **updates)
                repaired += 1

        logger.info(f"Validated {len(articles)} articles: {repaired} repaired")
        return {'repaired_count': repaired, 'errors': errors}
