#!/usr/bin/env python3
"""
Deduplication and persistence gate.

Bulk-inserts a source's normalized drafts in one transaction. The unique
index on articles.url is the dedup mechanism; there is no pre-query.
"""

from dataclasses import dataclass, field
from typing import List

from config import get_logger
from models import ArticleDraft, InsertOutcome, InsertResult
from telemetry import trace_span

logger = get_logger("persistence")


@dataclass
class PersistSummary:
    new: int = 0
    duplicates: int = 0
    errors: List[str] = field(default_factory=list)
    results: List[InsertResult] = field(default_factory=list)


class ArticleGate:
    def __init__(self, db):
        self.db = db

    @trace_span(
        "persistence.persist_new",
        tracer_name="persistence",
        attr_from_args=lambda self, drafts, source_id: {
            "source.id": source_id,
            "drafts.count": len(drafts),
        },
    )
    async def persist_new(self, drafts: List[ArticleDraft], source_id: int) -> PersistSummary:
        """Insert the drafts that are not already stored.

        Duplicate URLs are counted, not reported. Any other per-row failure is
        reported in `errors` without affecting the rest of the batch.
        """
        summary = PersistSummary()
        if not drafts:
            return summary

        results = await self.db.execute('bulk_insert_articles', drafts=drafts)
        for result in results:
            if result.outcome is InsertOutcome.INSERTED:
                summary.new += 1
            elif result.outcome is InsertOutcome.DUPLICATE:
                summary.duplicates += 1
            else:
                logger.warning(f"Failed to insert article {result.url} for source {source_id}: {result.message}")
                summary.errors.append(f"Failed to save article {result.url}: {result.message}")
        summary.results = results

        logger.info(
            f"Source {source_id}: {summary.new} new, {summary.duplicates} duplicates, "
            f"{len(summary.errors)} errors out of {len(drafts)} articles"
        )
        return summary

