#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class FeedSyncError(Exception):
    """Base class for errors raised by the synchronization core."""


class FeedFetchError(FeedSyncError):
    """Raised when a feed cannot be downloaded or parsed.

    Attributes:
        url: The feed URL that failed.
        reason: Short human-readable cause (timeout, HTTP status, parse error).
    """

    def __init__(self, url: str, reason: str):
        super().__init__(f"Failed to fetch feed {url}: {reason}")
        self.url = url
        self.reason = reason


class MissingFeedUrlError(FeedSyncError):
    """Raised when a sync is requested for a source without a feed URL."""

    def __init__(self, source_name: str):
        super().__init__(
            f"Source '{source_name}' has no feed URL. Add a feed URL to this source before syncing."
        )
        self.source_name = source_name


class SourceNotFoundError(FeedSyncError):
    """Raised when a source id does not exist."""

    def __init__(self, source_id: int):
        super().__init__(f"Source {source_id} not found")
        self.source_id = source_id


class DatabaseError(FeedSyncError):
    """Raised when a storage operation fails unexpectedly.

    Attributes:
        operation: Name of the DatabaseQueue operation that failed.
    """

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__(message)
        self.operation = operation


__all__ = [
    "FeedSyncError",
    "FeedFetchError",
    "MissingFeedUrlError",
    "SourceNotFoundError",
    "DatabaseError",
]
