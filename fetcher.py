#!/usr/bin/env python3
"""
RSS/Atom feed fetcher.

Downloads a feed over HTTP with a bounded timeout and parses it with
feedparser in a thread pool, returning the raw entries. Also validates
candidate feed URLs and probes a site for conventional feed locations.
"""

from asyncio import TimeoutError, get_running_loop, wait_for
from concurrent.futures import ThreadPoolExecutor
from functools import partial
from typing import Any, Dict, List, Optional

import feedparser
from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import FeedFetchError
from normalizer import normalize_entry, resolve_entry_title
from telemetry import trace_span
from utils import normalize_site_url

# Module-specific logger
logger = get_logger("fetcher")

HTTP_OK = 200

# Conventional feed locations, probed in this order
FEED_PROBE_PATHS = [
    '/rss',
    '/feed',
    '/rss.xml',
    '/feed.xml',
    '/feeds/posts/default',
    '/index.xml',
    '/atom.xml',
    '/?feed=rss2',
    '/?feed=rss',
    '/?feed=atom',
]

ACCEPT_HEADER = "application/rss+xml, application/atom+xml, application/rdf+xml, application/xml;q=0.9, text/xml;q=0.9, */*;q=0.8"


class FeedFetcher:
    """Fetches and parses feeds. One shared ClientSession per instance."""

    def __init__(self, session: Optional[ClientSession] = None, timeout: Optional[int] = None,
                 user_agent: Optional[str] = None) -> None:
        self.executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="feedparser")
        self.timeout = max(int(timeout or config.HTTP_TIMEOUT), 1)
        self.user_agent = user_agent or config.USER_AGENT
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(
                timeout=ClientTimeout(total=self.timeout),
                headers={'User-Agent': self.user_agent, 'Accept': ACCEPT_HEADER},
            )
            self._owns_session = True
        return self._session

    async def run_in_executor(self, func, *args) -> Any:
        """Run blocking `func(*args)` on the parser thread pool."""
        return await get_running_loop().run_in_executor(self.executor, partial(func, *args))

    async def _download(self, url: str) -> bytes:
        session = self._get_session()
        try:
            async with session.get(url) as response:
                if response.status != HTTP_OK:
                    raise FeedFetchError(url, f"HTTP {response.status}")
                return await wait_for(response.read(), timeout=self.timeout)
        except TimeoutError:
            raise FeedFetchError(url, f"Timed out after {self.timeout}s")
        except ClientError as e:
            raise FeedFetchError(url, self._format_client_error(e)) from e
        except ValueError as e:
            raise FeedFetchError(url, f"Invalid URL: {e}") from e

    @trace_span(
        "fetcher.fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url: {"feed.url": url},
    )
    async def fetch_feed(self, url: str) -> List[Any]:
        """Fetch and parse a feed, returning its entries in document order.

        Raises FeedFetchError on network failure, timeout, a non-200 response
        or a document that is not a feed. A valid feed with no entries returns
        an empty list.
        """
        logger.info(f"Fetching feed from: {url}")
        content = await self._download(url)

        # feedparser is not async, run in executor
        feed = await self.run_in_executor(feedparser.parse, content)
        entries = list(feed.get('entries') or [])
        version = feed.get('version') or ''

        if not entries and not version:
            reason = feed.get('bozo_exception') or 'not a recognised RSS/Atom/RDF document'
            raise FeedFetchError(url, f"Unparseable feed: {reason}")

        if feed.get('bozo'):
            logger.warning(f"Feed parsing warning for {url}: {feed.get('bozo_exception')}")

        if not entries:
            logger.warning(f"No items found in feed: {url}")
        else:
            logger.info(f"Found {len(entries)} items in {version or 'unknown'} feed: {url}")
        return entries

    async def validate_feed(self, url: str) -> bool:
        """True when the URL fetches and parses into at least one entry."""
        try:
            return len(await self.fetch_feed(url)) > 0
        except FeedFetchError as e:
            logger.debug(f"Invalid feed {url}: {e.reason}")
            return False

    async def detect_feeds(self, site_url: str) -> List[str]:
        """Probe conventional feed paths under a site, in order.

        Returns the probe URLs that validate, preserving probe order.
        """
        base = normalize_site_url(site_url)
        detected = []
        for probe in FEED_PROBE_PATHS:
            candidate = f"{base}{probe}"
            if await self.validate_feed(candidate):
                logger.info(f"Detected feed: {candidate}")
                detected.append(candidate)
        if not detected:
            logger.warning(f"No feeds detected under {base}")
        return detected

    async def test_feed(self, url: str, limit: int = 5) -> List[Dict[str, Any]]:
        """Preview the first `limit` entries of a feed without storing anything."""
        entries = await self.fetch_feed(url)
        previews = []
        for entry in entries[:limit]:
            try:
                draft = normalize_entry(entry, source_id=0)
            except ValueError:
                previews.append({'title': resolve_entry_title(entry), 'url': None})
                continue
            previews.append({
                'title': draft.title,
                'url': draft.url,
                'summary': draft.summary,
                'excerpt': draft.excerpt,
                'image_url': draft.image_url,
                'author': draft.author,
                'published_date': draft.published_date,
            })
        return previews

    def _format_client_error(self, error: ClientError) -> str:
        """One-line description of an aiohttp error, with status and errno when present."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    async def close(self) -> None:
        """Close the HTTP session (if owned) and the parser thread pool."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None
        self.executor.shutdown(wait=False)
        logger.info("FeedFetcher closed")
