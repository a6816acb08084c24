#!/usr/bin/env python3
"""
Article normalization.

Turns one parsed feed entry (a feedparser entry or any mapping with the same
keys) into an ArticleDraft: sanitized HTML content, an image URL, excerpt,
summary and description, author and publication date. Nothing here touches
storage or the network.
"""

from calendar import timegm
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
import re
from typing import Any, List, Optional
from urllib.parse import urljoin

import feedparser
from bs4 import BeautifulSoup

from config import get_logger
from models import ArticleDraft
from utils import truncate_string

# Module-specific logger
logger = get_logger("normalizer")

MAX_TITLE_LENGTH = 255
MAX_URL_LENGTH = 2048
SUMMARY_MAX_LENGTH = 300
EXCERPT_MAX_LENGTH = 1000
EXCERPT_PARAGRAPHS = 6
MIN_PARAGRAPH_LENGTH = 20
# Upper bound on the HTML scanned for excerpts so one huge item cannot stall the loop
MAX_SCAN_CHARS = 100_000

DEFAULT_TITLE = "Untitled"

UNSAFE_TAGS = [
    "script", "style", "iframe", "form", "object", "embed", "noscript",
    "frame", "frameset", "applet", "meta", "base", "link",
]

URL_ATTRS = {"href", "src", "xlink:href", "action", "formaction", "poster", "background", "srcset", "data", "cite"}
SCRIPT_URL = re.compile(r"^\s*(javascript|vbscript):", re.I)

IMAGE_EXTENSION_RE = re.compile(r'\.(jpg|jpeg|png|gif|webp)($|\?)', re.I)
CONTENT_IMAGE_PATTERNS = [
    re.compile(r'<img[^>]+src=["\']([^"\']+)["\']', re.I),
    re.compile(r'<img[^>]+src=([^\s>]+)', re.I),
    re.compile(r'src=["\']([^"\']+\.(jpg|jpeg|png|gif|webp)[^"\']*)', re.I),
]
SUMMARY_IMAGE_PATTERN = re.compile(r'<img[^>]+src=["\']([^"\']+)["\']', re.I)
PARAGRAPH_RE = re.compile(r'<p(?:\s[^>]*)?>(.*?)</p>', re.I | re.S)
BR_RE = re.compile(r'<br[^>]*>', re.I)
BLOCK_SPLIT_RE = re.compile(r'\n\s*\n+')
ELLIPSIS_ARTIFACT_RE = re.compile(r'\[(\.\.\.|…)\]')
WHITESPACE_RE = re.compile(r'\s+')

# Parsed (UTC struct_time) fields first, then raw strings in priority order
PARSED_DATE_FIELDS = ['published_parsed', 'updated_parsed', 'created_parsed']
RAW_DATE_FIELDS = ['published', 'updated', 'created', 'date', 'pubDate', 'pubdate', 'dc_date', 'issued']


def get_entry_value(entry, field: str) -> Any:
    """Safely fetch feedparser entry fields with attribute or dict access."""
    if not field or entry is None:
        return None
    try:
        value = getattr(entry, field)
    except AttributeError:
        value = None

    if value is not None:
        return value

    getter = getattr(entry, 'get', None)
    if callable(getter):
        try:
            return getter(field)
        except KeyError:
            return None
    return None


def _first_text(entry, *fields: str) -> Optional[str]:
    for name in fields:
        value = get_entry_value(entry, name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _as_list(value) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def strip_html(html_content: Optional[str], separator: str = " ") -> str:
    """Return the text of an HTML fragment with whitespace collapsed."""
    if not html_content:
        return ""
    text = BeautifulSoup(html_content, 'html.parser').get_text(separator=separator)
    return WHITESPACE_RE.sub(' ', text).strip()


def sanitize_html(html_content: Optional[str], base_url: Optional[str] = None) -> str:
    """Sanitize untrusted feed HTML.

    Args:
        html_content: Raw HTML from the feed
        base_url: Optional base URL used to resolve relative href/src values

    Behavior:
    - Removes dangerous elements (script/style/iframe/etc.)
    - Strips inline event handlers and javascript: URLs
    - Removes common tracking pixels
    - Resolves relative href/src against ``base_url``; references that cannot
      be made absolute are neutralized (links -> ``#``, images lose their src)
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, 'html.parser')

    for tag in soup(UNSAFE_TAGS):
        tag.decompose()

    for tag in soup.find_all(True):
        for attr in list(tag.attrs):
            if attr.lower().startswith('on'):
                del tag[attr]
            elif attr.lower() in URL_ATTRS and SCRIPT_URL.match(str(tag[attr])):
                del tag[attr]

    # Tracking pixels / tiny images
    for img in soup.find_all('img'):
        src = img.get('src', '')
        if re.search(r'(pixel|tracker|counter|spacer)', src, re.I) or \
           (re.search(r'\.(gif|png)$', src, re.I) and img.get('height') in ('0', '1')):
            img.decompose()

    def _rewrite_url(value: str, attr: str) -> Optional[str]:
        if attr == 'href' and value.startswith(('mailto:', '#')):
            return value
        if value.startswith(('http://', 'https://')):
            return value
        if base_url:
            try:
                resolved = urljoin(base_url, value)
            except ValueError:
                return None
            if resolved.startswith(('http://', 'https://')):
                return resolved
        return None

    for tag in soup.find_all(['a', 'img']):
        for attr in ('href', 'src'):
            if not tag.has_attr(attr):
                continue
            value = str(tag[attr]).strip()
            if not value:
                continue
            rewritten = _rewrite_url(value, attr)
            if rewritten:
                tag[attr] = rewritten
            elif attr == 'href':
                tag[attr] = '#'
            else:
                del tag[attr]

    return str(soup).strip()


def extract_image_url(entry, content: Optional[str]) -> Optional[str]:
    """Pick an image for the entry; the first matching source wins."""
    # 1. media:thumbnail
    for thumbnail in _as_list(get_entry_value(entry, 'media_thumbnail')):
        url = thumbnail.get('url') if isinstance(thumbnail, dict) else None
        if url:
            return url

    # 2. media:content that is, or may be, an image
    for media in _as_list(get_entry_value(entry, 'media_content')):
        if not isinstance(media, dict) or not media.get('url'):
            continue
        url = media['url']
        medium = media.get('medium')
        if medium == 'image' or not medium or IMAGE_EXTENSION_RE.search(url):
            return url

    # 3. image enclosures
    for enclosure in _as_list(get_entry_value(entry, 'enclosures')):
        if not isinstance(enclosure, dict):
            continue
        url = enclosure.get('href') or enclosure.get('url')
        if not url:
            continue
        mime_type = enclosure.get('type') or ''
        if mime_type.startswith('image/') or IMAGE_EXTENSION_RE.search(url):
            return url

    # 4. first <img> in the resolved content
    if content:
        scanned = content[:MAX_SCAN_CHARS]
        for pattern in CONTENT_IMAGE_PATTERNS:
            match = pattern.search(scanned)
            if match and match.group(1):
                return match.group(1)

    # 5. first <img> in the raw summary
    summary = get_entry_value(entry, 'summary')
    if isinstance(summary, str) and summary:
        match = SUMMARY_IMAGE_PATTERN.search(summary[:MAX_SCAN_CHARS])
        if match:
            return match.group(1)

    return None


def generate_excerpt(content: Optional[str], max_length: int = EXCERPT_MAX_LENGTH) -> Optional[str]:
    """Plain-text excerpt of at most max_length characters.

    Cuts at the last sentence end when it falls in the final 20%, else at the
    last word boundary with an ellipsis, else hard-cuts with an ellipsis.
    """
    if not content:
        return None

    text = strip_html(content[:MAX_SCAN_CHARS])
    text = WHITESPACE_RE.sub(' ', ELLIPSIS_ARTIFACT_RE.sub('', text)).strip()
    if not text:
        return None
    if len(text) <= max_length:
        return text

    threshold = max_length * 0.8
    sentence_end = text.rfind('.', 0, max_length)
    if sentence_end > threshold:
        return text[:sentence_end + 1]

    word_end = text.rfind(' ', 0, max_length - 2)
    if word_end > threshold:
        return text[:word_end] + '...'

    return text[:max_length - 3] + '...'


def extract_first_paragraphs(content: Optional[str], count: int = EXCERPT_PARAGRAPHS) -> Optional[str]:
    """Join the first `count` non-trivial paragraphs of the content.

    Uses <p> elements when present, otherwise blocks separated by blank lines
    (after <br> becomes a newline). Returns None when neither yields text.
    """
    if not content:
        return None
    scanned = content[:MAX_SCAN_CHARS]

    paragraphs = []
    for match in PARAGRAPH_RE.finditer(scanned):
        text = strip_html(match.group(1))
        if len(text) > MIN_PARAGRAPH_LENGTH:
            paragraphs.append(text)
            if len(paragraphs) >= count:
                break
    if paragraphs:
        return "\n\n".join(paragraphs)

    text = BeautifulSoup(BR_RE.sub('\n', scanned), 'html.parser').get_text()
    blocks = BLOCK_SPLIT_RE.split(text.strip())
    if len(blocks) < 2:
        return None
    lines = [block.strip() for block in blocks if len(block.strip()) > MIN_PARAGRAPH_LENGTH]
    return "\n\n".join(lines[:count]) or None


def _struct_to_timestamp(value) -> Optional[int]:
    try:
        return timegm(tuple(value)[:9])
    except (OverflowError, ValueError, TypeError):
        return None


def _parse_with_feedparser(date_str: str) -> Optional[int]:
    try:
        time_struct = feedparser._parse_date(date_str)
    except (ValueError, TypeError, AttributeError, OverflowError):
        return None
    return _struct_to_timestamp(time_struct) if time_struct else None


def _parse_with_email_utils(date_str: str) -> Optional[int]:
    try:
        dt = parsedate_to_datetime(date_str)
    except (TypeError, ValueError, OverflowError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _parse_with_custom_formats(date_str: str) -> Optional[int]:
    custom_formats = [
        "%Y-%m-%dT%H:%M:%S%z",
        "%Y-%m-%d %H:%M:%S",
        "%d %b %Y %H:%M:%S %z",
        "%d %b %Y %H:%M:%S",
        "%Y-%m-%d",
    ]
    for fmt in custom_formats:
        try:
            dt = datetime.strptime(date_str, fmt)
        except ValueError:
            continue
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return int(dt.timestamp())
    return None


def parse_date_string(date_str: str) -> Optional[int]:
    date_str = date_str.strip()
    if not date_str:
        return None
    for parser in (_parse_with_feedparser, _parse_with_email_utils, _parse_with_custom_formats):
        timestamp = parser(date_str)
        if timestamp is not None:
            return timestamp
    return None


def resolve_published_date(entry) -> Optional[int]:
    """Unix timestamp of the entry's publication date, or None if none parses."""
    for field in PARSED_DATE_FIELDS:
        value = get_entry_value(entry, field)
        if value:
            timestamp = _struct_to_timestamp(value)
            if timestamp is not None:
                return timestamp

    for field in RAW_DATE_FIELDS:
        value = get_entry_value(entry, field)
        if isinstance(value, datetime):
            return int((value if value.tzinfo else value.replace(tzinfo=timezone.utc)).timestamp())
        if isinstance(value, str):
            timestamp = parse_date_string(value)
            if timestamp is not None:
                return timestamp
    return None


def resolve_entry_url(entry) -> Optional[str]:
    """The entry's link, else its guid, trimmed and capped; None when both are empty."""
    url = _first_text(entry, 'link', 'id', 'guid')
    return url[:MAX_URL_LENGTH] if url else None


def resolve_entry_title(entry) -> str:
    title = _first_text(entry, 'title') or DEFAULT_TITLE
    return title[:MAX_TITLE_LENGTH]


def resolve_author(entry) -> Optional[str]:
    return _first_text(entry, 'creator', 'author', 'dc_creator')


def resolve_raw_content(entry) -> Optional[str]:
    """content:encoded / Atom content, else summary, else description."""
    for item in _as_list(get_entry_value(entry, 'content')):
        value = item.get('value') if isinstance(item, dict) else item
        if isinstance(value, str) and value.strip():
            return value
    return _first_text(entry, 'summary', 'description')


def normalize_entry(entry, source_id: int) -> ArticleDraft:
    """Convert one parsed feed entry into an ArticleDraft.

    Raises ValueError when the entry has neither a link nor a guid.
    """
    url = resolve_entry_url(entry)
    title = resolve_entry_title(entry)
    if not url:
        raise ValueError(f"Item without URL: {title}")

    raw_content = resolve_raw_content(entry)
    content = sanitize_html(raw_content, base_url=url) if raw_content else None

    image_url = extract_image_url(entry, content)

    excerpt = extract_first_paragraphs(content) or generate_excerpt(content, EXCERPT_MAX_LENGTH)

    snippet_source = _first_text(entry, 'summary', 'description') or raw_content
    summary = truncate_string(strip_html(snippet_source), SUMMARY_MAX_LENGTH) or None

    description = summary or generate_excerpt(content, SUMMARY_MAX_LENGTH)

    if image_url:
        logger.debug(f"Found image for article \"{title}\": {image_url}")

    return ArticleDraft(
        source_id=source_id,
        title=title,
        url=url,
        content=content or None,
        summary=summary,
        description=description or None,
        excerpt=excerpt or None,
        image_url=image_url,
        author=resolve_author(entry),
        published_date=resolve_published_date(entry),
        is_read=False,
        is_favorite=False,
        # New articles are never archived, whatever the feed claims
        is_archived=False,
    )
