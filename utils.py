#!/usr/bin/env python3
"""
Small helpers shared by the fetcher, normalizer, scheduler and maintenance routines.
"""

from typing import Optional
from urllib.parse import urlparse


def validate_url(url: Optional[str]) -> bool:
    """True when `url` is an absolute http(s) URL with a host."""
    if not isinstance(url, str) or not url.strip():
        return False
    try:
        parsed = urlparse(url.strip())
    except ValueError:
        return False
    return parsed.scheme in ('http', 'https') and bool(parsed.netloc)


def normalize_site_url(url: str) -> str:
    """Prefix a bare host with https:// and drop a trailing slash."""
    url = (url or "").strip()
    if not url:
        raise ValueError("Site URL is required")
    if not url.startswith(('http://', 'https://')):
        url = f"https://{url}"
    return url.rstrip('/')


def format_duration(seconds: float) -> str:
    """Render seconds as e.g. "1h 23m 45s"; zero and negative values give "0s"."""
    remaining = max(int(seconds), 0)
    hours, remaining = divmod(remaining, 3600)
    minutes, secs = divmod(remaining, 60)
    parts = [f"{value}{unit}" for value, unit in ((hours, "h"), (minutes, "m")) if value]
    if secs or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def truncate_string(text: Optional[str], max_length: int, suffix: str = "...") -> Optional[str]:
    """Cap `text` at max_length characters, suffix included."""
    if not text or len(text) <= max_length:
        return text
    keep = max_length - len(suffix)
    return text[:keep] + suffix if keep > 0 else text[:max_length]
