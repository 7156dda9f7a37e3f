# durq/core/utils/url.py
"""URL helpers for safe logging."""

from __future__ import annotations

from urllib.parse import urlparse, urlunparse


def mask_database_url(url: str) -> str:
    """Mask the password in a database URL so it can be logged.

    Falls back to splitting on '@' when the URL cannot be parsed.
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        if '@' not in url:
            return url
        pre, post = url.split('@', 1)
        return f"{pre.rsplit(':', 1)[0]}:***@{post}"

    if not parsed.password:
        return url
    netloc = parsed.netloc.replace(f':{parsed.password}@', ':***@')
    return urlunparse(parsed._replace(netloc=netloc))


def url_scheme(url: str) -> str:
    """Scheme part of a URL for error notes, without leaking credentials."""
    return url.split('://', 1)[0] if '://' in url else url[:20]
