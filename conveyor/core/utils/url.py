# conveyor/core/utils/url.py
"""URL helpers for safe logging and driver URL normalization."""

from __future__ import annotations

from urllib.parse import urlparse, urlunparse


def mask_database_url(url: str) -> str:
    """Replace the password of a database URL with ``***`` for logging."""
    try:
        parsed = urlparse(url)
    except ValueError:
        parsed = None
    if parsed is not None and parsed.password:
        netloc = parsed.netloc.replace(f':{parsed.password}@', ':***@')
        return urlunparse(parsed._replace(netloc=netloc))
    if parsed is not None or '@' not in url:
        return url
    pre, post = url.split('@', 1)
    return f"{pre.rsplit(':', 1)[0]}:***@{post}"


def to_psycopg_url(url: str) -> str:
    """Strip the SQLAlchemy driver suffix so psycopg can connect directly.

    ``postgresql+psycopg://...`` -> ``postgresql://...``
    """
    parsed = urlparse(url)
    if '+' not in parsed.scheme:
        return url
    base, driver = parsed.scheme.split('+', 1)
    if base in {'postgresql', 'postgres'} and driver in {'psycopg', 'asyncpg'}:
        return urlunparse(parsed._replace(scheme=base))
    return url
