"""Offline search over the envelope cache.

Searches never touch the network and never write to the cache.
"""

from datetime import datetime, timezone
from pathlib import Path

from .cache import DEFAULT_SEARCH_LIMIT, MailCache, SearchOptions, SearchResult

__all__ = [
    "DEFAULT_SEARCH_LIMIT",
    "SearchOptions",
    "SearchResult",
    "parse_date",
    "parse_search_options",
    "search",
    "search_cache",
]

DATE_FORMAT = "%Y-%m-%d"


def parse_date(value: str | None) -> datetime | None:
    """Parse YYYY-MM-DD into midnight UTC; None/empty passes through."""
    if not value:
        return None
    try:
        return datetime.strptime(value, DATE_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        raise ValueError(f"invalid date {value!r}, expected YYYY-MM-DD") from None


def parse_search_options(
    from_addr: str | None = None,
    subject: str | None = None,
    since: str | None = None,
    before: str | None = None,
    limit: int = 0,
) -> SearchOptions:
    """Build SearchOptions from command-line style string arguments."""
    return SearchOptions(
        from_addr=from_addr or None,
        subject=subject or None,
        since=parse_date(since),
        before=parse_date(before),
        limit=limit or 0,
    )


def search(cache: MailCache, mailbox: str, options: SearchOptions | None = None) -> SearchResult:
    """Query a connected cache."""
    return cache.search(mailbox, options)


def search_cache(path: Path, mailbox: str, options: SearchOptions | None = None) -> SearchResult:
    """Query the cache file at `path`.

    A missing file means nothing was ever synced; it is reported as such
    rather than created.
    """
    if not Path(path).exists():
        return SearchResult(mailbox=mailbox)
    with MailCache(path) as cache:
        return cache.search(mailbox, options)
