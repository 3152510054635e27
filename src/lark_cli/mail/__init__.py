"""Mail sync and cache engine."""

from .cache import CachedEnvelope, MailboxState, MailCache, SearchOptions, SearchResult
from .imap import Envelope, IMAPClient, MailboxInfo
from .search import parse_search_options, search, search_cache
from .sync import MailSync, SyncResult

__all__ = [
    "CachedEnvelope",
    "Envelope",
    "IMAPClient",
    "MailboxInfo",
    "MailboxState",
    "MailCache",
    "MailSync",
    "SearchOptions",
    "SearchResult",
    "SyncResult",
    "parse_search_options",
    "search",
    "search_cache",
]
