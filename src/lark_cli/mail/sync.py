"""Mailbox sync: mirror server envelopes into the local cache.

One call to `MailSync.sync()` is the unit of atomicity. All network work for
the run finishes before the cache is touched, and clear/insert/checkpoint are
committed in one transaction, so a failed run leaves the previous state
intact.
"""

import logging
from contextlib import nullcontext
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Callable

from .cache import MailCache
from .imap import DEFAULT_BATCH_SIZE, Envelope, IMAPClient
from .lock import MailboxLock

logger = logging.getLogger(__name__)

EMPTY = "empty"
FULL = "full"
INCREMENTAL = "incremental"

# (messages fetched so far, messages to fetch)
ProgressCallback = Callable[[int, int], None]


@dataclass
class SyncResult:
    """Result of syncing one mailbox."""
    mailbox: str
    new_messages: int = 0
    total_cached: int = 0
    message: str = ""
    mode: str = ""
    invalidated: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def iter_sequence_batches(num_messages: int, batch_size: int = DEFAULT_BATCH_SIZE) -> list[tuple[int, int]]:
    """Split sequence numbers 1..num_messages into inclusive (start, end) ranges.

    Ranges run from the end of the mailbox backwards, so the newest messages
    are fetched first.
    """
    batch_size = max(1, batch_size)
    batches = []
    end = num_messages
    while end >= 1:
        start = max(1, end - batch_size + 1)
        batches.append((start, end))
        end = start - 1
    return batches


def fetch_all_envelopes(
    client: IMAPClient,
    num_messages: int,
    batch_size: int = DEFAULT_BATCH_SIZE,
    progress: ProgressCallback | None = None,
) -> list[Envelope]:
    """Fetch envelopes for every message of the selected mailbox, by position."""
    envelopes: list[Envelope] = []
    done = 0
    for start, end in iter_sequence_batches(num_messages, batch_size):
        batch = client.fetch_envelopes(start, end)
        logger.debug("Fetched %d envelopes for %d:%d", len(batch), start, end)
        envelopes.extend(batch)
        done += end - start + 1
        if progress:
            progress(done, num_messages)
    return envelopes


class MailSync:
    """Sync engine for one cache file.

    Args:
        cache: Connected cache store
        client_factory: Returns an IMAP client usable as a context manager
            (connected on enter, closed on exit)
        lock_dir: Directory for per-mailbox lock files; None disables locking
        batch_size: Messages per FETCH during a full sync
        lock_timeout: Seconds to wait for a concurrent sync of the same mailbox
        progress: Called with (done, total) after each full-sync batch
    """

    def __init__(
        self,
        cache: MailCache,
        client_factory: Callable[[], IMAPClient],
        lock_dir: Path | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        lock_timeout: float = 60,
        progress: ProgressCallback | None = None,
    ):
        self.cache = cache
        self.client_factory = client_factory
        self.lock_dir = lock_dir
        self.batch_size = batch_size
        self.lock_timeout = lock_timeout
        self.progress = progress

    def _lock(self, mailbox: str):
        if self.lock_dir is None:
            return nullcontext()
        return MailboxLock(self.lock_dir, mailbox, timeout=self.lock_timeout)

    def sync(self, mailbox: str) -> SyncResult:
        """Bring the cache for `mailbox` up to date with the server."""
        with self._lock(mailbox):
            return self._sync(mailbox)

    def _sync(self, mailbox: str) -> SyncResult:
        result = SyncResult(mailbox=mailbox)

        with self.client_factory() as client:
            info = client.select_mailbox(mailbox)
            state = self.cache.get_mailbox_state(mailbox)

            if state is not None and state.uid_validity != info.uid_validity:
                logger.warning(
                    "UIDVALIDITY of %s changed (%d -> %d); discarding %d cached envelopes",
                    mailbox,
                    state.uid_validity,
                    info.uid_validity,
                    self.cache.count(mailbox),
                )
                result.invalidated = True
                state = None

            last_uid = state.last_uid if state else 0

            if info.num_messages == 0:
                result.mode = EMPTY
                envelopes = []
            elif last_uid == 0:
                result.mode = FULL
                logger.info("Full sync of %s (%d messages)", mailbox, info.num_messages)
                envelopes = fetch_all_envelopes(
                    client, info.num_messages, self.batch_size, self.progress
                )
            else:
                result.mode = INCREMENTAL
                logger.info("Incremental sync of %s from UID %d", mailbox, last_uid)
                envelopes = client.fetch_new_envelopes(last_uid)

        new_last_uid = max([last_uid] + [env.uid for env in envelopes])

        with self.cache.transaction():
            if result.invalidated:
                self.cache.clear_mailbox(mailbox)
            self.cache.insert_envelopes(mailbox, envelopes)
            self.cache.update_mailbox_state(mailbox, info.uid_validity, new_last_uid)

        result.new_messages = len(envelopes)
        result.total_cached = self.cache.count(mailbox)

        if result.mode == EMPTY:
            result.message = "mailbox is empty"
        elif result.new_messages == 0:
            result.message = "already up to date"
        else:
            result.message = f"synced {result.new_messages} new messages"
        if result.invalidated:
            result.message = f"uid validity changed, cache rebuilt; {result.message}"

        logger.info("%s: %s (%d cached)", mailbox, result.message, result.total_cached)
        return result
