"""Per-mailbox file lock serializing concurrent syncs across processes."""

import fcntl
import hashlib
import logging
import os
import re
import time
from pathlib import Path

from ..errors import SyncInProgressError

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.2


def lock_filename(mailbox: str) -> str:
    """File name for a mailbox's lock.

    Mailbox names may contain '/' or non-ASCII characters, so the readable
    part is sanitized and a short hash keeps distinct names distinct.
    """
    safe = re.sub(r"[^A-Za-z0-9._-]+", "_", mailbox).strip("_") or "mailbox"
    digest = hashlib.sha1(mailbox.encode("utf-8")).hexdigest()[:8]
    return f"sync-{safe[:40]}-{digest}.lock"


class MailboxLock:
    """fcntl lock held for the duration of one mailbox sync.

    Two syncs of the same mailbox in different processes would each fetch,
    clear and insert; holding this lock makes the second wait for the first
    and then see the first's checkpoint.
    """

    def __init__(self, lock_dir: Path, mailbox: str, timeout: float = 60):
        self.lock_dir = Path(lock_dir)
        self.mailbox = mailbox
        self.timeout = timeout
        self.lock_file = self.lock_dir / lock_filename(mailbox)
        self.lock_fd: int | None = None

    @property
    def locked(self) -> bool:
        return self.lock_fd is not None

    def acquire(self, wait: bool = True, timeout: float | None = None) -> bool:
        """Acquire the lock.

        Args:
            wait: Retry until `timeout` elapses. If False, try once.
            timeout: Seconds to wait (defaults to the instance timeout)

        Returns:
            True if the lock is held, False otherwise
        """
        if self.lock_fd is not None:
            return True

        timeout = self.timeout if timeout is None else timeout
        self.lock_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd = os.open(self.lock_file, os.O_CREAT | os.O_RDWR, 0o600)

        deadline = time.monotonic() + timeout
        logged = False
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                if not wait or time.monotonic() >= deadline:
                    os.close(fd)
                    return False
                if not logged:
                    logger.info("Waiting for another sync of %s to finish", self.mailbox)
                    logged = True
                time.sleep(POLL_INTERVAL)
                continue

            os.ftruncate(fd, 0)
            os.write(fd, f"{os.getpid()}\n".encode())
            self.lock_fd = fd
            logger.debug("Acquired sync lock %s", self.lock_file)
            return True

    def holder(self) -> int | None:
        """PID recorded by the current holder, if any."""
        try:
            content = self.lock_file.read_text().strip()
        except OSError:
            return None
        return int(content) if content.isdigit() else None

    def release(self) -> None:
        """Release the lock. Safe to call when not held."""
        if self.lock_fd is None:
            return
        try:
            fcntl.flock(self.lock_fd, fcntl.LOCK_UN)
            os.close(self.lock_fd)
        finally:
            self.lock_fd = None
        logger.debug("Released sync lock %s", self.lock_file)

    def __enter__(self) -> "MailboxLock":
        if not self.acquire():
            raise SyncInProgressError(self.mailbox, self.holder())
        return self

    def __exit__(self, *args) -> None:
        self.release()
