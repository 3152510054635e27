"""Local mail cache using SQLite.

Holds one sync checkpoint per mailbox and the cached envelopes of its
messages. The file survives process restarts and is the only state the search
path ever reads.

Tables:
- mailboxes: name -> (uidvalidity, last_uid, last_sync)
- envelopes: (mailbox, uid) -> message_id, date, from_addr, from_name, subject

Dates are stored as unix seconds. A message with no server-reported date is
stored as 0 and therefore sorts as the oldest.
"""

import logging
import os
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import wraps
from pathlib import Path
from typing import Iterable, Iterator

from ..errors import CacheError
from .imap import Envelope

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1
DEFAULT_SEARCH_LIMIT = 50

DEFAULT_PRAGMAS = {
    "journal_mode": "WAL",  # readers keep a consistent snapshot during a sync commit
    "synchronous": "NORMAL",
    "busy_timeout": 30000,
}

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY
);

CREATE TABLE IF NOT EXISTS mailboxes (
    name TEXT PRIMARY KEY,
    uidvalidity INTEGER NOT NULL,
    last_uid INTEGER NOT NULL DEFAULT 0,
    last_sync INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS envelopes (
    mailbox TEXT NOT NULL,
    uid INTEGER NOT NULL,
    message_id TEXT,
    date INTEGER,
    from_addr TEXT,
    from_name TEXT,
    subject TEXT,
    PRIMARY KEY (mailbox, uid)
);

CREATE INDEX IF NOT EXISTS idx_envelopes_date ON envelopes(mailbox, date DESC);
CREATE INDEX IF NOT EXISTS idx_envelopes_from ON envelopes(mailbox, from_addr);
CREATE INDEX IF NOT EXISTS idx_envelopes_subject ON envelopes(mailbox, subject);
"""

INSERT_ENVELOPE_SQL = """INSERT OR REPLACE INTO envelopes
    (mailbox, uid, message_id, date, from_addr, from_name, subject)
    VALUES (?, ?, ?, ?, ?, ?, ?)"""

ENVELOPE_COLUMNS = "uid, message_id, date, from_addr, from_name, subject"


def _utc(ts: int | None) -> datetime:
    return datetime.fromtimestamp(ts or 0, tz=timezone.utc)


def _unix(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def _plural(n: int, unit: str) -> str:
    return f"1 {unit} ago" if n == 1 else f"{n} {unit}s ago"


def format_freshness(last_sync: datetime | None, now: datetime | None = None) -> str:
    """Describe how long ago a mailbox was last synced."""
    if last_sync is None:
        return "never synced"
    now = now or datetime.now(timezone.utc)
    seconds = (now - last_sync).total_seconds()
    if seconds < 60:
        return "just now"
    if seconds < 3600:
        return _plural(int(seconds // 60), "minute")
    if seconds < 86400:
        return _plural(int(seconds // 3600), "hour")
    return _plural(int(seconds // 86400), "day")


@dataclass
class MailboxState:
    """Sync checkpoint for one mailbox.

    last_uid only means something under the uid_validity it was recorded with.
    """
    name: str
    uid_validity: int
    last_uid: int
    last_sync: datetime | None = None


@dataclass
class CachedEnvelope:
    """An envelope as stored in the cache."""
    uid: int
    message_id: str
    date: datetime
    from_addr: str
    from_name: str
    subject: str

    @property
    def timestamp(self) -> int:
        return int(self.date.timestamp())

    def to_dict(self) -> dict:
        return {
            "uid": self.uid,
            "message_id": self.message_id,
            "date": self.date.isoformat(),
            "from": {"email": self.from_addr, "name": self.from_name},
            "subject": self.subject,
        }


@dataclass
class SearchOptions:
    """Filters for a cache search.

    Substring filters are case-insensitive for ASCII letters. `since` is
    inclusive, `before` exclusive. A limit of 0 means the default (50), not
    "unlimited".
    """
    from_addr: str | None = None
    subject: str | None = None
    since: datetime | None = None
    before: datetime | None = None
    limit: int = 0

    @property
    def effective_limit(self) -> int:
        return self.limit if self.limit and self.limit > 0 else DEFAULT_SEARCH_LIMIT


@dataclass
class SearchResult:
    """Matching envelopes (newest first) plus cache freshness."""
    mailbox: str
    last_sync: datetime | None = None
    freshness: str = "never synced"
    total_cached: int = 0
    results: list[CachedEnvelope] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.results)

    def to_dict(self) -> dict:
        return {
            "mailbox": self.mailbox,
            "last_sync": self.last_sync.isoformat() if self.last_sync else None,
            "freshness": self.freshness,
            "total_cached": self.total_cached,
            "results": [env.to_dict() for env in self.results],
            "count": self.count,
        }


def _like_pattern(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def _row_to_envelope(row: sqlite3.Row) -> CachedEnvelope:
    return CachedEnvelope(
        uid=row["uid"],
        message_id=row["message_id"] or "",
        date=_utc(row["date"]),
        from_addr=row["from_addr"] or "",
        from_name=row["from_name"] or "",
        subject=row["subject"] or "",
    )


def _row_to_state(row: sqlite3.Row) -> MailboxState:
    return MailboxState(
        name=row["name"],
        uid_validity=row["uidvalidity"],
        last_uid=row["last_uid"],
        last_sync=_utc(row["last_sync"]) if row["last_sync"] else None,
    )


def _cache_op(what: str):
    """Translate sqlite3 errors raised by a cache method into CacheError."""
    def decorator(f):
        @wraps(f)
        def wrapper(self, *args, **kwargs):
            try:
                return f(self, *args, **kwargs)
            except sqlite3.Error as e:
                raise CacheError(f"{what}: {e}") from e
        return wrapper
    return decorator


class MailCache:
    """SQLite-backed cache of mailbox checkpoints and envelopes.

    Writes go through `transaction()`, which opens one `BEGIN IMMEDIATE` unit;
    methods called inside an open transaction join it instead of committing on
    their own. This lets a sync clear, insert and checkpoint as a single
    atomic step.
    """

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._conn: sqlite3.Connection | None = None
        self._depth = 0

    @property
    def conn(self) -> sqlite3.Connection:
        if not self._conn:
            raise RuntimeError("Not connected")
        return self._conn

    def connect(self) -> None:
        """Open the database, creating file and schema if needed."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        is_new = not self.path.exists()
        conn = None
        try:
            conn = sqlite3.connect(self.path, timeout=30.0, isolation_level=None)
            conn.row_factory = sqlite3.Row
            for pragma, value in DEFAULT_PRAGMAS.items():
                conn.execute(f"PRAGMA {pragma}={value}")
        except sqlite3.Error as e:
            if conn is not None:
                conn.close()
            raise CacheError(f"opening cache database {self.path}: {e}") from e

        if is_new:
            try:
                os.chmod(self.path, 0o600)
            except OSError as e:
                logger.warning("Could not set permissions on %s: %s", self.path, e)

        self._conn = conn
        try:
            self._create_schema()
        except BaseException:
            self.disconnect()
            raise

    def disconnect(self) -> None:
        """Close the database connection."""
        if self._conn:
            self._conn.close()
            self._conn = None
            self._depth = 0

    @_cache_op("initializing cache schema")
    def _create_schema(self) -> None:
        with self.transaction():
            # executescript() would commit on its own
            for statement in SCHEMA_SQL.split(";"):
                if statement.strip():
                    self.conn.execute(statement)
            row = self.conn.execute("SELECT version FROM schema_version LIMIT 1").fetchone()
            if row is None:
                logger.info("Creating cache schema (version %d) at %s", SCHEMA_VERSION, self.path)
                self.conn.execute(
                    "INSERT INTO schema_version (version) VALUES (?)", (SCHEMA_VERSION,)
                )
            elif row["version"] > SCHEMA_VERSION:
                logger.warning(
                    "Cache schema version %d is newer than supported (%d)",
                    row["version"],
                    SCHEMA_VERSION,
                )

    def __enter__(self):
        self.connect()
        return self

    def __exit__(self, *args):
        self.disconnect()

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed writes as one all-or-nothing unit."""
        if self._depth:
            self._depth += 1
            try:
                yield self.conn
            finally:
                self._depth -= 1
            return

        try:
            self.conn.execute("BEGIN IMMEDIATE")
        except sqlite3.Error as e:
            raise CacheError(f"starting transaction: {e}") from e
        self._depth = 1
        try:
            yield self.conn
        except BaseException:
            self._depth = 0
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            raise
        self._depth = 0
        try:
            self.conn.execute("COMMIT")
        except sqlite3.Error as e:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            raise CacheError(f"committing transaction: {e}") from e

    @contextmanager
    def _snapshot(self) -> Iterator[sqlite3.Connection]:
        """Read several queries from one consistent snapshot."""
        if self._depth or self.conn.in_transaction:
            yield self.conn
            return
        self.conn.execute("BEGIN")
        try:
            yield self.conn
        finally:
            if self.conn.in_transaction:
                self.conn.execute("COMMIT")

    # -------------------------------------------------------------------------
    # Mailbox state
    # -------------------------------------------------------------------------

    @_cache_op("querying mailbox state")
    def get_mailbox_state(self, name: str) -> MailboxState | None:
        """Get the sync checkpoint for a mailbox, or None if never synced."""
        row = self.conn.execute(
            "SELECT name, uidvalidity, last_uid, last_sync FROM mailboxes WHERE name = ?",
            (name,),
        ).fetchone()
        return _row_to_state(row) if row else None

    @_cache_op("listing mailbox states")
    def list_mailbox_states(self) -> list[MailboxState]:
        """All sync checkpoints, ordered by mailbox name."""
        cur = self.conn.execute(
            "SELECT name, uidvalidity, last_uid, last_sync FROM mailboxes ORDER BY name"
        )
        return [_row_to_state(row) for row in cur]

    @_cache_op("updating mailbox state")
    def update_mailbox_state(
        self,
        name: str,
        uid_validity: int,
        last_uid: int,
        synced_at: datetime | None = None,
    ) -> None:
        """Upsert the checkpoint for a mailbox, stamping the sync time."""
        ts = _unix(synced_at) if synced_at else int(time.time())
        with self.transaction():
            self.conn.execute(
                """INSERT INTO mailboxes (name, uidvalidity, last_uid, last_sync)
                   VALUES (?, ?, ?, ?)
                   ON CONFLICT(name) DO UPDATE SET
                       uidvalidity = excluded.uidvalidity,
                       last_uid = excluded.last_uid,
                       last_sync = excluded.last_sync""",
                (name, uid_validity, last_uid, ts),
            )

    @_cache_op("clearing mailbox")
    def clear_mailbox(self, name: str) -> int:
        """Delete every cached envelope and the checkpoint of a mailbox.

        Returns:
            Number of envelopes deleted
        """
        with self.transaction():
            cur = self.conn.execute("DELETE FROM envelopes WHERE mailbox = ?", (name,))
            self.conn.execute("DELETE FROM mailboxes WHERE name = ?", (name,))
        logger.debug("Cleared %d cached envelopes for %s", cur.rowcount, name)
        return cur.rowcount

    # -------------------------------------------------------------------------
    # Envelopes
    # -------------------------------------------------------------------------

    @_cache_op("inserting envelopes")
    def insert_envelopes(self, mailbox: str, envelopes: Iterable[Envelope]) -> int:
        """Upsert envelopes keyed by (mailbox, uid).

        Re-inserting a UID overwrites the previous row, so retried runs never
        duplicate. Returns the number of rows written.
        """
        rows = [
            (mailbox, env.uid, env.message_id, env.date, env.from_addr, env.from_name, env.subject)
            for env in envelopes
        ]
        if not rows:
            return 0
        with self.transaction():
            self.conn.executemany(INSERT_ENVELOPE_SQL, rows)
        return len(rows)

    @_cache_op("counting envelopes")
    def count(self, mailbox: str) -> int:
        """Number of cached envelopes for a mailbox."""
        cur = self.conn.execute("SELECT COUNT(*) FROM envelopes WHERE mailbox = ?", (mailbox,))
        return cur.fetchone()[0]

    @_cache_op("querying envelope")
    def get_envelope(self, mailbox: str, uid: int) -> CachedEnvelope | None:
        """Point lookup by (mailbox, uid)."""
        row = self.conn.execute(
            f"SELECT {ENVELOPE_COLUMNS} FROM envelopes WHERE mailbox = ? AND uid = ?",
            (mailbox, uid),
        ).fetchone()
        return _row_to_envelope(row) if row else None

    @_cache_op("listing cached UIDs")
    def get_uids(self, mailbox: str) -> set[int]:
        """All cached UIDs for a mailbox."""
        cur = self.conn.execute("SELECT uid FROM envelopes WHERE mailbox = ?", (mailbox,))
        return {row["uid"] for row in cur}

    @_cache_op("searching cache")
    def search(
        self,
        mailbox: str,
        options: SearchOptions | None = None,
        now: datetime | None = None,
    ) -> SearchResult:
        """Find cached envelopes matching `options`, newest first.

        The result carries the mailbox's total cached count and a freshness
        string so callers can decide whether to sync first.
        """
        options = options or SearchOptions()

        query = f"SELECT {ENVELOPE_COLUMNS} FROM envelopes WHERE mailbox = ?"
        params: list = [mailbox]
        if options.from_addr:
            query += " AND from_addr LIKE ? ESCAPE '\\'"
            params.append(_like_pattern(options.from_addr))
        if options.subject:
            query += " AND subject LIKE ? ESCAPE '\\'"
            params.append(_like_pattern(options.subject))
        if options.since:
            query += " AND date >= ?"
            params.append(_unix(options.since))
        if options.before:
            query += " AND date < ?"
            params.append(_unix(options.before))
        query += " ORDER BY date DESC, uid DESC LIMIT ?"
        params.append(options.effective_limit)

        with self._snapshot():
            state = self.get_mailbox_state(mailbox)
            total = self.count(mailbox)
            rows = self.conn.execute(query, params).fetchall()

        result = SearchResult(mailbox=mailbox, total_cached=total)
        if state is not None:
            result.last_sync = state.last_sync
            result.freshness = format_freshness(state.last_sync, now)
        result.results = [_row_to_envelope(row) for row in rows]
        return result

