"""IMAP client wrapper for envelope sync and message retrieval."""

import imaplib
import logging
import re
from dataclasses import dataclass
from datetime import timezone
from email.parser import BytesHeaderParser
from email.policy import default as email_policy
from email.utils import parseaddr, parsedate_to_datetime
from typing import Callable, Iterable, Iterator

from imapclient import imap_utf7

from ..config import MailCredentials
from ..errors import (
    AuthError,
    MailConnectionError,
    MailProtocolError,
    MailboxNotFound,
    MessageNotFound,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100

ENVELOPE_FETCH = "(UID BODY.PEEK[HEADER.FIELDS (MESSAGE-ID DATE FROM SUBJECT)])"
MESSAGE_FETCH = "(UID BODY.PEEK[])"

UID_PATTERN = re.compile(rb"\bUID\s+(\d+)", re.IGNORECASE)
LIST_PATTERN = re.compile(
    rb'^\((?P<flags>[^)]*)\)\s+(?P<delim>"(?:[^"\\]|\\.)*"|NIL)\s+(?P<name>.+)$',
    re.IGNORECASE,
)


@dataclass
class Envelope:
    """Lightweight message metadata as reported by the server."""
    uid: int
    message_id: str = ""
    date: int = 0  # unix seconds, 0 when unknown
    from_addr: str = ""
    from_name: str = ""
    subject: str = ""


@dataclass
class MailboxInfo:
    """State of a selected mailbox."""
    name: str
    num_messages: int
    uid_validity: int


# --- Response parsing ---


def encode_mailbox(name: str) -> str:
    """Encode a mailbox name to IMAP modified UTF-7 (RFC 3501 5.1.3)."""
    return imap_utf7.encode(name).decode("ascii")


def decode_mailbox(name: str | bytes) -> str:
    """Decode a modified UTF-7 mailbox name; malformed names are kept as sent."""
    # imap_utf7.decode passes str through untouched
    raw = name.encode("utf-8") if isinstance(name, str) else name
    try:
        return imap_utf7.decode(raw)
    except (ValueError, UnicodeError):
        logger.debug("Undecodable mailbox name: %r", name)
        return raw.decode("utf-8", errors="replace")


def quote_mailbox(name: str) -> str:
    """Encode and quote a mailbox name for use as a command argument."""
    escaped = encode_mailbox(name).replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def _unquote(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] == '"':
        return re.sub(r'\\(.)', r'\1', value[1:-1])
    return value


def parse_list_item(item: bytes | tuple | None) -> str | None:
    """Extract the mailbox name from one LIST response item.

    Items look like b'(\\HasNoChildren) "/" "INBOX"'. Names sent as literals
    arrive as a (meta, name) tuple.
    """
    if item is None:
        return None
    if isinstance(item, tuple):
        if len(item) < 2 or not isinstance(item[1], bytes):
            return None
        return decode_mailbox(item[1])
    match = LIST_PATTERN.match(item.strip())
    if not match:
        return None
    return decode_mailbox(_unquote(match.group("name").decode("utf-8", errors="replace").strip()))


def parse_uid_list(data: list | None) -> list[int]:
    """Parse a UID SEARCH response into sorted integers."""
    uids: set[int] = set()
    for line in data or []:
        if not isinstance(line, bytes):
            continue
        for token in line.split():
            if token.isdigit():
                uids.add(int(token))
    return sorted(uids)


def format_uid_set(uids: Iterable[int]) -> str:
    """Format UIDs as a compact IMAP sequence set, e.g. '1:3,7,9:10'."""
    ordered = sorted(set(uids))
    ranges: list[str] = []
    i = 0
    while i < len(ordered):
        start = end = ordered[i]
        while i + 1 < len(ordered) and ordered[i + 1] == end + 1:
            i += 1
            end = ordered[i]
        ranges.append(str(start) if start == end else f"{start}:{end}")
        i += 1
    return ",".join(ranges)


def parse_fetch_response(data: list | None) -> list[tuple[int, bytes]]:
    """Pair each literal in a FETCH response with its message UID.

    imaplib returns (meta, literal) tuples followed by a closing bytes item.
    Most servers put the UID in `meta`; some send it after the literal, in
    which case it shows up in the trailing bytes item.
    """
    parts: list[tuple[int, bytes]] = []
    pending: bytes | None = None
    for item in data or []:
        if isinstance(item, tuple) and len(item) >= 2:
            if pending is not None:
                logger.debug("Dropping FETCH item without UID")
            meta, literal = item[0], item[1]
            match = UID_PATTERN.search(meta) if isinstance(meta, bytes) else None
            if match and isinstance(literal, bytes):
                parts.append((int(match.group(1)), literal))
                pending = None
            else:
                pending = literal if isinstance(literal, bytes) else None
        elif isinstance(item, bytes) and pending is not None:
            match = UID_PATTERN.search(item)
            if match:
                parts.append((int(match.group(1)), pending))
            else:
                logger.debug("Dropping FETCH item without UID")
            pending = None
    return parts


def _header(msg, name: str) -> str:
    try:
        value = msg.get(name)
    except (ValueError, IndexError, TypeError) as e:
        logger.debug("Unparseable %s header: %s", name, e)
        return ""
    return str(value).strip() if value is not None else ""


def parse_date(value: str) -> int:
    """Convert a Date header to unix seconds; 0 when absent or unparseable.

    Dates without a zone are taken as UTC.
    """
    if not value:
        return 0
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return 0
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp())


def parse_envelope(uid: int, header_bytes: bytes) -> Envelope | None:
    """Build an Envelope from raw header (or full message) bytes."""
    if not isinstance(header_bytes, (bytes, bytearray)):
        return None
    msg = BytesHeaderParser(policy=email_policy).parsebytes(bytes(header_bytes))
    from_name, from_addr = parseaddr(_header(msg, "From"))
    return Envelope(
        uid=uid,
        message_id=_header(msg, "Message-ID").strip("<>"),
        date=parse_date(_header(msg, "Date")),
        from_addr=from_addr,
        from_name=from_name,
        subject=_header(msg, "Subject"),
    )


def _describe(data: list | None) -> str:
    parts = []
    for item in data or []:
        if isinstance(item, bytes):
            parts.append(item.decode("utf-8", errors="replace"))
    return " ".join(parts) or "no details"


def _chunked(items: list[int], size: int) -> Iterator[list[int]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


# --- Client ---


class IMAPClient:
    """Session-scoped IMAP client.

    One session is used by one caller at a time; commands are issued
    sequentially, one round trip each.
    """

    def __init__(
        self,
        credentials: MailCredentials,
        timeout: float | None = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        self.credentials = credentials
        self.timeout = timeout
        self.batch_size = max(1, batch_size)
        self.selected: MailboxInfo | None = None
        self._conn: imaplib.IMAP4 | None = None

    @property
    def address(self) -> str:
        return f"{self.credentials.host}:{self.credentials.port}"

    @property
    def conn(self) -> imaplib.IMAP4:
        if not self._conn:
            raise RuntimeError("Not connected")
        return self._conn

    @property
    def connected(self) -> bool:
        return self._conn is not None

    def connect(self) -> "IMAPClient":
        """Open the transport and log in."""
        creds = self.credentials
        try:
            if creds.use_ssl:
                conn = imaplib.IMAP4_SSL(creds.host, creds.port, timeout=self.timeout)
            else:
                conn = imaplib.IMAP4(creds.host, creds.port, timeout=self.timeout)
        except (OSError, imaplib.IMAP4.error) as e:
            raise MailConnectionError(f"connecting to {self.address}: {e}") from e

        try:
            conn.login(creds.username, creds.password)
        except imaplib.IMAP4.abort as e:
            _logout_quietly(conn)
            raise MailConnectionError(f"connection to {self.address} lost during login: {e}") from e
        except imaplib.IMAP4.error as e:
            _logout_quietly(conn)
            raise AuthError(f"login failed: {e}") from e
        except UnicodeEncodeError as e:
            _logout_quietly(conn)
            raise AuthError(f"login failed: credentials must be ASCII ({e})") from e
        except OSError as e:
            _logout_quietly(conn)
            raise MailConnectionError(f"connecting to {self.address}: {e}") from e

        logger.debug("Logged in to %s as %s", self.address, creds.username)
        self._conn = conn
        return self

    def close(self) -> None:
        """Log out and release the session. Safe to call repeatedly."""
        conn, self._conn = self._conn, None
        self.selected = None
        if conn is not None:
            _logout_quietly(conn)

    def _command(self, what: str, func: Callable, *args) -> tuple[str, list]:
        try:
            typ, data = func(*args)
        except imaplib.IMAP4.abort as e:
            raise MailConnectionError(f"{what}: {e}") from e
        except imaplib.IMAP4.error as e:
            raise MailProtocolError(f"{what}: {e}") from e
        except UnicodeEncodeError as e:
            raise MailProtocolError(f"{what}: argument is not ASCII ({e})") from e
        except OSError as e:
            raise MailConnectionError(f"{what}: {e}") from e
        return typ, data

    def _check(self, what: str, typ: str, data: list) -> None:
        if typ != "OK":
            raise MailProtocolError(f"{what}: {_describe(data)}")

    def list_mailboxes(self) -> list[str]:
        """List all mailbox names visible to the account."""
        typ, data = self._command("listing mailboxes", self.conn.list)
        self._check("listing mailboxes", typ, data)
        names = []
        for item in data:
            name = parse_list_item(item)
            if name is not None:
                names.append(name)
        return names

    def select_mailbox(self, name: str) -> MailboxInfo:
        """Select a mailbox read-only; return its size and UIDVALIDITY."""
        typ, data = self._command(
            f"selecting mailbox {name}", self.conn.select, quote_mailbox(name), True
        )
        if typ != "OK":
            raise MailboxNotFound(name, _describe(data))

        try:
            num_messages = int(data[0])
        except (TypeError, ValueError, IndexError):
            num_messages = 0

        uid_validity = 0
        _, validity = self.conn.response("UIDVALIDITY")
        for value in validity or []:
            try:
                uid_validity = int(value)
                break
            except (TypeError, ValueError):
                continue

        self.selected = MailboxInfo(name=name, num_messages=num_messages, uid_validity=uid_validity)
        logger.debug(
            "Selected %s: %d messages, UIDVALIDITY %d", name, num_messages, uid_validity
        )
        return self.selected

    def _envelopes(self, data: list) -> list[Envelope]:
        envelopes = []
        for uid, header_bytes in parse_fetch_response(data):
            envelope = parse_envelope(uid, header_bytes)
            if envelope is None:
                logger.debug("Skipping UID %d: no envelope", uid)
                continue
            envelopes.append(envelope)
        return envelopes

    def fetch_envelopes(self, start: int, end: int) -> list[Envelope]:
        """Fetch envelopes for sequence numbers start..end (1-based, inclusive)."""
        if start < 1 or end < start:
            return []
        what = f"fetching envelopes {start}:{end}"
        typ, data = self._command(what, self.conn.fetch, f"{start}:{end}", ENVELOPE_FETCH)
        self._check(what, typ, data)
        return self._envelopes(data)

    def fetch_envelopes_by_uid(self, uids: Iterable[int]) -> list[Envelope]:
        """Fetch envelopes for explicit UIDs; messages that no longer exist are omitted."""
        wanted = sorted({int(uid) for uid in uids})
        envelopes: list[Envelope] = []
        for batch in _chunked(wanted, self.batch_size):
            what = "fetching envelopes by UID"
            typ, data = self._command(
                what, self.conn.uid, "FETCH", format_uid_set(batch), ENVELOPE_FETCH
            )
            self._check(what, typ, data)
            members = set(batch)
            envelopes.extend(e for e in self._envelopes(data) if e.uid in members)
        return envelopes

    def search_uids_since(self, last_uid: int) -> list[int]:
        """UIDs strictly greater than last_uid.

        'n:*' always matches the highest UID even when it is below n, so the
        result is filtered client-side.
        """
        what = "searching for new UIDs"
        typ, data = self._command(what, self.conn.uid, "SEARCH", None, f"UID {last_uid + 1}:*")
        self._check(what, typ, data)
        return [uid for uid in parse_uid_list(data) if uid > last_uid]

    def fetch_new_envelopes(self, last_uid: int) -> list[Envelope]:
        """Fetch envelopes for every message with UID > last_uid."""
        uids = self.search_uids_since(last_uid)
        if not uids:
            return []
        return self.fetch_envelopes_by_uid(uids)

    def fetch_message(self, uid: int) -> tuple[bytes, Envelope]:
        """Fetch the full RFC 822 message and its envelope for a UID."""
        what = f"fetching message UID {uid}"
        typ, data = self._command(what, self.conn.uid, "FETCH", str(uid), MESSAGE_FETCH)
        self._check(what, typ, data)
        for msg_uid, raw in parse_fetch_response(data):
            if msg_uid == uid:
                envelope = parse_envelope(uid, raw) or Envelope(uid=uid)
                return raw, envelope
        raise MessageNotFound(uid)

    def __enter__(self):
        if not self.connected:
            self.connect()
        return self

    def __exit__(self, *args):
        self.close()


def _logout_quietly(conn: imaplib.IMAP4) -> None:
    try:
        conn.logout()
    except (imaplib.IMAP4.error, OSError) as e:
        logger.debug("Ignoring error during logout: %s", e)


def connect(
    credentials: MailCredentials,
    timeout: float | None = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> IMAPClient:
    """Open an authenticated session."""
    return IMAPClient(credentials, timeout=timeout, batch_size=batch_size).connect()


def check_connection(credentials: MailCredentials, timeout: float | None = None) -> list[str]:
    """Connect, list mailboxes and disconnect. Returns the mailbox names."""
    with connect(credentials, timeout=timeout) as client:
        return client.list_mailboxes()
