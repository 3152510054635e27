"""Shared fixtures: an in-memory mail server and temp cache/config dirs."""

from dataclasses import dataclass, field

import pytest

from lark_cli.errors import MailboxNotFound, MailConnectionError, MessageNotFound
from lark_cli.mail.cache import MailCache
from lark_cli.mail.imap import Envelope, MailboxInfo


@dataclass
class FakeMailbox:
    uid_validity: int
    messages: list[Envelope] = field(default_factory=list)  # sequence order

    def add(self, uid: int, **kwargs) -> Envelope:
        env = Envelope(uid=uid, **kwargs)
        self.messages.append(env)
        return env


class FakeMailServer:
    """Mailboxes keyed by name; hands out clients that record their calls."""

    def __init__(self):
        self.mailboxes: dict[str, FakeMailbox] = {}
        self.calls: list[tuple] = []
        self.fail_on: str | None = None
        self.raw: dict[int, bytes] = {}

    def mailbox(self, name: str = "INBOX", uid_validity: int = 1) -> FakeMailbox:
        mb = FakeMailbox(uid_validity=uid_validity)
        self.mailboxes[name] = mb
        return mb

    def client(self) -> "FakeIMAPClient":
        return FakeIMAPClient(self)


class FakeIMAPClient:
    """Implements the IMAPClient methods the sync engine and CLI use."""

    def __init__(self, server: FakeMailServer):
        self.server = server
        self.selected: FakeMailbox | None = None
        self.closed = False

    def _record(self, *call):
        self.server.calls.append(call)
        if self.server.fail_on == call[0]:
            raise MailConnectionError(f"{call[0]}: connection reset")

    def list_mailboxes(self) -> list[str]:
        self._record("list")
        return list(self.server.mailboxes)

    def select_mailbox(self, name: str) -> MailboxInfo:
        self._record("select", name)
        if name not in self.server.mailboxes:
            raise MailboxNotFound(name)
        self.selected = self.server.mailboxes[name]
        return MailboxInfo(
            name=name,
            num_messages=len(self.selected.messages),
            uid_validity=self.selected.uid_validity,
        )

    def fetch_envelopes(self, start: int, end: int) -> list[Envelope]:
        self._record("fetch", start, end)
        return list(self.selected.messages[start - 1:end])

    def fetch_new_envelopes(self, last_uid: int) -> list[Envelope]:
        self._record("fetch_new", last_uid)
        return [env for env in self.selected.messages if env.uid > last_uid]

    def fetch_message(self, uid: int) -> tuple[bytes, Envelope]:
        self._record("fetch_message", uid)
        for env in self.selected.messages:
            if env.uid == uid:
                return self.server.raw.get(uid, b""), env
        raise MessageNotFound(uid)

    def close(self):
        self.closed = True

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()


@pytest.fixture
def server():
    return FakeMailServer()


@pytest.fixture
def cache_path(tmp_path):
    return tmp_path / "mail_cache.db"


@pytest.fixture
def cache(cache_path):
    with MailCache(cache_path) as c:
        yield c


@pytest.fixture
def config_dir(tmp_path, monkeypatch):
    """Point the config dir (and cache path) at a temp directory."""
    path = tmp_path / "config"
    monkeypatch.setenv("LARK_CONFIG_DIR", str(path))
    monkeypatch.delenv("LARK_CAL_CONFIG_DIR", raising=False)
    monkeypatch.delenv("LARK_MAIL_CACHE_PATH", raising=False)
    return path
