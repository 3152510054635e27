"""Tests for the mailbox sync engine."""

import pytest

from lark_cli.errors import MailboxNotFound, MailConnectionError, SyncInProgressError
from lark_cli.mail.cache import MailCache
from lark_cli.mail.imap import Envelope
from lark_cli.mail.lock import MailboxLock
from lark_cli.mail.sync import (
    EMPTY,
    FULL,
    INCREMENTAL,
    MailSync,
    fetch_all_envelopes,
    iter_sequence_batches,
)

from conftest import FakeMailServer

DAY = 86400
BASE = 1_700_000_000


def add_messages(mailbox, uids):
    for uid in uids:
        mailbox.add(
            uid,
            message_id=f"msg{uid}@example.com",
            date=BASE + uid * DAY,
            from_addr=f"user{uid}@example.com",
            subject=f"Message {uid}",
        )


@pytest.fixture
def engine(cache, server, tmp_path):
    return MailSync(cache, server.client, lock_dir=tmp_path / "locks", batch_size=100, lock_timeout=0)


class TestBatches:
    def test_single_batch(self):
        assert iter_sequence_batches(3, 100) == [(1, 3)]

    def test_batches_run_backwards(self):
        assert iter_sequence_batches(250, 100) == [(151, 250), (51, 150), (1, 50)]

    def test_exact_multiple(self):
        assert iter_sequence_batches(200, 100) == [(101, 200), (1, 100)]

    def test_empty(self):
        assert iter_sequence_batches(0, 100) == []

    def test_fetch_all_reports_progress(self, server):
        mb = server.mailbox()
        add_messages(mb, range(1, 251))
        client = server.client()
        client.select_mailbox("INBOX")
        seen = []
        envelopes = fetch_all_envelopes(client, 250, 100, progress=lambda done, total: seen.append((done, total)))
        assert len(envelopes) == 250
        assert seen == [(100, 250), (200, 250), (250, 250)]
        fetches = [c for c in server.calls if c[0] == "fetch"]
        assert fetches == [("fetch", 151, 250), ("fetch", 51, 150), ("fetch", 1, 50)]


class TestScenarios:
    def test_initial_then_up_to_date(self, engine, server, cache):
        """Empty cache, 3 messages: full sync, then nothing new."""
        add_messages(server.mailbox(uid_validity=7), [1, 2, 3])

        result = engine.sync("INBOX")
        assert result.new_messages == 3
        assert result.total_cached == 3
        assert result.mode == FULL
        assert result.message == "synced 3 new messages"

        result = engine.sync("INBOX")
        assert result.new_messages == 0
        assert result.total_cached == 3
        assert result.mode == INCREMENTAL
        assert result.message == "already up to date"

        state = cache.get_mailbox_state("INBOX")
        assert state.uid_validity == 7
        assert state.last_uid == 3
        assert state.last_sync is not None

    def test_incremental_new_message(self, engine, server, cache):
        mb = server.mailbox()
        add_messages(mb, [1, 2, 3])
        engine.sync("INBOX")

        add_messages(mb, [4])
        result = engine.sync("INBOX")
        assert result.new_messages == 1
        assert result.total_cached == 4
        assert cache.get_mailbox_state("INBOX").last_uid == 4
        assert ("fetch_new", 3) in server.calls

    def test_uid_validity_change(self, engine, server, cache):
        cache.update_mailbox_state("INBOX", 100, 5)
        cache.insert_envelopes("INBOX", [Envelope(uid=u, subject=f"old {u}") for u in range(1, 6)])

        add_messages(server.mailbox(uid_validity=200), [1, 2])
        result = engine.sync("INBOX")

        assert result.invalidated
        assert result.mode == FULL
        assert result.new_messages == 2
        assert result.total_cached == 2
        assert "uid validity changed" in result.message
        state = cache.get_mailbox_state("INBOX")
        assert state.uid_validity == 200
        assert state.last_uid == 2
        assert cache.get_uids("INBOX") == {1, 2}
        assert cache.get_envelope("INBOX", 1).subject == "Message 1"


class TestEmptyMailbox:
    def test_new_empty_mailbox(self, engine, server, cache):
        server.mailbox(uid_validity=3)
        result = engine.sync("INBOX")
        assert result.mode == EMPTY
        assert result.new_messages == 0
        assert result.total_cached == 0
        assert result.message == "mailbox is empty"
        state = cache.get_mailbox_state("INBOX")
        assert state.uid_validity == 3
        assert state.last_uid == 0

    def test_emptied_mailbox_keeps_checkpoint(self, engine, server, cache):
        mb = server.mailbox()
        add_messages(mb, [1, 2, 3])
        engine.sync("INBOX")

        mb.messages.clear()
        result = engine.sync("INBOX")
        assert result.mode == EMPTY
        assert cache.get_mailbox_state("INBOX").last_uid == 3

    def test_empty_after_invalidation_clears(self, engine, server, cache):
        cache.update_mailbox_state("INBOX", 1, 9)
        cache.insert_envelopes("INBOX", [Envelope(uid=9)])
        server.mailbox(uid_validity=2)

        result = engine.sync("INBOX")
        assert result.invalidated
        assert result.total_cached == 0
        state = cache.get_mailbox_state("INBOX")
        assert (state.uid_validity, state.last_uid) == (2, 0)


class TestProperties:
    def test_checkpoint_never_decreases(self, engine, server, cache):
        mb = server.mailbox()
        add_messages(mb, [1, 2, 3])
        engine.sync("INBOX")

        # Highest message expunged on the server; IMAP n:* still matches UID 2
        del mb.messages[-1]
        engine.sync("INBOX")
        assert cache.get_mailbox_state("INBOX").last_uid == 3

        add_messages(mb, [10])
        engine.sync("INBOX")
        assert cache.get_mailbox_state("INBOX").last_uid == 10

    def test_sparse_uids(self, engine, server, cache):
        add_messages(server.mailbox(), [5, 17, 230])
        result = engine.sync("INBOX")
        assert result.new_messages == 3
        assert cache.get_mailbox_state("INBOX").last_uid == 230

    def test_full_and_incremental_agree(self, tmp_path):
        full_server = FakeMailServer()
        add_messages(full_server.mailbox(), range(1, 8))
        with MailCache(tmp_path / "full.db") as full_cache:
            MailSync(full_cache, full_server.client, batch_size=3).sync("INBOX")
            full_rows = full_cache.search("INBOX").results

        inc_server = FakeMailServer()
        mb = inc_server.mailbox()
        with MailCache(tmp_path / "inc.db") as inc_cache:
            engine = MailSync(inc_cache, inc_server.client, batch_size=3)
            add_messages(mb, range(1, 3))
            engine.sync("INBOX")
            add_messages(mb, range(3, 6))
            engine.sync("INBOX")
            add_messages(mb, range(6, 8))
            engine.sync("INBOX")
            inc_rows = inc_cache.search("INBOX").results

        assert {e.uid for e in full_rows} == set(range(1, 8))
        assert sorted(full_rows, key=lambda e: e.uid) == sorted(inc_rows, key=lambda e: e.uid)

    def test_network_failure_leaves_cache_untouched(self, engine, server, cache):
        mb = server.mailbox()
        add_messages(mb, [1, 2])
        engine.sync("INBOX")
        before = cache.get_mailbox_state("INBOX")

        add_messages(mb, [3])
        server.fail_on = "fetch_new"
        with pytest.raises(MailConnectionError):
            engine.sync("INBOX")

        assert cache.get_mailbox_state("INBOX") == before
        assert cache.get_uids("INBOX") == {1, 2}

    def test_failed_resync_keeps_old_epoch(self, engine, server, cache):
        cache.update_mailbox_state("INBOX", 100, 2)
        cache.insert_envelopes("INBOX", [Envelope(uid=1), Envelope(uid=2)])
        add_messages(server.mailbox(uid_validity=200), [1])
        server.fail_on = "fetch"

        with pytest.raises(MailConnectionError):
            engine.sync("INBOX")

        assert cache.get_mailbox_state("INBOX").uid_validity == 100
        assert cache.count("INBOX") == 2

    def test_unknown_mailbox(self, engine, server, cache):
        with pytest.raises(MailboxNotFound, match="mailbox not found: Nope"):
            engine.sync("Nope")
        assert cache.get_mailbox_state("Nope") is None

    def test_mailboxes_are_independent(self, engine, server, cache):
        add_messages(server.mailbox("INBOX"), [1, 2])
        add_messages(server.mailbox("Archive", uid_validity=9), [1])
        engine.sync("INBOX")
        engine.sync("Archive")
        assert cache.count("INBOX") == 2
        assert cache.count("Archive") == 1

    def test_client_closed(self, cache, server):
        clients = []

        def factory():
            clients.append(server.client())
            return clients[-1]

        add_messages(server.mailbox(), [1])
        MailSync(cache, factory).sync("INBOX")
        assert clients and all(c.closed for c in clients)


class TestLocking:
    def test_sync_in_progress(self, engine, server, tmp_path):
        add_messages(server.mailbox(), [1])
        with MailboxLock(tmp_path / "locks", "INBOX"):
            with pytest.raises(SyncInProgressError, match="INBOX"):
                engine.sync("INBOX")
        assert not server.calls

    def test_lock_released_after_sync(self, engine, server, tmp_path):
        add_messages(server.mailbox(), [1])
        engine.sync("INBOX")
        lock = MailboxLock(tmp_path / "locks", "INBOX")
        assert lock.acquire(wait=False)
        lock.release()

    def test_other_mailbox_not_blocked(self, engine, server, tmp_path):
        add_messages(server.mailbox("Archive"), [1])
        with MailboxLock(tmp_path / "locks", "INBOX"):
            assert engine.sync("Archive").new_messages == 1
