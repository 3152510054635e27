"""Tests for offline search over the cache."""

from datetime import datetime, timezone

import pytest

from lark_cli.mail.cache import DEFAULT_SEARCH_LIMIT, SearchOptions
from lark_cli.mail.imap import Envelope
from lark_cli.mail.search import parse_date, parse_search_options, search, search_cache


def ts(y, m, d):
    return int(datetime(y, m, d, tzinfo=timezone.utc).timestamp())


@pytest.fixture
def populated(cache):
    cache.insert_envelopes("INBOX", [
        Envelope(uid=1, date=ts(2024, 1, 1), from_addr="alice@x.com", subject="Kickoff"),
        Envelope(uid=2, date=ts(2024, 1, 5), from_addr="bob@y.com", subject="Invoice #12"),
        Envelope(uid=3, date=ts(2024, 1, 3), from_addr="alice@x.com", subject="Re: Kickoff"),
        Envelope(uid=4, date=ts(2024, 1, 10), from_addr="carol@z.com", subject="100% done_now"),
        Envelope(uid=5, date=ts(2024, 1, 7), from_addr="Alice@X.com", subject="Lunch"),
    ])
    cache.update_mailbox_state("INBOX", 1, 5)
    return cache


def uids(result):
    return [e.uid for e in result.results]


class TestSearch:
    def test_from_filter_newest_first(self, populated):
        result = search(populated, "INBOX", SearchOptions(from_addr="alice", limit=10))
        assert uids(result) == [5, 3, 1]
        assert result.count == 3
        assert result.total_cached == 5

    def test_subject_case_insensitive(self, populated):
        assert uids(search(populated, "INBOX", SearchOptions(subject="KICKOFF"))) == [3, 1]

    def test_wildcards_are_literal(self, populated):
        assert uids(search(populated, "INBOX", SearchOptions(subject="0%"))) == [4]
        assert uids(search(populated, "INBOX", SearchOptions(subject="e_n"))) == [4]
        assert uids(search(populated, "INBOX", SearchOptions(subject="%"))) == [4]

    def test_date_bounds(self, populated):
        options = SearchOptions(
            since=datetime(2024, 1, 3, tzinfo=timezone.utc),
            before=datetime(2024, 1, 7, tzinfo=timezone.utc),
        )
        # since inclusive, before exclusive
        assert uids(search(populated, "INBOX", options)) == [2, 3]

    def test_limit(self, populated):
        assert uids(search(populated, "INBOX", SearchOptions(limit=2))) == [4, 5]

    def test_zero_limit_means_default(self, populated):
        populated.insert_envelopes("INBOX", [Envelope(uid=u, date=u) for u in range(100, 200)])
        result = search(populated, "INBOX", SearchOptions(limit=0))
        assert result.count == DEFAULT_SEARCH_LIMIT
        assert result.total_cached == 105

    def test_freshness(self, populated):
        result = search(populated, "INBOX")
        assert result.last_sync is not None
        assert result.freshness == "just now"

    def test_never_synced(self, cache):
        result = search(cache, "INBOX")
        assert result.last_sync is None
        assert result.freshness == "never synced"
        assert result.results == []

    def test_other_mailbox_isolated(self, populated):
        assert search(populated, "Sent", SearchOptions(from_addr="alice")).results == []

    def test_read_only_and_repeatable(self, populated):
        options = SearchOptions(from_addr="alice", limit=10)
        state = populated.get_mailbox_state("INBOX")
        first = search(populated, "INBOX", options)
        second = search(populated, "INBOX", options)
        assert first == second
        assert populated.get_mailbox_state("INBOX") == state
        assert populated.count("INBOX") == 5

    def test_to_dict(self, populated):
        d = search(populated, "INBOX", SearchOptions(from_addr="bob")).to_dict()
        assert d["mailbox"] == "INBOX"
        assert d["count"] == 1
        assert d["results"][0]["subject"] == "Invoice #12"


class TestSearchCache:
    def test_missing_file_not_created(self, tmp_path):
        path = tmp_path / "nope.db"
        result = search_cache(path, "INBOX")
        assert result.freshness == "never synced"
        assert not path.exists()

    def test_reads_file(self, populated, cache_path):
        result = search_cache(cache_path, "INBOX", SearchOptions(subject="lunch"))
        assert uids(result) == [5]


class TestParseOptions:
    def test_parse_date(self):
        assert parse_date("2024-02-29") == datetime(2024, 2, 29, tzinfo=timezone.utc)
        assert parse_date("") is None
        assert parse_date(None) is None

    @pytest.mark.parametrize("value", ["2024-13-01", "01/02/2024", "yesterday"])
    def test_invalid_date(self, value):
        with pytest.raises(ValueError, match="expected YYYY-MM-DD"):
            parse_date(value)

    def test_options(self):
        options = parse_search_options("alice", "", "2024-01-01", None, 0)
        assert options.from_addr == "alice"
        assert options.subject is None
        assert options.since == datetime(2024, 1, 1, tzinfo=timezone.utc)
        assert options.before is None
        assert options.effective_limit == DEFAULT_SEARCH_LIMIT
