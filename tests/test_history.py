"""Tests for pagemill.history (schema, migrations and the SQLite store).

Mocking strategy:
- Every test gets a fresh SQLite file under ``tmp_path``.
- ``Clock`` replaces ``time.time`` so retry-interval filtering is
  deterministic.
"""

from __future__ import annotations

import sqlite3

import pytest

from pagemill.history import SqliteHistoryStore, get_connection, init_db
from pagemill.history.migrations import MIGRATIONS, current_version, migrate


class Clock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
def conn(tmp_path):
    c = get_connection(tmp_path / "history.db")
    yield c
    c.close()


@pytest.fixture()
def clock() -> Clock:
    return Clock()


@pytest.fixture()
def store(conn: sqlite3.Connection, clock: Clock) -> SqliteHistoryStore:
    return SqliteHistoryStore(conn=conn, clock=clock)


def _table_names(conn: sqlite3.Connection) -> set:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'").fetchall()
    return {r[0] for r in rows}


# ---------------------------------------------------------------------------
# Schema and migrations
# ---------------------------------------------------------------------------

class TestSchema:
    def test_tables_created(self, store: SqliteHistoryStore) -> None:
        names = _table_names(store.conn)
        assert {"extraction_sessions", "url_records", "schema_version"} <= names

    def test_init_db_idempotent(self, conn: sqlite3.Connection) -> None:
        init_db(conn)
        init_db(conn)
        assert "url_records" in _table_names(conn)

    def test_migrate_records_version(self, conn: sqlite3.Connection) -> None:
        init_db(conn)
        assert current_version(conn) == 0
        migrate(conn)
        migrate(conn)
        assert current_version(conn) == MIGRATIONS[-1][0]
        count = conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
        assert count == len(MIGRATIONS)

    def test_foreign_keys_enforced(self, store: SqliteHistoryStore) -> None:
        with pytest.raises(sqlite3.IntegrityError):
            store.create_url_records("missing-session", ["https://a.com"])

    def test_file_database_creates_parent(self, tmp_path) -> None:
        path = tmp_path / "nested" / "history.db"
        file_store = SqliteHistoryStore(db_path=path)
        file_store.create_session("u", "https://a.com")
        file_store.close()
        assert path.exists()


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------

class TestSessions:
    def test_create_defaults(self, store: SqliteHistoryStore, clock: Clock) -> None:
        session = store.create_session("user-1", "https://example.com", total_urls=5)
        assert session.status == "processing"
        assert session.session_name == "Extraction - https://example.com"
        assert session.total_urls == 5
        assert session.successful_urls == 0
        assert session.created_at == int(clock.now)
        assert session.started_at == int(clock.now)
        assert session.completed_at is None

    def test_custom_name_and_knobs(self, store: SqliteHistoryStore) -> None:
        session = store.create_session(
            "user-1", "https://example.com", session_name="Docs", chunk_size=10, max_retries=1
        )
        assert session.session_name == "Docs"
        assert session.chunk_size == 10
        assert session.max_retries == 1

    def test_update_keeps_unset_fields(self, store: SqliteHistoryStore, clock: Clock) -> None:
        session = store.create_session("user-1", "https://example.com")
        clock.now += 30
        updated = store.update_session(session.id, status="failed", error_message="boom")
        assert updated.status == "failed"
        assert updated.error_message == "boom"
        assert updated.completed_at == int(clock.now)

        again = store.update_session(session.id, processing_time_ms=1200)
        assert again.status == "failed"
        assert again.error_message == "boom"
        assert again.processing_time_ms == 1200

    def test_update_rejects_unknown_status(self, store: SqliteHistoryStore) -> None:
        session = store.create_session("user-1", "https://example.com")
        with pytest.raises(ValueError, match="Unknown session status"):
            store.update_session(session.id, status="exploded")

    def test_update_missing_session(self, store: SqliteHistoryStore) -> None:
        with pytest.raises(ValueError, match="Session not found"):
            store.update_session("nope", status="completed")

    def test_get_scoped_to_user(self, store: SqliteHistoryStore) -> None:
        session = store.create_session("user-1", "https://example.com")
        assert store.get_session(session.id, user_id="user-1") is not None
        assert store.get_session(session.id, user_id="user-2") is None
        assert store.get_session("nope") is None

    def test_list_newest_first_with_paging(self, store: SqliteHistoryStore, clock: Clock) -> None:
        ids = []
        for i in range(3):
            clock.now += 1
            ids.append(store.create_session("user-1", f"https://example.com/{i}").id)
        store.create_session("user-2", "https://other.com")

        listed = store.list_sessions("user-1")
        assert [s.id for s in listed] == list(reversed(ids))
        assert [s.id for s in store.list_sessions("user-1", limit=1, offset=1)] == [ids[1]]

    def test_list_filters_status(self, store: SqliteHistoryStore) -> None:
        done = store.create_session("user-1", "https://a.com")
        store.create_session("user-1", "https://b.com")
        store.update_session(done.id, status="completed")
        assert [s.id for s in store.list_sessions("user-1", status="completed")] == [done.id]

    def test_to_dict_camel_case(self, store: SqliteHistoryStore) -> None:
        session = store.create_session("user-1", "https://example.com", total_urls=4)
        payload = session.to_dict()
        assert payload["userId"] == "user-1"
        assert payload["sourceUrl"] == "https://example.com"
        assert payload["successRatePercent"] == 0.0


# ---------------------------------------------------------------------------
# URL records
# ---------------------------------------------------------------------------

class TestUrlRecords:
    def test_create_sequence_numbers(self, store: SqliteHistoryStore) -> None:
        session = store.create_session("user-1", "https://example.com")
        records = store.create_url_records(session.id, [" https://a.com ", "https://b.com"], chunk_number=2)
        assert [(r.url, r.chunk_number, r.sequence_number) for r in records] == [
            ("https://a.com", 2, 1),
            ("https://b.com", 2, 2),
        ]
        assert all(r.status == "pending" and r.retry_count == 0 for r in records)

    def test_create_empty_list(self, store: SqliteHistoryStore) -> None:
        session = store.create_session("user-1", "https://example.com")
        assert store.create_url_records(session.id, []) == []

    def test_create_rejects_blank_url(self, store: SqliteHistoryStore) -> None:
        session = store.create_session("user-1", "https://example.com")
        with pytest.raises(ValueError, match="non-empty"):
            store.create_url_records(session.id, ["https://a.com", "  "])
        assert store.list_session_records(session.id) == []

    def test_update_success_fields(self, store: SqliteHistoryStore, clock: Clock) -> None:
        session = store.create_session("user-1", "https://example.com")
        record = store.create_url_records(session.id, ["https://a.com"])[0]
        processing = store.update_url_record(record.id, status="processing")
        assert processing.processed_at is None

        clock.now += 5
        done = store.update_url_record(
            record.id, status="success", http_status=200, size_bytes=512, title="A", description=None
        )
        assert done.status == "success"
        assert done.http_status == 200
        assert done.size_bytes == 512
        assert done.title == "A"
        assert done.processed_at == int(clock.now)

    def test_update_validation(self, store: SqliteHistoryStore) -> None:
        session = store.create_session("user-1", "https://example.com")
        record = store.create_url_records(session.id, ["https://a.com"])[0]
        with pytest.raises(ValueError, match="Cannot update field"):
            store.update_url_record(record.id, retry_count=5)
        with pytest.raises(ValueError, match="Unknown record status"):
            store.update_url_record(record.id, status="done")
        with pytest.raises(ValueError, match="not found"):
            store.update_url_record("missing", status="failed")

    def test_trigger_maintains_session_counts(self, store: SqliteHistoryStore) -> None:
        session = store.create_session("user-1", "https://example.com", total_urls=3)
        a, b, c = store.create_url_records(session.id, ["https://a.com", "https://b.com", "https://c.com"])
        store.update_url_record(a.id, status="success")
        store.update_url_record(b.id, status="failed", error_code="TIMEOUT")
        store.update_url_record(c.id, status="processing")

        current = store.get_session(session.id)
        assert current.successful_urls == 1
        assert current.failed_urls == 1
        assert current.success_rate == pytest.approx(33.33)

        store.update_url_record(b.id, status="success")
        current = store.get_session(session.id)
        assert (current.successful_urls, current.failed_urls) == (2, 0)

    def test_list_session_records_ordered(self, store: SqliteHistoryStore) -> None:
        session = store.create_session("user-1", "https://example.com")
        store.create_url_records(session.id, ["https://c.com"], chunk_number=2)
        store.create_url_records(session.id, ["https://a.com", "https://b.com"], chunk_number=1)
        urls = [r.url for r in store.list_session_records(session.id)]
        assert urls == ["https://a.com", "https://b.com", "https://c.com"]

    def test_record_to_dict(self, store: SqliteHistoryStore) -> None:
        session = store.create_session("user-1", "https://example.com")
        record = store.create_url_records(session.id, ["https://a.com"])[0]
        payload = record.to_dict()
        assert payload["sessionId"] == session.id
        assert payload["sequenceNumber"] == 1
        assert payload["retryCount"] == 0


# ---------------------------------------------------------------------------
# Retry bookkeeping
# ---------------------------------------------------------------------------

def _failed_session(store: SqliteHistoryStore, user: str = "user-1", max_retries: int = 3, codes=("TIMEOUT",)):
    session = store.create_session(user, "https://example.com", max_retries=max_retries)
    urls = [f"https://example.com/{i}" for i in range(len(codes))]
    records = store.create_url_records(session.id, urls)
    for record, code in zip(records, codes):
        store.update_url_record(record.id, status="failed", error_code=code, error_message="x")
    return session, records


class TestRetryable:
    def test_failed_records_are_retryable(self, store: SqliteHistoryStore) -> None:
        session, records = _failed_session(store, codes=("TIMEOUT", "DNS_ERROR"))
        ok = store.create_url_records(session.id, ["https://example.com/ok"])[0]
        store.update_url_record(ok.id, status="success")

        retryable = store.list_retryable_urls("user-1")
        assert {r.id for r in retryable} == {r.id for r in records}
        assert store.list_retryable_urls("user-2") == []

    def test_filters(self, store: SqliteHistoryStore) -> None:
        first, _ = _failed_session(store, codes=("TIMEOUT", "DNS_ERROR"))
        second, _ = _failed_session(store, codes=("TIMEOUT",))

        by_code = store.list_retryable_urls("user-1", error_code="DNS_ERROR")
        assert [r.error_code for r in by_code] == ["DNS_ERROR"]
        by_session = store.list_retryable_urls("user-1", session_id=second.id)
        assert {r.session_id for r in by_session} == {second.id}

    def test_min_interval_between_retries(self, store: SqliteHistoryStore, clock: Clock) -> None:
        _, records = _failed_session(store)
        assert store.mark_retried([records[0].id]) == 1

        assert store.list_retryable_urls("user-1", min_retry_interval_ms=300000) == []
        clock.now += 299
        assert store.list_retryable_urls("user-1", min_retry_interval_ms=300000) == []
        clock.now += 1
        again = store.list_retryable_urls("user-1", min_retry_interval_ms=300000)
        assert [r.retry_count for r in again] == [1]

    def test_max_retries_exhausted(self, store: SqliteHistoryStore) -> None:
        _, records = _failed_session(store, max_retries=2)
        store.mark_retried([records[0].id])
        store.mark_retried([records[0].id])
        assert store.list_retryable_urls("user-1", min_retry_interval_ms=0) == []

    def test_zero_max_retries_means_unlimited(self, store: SqliteHistoryStore) -> None:
        _, records = _failed_session(store, max_retries=0)
        for _ in range(5):
            store.mark_retried([records[0].id])
        assert len(store.list_retryable_urls("user-1", min_retry_interval_ms=0)) == 1

    def test_mark_retried(self, store: SqliteHistoryStore, clock: Clock) -> None:
        session, records = _failed_session(store, codes=("TIMEOUT", "TIMEOUT"))
        assert store.mark_retried([]) == 0
        assert store.mark_retried([r.id for r in records]) == 2
        updated = store.list_session_records(session.id)
        assert all(r.retry_count == 1 and r.last_retry_at == int(clock.now) for r in updated)
