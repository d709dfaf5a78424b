"""SQLite-backed :class:`HistoryStore`."""

from __future__ import annotations

import sqlite3
import threading
import uuid
from pathlib import Path
from time import time
from typing import Any, Callable, List, Optional, Sequence

from pagemill.history.connection import get_connection
from pagemill.history.interface import HistoryStore
from pagemill.history.migrations import init_db, migrate
from pagemill.history.models import (
    RECORD_STATUSES,
    SESSION_STATUSES,
    ExtractionSession,
    UrlRecord,
)

_RECORD_FIELDS = {
    "status",
    "http_status",
    "size_bytes",
    "processing_time_ms",
    "error_code",
    "error_message",
    "title",
    "description",
}


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def _row_to_session(row: sqlite3.Row) -> ExtractionSession:
    return ExtractionSession(
        id=row["id"],
        user_id=row["user_id"],
        session_name=row["session_name"],
        source_url=row["source_url"],
        total_urls=row["total_urls"],
        successful_urls=row["successful_urls"],
        failed_urls=row["failed_urls"],
        processing_time_ms=row["processing_time_ms"],
        status=row["status"],
        error_message=row["error_message"],
        chunk_size=row["chunk_size"],
        max_retries=row["max_retries"],
        created_at=row["created_at"],
        started_at=row["started_at"],
        completed_at=row["completed_at"],
        updated_at=row["updated_at"],
    )


def _row_to_record(row: sqlite3.Row) -> UrlRecord:
    return UrlRecord(
        id=row["id"],
        session_id=row["session_id"],
        url=row["url"],
        chunk_number=row["chunk_number"],
        sequence_number=row["sequence_number"],
        status=row["status"],
        http_status=row["http_status"],
        size_bytes=row["size_bytes"],
        processing_time_ms=row["processing_time_ms"],
        error_code=row["error_code"],
        error_message=row["error_message"],
        title=row["title"],
        description=row["description"],
        retry_count=row["retry_count"],
        last_retry_at=row["last_retry_at"],
        created_at=row["created_at"],
        processed_at=row["processed_at"],
        updated_at=row["updated_at"],
    )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class SqliteHistoryStore(HistoryStore):
    """History store over one SQLite connection.

    Args:
        conn: An open connection; one is created from *db_path* when omitted.
        db_path: Database file used when *conn* is not given.
        clock: Returns the current Unix time in seconds.
    """

    def __init__(
        self,
        conn: Optional[sqlite3.Connection] = None,
        db_path: Optional[Path] = None,
        clock: Callable[[], float] = time,
    ) -> None:
        self.conn = conn or get_connection(db_path)
        self._clock = clock
        self._lock = threading.RLock()
        init_db(self.conn)
        migrate(self.conn)

    def close(self) -> None:
        self.conn.close()

    def _now(self) -> int:
        return int(self._clock())

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------
    def create_session(
        self,
        user_id: str,
        source_url: str,
        session_name: Optional[str] = None,
        total_urls: int = 0,
        chunk_size: int = 25,
        max_retries: int = 3,
    ) -> ExtractionSession:
        sid = str(uuid.uuid4())
        now = self._now()
        name = session_name or f"Extraction - {source_url}"
        with self._lock, self.conn:
            self.conn.execute(
                """
                INSERT INTO extraction_sessions (
                    id, user_id, session_name, source_url, total_urls,
                    chunk_size, max_retries, status, created_at, started_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, 'processing', ?, ?, ?)
                """,
                (sid, user_id, name, source_url, total_urls, chunk_size, max_retries, now, now, now),
            )
        return self.get_session(sid)  # type: ignore[return-value]

    def update_session(
        self,
        session_id: str,
        status: Optional[str] = None,
        processing_time_ms: Optional[int] = None,
        error_message: Optional[str] = None,
        completed_at: Optional[int] = None,
    ) -> ExtractionSession:
        """Update a session; ``None`` arguments keep the stored value.

        Raises:
            ValueError: If the session does not exist or *status* is unknown.
        """
        if status is not None and status not in SESSION_STATUSES:
            raise ValueError(f"Unknown session status {status!r}")
        now = self._now()
        with self._lock, self.conn:
            cursor = self.conn.execute(
                """
                UPDATE extraction_sessions
                SET status             = COALESCE(?, status),
                    processing_time_ms = COALESCE(?, processing_time_ms),
                    error_message      = COALESCE(?, error_message),
                    completed_at       = COALESCE(?, completed_at),
                    updated_at         = ?
                WHERE id = ?
                """,
                (status, processing_time_ms, error_message, completed_at or now, now, session_id),
            )
        if cursor.rowcount == 0:
            raise ValueError(f"Session not found: {session_id!r}")
        return self.get_session(session_id)  # type: ignore[return-value]

    def get_session(self, session_id: str, user_id: Optional[str] = None) -> Optional[ExtractionSession]:
        """Fetch one session; with *user_id* only if it belongs to that user."""
        sql = "SELECT * FROM extraction_sessions WHERE id = ?"
        params: List[Any] = [session_id]
        if user_id is not None:
            sql += " AND user_id = ?"
            params.append(user_id)
        with self._lock:
            row = self.conn.execute(sql, params).fetchone()
        return _row_to_session(row) if row else None

    def list_sessions(
        self,
        user_id: str,
        limit: int = 20,
        offset: int = 0,
        status: Optional[str] = None,
    ) -> List[ExtractionSession]:
        sql = "SELECT * FROM extraction_sessions WHERE user_id = ?"
        params: List[Any] = [user_id]
        if status:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [_row_to_session(r) for r in rows]

    # ------------------------------------------------------------------
    # URL records
    # ------------------------------------------------------------------
    def create_url_records(
        self, session_id: str, urls: Sequence[str], chunk_number: int = 1
    ) -> List[UrlRecord]:
        """Insert one ``pending`` record per URL.

        Raises:
            ValueError: If any URL is empty.
        """
        if not urls:
            return []
        cleaned = [u.strip() if isinstance(u, str) else "" for u in urls]
        if any(not u for u in cleaned):
            raise ValueError("All URLs must be non-empty strings")

        now = self._now()
        ids = [str(uuid.uuid4()) for _ in cleaned]
        with self._lock, self.conn:
            self.conn.executemany(
                """
                INSERT INTO url_records (
                    id, session_id, url, chunk_number, sequence_number,
                    status, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, 'pending', ?, ?)
                """,
                [
                    (rid, session_id, url, chunk_number, position, now, now)
                    for position, (rid, url) in enumerate(zip(ids, cleaned), start=1)
                ],
            )
        return [self._get_record(rid) for rid in ids]  # type: ignore[misc]

    def update_url_record(self, record_id: str, **fields: Any) -> UrlRecord:
        """Update one or more fields on a record.

        Allowed keyword arguments: ``status``, ``http_status``, ``size_bytes``,
        ``processing_time_ms``, ``error_code``, ``error_message``, ``title``,
        ``description``.  ``None`` values are ignored.  ``processed_at`` is
        stamped when the status becomes terminal.

        Raises:
            ValueError: On an unknown field, unknown status or missing record.
        """
        updates = {}
        for key, value in fields.items():
            if key not in _RECORD_FIELDS:
                raise ValueError(f"Cannot update field {key!r}")
            if value is not None:
                updates[key] = value
        status = updates.get("status")
        if status is not None and status not in RECORD_STATUSES:
            raise ValueError(f"Unknown record status {status!r}")

        now = self._now()
        updates["updated_at"] = now
        if status in ("success", "failed", "skipped"):
            updates["processed_at"] = now

        set_clause = ", ".join(f"{col} = ?" for col in updates)
        values = list(updates.values()) + [record_id]
        with self._lock, self.conn:
            cursor = self.conn.execute(
                f"UPDATE url_records SET {set_clause} WHERE id = ?", values  # noqa: S608
            )
        if cursor.rowcount == 0:
            raise ValueError(f"URL record not found: {record_id!r}")
        return self._get_record(record_id)  # type: ignore[return-value]

    def list_session_records(self, session_id: str) -> List[UrlRecord]:
        with self._lock:
            rows = self.conn.execute(
                """
                SELECT * FROM url_records
                WHERE session_id = ?
                ORDER BY chunk_number, sequence_number
                """,
                (session_id,),
            ).fetchall()
        return [_row_to_record(r) for r in rows]

    def list_retryable_urls(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        error_code: Optional[str] = None,
        min_retry_interval_ms: int = 300000,
    ) -> List[UrlRecord]:
        cutoff = self._now() - min_retry_interval_ms // 1000
        sql = """
            SELECT r.* FROM url_records r
            JOIN extraction_sessions s ON r.session_id = s.id
            WHERE s.user_id = ?
              AND r.status = 'failed'
              AND (r.retry_count < s.max_retries OR s.max_retries = 0)
              AND (r.last_retry_at IS NULL OR r.last_retry_at <= ?)
        """
        params: List[Any] = [user_id, cutoff]
        if session_id:
            sql += " AND r.session_id = ?"
            params.append(session_id)
        if error_code:
            sql += " AND r.error_code = ?"
            params.append(error_code)
        sql += " ORDER BY r.created_at DESC, r.chunk_number, r.sequence_number"
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [_row_to_record(r) for r in rows]

    def mark_retried(self, record_ids: Sequence[str]) -> int:
        if not record_ids:
            return 0
        now = self._now()
        placeholders = ", ".join("?" for _ in record_ids)
        with self._lock, self.conn:
            cursor = self.conn.execute(
                f"""
                UPDATE url_records
                SET retry_count = retry_count + 1, last_retry_at = ?, updated_at = ?
                WHERE id IN ({placeholders})
                """,  # noqa: S608
                [now, now, *record_ids],
            )
        return cursor.rowcount

    def _get_record(self, record_id: str) -> Optional[UrlRecord]:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM url_records WHERE id = ?", (record_id,)
            ).fetchone()
        return _row_to_record(row) if row else None
