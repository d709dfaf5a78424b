"""History database initialisation and migration helpers.

``init_db(conn)`` is idempotent and safe to call on an existing database.
``migrate(conn)`` runs incremental schema changes tracked in a version table.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import List, Optional, Tuple

from pagemill.config import settings

# (version, sql) pairs applied in order by migrate().
MIGRATIONS: List[Tuple[int, str]] = [
    (1, "CREATE INDEX IF NOT EXISTS idx_records_retry ON url_records(status, last_retry_at)"),
]


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def init_db(conn: sqlite3.Connection, schema_path: Optional[Path] = None) -> None:
    """Create all tables, indexes and triggers.

    Every DDL statement uses ``IF NOT EXISTS`` so calling this repeatedly on
    the same database is safe.

    Args:
        conn: An open, configured SQLite connection.
        schema_path: Override the bundled ``schema.sql``.
    """
    sql = (schema_path or settings.schema_path).read_text(encoding="utf-8")
    # executescript() handles the BEGIN…END trigger body and issues an
    # implicit COMMIT first, which is fine for DDL-only scripts.
    conn.executescript(sql)
    _ensure_version_table(conn)


def _ensure_version_table(conn: sqlite3.Connection) -> None:
    with conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_version (
                version    INTEGER PRIMARY KEY,
                applied_at INTEGER DEFAULT (CAST(strftime('%s', 'now') AS INTEGER))
            )
            """
        )


def current_version(conn: sqlite3.Connection) -> int:
    """Return the highest applied migration version (0 if none applied)."""
    row = conn.execute(
        "SELECT COALESCE(MAX(version), 0) FROM schema_version"
    ).fetchone()
    return row[0] if row else 0


def migrate(conn: sqlite3.Connection) -> None:
    """Apply every entry of ``MIGRATIONS`` newer than the recorded version."""
    applied = current_version(conn)
    for version, sql in MIGRATIONS:
        if version > applied:
            with conn:
                conn.execute(sql)
                conn.execute(
                    "INSERT INTO schema_version(version) VALUES (?)", (version,)
                )
