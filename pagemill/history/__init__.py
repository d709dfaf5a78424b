"""Extraction-history persistence.

Public re-exports so callers can write::

    from pagemill.history import HistoryStore, SqliteHistoryStore
"""

from pagemill.history.connection import get_connection
from pagemill.history.interface import HistoryStore
from pagemill.history.migrations import init_db
from pagemill.history.models import ExtractionSession, UrlRecord
from pagemill.history.sqlite_store import SqliteHistoryStore

__all__ = [
    "get_connection",
    "init_db",
    "HistoryStore",
    "SqliteHistoryStore",
    "ExtractionSession",
    "UrlRecord",
]
