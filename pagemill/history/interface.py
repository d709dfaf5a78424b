"""The narrow history interface the batch orchestrator talks to.

Any backend (the bundled SQLite store or a test fake) can be
plugged in by subclassing :class:`HistoryStore`.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, List, Optional, Sequence

from pagemill.history.models import ExtractionSession, UrlRecord


class HistoryStore(ABC):
    @abstractmethod
    def create_session(
        self,
        user_id: str,
        source_url: str,
        session_name: Optional[str] = None,
        total_urls: int = 0,
        chunk_size: int = 25,
        max_retries: int = 3,
    ) -> ExtractionSession:
        """Open a new session in ``processing`` state."""

    @abstractmethod
    def create_url_records(
        self, session_id: str, urls: Sequence[str], chunk_number: int = 1
    ) -> List[UrlRecord]:
        """Insert one ``pending`` record per URL, numbered from 1 within the chunk."""

    @abstractmethod
    def update_url_record(self, record_id: str, **fields: Any) -> UrlRecord:
        """Update ``status, http_status, size_bytes, processing_time_ms,
        error_code, error_message, title, description`` on a record."""

    @abstractmethod
    def update_session(
        self,
        session_id: str,
        status: Optional[str] = None,
        processing_time_ms: Optional[int] = None,
        error_message: Optional[str] = None,
        completed_at: Optional[int] = None,
    ) -> ExtractionSession:
        ...

    @abstractmethod
    def list_retryable_urls(
        self,
        user_id: str,
        session_id: Optional[str] = None,
        error_code: Optional[str] = None,
        min_retry_interval_ms: int = 300000,
    ) -> List[UrlRecord]:
        """Failed records still under their session's retry budget."""

    @abstractmethod
    def get_session(self, session_id: str, user_id: Optional[str] = None) -> Optional[ExtractionSession]:
        ...

    @abstractmethod
    def list_session_records(self, session_id: str) -> List[UrlRecord]:
        ...

    @abstractmethod
    def list_sessions(
        self,
        user_id: str,
        limit: int = 20,
        offset: int = 0,
        status: Optional[str] = None,
    ) -> List[ExtractionSession]:
        ...

    @abstractmethod
    def mark_retried(self, record_ids: Sequence[str]) -> int:
        """Increment ``retry_count`` and stamp ``last_retry_at``; return rows touched."""
