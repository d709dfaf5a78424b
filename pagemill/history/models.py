"""Dataclass models representing extraction-history rows.

These are plain Python objects, not ORM models.  The store serialises to and
from these types; ``to_dict()`` renders the camelCase shape the API returns.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

SESSION_STATUSES = ("pending", "processing", "completed", "failed", "cancelled")
RECORD_STATUSES = ("pending", "processing", "success", "failed", "skipped")


@dataclass
class ExtractionSession:
    id: str
    user_id: str
    session_name: Optional[str]
    source_url: str
    total_urls: int
    successful_urls: int
    failed_urls: int
    processing_time_ms: Optional[int]
    status: str
    error_message: Optional[str]
    chunk_size: int
    max_retries: int
    created_at: int
    started_at: Optional[int]
    completed_at: Optional[int]
    updated_at: int

    @property
    def success_rate(self) -> float:
        return round(self.successful_urls / self.total_urls * 100, 2) if self.total_urls else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "sessionName": self.session_name,
            "sourceUrl": self.source_url,
            "totalUrls": self.total_urls,
            "successfulUrls": self.successful_urls,
            "failedUrls": self.failed_urls,
            "successRatePercent": self.success_rate,
            "processingTimeMs": self.processing_time_ms,
            "status": self.status,
            "errorMessage": self.error_message,
            "chunkSize": self.chunk_size,
            "maxRetries": self.max_retries,
            "createdAt": self.created_at,
            "startedAt": self.started_at,
            "completedAt": self.completed_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class UrlRecord:
    id: str
    session_id: str
    url: str
    chunk_number: int
    sequence_number: int
    status: str
    http_status: Optional[int]
    size_bytes: Optional[int]
    processing_time_ms: Optional[int]
    error_code: Optional[str]
    error_message: Optional[str]
    title: Optional[str]
    description: Optional[str]
    retry_count: int
    last_retry_at: Optional[int]
    created_at: int
    processed_at: Optional[int]
    updated_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "url": self.url,
            "chunkNumber": self.chunk_number,
            "sequenceNumber": self.sequence_number,
            "status": self.status,
            "httpStatus": self.http_status,
            "sizeBytes": self.size_bytes,
            "processingTimeMs": self.processing_time_ms,
            "errorCode": self.error_code,
            "errorMessage": self.error_message,
            "title": self.title,
            "description": self.description,
            "retryCount": self.retry_count,
            "lastRetryAt": self.last_retry_at,
            "createdAt": self.created_at,
            "processedAt": self.processed_at,
            "updatedAt": self.updated_at,
        }
