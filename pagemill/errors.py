"""Exception hierarchy shared by every pagemill component.

Each exception carries a machine-readable ``error_type`` that ends up in the
structured error payload returned to callers::

    {"type": ..., "message": ..., "url": ..., "requestId": ..., "timestamp": ...}
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class PagemillError(Exception):
    """Base class for all pagemill errors."""

    error_type = "UNKNOWN"

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    def to_payload(self, url: Optional[str] = None, request_id: Optional[str] = None) -> Dict[str, Any]:
        return {
            "type": self.error_type,
            "message": self.message or self.__class__.__name__,
            "url": url,
            "requestId": request_id,
            "timestamp": utc_timestamp(),
        }


class ConfigError(PagemillError, ValueError):
    error_type = "CONFIG_ERROR"


# ---------------------------------------------------------------------------
# URL validation
# ---------------------------------------------------------------------------

class ValidationError(PagemillError):
    error_type = "VALIDATION_ERROR"


class InvalidFormat(ValidationError):
    error_type = "INVALID_FORMAT"


class DisallowedProtocol(ValidationError):
    error_type = "DISALLOWED_PROTOCOL"


class InternalNetworkBlocked(ValidationError):
    error_type = "INTERNAL_NETWORK_BLOCKED"


class TooLong(ValidationError):
    error_type = "TOO_LONG"


# ---------------------------------------------------------------------------
# Fetching
# ---------------------------------------------------------------------------

class NetworkError(PagemillError):
    """Transport failure; ``category`` is one of the ``categorize_error`` values."""

    def __init__(self, message: str, category: str = "UNKNOWN") -> None:
        super().__init__(message)
        self.category = category

    @property
    def error_type(self) -> str:  # type: ignore[override]
        return self.category


class HttpError(PagemillError):
    error_type = "HTTP_ERROR"

    def __init__(self, status: int, message: str = "") -> None:
        super().__init__(message or f"HTTP {status}")
        self.status = status


class ConcurrencyLimitExceeded(PagemillError):
    error_type = "RATE_LIMIT"


class BrowserUnavailable(PagemillError):
    """The shared browser could not be launched or has crashed."""

    error_type = "BROWSER_UNAVAILABLE"


# ---------------------------------------------------------------------------
# Extraction / conversion
# ---------------------------------------------------------------------------

class ExtractionError(PagemillError):
    error_type = "EXTRACTION_ERROR"


class NoContentFound(ExtractionError):
    error_type = "NO_CONTENT_FOUND"


class ConversionError(PagemillError):
    error_type = "CONVERSION_ERROR"


# ---------------------------------------------------------------------------
# Non-fatal collaborators
# ---------------------------------------------------------------------------

class CacheError(PagemillError):
    error_type = "CACHE_ERROR"


class HistoryTrackingError(PagemillError):
    error_type = "HISTORY_TRACKING_ERROR"


# ---------------------------------------------------------------------------
# Categorisation
# ---------------------------------------------------------------------------

def categorize_error(exc: BaseException) -> str:
    """Map a transport exception to a failure category by its message text.

    Returns one of ``TIMEOUT``, ``DNS_ERROR``, ``CONNECTION_REFUSED``,
    ``HTTP_ERROR``, ``SSL_ERROR``, ``RATE_LIMIT`` or ``UNKNOWN``.
    """
    if isinstance(exc, HttpError):
        return "HTTP_ERROR"
    if isinstance(exc, ConcurrencyLimitExceeded):
        return "RATE_LIMIT"

    message = str(exc).lower()
    if "timeout" in message or "net::err_timed_out" in message:
        return "TIMEOUT"
    if "net::err_name_not_resolved" in message:
        return "DNS_ERROR"
    if "net::err_connection_refused" in message:
        return "CONNECTION_REFUSED"
    if "http 4" in message or "http 5" in message:
        return "HTTP_ERROR"
    if "ssl" in message or "certificate" in message:
        return "SSL_ERROR"
    if "maximum concurrent" in message:
        return "RATE_LIMIT"
    return "UNKNOWN"


def error_type_of(exc: BaseException) -> str:
    """Machine-readable category for any exception, pagemill or foreign."""
    if isinstance(exc, PagemillError):
        return exc.error_type
    return categorize_error(exc)
