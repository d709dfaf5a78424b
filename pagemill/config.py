"""Centralised settings for the pagemill service.

All runtime configuration is resolved here in one place.  Values can be
overridden via environment variables or a `.env` file in the project root
(loaded automatically when this module is imported).

Per-call option structs (:class:`FetchOptions`, :class:`ExtractOptions`,
:class:`ConvertOptions`, :class:`DiscoverOptions`, :class:`BatchOptions`)
live here too so every recognised knob is enumerated with its default.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from dotenv import load_dotenv

from pagemill.errors import ConfigError

# Load .env from the project root (two levels up from this file)
_env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(_env_path, override=False)

WAIT_UNTIL_EVENTS = ("load", "domcontentloaded", "networkidle", "commit")
HEADING_STYLES = ("atx", "setext")
BULLET_MARKERS = ("-", "*", "+")
LINK_STYLES = ("inlined", "referenced")
BATCH_MODES = ("convert", "discover")


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).strip().lower() not in ("0", "false", "no", "off")


def _require_positive(name: str, value: float) -> None:
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {value!r}")


@dataclass
class Settings:
    # ------------------------------------------------------------------
    # Workspace / storage
    # ------------------------------------------------------------------
    workspace_dir: Path = field(
        default_factory=lambda: Path(
            os.environ.get("PAGEMILL_WORKSPACE", Path.home() / ".pagemill")
        )
    )

    @property
    def db_path(self) -> Path:
        """Absolute path to the SQLite extraction-history database."""
        return self.workspace_dir / "history.db"

    @property
    def schema_path(self) -> Path:
        """Absolute path to the schema SQL file bundled with the package."""
        return Path(__file__).resolve().parent / "history" / "schema.sql"

    log_level: str = field(
        default_factory=lambda: os.environ.get("LOG_LEVEL", "INFO")
    )

    # ------------------------------------------------------------------
    # Browser / fetcher
    # ------------------------------------------------------------------
    browser_headless: bool = field(
        default_factory=lambda: _env_bool("PLAYWRIGHT_HEADLESS", "true")
    )
    browser_executable_path: Optional[str] = field(
        default_factory=lambda: os.environ.get("PLAYWRIGHT_CHROMIUM_EXECUTABLE_PATH") or None
    )
    fetch_timeout_ms: int = field(
        default_factory=lambda: int(os.environ.get("PLAYWRIGHT_TIMEOUT", "30000"))
    )
    max_concurrent_pages: int = field(
        default_factory=lambda: int(os.environ.get("PLAYWRIGHT_MAX_CONCURRENT", "3"))
    )
    network_idle_timeout_ms: int = field(
        default_factory=lambda: int(os.environ.get("NETWORK_IDLE_TIMEOUT_MS", "10000"))
    )
    selector_timeout_ms: int = field(
        default_factory=lambda: int(os.environ.get("SELECTOR_TIMEOUT_MS", "5000"))
    )
    user_agent: str = field(
        default_factory=lambda: os.environ.get(
            "PAGEMILL_USER_AGENT",
            "Mozilla/5.0 (compatible; PagemillBot/1.0; +https://github.com/pagemill/pagemill)",
        )
    )

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------
    cache_ttl_seconds: int = field(
        default_factory=lambda: int(os.environ.get("CACHE_TTL_SECONDS", "3600"))
    )
    cache_sweep_interval_seconds: int = field(
        default_factory=lambda: int(os.environ.get("CACHE_SWEEP_INTERVAL_SECONDS", "600"))
    )
    content_cache_max_entries: int = field(
        default_factory=lambda: int(os.environ.get("CONTENT_CACHE_MAX_ENTRIES", "1000"))
    )
    metadata_cache_max_entries: int = field(
        default_factory=lambda: int(os.environ.get("METADATA_CACHE_MAX_ENTRIES", "2000"))
    )
    memory_warning_bytes: int = field(
        default_factory=lambda: int(os.environ.get("MEMORY_WARNING_BYTES", str(100 * 1024 * 1024)))
    )

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------
    rate_limit_window_ms: int = field(
        default_factory=lambda: int(os.environ.get("RATE_LIMIT_WINDOW_MS", str(15 * 60 * 1000)))
    )
    rate_limit_max_requests: int = field(
        default_factory=lambda: int(os.environ.get("RATE_LIMIT_MAX_REQUESTS", "100"))
    )

    # ------------------------------------------------------------------
    # Batch orchestration
    # ------------------------------------------------------------------
    batch_max_concurrent: int = field(
        default_factory=lambda: int(os.environ.get("BATCH_MAX_CONCURRENT", "3"))
    )
    batch_chunk_size: int = field(
        default_factory=lambda: int(os.environ.get("BATCH_CHUNK_SIZE", "25"))
    )
    batch_request_delay_ms: int = field(
        default_factory=lambda: int(os.environ.get("BATCH_REQUEST_DELAY_MS", "100"))
    )
    batch_chunk_delay_ms: int = field(
        default_factory=lambda: int(os.environ.get("BATCH_CHUNK_DELAY_MS", "500"))
    )
    batch_max_retries: int = field(
        default_factory=lambda: int(os.environ.get("BATCH_MAX_RETRIES", "3"))
    )
    retry_min_interval_ms: int = field(
        default_factory=lambda: int(os.environ.get("RETRY_MIN_INTERVAL_MS", "300000"))
    )

    def __post_init__(self) -> None:
        self.workspace_dir = Path(self.workspace_dir).expanduser()
        for name in (
            "fetch_timeout_ms",
            "max_concurrent_pages",
            "network_idle_timeout_ms",
            "selector_timeout_ms",
            "cache_ttl_seconds",
            "cache_sweep_interval_seconds",
            "content_cache_max_entries",
            "metadata_cache_max_entries",
            "memory_warning_bytes",
            "rate_limit_window_ms",
            "rate_limit_max_requests",
            "batch_max_concurrent",
            "batch_chunk_size",
        ):
            _require_positive(name, getattr(self, name))
        for name in ("batch_request_delay_ms", "batch_chunk_delay_ms", "batch_max_retries", "retry_min_interval_ms"):
            if getattr(self, name) < 0:
                raise ConfigError(f"{name} must not be negative, got {getattr(self, name)!r}")

    def ensure_workspace(self) -> None:
        """Create the workspace directory if it does not exist."""
        self.workspace_dir.mkdir(parents=True, exist_ok=True)

    def summary(self) -> Dict[str, Any]:
        """Return the non-secret settings in the camelCase shape the API exposes."""
        return {
            "browser": {
                "headless": self.browser_headless,
                "timeoutMs": self.fetch_timeout_ms,
                "maxConcurrent": self.max_concurrent_pages,
                "userAgent": self.user_agent,
            },
            "cache": {
                "ttlSeconds": self.cache_ttl_seconds,
                "sweepIntervalSeconds": self.cache_sweep_interval_seconds,
                "contentMaxEntries": self.content_cache_max_entries,
                "metadataMaxEntries": self.metadata_cache_max_entries,
            },
            "rateLimit": {
                "windowMs": self.rate_limit_window_ms,
                "maxRequests": self.rate_limit_max_requests,
            },
            "batch": {
                "maxConcurrent": self.batch_max_concurrent,
                "chunkSize": self.batch_chunk_size,
                "requestDelayMs": self.batch_request_delay_ms,
                "chunkDelayMs": self.batch_chunk_delay_ms,
                "maxRetries": self.batch_max_retries,
            },
        }


# ---------------------------------------------------------------------------
# Per-call option structs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FetchOptions:
    """Navigation options for a single fetch.

    ``timeout_ms`` of ``None`` means "use ``Settings.fetch_timeout_ms``".
    """

    wait_until: str = "domcontentloaded"
    timeout_ms: Optional[int] = None
    wait_for_selector: Optional[str] = None
    ignore_tls_errors: bool = False

    def __post_init__(self) -> None:
        if self.wait_until not in WAIT_UNTIL_EVENTS:
            raise ConfigError(
                f"wait_until must be one of {', '.join(WAIT_UNTIL_EVENTS)}, got {self.wait_until!r}"
            )
        if self.timeout_ms is not None:
            _require_positive("timeout_ms", self.timeout_ms)

    def cache_fields(self) -> Dict[str, Any]:
        """The whitelisted subset of options that participates in cache keys."""
        return {
            "waitUntil": self.wait_until,
            "timeout": self.timeout_ms,
            "waitForSelector": self.wait_for_selector,
            "ignoreTLSErrors": self.ignore_tls_errors,
        }


@dataclass(frozen=True)
class ExtractOptions:
    remove_selectors: Tuple[str, ...] = ()
    content_selectors: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class ConvertOptions:
    heading_style: str = "atx"
    bullet_marker: str = "-"
    link_style: str = "inlined"

    def __post_init__(self) -> None:
        if self.heading_style not in HEADING_STYLES:
            raise ConfigError(f"heading_style must be one of {HEADING_STYLES}, got {self.heading_style!r}")
        if self.bullet_marker not in BULLET_MARKERS:
            raise ConfigError(f"bullet_marker must be one of {BULLET_MARKERS}, got {self.bullet_marker!r}")
        if self.link_style not in LINK_STYLES:
            raise ConfigError(f"link_style must be one of {LINK_STYLES}, got {self.link_style!r}")


@dataclass(frozen=True)
class DiscoverOptions:
    include_images: bool = False
    remove_duplicates: bool = False


@dataclass(frozen=True)
class PipelineOptions:
    """Everything a single ``convert_url`` / ``discover_links`` call accepts."""

    fetch: FetchOptions = field(default_factory=FetchOptions)
    extract: ExtractOptions = field(default_factory=ExtractOptions)
    convert: ConvertOptions = field(default_factory=ConvertOptions)
    discover: DiscoverOptions = field(default_factory=DiscoverOptions)
    skip_cache: bool = False


@dataclass(frozen=True)
class BatchOptions:
    """Batch knobs; ``None`` falls back to the matching ``Settings.batch_*`` value."""

    max_concurrent: Optional[int] = None
    chunk_size: Optional[int] = None
    request_delay_ms: Optional[int] = None
    chunk_delay_ms: Optional[int] = None
    max_retries: Optional[int] = None
    mode: str = "convert"
    per_url_options: PipelineOptions = field(default_factory=PipelineOptions)

    def __post_init__(self) -> None:
        if self.mode not in BATCH_MODES:
            raise ConfigError(f"mode must be one of {BATCH_MODES}, got {self.mode!r}")
        for name in ("max_concurrent", "chunk_size"):
            value = getattr(self, name)
            if value is not None:
                _require_positive(name, value)
        for name in ("request_delay_ms", "chunk_delay_ms", "max_retries"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ConfigError(f"{name} must not be negative, got {value!r}")

    def resolved(self, settings: Settings) -> "BatchOptions":
        """Return a copy with every ``None`` knob filled in from *settings*."""
        return BatchOptions(
            max_concurrent=self.max_concurrent or settings.batch_max_concurrent,
            chunk_size=self.chunk_size or settings.batch_chunk_size,
            request_delay_ms=(
                settings.batch_request_delay_ms if self.request_delay_ms is None else self.request_delay_ms
            ),
            chunk_delay_ms=(
                settings.batch_chunk_delay_ms if self.chunk_delay_ms is None else self.chunk_delay_ms
            ),
            max_retries=settings.batch_max_retries if self.max_retries is None else self.max_retries,
            mode=self.mode,
            per_url_options=self.per_url_options,
        )


# Module-level singleton used by the CLI and the API factory:
#   from pagemill.config import settings
settings = Settings()
