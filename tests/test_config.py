"""Tests for pagemill.config (environment settings and per-call options).

Mocking strategy:
- Environment variables are set with ``monkeypatch.setenv``; a fresh
  ``Settings()`` is built per test so the process-wide singleton is untouched.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from pagemill.config import (
    BatchOptions,
    ConvertOptions,
    FetchOptions,
    PipelineOptions,
    Settings,
)
from pagemill.errors import ConfigError


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

class TestSettings:
    def test_defaults(self, tmp_path: Path) -> None:
        s = Settings(workspace_dir=tmp_path)
        assert s.fetch_timeout_ms == 30000
        assert s.max_concurrent_pages == 3
        assert s.cache_ttl_seconds == 3600
        assert s.batch_chunk_size == 25
        assert s.retry_min_interval_ms == 300000
        assert s.db_path == tmp_path / "history.db"
        assert s.schema_path.name == "schema.sql"
        assert s.schema_path.exists()

    def test_env_overrides(self, monkeypatch, tmp_path: Path) -> None:
        monkeypatch.setenv("PAGEMILL_WORKSPACE", str(tmp_path / "ws"))
        monkeypatch.setenv("PLAYWRIGHT_TIMEOUT", "5000")
        monkeypatch.setenv("PLAYWRIGHT_HEADLESS", "false")
        monkeypatch.setenv("BATCH_CHUNK_SIZE", "10")
        monkeypatch.setenv("RATE_LIMIT_MAX_REQUESTS", "7")
        s = Settings()
        assert s.workspace_dir == tmp_path / "ws"
        assert s.fetch_timeout_ms == 5000
        assert s.browser_headless is False
        assert s.batch_chunk_size == 10
        assert s.rate_limit_max_requests == 7

    def test_workspace_expands_user(self, monkeypatch, tmp_path: Path) -> None:
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.setenv("PAGEMILL_WORKSPACE", "~/pm")
        assert Settings().workspace_dir == tmp_path / "pm"

    def test_empty_executable_path_is_none(self, monkeypatch) -> None:
        monkeypatch.setenv("PLAYWRIGHT_CHROMIUM_EXECUTABLE_PATH", "")
        assert Settings().browser_executable_path is None

    @pytest.mark.parametrize(
        "field_name, value",
        [
            ("fetch_timeout_ms", 0),
            ("max_concurrent_pages", -1),
            ("batch_chunk_size", 0),
            ("rate_limit_window_ms", 0),
        ],
    )
    def test_rejects_non_positive(self, tmp_path: Path, field_name: str, value: int) -> None:
        with pytest.raises(ConfigError, match=field_name):
            Settings(workspace_dir=tmp_path, **{field_name: value})

    def test_rejects_negative_delay(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError, match="batch_chunk_delay_ms"):
            Settings(workspace_dir=tmp_path, batch_chunk_delay_ms=-1)
        assert Settings(workspace_dir=tmp_path, batch_chunk_delay_ms=0).batch_chunk_delay_ms == 0

    def test_ensure_workspace(self, tmp_path: Path) -> None:
        s = Settings(workspace_dir=tmp_path / "a" / "b")
        s.ensure_workspace()
        assert s.workspace_dir.is_dir()

    def test_summary(self, tmp_path: Path) -> None:
        summary = Settings(workspace_dir=tmp_path, batch_max_retries=5).summary()
        assert set(summary) == {"browser", "cache", "rateLimit", "batch"}
        assert summary["batch"]["maxRetries"] == 5
        assert summary["rateLimit"]["windowMs"] == 900000


# ---------------------------------------------------------------------------
# Per-call options
# ---------------------------------------------------------------------------

class TestOptions:
    def test_fetch_options_validation(self) -> None:
        with pytest.raises(ConfigError, match="wait_until"):
            FetchOptions(wait_until="idle")
        with pytest.raises(ConfigError, match="timeout_ms"):
            FetchOptions(timeout_ms=0)

    def test_fetch_cache_fields(self) -> None:
        fields = FetchOptions(wait_until="load", ignore_tls_errors=True).cache_fields()
        assert fields == {
            "waitUntil": "load",
            "timeout": None,
            "waitForSelector": None,
            "ignoreTLSErrors": True,
        }

    def test_convert_options_validation(self) -> None:
        with pytest.raises(ConfigError, match="heading_style"):
            ConvertOptions(heading_style="underline")
        with pytest.raises(ConfigError, match="bullet_marker"):
            ConvertOptions(bullet_marker="#")
        with pytest.raises(ConfigError, match="link_style"):
            ConvertOptions(link_style="footnote")

    def test_pipeline_options_defaults(self) -> None:
        options = PipelineOptions()
        assert options.fetch.wait_until == "domcontentloaded"
        assert options.convert.heading_style == "atx"
        assert options.skip_cache is False

    def test_batch_options_validation(self) -> None:
        with pytest.raises(ConfigError, match="mode"):
            BatchOptions(mode="scrape")
        with pytest.raises(ConfigError, match="chunk_size"):
            BatchOptions(chunk_size=0)
        with pytest.raises(ConfigError, match="request_delay_ms"):
            BatchOptions(request_delay_ms=-5)

    def test_batch_options_resolved_from_settings(self, tmp_path: Path) -> None:
        s = Settings(
            workspace_dir=tmp_path,
            batch_max_concurrent=4,
            batch_chunk_size=8,
            batch_request_delay_ms=50,
            batch_chunk_delay_ms=250,
            batch_max_retries=2,
        )
        resolved = BatchOptions(chunk_size=3, request_delay_ms=0, mode="discover").resolved(s)
        assert resolved.max_concurrent == 4
        assert resolved.chunk_size == 3
        assert resolved.request_delay_ms == 0
        assert resolved.chunk_delay_ms == 250
        assert resolved.max_retries == 2
        assert resolved.mode == "discover"
