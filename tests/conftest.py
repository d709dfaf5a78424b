"""Shared fixtures: isolated settings and an in-process fake fetcher."""

from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import pytest

from pagemill.config import FetchOptions, Settings
from pagemill.logging_setup import configure_logging
from pagemill.scraper.models import FetchResult

# Bind the root handler to pytest's stream before any CliRunner swaps stderr.
configure_logging("WARNING")

SAMPLE_HTML = """\
<article class="post">
  <h1>Hello World</h1>
  <p>Grid-scale batteries store surplus solar energy during the day and release it after sunset.</p>
  <p>Lithium iron phosphate chemistry dominates new installations because of its cycle life.</p>
  <p>Read <a href="/about">about us</a> or visit <a href="https://other.org/x">a partner</a> today.</p>
</article>
"""


class FakeFetcher:
    """Stands in for :class:`BrowserFetcher`; records calls, never opens a browser."""

    def __init__(self, html: str = SAMPLE_HTML, error: Optional[BaseException] = None) -> None:
        self.html = html
        self.error = error
        self.calls: List[str] = []
        self.closed = False

    async def fetch(self, url: str, options: Optional[FetchOptions] = None) -> FetchResult:
        self.calls.append(url)
        if self.error is not None:
            raise self.error
        return FetchResult(
            url=url,
            final_url=url,
            html=self.html,
            title="Hello page",
            description="A greeting",
            canonical_url=None,
            language=None,
            http_status=200,
            response_time_ms=12,
            user_agent="FakeAgent/1.0",
        )

    async def close(self) -> None:
        self.closed = True

    def health(self) -> dict:
        return {"browserInitialized": True, "activePages": 0, "maxConcurrent": 3}


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Settings pointed at a temp workspace with no politeness delays."""
    return Settings(
        workspace_dir=tmp_path,
        batch_request_delay_ms=0,
        batch_chunk_delay_ms=0,
    )


@pytest.fixture()
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()
