"""Headless-browser fetcher built on Playwright's async API.

One Chromium instance is shared by every fetch made through a
:class:`BrowserFetcher`; each fetch gets its own isolated context and page,
both torn down in a ``finally`` block whatever the outcome.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from playwright.async_api import TimeoutError as PlaywrightTimeout
from playwright.async_api import async_playwright

from pagemill.config import FetchOptions, Settings
from pagemill.errors import (
    BrowserUnavailable,
    ConcurrencyLimitExceeded,
    HttpError,
    NetworkError,
    PagemillError,
    categorize_error,
)
from pagemill.scraper.models import FetchResult
from pagemill.scraper.validator import validate_url

logger = logging.getLogger(__name__)

BrowserFactory = Callable[[], Awaitable[Any]]

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-accelerated-2d-canvas",
    "--no-first-run",
    "--no-zygote",
    "--disable-gpu",
    "--disable-background-timer-throttling",
    "--disable-backgrounding-occluded-windows",
    "--disable-renderer-backgrounding",
]

VIEWPORT = {"width": 1280, "height": 720}

EXTRA_HEADERS = {
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
    "Accept-Language": "en-US,en;q=0.5",
    "Accept-Encoding": "gzip, deflate",
    "Cache-Control": "no-cache",
}

CONTENT_ROOT_SELECTORS = [
    "main",
    "article",
    '[role="main"]',
    ".content",
    ".main-content",
    "#content",
    "#main",
    "body",
]

# Runs inside the page; returns page metadata plus the outer HTML of the
# first content-ish element.
_EXTRACT_PAGE_JS = """
(selectors) => {
  const meta = document.querySelector('meta[name="description"]');
  const canonical = document.querySelector('link[rel="canonical"]');
  let root = null;
  for (const selector of selectors) {
    root = document.querySelector(selector);
    if (root) break;
  }
  const element = root || document.body || document.documentElement;
  return {
    html: element ? element.outerHTML : '',
    title: document.title || '',
    description: meta ? (meta.content || '') : '',
    canonical: canonical ? (canonical.href || '') : '',
    lang: document.documentElement.lang || '',
    url: window.location.href,
    userAgent: navigator.userAgent,
  };
}
"""


class BrowserFetcher:
    """Fetch rendered pages under a fail-fast cap on concurrently open pages.

    Usage::

        async with BrowserFetcher(settings) as fetcher:
            result = await fetcher.fetch("https://example.com")

    *browser_factory* is an async callable returning a Playwright
    ``Browser`` (or a stand-in with the same surface); when omitted a
    Chromium instance is launched with the configured options.
    """

    def __init__(self, settings: Settings, browser_factory: Optional[BrowserFactory] = None) -> None:
        self.settings = settings
        self._browser_factory = browser_factory
        self._playwright: Any = None
        self._browser: Any = None
        self._active_pages: Set[object] = set()
        self._launch_lock = asyncio.Lock()

    async def __aenter__(self) -> "BrowserFetcher":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Browser lifecycle
    # ------------------------------------------------------------------
    @property
    def browser_initialized(self) -> bool:
        return self._browser is not None

    @property
    def active_pages(self) -> int:
        return len(self._active_pages)

    async def initialize(self) -> Any:
        """Launch the shared browser if it is not already running.

        Raises:
            BrowserUnavailable: If the browser cannot be launched.
        """
        if self._browser is not None and self._browser.is_connected():
            return self._browser

        # Concurrent callers wait here for the one launch in progress.
        async with self._launch_lock:
            if self._browser is not None and not self._browser.is_connected():
                logger.warning("Browser disconnected; relaunching")
                self._browser = None
                await self._stop_playwright()
            if self._browser is not None:
                return self._browser

            try:
                if self._browser_factory is not None:
                    self._browser = await self._browser_factory()
                else:
                    self._browser = await self._launch_chromium()
            except Exception as exc:
                await self._stop_playwright()
                raise BrowserUnavailable(f"Failed to launch browser: {exc}") from exc

            logger.info(
                "Browser initialized (headless=%s, max_concurrent=%d)",
                self.settings.browser_headless,
                self.settings.max_concurrent_pages,
            )
            return self._browser

    async def close(self) -> None:
        """Close the browser; in-flight fetches fail with a transport error."""
        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as exc:  # noqa: BLE001
                logger.warning("Error closing browser: %s", exc)
            self._browser = None
        await self._stop_playwright()
        self._active_pages.clear()

    async def _launch_chromium(self) -> Any:
        self._playwright = await async_playwright().start()
        launch_kwargs: Dict[str, Any] = {
            "headless": self.settings.browser_headless,
            "timeout": self.settings.fetch_timeout_ms,
            "args": LAUNCH_ARGS,
        }
        if self.settings.browser_executable_path:
            launch_kwargs["executable_path"] = self.settings.browser_executable_path
        return await self._playwright.chromium.launch(**launch_kwargs)

    async def _stop_playwright(self) -> None:
        if self._playwright is not None:
            try:
                await self._playwright.stop()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Error stopping Playwright: %s", exc)
            self._playwright = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    async def fetch(self, url: str, options: Optional[FetchOptions] = None) -> FetchResult:
        """Navigate to *url* and return the rendered page.

        Args:
            url: Absolute http(s) URL; validated before any network call.
            options: Navigation options (wait policy, timeout, TLS handling).

        Returns:
            A :class:`FetchResult` whose ``html`` is the outer HTML of the
            detected content root.

        Raises:
            ValidationError: If *url* or the post-redirect URL is rejected.
            ConcurrencyLimitExceeded: If ``max_concurrent_pages`` are open.
            HttpError: On a non-2xx main-document response.
            NetworkError: On any other navigation failure.
            BrowserUnavailable: If the browser cannot be launched.
        """
        options = options or FetchOptions()
        url = validate_url(url)
        timeout_ms = options.timeout_ms or self.settings.fetch_timeout_ms
        started = time.monotonic()

        await self.initialize()

        if len(self._active_pages) >= self.settings.max_concurrent_pages:
            raise ConcurrencyLimitExceeded("Maximum concurrent requests exceeded")

        slot = object()
        self._active_pages.add(slot)
        context = None
        page = None
        try:
            context = await self._browser.new_context(
                viewport=VIEWPORT,
                user_agent=self.settings.user_agent,
                ignore_https_errors=options.ignore_tls_errors,
                extra_http_headers=EXTRA_HEADERS,
            )
            page = await context.new_page()
            page.set_default_timeout(timeout_ms)

            response = await page.goto(url, wait_until=options.wait_until, timeout=timeout_ms)
            if response is None:
                raise NetworkError(f"No response received for {url}", "UNKNOWN")
            if not response.ok:
                raise HttpError(response.status, f"HTTP {response.status}: {response.status_text}")

            await self._wait_for_content(page, options)

            info = await page.evaluate(_EXTRACT_PAGE_JS, CONTENT_ROOT_SELECTORS)
            final_url = info.get("url") or response.url or url
            # Redirects can retarget into private address space.
            validate_url(final_url)

            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.debug("Fetched %s -> %s (%d, %dms)", url, final_url, response.status, elapsed_ms)
            return FetchResult(
                url=url,
                final_url=final_url,
                html=info.get("html") or "",
                title=info.get("title") or "",
                description=info.get("description") or "",
                canonical_url=info.get("canonical") or None,
                language=info.get("lang") or None,
                http_status=response.status,
                response_time_ms=elapsed_ms,
                user_agent=info.get("userAgent") or self.settings.user_agent,
            )
        except PagemillError:
            raise
        except Exception as exc:
            category = categorize_error(exc)
            logger.debug("Fetch of %s failed (%s): %s", url, category, exc)
            raise NetworkError(f"Failed to fetch URL: {exc}", category) from exc
        finally:
            self._active_pages.discard(slot)
            await self._teardown(page, context)

    def health(self) -> Dict[str, Any]:
        return {
            "browserInitialized": self.browser_initialized,
            "activePages": self.active_pages,
            "maxConcurrent": self.settings.max_concurrent_pages,
        }

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    async def _wait_for_content(self, page: Any, options: FetchOptions) -> None:
        if options.wait_for_selector:
            await page.wait_for_selector(
                options.wait_for_selector, timeout=self.settings.selector_timeout_ms
            )
            return
        try:
            await page.wait_for_load_state(
                "networkidle", timeout=self.settings.network_idle_timeout_ms
            )
        except PlaywrightTimeout:
            # Static pages may never reach network idle.
            pass

    async def _teardown(self, page: Any, context: Any) -> None:
        for resource in (page, context):
            if resource is None:
                continue
            try:
                await resource.close()
            except Exception as exc:  # noqa: BLE001
                logger.debug("Ignoring close error: %s", exc)
