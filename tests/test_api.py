"""Tests for the FastAPI application.

Mocking strategy:
- ``create_app`` receives a real :class:`Pipeline` wired to the shared
  ``FakeFetcher`` and a ``SqliteHistoryStore`` on a temp file, so every
  route runs end-to-end without a browser.
- ``TestClient`` is used as a context manager so the lifespan runs.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from pagemill.api.app import create_app
from pagemill.config import Settings
from pagemill.errors import HttpError
from pagemill.history import SqliteHistoryStore
from pagemill.pipeline import Pipeline
from tests.conftest import FakeFetcher


def _client(settings: Settings, fetcher: FakeFetcher, tmp_path: Path):
    history = SqliteHistoryStore(db_path=tmp_path / "api-history.db")
    app = create_app(settings, pipeline=Pipeline(settings, fetcher=fetcher), history=history)
    return app, history


@pytest.fixture()
def client(settings: Settings, fake_fetcher: FakeFetcher, tmp_path: Path):
    app, history = _client(settings, fake_fetcher, tmp_path)
    with TestClient(app) as c:
        yield c
    history.close()


# ---------------------------------------------------------------------------
# /convert
# ---------------------------------------------------------------------------

class TestConvert:
    def test_convert_success(self, client: TestClient) -> None:
        resp = client.post("/convert", json={"url": "https://example.com/post"})
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert "# Hello World" in body["data"]["markdown"]
        assert body["data"]["processing"]["httpStatus"] == 200
        assert body["meta"]["requestId"].startswith("req_")
        assert body["meta"]["fromCache"] is False

    def test_second_call_served_from_cache(self, client: TestClient, fake_fetcher: FakeFetcher) -> None:
        client.post("/convert", json={"url": "https://example.com/post"})
        resp = client.post("/convert", json={"url": "https://example.com/post"})
        assert resp.json()["meta"]["fromCache"] is True
        assert fake_fetcher.calls == ["https://example.com/post"]

    def test_camel_case_options(self, client: TestClient) -> None:
        resp = client.post(
            "/convert",
            json={"url": "https://example.com/post", "options": {"headingStyle": "setext", "skipCache": True}},
        )
        assert resp.status_code == 200
        assert "Hello World\n===========" in resp.json()["data"]["markdown"]

    def test_blocked_url_is_400(self, client: TestClient, fake_fetcher: FakeFetcher) -> None:
        resp = client.post("/convert", json={"url": "http://169.254.169.254/latest"})
        assert resp.status_code == 400
        body = resp.json()
        assert body["success"] is False
        assert body["error"]["type"] == "INTERNAL_NETWORK_BLOCKED"
        assert fake_fetcher.calls == []

    def test_fetch_failure_is_400(self, settings: Settings, tmp_path: Path) -> None:
        app, history = _client(settings, FakeFetcher(error=HttpError(503, "HTTP 503: Unavailable")), tmp_path)
        with TestClient(app) as c:
            resp = c.post("/convert", json={"url": "https://example.com/"})
        history.close()
        assert resp.status_code == 400
        assert resp.json()["error"]["type"] == "HTTP_ERROR"

    def test_invalid_options_are_422(self, client: TestClient) -> None:
        resp = client.post("/convert", json={"url": "https://example.com", "options": {"timeout": 0}})
        assert resp.status_code == 422
        resp = client.post("/convert", json={"url": "https://example.com", "options": {"bulletMarker": "#"}})
        assert resp.status_code == 422

    def test_missing_url_is_422(self, client: TestClient) -> None:
        assert client.post("/convert", json={}).status_code == 422

    def test_text(self, client: TestClient) -> None:
        resp = client.post("/convert/text", json={"url": "https://example.com/post"})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert "Grid-scale batteries" in data["text"]
        assert "#" not in data["text"]
        assert data["wordCount"] > 10

    def test_batch_reports_failures_and_retry_batch(self, client: TestClient) -> None:
        resp = client.post(
            "/convert/batch",
            json={"urls": ["https://example.com/a", "http://localhost/admin"], "options": {"chunkSize": 1}},
        )
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["summary"]["total"] == 2
        assert data["summary"]["successful"] == 1
        assert data["summary"]["chunksProcessed"] == 2
        assert [r["success"] for r in data["results"]] == [True, False]
        assert data["retryBatch"]["urls"] == ["http://localhost/admin"]

    def test_batch_all_ok_has_no_retry_batch(self, client: TestClient) -> None:
        resp = client.post("/convert/batch", json={"urls": ["https://example.com/a"]})
        assert resp.json()["data"]["retryBatch"] is None

    def test_batch_limits(self, client: TestClient) -> None:
        assert client.post("/convert/batch", json={"urls": []}).status_code == 422
        too_many = [f"https://example.com/{i}" for i in range(101)]
        assert client.post("/convert/batch", json={"urls": too_many}).status_code == 422
        bad = {"urls": ["https://example.com"], "options": {"maxConcurrent": 0}}
        assert client.post("/convert/batch", json=bad).status_code == 422

    def test_validate(self, client: TestClient) -> None:
        good = client.post("/convert/validate", json={"url": "https://example.com"}).json()["data"]
        assert good["valid"] is True
        bad = client.post("/convert/validate", json={"url": "ftp://example.com"}).json()["data"]
        assert bad == {
            "valid": False,
            "url": "ftp://example.com",
            "errorType": "DISALLOWED_PROTOCOL",
            "error": bad["error"],
        }

    def test_config(self, client: TestClient, settings: Settings) -> None:
        data = client.get("/convert/config").json()["data"]
        assert data["batch"]["chunkSize"] == settings.batch_chunk_size
        assert "setext" in data["conversion"]["headingStyles"]

    def test_cache_clear(self, client: TestClient) -> None:
        client.post("/convert", json={"url": "https://example.com/post"})
        cleared = client.post("/convert/cache/clear").json()["data"]["cleared"]
        assert cleared["content"] == 1


# ---------------------------------------------------------------------------
# /sitemap
# ---------------------------------------------------------------------------

class TestSitemap:
    def test_discover(self, client: TestClient) -> None:
        resp = client.post("/sitemap/discover", json={"url": "https://example.com/post"})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["summary"]["totalLinks"] == 2
        assert [link["resolvedUrl"] for link in data["categories"]["internal"]] == ["https://example.com/about"]

    def test_tracked_batch_creates_session(self, client: TestClient) -> None:
        resp = client.post(
            "/sitemap/batch",
            json={
                "urls": ["https://example.com/a", "http://127.0.0.1/"],
                "userId": "u1",
                "sessionName": "Crawl",
            },
        )
        assert resp.status_code == 200
        session_id = resp.json()["data"]["sessionId"]
        assert session_id

        detail = client.get(f"/history/sessions/{session_id}").json()["data"]
        assert detail["session"]["sessionName"] == "Crawl"
        assert detail["session"]["sourceUrl"] == "https://example.com/a"
        assert detail["session"]["status"] == "completed"
        assert [r["status"] for r in detail["records"]] == ["success", "failed"]


# ---------------------------------------------------------------------------
# /history
# ---------------------------------------------------------------------------

class TestHistory:
    def _seed(self, client: TestClient) -> str:
        resp = client.post(
            "/sitemap/batch",
            json={"urls": ["https://example.com/a", "http://127.0.0.1/"], "userId": "u1"},
        )
        return resp.json()["data"]["sessionId"]

    def test_list_sessions(self, client: TestClient) -> None:
        session_id = self._seed(client)
        data = client.get("/history/sessions", params={"userId": "u1"}).json()["data"]
        assert [s["id"] for s in data["sessions"]] == [session_id]
        assert data["limit"] == 20
        other = client.get("/history/sessions").json()["data"]
        assert other["sessions"] == []

    def test_list_sessions_bad_limit(self, client: TestClient) -> None:
        assert client.get("/history/sessions", params={"limit": 0}).status_code == 422

    def test_session_not_found(self, client: TestClient) -> None:
        assert client.get("/history/sessions/missing").status_code == 404

    def test_session_scoped_to_user(self, client: TestClient) -> None:
        session_id = self._seed(client)
        resp = client.get(f"/history/sessions/{session_id}", params={"userId": "someone-else"})
        assert resp.status_code == 404

    def test_retryable(self, client: TestClient) -> None:
        self._seed(client)
        data = client.get("/history/retryable", params={"userId": "u1"}).json()["data"]
        assert data["count"] == 1
        assert data["records"][0]["errorCode"] == "INTERNAL_NETWORK_BLOCKED"

    def test_retry(self, client: TestClient) -> None:
        original = self._seed(client)
        resp = client.post("/history/retry", json={"userId": "u1"})
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["sessionId"] not in (None, original)
        assert [r["url"] for r in data["results"]] == ["http://127.0.0.1/"]

        after = client.get("/history/retryable", params={"userId": "u1"}).json()["data"]
        # the retried record waits for the minimum retry interval
        assert after["count"] == 1
        assert after["records"][0]["sessionId"] == data["sessionId"]

    def test_retry_nothing(self, client: TestClient) -> None:
        data = client.post("/history/retry", json={"userId": "nobody"}).json()["data"]
        assert data["results"] == []
        assert data["sessionId"] is None


# ---------------------------------------------------------------------------
# /health and rate limiting
# ---------------------------------------------------------------------------

class TestHealth:
    def test_health(self, client: TestClient) -> None:
        client.post("/convert", json={"url": "https://example.com/post"})
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["stats"]["conversion"]["totalRequests"] == 1
        assert body["services"]["fetcher"]["browserInitialized"] is True

    def test_shutdown_closes_fetcher(self, settings: Settings, tmp_path: Path) -> None:
        fetcher = FakeFetcher()
        app, history = _client(settings, fetcher, tmp_path)
        with TestClient(app):
            pass
        history.close()
        assert fetcher.closed is True


class TestRateLimit:
    def test_limit_exceeded_is_429(self, tmp_path: Path) -> None:
        limited = Settings(workspace_dir=tmp_path, rate_limit_max_requests=2)
        app, history = _client(limited, FakeFetcher(), tmp_path)
        with TestClient(app) as c:
            for _ in range(2):
                assert c.post("/convert/validate", json={"url": "https://example.com"}).status_code == 200
            resp = c.post("/convert/validate", json={"url": "https://example.com"})
            health = c.get("/health")
        history.close()

        assert resp.status_code == 429
        assert resp.headers["Retry-After"]
        detail = resp.json()["detail"]
        assert detail["errorType"] == "RATE_LIMIT"
        assert detail["remainingRequests"] == 0
        assert health.status_code == 200
