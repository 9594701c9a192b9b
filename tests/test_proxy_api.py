# Waypoint
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
"""
End-to-end tests for the proxy HTTP surface.

Runs the full FastAPI app through TestClient with the upstream side
served by an httpx MockTransport, so no network access is needed.
"""

import httpx
import pytest
from fastapi.testclient import TestClient

from waypoint.api.server import create_app
from waypoint.proxy.config import ProxyConfig

PAGE = b'<html><head><title>Home</title></head><body><a href="/about">About</a></body></html>'


class ChunkStream(httpx.AsyncByteStream):
    def __init__(self, *chunks: bytes):
        self._chunks = chunks

    async def __aiter__(self):
        for chunk in self._chunks:
            yield chunk


class Upstream:
    """Records upstream requests and answers from a route table."""

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes: dict[str, tuple[int, dict | None, bytes]] = {}

    def add(self, url: str, status: int = 200, headers: dict | None = None, content: bytes = b""):
        self.routes[url] = (status, headers, content)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, headers, content = self.routes.get(str(request.url), (404, None, b"not found"))
        # Streamed like a real origin, so the raw relay path is exercised
        return httpx.Response(status, headers=headers, stream=ChunkStream(content))


@pytest.fixture
def upstream():
    up = Upstream()
    up.add("http://example.com/index.html", headers={"content-type": "text/html"}, content=PAGE)
    return up


def _client(tmp_path, upstream, **overrides) -> TestClient:
    settings = {
        "static_dir": str(tmp_path / "no-ui"),
        "log_dir": "",
        "audit_log_path": str(tmp_path / "audit.jsonl"),
    }
    settings.update(overrides)
    app = create_app(
        ProxyConfig(**settings),
        client=httpx.AsyncClient(transport=httpx.MockTransport(upstream.handler)),
    )
    return TestClient(app)


class TestRewriteScenarios:
    def test_html_links_rewritten(self, tmp_path, upstream):
        with _client(tmp_path, upstream) as client:
            resp = client.get("/proxy", params={"url": "http://example.com/index.html"})
        assert resp.status_code == 200
        assert resp.headers["content-type"] == "text/html; charset=utf-8"
        assert '<a href="/proxy?url=http%3A%2F%2Fexample.com%2Fabout">' in resp.text
        assert '<base href="http://example.com/index.html"' in resp.text

    def test_rewrite_disabled_streams_html_unmodified(self, tmp_path, upstream):
        with _client(tmp_path, upstream, enable_rewrite=False) as client:
            resp = client.get("/proxy", params={"url": "http://example.com/index.html"})
        assert resp.status_code == 200
        assert resp.content == PAGE
        assert "<base" not in resp.text

    def test_binary_streamed_unchanged(self, tmp_path, upstream):
        payload = bytes(range(256)) * 10
        upstream.add(
            "http://example.com/logo.png",
            headers={"content-type": "image/png"},
            content=payload,
        )
        with _client(tmp_path, upstream) as client:
            resp = client.get("/proxy", params={"url": "http://example.com/logo.png"})
        assert resp.status_code == 200
        assert resp.content == payload
        assert resp.headers["content-type"] == "image/png"

    def test_framing_headers_removed(self, tmp_path, upstream):
        upstream.add(
            "http://example.com/framed",
            headers={
                "content-type": "text/plain",
                "x-frame-options": "DENY",
                "content-security-policy": "frame-ancestors 'none'",
            },
            content=b"ok",
        )
        with _client(tmp_path, upstream) as client:
            resp = client.get("/proxy", params={"url": "http://example.com/framed"})
        assert "x-frame-options" not in resp.headers
        assert "content-security-policy" not in resp.headers


class TestRedirects:
    def test_redirect_rewritten_not_followed(self, tmp_path, upstream):
        upstream.add("http://example.com/old", status=301, headers={"location": "/new"})
        with _client(tmp_path, upstream) as client:
            resp = client.get(
                "/proxy",
                params={"url": "http://example.com/old"},
                follow_redirects=False,
            )
        assert resp.status_code == 301
        assert resp.headers["location"] == "/proxy?url=http%3A%2F%2Fexample.com%2Fnew"
        assert [str(r.url) for r in upstream.requests] == ["http://example.com/old"]

    def test_redirect_to_blocked_host(self, tmp_path, upstream):
        upstream.add("http://example.com/out", status=302, headers={"location": "http://evil.com/"})
        with _client(tmp_path, upstream, blocklist=["evil.com"]) as client:
            resp = client.get(
                "/proxy",
                params={"url": "http://example.com/out"},
                follow_redirects=False,
            )
        assert resp.status_code == 403
        assert resp.text == "Blocked by policy"


class TestPolicy:
    def test_allowlist(self, tmp_path, upstream):
        upstream.add("http://sub.example.com/", headers={"content-type": "text/plain"}, content=b"hi")
        with _client(tmp_path, upstream, allowlist=["*.example.com"]) as client:
            allowed = client.get("/proxy", params={"url": "http://sub.example.com/"})
            blocked = client.get("/proxy", params={"url": "http://evil.com/"})
        assert allowed.status_code == 200
        assert allowed.text == "hi"
        assert blocked.status_code == 403
        assert blocked.text == "Blocked by policy"
        assert [r.url.host for r in upstream.requests] == ["sub.example.com"]

    def test_block_wins_over_allow(self, tmp_path, upstream):
        with _client(
            tmp_path, upstream, allowlist=["*.example.com"], blocklist=["bad.example.com"]
        ) as client:
            resp = client.get("/proxy", params={"url": "http://bad.example.com/"})
        assert resp.status_code == 403
        assert upstream.requests == []

    def test_trailing_dot_does_not_bypass_blocklist(self, tmp_path, upstream):
        with _client(tmp_path, upstream, blocklist=["evil.com"]) as client:
            resp = client.get("/proxy", params={"url": "http://evil.com./"})
        assert resp.status_code == 403
        assert upstream.requests == []

    def test_host_match_is_case_insensitive(self, tmp_path, upstream):
        with _client(tmp_path, upstream, blocklist=["evil.com"]) as client:
            resp = client.get("/proxy", params={"url": "http://EVIL.com/"})
        assert resp.status_code == 403


class TestMalformed:
    @pytest.mark.parametrize(
        "params,message",
        [
            ({}, "Missing ?url="),
            ({"url": ""}, "Missing ?url="),
            ({"url": "not a url"}, "Invalid URL"),
            ({"url": "http://exa mple.com/"}, "Invalid URL"),
            ({"url": "ftp://example.com/file"}, "Only http/https are supported"),
            ({"url": "javascript:alert(1)"}, "Only http/https are supported"),
        ],
    )
    def test_bad_target(self, tmp_path, upstream, params, message):
        with _client(tmp_path, upstream) as client:
            resp = client.get("/proxy", params=params)
        assert resp.status_code == 400
        assert resp.text == message
        assert upstream.requests == []


class TestRequestBody:
    def test_post_forwarded(self, tmp_path, upstream):
        upstream.add("http://example.com/form", headers={"content-type": "text/plain"}, content=b"done")
        with _client(tmp_path, upstream) as client:
            resp = client.post(
                "/proxy",
                params={"url": "http://example.com/form"},
                content=b"name=waypoint",
                headers={"content-type": "application/x-www-form-urlencoded"},
            )
        assert resp.status_code == 200
        sent = upstream.requests[0]
        assert sent.method == "POST"
        assert sent.content == b"name=waypoint"
        assert sent.headers["content-type"] == "application/x-www-form-urlencoded"

    def test_oversized_body_rejected_before_upstream(self, tmp_path, upstream):
        with _client(tmp_path, upstream, max_body_mb=1) as client:
            resp = client.post(
                "/proxy",
                params={"url": "http://example.com/form"},
                content=b"x" * (1024 * 1024 + 1),
            )
            stats = client.app.state.audit.get_stats()
        assert resp.status_code == 413
        assert resp.text == "Payload too large"
        assert upstream.requests == []
        assert stats["too_large"] == 1

    def test_body_at_limit_accepted(self, tmp_path, upstream):
        upstream.add("http://example.com/form", headers={"content-type": "text/plain"}, content=b"ok")
        with _client(tmp_path, upstream, max_body_mb=1) as client:
            resp = client.put(
                "/proxy",
                params={"url": "http://example.com/form"},
                content=b"x" * (1024 * 1024),
            )
        assert resp.status_code == 200
        assert len(upstream.requests[0].content) == 1024 * 1024


class TestForwardedRequest:
    def test_query_string_of_target_kept(self, tmp_path, upstream):
        upstream.add(
            "http://example.com/search?q=a&page=2",
            headers={"content-type": "application/json"},
            content=b"[]",
        )
        with _client(tmp_path, upstream) as client:
            resp = client.get("/proxy", params={"url": "http://example.com/search?q=a&page=2"})
        assert resp.status_code == 200
        assert str(upstream.requests[0].url) == "http://example.com/search?q=a&page=2"

    def test_browser_identity_headers_not_forwarded(self, tmp_path, upstream):
        with _client(tmp_path, upstream) as client:
            client.get(
                "/proxy",
                params={"url": "http://example.com/index.html"},
                headers={
                    "referer": "http://testserver/",
                    "origin": "http://testserver",
                    "cookie": "session=1",
                    "user-agent": "StudentBrowser/1.0",
                },
            )
        sent = upstream.requests[0].headers
        assert "referer" not in sent
        assert "origin" not in sent
        assert sent["host"] == "example.com"
        assert sent["cookie"] == "session=1"
        assert sent["user-agent"] == "StudentBrowser/1.0"

    def test_head_request(self, tmp_path, upstream):
        with _client(tmp_path, upstream) as client:
            resp = client.head("/proxy", params={"url": "http://example.com/index.html"})
        assert resp.status_code == 200
        assert upstream.requests[0].method == "HEAD"


class TestUpstreamFailure:
    def test_unreachable_upstream(self, tmp_path):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Name or service not known", request=request)

        app = create_app(
            ProxyConfig(static_dir=str(tmp_path / "no-ui"), log_dir=""),
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        with TestClient(app) as client:
            resp = client.get("/proxy", params={"url": "http://nowhere.invalid/"})
        assert resp.status_code == 502
        assert resp.text == "Upstream fetch failed"

    def test_html_body_dropped_while_buffering(self, tmp_path):
        class DroppedStream(httpx.AsyncByteStream):
            async def __aiter__(self):
                yield b"<html><head>"
                raise httpx.ReadError("connection reset by peer")

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, headers={"content-type": "text/html"}, stream=DroppedStream())

        app = create_app(
            ProxyConfig(static_dir=str(tmp_path / "no-ui"), log_dir=""),
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        with TestClient(app) as client:
            resp = client.get("/proxy", params={"url": "http://example.com/"})
        assert resp.status_code == 502
        assert resp.text == "Upstream fetch failed"


class TestAudit:
    def test_relayed_and_rejected_recorded(self, tmp_path, upstream):
        with _client(tmp_path, upstream, blocklist=["evil.com"]) as client:
            client.get("/proxy", params={"url": "http://example.com/index.html"})
            client.get("/proxy", params={"url": "http://evil.com/"})
            client.get("/proxy")
            entries = client.app.state.audit.read_recent(10)
        assert [e.event_type for e in entries] == ["request", "blocked", "malformed"]
        relayed = entries[0]
        assert relayed.hostname == "example.com"
        assert relayed.status_code == 200
        assert relayed.path == "rewrite"
        assert entries[1].status_code == 403
        assert entries[1].hostname == "evil.com"

    def test_counts_reported_by_health(self, tmp_path, upstream):
        with _client(tmp_path, upstream, blocklist=["evil.com"]) as client:
            client.get("/proxy", params={"url": "http://example.com/index.html"})
            client.get("/proxy", params={"url": "http://evil.com/"})
            data = client.get("/health").json()
        assert data["audit"]["total"] == 2
        assert data["audit"]["relayed"] == 1
        assert data["audit"]["blocked"] == 1
        assert data["audit"]["unique_hosts"] == 2

    def test_health_without_audit_log(self, tmp_path, upstream):
        with _client(tmp_path, upstream, audit_log_path="") as client:
            data = client.get("/health").json()
        assert data["audit"] is None


class TestSurface:
    def test_cors_headers(self, tmp_path, upstream):
        with _client(tmp_path, upstream) as client:
            resp = client.get(
                "/proxy",
                params={"url": "http://example.com/index.html"},
                headers={"origin": "http://elsewhere.test"},
            )
        assert resp.headers["access-control-allow-origin"] == "*"

    def test_cors_preflight(self, tmp_path, upstream):
        with _client(tmp_path, upstream) as client:
            resp = client.options(
                "/proxy?url=http%3A%2F%2Fexample.com%2F",
                headers={
                    "origin": "http://elsewhere.test",
                    "access-control-request-method": "POST",
                    "access-control-request-headers": "content-type",
                },
            )
        assert resp.status_code == 200
        assert "POST" in resp.headers["access-control-allow-methods"]
        assert upstream.requests == []

    def test_plain_get_on_ws(self, tmp_path, upstream):
        with _client(tmp_path, upstream) as client:
            resp = client.get("/ws", params={"url": "http://example.com/"})
        assert resp.status_code == 400
        assert resp.text == "Use WebSocket upgrade"

    def test_health(self, tmp_path, upstream):
        with _client(tmp_path, upstream, allowlist=["example.com"]) as client:
            resp = client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["rewrite"] is True
        assert data["policy"]["mode"] == "allowlist"
        assert data["policy"]["allow_rules"] == 1

    def test_static_ui_served(self, tmp_path, upstream):
        ui = tmp_path / "ui"
        ui.mkdir()
        (ui / "index.html").write_text("<h1>Waypoint</h1>", encoding="utf-8")
        with _client(tmp_path, upstream, static_dir=str(ui)) as client:
            index = client.get("/")
            proxied = client.get("/proxy", params={"url": "http://example.com/index.html"})
        assert index.status_code == 200
        assert "Waypoint" in index.text
        assert proxied.status_code == 200
        assert "<base" in proxied.text
