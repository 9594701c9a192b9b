# Waypoint
# Copyright (C) 2025 Phoenix Link (Pty) Ltd. All Rights Reserved.
#
# This file is part of Waypoint.
#
# Waypoint is dual-licensed:
#
# 1. Open Source: GNU Affero General Public License v3.0 (AGPL-3.0)
#    You may use, modify, and distribute this file under AGPL-3.0.
#    See LICENSE for the full text.
#
# 2. Commercial: Available from Phoenix Link (Pty) Ltd
#    For proprietary use, SaaS deployment, or enterprise licensing.
#    See LICENSE-ENTERPRISE.md or contact info@phoenixlink.co.za
#
# Contributions require a signed CLA. See COPYRIGHT.md and CLA.md.
"""Upstream fetcher.

Mirrors an inbound browser request toward the target origin:

  - browser-identity headers (host, origin, referer) and encoding
    negotiation are stripped, hop-by-hop headers are never forwarded
  - bodies of non-GET/HEAD requests are read incrementally against a
    byte ceiling *before* any upstream connection is opened
  - redirects are never followed here; they are surfaced to the
    response relay, which rewrites ``Location``
  - the response is opened in streaming mode: status and headers are
    available immediately, the body is pulled on demand

Transport failures and timeouts become ``UpstreamUnavailable``. There
are no retries.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from dataclasses import dataclass, field

import httpx

from .config import DEFAULT_USER_AGENT
from .errors import PayloadTooLarge, UpstreamUnavailable

logger = logging.getLogger("waypoint.proxy.fetcher")

# Methods that never carry a request body upstream
_BODYLESS_METHODS = frozenset({"GET", "HEAD"})

# Inbound headers that identify the browser's view of the proxy, or that
# would make the upstream compress in a way we do not control
_STRIPPED_REQUEST_HEADERS = frozenset(
    {
        "host",
        "origin",
        "referer",
        "accept-encoding",
    }
)

# Connection-level headers; httpx frames the outbound request itself
_HOP_BY_HOP_REQUEST_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
        "content-length",
    }
)


@dataclass
class ProxyRequest:
    """The outbound request, built from one inbound request."""

    method: str
    url: str
    headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes | None = None

    @property
    def body_size(self) -> int:
        return len(self.body) if self.body else 0


class UpstreamResponse:
    """Upstream status, headers and a body that can be consumed once.

    The body is consumed either as a raw byte stream (``iter_raw``) or
    fully buffered and decoded (``read``), never both.
    """

    def __init__(self, response: httpx.Response) -> None:
        self._response = response
        self._consumed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def headers(self) -> list[tuple[str, str]]:
        """Header list in upstream order, duplicates preserved."""
        return [
            (key.decode("latin-1"), value.decode("latin-1"))
            for key, value in self._response.headers.raw
        ]

    def header(self, name: str) -> str | None:
        return self._response.headers.get(name)

    @property
    def content_type(self) -> str:
        return self._response.headers.get("content-type", "")

    @property
    def charset(self) -> str | None:
        """Charset declared in the content-type header, if any."""
        return self._response.charset_encoding

    def _claim(self) -> None:
        if self._consumed:
            raise RuntimeError("Upstream body already consumed")
        self._consumed = True

    async def iter_raw(self) -> AsyncIterator[bytes]:
        """Yield the body exactly as sent by the origin (no decompression)."""
        self._claim()
        async for chunk in self._response.aiter_raw():
            yield chunk

    async def read(self) -> bytes:
        """Buffer the whole body, with content-encoding removed."""
        self._claim()
        await self._response.aread()
        return self._response.content

    async def aclose(self) -> None:
        """Release the upstream connection (safe to call more than once)."""
        await self._response.aclose()


def forward_headers(
    inbound: Iterable[tuple[str, str]],
    user_agent: str = DEFAULT_USER_AGENT,
) -> list[tuple[str, str]]:
    """Copy inbound headers for the upstream request."""
    headers: list[tuple[str, str]] = []
    has_user_agent = False
    for key, value in inbound:
        key_lower = key.lower()
        if key_lower in _STRIPPED_REQUEST_HEADERS or key_lower in _HOP_BY_HOP_REQUEST_HEADERS:
            continue
        if key_lower == "user-agent":
            if not value:
                continue
            has_user_agent = True
        headers.append((key, value))
    if not has_user_agent:
        headers.append(("user-agent", user_agent))
    return headers


async def read_body(chunks: AsyncIterable[bytes], limit_bytes: int) -> bytes:
    """Read a request body incrementally, enforcing a size ceiling.

    Raises:
        PayloadTooLarge: as soon as the running total exceeds the limit.
    """
    parts: list[bytes] = []
    size = 0
    async for chunk in chunks:
        if not chunk:
            continue
        size += len(chunk)
        if size > limit_bytes:
            logger.warning("Request body exceeds %d bytes -- rejecting", limit_bytes)
            raise PayloadTooLarge(limit_bytes)
        parts.append(chunk)
    return b"".join(parts)


async def build_proxy_request(
    method: str,
    url: str,
    inbound_headers: Iterable[tuple[str, str]],
    body_chunks: AsyncIterable[bytes] | None,
    max_body_bytes: int,
    user_agent: str = DEFAULT_USER_AGENT,
) -> ProxyRequest:
    """Build the outbound request; the body is read only for non-GET/HEAD."""
    method = method.upper()
    body = None
    if method not in _BODYLESS_METHODS and body_chunks is not None:
        body = await read_body(body_chunks, max_body_bytes)
    return ProxyRequest(
        method=method,
        url=url,
        headers=forward_headers(inbound_headers, user_agent),
        body=body,
    )


class UpstreamFetcher:
    """Issues proxied requests over a shared ``httpx.AsyncClient``.

    The client is owned by the application lifespan; the fetcher keeps no
    per-request state.
    """

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def fetch(self, proxy_request: ProxyRequest) -> UpstreamResponse:
        """Send the request and return once status and headers arrive."""
        request = self._client.build_request(
            proxy_request.method,
            proxy_request.url,
            headers=proxy_request.headers,
            content=proxy_request.body,
        )
        try:
            response = await self._client.send(request, stream=True, follow_redirects=False)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            logger.error(
                "Upstream request failed: %s %s -- %s",
                proxy_request.method,
                proxy_request.url,
                exc,
            )
            raise UpstreamUnavailable(cause=exc) from exc
        logger.debug(
            "Upstream %s %s -> %d",
            proxy_request.method,
            proxy_request.url,
            response.status_code,
        )
        return UpstreamResponse(response)


def create_client(timeout: float = 30.0) -> httpx.AsyncClient:
    """Create the shared upstream client (redirects off, pooled connections)."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        follow_redirects=False,
    )
