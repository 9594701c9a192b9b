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
"""Response relay -- classifier, header policy and the two body paths.

For every upstream response:

  1. Headers are filtered (hop-by-hop and framing-control headers are
     dropped) and ``Location`` is resolved, policy-checked and rewritten
     into a proxy URL.
  2. The content type picks the body path *before* any body byte is read:
       - Streaming Path: raw upstream bytes piped to the client chunk by
         chunk, one read per completed write
       - Rewrite Path: HTML buffered, rewritten, re-serialized as UTF-8
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable
from enum import Enum

import httpx
from starlette.background import BackgroundTask
from starlette.responses import Response, StreamingResponse

from . import urls
from .errors import UpstreamUnavailable
from .fetcher import UpstreamResponse
from .policy import HostPolicy
from .rewrite import rewrite_html

logger = logging.getLogger("waypoint.proxy.relay")

# Meaningful for a single connection only
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)

# Would stop the proxied page from rendering inside the proxy's own frame
FRAMING_HEADERS = frozenset(
    {
        "x-frame-options",
        "content-security-policy",
        "content-security-policy-report-only",
    }
)

DROPPED_RESPONSE_HEADERS = HOP_BY_HOP_HEADERS | FRAMING_HEADERS

# Describe the upstream body and are replaced after rewriting
_BODY_HEADERS = frozenset({"content-length", "content-encoding", "content-type"})

REWRITTEN_CONTENT_TYPE = "text/html; charset=utf-8"


class ResponsePath(str, Enum):
    STREAM = "stream"
    REWRITE = "rewrite"


def is_html(content_type: str | None) -> bool:
    return (content_type or "").strip().lower().startswith("text/html")


def choose_path(content_type: str | None, rewrite_enabled: bool) -> ResponsePath:
    """Pick the body path from the content type and the rewrite switch."""
    if not is_html(content_type) or not rewrite_enabled:
        return ResponsePath.STREAM
    return ResponsePath.REWRITE


def relay_headers(
    headers: Iterable[tuple[str, str]],
    target_url: str,
    policy: HostPolicy,
) -> list[tuple[str, str]]:
    """Apply the relay policy to upstream headers.

    ``Location`` is resolved against the target URL and replaced by its
    proxy URL. An unresolvable Location is dropped; one pointing at a
    host the policy rejects raises ``PolicyViolation``.
    """
    relayed: list[tuple[str, str]] = []
    for key, value in headers:
        key_lower = key.lower()
        if key_lower in DROPPED_RESPONSE_HEADERS:
            continue
        if key_lower == "location":
            absolute = urls.resolve(target_url, value)
            if absolute is None:
                logger.debug("Dropping unresolvable Location %r", value)
                continue
            policy.check(absolute, source="redirect")
            value = urls.encode(absolute)
        relayed.append((key, value))
    return relayed


async def _pipe(upstream: UpstreamResponse) -> AsyncIterator[bytes]:
    try:
        async for chunk in upstream.iter_raw():
            yield chunk
    except httpx.HTTPError as exc:
        # Status and headers are already on the wire; all we can do is cut the connection
        logger.warning("Upstream stream failed mid-transfer: %s", exc)
        await upstream.aclose()
        raise


def stream_response(upstream: UpstreamResponse, headers: list[tuple[str, str]]) -> StreamingResponse:
    """Streaming Path: relay the upstream body byte-for-byte."""
    response = StreamingResponse(
        _pipe(upstream),
        status_code=upstream.status_code,
        background=BackgroundTask(upstream.aclose),
    )
    for key, value in headers:
        response.headers.append(key, value)
    return response


async def rewrite_response(
    upstream: UpstreamResponse,
    headers: list[tuple[str, str]],
    target_url: str,
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> Response:
    """Rewrite Path: buffer, rewrite and re-serialize an HTML document.

    If rewriting fails the original (decoded) bytes are returned with the
    upstream content type. If the client went away while the document
    was being transformed, the result is discarded.
    A transport failure while the body is buffered becomes
    ``UpstreamUnavailable``.
    """
    try:
        body = await upstream.read()
    except httpx.HTTPError as exc:
        # Nothing has been sent yet, so this is still a clean 502
        logger.warning("Upstream body read failed for %s: %s", target_url, exc)
        raise UpstreamUnavailable(cause=exc) from exc
    finally:
        await upstream.aclose()

    kept = [(k, v) for k, v in headers if k.lower() not in _BODY_HEADERS]
    try:
        payload = rewrite_html(body, target_url, charset=upstream.charset).encode("utf-8")
        content_type = REWRITTEN_CONTENT_TYPE
    except Exception as exc:
        logger.warning("HTML rewrite failed for %s -- relaying original: %s", target_url, exc)
        payload = body
        content_type = upstream.content_type

    if is_disconnected is not None and await is_disconnected():
        logger.debug("Client disconnected during rewrite of %s -- discarding", target_url)
        return Response(status_code=upstream.status_code)

    response = Response(content=payload, status_code=upstream.status_code)
    for key, value in kept:
        response.headers.append(key, value)
    if content_type:
        response.headers["content-type"] = content_type
    return response


async def relay_response(
    upstream: UpstreamResponse,
    target_url: str,
    policy: HostPolicy,
    rewrite_enabled: bool,
    method: str = "GET",
    is_disconnected: Callable[[], Awaitable[bool]] | None = None,
) -> tuple[Response, ResponsePath]:
    """Build the client response for an upstream response.

    Header relay (including the Location policy check) happens before
    either body path starts. On a policy rejection the upstream
    connection is released and the ``PolicyViolation`` propagates.
    """
    try:
        headers = relay_headers(upstream.headers, target_url, policy)
    except Exception:
        await upstream.aclose()
        raise

    path = choose_path(upstream.content_type, rewrite_enabled)
    # Nothing to rewrite in a bodyless response
    if method.upper() == "HEAD" or upstream.status_code in (204, 304):
        path = ResponsePath.STREAM

    if path is ResponsePath.STREAM:
        return stream_response(upstream, headers), path
    return await rewrite_response(upstream, headers, target_url, is_disconnected), path
