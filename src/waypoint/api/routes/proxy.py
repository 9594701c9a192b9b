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
"""Waypoint -- Proxy Routes.

  ANY /proxy?url=<absolute URL>   proxied fetch (stream or rewrite)
  GET /ws?url=<absolute URL>      WebSocket bridge (upgrade only)
  GET /health                     liveness check
"""

from __future__ import annotations

import logging
import time

from fastapi import APIRouter, Request, WebSocket
from fastapi.responses import PlainTextResponse, Response

from waypoint import __version__
from waypoint.proxy import urls
from waypoint.proxy.audit import AuditEntry
from waypoint.proxy.fetcher import build_proxy_request
from waypoint.proxy.relay import relay_response

logger = logging.getLogger("waypoint.api.routes.proxy")

router = APIRouter(tags=["proxy"])

# Any method is forwarded upstream
PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


@router.api_route(urls.PROXY_PATH, methods=PROXY_METHODS)
async def proxy(request: Request) -> Response:
    """Fetch the ``url`` target and relay it back through the proxy."""
    state = request.app.state
    config = state.config
    client_ip = request.client.host if request.client else ""

    # Raises MalformedProxyURL / PolicyViolation, rendered by the app's error handler
    target = urls.validate_target(request.query_params.get(urls.URL_PARAM))
    hostname = state.policy.check(target)
    state.live_log.policy(hostname, allowed=True)

    proxy_request = await build_proxy_request(
        request.method,
        target,
        request.headers.items(),
        request.stream(),
        config.max_body_bytes,
        config.user_agent,
    )

    start = time.time()
    upstream = await state.fetcher.fetch(proxy_request)
    response, path = await relay_response(
        upstream,
        target,
        state.policy,
        config.enable_rewrite,
        method=request.method,
        is_disconnected=request.is_disconnected,
    )

    state.audit.log(
        AuditEntry.allowed(
            request.method,
            target,
            hostname,
            status_code=upstream.status_code,
            path=path.value,
            duration_ms=(time.time() - start) * 1000,
            request_size=proxy_request.body_size,
            client_ip=client_ip,
        )
    )
    return response


@router.get(urls.WEBSOCKET_PATH)
async def websocket_guidance() -> PlainTextResponse:
    """Plain GET on the bridge endpoint."""
    return PlainTextResponse("Use WebSocket upgrade", status_code=400)


@router.websocket(urls.WEBSOCKET_PATH)
async def websocket_bridge(websocket: WebSocket) -> None:
    """Bridge a WebSocket upgrade to the ``url`` target."""
    await websocket.app.state.bridge.handle(websocket)


@router.get("/health")
async def health_check(request: Request) -> dict:
    """Liveness check with the active policy and recent audit counts."""
    state = request.app.state
    return {
        "status": "ok",
        "version": __version__,
        "rewrite": state.config.enable_rewrite,
        "policy": state.policy.describe(),
        "audit": state.audit.get_stats() if state.audit.enabled else None,
    }
