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
"""
Waypoint -- API Server

FastAPI application for the proxy: the /proxy and /ws routes, CORS for
the browser UI, request logging, and the static UI at "/".

Run with: uvicorn --factory waypoint.api.server:create_app --port 10000
or:       python -m waypoint.server
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path

import httpx
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from fastapi.staticfiles import StaticFiles

from waypoint import __version__
from waypoint.api.middleware import RequestLoggingMiddleware
from waypoint.api.routes.proxy import router as proxy_router
from waypoint.core.logging import WaypointLogger
from waypoint.proxy import urls
from waypoint.proxy.audit import AuditEntry, AuditLogger
from waypoint.proxy.bridge import WebSocketBridge
from waypoint.proxy.config import ProxyConfig, load_config
from waypoint.proxy.errors import PayloadTooLarge, PolicyViolation, ProxyError, UpstreamUnavailable
from waypoint.proxy.fetcher import UpstreamFetcher, create_client


def create_app(
    config: ProxyConfig | None = None,
    client: httpx.AsyncClient | None = None,
) -> FastAPI:
    """Build the proxy application.

    Args:
        config: Resolved configuration (loaded from file/env when None).
        client: Upstream HTTP client. When None one is created here and
                closed on shutdown; a caller-supplied client is left open.
    """
    config = config or load_config()
    policy = config.build_policy()
    owns_client = client is None
    upstream_client = client or create_client(config.upstream_timeout)
    audit = AuditLogger(config.audit_log_path or None)
    live_log = WaypointLogger(config.log_dir or None)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        live_log.server_start(
            host=config.host,
            port=config.port,
            version=__version__,
            rewrite=config.enable_rewrite,
            **policy.describe(),
        )
        try:
            yield
        finally:
            if owns_client:
                await upstream_client.aclose()
            audit.close()
            live_log.server_stop()

    app = FastAPI(
        title="Waypoint",
        description="Education-mode web proxy",
        version=__version__,
        lifespan=lifespan,
    )

    # Process-wide, read-only after this point
    app.state.config = config
    app.state.policy = policy
    app.state.fetcher = UpstreamFetcher(upstream_client)
    app.state.audit = audit
    app.state.live_log = live_log

    def _on_session(client_ip: str, target: str, opened: bool) -> None:
        if opened:
            live_log.ws_connect(client=client_ip, target=target)
        else:
            live_log.ws_disconnect(client=client_ip, target=target)

    app.state.bridge = WebSocketBridge(
        policy,
        audit=audit,
        user_agent=config.user_agent,
        open_timeout=config.upstream_timeout,
        on_session=_on_session,
        on_policy=lambda host, allowed: live_log.policy(host, allowed, source="websocket"),
    )

    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["GET", "POST", "HEAD", "OPTIONS"],
        allow_headers=["Content-Type", "Range"],
    )

    @app.exception_handler(ProxyError)
    async def _proxy_error(request: Request, exc: ProxyError) -> PlainTextResponse:
        hostname = getattr(exc, "hostname", "")
        target = request.query_params.get(urls.URL_PARAM, "")
        if isinstance(exc, PolicyViolation):
            live_log.policy(hostname, allowed=False, source=exc.source)
        elif isinstance(exc, UpstreamUnavailable):
            live_log.error("Upstream", exc.message, url=target, cause=str(exc.cause or ""))
        elif isinstance(exc, PayloadTooLarge):
            live_log.warn("Upstream", exc.message, url=target, limit_bytes=exc.limit_bytes)
        audit.log(
            AuditEntry.rejected(
                exc.event_type,
                request.method,
                target,
                exc.status_code,
                exc.message,
                hostname=hostname,
                client_ip=request.client.host if request.client else "",
            )
        )
        return PlainTextResponse(exc.message, status_code=exc.status_code)

    app.include_router(proxy_router)

    # Static UI last, so it never shadows the proxy routes
    static_dir = Path(config.static_dir)
    if static_dir.is_dir():
        app.mount("/", StaticFiles(directory=str(static_dir), html=True), name="static")
    else:
        live_log.info("Server", "Static UI disabled", static_dir=str(static_dir))

    return app
