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
Waypoint -- API Middleware (request logging)

Every HTTP request is written to the live log with method, path,
status and latency. WebSocket upgrades bypass this middleware; the
bridge logs its own sessions.
"""

import time
import logging

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware

logger = logging.getLogger("waypoint.api.middleware")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every HTTP request with method, path, status, and latency."""

    # Skip noisy health checks
    _QUIET_PATHS = {"/health"}

    async def dispatch(self, request: Request, call_next):
        start = time.time()
        response = await call_next(request)
        latency_ms = int((time.time() - start) * 1000)
        path = request.url.path
        if path in self._QUIET_PATHS:
            return response

        log = getattr(request.app.state, "live_log", None)
        if log is not None:
            log.http_request(
                method=request.method,
                path=path,
                status=response.status_code,
                latency_ms=latency_ms,
            )
        else:
            logger.info("%s %s -> %d (%d ms)", request.method, path, response.status_code, latency_ms)
        return response
