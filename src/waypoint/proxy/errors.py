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
"""Proxy failure conditions.

Every condition that ends a request early is a ``ProxyError`` subclass
carrying the HTTP status the client receives. None of them is retried.
The HTTP layer renders them as plain-text bodies.
"""

from __future__ import annotations


class ProxyError(Exception):
    """Base class for terminal proxy failures."""

    status_code: int = 500
    event_type: str = "error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class MalformedProxyURL(ProxyError, ValueError):
    """The ``url`` parameter is missing, malformed, or not http/https."""

    status_code = 400
    event_type = "malformed"


class PolicyViolation(ProxyError):
    """The target host is rejected by the allow/block rules."""

    status_code = 403
    event_type = "blocked"

    def __init__(
        self, hostname: str, message: str = "Blocked by policy", source: str = "proxy"
    ) -> None:
        super().__init__(message)
        self.hostname = hostname
        # Which check refused it: proxy, redirect or websocket
        self.source = source


class PayloadTooLarge(ProxyError):
    """The inbound request body exceeds the configured ceiling."""

    status_code = 413
    event_type = "too_large"

    def __init__(self, limit_bytes: int, message: str = "Payload too large") -> None:
        super().__init__(message)
        self.limit_bytes = limit_bytes


class UpstreamUnavailable(ProxyError):
    """The upstream fetch failed at the transport level or timed out."""

    status_code = 502
    event_type = "error"

    def __init__(self, message: str = "Upstream fetch failed", cause: Exception | None = None) -> None:
        super().__init__(message)
        self.cause = cause
