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
"""URL codec -- absolute target URLs <-> proxy URLs.

A proxy URL embeds the full target as a single query parameter:

    http://example.com/a?b=c  <->  /proxy?url=http%3A%2F%2Fexample.com%2Fa%3Fb%3Dc

Encoding escapes everything except the ``encodeURIComponent`` set
(letters, digits and ``-_.!~*'()``) so the browser-side interceptor and
the server produce identical URLs, and decoding is an exact inverse.
"""

from __future__ import annotations

from urllib.parse import parse_qsl, quote, urljoin, urlsplit, urlunsplit

from .errors import MalformedProxyURL

PROXY_PATH = "/proxy"
WEBSOCKET_PATH = "/ws"
URL_PARAM = "url"

# Schemes a proxied target may use
HTTP_SCHEMES = frozenset({"http", "https"})

_WS_SCHEME_MAP = {"http": "ws", "https": "wss", "ws": "ws", "wss": "wss"}

# quote() already leaves letters, digits and "_.-~" alone
_COMPONENT_SAFE = "!*'()"

# Characters no hostname may contain
_INVALID_HOST_CHARS = frozenset('<>"{}|\\^`')


def _valid_hostname(hostname: str | None) -> bool:
    if not hostname:
        return False
    return not any(
        ch.isspace() or ord(ch) < 0x20 or ord(ch) == 0x7F or ch in _INVALID_HOST_CHARS
        for ch in hostname
    )


def encode(absolute_url: str, endpoint: str = PROXY_PATH) -> str:
    """Build the proxy URL for an absolute target URL."""
    return f"{endpoint}?{URL_PARAM}={quote(absolute_url, safe=_COMPONENT_SAFE)}"


def decode(proxy_url: str) -> str:
    """Extract and validate the absolute target URL from a proxy URL."""
    query = urlsplit(proxy_url).query
    for key, value in parse_qsl(query, keep_blank_values=True):
        if key == URL_PARAM:
            return validate_target(value)
    raise MalformedProxyURL("Missing ?url=")


def validate_target(raw: str | None) -> str:
    """Validate a raw ``url`` parameter value and return it unchanged.

    Raises:
        MalformedProxyURL: missing, not an absolute URL, or not http/https.
    """
    if not raw:
        raise MalformedProxyURL("Missing ?url=")
    try:
        parts = urlsplit(raw)
        parts.port  # raises ValueError on a bad port
    except ValueError:
        raise MalformedProxyURL("Invalid URL") from None
    if not parts.scheme:
        raise MalformedProxyURL("Invalid URL")
    if parts.scheme.lower() not in HTTP_SCHEMES:
        raise MalformedProxyURL("Only http/https are supported")
    if not _valid_hostname(parts.hostname):
        raise MalformedProxyURL("Invalid URL")
    return raw


def resolve(base: str, href: str | None) -> str | None:
    """Resolve a possibly-relative reference against an absolute base URL.

    Returns None for references that do not resolve to an http(s) URL
    (empty strings, ``javascript:``, ``mailto:``, ``data:`` ...). Those
    must be left exactly as they are.
    """
    if href is None:
        return None
    href = href.strip()
    if not href:
        return None
    try:
        absolute = urljoin(base, href)
        parts = urlsplit(absolute)
        parts.port
    except ValueError:
        return None
    if parts.scheme.lower() not in HTTP_SCHEMES or not _valid_hostname(parts.hostname):
        return None
    return absolute


def to_websocket_url(url: str) -> str:
    """Map a bridge target to the ws/wss URL the origin is dialed with.

    ``http``/``https`` targets are translated to ``ws``/``wss``; fragments
    are dropped since they are not part of a WebSocket handshake.
    """
    if not url:
        raise MalformedProxyURL("Missing ?url=")
    try:
        parts = urlsplit(url)
        parts.port
    except ValueError:
        raise MalformedProxyURL("Invalid URL") from None
    scheme = _WS_SCHEME_MAP.get(parts.scheme.lower())
    if scheme is None:
        raise MalformedProxyURL("Only http/https/ws/wss are supported")
    if not _valid_hostname(parts.hostname):
        raise MalformedProxyURL("Invalid URL")
    return urlunsplit((scheme, parts.netloc, parts.path or "/", parts.query, ""))
