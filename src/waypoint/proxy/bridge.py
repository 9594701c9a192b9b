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
"""WebSocket bridge.

Handles upgrades on ``/ws?url=<target>``:

  Browser --ws--> Waypoint --ws/wss--> origin

The target passes the same host policy as ``/proxy`` targets. A missing,
malformed or rejected target (or an origin that refuses the handshake)
is refused before the client handshake completes: no WebSocket session
is ever established and no close frame is exchanged. ASGI has no way to
drop the socket outright, so the refusal is a close before ``accept()``,
which the server answers with an HTTP 403 on the upgrade request.

Once both sides are open, text and binary frames are relayed in both
directions until either side closes; the other side is then closed too.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from urllib.parse import urlsplit

from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState
from websockets.asyncio.client import ClientConnection, connect
from websockets.exceptions import ConnectionClosed, WebSocketException

from . import urls
from .audit import AuditEntry, AuditLogger
from .config import DEFAULT_USER_AGENT
from .errors import PolicyViolation, ProxyError
from .policy import HostPolicy

logger = logging.getLogger("waypoint.proxy.bridge")

# Inbound headers worth carrying to the origin's handshake
_FORWARDED_HANDSHAKE_HEADERS = ("cookie", "accept-language")

# Close codes that must never be sent in a close frame
_RESERVED_CLOSE_CODES = frozenset({1005, 1006, 1015})


def resolve_bridge_target(raw: str | None, policy: HostPolicy) -> str:
    """Validate and policy-check a bridge target; return the ws/wss URL to dial."""
    ws_url = urls.to_websocket_url(raw or "")
    policy.check(ws_url, source="websocket")
    return ws_url


class WebSocketBridge:
    """Relays one client WebSocket to its origin per call to ``handle``."""

    def __init__(
        self,
        policy: HostPolicy,
        audit: AuditLogger | None = None,
        user_agent: str = DEFAULT_USER_AGENT,
        open_timeout: float = 30.0,
        on_session: Callable[[str, str, bool], None] | None = None,
        on_policy: Callable[[str, bool], None] | None = None,
    ) -> None:
        self._policy = policy
        self._audit = audit or AuditLogger()
        self._user_agent = user_agent
        self._open_timeout = open_timeout
        self._on_session = on_session
        self._on_policy = on_policy

    async def handle(self, websocket: WebSocket) -> None:
        raw = websocket.query_params.get(urls.URL_PARAM)
        client_ip = websocket.client.host if websocket.client else ""

        try:
            target = resolve_bridge_target(raw, self._policy)
        except ProxyError as exc:
            if isinstance(exc, PolicyViolation) and self._on_policy is not None:
                self._on_policy(exc.hostname, False)
            logger.info("Refusing WebSocket upgrade to %r: %s", raw, exc.message)
            self._audit.log(
                AuditEntry.websocket(
                    raw or "", getattr(exc, "hostname", ""), False, exc.message, client_ip
                )
            )
            await self._refuse(websocket)
            return

        hostname = urlsplit(target).hostname or ""
        if self._on_policy is not None:
            self._on_policy(hostname, True)

        try:
            upstream = await self._dial(websocket, target)
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            logger.warning("WebSocket origin %s unreachable: %s", target, exc)
            self._audit.log(AuditEntry.websocket(target, hostname, False, f"origin: {exc}", client_ip))
            await self._refuse(websocket)
            return

        self._audit.log(AuditEntry.websocket(target, hostname, True, client_ip=client_ip))
        self._notify(client_ip, target, True)
        try:
            await websocket.accept(subprotocol=upstream.subprotocol)
            await self._relay(websocket, upstream)
        finally:
            await upstream.close()
            if websocket.client_state == WebSocketState.CONNECTED:
                code = upstream.close_code
                if code is None or code in _RESERVED_CLOSE_CODES:
                    code = 1000
                try:
                    await websocket.close(code=code)
                except RuntimeError as exc:
                    logger.debug("Client socket already gone: %s", exc)
            self._notify(client_ip, target, False)

    async def _dial(self, websocket: WebSocket, target: str) -> ClientConnection:
        headers = [
            (name, websocket.headers[name])
            for name in _FORWARDED_HANDSHAKE_HEADERS
            if name in websocket.headers
        ]
        subprotocols = websocket.scope.get("subprotocols") or None
        return await connect(
            target,
            subprotocols=subprotocols,
            additional_headers=headers,
            user_agent_header=websocket.headers.get("user-agent") or self._user_agent,
            open_timeout=self._open_timeout,
        )

    async def _refuse(self, websocket: WebSocket) -> None:
        # Closing before accept() rejects the handshake itself
        await websocket.close()

    async def _relay(self, websocket: WebSocket, upstream: ClientConnection) -> None:
        tasks = [
            asyncio.create_task(self._client_to_origin(websocket, upstream)),
            asyncio.create_task(self._origin_to_client(websocket, upstream)),
        ]
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)
        for task in done:
            exc = task.exception()
            if exc is not None and not isinstance(exc, (ConnectionClosed, WebSocketDisconnect)):
                logger.warning("WebSocket relay ended with error: %s", exc)

    @staticmethod
    async def _client_to_origin(websocket: WebSocket, upstream: ClientConnection) -> None:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return
            if message.get("text") is not None:
                await upstream.send(message["text"])
            elif message.get("bytes") is not None:
                await upstream.send(message["bytes"])

    @staticmethod
    async def _origin_to_client(websocket: WebSocket, upstream: ClientConnection) -> None:
        async for data in upstream:
            if isinstance(data, str):
                await websocket.send_text(data)
            else:
                await websocket.send_bytes(data)

    def _notify(self, client_ip: str, target: str, opened: bool) -> None:
        if self._on_session is not None:
            self._on_session(client_ip, target, opened)
