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
Waypoint -- Live Logger

Human-readable, component-tagged log of what the proxy is doing:
server lifecycle, every HTTP request, policy refusals, WebSocket
sessions.

LOG LOCATION:
    <log_dir>/waypoint.log        (current, 10 MB before rotation)
    <log_dir>/waypoint.log.1      (previous rotation)

With no log_dir only WARNING+ reaches stderr.

USAGE:
    log = WaypointLogger(log_dir="~/.waypoint/logs")
    log.http_request(method="GET", path="/proxy", status=200, latency_ms=42)
    log.policy("evil.example.com", allowed=False, source="redirect")
"""

import logging
import logging.handlers
import sys
from datetime import datetime, timezone
from pathlib import Path

MAX_LOG_FILE_BYTES = 10 * 1024 * 1024  # 10 MB per file
LOG_BACKUP_COUNT = 5
LOG_FILE_NAME = "waypoint.log"


class WaypointLogFormatter(logging.Formatter):
    """
    Format: TIMESTAMP | LEVEL | COMPONENT | MESSAGE | {structured fields}

    Example:
    2026-02-09T17:30:45.123Z | HTTP  | Server       | GET /proxy -> 200 | method="GET" status=200 latency_ms=41
    2026-02-09T17:30:46.501Z | SEC   | Policy       | Host refused | host="evil.com" source="proxy"
    """

    LEVEL_WIDTH = 5
    COMPONENT_WIDTH = 12

    def format(self, record: logging.LogRecord) -> str:
        now = datetime.now(timezone.utc)
        ts = now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"

        level = getattr(record, "waypoint_level", record.levelname)
        component = getattr(record, "component", "System")
        message = record.getMessage()

        fields = getattr(record, "fields", {})
        field_str = ""
        if fields:
            parts = []
            for k, v in fields.items():
                if isinstance(v, str):
                    parts.append(f'{k}="{v}"')
                elif isinstance(v, float):
                    parts.append(f"{k}={v:.3f}")
                else:
                    parts.append(f"{k}={v}")
            field_str = " | " + " ".join(parts)

        return (
            f"{ts} | {level:<{self.LEVEL_WIDTH}} | "
            f"{component:<{self.COMPONENT_WIDTH}} | {message}{field_str}"
        )


class WaypointLogger:
    """
    Live logger for the proxy process.

    - Rotating file in log_dir (when configured)
    - WARNING+ mirrored to stderr
    - Component-tagged entries with structured fields
    """

    def __init__(self, log_dir: str | None = None, name: str = "waypoint.live"):
        self._logger = logging.getLogger(name)
        self._logger.setLevel(logging.DEBUG)
        self._logger.propagate = False

        # Remove existing handlers to avoid duplicates
        for handler in list(self._logger.handlers):
            self._logger.removeHandler(handler)
            handler.close()

        self._log_file: Path | None = None
        if log_dir:
            directory = Path(log_dir).expanduser()
            directory.mkdir(parents=True, exist_ok=True)
            self._log_file = directory / LOG_FILE_NAME
            file_handler = logging.handlers.RotatingFileHandler(
                str(self._log_file),
                maxBytes=MAX_LOG_FILE_BYTES,
                backupCount=LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(WaypointLogFormatter())
            self._logger.addHandler(file_handler)

        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setLevel(logging.WARNING)
        stderr_handler.setFormatter(WaypointLogFormatter())
        self._logger.addHandler(stderr_handler)

        self._request_count = 0

    def _log(self, level: int, waypoint_level: str, component: str, message: str, **fields):
        record = self._logger.makeRecord(
            name=self._logger.name,
            level=level,
            fn="",
            lno=0,
            msg=message,
            args=(),
            exc_info=None,
        )
        record.component = component
        record.waypoint_level = waypoint_level
        record.fields = fields
        self._logger.handle(record)

    # =========================================================================
    # Standard levels
    # =========================================================================

    def info(self, component: str, message: str, **fields):
        self._log(logging.INFO, "INFO", component, message, **fields)

    def warn(self, component: str, message: str, **fields):
        self._log(logging.WARNING, "WARN", component, message, **fields)

    def error(self, component: str, message: str, **fields):
        self._log(logging.ERROR, "ERROR", component, message, **fields)

    # =========================================================================
    # Proxy events
    # =========================================================================

    def server_start(self, host: str = "", port: int = 0, **fields):
        """Log server startup."""
        fields.update(host=host, port=port)
        self._log(logging.INFO, "BOOT", "Server", "Proxy started", **fields)

    def server_stop(self, **fields):
        """Log server shutdown."""
        fields.update(requests_served=self._request_count)
        self._log(logging.INFO, "HALT", "Server", "Proxy stopped", **fields)

    def http_request(
        self, method: str, path: str, status: int = 200, latency_ms: int = 0, **fields
    ):
        """Log an HTTP request."""
        fields.update(method=method, path=path, status=status, latency_ms=latency_ms)
        level = logging.INFO if status < 400 else logging.WARNING
        self._log(level, "HTTP", "Server", f"{method} {path} -> {status}", **fields)
        self._request_count += 1

    def policy(self, host: str, allowed: bool, source: str = "proxy", **fields):
        """Log a host policy decision (source: proxy, redirect or websocket)."""
        fields.update(host=host, source=source)
        if allowed:
            self._log(logging.DEBUG, "SEC", "Policy", "Host allowed", **fields)
        else:
            self._log(logging.INFO, "SEC", "Policy", "Host refused", **fields)

    def ws_connect(self, client: str = "", target: str = "", **fields):
        fields.update(client=client, target=target)
        self._log(logging.INFO, "WS", "WebSocket", "Bridge opened", **fields)

    def ws_disconnect(self, client: str = "", target: str = "", **fields):
        fields.update(client=client, target=target)
        self._log(logging.INFO, "WS", "WebSocket", "Bridge closed", **fields)

    @property
    def log_file(self) -> str | None:
        return str(self._log_file) if self._log_file else None

    @property
    def request_count(self) -> int:
        return self._request_count
