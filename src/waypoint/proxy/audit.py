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
"""Proxy audit log.

Records every policy decision and upstream outcome as JSON Lines (one
object per line) so an operator can see which sites a sandboxed browser
reached and which were refused.

Auditing is optional: with no ``audit_log_path`` configured the logger
accepts entries and discards them.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import TextIO

logger = logging.getLogger("waypoint.proxy.audit")


@dataclass
class AuditEntry:
    """A single auditable proxy event."""

    timestamp: float
    event_type: str  # "request", "blocked", "malformed", "too_large", "error", "websocket"
    method: str
    url: str
    hostname: str = ""
    status_code: int = 0  # Status sent to the client (0 for aborted upgrades)
    request_size: int = 0
    duration_ms: float = 0.0
    path: str = ""  # "stream", "rewrite" or "" when no response was relayed
    reason: str = ""
    client_ip: str = ""

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def allowed(
        cls,
        method: str,
        url: str,
        hostname: str,
        status_code: int,
        path: str,
        duration_ms: float = 0.0,
        request_size: int = 0,
        client_ip: str = "",
    ) -> AuditEntry:
        """Create an entry for a relayed response."""
        return cls(
            timestamp=time.time(),
            event_type="request",
            method=method,
            url=url,
            hostname=hostname,
            status_code=status_code,
            path=path,
            duration_ms=duration_ms,
            request_size=request_size,
            client_ip=client_ip,
        )

    @classmethod
    def rejected(
        cls,
        event_type: str,
        method: str,
        url: str,
        status_code: int,
        reason: str,
        hostname: str = "",
        client_ip: str = "",
    ) -> AuditEntry:
        """Create an entry for a request that ended before or at the upstream fetch."""
        return cls(
            timestamp=time.time(),
            event_type=event_type,
            method=method,
            url=url,
            hostname=hostname,
            status_code=status_code,
            reason=reason,
            client_ip=client_ip,
        )

    @classmethod
    def websocket(
        cls,
        url: str,
        hostname: str,
        accepted: bool,
        reason: str = "",
        client_ip: str = "",
    ) -> AuditEntry:
        """Create an entry for a WebSocket bridge attempt."""
        return cls(
            timestamp=time.time(),
            event_type="websocket" if accepted else "blocked",
            method="GET",
            url=url,
            hostname=hostname,
            status_code=101 if accepted else 0,
            reason=reason,
            client_ip=client_ip,
        )


class AuditLogger:
    """Append-only JSON Lines writer.

    All proxy tasks run on one event loop, so writes are never
    interleaved and no lock is taken.
    """

    def __init__(self, log_path: str | Path | None = None) -> None:
        self._path = Path(log_path) if log_path else None
        if self._path is not None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
        self._file: TextIO | None = None
        self._entry_count = 0

    @property
    def enabled(self) -> bool:
        return self._path is not None

    @property
    def path(self) -> Path | None:
        return self._path

    @property
    def entry_count(self) -> int:
        """Number of entries written in this session."""
        return self._entry_count

    def _ensure_open(self) -> TextIO:
        if self._file is None or self._file.closed:
            self._file = open(self._path, "a", encoding="utf-8")
        return self._file

    def log(self, entry: AuditEntry) -> None:
        """Write an audit entry (no-op when auditing is disabled)."""
        if self._path is None:
            return
        try:
            f = self._ensure_open()
            f.write(entry.to_json() + "\n")
            f.flush()
            self._entry_count += 1
        except OSError as exc:
            logger.error("Failed to write audit entry: %s", exc)

    def close(self) -> None:
        if self._file and not self._file.closed:
            self._file.close()
        self._file = None

    def read_recent(self, n: int = 50) -> list[AuditEntry]:
        """Read the N most recent audit entries."""
        if self._path is None or not self._path.exists():
            return []

        entries: list[AuditEntry] = []
        try:
            lines = self._path.read_text(encoding="utf-8").strip().splitlines()
        except OSError as exc:
            logger.error("Failed to read audit log: %s", exc)
            return []
        for line in lines[-n:]:
            try:
                entries.append(AuditEntry(**json.loads(line)))
            except (json.JSONDecodeError, TypeError):
                continue
        return entries

    def get_stats(self) -> dict:
        """Summary counts over the most recent 1000 entries."""
        entries = self.read_recent(1000)
        by_type: dict[str, int] = {}
        for entry in entries:
            by_type[entry.event_type] = by_type.get(entry.event_type, 0) + 1
        return {
            "total": len(entries),
            "relayed": by_type.get("request", 0),
            "blocked": by_type.get("blocked", 0),
            "malformed": by_type.get("malformed", 0),
            "too_large": by_type.get("too_large", 0),
            "errors": by_type.get("error", 0),
            "websockets": by_type.get("websocket", 0),
            "unique_hosts": len({e.hostname for e in entries if e.hostname}),
        }

    def __enter__(self):
        return self

    def __exit__(self, *args):
        self.close()
