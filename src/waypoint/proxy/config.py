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
"""Proxy configuration schema.

Configuration is resolved once, at process start, from three layers
(later layers win):

  1. ~/.waypoint/proxy.yaml  (or $WAYPOINT_CONFIG, or --config PATH)
  2. Environment: PORT, ALLOWLIST, BLOCKLIST, ENABLE_REWRITE, MAX_BODY_MB
  3. CLI flags (applied by waypoint.server)

The resulting ``ProxyConfig`` is never re-read per request. The host
policy derived from it is immutable.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .policy import HostPolicy, PolicyRuleSet

logger = logging.getLogger("waypoint.proxy.config")

# ---------------------------------------------------------------------------
# Default paths
# ---------------------------------------------------------------------------
_WAYPOINT_HOME = Path(os.environ.get("WAYPOINT_HOME", Path.home() / ".waypoint"))
DEFAULT_CONFIG_PATH = _WAYPOINT_HOME / "proxy.yaml"
DEFAULT_LOG_DIR = _WAYPOINT_HOME / "logs"

DEFAULT_PORT = 10000
DEFAULT_MAX_BODY_MB = 64
DEFAULT_USER_AGENT = "Mozilla/5.0 (ProxyRender/1.0)"


@dataclass
class ProxyConfig:
    """Full proxy configuration."""

    # Listen address and port
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT

    # Host rules ("example.com" or "*.example.com")
    allowlist: list[str] = field(default_factory=list)
    blocklist: list[str] = field(default_factory=list)

    # HTML rewriting on/off; when off every response is streamed as-is
    enable_rewrite: bool = True

    # Ceiling for inbound request bodies (non-GET/HEAD), in megabytes
    max_body_mb: int = DEFAULT_MAX_BODY_MB

    # Upstream connect/read timeout (seconds)
    upstream_timeout: float = 30.0

    # Sent upstream when the browser supplies no user-agent
    user_agent: str = DEFAULT_USER_AGENT

    # Static UI directory, served at "/" when it exists
    static_dir: str = "public"

    # JSON Lines audit log; empty disables auditing
    audit_log_path: str = ""

    # Live log directory; empty logs to stderr only
    log_dir: str = ""

    @property
    def max_body_bytes(self) -> int:
        return self.max_body_mb * 1024 * 1024

    def build_policy(self) -> HostPolicy:
        """Freeze the allow/block lists into the process-wide host policy."""
        return HostPolicy(
            allow=PolicyRuleSet.from_iterable(self.allowlist),
            block=PolicyRuleSet.from_iterable(self.blocklist),
        )


def parse_bool(value: str | bool | None, default: bool = True) -> bool:
    """Parse an on/off flag. Only an explicit "false"-like value turns it off."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return value.strip().lower() not in ("false", "0", "no", "off")


def parse_list(value: Any) -> list[str]:
    """Accept a YAML list or a comma-separated string of rules."""
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split(",")
    elif isinstance(value, (list, tuple)):
        items = [str(v) for v in value]
    else:
        return []
    return [item.strip() for item in items if item and item.strip()]


def load_config(
    path: Path | str | None = None,
    environ: Mapping[str, str] | None = None,
) -> ProxyConfig:
    """Load proxy configuration from YAML, then apply environment overrides.

    A missing or invalid file falls back to defaults; environment values
    that fail to parse are logged and ignored.
    """
    env = os.environ if environ is None else environ
    config_path = Path(path or env.get("WAYPOINT_CONFIG") or DEFAULT_CONFIG_PATH)

    config = ProxyConfig(log_dir=str(DEFAULT_LOG_DIR))
    if config_path.exists():
        try:
            raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
            if isinstance(raw, dict):
                config = _parse_config(raw)
            else:
                logger.warning("Invalid proxy config (not a dict) -- using defaults")
        except (OSError, ValueError, TypeError, yaml.YAMLError) as exc:
            logger.error("Failed to load proxy config: %s -- using defaults", exc)
    else:
        logger.debug("No proxy config at %s -- using defaults", config_path)

    _apply_env(config, env)
    return config


def _parse_config(raw: dict) -> ProxyConfig:
    """Parse raw YAML dict into ProxyConfig."""
    return ProxyConfig(
        host=str(raw.get("host", "0.0.0.0")),
        port=int(raw.get("port", DEFAULT_PORT)),
        allowlist=parse_list(raw.get("allowlist")),
        blocklist=parse_list(raw.get("blocklist")),
        enable_rewrite=parse_bool(raw.get("enable_rewrite"), True),
        max_body_mb=int(raw.get("max_body_mb", DEFAULT_MAX_BODY_MB)),
        upstream_timeout=float(raw.get("upstream_timeout", 30.0)),
        user_agent=str(raw.get("user_agent") or DEFAULT_USER_AGENT),
        static_dir=str(raw.get("static_dir", "public")),
        audit_log_path=str(raw.get("audit_log_path") or ""),
        log_dir=str(raw.get("log_dir", DEFAULT_LOG_DIR)),
    )


def _apply_env(config: ProxyConfig, env: Mapping[str, str]) -> None:
    if env.get("PORT"):
        try:
            config.port = int(env["PORT"])
        except ValueError:
            logger.warning("Ignoring invalid PORT=%r", env["PORT"])
    if "ALLOWLIST" in env:
        config.allowlist = parse_list(env["ALLOWLIST"])
    if "BLOCKLIST" in env:
        config.blocklist = parse_list(env["BLOCKLIST"])
    if "ENABLE_REWRITE" in env:
        config.enable_rewrite = parse_bool(env["ENABLE_REWRITE"])
    if env.get("MAX_BODY_MB"):
        try:
            config.max_body_mb = int(env["MAX_BODY_MB"])
        except ValueError:
            logger.warning("Ignoring invalid MAX_BODY_MB=%r", env["MAX_BODY_MB"])
