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
"""Waypoint CLI entry point.

Starts the proxy as a standalone process under uvicorn.

Usage:
    python -m waypoint.server [--config PATH] [--host HOST] [--port PORT]
                              [--no-rewrite] [--audit-log PATH] [--log-level LEVEL]

Environment (overridden by flags):
    PORT, ALLOWLIST, BLOCKLIST, ENABLE_REWRITE, MAX_BODY_MB
"""

from __future__ import annotations

import argparse
import logging

import uvicorn

from .api.server import create_app
from .proxy.config import ProxyConfig, load_config

logger = logging.getLogger("waypoint.server")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="waypoint",
        description="Waypoint -- education-mode web proxy",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to proxy.yaml (default: ~/.waypoint/proxy.yaml)",
    )
    parser.add_argument("--host", default=None, help="Listen address (default: 0.0.0.0)")
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Listen port (overrides PORT and config, default: 10000)",
    )
    parser.add_argument(
        "--no-rewrite",
        action="store_true",
        help="Stream every response unmodified (same as ENABLE_REWRITE=false)",
    )
    parser.add_argument(
        "--audit-log",
        default=None,
        help="Path for the JSON Lines audit log (overrides config)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    return parser


def resolve_config(args: argparse.Namespace) -> ProxyConfig:
    """Load file + environment configuration, then apply CLI overrides."""
    config = load_config(args.config)
    if args.host is not None:
        config.host = args.host
    if args.port is not None:
        config.port = args.port
    if args.no_rewrite:
        config.enable_rewrite = False
    if args.audit_log is not None:
        config.audit_log_path = args.audit_log
    return config


def main(argv: list[str] | None = None) -> None:
    """Entry point for the proxy server."""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    config = resolve_config(args)

    logger.info("=" * 60)
    logger.info("Waypoint -- education-mode web proxy")
    logger.info("=" * 60)
    logger.info("  Listen: %s:%d", config.host, config.port)
    logger.info("  HTML rewrite: %s", config.enable_rewrite)
    logger.info("  Max body: %d MB", config.max_body_mb)
    logger.info(
        "  Rules: %d allow, %d block",
        len(config.allowlist),
        len(config.blocklist),
    )
    logger.info("  Audit log: %s", config.audit_log_path or "disabled")
    logger.info("=" * 60)

    uvicorn.run(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
