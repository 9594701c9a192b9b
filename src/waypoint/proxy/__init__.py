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
"""Waypoint proxy core -- the single trusted origin.

Everything a sandboxed browser fetches goes through here:

  Browser --/proxy?url=--> Waypoint --> Internet (filtered)

Properties:
  - One policy gate: the same allow/block host rules are applied to the
    initial target, to every redirect target and to every WebSocket
    upgrade
  - Two response paths: non-HTML bodies are streamed byte-for-byte,
    HTML is buffered, rewritten and re-serialized
  - No TLS interception, no caching, no per-user state
"""
