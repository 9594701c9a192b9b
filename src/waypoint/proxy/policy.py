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
"""Host policy -- the allow/block gate.

Rules are either exact hostnames (``example.com``) or wildcards of the
form ``*.suffix`` (``*.example.com``), which match any hostname ending in
``.suffix`` but not ``suffix`` itself.

Decision order:
  1. Any block-rule matches      -> rejected (block always wins)
  2. Allow-rules present, none match -> rejected (default deny)
  3. Otherwise                   -> accepted

The same ``HostPolicy`` instance is consulted for the initial target,
for every rewritten redirect target and for every WebSocket upgrade.
It is built once at startup and never mutated.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from urllib.parse import urlsplit

from .errors import PolicyViolation

logger = logging.getLogger("waypoint.proxy.policy")


def matches(hostname: str, rule: str) -> bool:
    """Check if hostname matches a single rule (exact or ``*.suffix``)."""
    if not hostname or not rule:
        return False
    if rule.startswith("*."):
        # Suffix keeps its leading dot: "*.example.com" -> ".example.com"
        return hostname.endswith(rule[1:])
    return hostname == rule


def _normalize(value: str) -> str:
    # "evil.com." is the same DNS name as "evil.com"
    return value.strip().lower().rstrip(".")


@dataclass(frozen=True)
class PolicyRuleSet:
    """An ordered, immutable set of host rules."""

    rules: tuple[str, ...] = ()

    @classmethod
    def from_iterable(cls, rules: Iterable[str] | None) -> PolicyRuleSet:
        """Build a rule set, normalizing case and dropping blank and duplicate entries."""
        seen: list[str] = []
        for rule in rules or ():
            rule = _normalize(rule)
            if rule and rule not in seen:
                seen.append(rule)
        return cls(tuple(seen))

    @classmethod
    def parse(cls, text: str | None) -> PolicyRuleSet:
        """Parse a comma-separated rule list (``"example.com,*.edu"``)."""
        if not text:
            return cls()
        return cls.from_iterable(text.split(","))

    def matches(self, hostname: str) -> bool:
        hostname = _normalize(hostname)
        return any(matches(hostname, rule) for rule in self.rules)

    def __len__(self) -> int:
        return len(self.rules)

    def __bool__(self) -> bool:
        return bool(self.rules)

    def __iter__(self):
        return iter(self.rules)


@dataclass(frozen=True)
class HostPolicy:
    """Allow/block rule pair evaluated for every outbound target."""

    allow: PolicyRuleSet = field(default_factory=PolicyRuleSet)
    block: PolicyRuleSet = field(default_factory=PolicyRuleSet)

    def is_allowed(self, hostname: str) -> bool:
        """Return True if the hostname may be fetched."""
        if self.block.matches(hostname):
            return False
        if self.allow and not self.allow.matches(hostname):
            return False
        return True

    def check(self, url: str, source: str = "proxy") -> str:
        """Raise ``PolicyViolation`` unless the URL's host is allowed.

        ``source`` names the check (proxy, redirect or websocket) and is
        carried on the violation. Returns the normalized hostname.
        """
        hostname = _normalize(urlsplit(url).hostname or "")
        if not self.is_allowed(hostname):
            logger.info("Policy rejected host %s (%s)", hostname or "<none>", source)
            raise PolicyViolation(hostname, source=source)
        return hostname

    def describe(self) -> dict:
        """Summary for status endpoints and startup logs."""
        return {
            "allow_rules": len(self.allow),
            "block_rules": len(self.block),
            "mode": "allowlist" if self.allow else "open",
        }
