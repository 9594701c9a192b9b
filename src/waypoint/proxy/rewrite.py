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
"""HTML rewrite engine.

Turns an upstream HTML document into one whose navigation stays inside
the proxy:

  1. Parse into a mutable tree (BeautifulSoup, tolerant of bad markup)
  2. Insert ``<base href=target>`` as the first child of ``<head>``
  3. Rewrite URL-bearing attributes to proxy URLs
  4. Append the client-side navigation interceptor to ``<head>``
  5. Serialize back to text

Attributes whose value does not resolve to an http(s) URL are left
untouched. CSS ``url()`` references and script string literals are not
rewritten.

Known gap: the interceptor only hooks anchor clicks and ``fetch``.
Client-side routing through the History API, XHR, ``window.open`` and
similar mechanisms reach the origin's URLs directly.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

from bs4 import BeautifulSoup

from . import urls

logger = logging.getLogger("waypoint.proxy.rewrite")

INTERCEPTOR_VERSION = 1
_INTERCEPTOR_PATH = Path(__file__).parent / "static" / "interceptor.js"
_PROXY_PATH_PLACEHOLDER = "__WAYPOINT_PROXY_PATH__"

# Elements whose src/href load a resource
RESOURCE_TAGS = ("img", "script", "link", "source", "video", "audio", "iframe")
RESOURCE_ATTRS = ("src", "href")


@dataclass(frozen=True)
class RewriteContext:
    """Per-document rewrite state."""

    base_url: str
    proxy_path: str = urls.PROXY_PATH

    def proxied(self, value: str | None) -> str | None:
        """Proxy URL for an attribute value, or None to leave it alone."""
        absolute = urls.resolve(self.base_url, value)
        if absolute is None:
            return None
        return urls.encode(absolute, self.proxy_path)


@lru_cache(maxsize=1)
def _interceptor_template() -> str:
    return _INTERCEPTOR_PATH.read_text(encoding="utf-8")


def interceptor_script(proxy_path: str = urls.PROXY_PATH) -> str:
    """The client interceptor with its one parameter filled in.

    The proxy path is inserted as a JSON string literal with ``</`` and
    ``<!--`` neutralized, so no value can close the script element.
    """
    literal = json.dumps(proxy_path).replace("</", "<\\/").replace("<!--", "<\\!--")
    return _interceptor_template().replace(_PROXY_PATH_PLACEHOLDER, literal)


def _rewrite_attr(tag, attr: str, ctx: RewriteContext) -> bool:
    value = tag.get(attr)
    if value is None or isinstance(value, list):
        return False
    proxied = ctx.proxied(value)
    if proxied is None:
        return False
    tag[attr] = proxied
    return True


def _ensure_head(soup: BeautifulSoup):
    head = soup.head
    if head is not None:
        return head
    head = soup.new_tag("head")
    if soup.html is not None:
        soup.html.insert(0, head)
    else:
        soup.insert(0, head)
    return head


def rewrite_document(soup: BeautifulSoup, ctx: RewriteContext) -> int:
    """Mutate a parsed document in place. Returns the number of rewritten attributes."""
    head = _ensure_head(soup)
    head.insert(0, soup.new_tag("base", attrs={"href": ctx.base_url}))

    rewritten = 0
    for anchor in soup.find_all("a", href=True):
        rewritten += _rewrite_attr(anchor, "href", ctx)

    for attr in RESOURCE_ATTRS:
        for tag in soup.find_all(list(RESOURCE_TAGS), attrs={attr: True}):
            rewritten += _rewrite_attr(tag, attr, ctx)

    for form in soup.find_all("form", action=True):
        rewritten += _rewrite_attr(form, "action", ctx)

    script = soup.new_tag("script")
    script.string = interceptor_script(ctx.proxy_path)
    head.append(script)
    return rewritten


def rewrite_html(
    html: bytes | str,
    target_url: str,
    charset: str | None = None,
    proxy_path: str = urls.PROXY_PATH,
) -> str:
    """Rewrite an HTML document fetched from ``target_url``.

    Args:
        html: Raw document bytes (or already-decoded text).
        target_url: Absolute URL the document was fetched from.
        charset: Charset from the upstream content-type; sniffed when None.
        proxy_path: Path of the proxy endpoint embedded in rewritten URLs.

    Returns:
        The serialized document.
    """
    if isinstance(html, bytes):
        soup = BeautifulSoup(html, "html.parser", from_encoding=charset)
    else:
        soup = BeautifulSoup(html, "html.parser")
    count = rewrite_document(soup, RewriteContext(base_url=target_url, proxy_path=proxy_path))
    logger.debug("Rewrote %d URL attributes in %s", count, target_url)
    return str(soup)
