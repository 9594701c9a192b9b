"""
Waypoint -- education-mode web proxy.

Lets a sandboxed browser reach external sites through a single trusted
origin. Links, resources, redirects and WebSockets found on fetched pages
are routed back through the proxy, and every target host passes the same
allow/block policy gate.
"""

__version__ = "1.0.0"
__author__ = "Waypoint Team"
