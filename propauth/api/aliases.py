"""Legacy role-prefixed paths mapped onto the unified API.

``rewrite_path`` is a pure string function; the HTTP middleware in
``propauth.app`` applies it before routing and never looks at auth state.
"""

from __future__ import annotations

import re
from typing import List, NamedTuple, Optional, Tuple

API_PREFIX = "/v1"


class RouteAlias(NamedTuple):
    pattern: "re.Pattern[str]"
    replacement: str
    description: str


def _alias(pattern: str, replacement: str, description: str) -> RouteAlias:
    return RouteAlias(re.compile(pattern), replacement, description)


# First match wins; the generic prefix rules stay last.
ROUTE_ALIASES: List[RouteAlias] = [
    _alias(r"^/agency-admin/dashboard$", "/dashboard", "agency admin dashboard"),
    _alias(r"^/agency-admin/properties$", "/properties", "agency admin properties"),
    _alias(r"^/agency-admin/units$", "/units", "agency admin units"),
    _alias(r"^/agency-admin/tenants$", "/tenants", "agency admin tenants"),
    _alias(r"^/agency-admin/staff/agents$", "/users?role=agent", "agency admin agents"),
    _alias(r"^/agency-admin/staff/caretakers$", "/caretakers", "agency admin caretakers"),
    _alias(r"^/agency-admin/reports/(.+)$", r"/reports/\1", "agency admin reports"),
    _alias(r"^/agency-admin/messages$", "/messages", "agency admin messages"),
    _alias(r"^/agency-admin/notifications$", "/notifications", "agency admin notifications"),
    _alias(r"^/agency-admin/billing/(.+)$", r"/billing/\1", "agency admin billing"),
    _alias(r"^/landlord/dashboard$", "/dashboard", "landlord dashboard"),
    _alias(r"^/landlord/properties$", "/properties", "landlord properties"),
    _alias(r"^/landlord/units$", "/units", "landlord units"),
    _alias(r"^/landlord/tenants$", "/tenants", "landlord tenants"),
    _alias(r"^/landlord/caretakers$", "/caretakers", "landlord caretakers"),
    _alias(r"^/landlord/maintenance$", "/maintenance", "landlord maintenance"),
    _alias(r"^/landlord/financial/(.+)$", r"/financial/\1", "landlord financial"),
    _alias(r"^/landlord/reports/(.+)$", r"/reports/\1", "landlord reports"),
    _alias(r"^/agency-admin/(.+)$", r"/\1", "generic agency admin route"),
    _alias(r"^/landlord/(.+)$", r"/\1", "generic landlord route"),
]


def rewrite_path(path: str) -> Optional[str]:
    """Return the unified path for a legacy one, or None when ``path`` is current.

    The ``/v1`` prefix is kept if present. The result may carry a query
    string (``/v1/users?role=agent``).
    """
    prefix = ""
    relative = path
    if path.startswith(API_PREFIX + "/"):
        prefix = API_PREFIX
        relative = path[len(API_PREFIX):]
    for alias in ROUTE_ALIASES:
        if alias.pattern.match(relative):
            return prefix + alias.pattern.sub(alias.replacement, relative, count=1)
    return None


def split_target(target: str, original_query: str = "") -> Tuple[str, str]:
    """Split a rewritten target into path and query, merging the caller's query."""
    path, _, alias_query = target.partition("?")
    query = "&".join(part for part in (alias_query, original_query) if part)
    return path, query
