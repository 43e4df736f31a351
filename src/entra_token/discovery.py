"""App registration discovery through Microsoft Graph.

`discover` lists Entra app registrations by display name so a profile can be
created from one. The Graph token comes from the regular orchestrator, either
through an existing profile or through a transient profile for the
well-known Microsoft Graph command-line client in the chosen tenant.

Wildcards:
    "*"        -> everything
    "MyApp*"   -> $filter=startswith(displayName,'MyApp')
    "*Test*"   -> fetched unfiltered, matched client-side
    "Exact"    -> $filter=displayName eq 'Exact'
"""

from __future__ import annotations

__all__ = [
    "ApplicationInfo",
    "build_filter",
    "discovery_profile",
    "search_applications",
]

import re
import threading
from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from entra_token.config import OAuthFlow, Profile
from entra_token.constants import (
    GRAPH_API_BASE,
    GRAPH_DISCOVERY_CLIENT_ID,
    GRAPH_DISCOVERY_PROFILE,
    GRAPH_DISCOVERY_SCOPES,
)
from entra_token.security.auth.http import TokenEndpointClient

# Graph caps $top at 999 for applications
_PAGE_SIZE = 999
_MAX_PAGES = 20


class ApplicationInfo(BaseModel):
    """Subset of a Graph application object."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str
    app_id: str | None = None
    display_name: str | None = None
    publisher_domain: str | None = None
    created_date_time: datetime | None = None
    sign_in_audience: str | None = None


def _odata_literal(value: str) -> str:
    return value.replace("'", "''")


def build_filter(pattern: str | None) -> str | None:
    """OData $filter for a display-name pattern, or None for client-side matching."""
    if not pattern or pattern == "*":
        return None
    if pattern.startswith("*"):
        return None
    if pattern.endswith("*"):
        prefix = pattern.rstrip("*")
        if "*" in prefix:
            return None
        return f"startswith(displayName,'{_odata_literal(prefix)}')"
    if "*" in pattern:
        return None
    return f"displayName eq '{_odata_literal(pattern)}'"


def _matcher(pattern: str | None) -> re.Pattern[str] | None:
    if not pattern or "*" not in pattern or pattern == "*":
        return None
    regex = "^" + re.escape(pattern).replace(r"\*", ".*") + "$"
    return re.compile(regex, re.IGNORECASE)


def discovery_profile(tenant_id: str) -> Profile:
    """Transient profile for the Graph command-line client in ``tenant_id``."""
    return Profile(
        name=GRAPH_DISCOVERY_PROFILE,
        tenant_id=tenant_id,
        client_id=GRAPH_DISCOVERY_CLIENT_ID,
        scopes=list(GRAPH_DISCOVERY_SCOPES),
        default_flow=OAuthFlow.INTERACTIVE_BROWSER,
    )


def search_applications(
    access_token: str,
    pattern: str | None = "*",
    *,
    endpoint_client: TokenEndpointClient | None = None,
    graph_base: str = GRAPH_API_BASE,
    cancel_event: threading.Event | None = None,
) -> list[ApplicationInfo]:
    """Search app registrations by display name.

    Args:
        access_token: Graph token with Application.Read.All.
        pattern: Display-name pattern with optional ``*`` wildcards.
        endpoint_client: Optional client (for testing).
        graph_base: Graph API root.
        cancel_event: Set to abort between pages.

    Returns:
        Matching applications sorted by display name.

    Raises:
        AuthorityError: Graph refused the request (e.g. Authorization_RequestDenied).
        NetworkError: Graph unreachable.
    """
    client = endpoint_client or TokenEndpointClient()
    owns_client = endpoint_client is None

    params: dict[str, str] | None = {
        "$select": "id,appId,displayName,publisherDomain,createdDateTime,signInAudience",
        "$top": str(_PAGE_SIZE),
    }
    odata_filter = build_filter(pattern)
    if odata_filter:
        params["$filter"] = odata_filter

    headers = {"Authorization": f"Bearer {access_token}"}
    url: str | None = f"{graph_base.rstrip('/')}/applications"
    applications: list[ApplicationInfo] = []

    try:
        pages = 0
        while url and pages < _MAX_PAGES:
            payload = client.request_json("GET", url, params=params, headers=headers, cancel_event=cancel_event)
            for item in payload.get("value", []):
                if isinstance(item, dict) and item.get("id"):
                    applications.append(ApplicationInfo.model_validate(item))
            # nextLink already carries the query string
            url = payload.get("@odata.nextLink")
            params = None
            pages += 1
    finally:
        if owns_client:
            client.close()

    matcher = _matcher(pattern)
    if matcher is not None:
        applications = [app for app in applications if app.display_name and matcher.match(app.display_name)]

    return sorted(applications, key=lambda app: (app.display_name or "").lower())
