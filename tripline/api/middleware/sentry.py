"""
Sentry instrumentation for the API.
Disabled unless SENTRY_DSN is set. Scrubs cookies and provider tokens.
"""

from typing import Any, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.starlette import StarletteIntegration

from tripline.api.config import settings

SENSITIVE_HEADERS = {"authorization", "cookie", "set-cookie"}
SENSITIVE_PARAMS = ("access_token",)


def _scrub_headers(headers: Any) -> None:
    if not isinstance(headers, dict):
        return
    for key in list(headers.keys()):
        if key.lower() in SENSITIVE_HEADERS:
            headers[key] = "[FILTERED]"


def _scrub_url(url: Any) -> Any:
    if not isinstance(url, str):
        return url
    for param in SENSITIVE_PARAMS:
        marker = f"{param}="
        start = url.find(marker)
        if start == -1:
            continue
        end = url.find("&", start)
        url = url[: start + len(marker)] + "[FILTERED]" + (url[end:] if end != -1 else "")
    return url


def _strip_sensitive_data(event: dict[str, Any], hint: dict[str, Any]) -> Optional[dict[str, Any]]:
    """before_send hook: filter auth headers, cookies and the Mapbox token out of outgoing events."""
    for breadcrumb in event.get("breadcrumbs", {}).get("values", []):
        data = breadcrumb.get("data", {})
        if isinstance(data, dict):
            _scrub_headers(data.get("headers"))
            # httpx breadcrumbs carry the full provider URL
            if "url" in data:
                data["url"] = _scrub_url(data["url"])

    request = event.get("request", {})
    if isinstance(request, dict):
        _scrub_headers(request.get("headers"))
        if "query_string" in request:
            request["query_string"] = _scrub_url(request["query_string"])
    return event


def setup_sentry() -> None:
    if not settings.sentry_dsn:
        return

    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release=f"{settings.app_name}@{settings.app_version}",
        traces_sample_rate=settings.sentry_traces_sample_rate,
        before_send=_strip_sensitive_data,
        integrations=[
            StarletteIntegration(transaction_style="endpoint"),
            FastApiIntegration(transaction_style="endpoint"),
        ],
        send_default_pii=False,
    )
