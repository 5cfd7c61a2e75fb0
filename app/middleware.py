"""
HTTP middleware.

  • log_requests      – request id + one access log line per request
  • FirstTouchCookies – records first-visit and UTM cookies on page views,
                        read back later by the attribution extractor
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from urllib.parse import quote
from uuid import uuid4

from fastapi import Request, Response

logger = logging.getLogger(__name__)

CallNext = Callable[[Request], Awaitable[Response]]

UTM_PARAMS = (
    "utm_source", "utm_medium", "utm_campaign", "utm_term", "utm_content",
    "aff", "affiliate", "aff_id", "affiliate_id", "ref", "ref_id", "referrer_id",
    "cid", "campaign", "campaign_id", "adgroup", "adset", "creative", "placement",
    "gclid", "fbclid", "msclkid",
)

_ONE_YEAR = 60 * 60 * 24 * 365
_THIRTY_DAYS = 60 * 60 * 24 * 30
_MAX_UTM_COOKIE = 512


def request_id_of(request: Request) -> str | None:
    """Id assigned by `log_requests`, falling back to the inbound header."""
    return getattr(request.state, "request_id", None) or request.headers.get("x-request-id")


def _log_access(request: Request, status_code: int, started: float, request_id: str) -> None:
    logger.info(
        "API %s %s -> %d (%dms) [%s]",
        request.method,
        request.url.path,
        status_code,
        (time.perf_counter() - started) * 1000,
        request_id,
    )


async def log_requests(request: Request, call_next: CallNext) -> Response:
    request_id = request.headers.get("x-request-id") or uuid4().hex[:12]
    request.state.request_id = request_id
    started = time.perf_counter()

    try:
        response = await call_next(request)
    except Exception:
        # Rendered as a 500 by the app's catch-all handler
        _log_access(request, 500, started, request_id)
        raise

    response.headers["X-Request-ID"] = request_id
    _log_access(request, response.status_code, started, request_id)
    return response


def parse_utm(request: Request) -> dict[str, str] | None:
    """Campaign parameters present on the request URL, if any."""
    params = request.query_params
    utm = {key: params[key] for key in UTM_PARAMS if params.get(key)}
    return utm or None


class FirstTouchCookies:
    """
    Edge-style interceptor for page requests (never /api, never assets).

    Cookie values are URL-encoded so JSON and URLs survive cookie quoting.
    """

    def __init__(self, prefix: str) -> None:
        self.prefix = prefix

    @staticmethod
    def applies_to(request: Request) -> bool:
        path = request.url.path
        if request.method not in ("GET", "HEAD") or path.startswith("/api"):
            return False
        return "." not in path.rsplit("/", 1)[-1]

    def _set(self, response: Response, name: str, value: str, max_age: int) -> None:
        response.set_cookie(
            f"{self.prefix}_{name}",
            quote(value, safe=""),
            max_age=max_age,
            path="/",
            samesite="lax",
        )

    async def __call__(self, request: Request, call_next: CallNext) -> Response:
        response = await call_next(request)
        if not self.applies_to(request):
            return response

        cookies = request.cookies
        if not cookies.get(f"{self.prefix}_first_visit"):
            self._set(response, "first_visit", datetime.now(timezone.utc).isoformat(), _ONE_YEAR)
            self._set(response, "first_url", str(request.url), _ONE_YEAR)
            self._set(response, "referrer", request.headers.get("referer", ""), _ONE_YEAR)

        utm = parse_utm(request)
        if utm:
            value = json.dumps(utm, separators=(",", ":"))[:_MAX_UTM_COOKIE]
            if not cookies.get(f"{self.prefix}_first_utm"):
                self._set(response, "first_utm", value, _ONE_YEAR)
            self._set(response, "last_utm", value, _THIRTY_DAYS)

        return response
