"""
Marketing attribution for signups.

Builds the server half of a subscriber's context from the request
headers and the first-touch cookies written by the edge middleware, and
classifies how the visitor arrived:

    paid_ad         click ID present, or a paid utm_medium
    direct          no external referrer
    organic_search  referrer is a search engine
    social          referrer is a social network
    email           referrer is a webmail client
    referral        any other external referrer

UTM precedence is last-touch cookie, then first-touch cookie.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Mapping
from typing import Any
from urllib.parse import unquote, urlencode, urlsplit

from fastapi import Request

from app.dependencies import get_client_ip

logger = logging.getLogger(__name__)

CLICK_ID_KEYS = ("gclid", "fbclid", "msclkid")

PAID_MEDIUMS = frozenset({
    "cpc", "ppc", "paid", "paid_search", "paidsearch", "paid_social",
    "paidsocial", "display", "cpm", "cpv", "sem", "ads",
})

_SEARCH_RE = re.compile(
    r"^(www\.|search\.|[a-z]{2}\.search\.)?"
    r"(google|bing|yahoo|duckduckgo|baidu|yandex|ecosia|startpage)\.[a-z.]+$"
    r"|^search\.brave\.com$"
)
_SOCIAL_RE = re.compile(
    r"(^|\.)(facebook\.com|fb\.com|fb\.me|instagram\.com|t\.co|twitter\.com|x\.com"
    r"|linkedin\.com|lnkd\.in|reddit\.com|pinterest\.[a-z.]+|tiktok\.com"
    r"|youtube\.com|youtu\.be|threads\.net|mastodon\.social)$"
)
_WEBMAIL_RE = re.compile(
    r"^(mail\.google\.com|outlook\.live\.com|outlook\.office\.com|outlook\.office365\.com"
    r"|mail\.yahoo\.com|mail\.proton\.me|mail\.protonmail\.com)$"
    r"|^(mail|webmail)\."
)


def _host(url: str | None) -> str:
    if not url:
        return ""
    try:
        host = urlsplit(url if "//" in url else f"//{url}").hostname
    except ValueError:
        return ""
    return (host or "").lower()


def classify_referral(
    referrer: str | None,
    utm: Mapping[str, str] | None = None,
    click_ids: Mapping[str, str] | None = None,
) -> str:
    """Pure classification of a visit; see module docstring for the rules."""
    utm = utm or {}
    click_ids = click_ids or {}
    if any(click_ids.get(k) or utm.get(k) for k in CLICK_ID_KEYS):
        return "paid_ad"
    if (utm.get("utm_medium") or "").strip().lower() in PAID_MEDIUMS:
        return "paid_ad"

    host = _host(referrer)
    if not host:
        return "direct"
    if _SEARCH_RE.search(host):
        return "organic_search"
    if _SOCIAL_RE.search(host):
        return "social"
    if _WEBMAIL_RE.search(host):
        return "email"
    return "referral"


def _json_cookie(raw: str | None) -> dict[str, str] | None:
    if not raw:
        return None
    try:
        value = json.loads(raw)
    except ValueError:
        logger.debug("Ignoring unparseable attribution cookie")
        return None
    if not isinstance(value, dict):
        return None
    return {str(k): str(v) for k, v in value.items() if isinstance(v, (str, int, float))}


def choose_utm(
    last_touch: dict[str, str] | None,
    first_touch: dict[str, str] | None,
) -> tuple[dict[str, str] | None, str | None]:
    """Return (utm, which_touch) honouring last-touch over first-touch."""
    if last_touch:
        return last_touch, "last_touch"
    if first_touch:
        return first_touch, "first_touch"
    return None, None


def utm_to_query(utm: Mapping[str, str] | None, max_len: int = 200) -> str | None:
    if not utm:
        return None
    return urlencode(list(utm.items()))[:max_len] or None


def _pick_referrer(candidates: list[str | None], own_host: str) -> str | None:
    for candidate in candidates:
        host = _host(candidate)
        if host and host != own_host:
            return candidate
    return None


def _geo(headers: Mapping[str, str]) -> dict[str, str]:
    raw = {
        "country": headers.get("x-vercel-ip-country") or headers.get("cf-ipcountry"),
        "region": headers.get("x-vercel-ip-country-region"),
        "city": headers.get("x-vercel-ip-city"),
    }
    return {k: unquote(v)[:64] for k, v in raw.items() if v}


def extract_attribution(
    request: Request,
    client_context: Mapping[str, Any] | None = None,
    *,
    cookie_prefix: str = "munch",
) -> dict[str, Any]:
    """
    Build the server context for a signup.

    `client_context` is the already-sanitized `client` object from the
    request body (camelCase keys), if any.
    """
    headers = request.headers
    cookies = request.cookies
    client = client_context or {}

    def cookie(name: str) -> str | None:
        raw = cookies.get(f"{cookie_prefix}_{name}")
        return unquote(raw) if raw else None

    first_utm = _json_cookie(cookie("first_utm"))
    last_utm = _json_cookie(cookie("last_utm"))
    utm, utm_source = choose_utm(last_utm, first_utm)

    client_first = client.get("firstTouch") or {}
    own_host = _host(headers.get("host"))
    referrer = _pick_referrer(
        [
            cookie("referrer"),
            client_first.get("referrer"),
            client.get("referrer"),
            headers.get("referer"),
        ],
        own_host,
    )

    click_ids = {k: client[k] for k in CLICK_ID_KEYS if client.get(k)}
    if utm:
        click_ids.update({k: utm[k] for k in CLICK_ID_KEYS if utm.get(k) and k not in click_ids})

    referral_type = classify_referral(referrer, utm, click_ids)

    server: dict[str, Any] = {
        "ip": get_client_ip(request),
        "userAgent": (headers.get("user-agent") or "")[:512] or None,
        "acceptLanguage": (headers.get("accept-language") or "")[:256] or None,
        "referer": (headers.get("referer") or "")[:2048] or None,
        "host": headers.get("host"),
        "geo": _geo(headers),
        "firstVisit": cookie("first_visit"),
        "firstUrl": cookie("first_url"),
        "attribution": {
            "referralType": referral_type,
            "referrer": referrer,
            "utm": utm,
            "utmSource": utm_source,
            "clickIds": click_ids,
        },
    }
    return {k: v for k, v in server.items() if v is not None}
