"""
Request validation for the signup endpoints.

Top-level fields fail closed: a bad email, profile, utm or source rejects
the whole request with a named error.  The optional `context` payload is
the opposite: every leaf is clamped or dropped, never rejected, because
it is passive analytics collected by the browser and may be junk.
"""

import logging
import math
import re
from dataclasses import dataclass
from typing import Annotated, Any, Optional, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from app.errors import ValidationError

logger = logging.getLogger(__name__)

MAX_EMAIL_LENGTH = 254
MAX_PROFILE_LENGTH = 100
MAX_UTM_LENGTH = 200
MAX_SOURCE_LENGTH = 50

MAX_LANGUAGES = 10
MAX_PATH_HISTORY = 50
MAX_UTM_KEYS = 25

_EMAIL_RE = re.compile(
    r"^[a-zA-Z0-9]([a-zA-Z0-9._-]*[a-zA-Z0-9])?"
    r"@[a-zA-Z0-9]([a-zA-Z0-9.-]*[a-zA-Z0-9])?\.[a-zA-Z]{2,}$"
)


def is_valid_email(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    trimmed = value.strip()
    if not trimmed or len(trimmed) > MAX_EMAIL_LENGTH:
        return False
    if ".." in trimmed or trimmed.startswith(".") or trimmed.endswith("."):
        return False
    return _EMAIL_RE.match(trimmed) is not None


# ── Context sanitization ──────────────────────────────────────────────────


def _clamp(value: Any, max_len: int) -> Optional[str]:
    return value[:max_len] if isinstance(value, str) else None


def _clamped(max_len: int) -> BeforeValidator:
    return BeforeValidator(lambda v: _clamp(v, max_len))


def _finite_number(value: Any) -> Union[int, float, None]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return value if math.isfinite(value) else None
    except OverflowError:
        # int beyond float range
        return None


def _object_or_none(value: Any) -> Optional[dict]:
    return value if isinstance(value, dict) else None


def _bool_or_none(value: Any) -> Optional[bool]:
    return value if isinstance(value, bool) else None


def _languages(value: Any) -> Optional[list[str]]:
    if not isinstance(value, list):
        return None
    clamped = (_clamp(lang, 32) for lang in value[:MAX_LANGUAGES])
    return [lang for lang in clamped if lang]


def _path_history(value: Any) -> Optional[list[dict]]:
    if not isinstance(value, list):
        return None
    entries = []
    for item in value[-MAX_PATH_HISTORY:]:
        item = item if isinstance(item, dict) else {}
        path, ts = _clamp(item.get("path"), 256), _clamp(item.get("ts"), 64)
        if path and ts:
            entries.append({"path": path, "ts": ts})
    return entries


def _utm_map(value: Any) -> Optional[dict[str, str]]:
    if not isinstance(value, dict):
        return None
    out: dict[str, str] = {}
    for key, val in value.items():
        if len(out) >= MAX_UTM_KEYS:
            break
        if isinstance(key, str) and isinstance(val, str):
            out[key[:64]] = val[:256]
    return out


Str8 = Annotated[Optional[str], _clamped(8)]
Str16 = Annotated[Optional[str], _clamped(16)]
Str32 = Annotated[Optional[str], _clamped(32)]
Str64 = Annotated[Optional[str], _clamped(64)]
Str512 = Annotated[Optional[str], _clamped(512)]
Str2048 = Annotated[Optional[str], _clamped(2048)]
Number = Annotated[Union[int, float, None], BeforeValidator(_finite_number)]
Flag = Annotated[Optional[bool], BeforeValidator(_bool_or_none)]
UtmMap = Annotated[Optional[dict[str, str]], BeforeValidator(_utm_map)]


class _Sanitized(BaseModel):
    model_config = ConfigDict(extra="ignore", alias_generator=to_camel, populate_by_name=True)


class Screen(_Sanitized):
    width: Number = None
    height: Number = None
    pixel_ratio: Number = None


class Viewport(_Sanitized):
    width: Number = None
    height: Number = None


class Connection(_Sanitized):
    effective_type: Str16 = None
    downlink: Number = None
    rtt: Number = None
    save_data: Flag = None


class Session(_Sanitized):
    start_ts: Str64 = None
    duration_ms: Number = None
    page_views: Number = None


class PathEntry(_Sanitized):
    path: str
    ts: str


class FirstTouch(_Sanitized):
    ts: Str64 = None
    url: Str2048 = None
    referrer: Str2048 = None
    utm: UtmMap = None


class LastTouch(_Sanitized):
    ts: Str64 = None
    url: Str2048 = None
    utm: UtmMap = None


def _nested(model: type[BaseModel]) -> Any:
    return Annotated[Optional[model], BeforeValidator(_object_or_none)]


class ClientContext(_Sanitized):
    """Browser-collected facts, every field individually clamped."""

    device_type: Str16 = None
    browser: Str32 = None
    os: Str32 = None
    time_zone: Str64 = None
    tz_offset: Number = None
    languages: Annotated[Optional[list[str]], BeforeValidator(_languages)] = None
    user_agent: Str512 = None
    platform: Str64 = None
    dnt: Str8 = None
    screen: _nested(Screen) = None
    viewport: _nested(Viewport) = None
    device_memory: Number = None
    hardware_concurrency: Number = None
    connection: _nested(Connection) = None
    session_id: Str64 = None
    session: _nested(Session) = None
    referrer: Str2048 = None
    path_history: Annotated[Optional[list[PathEntry]], BeforeValidator(_path_history)] = None
    first_touch: _nested(FirstTouch) = None
    last_touch: _nested(LastTouch) = None
    ad_block: Flag = None
    gclid: Str64 = None
    fbclid: Str64 = None
    msclkid: Str64 = None


class SubmittedContext(_Sanitized):
    client: _nested(ClientContext) = None


def sanitize_context(raw: Any) -> Optional[dict[str, Any]]:
    """
    Reduce a client-submitted context object to known, bounded fields.

    Returns None when nothing usable is left.
    """
    if not isinstance(raw, dict):
        return None
    try:
        parsed = SubmittedContext.model_validate(raw)
    except PydanticValidationError:
        logger.warning("Dropping unparseable client context")
        return None

    out = parsed.model_dump(by_alias=True, exclude_none=True)
    if not out.get("client"):
        out.pop("client", None)
    return out or None


# ── Request validation ────────────────────────────────────────────────────


@dataclass
class ValidationResult:
    valid: bool
    data: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    def raise_for_error(self) -> dict[str, Any]:
        if not self.valid:
            raise ValidationError(self.error)
        return self.data  # type: ignore[return-value]


def _check_optional(value: Any, max_len: int) -> bool:
    return value is None or (isinstance(value, str) and len(value) <= max_len)


def _trimmed_or_none(value: Optional[str]) -> Optional[str]:
    return (value or "").strip() or None


def validate_subscribe_request(data: Any, *, default_source: str = "landing") -> ValidationResult:
    if not isinstance(data, dict):
        return ValidationResult(False, error="invalid_request_body")

    email = data.get("email")
    profile, utm, source = data.get("profile"), data.get("utm"), data.get("source")

    if not is_valid_email(email):
        return ValidationResult(False, error="invalid_email")
    if not _check_optional(profile, MAX_PROFILE_LENGTH):
        return ValidationResult(False, error="invalid_profile")
    if not _check_optional(utm, MAX_UTM_LENGTH):
        return ValidationResult(False, error="invalid_utm")
    if not _check_optional(source, MAX_SOURCE_LENGTH):
        return ValidationResult(False, error="invalid_source")

    return ValidationResult(
        True,
        data={
            "email": email.strip().lower(),
            "profile": _trimmed_or_none(profile),
            "utm": _trimmed_or_none(utm),
            "source": _trimmed_or_none(source) or default_source,
            "context": sanitize_context(data.get("context")),
        },
    )


def validate_verify_request(data: Any) -> ValidationResult:
    if not isinstance(data, dict):
        return ValidationResult(False, error="invalid_request_body")

    email = data.get("email")
    if not is_valid_email(email):
        return ValidationResult(False, error="invalid_email")

    return ValidationResult(True, data={"email": email.strip().lower()})
