"""
Error taxonomy for the signup pipeline.

Each error carries the HTTP status and the machine-readable `error` code
that ends up in the JSON body.  Rendering happens in the exception
handlers registered by app.main, so routers and services just raise.

Verification never raises: DNS failures collapse into
a non-deliverable result inside the verifier.
"""

from __future__ import annotations

ERROR_MESSAGES: dict[str, str] = {
    "invalid_request_body": "Request body is invalid or missing",
    "invalid_email": "Email address is invalid",
    "invalid_profile": "Profile data is too long or invalid",
    "invalid_utm": "UTM data is too long or invalid",
    "invalid_source": "Source data is too long or invalid",
    "not_found": "Subscriber not found",
    "too_many_requests": "Too many requests, please try again later",
    "subscription_failed": "Subscription could not be saved",
    "verification_failed": "Verification result could not be saved",
    "internal_error": "Internal server error",
}


class SignupError(Exception):
    status_code: int = 500
    default_error: str = "internal_error"

    def __init__(self, error: str | None = None) -> None:
        self.error = error or self.default_error
        super().__init__(self.error)

    @property
    def message(self) -> str:
        return ERROR_MESSAGES.get(self.error, "Request failed")


class ValidationError(SignupError):
    """Malformed or oversized input. Never worth retrying."""

    status_code = 400
    default_error = "invalid_request_body"


class RateLimitError(SignupError):
    """Caller exceeded its window; retry after `reset_time` (epoch ms)."""

    status_code = 429
    default_error = "too_many_requests"

    def __init__(self, reset_time: int, limit: int | None = None) -> None:
        super().__init__()
        self.reset_time = reset_time
        self.limit = limit


class NotFoundError(SignupError):
    status_code = 404
    default_error = "not_found"


class TransientStoreError(SignupError):
    """Database or transaction failure. Safe to retry."""

    status_code = 500
    default_error = "subscription_failed"
