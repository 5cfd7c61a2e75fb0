import logging
import time
from typing import Annotated

from fastapi import Depends, Request, Response
from slowapi.util import get_remote_address

from app.config import RateLimitRule
from app.errors import RateLimitError
from app.rate_limit import RateLimiter
from app.services.email_verifier import EmailVerifier

logger = logging.getLogger(__name__)


# ── Client identity ────────────────────────────────────────────────────────


def get_client_ip(request: Request) -> str:
    """Best-effort client IP, honouring the usual proxy headers."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    for header in ("x-real-ip", "cf-connecting-ip"):
        value = request.headers.get(header)
        if value:
            return value.strip()

    if request.client is None:
        return "unknown"
    return get_remote_address(request)


# ── Components (built by the app lifespan, overridable in tests) ───────────


def get_rate_limiter(request: Request) -> RateLimiter:
    return request.app.state.rate_limiter


def get_verifier(request: Request) -> EmailVerifier:
    return request.app.state.verifier


Verifier = Annotated[EmailVerifier, Depends(get_verifier)]


# ── Rate limiting ──────────────────────────────────────────────────────────


class RateLimitGuard:
    """
    Route dependency enforcing a per-IP request budget.

    Each guard has its own key namespace so endpoints don't share a budget.
    Adds X-RateLimit-* headers to successful responses.
    """

    def __init__(self, scope: str, rule: RateLimitRule) -> None:
        self.scope = scope
        self.rule = rule

    async def __call__(
        self,
        request: Request,
        response: Response,
        limiter: Annotated[RateLimiter, Depends(get_rate_limiter)],
    ) -> None:
        if not getattr(request.app.state, "rate_limit_enabled", True):
            return

        ip = get_client_ip(request)
        result = await limiter.check(f"{self.scope}:{ip}", self.rule.max_requests, self.rule.window_ms)

        if not result.allowed:
            logger.warning("Rate limit exceeded for %s on %s", ip, request.url.path)
            raise RateLimitError(reset_time=result.reset_time, limit=self.rule.max_requests)

        response.headers["X-RateLimit-Limit"] = str(self.rule.max_requests)
        response.headers["X-RateLimit-Remaining"] = str(result.remaining)
        response.headers["X-RateLimit-Reset"] = str(result.reset_time)


def seconds_until(reset_time_ms: int) -> int:
    return max(0, -(-(reset_time_ms - int(time.time() * 1000)) // 1000))
