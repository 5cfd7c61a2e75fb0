"""Main FastAPI application for the newsletter signup API."""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app import db
from app.config import (
    APP_NAME,
    APP_VERSION,
    ATTRIBUTION_COOKIE_PREFIX,
    CORS_ALLOWED_ORIGINS,
    DISPOSABLE_DOMAINS_PATH,
    DNS_TIMEOUT_MS,
    RATE_LIMIT_ENABLED,
    RATE_LIMIT_STORAGE_URI,
    RATE_LIMIT_SWEEP_INTERVAL,
    validate_config,
)
from app.dependencies import seconds_until
from app.errors import ERROR_MESSAGES, RateLimitError, SignupError
from app.middleware import FirstTouchCookies, log_requests, request_id_of
from app.models import ErrorResponse
from app.rate_limit import RateLimitSweeper, create_rate_limiter
from app.routers import health, subscribe
from app.services.email_verifier import EmailVerifier, load_disposable_domains

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    validate_config()
    await db.init_db()

    limiter = create_rate_limiter(RATE_LIMIT_STORAGE_URI)
    app.state.rate_limiter = limiter
    app.state.rate_limit_enabled = RATE_LIMIT_ENABLED
    app.state.verifier = EmailVerifier(
        load_disposable_domains(DISPOSABLE_DOMAINS_PATH),
        dns_timeout=DNS_TIMEOUT_MS / 1000,
    )

    sweeper = RateLimitSweeper(limiter, interval=RATE_LIMIT_SWEEP_INTERVAL)
    await sweeper.start()
    logger.info("%s signup API ready", APP_NAME)
    try:
        yield
    finally:
        await sweeper.stop()
        await db.close_db()


app = FastAPI(
    title=f"{APP_NAME} Newsletter API",
    description="Newsletter signup, attribution capture and deliverability checks",
    version=APP_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_methods=["POST", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization"],
)
app.middleware("http")(FirstTouchCookies(ATTRIBUTION_COOKIE_PREFIX))
app.middleware("http")(log_requests)

app.include_router(health.router)
app.include_router(subscribe.router)


# ── Error rendering ────────────────────────────────────────────────────────


def _error_response(
    status_code: int,
    error: str,
    message: str,
    *,
    reset_time: int | None = None,
    headers: dict[str, str] | None = None,
) -> JSONResponse:
    body = ErrorResponse(
        error=error,
        message=message,
        timestamp=datetime.now(timezone.utc),
        reset_time=reset_time,
    )
    return JSONResponse(
        status_code=status_code,
        content=body.model_dump(mode="json", by_alias=True, exclude_none=True),
        headers=headers,
    )


@app.exception_handler(SignupError)
async def handle_signup_error(request: Request, exc: SignupError) -> JSONResponse:
    if isinstance(exc, RateLimitError):
        headers = {
            "Retry-After": str(seconds_until(exc.reset_time)),
            "X-RateLimit-Remaining": "0",
            "X-RateLimit-Reset": str(exc.reset_time),
        }
        if exc.limit is not None:
            headers["X-RateLimit-Limit"] = str(exc.limit)
        return _error_response(
            exc.status_code,
            exc.error,
            exc.message,
            reset_time=exc.reset_time,
            headers=headers,
        )
    return _error_response(exc.status_code, exc.error, exc.message)


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    request_id = request_id_of(request)
    return _error_response(
        500,
        "internal_error",
        ERROR_MESSAGES["internal_error"],
        headers={"X-Request-ID": request_id} if request_id else None,
    )
