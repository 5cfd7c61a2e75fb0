"""
Application configuration from environment variables.

All settings have sensible defaults for local development.
A .env file in the project root is loaded automatically (if present).
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Load .env file before reading any env vars
load_dotenv(Path(__file__).resolve().parent.parent / ".env")


class ConfigError(RuntimeError):
    """Raised at startup when the configured values make no sense."""


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ── Environment ───────────────────────────────────────────────────────────

ENVIRONMENT: str = os.getenv("ENVIRONMENT", "development")
APP_NAME: str = os.getenv("APP_NAME", "The Munch")
APP_VERSION: str = "1.0.0"

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "warning" if ENVIRONMENT == "production" else "info")

# ── Paths ─────────────────────────────────────────────────────────────────

PROJECT_ROOT = Path(__file__).resolve().parent.parent
DATA_DIR = PROJECT_ROOT / "data"

# SQLite database file
DB_PATH: str = os.getenv("DB_PATH", str(DATA_DIR / "newsletter.db"))

# How long a writer waits on a locked database before giving up.
DB_TIMEOUT_MS: int = int(os.getenv("DB_TIMEOUT_MS", "5000"))

# ── Rate limiting ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RateLimitRule:
    max_requests: int
    window_ms: int


RATE_LIMIT_ENABLED: bool = _env_bool("RATE_LIMIT_ENABLED", "true")

# Empty means the process-local limiter. Any `limits` storage URI
# (e.g. "async+redis://localhost:6379") switches to the shared store.
RATE_LIMIT_STORAGE_URI: str = os.getenv("RATE_LIMIT_STORAGE_URI", "")

SUBSCRIBE_RATE_LIMIT = RateLimitRule(
    max_requests=int(os.getenv("SUBSCRIBE_RATE_LIMIT", "5")),
    window_ms=int(os.getenv("SUBSCRIBE_RATE_WINDOW_MS", "60000")),
)
VERIFY_RATE_LIMIT = RateLimitRule(
    max_requests=int(os.getenv("VERIFY_RATE_LIMIT", "10")),
    window_ms=int(os.getenv("VERIFY_RATE_WINDOW_MS", "60000")),
)

# Seconds between sweeps of expired in-memory rate-limit entries.
RATE_LIMIT_SWEEP_INTERVAL: float = float(os.getenv("RATE_LIMIT_SWEEP_INTERVAL", "300"))

# ── Email verification ────────────────────────────────────────────────────

DNS_TIMEOUT_MS: int = int(os.getenv("DNS_TIMEOUT_MS", "2500"))
DISPOSABLE_DOMAINS_PATH: str = os.getenv(
    "DISPOSABLE_DOMAINS_PATH",
    str(Path(__file__).resolve().parent / "data" / "disposable_domains.txt"),
)

# ── Subscription ──────────────────────────────────────────────────────────

DEFAULT_SOURCE: str = os.getenv("DEFAULT_SOURCE", "landing")

# Cookies written by the first-touch middleware are named "<prefix>_first_utm" etc.
ATTRIBUTION_COOKIE_PREFIX: str = os.getenv("ATTRIBUTION_COOKIE_PREFIX", "munch")

# ── CORS ──────────────────────────────────────────────────────────────────

_DEFAULT_ORIGINS = (
    "https://themunch.news,https://www.themunch.news"
    if ENVIRONMENT == "production"
    else "http://localhost:3000,http://127.0.0.1:3000"
)
CORS_ALLOWED_ORIGINS: list[str] = [
    origin.strip()
    for origin in os.getenv("CORS_ALLOWED_ORIGINS", _DEFAULT_ORIGINS).split(",")
    if origin.strip()
]


def validate_config() -> None:
    """Fail fast on nonsensical limits. Called once from the app lifespan."""
    errors: list[str] = []

    for name, rule in (("subscribe", SUBSCRIBE_RATE_LIMIT), ("verify", VERIFY_RATE_LIMIT)):
        if not 1 <= rule.max_requests <= 100:
            errors.append(f"Rate limit for {name} should be between 1-100 requests")
        if rule.window_ms <= 0:
            errors.append(f"Rate limit window for {name} must be positive")

    if DNS_TIMEOUT_MS <= 0:
        errors.append("DNS_TIMEOUT_MS must be positive")

    if errors:
        raise ConfigError("Configuration validation failed:\n" + "\n".join(errors))
