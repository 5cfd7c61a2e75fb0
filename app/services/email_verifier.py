"""
Best-effort deliverability check run at signup time.

Checks short-circuit in order, first match wins:

1.  format          → invalid_format
2.  disposable list → disposable_domain
3.  DNS MX lookup   → no_mx  (also on DNS error or timeout)
4.  otherwise       → mx_ok

`verify()` never raises for a string input: every DNS failure collapses
into a non-deliverable result.
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from functools import lru_cache
from pathlib import Path

import dns.asyncresolver
import dns.exception

from app.models import VerificationOutcome, VerifierResult

logger = logging.getLogger(__name__)

_FORMAT_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]{2,}$", re.IGNORECASE)

MxLookup = Callable[[str, float], Awaitable[bool]]


@lru_cache(maxsize=None)
def load_disposable_domains(path: str) -> frozenset[str]:
    """Read the blocklist once per path; cached for the process lifetime."""
    blocklist = Path(path)
    if not blocklist.is_file():
        logger.warning(
            "Disposable domain blocklist not found at %s; no domains will be blocked.", path
        )
        return frozenset()

    domains = set()
    with blocklist.open(encoding="utf-8") as fh:
        for line in fh:
            line = line.strip().lower()
            if line and not line.startswith("#"):
                domains.add(line)
    logger.info("Disposable domain blocklist loaded: %d domains from %s", len(domains), path)
    return frozenset(domains)


async def resolve_mx(domain: str, timeout: float) -> bool:
    """True when `domain` publishes at least one MX record."""
    answer = await dns.asyncresolver.resolve(domain, "MX", lifetime=timeout)
    return len(answer) > 0


def mask_email(email: str) -> str:
    local, _, domain = email.partition("@")
    return f"{local[:1]}***@{domain}" if domain else "***"


class EmailVerifier:
    def __init__(
        self,
        disposable_domains: frozenset[str] | set[str],
        *,
        dns_timeout: float = 2.5,
        mx_lookup: MxLookup | None = None,
    ) -> None:
        self._disposable = frozenset(d.lower() for d in disposable_domains)
        self._dns_timeout = dns_timeout
        self._mx_lookup = mx_lookup or resolve_mx

    def is_disposable(self, domain: str) -> bool:
        return domain.lower() in self._disposable

    async def has_mx(self, domain: str) -> bool:
        """MX lookup raced against the timeout; any failure means no MX."""
        try:
            return await asyncio.wait_for(
                self._mx_lookup(domain, self._dns_timeout), timeout=self._dns_timeout
            )
        except asyncio.TimeoutError:
            logger.info("MX lookup for %s timed out after %.1fs", domain, self._dns_timeout)
        except (dns.exception.DNSException, OSError) as exc:
            logger.info("MX lookup for %s failed: %s", domain, type(exc).__name__)
        return False

    async def verify(self, email: str) -> VerifierResult:
        started = time.perf_counter()
        result = await self._verify(email.strip().lower())
        logger.info(
            "Email verification for %s: %s (%dms)",
            mask_email(email.strip().lower()),
            result.result.value,
            (time.perf_counter() - started) * 1000,
        )
        return result

    async def _verify(self, email: str) -> VerifierResult:
        if not _FORMAT_RE.match(email):
            return VerifierResult(deliverable=False, result=VerificationOutcome.INVALID_FORMAT)

        domain = email.rsplit("@", 1)[1]
        if self.is_disposable(domain):
            return VerifierResult(
                deliverable=False, result=VerificationOutcome.DISPOSABLE_DOMAIN, disposable=True
            )

        if not await self.has_mx(domain):
            return VerifierResult(deliverable=False, result=VerificationOutcome.NO_MX)

        return VerifierResult(deliverable=True, result=VerificationOutcome.MX_OK, mx=True)
