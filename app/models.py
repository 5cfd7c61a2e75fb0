"""Pydantic models for the newsletter signup API."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class SubscriberStatus(str, Enum):
    PENDING_VERIFICATION = "pending-verification"
    ACTIVE = "active"
    INVALID = "invalid"


class VerificationOutcome(str, Enum):
    INVALID_FORMAT = "invalid_format"
    DISPOSABLE_DOMAIN = "disposable_domain"
    NO_MX = "no_mx"
    MX_OK = "mx_ok"


class VerifierResult(BaseModel):
    """Result of the last deliverability check."""
    deliverable: bool = Field(..., description="Whether the address looks deliverable")
    result: VerificationOutcome = Field(..., description="Which check decided the outcome")
    mx: bool = Field(False, description="Whether the domain publishes MX records")
    disposable: bool = Field(False, description="Whether the domain is a throwaway provider")


class Subscriber(BaseModel):
    """A stored subscriber, keyed by lowercased email."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    email: str
    status: SubscriberStatus
    profile: Optional[str] = None
    source: Optional[str] = None
    utm: Optional[str] = None
    context: Optional[dict[str, Any]] = None
    verifier: Optional[VerifierResult] = None
    created_at: datetime
    updated_at: datetime


# ── Responses ─────────────────────────────────────────────────────────────


class SubscribeResponse(BaseModel):
    ok: bool = True
    message: Optional[str] = Field(None, description="Set when the email was already subscribed")


class VerifySubscriberResponse(BaseModel):
    ok: bool = True
    status: SubscriberStatus
    verifier: VerifierResult


class ErrorResponse(BaseModel):
    """Body of every non-2xx response."""
    model_config = ConfigDict(populate_by_name=True)

    error: str = Field(..., description="Machine-readable error code")
    message: str = Field(..., description="Human-readable description")
    timestamp: datetime
    reset_time: Optional[int] = Field(
        None, alias="resetTime", description="Epoch ms when the rate-limit window resets"
    )


class HealthResponse(BaseModel):
    status: str
    version: str
    timestamp: datetime
