"""
Signup endpoints: subscribe and verify-subscriber.

Both run rate-limit → validate → persist → respond.  Errors are raised
as SignupError subclasses and rendered by the handlers in app.main.
"""

import logging
from typing import Any

from fastapi import APIRouter, Depends, Request

from app import db
from app.config import (
    ATTRIBUTION_COOKIE_PREFIX,
    DEFAULT_SOURCE,
    SUBSCRIBE_RATE_LIMIT,
    VERIFY_RATE_LIMIT,
)
from app.dependencies import RateLimitGuard, Verifier
from app.errors import NotFoundError, TransientStoreError
from app.models import ErrorResponse, SubscribeResponse, VerifySubscriberResponse
from app.services.attribution import extract_attribution, utm_to_query
from app.services.email_verifier import mask_email
from app.validation import MAX_UTM_LENGTH, validate_subscribe_request, validate_verify_request

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["subscribers"])

subscribe_limit = RateLimitGuard("subscribe", SUBSCRIBE_RATE_LIMIT)
verify_limit = RateLimitGuard("verify", VERIFY_RATE_LIMIT)

_ERRORS: dict[int | str, dict[str, Any]] = {
    400: {"model": ErrorResponse},
    429: {"model": ErrorResponse},
    500: {"model": ErrorResponse},
}


async def _read_json(request: Request) -> Any:
    """Parsed JSON body, or None when it is missing or malformed."""
    try:
        return await request.json()
    except (ValueError, UnicodeDecodeError, RecursionError):
        return None


@router.post(
    "/subscribe",
    response_model=SubscribeResponse,
    response_model_exclude_none=True,
    operation_id="subscribe",
    summary="Subscribe an email address to the newsletter",
    responses=_ERRORS,
    dependencies=[Depends(subscribe_limit)],
)
async def subscribe(request: Request) -> SubscribeResponse:
    """
    Store the address as pending verification, together with the
    client-submitted context and server-side attribution.

    Subscribing an address that already exists is not an error: the row
    is refreshed and the response says so.
    """
    data = validate_subscribe_request(
        await _read_json(request), default_source=DEFAULT_SOURCE
    ).raise_for_error()

    context: dict[str, Any] = dict(data["context"] or {})
    server = extract_attribution(
        request, context.get("client"), cookie_prefix=ATTRIBUTION_COOKIE_PREFIX
    )
    context["server"] = server
    utm = data["utm"] or utm_to_query(server["attribution"]["utm"], MAX_UTM_LENGTH)

    outcome = await db.upsert_pending(
        data["email"],
        profile=data["profile"],
        utm=utm,
        source=data["source"],
        context=context,
    )

    if outcome is db.UpsertOutcome.ALREADY_EXISTED:
        logger.info("Existing subscriber %s re-subscribed", mask_email(data["email"]))
        return SubscribeResponse(message="already_subscribed")

    logger.info(
        "New subscriber %s (source=%s, referral=%s)",
        mask_email(data["email"]),
        data["source"],
        server["attribution"]["referralType"],
    )
    return SubscribeResponse()


@router.post(
    "/verify-subscriber",
    response_model=VerifySubscriberResponse,
    operation_id="verifySubscriber",
    summary="Check deliverability of a subscribed address and update its status",
    responses={**_ERRORS, 404: {"model": ErrorResponse}},
    dependencies=[Depends(verify_limit)],
)
@router.post(
    "/subscribe/verify-subscriber",
    response_model=VerifySubscriberResponse,
    include_in_schema=False,
    dependencies=[Depends(verify_limit)],
)
async def verify_subscriber(request: Request, verifier: Verifier) -> VerifySubscriberResponse:
    data = validate_verify_request(await _read_json(request)).raise_for_error()
    email = data["email"]

    try:
        subscriber = await db.get_subscriber(email)
    except TransientStoreError as exc:
        raise TransientStoreError("verification_failed") from exc
    if subscriber is None:
        raise NotFoundError()

    result = await verifier.verify(email)

    try:
        status = await db.apply_verification(email, result)
    except TransientStoreError as exc:
        raise TransientStoreError("verification_failed") from exc

    logger.info("Subscriber %s is now %s", mask_email(email), status.value)
    return VerifySubscriberResponse(status=status, verifier=result)
