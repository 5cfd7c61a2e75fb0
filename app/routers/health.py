"""
Liveness endpoint used by the hosting platform's probes.
"""

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Response, status

from app import db
from app.config import APP_VERSION
from app.errors import TransientStoreError
from app.models import HealthResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    operation_id="getHealth",
    summary="Health check",
    responses={503: {"model": HealthResponse}},
)
async def get_health(response: Response) -> HealthResponse:
    """Report "ok" while the subscriber store answers, "degraded" otherwise."""
    try:
        await db.ping()
        state = "ok"
    except TransientStoreError:
        logger.warning("Health check: subscriber store unavailable")
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        state = "degraded"

    return HealthResponse(status=state, version=APP_VERSION, timestamp=datetime.now(timezone.utc))
