"""Rate limit introspection and administration."""

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request

from foodhub.core.rate_limit import ENDPOINT_TYPES, advanced_limiter, limiter
from foodhub.core.rbac import OptionalCurrentUser, RequireSuperAdmin
from foodhub.core.responses import success_response
from foodhub.db.session import DbSession
from foodhub.services.security_logging_service import security_logger

logger = logging.getLogger(__name__)

router = APIRouter()

_ENDPOINT_PATTERN = "^(" + "|".join(ENDPOINT_TYPES) + r"|\*)$"


@router.get("/status")
@limiter.limit("30/minute")
def rate_limit_status(request: Request, current_user: OptionalCurrentUser):
    """The caller's tier plus used/remaining counts for every endpoint type."""
    return success_response(
        "Rate limit status retrieved successfully",
        advanced_limiter.status_report(request, current_user),
    )


@router.delete("/clear")
@limiter.limit("10/minute")
def clear_rate_limits(
    request: Request,
    db: DbSession,
    current_user: RequireSuperAdmin,
    target_type: str = Query(..., pattern=r"^(ip|user|email)$"),
    target_value: str = Query(..., min_length=1, max_length=255),
    endpoint_type: Optional[str] = Query(default=None, pattern=_ENDPOINT_PATTERN),
):
    if target_type == "email":
        target_value = target_value.lower()
    cleared = advanced_limiter.clear(target_type, target_value, endpoint_type)
    security_logger.log_security_event(
        db,
        current_user,
        "rate_limit_cleared",
        {"target_type": target_type, "target_value": target_value, "endpoint_type": endpoint_type or "*"},
        "info",
        request=request,
    )
    db.commit()
    return success_response("Rate limits cleared successfully", {"cleared_keys": cleared})
