"""Public customer tracking links. The token is the only credential."""

from fastapi import APIRouter, HTTPException, Path, Request, status

from foodhub.core.rate_limit import limiter
from foodhub.core.responses import success_response
from foodhub.db.base import isoformat
from foodhub.db.session import DbSession
from foodhub.services.delivery_service import DeliveryService

router = APIRouter()


@router.get("/{token}")
@limiter.limit("60/minute")
def track_order(
    request: Request,
    db: DbSession,
    token: str = Path(..., min_length=64, max_length=64, pattern=r"^[0-9a-f]{64}$"),
):
    service = DeliveryService(db)
    order = service.resolve_tracking_token(token)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Tracking link not found or expired")

    data = {
        "order_number": order.order_number,
        "status": order.status.value,
        "type": order.type.value,
        "created_at": isoformat(order.created_at),
        "delivered_at": isoformat(order.delivered_at),
        "delivery": None,
    }
    assignment = order.current_assignment
    if assignment is not None:
        progress = service.track_delivery_progress(assignment)
        data["delivery"] = {
            "status": progress["current_status"],
            "driver_name": assignment.driver.first_name,
            "driver_location": progress["driver_location"],
            "progress_percentage": progress["progress_percentage"],
            "time_remaining": progress["time_remaining"],
            "distance_remaining": progress["distance_remaining"],
            "estimated_delivery_time": progress["order_details"]["estimated_delivery_time"],
        }
    return success_response("Order tracking retrieved successfully", data)
