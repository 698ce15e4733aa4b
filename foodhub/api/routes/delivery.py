"""Delivery operations: drivers, routing, assignments, live tracking and reporting.

Every endpoint is restricted to super admins and delivery managers and answers
with the ``{"success", "message", "data"}`` envelope. Business rule failures
raised by the service as ``ValueError`` become a 400 with the service message.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status

from foodhub.api.routes.drivers import driver_to_dict, get_driver_or_404
from foodhub.core.rate_limit import limiter
from foodhub.core.rbac import RequireDeliveryOps
from foodhub.core.responses import success_response
from foodhub.core.validators import OptionalIdQuery, PositiveIntId
from foodhub.db.base import as_utc, isoformat
from foodhub.db.session import DbSession
from foodhub.models.delivery import DeliveryTracking, OrderAssignment
from foodhub.models.order import Order
from foodhub.schemas.delivery import (
    AssignmentStatusUpdate,
    AssignOrderRequest,
    AvailableDriversQuery,
    BatchOrdersRequest,
    DeliveryExceptionRequest,
    DriverCreate,
    DriverResponseRequest,
    DriverStatusUpdate,
    LocationUpdate,
    NotificationRequest,
    RouteEtaRequest,
    RouteOptimizeRequest,
    ZoneOptimizeRequest,
)
from foodhub.services.delivery_service import DeliveryService, distance_between

logger = logging.getLogger(__name__)

router = APIRouter()


def assignment_to_dict(assignment: OrderAssignment) -> dict:
    return {
        "id": assignment.id,
        "order_id": assignment.order_id,
        "driver_id": assignment.driver_id,
        "status": assignment.status,
        "priority": assignment.priority,
        "assigned_at": isoformat(assignment.assigned_at),
        "started_at": isoformat(assignment.started_at),
        "completed_at": isoformat(assignment.completed_at),
        "driver_response": assignment.driver_response,
        "response_time": isoformat(assignment.response_time),
        "rejection_reason": assignment.rejection_reason,
        "estimated_pickup_time": isoformat(assignment.estimated_pickup_time),
        "estimated_delivery_time": isoformat(assignment.estimated_delivery_time),
        "actual_pickup_time": isoformat(assignment.actual_pickup_time),
        "actual_delivery_time": isoformat(assignment.actual_delivery_time),
        "delivery_notes": assignment.delivery_notes,
        "delivery_fee": float(assignment.delivery_fee or 0),
    }


def tracking_to_dict(point: DeliveryTracking) -> dict:
    return {
        "id": point.id,
        "driver_id": point.driver_id,
        "order_assignment_id": point.order_assignment_id,
        "latitude": point.latitude,
        "longitude": point.longitude,
        "accuracy": point.accuracy,
        "speed": point.speed,
        "heading": point.heading,
        "altitude": point.altitude,
        "timestamp": isoformat(point.timestamp),
        "metadata": point.meta,
    }


def _get_assignment_or_404(db, assignment_id: int) -> OrderAssignment:
    assignment = db.get(OrderAssignment, assignment_id)
    if not assignment:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Assignment not found")
    return assignment


def _get_order_or_404(db, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return order


def _failed(action: str, error: Exception) -> HTTPException:
    logger.warning(f"Failed to {action}: {error}")
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Failed to {action}: {error}")


# ============== Drivers ==============

@router.post("/drivers", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_driver(request: Request, data: DriverCreate, db: DbSession, current_user: RequireDeliveryOps):
    try:
        driver = DeliveryService(db).create_driver(data.model_dump())
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    return success_response("Driver created successfully", driver_to_dict(driver))


@router.put("/drivers/{driver_id}/status")
@limiter.limit("60/minute")
def update_driver_status(
    request: Request,
    driver_id: PositiveIntId,
    data: DriverStatusUpdate,
    db: DbSession,
    current_user: RequireDeliveryOps,
):
    driver = get_driver_or_404(db, driver_id)
    driver = DeliveryService(db).update_driver_status(driver, data.model_dump(exclude_unset=True))
    return success_response("Driver status updated successfully", driver_to_dict(driver))


@router.get("/drivers/available")
@limiter.limit("60/minute")
def available_drivers(
    request: Request,
    db: DbSession,
    current_user: RequireDeliveryOps,
    query: AvailableDriversQuery = Depends(),
):
    ranked = DeliveryService(db).rank_available_drivers(query.latitude, query.longitude, {
        "zone_id": query.zone_id,
        "vehicle_type": query.vehicle_type,
        "max_distance": query.max_distance,
    })
    drivers = []
    for entry in ranked:
        data = driver_to_dict(entry["driver"])
        data["distance"] = round(entry["distance"], 2) if entry["distance"] is not None else None
        data["score"] = round(entry["score"], 4)
        data["active_orders"] = entry["active_orders"]
        drivers.append(data)
    return success_response("Available drivers retrieved successfully", drivers)


@router.post("/drivers/{driver_id}/location")
@limiter.limit("120/minute")
async def broadcast_driver_location(
    request: Request,
    driver_id: PositiveIntId,
    data: LocationUpdate,
    db: DbSession,
    current_user: RequireDeliveryOps,
):
    driver = get_driver_or_404(db, driver_id)
    try:
        result = await DeliveryService(db).broadcast_driver_location(driver, data.model_dump())
    except ValueError as e:
        raise _failed("broadcast driver location", e)
    return success_response("Driver location broadcasted successfully", result)


@router.get("/drivers/{driver_id}/tracking-history")
@limiter.limit("60/minute")
def driver_tracking_history(
    request: Request,
    driver_id: PositiveIntId,
    db: DbSession,
    current_user: RequireDeliveryOps,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    order_assignment_id: OptionalIdQuery = None,
    limit: int = Query(default=100, ge=1, le=500),
):
    start_date, end_date = as_utc(start_date), as_utc(end_date)
    if start_date and end_date and end_date < start_date:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="The end date must be a date after or equal to start date.",
        )
    driver = get_driver_or_404(db, driver_id)
    points = DeliveryService(db).get_driver_tracking_history(
        driver, start_date, end_date, order_assignment_id, limit
    )
    return success_response(
        "Delivery tracking history retrieved successfully",
        [tracking_to_dict(p) for p in points],
    )


# ============== Routes and ETAs ==============

@router.post("/route/optimize")
@limiter.limit("30/minute")
def optimize_route(request: Request, data: RouteOptimizeRequest, db: DbSession, current_user: RequireDeliveryOps):
    service = DeliveryService(db)
    constraints = data.constraints.model_dump(exclude_none=True) if data.constraints else {}
    if data.driver_id:
        driver = get_driver_or_404(db, data.driver_id)
        constraints.setdefault("vehicle_type", driver.vehicle_type)
    try:
        route = service.optimize_delivery_route([w.model_dump() for w in data.waypoints], constraints)
    except ValueError as e:
        raise _failed("optimize route", e)
    return success_response("Route optimized successfully", route)


@router.post("/route/calculate-eta")
@limiter.limit("30/minute")
def calculate_route_eta(request: Request, data: RouteEtaRequest, db: DbSession, current_user: RequireDeliveryOps):
    driver = get_driver_or_404(db, data.driver_id)
    waypoints = [w.model_dump() for w in data.waypoints]
    previous = DeliveryService.driver_location(driver)
    for waypoint in waypoints:
        if not waypoint["distance"]:
            waypoint["distance"] = distance_between(previous, (waypoint["latitude"], waypoint["longitude"])) or 0
        previous = (waypoint["latitude"], waypoint["longitude"])
    eta = DeliveryService(db).calculate_route_eta({"waypoints": waypoints}, driver)
    return success_response("ETA calculated successfully", eta)


@router.put("/route/{assignment_id}/progress")
@limiter.limit("120/minute")
async def update_route_progress(
    request: Request,
    assignment_id: PositiveIntId,
    data: LocationUpdate,
    db: DbSession,
    current_user: RequireDeliveryOps,
):
    assignment = _get_assignment_or_404(db, assignment_id)
    try:
        progress = await DeliveryService(db).update_route_progress(assignment, data.model_dump())
    except ValueError as e:
        raise _failed("update route progress", e)
    return success_response("Route progress updated successfully", progress)


# ============== Assignments ==============

@router.get("/assignments/{assignment_id}/progress")
@limiter.limit("60/minute")
def assignment_progress(request: Request, assignment_id: PositiveIntId, db: DbSession, current_user: RequireDeliveryOps):
    assignment = _get_assignment_or_404(db, assignment_id)
    progress = DeliveryService(db).track_delivery_progress(assignment)
    return success_response("Delivery progress tracked successfully", progress)


@router.put("/assignments/{assignment_id}/status")
@limiter.limit("60/minute")
async def update_assignment_status(
    request: Request,
    assignment_id: PositiveIntId,
    data: AssignmentStatusUpdate,
    db: DbSession,
    current_user: RequireDeliveryOps,
):
    assignment = _get_assignment_or_404(db, assignment_id)
    try:
        assignment = await DeliveryService(db).update_assignment_status(
            assignment, data.status, data.estimated_delivery_time
        )
    except ValueError as e:
        db.rollback()
        raise _failed("update assignment status", e)
    return success_response("Assignment status updated successfully", assignment_to_dict(assignment))


@router.post("/assignments/{assignment_id}/response")
@limiter.limit("30/minute")
def driver_response(
    request: Request,
    assignment_id: PositiveIntId,
    data: DriverResponseRequest,
    db: DbSession,
    current_user: RequireDeliveryOps,
):
    assignment = _get_assignment_or_404(db, assignment_id)
    try:
        result = DeliveryService(db).handle_driver_response(
            assignment,
            data.response,
            data.reason,
            data.notes,
            data.estimated_pickup_time,
            data.estimated_delivery_time,
        )
    except ValueError as e:
        raise _failed("handle driver response", e)
    return success_response("Driver response processed successfully", result)


@router.post("/assignments/{assignment_id}/notifications")
@limiter.limit("30/minute")
async def send_notification(
    request: Request,
    assignment_id: PositiveIntId,
    data: NotificationRequest,
    db: DbSession,
    current_user: RequireDeliveryOps,
):
    assignment = _get_assignment_or_404(db, assignment_id)
    try:
        notification = await DeliveryService(db).send_delivery_notifications(assignment, data.event)
    except ValueError as e:
        raise _failed("send delivery notification", e)
    return success_response("Delivery notification sent successfully", notification)


@router.post("/assignments/{assignment_id}/exceptions")
@limiter.limit("30/minute")
async def delivery_exception(
    request: Request,
    assignment_id: PositiveIntId,
    data: DeliveryExceptionRequest,
    db: DbSession,
    current_user: RequireDeliveryOps,
):
    assignment = _get_assignment_or_404(db, assignment_id)
    try:
        result = await DeliveryService(db).handle_delivery_exceptions(
            assignment, data.exception_type, data.details.model_dump(exclude_none=True)
        )
    except ValueError as e:
        db.rollback()
        raise _failed("handle delivery exception", e)
    return success_response("Delivery exception handled successfully", result)


# ============== Orders ==============

@router.get("/orders/{order_id}/eta")
@limiter.limit("60/minute")
def customer_eta(request: Request, order_id: PositiveIntId, db: DbSession, current_user: RequireDeliveryOps):
    order = _get_order_or_404(db, order_id)
    try:
        eta = DeliveryService(db).calculate_customer_eta(order)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return success_response("Customer ETA calculated successfully", eta)


@router.post("/orders/assign")
@limiter.limit("30/minute")
def assign_order(request: Request, data: AssignOrderRequest, db: DbSession, current_user: RequireDeliveryOps):
    order = _get_order_or_404(db, data.order_id)
    try:
        assignment = DeliveryService(db).assign_order_to_driver(order, data.model_dump(exclude={"order_id"}))
    except ValueError as e:
        raise _failed("assign order to driver", e)
    if assignment is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No available drivers for this order")
    return success_response("Order assigned to driver successfully", assignment_to_dict(assignment))


@router.post("/orders/batch")
@limiter.limit("30/minute")
def batch_orders(request: Request, data: BatchOrdersRequest, db: DbSession, current_user: RequireDeliveryOps):
    orders = db.query(Order).filter(Order.id.in_(data.order_ids)).order_by(Order.id).all()
    missing = sorted(set(data.order_ids) - {o.id for o in orders})
    if missing:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"The selected order ids are invalid: {missing}",
        )
    batches = DeliveryService(db).batch_orders_for_delivery(orders, data.max_orders_per_batch)
    return success_response("Orders batched for delivery successfully", batches)


@router.get("/orders/{order_id}/tracking-link")
@limiter.limit("30/minute")
def tracking_link(request: Request, order_id: PositiveIntId, db: DbSession, current_user: RequireDeliveryOps):
    order = _get_order_or_404(db, order_id)
    link = DeliveryService(db).generate_tracking_link(order)
    return success_response("Tracking link generated successfully", link)


# ============== Reporting ==============

@router.get("/reports")
@limiter.limit("30/minute")
def delivery_reports(
    request: Request,
    db: DbSession,
    current_user: RequireDeliveryOps,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    driver_id: OptionalIdQuery = None,
    assignment_status: Optional[str] = Query(
        default=None, alias="status", pattern=r"^(assigned|pickup|picked_up|en_route|out_for_delivery|delivered|cancelled)$"
    ),
):
    start_date, end_date = as_utc(start_date), as_utc(end_date)
    if start_date and end_date and end_date < start_date:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="The end date must be a date after or equal to start date.",
        )
    report = DeliveryService(db).generate_delivery_reports({
        "start_date": start_date,
        "end_date": end_date,
        "driver_id": driver_id,
        "status": assignment_status,
    })
    return success_response("Delivery reports generated successfully", report)


@router.get("/kpis")
@limiter.limit("30/minute")
def delivery_kpis(request: Request, db: DbSession, current_user: RequireDeliveryOps):
    return success_response("Delivery KPIs tracked successfully", DeliveryService(db).get_delivery_kpis())


@router.post("/zones/optimize")
@limiter.limit("10/minute")
def optimize_zones(
    request: Request, db: DbSession, current_user: RequireDeliveryOps, data: Optional[ZoneOptimizeRequest] = None,
):
    days = data.days if data is not None else 30
    return success_response("Delivery zones optimized successfully", DeliveryService(db).optimize_delivery_zones(days))
