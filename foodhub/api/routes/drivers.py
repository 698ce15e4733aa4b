"""Driver directory and driver working zones."""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, Response, status

from foodhub.core.config import settings
from foodhub.core.policies import DriverPolicy
from foodhub.core.rate_limit import limiter
from foodhub.core.rbac import RequireDriverManagement, forbid_unless
from foodhub.core.responses import page_response, paginate
from foodhub.core.validators import OptionalIdQuery, PageNumber, PerPage, PositiveIntId
from foodhub.db.base import isoformat
from foodhub.db.session import DbSession
from foodhub.models.delivery import Driver, DriverWorkingZone
from foodhub.schemas.delivery import WorkingZoneCreate, WorkingZoneUpdate

logger = logging.getLogger(__name__)

router = APIRouter()


def driver_to_dict(driver: Driver) -> dict:
    """Public driver view. Credentials, identity numbers and banking stay hidden."""
    return {
        "id": driver.id,
        "first_name": driver.first_name,
        "last_name": driver.last_name,
        "full_name": driver.full_name,
        "email": driver.email,
        "phone": driver.phone,
        "vehicle_type": driver.vehicle_type,
        "vehicle_make": driver.vehicle_make,
        "vehicle_model": driver.vehicle_model,
        "vehicle_year": driver.vehicle_year,
        "vehicle_color": driver.vehicle_color,
        "vehicle_plate_number": driver.vehicle_plate_number,
        "license_expiry_date": driver.license_expiry_date.isoformat() if driver.license_expiry_date else None,
        "status": driver.status,
        "is_online": driver.is_online,
        "is_available": driver.is_available,
        "current_latitude": driver.current_latitude,
        "current_longitude": driver.current_longitude,
        "last_location_update": isoformat(driver.last_location_update),
        "last_active_at": isoformat(driver.last_active_at),
        "max_orders": driver.max_orders or settings.default_driver_max_orders,
        "rating": driver.rating,
        "total_deliveries": driver.total_deliveries,
        "completed_deliveries": driver.completed_deliveries,
        "cancelled_deliveries": driver.cancelled_deliveries,
        "total_earnings": float(driver.total_earnings or 0),
        "documents": driver.documents or {},
        "working_zones": [zone_to_dict(z) for z in driver.working_zones],
        "created_at": isoformat(driver.created_at),
    }


def zone_to_dict(zone: DriverWorkingZone) -> dict:
    return {
        "id": zone.id,
        "driver_id": zone.driver_id,
        "zone_name": zone.zone_name,
        "zone_description": zone.zone_description,
        "coordinates": zone.coordinates,
        "radius_km": zone.radius_km,
        "is_active": zone.is_active,
        "priority_level": zone.priority_level,
        "start_time": zone.start_time,
        "end_time": zone.end_time,
    }


def get_driver_or_404(db, driver_id: int) -> Driver:
    driver = db.get(Driver, driver_id)
    if not driver:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Driver not found")
    return driver


def _get_zone_or_404(db, zone_id: int) -> DriverWorkingZone:
    zone = db.get(DriverWorkingZone, zone_id)
    if not zone:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Working zone not found")
    return zone


# ============== Drivers ==============

@router.get("/drivers")
@limiter.limit("60/minute")
def list_drivers(
    request: Request,
    db: DbSession,
    current_user: RequireDriverManagement,
    page: PageNumber = 1,
    per_page: PerPage = settings.order_per_page_default,
    driver_status: Optional[str] = Query(default=None, alias="status", max_length=20),
    is_available: Optional[bool] = None,
    vehicle_type: Optional[str] = Query(default=None, max_length=20),
):
    forbid_unless(DriverPolicy.view_any(current_user))

    query = db.query(Driver)
    if driver_status:
        query = query.filter(Driver.status == driver_status)
    if is_available is not None:
        query = query.filter(Driver.is_available == is_available)
    if vehicle_type:
        query = query.filter(Driver.vehicle_type == vehicle_type)

    drivers, total = paginate(query.order_by(Driver.id), page, per_page)
    return page_response([driver_to_dict(d) for d in drivers], total, page, per_page)


@router.get("/drivers/{driver_id}")
@limiter.limit("60/minute")
def get_driver(request: Request, driver_id: PositiveIntId, db: DbSession, current_user: RequireDriverManagement):
    driver = get_driver_or_404(db, driver_id)
    forbid_unless(DriverPolicy.view(current_user, driver))
    return driver_to_dict(driver)


@router.delete("/drivers/{driver_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("10/minute")
def delete_driver(request: Request, driver_id: PositiveIntId, db: DbSession, current_user: RequireDriverManagement):
    driver = get_driver_or_404(db, driver_id)
    forbid_unless(DriverPolicy.delete(current_user, driver))
    db.delete(driver)
    db.commit()
    logger.info(f"Driver {driver_id} removed by user {current_user.user_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============== Working zones ==============

@router.get("/driver-working-zones")
@limiter.limit("60/minute")
def list_working_zones(
    request: Request,
    db: DbSession,
    current_user: RequireDriverManagement,
    driver_id: OptionalIdQuery = None,
    is_active: Optional[bool] = None,
    page: PageNumber = 1,
    per_page: PerPage = settings.order_per_page_default,
):
    forbid_unless(DriverPolicy.view_any(current_user))

    query = db.query(DriverWorkingZone)
    if driver_id:
        query = query.filter(DriverWorkingZone.driver_id == driver_id)
    if is_active is not None:
        query = query.filter(DriverWorkingZone.is_active == is_active)

    zones, total = paginate(
        query.order_by(DriverWorkingZone.priority_level.desc(), DriverWorkingZone.id), page, per_page
    )
    return page_response([zone_to_dict(z) for z in zones], total, page, per_page)


@router.post("/driver-working-zones", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_working_zone(
    request: Request, data: WorkingZoneCreate, db: DbSession, current_user: RequireDriverManagement,
):
    driver = get_driver_or_404(db, data.driver_id)
    forbid_unless(DriverPolicy.update(current_user, driver))

    zone = DriverWorkingZone(**data.model_dump())
    db.add(zone)
    db.commit()
    db.refresh(zone)
    logger.info(f"Working zone {zone.id} '{zone.zone_name}' added for driver {driver.id}")
    return zone_to_dict(zone)


@router.get("/driver-working-zones/{zone_id}")
@limiter.limit("60/minute")
def get_working_zone(request: Request, zone_id: PositiveIntId, db: DbSession, current_user: RequireDriverManagement):
    zone = _get_zone_or_404(db, zone_id)
    forbid_unless(DriverPolicy.view(current_user, zone.driver))
    return zone_to_dict(zone)


@router.put("/driver-working-zones/{zone_id}")
@limiter.limit("30/minute")
def update_working_zone(
    request: Request,
    zone_id: PositiveIntId,
    data: WorkingZoneUpdate,
    db: DbSession,
    current_user: RequireDriverManagement,
):
    zone = _get_zone_or_404(db, zone_id)
    forbid_unless(DriverPolicy.update(current_user, zone.driver))

    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(zone, field, value)
    db.commit()
    db.refresh(zone)
    return zone_to_dict(zone)


@router.delete("/driver-working-zones/{zone_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("30/minute")
def delete_working_zone(
    request: Request, zone_id: PositiveIntId, db: DbSession, current_user: RequireDriverManagement,
):
    zone = _get_zone_or_404(db, zone_id)
    forbid_unless(DriverPolicy.update(current_user, zone.driver))
    db.delete(zone)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
