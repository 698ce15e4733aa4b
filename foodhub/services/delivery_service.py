"""Driver fleet and delivery management.

Covers the driver lifecycle (creation, status, location), finding and ranking
available drivers, assigning orders and handling driver responses, advancing
assignments through pickup and delivery, route and ETA estimates, delivery
exceptions, and reporting.
"""

import hashlib
import json
import logging
import math
from collections import defaultdict
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from foodhub.core.cache import redis_cache
from foodhub.core.config import settings
from foodhub.core.security import get_password_hash
from foodhub.db.base import as_utc, isoformat, utcnow
from foodhub.models.customer import CustomerAddress
from foodhub.models.delivery import (
    ACTIVE_ASSIGNMENT_STATUSES,
    ASSIGNMENT_STATUS_SEQUENCE,
    AssignmentStatus,
    DeliveryTracking,
    Driver,
    DriverStatus,
    DriverWorkingZone,
    OrderAssignment,
)
from foodhub.models.order import Order, OrderStatus
from foodhub.services.events import (
    DeliveryStatusChanged,
    DriverLocationUpdated,
    OrderStatusUpdated,
    broadcast_event,
)
from foodhub.services.security_logging_service import SEVERITY_HIGH, security_logger
from foodhub.services.websocket_service import ws_manager

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371
APPROACHING_DISTANCE_KM = 2.5
DEFAULT_STOP_MINUTES = 5
DEFAULT_PREPARATION_MINUTES = 15
MULTI_DELIVERY_DELAY_MINUTES = 10
TRACKING_LINK_TTL = 86400
CUSTOMER_CONTACT_ATTEMPTS = 3
BATCH_RADIUS_KM = 3.0
FUEL_COST_PER_KM = Decimal("0.12")
DRIVER_COST_PER_MINUTE = Decimal("0.25")

# Drivers in these account states can take orders
DISPATCHABLE_DRIVER_STATUSES = (DriverStatus.ACTIVE.value, DriverStatus.ONLINE.value)

VEHICLE_SPEEDS_KMH = {
    "car": 30.0,
    "motorcycle": 35.0,
    "scooter": 25.0,
    "bicycle": 15.0,
}

# Aliases accepted for assignment statuses
ASSIGNMENT_STATUS_ALIASES = {
    "pickup": AssignmentStatus.PICKED_UP.value,
    "en_route": AssignmentStatus.OUT_FOR_DELIVERY.value,
}

TERMINAL_ASSIGNMENT_STATUSES = (
    AssignmentStatus.DELIVERED.value,
    AssignmentStatus.REJECTED.value,
    AssignmentStatus.CANCELLED.value,
)

# Order status mirrored when an assignment enters a status
ORDER_STATUS_FOR_ASSIGNMENT = {
    AssignmentStatus.PICKED_UP.value: OrderStatus.OUT_FOR_DELIVERY,
    AssignmentStatus.OUT_FOR_DELIVERY.value: OrderStatus.OUT_FOR_DELIVERY,
    AssignmentStatus.DELIVERED.value: OrderStatus.DELIVERED,
}

PROGRESS_PERCENTAGE = {
    AssignmentStatus.ASSIGNED.value: 0,
    AssignmentStatus.ACCEPTED.value: 10,
    AssignmentStatus.PICKED_UP.value: 40,
    AssignmentStatus.OUT_FOR_DELIVERY.value: 70,
    AssignmentStatus.DELIVERED.value: 100,
}

NOTIFICATION_MESSAGES = {
    "assigned": "{driver} has been assigned to your order {order}.",
    "pickup": "{driver} has picked up your order {order}.",
    "en_route": "Your order {order} is on its way.",
    "approaching": "{driver} is almost there with your order {order}.",
    "delivered": "Your order {order} has been delivered. Enjoy!",
    "delayed": "Your order {order} is running late. We're sorry for the wait.",
}

EXCEPTION_TYPES = (
    "customer_unavailable",
    "address_not_found",
    "order_quality_issue",
    "delivery_delay",
    "traffic_delay",
    "vehicle_breakdown",
    "weather_delay",
    "security_issue",
)


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance in kilometres."""
    lat_delta = math.radians(lat2 - lat1)
    lng_delta = math.radians(lng2 - lng1)
    a = (
        math.sin(lat_delta / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(lng_delta / 2) ** 2
    )
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def distance_between(a: Optional[Tuple[float, float]], b: Optional[Tuple[float, float]]) -> Optional[float]:
    """Distance between two (lat, lng) points, or None when either is unknown."""
    if not a or not b or None in a or None in b:
        return None
    return haversine_km(a[0], a[1], b[0], b[1])


def validate_location(location: Dict[str, Any]) -> bool:
    lat, lng = location.get("latitude"), location.get("longitude")
    return lat is not None and lng is not None and -90 <= lat <= 90 and -180 <= lng <= 180


def normalize_assignment_status(status: str) -> str:
    status = getattr(status, "value", status)
    return ASSIGNMENT_STATUS_ALIASES.get(status, status)


def _minutes(distance_km: Optional[float], speed_kmh: float) -> float:
    if not distance_km:
        return 0.0
    return distance_km / speed_kmh * 60


class DeliveryService:
    def __init__(self, db: Session):
        from foodhub.services.order_service import OrderService

        self.db = db
        self.orders = OrderService(db)

    # ------------------------------------------------------------------
    # Location helpers
    # ------------------------------------------------------------------

    @staticmethod
    def driver_location(driver: Driver) -> Optional[Tuple[float, float]]:
        if driver.current_latitude is None or driver.current_longitude is None:
            return None
        return driver.current_latitude, driver.current_longitude

    @staticmethod
    def pickup_location(order: Order) -> Optional[Tuple[float, float]]:
        branch = order.branch
        if branch is None or branch.latitude is None or branch.longitude is None:
            return None
        return branch.latitude, branch.longitude

    def delivery_location(self, order: Order) -> Optional[Tuple[float, float]]:
        if order.customer_address_id is None:
            return None
        address = self.db.get(CustomerAddress, order.customer_address_id)
        if address is None or address.latitude is None or address.longitude is None:
            return None
        return address.latitude, address.longitude

    @staticmethod
    def vehicle_speed(vehicle_type: Optional[str]) -> float:
        return VEHICLE_SPEEDS_KMH.get(vehicle_type or "", settings.average_speed_kmh)

    def _active_assignments(self, driver: Driver) -> List[OrderAssignment]:
        return (
            self.db.query(OrderAssignment)
            .filter(
                OrderAssignment.driver_id == driver.id,
                OrderAssignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES),
            )
            .order_by(OrderAssignment.id)
            .all()
        )

    def _log_event(self, event_type: str, driver_id: Optional[int], details: Dict[str, Any]) -> None:
        security_logger.log_security_event(
            self.db, None, event_type, details, "info", "driver", driver_id,
        )

    # ------------------------------------------------------------------
    # Drivers
    # ------------------------------------------------------------------

    def create_driver(self, data: Dict[str, Any]) -> Driver:
        """Register a driver: offline and unavailable, rated 5.0, zero counters."""
        for field in ("email", "national_id", "driver_license_number", "vehicle_plate_number"):
            value = data.get(field)
            if value and self.db.query(Driver.id).filter(getattr(Driver, field) == value).first():
                raise ValueError(f"A driver with this {field.replace('_', ' ')} already exists.")

        banking = {
            "account_number": data.get("bank_account_number"),
            "bank_name": data.get("bank_name"),
        }
        driver = Driver(
            first_name=data["first_name"],
            last_name=data["last_name"],
            email=data["email"],
            phone=data["phone"],
            password_hash=get_password_hash(data["password"]) if data.get("password") else None,
            date_of_birth=data.get("date_of_birth"),
            national_id=data.get("national_id"),
            driver_license_number=data.get("driver_license_number"),
            license_expiry_date=data.get("license_expiry_date"),
            vehicle_type=data.get("vehicle_type") or "car",
            vehicle_make=data.get("vehicle_make"),
            vehicle_model=data.get("vehicle_model"),
            vehicle_year=data.get("vehicle_year"),
            vehicle_color=data.get("vehicle_color"),
            vehicle_plate_number=data.get("vehicle_plate_number"),
            status=DriverStatus.OFFLINE.value,
            is_online=False,
            is_available=False,
            rating=5.0,
            total_deliveries=0,
            completed_deliveries=0,
            cancelled_deliveries=0,
            total_earnings=Decimal("0"),
            documents={
                "license_verified": False,
                "insurance_verified": False,
                "vehicle_registration_verified": False,
            },
            banking_info=json.dumps(banking) if any(banking.values()) else None,
        )
        for zone in data.get("working_zones") or []:
            driver.working_zones.append(DriverWorkingZone(
                zone_name=zone["zone_name"],
                coordinates={"latitude": zone["latitude"], "longitude": zone["longitude"]},
                radius_km=zone["radius"],
            ))

        self.db.add(driver)
        self.db.flush()
        self._log_event("driver_created", driver.id, {"driver_id": driver.id, "email": driver.email})
        self.db.commit()
        self.db.refresh(driver)
        logger.info(f"Driver {driver.id} created with {len(driver.working_zones)} working zones")
        return driver

    def update_driver_status(self, driver: Driver, data: Dict[str, Any]) -> Driver:
        old_status = driver.status
        old_location = {"latitude": driver.current_latitude, "longitude": driver.current_longitude}

        for field in ("status", "is_online", "is_available", "max_orders"):
            if data.get(field) is not None:
                setattr(driver, field, data[field])

        if data.get("current_latitude") is not None or data.get("current_longitude") is not None:
            if data.get("current_latitude") is not None:
                driver.current_latitude = data["current_latitude"]
            if data.get("current_longitude") is not None:
                driver.current_longitude = data["current_longitude"]
            driver.last_location_update = utcnow()

        driver.last_active_at = utcnow()
        self._log_event("driver_status_updated", driver.id, {
            "old_status": old_status,
            "new_status": driver.status,
            "old_location": old_location,
            "new_location": {"latitude": driver.current_latitude, "longitude": driver.current_longitude},
        })
        self.db.commit()
        self.db.refresh(driver)
        logger.info(
            f"Driver {driver.id} status {old_status} -> {driver.status} "
            f"(online={driver.is_online}, available={driver.is_available})"
        )
        return driver

    def rank_available_drivers(
        self,
        pickup_lat: Optional[float],
        pickup_lng: Optional[float],
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Dispatchable drivers with spare capacity, best score first.

        Score = rating * 0.3 + 1 / (1 + distance_km) * 0.4
        + completed / max(total, 1) * 0.3. Drivers with no known position
        get no distance credit.
        """
        filters = filters or {}
        query = self.db.query(Driver).filter(
            Driver.status.in_(DISPATCHABLE_DRIVER_STATUSES),
            Driver.is_online.is_(True),
            Driver.is_available.is_(True),
        )
        if filters.get("zone_id"):
            query = query.filter(Driver.working_zones.any(DriverWorkingZone.id == filters["zone_id"]))
        if filters.get("vehicle_type"):
            query = query.filter(Driver.vehicle_type == filters["vehicle_type"])
        if filters.get("exclude_driver_ids"):
            query = query.filter(Driver.id.notin_(filters["exclude_driver_ids"]))

        load = dict(
            self.db.query(OrderAssignment.driver_id, func.count(OrderAssignment.id))
            .filter(OrderAssignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES))
            .group_by(OrderAssignment.driver_id)
            .all()
        )

        pickup = (pickup_lat, pickup_lng) if pickup_lat is not None and pickup_lng is not None else None
        max_distance = filters.get("max_distance")
        ranked = []
        for driver in query.all():
            capacity = driver.max_orders or settings.default_driver_max_orders
            if load.get(driver.id, 0) >= capacity:
                continue
            distance = distance_between(pickup, self.driver_location(driver))
            if max_distance is not None and (distance is None or distance > max_distance):
                continue
            ranked.append({
                "driver": driver,
                "distance": round(distance, 2) if distance is not None else None,
                "score": round(self.driver_score(driver, distance), 4),
                "active_orders": load.get(driver.id, 0),
            })

        ranked.sort(key=lambda entry: entry["score"], reverse=True)
        return ranked

    @staticmethod
    def driver_score(driver: Driver, distance: Optional[float]) -> float:
        rating_score = (driver.rating or 0) * 0.3
        distance_score = (1 / (1 + distance)) * 0.4 if distance is not None else 0.0
        performance_score = (driver.completed_deliveries / max(driver.total_deliveries, 1)) * 0.3
        return rating_score + distance_score + performance_score

    def get_available_drivers(self, pickup_lat, pickup_lng, filters=None) -> List[Driver]:
        return [entry["driver"] for entry in self.rank_available_drivers(pickup_lat, pickup_lng, filters)]

    def _update_driver_capacity(self, driver: Driver) -> None:
        """Mark a driver unavailable at capacity, available again below it."""
        capacity = driver.max_orders or settings.default_driver_max_orders
        active = len(self._active_assignments(driver))
        if active >= capacity:
            driver.is_available = False
        elif driver.is_online and driver.status in DISPATCHABLE_DRIVER_STATUSES:
            driver.is_available = True

    # ------------------------------------------------------------------
    # Routes and ETAs
    # ------------------------------------------------------------------

    def optimize_delivery_route(self, waypoints: List[Dict[str, Any]],
                                constraints: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Nearest-neighbour ordering starting from the first waypoint."""
        if len(waypoints) < 2:
            raise ValueError("At least two waypoints are required.")
        constraints = constraints or {}

        remaining = [dict(w) for w in waypoints]
        route = [remaining.pop(0)]
        route[0]["distance_from_previous"] = 0.0
        while remaining:
            current = route[-1]
            nearest = min(
                remaining,
                key=lambda w: haversine_km(current["latitude"], current["longitude"], w["latitude"], w["longitude"]),
            )
            remaining.remove(nearest)
            nearest["distance_from_previous"] = round(haversine_km(
                current["latitude"], current["longitude"], nearest["latitude"], nearest["longitude"]
            ), 3)
            route.append(nearest)

        traffic = constraints.get("traffic_conditions") or {}
        multiplier = float(traffic.get("multiplier", 1.0)) if isinstance(traffic, dict) else 1.0
        for sequence, waypoint in enumerate(route, start=1):
            waypoint["sequence"] = sequence
            waypoint["traffic_multiplier"] = multiplier

        total_distance = sum(w["distance_from_previous"] for w in route)
        total_time = _minutes(total_distance, settings.average_speed_kmh) * multiplier
        total_time += DEFAULT_STOP_MINUTES * (len(route) - 1)
        fuel_cost = Decimal(str(round(total_distance, 3))) * FUEL_COST_PER_KM
        estimated_cost = fuel_cost + Decimal(str(round(total_time, 2))) * DRIVER_COST_PER_MINUTE

        return {
            "waypoints": route,
            "total_distance": round(total_distance, 2),
            "total_time": round(total_time, 1),
            "fuel_cost": float(round(fuel_cost, 2)),
            "estimated_cost": float(round(estimated_cost, 2)),
        }

    def calculate_route_eta(self, route: Dict[str, Any], driver: Driver) -> Dict[str, Any]:
        """Per-leg ETA at the average speed with traffic multipliers and stop time."""
        now = utcnow()
        total = 0.0
        waypoints = []
        for waypoint in route.get("waypoints", []):
            distance = float(waypoint.get("distance", 0) or 0)
            leg = _minutes(distance, settings.average_speed_kmh) * float(waypoint.get("traffic_multiplier", 1.0))
            total += leg + float(waypoint.get("stop_time", DEFAULT_STOP_MINUTES))
            waypoints.append({
                "location": waypoint.get("location") or {
                    "latitude": waypoint.get("latitude"),
                    "longitude": waypoint.get("longitude"),
                },
                "type": waypoint.get("type"),
                "estimated_time": (now + timedelta(minutes=total)).isoformat(),
                "distance": distance,
                "traffic_conditions": waypoint.get("traffic_conditions", "normal"),
            })

        return {
            "waypoints": waypoints,
            "total_estimated_time": round(total, 1),
            "estimated_completion": (now + timedelta(minutes=total)).isoformat(),
            "driver_id": driver.id,
        }

    def calculate_customer_eta(self, order: Order, driver: Optional[Driver] = None) -> Dict[str, Any]:
        """Preparation + travel time + 10 minutes per extra active delivery."""
        if driver is None:
            assignment = order.current_assignment
            if assignment is None:
                raise ValueError("No driver assigned to this order")
            driver = assignment.driver

        preparation = order.estimated_preparation_time or DEFAULT_PREPARATION_MINUTES
        distance = distance_between(self.pickup_location(order), self.delivery_location(order))
        delivery_minutes = round(_minutes(distance, self.vehicle_speed(driver.vehicle_type)), 1)
        active = len(self._active_assignments(driver))
        multi_delay = max(active - 1, 0) * MULTI_DELIVERY_DELAY_MINUTES
        total = preparation + delivery_minutes + multi_delay

        return {
            "order_id": order.id,
            "driver_id": driver.id,
            "preparation_time": preparation,
            "delivery_time": delivery_minutes,
            "total_time": total,
            "estimated_delivery_time": (utcnow() + timedelta(minutes=total)).isoformat(),
            "distance": round(distance, 2) if distance is not None else None,
            "driver_deliveries_count": active,
            "multi_delivery_delay": multi_delay,
        }

    # ------------------------------------------------------------------
    # Assignment flow
    # ------------------------------------------------------------------

    def assign_order_to_driver(self, order: Order,
                               criteria: Optional[Dict[str, Any]] = None) -> Optional[OrderAssignment]:
        """Assign the best available (or the requested) driver; None when nobody is free."""
        criteria = criteria or {}
        if order.status in (OrderStatus.COMPLETED, OrderStatus.CANCELLED, OrderStatus.DELIVERED):
            raise ValueError(f"Cannot assign a driver to a {order.status.value} order.")
        if any(a.status in ACTIVE_ASSIGNMENT_STATUSES for a in order.assignments):
            raise ValueError("Order already has an active driver assignment.")

        pickup = self.pickup_location(order) or (None, None)
        ranked = self.rank_available_drivers(pickup[0], pickup[1], {
            key: criteria.get(key)
            for key in ("zone_id", "vehicle_type", "max_distance", "exclude_driver_ids")
        })

        if criteria.get("driver_id"):
            ranked = [entry for entry in ranked if entry["driver"].id == criteria["driver_id"]]
            if not ranked:
                raise ValueError("The requested driver is not available.")

        if not ranked:
            logger.warning(f"No available drivers for order {order.id}")
            return None

        driver = ranked[0]["driver"]
        preparation = order.estimated_preparation_time or DEFAULT_PREPARATION_MINUTES
        assignment = OrderAssignment(
            driver_id=driver.id,
            order_id=order.id,
            status=AssignmentStatus.ASSIGNED.value,
            assigned_at=utcnow(),
            priority=criteria.get("priority") or "normal",
            delivery_fee=order.delivery_fee or Decimal("0"),
            estimated_pickup_time=utcnow() + timedelta(minutes=preparation),
        )
        self.db.add(assignment)
        self.db.flush()

        self._update_driver_capacity(driver)
        self._log_event("order_assigned", driver.id, {"order_id": order.id, "assignment_id": assignment.id})
        self.db.commit()
        self.db.refresh(assignment)
        logger.info(f"Order {order.id} assigned to driver {driver.id} (assignment {assignment.id})")
        return assignment

    def _reassign_order(self, order: Order, criteria: Optional[Dict[str, Any]] = None) -> Optional[OrderAssignment]:
        declined = [
            a.driver_id for a in order.assignments
            if a.status in (AssignmentStatus.REJECTED.value, AssignmentStatus.CANCELLED.value)
        ]
        criteria = dict(criteria or {})
        criteria["exclude_driver_ids"] = declined
        return self.assign_order_to_driver(order, criteria)

    def handle_driver_response(
        self,
        assignment: OrderAssignment,
        response: str,
        reason: Optional[str] = None,
        notes: Optional[str] = None,
        estimated_pickup_time: Optional[datetime] = None,
        estimated_delivery_time: Optional[datetime] = None,
    ) -> Dict[str, Any]:
        """Record an accept/reject; a rejection reassigns to the next best driver."""
        if assignment.status != AssignmentStatus.ASSIGNED.value:
            raise ValueError("This assignment is no longer awaiting a driver response.")

        assignment.driver_response = response
        assignment.response_time = utcnow()
        assignment.rejection_reason = reason
        if notes:
            assignment.delivery_notes = notes

        if response == AssignmentStatus.ACCEPTED.value:
            assignment.status = AssignmentStatus.ACCEPTED.value
            if estimated_pickup_time:
                assignment.estimated_pickup_time = estimated_pickup_time
            if estimated_delivery_time:
                assignment.estimated_delivery_time = estimated_delivery_time
            self.db.commit()
            logger.info(f"Driver {assignment.driver_id} accepted assignment {assignment.id}")
            return {"status": "accepted", "message": "Order assignment accepted"}

        assignment.status = AssignmentStatus.REJECTED.value
        self.db.flush()
        self._update_driver_capacity(assignment.driver)
        logger.info(
            f"Driver {assignment.driver_id} rejected assignment {assignment.id}: {reason or 'no reason given'}"
        )
        self.db.commit()

        new_assignment = self._reassign_order(assignment.order)
        if new_assignment is not None:
            return {
                "status": "reassigned",
                "message": "Order reassigned to another driver",
                "new_assignment_id": new_assignment.id,
            }
        return {"status": "failed", "message": "No other drivers available"}

    async def update_assignment_status(self, assignment: OrderAssignment, new_status: str,
                                       eta: Optional[datetime] = None) -> OrderAssignment:
        """Advance an assignment, mirror the order status and broadcast the change."""
        new_status = normalize_assignment_status(new_status)
        previous = assignment.status
        if new_status == previous:
            return assignment
        if previous in TERMINAL_ASSIGNMENT_STATUSES:
            raise ValueError(f"Cannot change a {previous} assignment.")
        if new_status != AssignmentStatus.CANCELLED.value:
            sequence = [s.value for s in ASSIGNMENT_STATUS_SEQUENCE]
            if new_status not in sequence or sequence.index(new_status) < sequence.index(previous):
                raise ValueError(f"Cannot change assignment status from {previous} to {new_status}.")

        now = utcnow()
        driver = assignment.driver
        assignment.status = new_status
        if eta is not None:
            assignment.estimated_delivery_time = eta

        if new_status == AssignmentStatus.PICKED_UP.value:
            assignment.actual_pickup_time = assignment.actual_pickup_time or now
            assignment.started_at = assignment.started_at or now
        elif new_status == AssignmentStatus.OUT_FOR_DELIVERY.value:
            assignment.started_at = assignment.started_at or now
            assignment.actual_pickup_time = assignment.actual_pickup_time or now
        elif new_status == AssignmentStatus.DELIVERED.value:
            assignment.actual_delivery_time = now
            assignment.completed_at = now
            driver.total_deliveries += 1
            driver.completed_deliveries += 1
            driver.total_earnings = (driver.total_earnings or Decimal("0")) + (assignment.delivery_fee or Decimal("0"))
        elif new_status == AssignmentStatus.CANCELLED.value:
            assignment.completed_at = now
            driver.total_deliveries += 1
            driver.cancelled_deliveries += 1

        order = assignment.order
        previous_order_status = order.status
        order_changed = False
        mirrored = ORDER_STATUS_FOR_ASSIGNMENT.get(new_status)
        if mirrored is not None and order.status != mirrored and order.can_transition_to(mirrored):
            order_changed = self.orders.change_status(order, mirrored, notes=f"Delivery {new_status}")

        self.db.flush()
        if new_status in TERMINAL_ASSIGNMENT_STATUSES:
            self._update_driver_capacity(driver)
        self.db.commit()
        self.db.refresh(assignment)
        logger.info(f"Assignment {assignment.id}: {previous} -> {new_status}")

        await broadcast_event(DeliveryStatusChanged(assignment, previous, new_status, eta))
        if order_changed:
            await broadcast_event(OrderStatusUpdated(order, previous_order_status, order.status))
        return assignment

    # ------------------------------------------------------------------
    # Live tracking
    # ------------------------------------------------------------------

    def _store_location(self, driver: Driver, location: Dict[str, Any],
                        assignment: Optional[OrderAssignment] = None) -> DeliveryTracking:
        point = DeliveryTracking(
            driver_id=driver.id,
            order_assignment_id=assignment.id if assignment is not None else None,
            latitude=location["latitude"],
            longitude=location["longitude"],
            accuracy=location.get("accuracy"),
            speed=location.get("speed"),
            heading=location.get("heading"),
            altitude=location.get("altitude"),
            timestamp=location.get("timestamp") or utcnow(),
            meta=location.get("metadata"),
        )
        self.db.add(point)
        return point

    def _move_driver(self, driver: Driver, location: Dict[str, Any]) -> None:
        if not validate_location(location):
            raise ValueError("Invalid location coordinates.")
        driver.current_latitude = location["latitude"]
        driver.current_longitude = location["longitude"]
        driver.last_location_update = utcnow()

    def _remaining_distance(self, assignment: OrderAssignment) -> Optional[float]:
        return distance_between(self.driver_location(assignment.driver), self.delivery_location(assignment.order))

    async def update_route_progress(self, assignment: OrderAssignment, location: Dict[str, Any]) -> Dict[str, Any]:
        """Record a GPS fix for an assignment; a picked-up order moving is en route."""
        if assignment.status in TERMINAL_ASSIGNMENT_STATUSES:
            raise ValueError(f"Cannot track a {assignment.status} assignment.")

        driver = assignment.driver
        self._move_driver(driver, location)
        self._store_location(driver, location, assignment)
        self.db.flush()

        remaining = self._remaining_distance(assignment)
        eta_minutes = round(_minutes(remaining, self.vehicle_speed(driver.vehicle_type)), 1)
        eta = utcnow() + timedelta(minutes=eta_minutes) if remaining is not None else None
        progress = {
            "previous_status": assignment.status,
            "distance_remaining": round(remaining, 2) if remaining is not None else None,
            "approaching": remaining is not None and remaining <= APPROACHING_DISTANCE_KM,
            "status_changed": assignment.status == AssignmentStatus.PICKED_UP.value,
        }

        if progress["status_changed"]:
            await self.update_assignment_status(assignment, AssignmentStatus.OUT_FOR_DELIVERY.value, eta)
            progress["new_status"] = assignment.status
        else:
            if eta is not None:
                assignment.estimated_delivery_time = eta
            self.db.commit()

        eta_iso = isoformat(eta) if eta is not None else None
        await broadcast_event(DriverLocationUpdated(driver, location, assignment, eta_iso))
        return {
            "progress": progress,
            "eta": {"minutes": eta_minutes if remaining is not None else None, "estimated_arrival": eta_iso},
            "location": {k: v for k, v in location.items() if k != "timestamp"},
        }

    async def broadcast_driver_location(self, driver: Driver, location: Dict[str, Any]) -> Dict[str, Any]:
        """Update a driver's position and fan it out to every active delivery."""
        self._move_driver(driver, location)
        self._store_location(driver, location)
        self.db.commit()

        active = self._active_assignments(driver)
        approaching = []
        for assignment in active:
            remaining = self._remaining_distance(assignment)
            if remaining is not None and remaining <= APPROACHING_DISTANCE_KM:
                approaching.append(assignment.order_id)
                await self.send_delivery_notifications(assignment, "approaching")
            await broadcast_event(DriverLocationUpdated(driver, location, assignment))

        if not active:
            await broadcast_event(DriverLocationUpdated(driver, location))

        return {
            "driver_id": driver.id,
            "active_deliveries": len(active),
            "approaching_order_ids": approaching,
        }

    def track_delivery_progress(self, assignment: OrderAssignment) -> Dict[str, Any]:
        driver = assignment.driver
        order = assignment.order
        remaining = self._remaining_distance(assignment)
        minutes_left = _minutes(remaining, self.vehicle_speed(driver.vehicle_type)) if remaining is not None else None

        return {
            "assignment_id": assignment.id,
            "order_id": order.id,
            "driver_id": driver.id,
            "current_status": assignment.status,
            "driver_location": {
                "latitude": driver.current_latitude,
                "longitude": driver.current_longitude,
                "last_update": isoformat(driver.last_location_update),
            },
            "order_details": {
                "pickup_address": order.branch.address if order.branch is not None else None,
                "delivery_address": order.delivery_address,
                "estimated_pickup_time": isoformat(assignment.estimated_pickup_time),
                "estimated_delivery_time": isoformat(assignment.estimated_delivery_time),
            },
            "progress_percentage": PROGRESS_PERCENTAGE.get(assignment.status, 0),
            "time_remaining": round(minutes_left, 1) if minutes_left is not None else None,
            "distance_remaining": round(remaining, 2) if remaining is not None else None,
        }

    def get_driver_tracking_history(
        self,
        driver: Driver,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        assignment_id: Optional[int] = None,
        limit: int = 100,
    ) -> List[DeliveryTracking]:
        query = self.db.query(DeliveryTracking).filter(DeliveryTracking.driver_id == driver.id)
        if start:
            query = query.filter(DeliveryTracking.timestamp >= start)
        if end:
            query = query.filter(DeliveryTracking.timestamp <= end)
        if assignment_id:
            query = query.filter(DeliveryTracking.order_assignment_id == assignment_id)
        return query.order_by(DeliveryTracking.timestamp.desc(), DeliveryTracking.id.desc()).limit(limit).all()

    # ------------------------------------------------------------------
    # Batching, notifications and tracking links
    # ------------------------------------------------------------------

    def batch_orders_for_delivery(self, orders: Iterable[Order], max_per_batch: int = 3) -> List[Dict[str, Any]]:
        """Group orders from the same branch whose drop-offs lie close together."""
        by_branch: Dict[int, List[Order]] = defaultdict(list)
        for order in orders:
            by_branch[order.restaurant_branch_id].append(order)

        batches = []
        for branch_id, branch_orders in by_branch.items():
            pending = list(branch_orders)
            while pending:
                seed = pending.pop(0)
                seed_drop = self.delivery_location(seed)
                batch = [seed]
                for candidate in list(pending):
                    if len(batch) >= max_per_batch:
                        break
                    distance = distance_between(seed_drop, self.delivery_location(candidate))
                    if distance is None or distance <= BATCH_RADIUS_KM:
                        batch.append(candidate)
                        pending.remove(candidate)
                batches.append(self._describe_batch(len(batches) + 1, branch_id, batch))
        return batches

    def _describe_batch(self, batch_id: int, branch_id: int, orders: List[Order]) -> Dict[str, Any]:
        waypoints = []
        pickup = self.pickup_location(orders[0])
        if pickup:
            waypoints.append({"latitude": pickup[0], "longitude": pickup[1], "type": "pickup"})
        for order in orders:
            drop = self.delivery_location(order)
            if drop:
                waypoints.append({"latitude": drop[0], "longitude": drop[1], "type": "delivery",
                                  "order_id": order.id})

        return {
            "batch_id": batch_id,
            "restaurant_branch_id": branch_id,
            "order_ids": [o.id for o in orders],
            "orders_count": len(orders),
            "total_amount": float(sum((o.total_amount for o in orders), Decimal("0"))),
            "route": self.optimize_delivery_route(waypoints) if len(waypoints) >= 2 else None,
        }

    async def send_delivery_notifications(self, assignment: OrderAssignment, event: str) -> Dict[str, Any]:
        """Push a customer-facing delivery notice to the customer's channel."""
        template = NOTIFICATION_MESSAGES.get(event)
        if template is None:
            raise ValueError(f"Unknown delivery notification event: {event}")

        order = assignment.order
        notification = {
            "event": event,
            "order_id": order.id,
            "order_number": order.order_number,
            "driver_id": assignment.driver_id,
            "message": template.format(driver=assignment.driver.first_name, order=order.order_number),
            "sent_at": utcnow().isoformat(),
        }
        channel = f"customer.{order.customer_id}"
        try:
            await ws_manager.broadcast({"event": "delivery.notification", "data": notification}, channel)
        except Exception as e:
            logger.warning(f"Delivery notification to {channel} failed: {e}")
        logger.info(f"Delivery notification '{event}' sent for order {order.id}")
        return notification

    def generate_tracking_link(self, order: Order) -> Dict[str, Any]:
        """A 24-hour customer tracking link keyed by a sha256 token."""
        seed = f"{order.id}{isoformat(order.created_at)}{settings.secret_key}"
        token = hashlib.sha256(seed.encode()).hexdigest()
        expires_at = utcnow() + timedelta(seconds=TRACKING_LINK_TTL)
        redis_cache.set(f"tracking_link:{token}", order.id, TRACKING_LINK_TTL)
        return {
            "tracking_url": f"{settings.tracking_link_base_url.rstrip('/')}/{token}",
            "token": token,
            "expires_at": expires_at.isoformat(),
        }

    def resolve_tracking_token(self, token: str) -> Optional[Order]:
        order_id = redis_cache.get(f"tracking_link:{token}")
        return self.db.get(Order, int(order_id)) if order_id is not None else None

    # ------------------------------------------------------------------
    # Exceptions
    # ------------------------------------------------------------------

    async def handle_delivery_exceptions(self, assignment: OrderAssignment, exception_type: str,
                                         details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        details = details or {}
        handlers = {
            "customer_unavailable": self._handle_customer_unavailable,
            "address_not_found": self._handle_address_not_found,
            "order_quality_issue": self._handle_order_quality_issue,
            "delivery_delay": self._handle_delay,
            "traffic_delay": self._handle_delay,
            "weather_delay": self._handle_delay,
            "vehicle_breakdown": self._handle_vehicle_breakdown,
            "security_issue": self._handle_security_issue,
        }
        handler = handlers.get(exception_type)
        if handler is None:
            result = {"status": "unknown_exception", "message": "Unknown exception type"}
        else:
            result = await handler(assignment, details)

        self._log_event("delivery_exception", assignment.driver_id, {
            "assignment_id": assignment.id,
            "order_id": assignment.order_id,
            "exception_type": exception_type,
            "details": details,
            "result_status": result["status"],
        })
        self.db.commit()
        logger.warning(f"Delivery exception '{exception_type}' on assignment {assignment.id}: {result['status']}")
        return result

    async def _handle_customer_unavailable(self, assignment, details):
        attempts = int(details.get("customer_contact_attempts") or 0)
        if attempts >= CUSTOMER_CONTACT_ATTEMPTS:
            return {
                "status": "return_to_restaurant",
                "message": "Customer unreachable; return the order to the restaurant",
                "contact_attempts": attempts,
            }
        return {
            "status": "retry_contact",
            "message": "Try contacting the customer again",
            "contact_attempts": attempts,
            "retry_in_minutes": DEFAULT_STOP_MINUTES,
        }

    async def _handle_address_not_found(self, assignment, details):
        alternative = details.get("alternative_address")
        if alternative:
            assignment.order.delivery_address = alternative
            return {"status": "address_updated", "message": "Delivery address updated",
                    "delivery_address": alternative}
        return {"status": "awaiting_customer_contact",
                "message": "Customer service will confirm the address"}

    async def _handle_order_quality_issue(self, assignment, details):
        return {
            "status": "escalated",
            "message": "Order quality issue escalated to customer service",
            "severity": details.get("severity", "medium"),
            "requires_customer_service": True,
        }

    async def _handle_delay(self, assignment, details):
        delay = int(details.get("delay_minutes") or 15)
        base = as_utc(assignment.estimated_delivery_time) or utcnow()
        assignment.estimated_delivery_time = base + timedelta(minutes=delay)
        await self.send_delivery_notifications(assignment, "delayed")
        return {
            "status": "delay_recorded",
            "message": "Customer notified of the delay",
            "delay_minutes": delay,
            "new_estimated_delivery_time": isoformat(assignment.estimated_delivery_time),
        }

    async def _handle_vehicle_breakdown(self, assignment, details):
        order = assignment.order
        await self.update_assignment_status(assignment, AssignmentStatus.CANCELLED.value)
        new_assignment = self._reassign_order(order)
        if new_assignment is not None:
            return {"status": "reassigned", "message": "Order reassigned to another driver",
                    "new_assignment_id": new_assignment.id}
        return {"status": "reassignment_failed", "message": "No other drivers available"}

    async def _handle_security_issue(self, assignment, details):
        incident_id = security_logger.log_security_incident(
            "suspicious_activity",
            SEVERITY_HIGH,
            "Driver reported a security issue during delivery",
            {"assignment_id": assignment.id, "driver_id": assignment.driver_id,
             "description": details.get("description")},
        )
        return {"status": "escalated_to_security", "message": "Security team notified",
                "incident_id": incident_id}

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    @staticmethod
    def _delivery_minutes(assignment: OrderAssignment) -> Optional[float]:
        if assignment.actual_delivery_time is None or assignment.assigned_at is None:
            return None
        delta = as_utc(assignment.actual_delivery_time) - as_utc(assignment.assigned_at)
        return delta.total_seconds() / 60

    def _average_minutes(self, assignments: Iterable[OrderAssignment]) -> Optional[float]:
        times = [m for m in (self._delivery_minutes(a) for a in assignments) if m is not None]
        return round(sum(times) / len(times), 1) if times else None

    def generate_delivery_reports(self, filters: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        filters = filters or {}
        end = filters.get("end_date") or utcnow()
        start = filters.get("start_date") or end - timedelta(days=30)

        query = self.db.query(OrderAssignment).filter(
            OrderAssignment.created_at >= start, OrderAssignment.created_at <= end,
        )
        if filters.get("driver_id"):
            query = query.filter(OrderAssignment.driver_id == filters["driver_id"])
        if filters.get("status"):
            query = query.filter(OrderAssignment.status == normalize_assignment_status(filters["status"]))
        assignments = query.all()

        total = len(assignments)
        delivered = [a for a in assignments if a.status == AssignmentStatus.DELIVERED.value]
        cancelled = [a for a in assignments if a.status == AssignmentStatus.CANCELLED.value]

        per_driver: Dict[int, List[OrderAssignment]] = defaultdict(list)
        per_branch: Dict[int, int] = defaultdict(int)
        for a in assignments:
            per_driver[a.driver_id].append(a)
            per_branch[a.order.restaurant_branch_id] += 1

        driver_performance = []
        for driver_id, rows in per_driver.items():
            done = [a for a in rows if a.status == AssignmentStatus.DELIVERED.value]
            driver_performance.append({
                "driver_id": driver_id,
                "driver_name": rows[0].driver.full_name,
                "deliveries": len(rows),
                "completed": len(done),
                "success_rate": round(len(done) / len(rows) * 100, 2),
                "average_delivery_time": self._average_minutes(done),
                "rating": rows[0].driver.rating,
            })
        driver_performance.sort(key=lambda d: d["completed"], reverse=True)

        fees = sum((a.delivery_fee or Decimal("0") for a in delivered), Decimal("0"))
        return {
            "period": {"start": isoformat(start), "end": isoformat(end)},
            "total_deliveries": total,
            "completed_deliveries": len(delivered),
            "cancelled_deliveries": len(cancelled),
            "average_delivery_time": self._average_minutes(delivered),
            "delivery_success_rate": round(len(delivered) / total * 100, 2) if total else 0.0,
            "driver_performance": driver_performance,
            "zone_analysis": [
                {"restaurant_branch_id": branch_id, "deliveries": count}
                for branch_id, count in sorted(per_branch.items(), key=lambda kv: kv[1], reverse=True)
            ],
            "cost_analysis": {
                "total_delivery_fees": float(fees),
                "average_delivery_fee": float(round(fees / len(delivered), 2)) if delivered else 0.0,
            },
        }

    def get_delivery_kpis(self) -> Dict[str, Any]:
        today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)
        delivered_today = self.db.query(OrderAssignment).filter(
            OrderAssignment.status == AssignmentStatus.DELIVERED.value,
            OrderAssignment.actual_delivery_time >= today,
        ).all()
        on_time = [
            a for a in delivered_today
            if a.estimated_delivery_time is None
            or as_utc(a.actual_delivery_time) <= as_utc(a.estimated_delivery_time)
        ]

        online = self.db.query(Driver).filter(Driver.is_online.is_(True)).count()
        busy = (
            self.db.query(func.count(func.distinct(OrderAssignment.driver_id)))
            .filter(OrderAssignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES))
            .scalar()
        )
        responses = self.db.query(OrderAssignment.driver_response).filter(
            OrderAssignment.driver_response.isnot(None)
        ).all()
        accepted = sum(1 for (r,) in responses if r == AssignmentStatus.ACCEPTED.value)
        avg_rating = self.db.query(func.avg(Driver.rating)).scalar()

        return {
            "on_time_delivery_rate": round(len(on_time) / len(delivered_today) * 100, 2) if delivered_today else None,
            "average_delivery_time": self._average_minutes(delivered_today),
            "deliveries_today": len(delivered_today),
            "active_deliveries": self.db.query(OrderAssignment).filter(
                OrderAssignment.status.in_(ACTIVE_ASSIGNMENT_STATUSES)
            ).count(),
            "online_drivers": online,
            "driver_utilization_rate": round(busy / online * 100, 2) if online else 0.0,
            "acceptance_rate": round(accepted / len(responses) * 100, 2) if responses else None,
            "customer_satisfaction_score": round(float(avg_rating), 2) if avg_rating is not None else None,
        }

    def optimize_delivery_zones(self, days: int = 30) -> Dict[str, Any]:
        """Demand hot spots, zone coverage and driver workload over recent deliveries."""
        since = utcnow() - timedelta(days=days)
        delivered = self.db.query(OrderAssignment).filter(
            OrderAssignment.status == AssignmentStatus.DELIVERED.value,
            OrderAssignment.created_at >= since,
        ).all()

        drops = []
        cells: Dict[Tuple[float, float], int] = defaultdict(int)
        hours: Dict[int, int] = defaultdict(int)
        workload: Dict[int, int] = defaultdict(int)
        branch_distances: Dict[int, List[float]] = defaultdict(list)
        for a in delivered:
            workload[a.driver_id] += 1
            hours[as_utc(a.assigned_at).hour] += 1
            drop = self.delivery_location(a.order)
            if drop is None:
                continue
            drops.append(drop)
            cells[(round(drop[0], 2), round(drop[1], 2))] += 1
            distance = distance_between(self.pickup_location(a.order), drop)
            if distance is not None:
                branch_distances[a.order.restaurant_branch_id].append(distance)

        zones = self.db.query(DriverWorkingZone).filter(DriverWorkingZone.is_active.is_(True)).all()
        zone_adjustments = []
        for zone in zones:
            center = (zone.coordinates.get("latitude"), zone.coordinates.get("longitude"))
            covered = sum(1 for d in drops if (distance_between(center, d) or math.inf) <= zone.radius_km)
            if covered == 0:
                recommendation = "shrink_or_retire"
            elif drops and covered / len(drops) > 0.5:
                recommendation = "split_or_add_drivers"
            else:
                recommendation = "keep"
            zone_adjustments.append({"zone_id": zone.id, "zone_name": zone.zone_name,
                                     "deliveries_covered": covered, "recommendation": recommendation})

        average_load = sum(workload.values()) / len(workload) if workload else 0
        return {
            "high_demand_areas": [
                {"latitude": lat, "longitude": lng, "deliveries": count}
                for (lat, lng), count in sorted(cells.items(), key=lambda kv: kv[1], reverse=True)[:5]
            ],
            "zone_adjustments": zone_adjustments,
            "optimal_delivery_fees": [
                {
                    "restaurant_branch_id": branch_id,
                    "average_distance_km": round(sum(ds) / len(ds), 2),
                    "suggested_fee": round(2.0 + 0.5 * (sum(ds) / len(ds)), 2),
                }
                for branch_id, ds in branch_distances.items()
            ],
            "workload_balance": {
                "average_deliveries_per_driver": round(average_load, 2),
                "overloaded_driver_ids": [d for d, n in workload.items() if n > average_load * 1.5],
            },
            "traffic_patterns": [{"hour": h, "deliveries": hours[h]} for h in sorted(hours)],
        }
