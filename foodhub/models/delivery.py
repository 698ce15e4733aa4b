"""Driver fleet models: drivers, working zones, order assignments and GPS tracking."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON, Boolean, Date, DateTime, Float, ForeignKey, Integer, Numeric, String, Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from foodhub.db.base import Base, TimestampMixin, utcnow
from foodhub.db.types import EncryptedString
from foodhub.models.validators import latitude, longitude, non_negative, rating_score


class DriverStatus(str, Enum):
    """Account state of a driver."""

    ACTIVE = "active"
    OFFLINE = "offline"
    ONLINE = "online"
    ON_BREAK = "on_break"
    BUSY = "busy"
    UNAVAILABLE = "unavailable"
    SUSPENDED = "suspended"


class VehicleType(str, Enum):
    CAR = "car"
    MOTORCYCLE = "motorcycle"
    BICYCLE = "bicycle"
    SCOOTER = "scooter"


class AssignmentStatus(str, Enum):
    """Progress of a single driver assignment."""

    ASSIGNED = "assigned"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    PICKED_UP = "picked_up"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


# Assignments that count against a driver's max_orders
ACTIVE_ASSIGNMENT_STATUSES = (
    AssignmentStatus.ASSIGNED.value,
    AssignmentStatus.ACCEPTED.value,
    AssignmentStatus.PICKED_UP.value,
    AssignmentStatus.OUT_FOR_DELIVERY.value,
)

ASSIGNMENT_STATUS_SEQUENCE = [
    AssignmentStatus.ASSIGNED,
    AssignmentStatus.ACCEPTED,
    AssignmentStatus.PICKED_UP,
    AssignmentStatus.OUT_FOR_DELIVERY,
    AssignmentStatus.DELIVERED,
]


class Driver(Base, TimestampMixin):
    """A delivery driver. Credentials and banking details never leave the API."""

    __tablename__ = "drivers"

    id: Mapped[int] = mapped_column(primary_key=True)
    first_name: Mapped[str] = mapped_column(String(100), nullable=False)
    last_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    phone: Mapped[str] = mapped_column(String(50), nullable=False)
    password_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    date_of_birth: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    national_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    driver_license_number: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    license_expiry_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)

    # Vehicle
    vehicle_type: Mapped[str] = mapped_column(String(20), default=VehicleType.CAR.value, nullable=False)
    vehicle_make: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    vehicle_model: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    vehicle_year: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    vehicle_color: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    vehicle_plate_number: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Availability and position
    status: Mapped[str] = mapped_column(String(20), default=DriverStatus.OFFLINE.value, nullable=False, index=True)
    is_online: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    current_latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    current_longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    last_location_update: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_active_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    max_orders: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Performance
    rating: Mapped[float] = mapped_column(Float, default=5.0, nullable=False)
    total_deliveries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    completed_deliveries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cancelled_deliveries: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_earnings: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)

    documents: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    banking_info: Mapped[Optional[str]] = mapped_column(EncryptedString("driver.banking_info"), nullable=True)

    working_zones: Mapped[List["DriverWorkingZone"]] = relationship(
        "DriverWorkingZone", back_populates="driver", cascade="all, delete-orphan"
    )
    assignments: Mapped[List["OrderAssignment"]] = relationship(
        "OrderAssignment", back_populates="driver"
    )

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    @validates("rating")
    def _validate_rating(self, key, value):
        return rating_score(key, value)

    @validates("total_earnings")
    def _validate_earnings(self, key, value):
        return non_negative(key, value)

    @validates("current_latitude")
    def _validate_latitude(self, key, value):
        return latitude(key, value)

    @validates("current_longitude")
    def _validate_longitude(self, key, value):
        return longitude(key, value)


class DriverWorkingZone(Base, TimestampMixin):
    """Circular area (centre + radius) a driver covers, optionally time-boxed."""

    __tablename__ = "driver_working_zones"

    id: Mapped[int] = mapped_column(primary_key=True)
    driver_id: Mapped[int] = mapped_column(
        ForeignKey("drivers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    zone_name: Mapped[str] = mapped_column(String(255), nullable=False)
    zone_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    coordinates: Mapped[Dict[str, Any]] = mapped_column(JSON, nullable=False)
    radius_km: Mapped[float] = mapped_column(Float, default=5.0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    priority_level: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    start_time: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)
    end_time: Mapped[Optional[str]] = mapped_column(String(5), nullable=True)

    driver: Mapped["Driver"] = relationship("Driver", back_populates="working_zones")

    @validates("radius_km")
    def _validate_radius(self, key, value):
        return non_negative(key, value)


class OrderAssignment(Base, TimestampMixin):
    """Offer of an order to a driver and the driver's progress on it."""

    __tablename__ = "order_assignments"

    id: Mapped[int] = mapped_column(primary_key=True)
    driver_id: Mapped[int] = mapped_column(
        ForeignKey("drivers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), default=AssignmentStatus.ASSIGNED.value, nullable=False, index=True
    )
    assigned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    driver_response: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    response_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    priority: Mapped[str] = mapped_column(String(10), default="normal", nullable=False)
    estimated_pickup_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    estimated_delivery_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_pickup_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    actual_delivery_time: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivery_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivery_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)

    driver: Mapped["Driver"] = relationship("Driver", back_populates="assignments")
    order: Mapped["Order"] = relationship("Order", back_populates="assignments")
    tracking_points: Mapped[List["DeliveryTracking"]] = relationship(
        "DeliveryTracking", back_populates="assignment", cascade="all, delete-orphan",
        order_by="DeliveryTracking.id",
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_ASSIGNMENT_STATUSES


class DeliveryTracking(Base):
    """One GPS fix reported by a driver."""

    __tablename__ = "delivery_tracking"

    id: Mapped[int] = mapped_column(primary_key=True)
    driver_id: Mapped[int] = mapped_column(
        ForeignKey("drivers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    order_assignment_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("order_assignments.id", ondelete="CASCADE"), nullable=True, index=True
    )
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    accuracy: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    speed: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    heading: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    altitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False, index=True)
    meta: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)

    assignment: Mapped[Optional["OrderAssignment"]] = relationship(
        "OrderAssignment", back_populates="tracking_points"
    )

    @validates("latitude")
    def _validate_latitude(self, key, value):
        return latitude(key, value)

    @validates("longitude")
    def _validate_longitude(self, key, value):
        return longitude(key, value)


# Forward references
from foodhub.models.order import Order  # noqa: E402
