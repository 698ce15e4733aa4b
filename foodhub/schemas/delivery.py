"""Driver and delivery request schemas."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

from foodhub.core.sanitize import sanitize_text

DRIVER_STATUS_CHOICES = Literal["online", "offline", "on_break", "busy", "unavailable"]
ASSIGN_VEHICLE_CHOICES = Literal["car", "motorcycle", "bicycle"]
PRIORITY_CHOICES = Literal["low", "normal", "high", "urgent"]
SEVERITY_CHOICES = Literal["low", "medium", "high", "critical"]
ASSIGNMENT_STATUS_CHOICES = Literal[
    "accepted", "picked_up", "pickup", "en_route", "out_for_delivery", "delivered", "cancelled",
]
EXCEPTION_TYPE_CHOICES = Literal[
    "customer_unavailable",
    "address_not_found",
    "order_quality_issue",
    "delivery_delay",
    "traffic_delay",
    "vehicle_breakdown",
    "weather_delay",
    "security_issue",
]
NOTIFICATION_EVENT_CHOICES = Literal["assigned", "pickup", "en_route", "approaching", "delivered", "delayed"]


# Drivers

class WorkingZoneInput(BaseModel):
    zone_name: str = Field(..., max_length=255)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    radius: float = Field(..., gt=0, le=100)

    @field_validator("zone_name", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


class DriverCreate(BaseModel):
    """New driver registration."""

    first_name: str = Field(..., max_length=100)
    last_name: str = Field(..., max_length=100)
    email: EmailStr
    phone: str = Field(..., max_length=50)
    password: str = Field(..., min_length=8, max_length=128)
    date_of_birth: Optional[date] = None
    national_id: Optional[str] = Field(default=None, max_length=100)
    driver_license_number: Optional[str] = Field(default=None, max_length=100)
    license_expiry_date: Optional[date] = None
    vehicle_type: Literal["car", "motorcycle", "bicycle", "scooter"] = "car"
    vehicle_make: Optional[str] = Field(default=None, max_length=100)
    vehicle_model: Optional[str] = Field(default=None, max_length=100)
    vehicle_year: Optional[int] = Field(default=None, ge=1990, le=2100)
    vehicle_color: Optional[str] = Field(default=None, max_length=50)
    vehicle_plate_number: Optional[str] = Field(default=None, max_length=50)
    bank_account_number: Optional[str] = Field(default=None, max_length=50)
    bank_name: Optional[str] = Field(default=None, max_length=100)
    working_zones: List[WorkingZoneInput] = []

    @field_validator("first_name", "last_name", "vehicle_make", "vehicle_model", "vehicle_color", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)

    @field_validator("license_expiry_date")
    @classmethod
    def _license_not_expired(cls, v):
        if v is not None and v <= date.today():
            raise ValueError("The license expiry date must be in the future.")
        return v


class DriverStatusUpdate(BaseModel):
    status: DRIVER_STATUS_CHOICES
    is_online: Optional[bool] = None
    is_available: Optional[bool] = None
    current_latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    current_longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    max_orders: Optional[int] = Field(default=None, ge=1, le=10)


class AvailableDriversQuery(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    zone_id: Optional[int] = Field(default=None, gt=0)
    vehicle_type: Optional[ASSIGN_VEHICLE_CHOICES] = None
    max_distance: Optional[float] = Field(default=None, gt=0, le=100)


# Locations and routes

class LocationUpdate(BaseModel):
    """One GPS fix from a driver's device."""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    accuracy: Optional[float] = Field(default=None, ge=0, le=100)
    speed: Optional[float] = Field(default=None, ge=0, le=200)
    heading: Optional[float] = Field(default=None, ge=0, le=360)
    altitude: Optional[float] = Field(default=None, ge=-1000, le=10000)
    timestamp: Optional[datetime] = None
    metadata: Optional[Dict[str, Any]] = None


class Waypoint(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    type: Literal["pickup", "delivery"]
    order_id: Optional[int] = Field(default=None, gt=0)


class RouteConstraints(BaseModel):
    max_distance: Optional[float] = Field(default=None, gt=0)
    max_time: Optional[int] = Field(default=None, gt=0)
    vehicle_type: Optional[ASSIGN_VEHICLE_CHOICES] = None
    traffic_conditions: Optional[Dict[str, Any]] = None


class RouteOptimizeRequest(BaseModel):
    waypoints: List[Waypoint] = Field(..., min_length=2)
    driver_id: Optional[int] = Field(default=None, gt=0)
    constraints: Optional[RouteConstraints] = None


class RouteEtaWaypoint(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    type: Optional[Literal["pickup", "delivery"]] = None
    distance: float = Field(default=0, ge=0)
    traffic_multiplier: float = Field(default=1.0, gt=0, le=5)
    stop_time: float = Field(default=5, ge=0)


class RouteEtaRequest(BaseModel):
    driver_id: int = Field(..., gt=0)
    waypoints: List[RouteEtaWaypoint] = Field(..., min_length=1)


# Assignments

class AssignOrderRequest(BaseModel):
    order_id: int = Field(..., gt=0)
    driver_id: Optional[int] = Field(default=None, gt=0)
    priority: PRIORITY_CHOICES = "normal"
    vehicle_type: Optional[ASSIGN_VEHICLE_CHOICES] = None
    max_distance: Optional[float] = Field(default=None, gt=0, le=100)
    zone_id: Optional[int] = Field(default=None, gt=0)


class DriverResponseRequest(BaseModel):
    response: Literal["accepted", "rejected"]
    reason: Optional[str] = Field(default=None, max_length=500)
    notes: Optional[str] = Field(default=None, max_length=1000)
    estimated_pickup_time: Optional[datetime] = None
    estimated_delivery_time: Optional[datetime] = None

    @field_validator("reason", "notes", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)

    @model_validator(mode="after")
    def _reason_for_rejection(self):
        if self.response == "rejected" and not self.reason:
            raise ValueError("A reason is required when rejecting an assignment.")
        return self


class AssignmentStatusUpdate(BaseModel):
    status: ASSIGNMENT_STATUS_CHOICES
    estimated_delivery_time: Optional[datetime] = None


class BatchOrdersRequest(BaseModel):
    order_ids: List[int] = Field(..., min_length=2)
    max_orders_per_batch: int = Field(default=3, ge=2, le=10)


class NotificationRequest(BaseModel):
    event: NOTIFICATION_EVENT_CHOICES


class ExceptionDetails(BaseModel):
    description: Optional[str] = Field(default=None, max_length=1000)
    severity: SEVERITY_CHOICES = "medium"
    customer_contact_attempts: Optional[int] = Field(default=None, ge=0, le=20)
    alternative_address: Optional[str] = Field(default=None, max_length=500)
    delay_minutes: Optional[int] = Field(default=None, ge=1, le=240)

    @field_validator("description", "alternative_address", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


class DeliveryExceptionRequest(BaseModel):
    exception_type: EXCEPTION_TYPE_CHOICES
    details: ExceptionDetails = ExceptionDetails()


class ZoneOptimizeRequest(BaseModel):
    days: int = Field(default=30, ge=1, le=365)


# Working zones

class WorkingZoneCreate(BaseModel):
    driver_id: int = Field(..., gt=0)
    zone_name: str = Field(..., max_length=255)
    zone_description: Optional[str] = None
    coordinates: Dict[str, float]
    radius_km: float = Field(default=5.0, gt=0, le=100)
    is_active: bool = True
    priority_level: int = Field(default=1, ge=1, le=10)
    start_time: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    end_time: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")

    @field_validator("zone_name", "zone_description", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)

    @field_validator("coordinates")
    @classmethod
    def _centre(cls, v):
        lat, lng = v.get("latitude"), v.get("longitude")
        if lat is None or lng is None or not -90 <= lat <= 90 or not -180 <= lng <= 180:
            raise ValueError("coordinates need a valid latitude and longitude.")
        return v


class WorkingZoneUpdate(BaseModel):
    zone_name: Optional[str] = Field(default=None, max_length=255)
    zone_description: Optional[str] = None
    coordinates: Optional[Dict[str, float]] = None
    radius_km: Optional[float] = Field(default=None, gt=0, le=100)
    is_active: Optional[bool] = None
    priority_level: Optional[int] = Field(default=None, ge=1, le=10)
    start_time: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    end_time: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}$")

    @field_validator("zone_name", "zone_description", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)
