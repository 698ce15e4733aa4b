"""Restaurant and branch models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from foodhub.db.base import Base, TimestampMixin
from foodhub.models.validators import latitude, longitude, non_negative, percentage


class Restaurant(Base, TimestampMixin):
    """A tenant: one restaurant brand with one or more branches."""

    __tablename__ = "restaurants"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    cuisine_type: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    website: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    logo_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    cover_image_url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    business_hours: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    settings: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    commission_rate: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)
    is_featured: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    branches: Mapped[List["RestaurantBranch"]] = relationship(
        "RestaurantBranch", back_populates="restaurant", cascade="all, delete-orphan"
    )

    @validates("commission_rate")
    def _validate_commission(self, key, value):
        return percentage(key, value)


class RestaurantBranch(Base, TimestampMixin):
    """A physical location that takes and fulfils orders."""

    __tablename__ = "restaurant_branches"

    id: Mapped[int] = mapped_column(primary_key=True)
    restaurant_id: Mapped[int] = mapped_column(
        ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    address: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    city: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    state: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    postal_code: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    manager_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    manager_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    operating_hours: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    delivery_zones: Mapped[Optional[List[Any]]] = mapped_column(JSON, nullable=True)
    delivery_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    minimum_order_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    estimated_delivery_time: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    accepts_online_orders: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    accepts_delivery: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    accepts_pickup: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    settings: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    restaurant: Mapped["Restaurant"] = relationship("Restaurant", back_populates="branches")

    @validates("delivery_fee", "minimum_order_amount")
    def _validate_amounts(self, key, value):
        return non_negative(key, value)

    @validates("latitude")
    def _validate_latitude(self, key, value):
        return latitude(key, value)

    @validates("longitude")
    def _validate_longitude(self, key, value):
        return longitude(key, value)
