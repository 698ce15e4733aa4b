"""Spin-the-wheel models: wheels, prizes, per-customer spin balances and results."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from foodhub.db.base import Base, TimestampMixin, as_utc, utcnow
from foodhub.models.validators import non_negative

PRIZE_TYPES = ("discount", "bonus_points", "free_delivery", "cashback", "free_item")


class SpinWheel(Base, TimestampMixin):
    __tablename__ = "spin_wheels"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    daily_free_spins_base: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    max_daily_spins: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    spin_cost_points: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("100"), nullable=False)
    # tier level (as a string key) -> multiplier
    tier_spin_multipliers: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    tier_probability_boost: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    starts_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    ends_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    prizes: Mapped[List["SpinWheelPrize"]] = relationship(
        "SpinWheelPrize", back_populates="wheel", cascade="all, delete-orphan",
        order_by="SpinWheelPrize.id",
    )

    @validates("daily_free_spins_base", "max_daily_spins", "spin_cost_points")
    def _validate_counts(self, key, value):
        return non_negative(key, value)

    def is_currently_active(self, now: Optional[datetime] = None) -> bool:
        if not self.is_active:
            return False
        now = now or utcnow()
        if self.starts_at is not None and now < as_utc(self.starts_at):
            return False
        return self.ends_at is None or now <= as_utc(self.ends_at)

    @staticmethod
    def _tier_value(table: Optional[Dict[str, Any]], tier_level: int) -> float:
        return float((table or {}).get(str(tier_level), 1.0))

    def daily_free_spins_for_tier(self, tier_level: int) -> int:
        return int(self.daily_free_spins_base * self._tier_value(self.tier_spin_multipliers, tier_level))

    def probability_boost_for_tier(self, tier_level: int) -> float:
        return self._tier_value(self.tier_probability_boost, tier_level)


class SpinWheelPrize(Base, TimestampMixin):
    __tablename__ = "spin_wheel_prizes"

    id: Mapped[int] = mapped_column(primary_key=True)
    spin_wheel_id: Mapped[int] = mapped_column(
        ForeignKey("spin_wheels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    value: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    probability: Mapped[Decimal] = mapped_column(Numeric(6, 4), default=Decimal("0"), nullable=False)
    max_redemptions: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    current_redemptions: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    tier_restrictions: Mapped[Optional[List[int]]] = mapped_column(JSON, nullable=True)
    conditions: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    wheel: Mapped["SpinWheel"] = relationship("SpinWheel", back_populates="prizes")

    @validates("type")
    def _validate_type(self, key, value):
        if value not in PRIZE_TYPES:
            raise ValueError(f"{key} must be one of {', '.join(PRIZE_TYPES)}, got {value}")
        return value

    @validates("value", "probability")
    def _validate_amounts(self, key, value):
        return non_negative(key, value)

    def is_available(self) -> bool:
        if not self.is_active:
            return False
        return self.max_redemptions is None or self.current_redemptions < self.max_redemptions

    def allowed_for_tier(self, tier_level: int) -> bool:
        return not self.tier_restrictions or tier_level in self.tier_restrictions

    def adjusted_probability(self, tier_level: int) -> float:
        return min(1.0, float(self.probability) * self.wheel.probability_boost_for_tier(tier_level))

    @property
    def display_value(self) -> str:
        return prize_display_value(self.type, self.value)


def prize_display_value(prize_type: str, value) -> str:
    if prize_type == "discount":
        return f"{float(value):g}%"
    if prize_type == "bonus_points":
        return f"{float(value):g} points"
    if prize_type == "free_delivery":
        return "Free Delivery"
    if prize_type == "cashback":
        return f"${Decimal(value):.2f}"
    if prize_type == "free_item":
        return "Free Item"
    return str(value)


class CustomerSpin(Base, TimestampMixin):
    """A customer's spin balance on one wheel."""

    __tablename__ = "customer_spins"

    id: Mapped[int] = mapped_column(primary_key=True)
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    spin_wheel_id: Mapped[int] = mapped_column(
        ForeignKey("spin_wheels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    free_spins_remaining: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    paid_spins_remaining: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_spins_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    daily_spins_used: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_spin_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    last_spin_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    free_spins_granted_on: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    wheel: Mapped["SpinWheel"] = relationship("SpinWheel")

    @validates("free_spins_remaining", "paid_spins_remaining", "daily_spins_used")
    def _validate_counts(self, key, value):
        return non_negative(key, value)

    @property
    def total_available_spins(self) -> int:
        return self.free_spins_remaining + self.paid_spins_remaining

    def has_available_spins(self) -> bool:
        return self.total_available_spins > 0


class SpinResult(Base, TimestampMixin):
    """A prize won on a spin, with a snapshot of the prize at the time."""

    __tablename__ = "spin_results"

    id: Mapped[int] = mapped_column(primary_key=True)
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    spin_wheel_id: Mapped[int] = mapped_column(
        ForeignKey("spin_wheels.id", ondelete="CASCADE"), nullable=False, index=True
    )
    spin_wheel_prize_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("spin_wheel_prizes.id", ondelete="SET NULL"), nullable=True
    )
    spin_type: Mapped[str] = mapped_column(String(10), nullable=False)
    prize_type: Mapped[str] = mapped_column(String(20), nullable=False)
    prize_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    prize_name: Mapped[str] = mapped_column(String(255), nullable=False)
    prize_description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    prize_details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    is_redeemed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    redeemed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    redeemed_by_order_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("orders.id", ondelete="SET NULL"), nullable=True
    )
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @property
    def display_value(self) -> str:
        return prize_display_value(self.prize_type, self.prize_value)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        expiry = as_utc(self.expires_at)
        return expiry is not None and expiry < (now or utcnow())

    def can_be_redeemed(self) -> bool:
        return not self.is_redeemed and not self.is_expired()
