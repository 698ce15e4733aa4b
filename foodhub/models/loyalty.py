"""Loyalty program models."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from foodhub.db.base import Base, TimestampMixin
from foodhub.models.validators import non_negative, percentage


class LoyaltyProgram(Base, TimestampMixin):
    """Points program run by a restaurant."""

    __tablename__ = "loyalty_programs"

    id: Mapped[int] = mapped_column(primary_key=True)
    restaurant_id: Mapped[int] = mapped_column(
        ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    type: Mapped[str] = mapped_column(String(20), default="points", nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    start_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    end_date: Mapped[Optional[date]] = mapped_column(Date, nullable=True)
    points_per_dollar: Mapped[Decimal] = mapped_column(Numeric(8, 2), default=Decimal("1"), nullable=False)
    dollar_per_point: Mapped[Decimal] = mapped_column(Numeric(8, 4), default=Decimal("0.01"), nullable=False)
    minimum_spend_for_points: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    minimum_points_redemption: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    bonus_multipliers: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    terms_and_conditions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    tiers: Mapped[List["LoyaltyTier"]] = relationship(
        "LoyaltyTier", back_populates="program", cascade="all, delete-orphan",
        order_by="LoyaltyTier.min_points_required",
    )

    @validates("points_per_dollar", "dollar_per_point", "minimum_spend_for_points", "minimum_points_redemption")
    def _validate_rates(self, key, value):
        return non_negative(key, value)


class LoyaltyTier(Base, TimestampMixin):
    __tablename__ = "loyalty_tiers"

    id: Mapped[int] = mapped_column(primary_key=True)
    loyalty_program_id: Mapped[int] = mapped_column(
        ForeignKey("loyalty_programs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    min_points_required: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    points_multiplier: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("1"), nullable=False)
    discount_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)
    free_delivery: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    sort_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    program: Mapped["LoyaltyProgram"] = relationship("LoyaltyProgram", back_populates="tiers")

    @validates("discount_percentage")
    def _validate_discount(self, key, value):
        return percentage(key, value)


class CustomerLoyaltyPoint(Base, TimestampMixin):
    """A customer's points balance in one program."""

    __tablename__ = "customer_loyalty_points"

    id: Mapped[int] = mapped_column(primary_key=True)
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    loyalty_program_id: Mapped[int] = mapped_column(
        ForeignKey("loyalty_programs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    loyalty_tier_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("loyalty_tiers.id", ondelete="SET NULL"), nullable=True
    )
    current_points: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    total_points_earned: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    total_points_redeemed: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    total_points_expired: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    last_points_earned_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_points_redeemed_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    points_expiry_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    program: Mapped["LoyaltyProgram"] = relationship("LoyaltyProgram")
    tier: Mapped[Optional["LoyaltyTier"]] = relationship("LoyaltyTier")
    history: Mapped[List["LoyaltyPointsHistory"]] = relationship(
        "LoyaltyPointsHistory", back_populates="account", cascade="all, delete-orphan",
        order_by="LoyaltyPointsHistory.id",
    )

    @validates("current_points", "total_points_earned", "total_points_redeemed", "total_points_expired")
    def _validate_points(self, key, value):
        return non_negative(key, value)


class LoyaltyPointsHistory(Base, TimestampMixin):
    """Ledger row for every earn, redeem, expiry and tier change."""

    __tablename__ = "loyalty_points_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    customer_loyalty_points_id: Mapped[int] = mapped_column(
        ForeignKey("customer_loyalty_points.id", ondelete="CASCADE"), nullable=False, index=True
    )
    order_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("orders.id", ondelete="SET NULL"), nullable=True
    )
    transaction_type: Mapped[str] = mapped_column(String(20), nullable=False)
    points_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    points_balance_after: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    source: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    base_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    multiplier_applied: Mapped[Optional[Decimal]] = mapped_column(Numeric(6, 2), nullable=True)
    transaction_details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    account: Mapped["CustomerLoyaltyPoint"] = relationship("CustomerLoyaltyPoint", back_populates="history")
