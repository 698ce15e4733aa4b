"""Stamp cards: buy-N-get-one punch cards tied to a loyalty program."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from foodhub.db.base import Base, TimestampMixin
from foodhub.models.validators import non_negative, positive

CARD_TYPES = {
    "general": "General",
    "beverages": "Beverages",
    "desserts": "Desserts",
    "mains": "Main Courses",
    "healthy": "Healthy Options",
}

STAMP_ACTIONS = {
    "stamp_earned": "Stamp Earned",
    "card_completed": "Card Completed",
    "reward_claimed": "Reward Claimed",
}


class StampCard(Base, TimestampMixin):
    __tablename__ = "stamp_cards"

    id: Mapped[int] = mapped_column(primary_key=True)
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    loyalty_program_id: Mapped[int] = mapped_column(
        ForeignKey("loyalty_programs.id", ondelete="CASCADE"), nullable=False, index=True
    )
    card_type: Mapped[str] = mapped_column(String(20), default="general", nullable=False)
    stamps_required: Mapped[int] = mapped_column(Integer, default=10, nullable=False)
    stamps_earned: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    is_completed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reward_description: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    reward_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)

    program: Mapped["LoyaltyProgram"] = relationship("LoyaltyProgram")
    history: Mapped[List["StampHistory"]] = relationship(
        "StampHistory", back_populates="card", cascade="all, delete-orphan",
        order_by="StampHistory.id",
    )

    @validates("stamps_required")
    def _validate_required(self, key, value):
        return positive(key, value)

    @validates("stamps_earned", "reward_value")
    def _validate_counts(self, key, value):
        return non_negative(key, value)

    @property
    def remaining_stamps(self) -> int:
        return max(0, self.stamps_required - self.stamps_earned)

    @property
    def progress_percentage(self) -> float:
        if not self.stamps_required:
            return 0.0
        return round(min(100.0, self.stamps_earned / self.stamps_required * 100), 2)


class StampHistory(Base, TimestampMixin):
    """One change to a stamp card: stamps earned, completion or reward claim."""

    __tablename__ = "stamp_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    stamp_card_id: Mapped[int] = mapped_column(
        ForeignKey("stamp_cards.id", ondelete="CASCADE"), nullable=False, index=True
    )
    order_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("orders.id", ondelete="SET NULL"), nullable=True
    )
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    stamps_added: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stamps_before: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    stamps_after: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    action_type: Mapped[str] = mapped_column(String(30), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    # "metadata" is reserved on declarative classes
    details: Mapped[Optional[Dict[str, Any]]] = mapped_column("metadata", JSON, nullable=True)

    card: Mapped["StampCard"] = relationship("StampCard", back_populates="history")
