"""Customer feedback left against a delivered order."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from foodhub.db.base import Base, TimestampMixin
from foodhub.models.validators import rating_score

FEEDBACK_TYPES = (
    "food_quality",
    "service",
    "delivery",
    "overall",
    "cleanliness",
    "value_for_money",
    "menu_variety",
    "special_requests",
)


class CustomerFeedback(Base, TimestampMixin):
    __tablename__ = "customer_feedback"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    restaurant_id: Mapped[int] = mapped_column(
        ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    restaurant_branch_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("restaurant_branches.id", ondelete="SET NULL"), nullable=True, index=True
    )
    user_id: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    rating: Mapped[int] = mapped_column(Integer, nullable=False)
    feedback_type: Mapped[str] = mapped_column(String(30), nullable=False)
    feedback_text: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    feedback_details: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    is_anonymous: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    is_verified_purchase: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # pending -> approved | rejected
    status: Mapped[str] = mapped_column(String(20), default="pending", nullable=False)
    reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reviewed_by: Mapped[Optional[int]] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    moderation_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    order: Mapped["Order"] = relationship("Order")

    @validates("rating")
    def _validate_rating(self, key, value):
        return rating_score(key, value)

    @validates("feedback_type")
    def _validate_type(self, key, value):
        if value not in FEEDBACK_TYPES:
            raise ValueError(f"{key} must be one of {', '.join(FEEDBACK_TYPES)}, got {value}")
        return value
