"""Customer challenges: goals such as "order 3 times this week" with a reward."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from foodhub.db.base import Base, TimestampMixin
from foodhub.models.validators import non_negative

CHALLENGE_TYPES = ("frequency", "variety", "spending", "value", "referral")
REWARD_TYPES = ("points", "discount", "free_item")

# challenge type -> (requirements key, default target)
CHALLENGE_TARGETS = {
    "frequency": ("order_count", 1),
    "variety": ("unique_items", 1),
    "spending": ("total_spent", 100),
    "value": ("total_amount", 100),
    "referral": ("referral_count", 1),
}


class Challenge(Base, TimestampMixin):
    __tablename__ = "challenges"

    id: Mapped[int] = mapped_column(primary_key=True)
    restaurant_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=True, index=True
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    challenge_type: Mapped[str] = mapped_column(String(20), nullable=False)
    requirements: Mapped[Dict[str, Any]] = mapped_column(JSON, default=dict, nullable=False)
    reward_type: Mapped[str] = mapped_column(String(20), nullable=False)
    reward_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    reward_metadata: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_repeatable: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    max_participants: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    priority: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    participants: Mapped[List["CustomerChallenge"]] = relationship(
        "CustomerChallenge", back_populates="challenge", cascade="all, delete-orphan"
    )

    @validates("challenge_type")
    def _validate_type(self, key, value):
        if value not in CHALLENGE_TYPES:
            raise ValueError(f"{key} must be one of {', '.join(CHALLENGE_TYPES)}, got {value}")
        return value

    @validates("reward_value")
    def _validate_reward(self, key, value):
        return non_negative(key, value)

    @property
    def target(self) -> int:
        key, default = CHALLENGE_TARGETS.get(self.challenge_type, (None, 1))
        return int((self.requirements or {}).get(key, default)) if key else default


class CustomerChallenge(Base, TimestampMixin):
    """A customer's enrolment in a challenge and their progress towards it."""

    __tablename__ = "customer_challenges"

    id: Mapped[int] = mapped_column(primary_key=True)
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    challenge_id: Mapped[int] = mapped_column(
        ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False, index=True
    )
    # active -> completed -> rewarded, or active -> expired
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    progress_current: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    progress_target: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("1"), nullable=False)
    progress_percentage: Mapped[Decimal] = mapped_column(Numeric(5, 2), default=Decimal("0"), nullable=False)
    assigned_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    reward_claimed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reward_claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    challenge: Mapped["Challenge"] = relationship("Challenge", back_populates="participants")
    customer: Mapped["Customer"] = relationship("Customer")
    progress_logs: Mapped[List["ChallengeProgressLog"]] = relationship(
        "ChallengeProgressLog", back_populates="customer_challenge", cascade="all, delete-orphan",
        order_by="ChallengeProgressLog.id",
    )


class ChallengeProgressLog(Base, TimestampMixin):
    __tablename__ = "challenge_progress_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    customer_challenge_id: Mapped[int] = mapped_column(
        ForeignKey("customer_challenges.id", ondelete="CASCADE"), nullable=False, index=True
    )
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    challenge_id: Mapped[int] = mapped_column(ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False)
    order_id: Mapped[Optional[int]] = mapped_column(ForeignKey("orders.id", ondelete="SET NULL"), nullable=True)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    progress_before: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    progress_after: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    progress_increment: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    event_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    milestone_reached: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    milestone_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    customer_challenge: Mapped["CustomerChallenge"] = relationship(
        "CustomerChallenge", back_populates="progress_logs"
    )


class ChallengeEngagementLog(Base, TimestampMixin):
    """Views, shares and other interactions with a challenge."""

    __tablename__ = "challenge_engagement_logs"

    id: Mapped[int] = mapped_column(primary_key=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("customers.id", ondelete="CASCADE"), nullable=False)
    challenge_id: Mapped[int] = mapped_column(
        ForeignKey("challenges.id", ondelete="CASCADE"), nullable=False, index=True
    )
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    source: Mapped[str] = mapped_column(String(50), default="api", nullable=False)
    event_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    session_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
