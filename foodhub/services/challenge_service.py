"""Customer challenges: enrolment, progress from orders, rewards and leaderboards."""

import logging
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from foodhub.db.base import as_utc, utcnow
from foodhub.models.challenge import (
    CHALLENGE_TYPES,
    REWARD_TYPES,
    Challenge,
    ChallengeEngagementLog,
    ChallengeProgressLog,
    CustomerChallenge,
)
from foodhub.models.customer import Customer
from foodhub.models.order import Order, OrderStatus
from foodhub.services.loyalty_service import LoyaltyService, grant_credit

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")
MILESTONES = (25, 50, 75)
REQUIRED_FIELDS = ("name", "challenge_type", "requirements", "reward_type", "reward_value", "start_date", "end_date")

# (minimum lifetime spend, multiplier), highest first
SPEND_MULTIPLIERS = ((Decimal("1000"), Decimal("1.5")), (Decimal("500"), Decimal("1.2")))
# (minimum target, multiplier), highest first
DIFFICULTY_MULTIPLIERS = ((10, Decimal("2.0")), (5, Decimal("1.5")), (3, Decimal("1.2")))
REWARD_CAP = Decimal("1.5")

WEEKLY_TEMPLATES = (
    {
        "name": "Weekly Order Challenge",
        "description": "Place 3 orders this week to earn bonus points",
        "challenge_type": "frequency",
        "requirements": {"order_count": 3},
        "reward_type": "points",
        "reward_value": Decimal("50"),
    },
    {
        "name": "Menu Explorer",
        "description": "Try 5 different menu items this week",
        "challenge_type": "variety",
        "requirements": {"unique_items": 5},
        "reward_type": "discount",
        "reward_value": Decimal("10"),
    },
)


class ChallengeError(ValueError):
    pass


def _decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value or 0))


def is_running(challenge: Challenge, now: Optional[datetime] = None) -> bool:
    now = now or utcnow()
    return (
        challenge.is_active
        and as_utc(challenge.start_date) <= now
        and as_utc(challenge.end_date) >= now
    )


class ChallengeService:
    """Challenge bookkeeping for one session; commits are left to the caller."""

    def __init__(self, db: Session):
        self.db = db
        self.loyalty = LoyaltyService(db)

    # ------------------------------------------------------------------
    # Challenges
    # ------------------------------------------------------------------

    def create_challenge(self, data: Dict[str, Any]) -> Challenge:
        for field in REQUIRED_FIELDS:
            if data.get(field) in (None, ""):
                raise ChallengeError(f"Missing required field: {field}")
        if data["challenge_type"] not in CHALLENGE_TYPES:
            raise ChallengeError(f"Invalid challenge type: {data['challenge_type']}")
        if data["reward_type"] not in REWARD_TYPES:
            raise ChallengeError(f"Invalid reward type: {data['reward_type']}")
        if as_utc(data["start_date"]) >= as_utc(data["end_date"]):
            raise ChallengeError("Start date must be before end date")

        challenge = Challenge(**data)
        self.db.add(challenge)
        self.db.flush()
        logger.info(f"Challenge {challenge.id} created: {challenge.name} ({challenge.challenge_type})")
        return challenge

    def active_challenges(self, restaurant_id: Optional[int] = None) -> List[Challenge]:
        query = self.db.query(Challenge).filter(Challenge.is_active.is_(True))
        if restaurant_id is not None:
            query = query.filter(
                (Challenge.restaurant_id == restaurant_id) | (Challenge.restaurant_id.is_(None))
            )
        now = utcnow()
        challenges = query.order_by(Challenge.priority.desc(), Challenge.id).all()
        return [c for c in challenges if is_running(c, now)]

    def generate_weekly(self, restaurant_id: Optional[int] = None) -> List[Challenge]:
        """Create this week's standard challenges, each running for seven days."""
        start = utcnow()
        created = []
        for template in WEEKLY_TEMPLATES:
            created.append(self.create_challenge({
                **template,
                "restaurant_id": restaurant_id,
                "start_date": start,
                "end_date": start + timedelta(weeks=1),
                "is_active": True,
            }))
        return created

    # ------------------------------------------------------------------
    # Enrolment
    # ------------------------------------------------------------------

    def assign(self, customer_id: int, challenge: Challenge) -> CustomerChallenge:
        if not is_running(challenge):
            raise ChallengeError("Challenge is not active")

        existing = self.db.query(CustomerChallenge).filter(
            CustomerChallenge.customer_id == customer_id,
            CustomerChallenge.challenge_id == challenge.id,
        ).all()
        if any(cc.status == "active" for cc in existing):
            raise ChallengeError("Customer is already participating in this challenge")
        if existing and not challenge.is_repeatable:
            raise ChallengeError("This challenge cannot be repeated")

        if challenge.max_participants is not None:
            joined = self.db.query(func.count(CustomerChallenge.id)).filter(
                CustomerChallenge.challenge_id == challenge.id
            ).scalar()
            if joined >= challenge.max_participants:
                raise ChallengeError("Challenge has reached its participant limit")

        now = utcnow()
        enrolment = CustomerChallenge(
            customer_id=customer_id,
            challenge_id=challenge.id,
            status="active",
            progress_current=ZERO,
            progress_target=Decimal(challenge.target),
            progress_percentage=ZERO,
            assigned_at=now,
            started_at=now,
            expires_at=challenge.end_date,
        )
        self.db.add(enrolment)
        self.db.flush()
        logger.info(f"Customer {customer_id} joined challenge {challenge.id}")
        return enrolment

    def customer_challenges(self, customer_id: int, status: Optional[str] = None) -> List[CustomerChallenge]:
        query = self.db.query(CustomerChallenge).filter(CustomerChallenge.customer_id == customer_id)
        if status:
            query = query.filter(CustomerChallenge.status == status)
        return query.order_by(CustomerChallenge.id.desc()).all()

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def record_order(self, order: Order) -> List[CustomerChallenge]:
        return self.update_progress(
            order.customer_id,
            "order_placed",
            {
                "order_total": str(order.total_amount),
                "menu_item_ids": sorted({i.menu_item_id for i in order.items if i.menu_item_id}),
            },
            order_id=order.id,
            restaurant_id=order.restaurant_id,
        )

    def update_progress(self, customer_id: int, action: str, data: Dict[str, Any],
                        order_id: Optional[int] = None, restaurant_id: Optional[int] = None) -> List[CustomerChallenge]:
        """Advance the customer's running challenges; completed ones are rewarded at once."""
        now = utcnow()
        updated = []
        for enrolment in self.customer_challenges(customer_id, "active"):
            challenge = enrolment.challenge
            if restaurant_id is not None and challenge.restaurant_id not in (None, restaurant_id):
                continue
            if enrolment.expires_at is not None and as_utc(enrolment.expires_at) < now:
                continue

            increment = self._increment(enrolment, action, data)
            if increment <= ZERO:
                continue
            self._advance(enrolment, increment, action, data, order_id)
            updated.append(enrolment)

        if updated:
            self.db.flush()
        return updated

    def _increment(self, enrolment: CustomerChallenge, action: str, data: Dict[str, Any]) -> Decimal:
        kind = enrolment.challenge.challenge_type
        if kind == "referral":
            return Decimal("1") if action == "referral_completed" else ZERO
        if action != "order_placed":
            return ZERO
        if kind == "frequency":
            return Decimal("1")
        if kind in ("spending", "value"):
            return _decimal(data.get("order_total"))
        if kind == "variety":
            return Decimal(len(set(data.get("menu_item_ids") or []) - self._items_seen(enrolment)))
        return ZERO

    @staticmethod
    def _items_seen(enrolment: CustomerChallenge) -> set:
        seen = set()
        for log in enrolment.progress_logs:
            seen.update((log.event_data or {}).get("menu_item_ids") or [])
        return seen

    def _advance(self, enrolment: CustomerChallenge, increment: Decimal, action: str,
                 data: Dict[str, Any], order_id: Optional[int]) -> None:
        before = _decimal(enrolment.progress_current)
        before_pct = _decimal(enrolment.progress_percentage)
        after = before + increment
        target = _decimal(enrolment.progress_target) or Decimal("1")
        pct = min(HUNDRED, (after / target * HUNDRED).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))

        enrolment.progress_current = after
        enrolment.progress_percentage = pct

        crossed = [m for m in MILESTONES if before_pct < m <= pct]
        enrolment.progress_logs.append(ChallengeProgressLog(
            customer_id=enrolment.customer_id,
            challenge_id=enrolment.challenge_id,
            order_id=order_id,
            action_type=action,
            progress_before=before,
            progress_after=after,
            progress_increment=increment,
            description=f"Progress on {enrolment.challenge.name}: {float(after):g}/{float(target):g}",
            event_data=data,
            milestone_reached=bool(crossed),
            milestone_type=f"{crossed[-1]}%" if crossed else None,
        ))

        if after >= target:
            enrolment.status = "completed"
            enrolment.completed_at = utcnow()
            logger.info(f"Customer {enrolment.customer_id} completed challenge {enrolment.challenge_id}")
            self.award(enrolment)

    # ------------------------------------------------------------------
    # Rewards
    # ------------------------------------------------------------------

    def customer_total_spent(self, customer_id: int) -> Decimal:
        total = self.db.query(func.coalesce(func.sum(Order.total_amount), 0)).filter(
            Order.customer_id == customer_id,
            Order.status != OrderStatus.CANCELLED,
        ).scalar()
        return _decimal(total)

    def calculate_reward(self, challenge: Challenge, customer_id: int) -> Decimal:
        """Base reward scaled by the customer's lifetime spend and the challenge's difficulty,
        capped at 1.5x the base."""
        base = _decimal(challenge.reward_value)
        spent = self.customer_total_spent(customer_id)
        spend_multiplier = next((m for floor, m in SPEND_MULTIPLIERS if spent >= floor), Decimal("1"))
        difficulty = next((m for floor, m in DIFFICULTY_MULTIPLIERS if challenge.target >= floor), Decimal("1"))
        adjusted = min(base * spend_multiplier * difficulty, base * REWARD_CAP)
        return adjusted.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

    def award(self, enrolment: CustomerChallenge) -> Decimal:
        if enrolment.status != "completed" or enrolment.reward_claimed:
            raise ChallengeError("Challenge reward is not available")

        challenge = enrolment.challenge
        value = self.calculate_reward(challenge, enrolment.customer_id)
        if challenge.reward_type == "points":
            self.loyalty.award_points(
                enrolment.customer_id, value, "challenge_reward",
                {"challenge_id": challenge.id, "challenge_name": challenge.name},
                restaurant_id=challenge.restaurant_id,
            )
        else:
            customer = self.db.get(Customer, enrolment.customer_id)
            key = "available_discounts" if challenge.reward_type == "discount" else "free_item_credits"
            grant_credit(customer, key, {
                "source": "challenge",
                "challenge_id": challenge.id,
                "value": str(value),
                "details": challenge.reward_metadata or {},
                "granted_at": utcnow().isoformat(),
            })

        enrolment.status = "rewarded"
        enrolment.reward_claimed = True
        enrolment.reward_claimed_at = utcnow()
        logger.info(
            f"Challenge {challenge.id} reward ({challenge.reward_type} {value}) "
            f"granted to customer {enrolment.customer_id}"
        )
        return value

    # ------------------------------------------------------------------
    # Housekeeping and reporting
    # ------------------------------------------------------------------

    def expire_old(self) -> int:
        now = utcnow()
        expired = 0
        for enrolment in self.db.query(CustomerChallenge).filter(CustomerChallenge.status == "active").all():
            ends = enrolment.expires_at or enrolment.challenge.end_date
            if ends is not None and as_utc(ends) < now:
                enrolment.status = "expired"
                expired += 1
        self.db.flush()
        if expired:
            logger.info(f"Expired {expired} customer challenges")
        return expired

    def leaderboard(self, challenge_id: int, limit: int = 10) -> List[Dict[str, Any]]:
        rows = (
            self.db.query(CustomerChallenge)
            .filter(
                CustomerChallenge.challenge_id == challenge_id,
                CustomerChallenge.status.in_(("completed", "rewarded")),
            )
            .order_by(CustomerChallenge.completed_at.asc(), CustomerChallenge.id.asc())
            .limit(limit)
            .all()
        )
        return [
            {
                "rank": rank,
                "customer_id": row.customer_id,
                "customer_name": row.customer.full_name if row.customer else None,
                "completed_at": as_utc(row.completed_at).isoformat() if row.completed_at else None,
                "progress_current": float(row.progress_current),
            }
            for rank, row in enumerate(rows, start=1)
        ]

    def track_engagement(self, customer_id: int, challenge_id: int, event_type: str,
                         event_data: Optional[dict] = None, session_id: Optional[str] = None,
                         user_agent: Optional[str] = None, source: str = "api") -> ChallengeEngagementLog:
        entry = ChallengeEngagementLog(
            customer_id=customer_id,
            challenge_id=challenge_id,
            event_type=event_type,
            source=source,
            event_data=event_data,
            session_id=session_id,
            user_agent=user_agent[:500] if user_agent else None,
        )
        self.db.add(entry)
        self.db.flush()
        return entry

    def statistics(self, challenge: Challenge) -> Dict[str, Any]:
        enrolments = challenge.participants
        completed = [e for e in enrolments if e.status in ("completed", "rewarded")]
        return {
            "participants": len(enrolments),
            "completed": len(completed),
            "completion_rate": round(len(completed) / len(enrolments) * 100, 2) if enrolments else 0.0,
            "by_status": {
                s: sum(1 for e in enrolments if e.status == s)
                for s in ("active", "completed", "rewarded", "expired")
            },
        }
