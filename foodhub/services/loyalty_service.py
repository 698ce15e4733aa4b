"""Loyalty points: earning on orders, redemption, tier progression and expiry."""

import logging
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

from sqlalchemy.orm import Session

from foodhub.db.base import as_utc, utcnow
from foodhub.models.loyalty import (
    CustomerLoyaltyPoint,
    LoyaltyPointsHistory,
    LoyaltyProgram,
    LoyaltyTier,
)
from foodhub.services.stamp_card_service import StampCardService

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
ONE = Decimal("1")
CENTS = Decimal("0.01")

# promo code -> (bonus_multipliers key, default multiplier)
PROMO_MULTIPLIERS = {
    "HAPPYHOUR": ("happy_hour", Decimal("2.0")),
    "BIRTHDAY": ("birthday", Decimal("3.0")),
    "FIRSTORDER": ("first_order", Decimal("1.5")),
}


def _decimal(value) -> Decimal:
    if value is None:
        return ZERO
    return value if isinstance(value, Decimal) else Decimal(str(value))


class InsufficientPointsError(ValueError):
    """The customer cannot cover the requested redemption."""


def grant_credit(customer, key: str, entry: dict) -> None:
    """Append a reward credit (discount, free delivery, free item) to the customer's preferences."""
    preferences = dict(customer.preferences or {})
    preferences[key] = list(preferences.get(key) or []) + [entry]
    customer.preferences = preferences


class LoyaltyService:
    """Loyalty bookkeeping for one database session.

    Methods change rows in the session but never commit; callers own the
    transaction so an order and its points land together.
    """

    def __init__(self, db: Session):
        self.db = db
        self.stamp_cards = StampCardService(db)

    def get_account(self, customer_id: int, restaurant_id: Optional[int] = None) -> Optional[CustomerLoyaltyPoint]:
        """The customer's active account, preferring the order restaurant's program."""
        query = self.db.query(CustomerLoyaltyPoint).filter(
            CustomerLoyaltyPoint.customer_id == customer_id,
            CustomerLoyaltyPoint.is_active.is_(True),
        )
        if restaurant_id is not None:
            scoped = query.join(LoyaltyProgram).filter(
                LoyaltyProgram.restaurant_id == restaurant_id
            ).order_by(CustomerLoyaltyPoint.id).first()
            if scoped is not None:
                return scoped
        return query.order_by(CustomerLoyaltyPoint.id).first()

    # ------------------------------------------------------------------
    # Earning
    # ------------------------------------------------------------------

    def calculate_points_earned(self, order, account: Optional[CustomerLoyaltyPoint] = None) -> Decimal:
        account = account or self.get_account(order.customer_id, order.restaurant_id)
        if account is None:
            return ZERO

        program = account.program
        if program is None or not program.is_active:
            return ZERO

        subtotal = _decimal(order.subtotal)
        if subtotal < _decimal(program.minimum_spend_for_points):
            return ZERO

        base_points = subtotal * _decimal(program.points_per_dollar)
        total = base_points * self.applied_multiplier(order, account)
        return total.quantize(CENTS, rounding=ROUND_HALF_UP)

    def applied_multiplier(self, order, account: CustomerLoyaltyPoint) -> Decimal:
        tier_multiplier = _decimal(account.tier.points_multiplier) if account.tier is not None else ONE
        return tier_multiplier * self.promo_multiplier(order.promo_code, account.program)

    @staticmethod
    def promo_multiplier(promo_code: Optional[str], program: LoyaltyProgram) -> Decimal:
        if not promo_code:
            return ONE
        entry = PROMO_MULTIPLIERS.get(promo_code.strip().upper())
        if entry is None:
            return ONE
        key, default = entry
        overrides = program.bonus_multipliers or {}
        return _decimal(overrides[key]) if key in overrides else default

    def process_order_loyalty_points(self, order) -> Decimal:
        """Stamp the customer's cards, then expire stale points, credit the order's
        points and re-evaluate the tier."""
        self.stamp_cards.add_stamps_for_order(order)

        account = self.get_account(order.customer_id, order.restaurant_id)
        if account is None:
            return ZERO

        self._expire_account(account)

        points = self.calculate_points_earned(order, account)
        order.loyalty_points_earned = points
        account.current_points = _decimal(account.current_points) + points
        account.total_points_earned = _decimal(account.total_points_earned) + points
        account.last_points_earned_date = utcnow()

        if points > ZERO:
            self.db.add(LoyaltyPointsHistory(
                customer_loyalty_points_id=account.id,
                order_id=order.id,
                transaction_type="earned",
                points_amount=points,
                points_balance_after=account.current_points,
                description=f"Points earned from order #{order.order_number}",
                source="order",
                base_amount=order.subtotal,
                multiplier_applied=self.applied_multiplier(order, account),
                transaction_details={
                    "order_number": order.order_number,
                    "subtotal": str(order.subtotal),
                    "promo_code": order.promo_code,
                },
            ))
            logger.info(f"Order {order.order_number}: {points} loyalty points earned (account {account.id})")

        self._handle_tier_progression(account)
        self.db.flush()
        return points

    def _handle_tier_progression(self, account: CustomerLoyaltyPoint) -> Optional[LoyaltyTier]:
        program = account.program
        if program is None:
            return None

        tiers = (
            self.db.query(LoyaltyTier)
            .filter(LoyaltyTier.loyalty_program_id == program.id, LoyaltyTier.is_active.is_(True))
            .order_by(LoyaltyTier.min_points_required.asc())
            .all()
        )
        current_points = _decimal(account.current_points)
        new_tier = None
        for tier in tiers:
            if current_points < _decimal(tier.min_points_required):
                break
            new_tier = tier

        if new_tier is None or account.loyalty_tier_id == new_tier.id:
            return None

        old_tier_id = account.loyalty_tier_id
        account.loyalty_tier_id = new_tier.id
        account.tier = new_tier
        self.db.add(LoyaltyPointsHistory(
            customer_loyalty_points_id=account.id,
            transaction_type="tier_upgrade",
            points_amount=ZERO,
            points_balance_after=current_points,
            description=f"Tier upgraded to {new_tier.display_name}",
            source="tier_progression",
            transaction_details={
                "old_tier_id": old_tier_id,
                "new_tier_id": new_tier.id,
                "new_tier_name": new_tier.display_name,
                "points_required": str(new_tier.min_points_required),
                "current_points": str(current_points),
            },
        ))
        logger.info(f"Loyalty account {account.id} moved to tier {new_tier.name}")
        return new_tier

    # ------------------------------------------------------------------
    # Redemption
    # ------------------------------------------------------------------

    def validate_points_redemption(self, order, points_to_use) -> bool:
        account = self.get_account(order.customer_id, order.restaurant_id)
        if account is None:
            return False
        if _decimal(account.current_points) < _decimal(points_to_use):
            return False
        return not self._is_expired(account)

    def process_points_redemption(self, order, points_to_use) -> CustomerLoyaltyPoint:
        points = _decimal(points_to_use)
        if not self.validate_points_redemption(order, points):
            raise InsufficientPointsError("Insufficient loyalty points for redemption.")

        account = self.get_account(order.customer_id, order.restaurant_id)
        order.loyalty_points_used = points
        account.current_points = _decimal(account.current_points) - points
        account.total_points_redeemed = _decimal(account.total_points_redeemed) + points
        account.last_points_redeemed_date = utcnow()

        self.db.add(LoyaltyPointsHistory(
            customer_loyalty_points_id=account.id,
            order_id=order.id,
            transaction_type="redeemed",
            points_amount=-points,
            points_balance_after=account.current_points,
            description=f"Points redeemed for order #{order.order_number}",
            source="order",
            transaction_details={
                "order_number": order.order_number,
                "discount_amount": str(order.discount_amount),
            },
        ))
        self.db.flush()
        logger.info(f"Order {order.order_number}: {points} loyalty points redeemed (account {account.id})")
        return account

    # ------------------------------------------------------------------
    # Points outside orders (challenge rewards, spin-wheel prizes and purchases)
    # ------------------------------------------------------------------

    def award_points(self, customer_id: int, points, source: str, details: Optional[dict] = None,
                     restaurant_id: Optional[int] = None) -> Optional[CustomerLoyaltyPoint]:
        """Credit bonus points; returns None when the customer has no active account."""
        account = self.get_account(customer_id, restaurant_id)
        points = _decimal(points)
        if account is None or points <= ZERO:
            return None

        account.current_points = _decimal(account.current_points) + points
        account.total_points_earned = _decimal(account.total_points_earned) + points
        account.last_points_earned_date = utcnow()
        self.db.add(LoyaltyPointsHistory(
            customer_loyalty_points_id=account.id,
            transaction_type="bonus",
            points_amount=points,
            points_balance_after=account.current_points,
            description=f"Bonus points from {source.replace('_', ' ')}",
            source=source,
            transaction_details=details or {},
        ))
        self._handle_tier_progression(account)
        self.db.flush()
        logger.info(f"Loyalty account {account.id}: {points} bonus points from {source}")
        return account

    def spend_points(self, customer_id: int, points, source: str, details: Optional[dict] = None,
                     restaurant_id: Optional[int] = None) -> CustomerLoyaltyPoint:
        """Debit points for a non-order purchase; raises ``InsufficientPointsError``."""
        account = self.get_account(customer_id, restaurant_id)
        points = _decimal(points)
        if account is None or self._is_expired(account) or _decimal(account.current_points) < points:
            raise InsufficientPointsError("Insufficient loyalty points for redemption.")

        account.current_points = _decimal(account.current_points) - points
        account.total_points_redeemed = _decimal(account.total_points_redeemed) + points
        account.last_points_redeemed_date = utcnow()
        self.db.add(LoyaltyPointsHistory(
            customer_loyalty_points_id=account.id,
            transaction_type="redeemed",
            points_amount=-points,
            points_balance_after=account.current_points,
            description=f"Points spent on {source.replace('_', ' ')}",
            source=source,
            transaction_details=details or {},
        ))
        self.db.flush()
        return account

    def tier_level(self, account: Optional[CustomerLoyaltyPoint]) -> int:
        """1-based rank of the account's tier within its program; 1 without a tier."""
        if account is None or account.tier is None or account.program is None:
            return 1
        ranked = [t.id for t in account.program.tiers]
        return ranked.index(account.tier.id) + 1 if account.tier.id in ranked else 1

    # ------------------------------------------------------------------
    # Expiry
    # ------------------------------------------------------------------

    @staticmethod
    def _is_expired(account: CustomerLoyaltyPoint, now: Optional[datetime] = None) -> bool:
        expiry = as_utc(account.points_expiry_date)
        return expiry is not None and expiry < (now or utcnow())

    def _expire_account(self, account: CustomerLoyaltyPoint) -> Decimal:
        if not self._is_expired(account):
            return ZERO

        expired = _decimal(account.current_points)
        account.current_points = ZERO
        account.total_points_expired = _decimal(account.total_points_expired) + expired
        if expired > ZERO:
            self.db.add(LoyaltyPointsHistory(
                customer_loyalty_points_id=account.id,
                transaction_type="expired",
                points_amount=-expired,
                points_balance_after=ZERO,
                description="Points expired",
                source="expiration",
                transaction_details={"expiry_date": as_utc(account.points_expiry_date).isoformat()},
            ))
        return expired

    def handle_points_expiration(self) -> int:
        """Zero out every account whose points have expired; returns accounts touched."""
        accounts = (
            self.db.query(CustomerLoyaltyPoint)
            .filter(
                CustomerLoyaltyPoint.points_expiry_date.isnot(None),
                CustomerLoyaltyPoint.points_expiry_date < utcnow(),
                CustomerLoyaltyPoint.current_points > 0,
            )
            .all()
        )
        for account in accounts:
            self._expire_account(account)
        self.db.flush()
        if accounts:
            logger.info(f"Expired loyalty points on {len(accounts)} accounts")
        return len(accounts)
