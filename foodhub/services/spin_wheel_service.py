"""Spin-the-wheel: daily free spins by loyalty tier, bought spins, prize draws and redemption."""

import logging
import random
from datetime import date, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy.orm import Session

from foodhub.db.base import utcnow
from foodhub.models.customer import Customer
from foodhub.models.order import Order
from foodhub.models.spin_wheel import CustomerSpin, SpinResult, SpinWheel, SpinWheelPrize
from foodhub.services.loyalty_service import LoyaltyService, grant_credit

logger = logging.getLogger(__name__)

DEFAULT_PRIZE_EXPIRY_DAYS = 30

# prize type -> customer preferences key holding the unused credits
CREDIT_KEYS = {
    "discount": "available_discounts",
    "free_delivery": "free_delivery_credits",
    "cashback": "cashback_credits",
    "free_item": "free_item_credits",
}


class SpinWheelError(ValueError):
    pass


class SpinWheelNotFound(SpinWheelError):
    """No running wheel, or no such prize for the customer."""


class SpinWheelService:
    def __init__(self, db: Session, rng=None):
        self.db = db
        self.rng = rng or random
        self.loyalty = LoyaltyService(db)

    def active_wheel(self) -> Optional[SpinWheel]:
        now = utcnow()
        wheels = self.db.query(SpinWheel).filter(SpinWheel.is_active.is_(True)).order_by(SpinWheel.id).all()
        return next((w for w in wheels if w.is_currently_active(now)), None)

    def _require_wheel(self) -> SpinWheel:
        wheel = self.active_wheel()
        if wheel is None:
            raise SpinWheelNotFound("No active spin wheel available")
        return wheel

    # ------------------------------------------------------------------
    # Spin balances
    # ------------------------------------------------------------------

    def customer_spin(self, customer_id: int, wheel: SpinWheel) -> CustomerSpin:
        """The customer's balance on ``wheel``, created on first use and refreshed for today."""
        spin = self.db.query(CustomerSpin).filter(
            CustomerSpin.customer_id == customer_id,
            CustomerSpin.spin_wheel_id == wheel.id,
        ).first()
        if spin is None:
            spin = CustomerSpin(
                customer_id=customer_id,
                spin_wheel_id=wheel.id,
                free_spins_remaining=0,
                paid_spins_remaining=0,
                total_spins_used=0,
                daily_spins_used=0,
                is_active=True,
            )
            self.db.add(spin)
        self._refresh_daily(spin, wheel, utcnow().date())
        self.db.flush()
        return spin

    def _refresh_daily(self, spin: CustomerSpin, wheel: SpinWheel, today: date) -> None:
        if spin.last_spin_date != today:
            spin.daily_spins_used = 0

        # free spins are a daily allowance, not a balance that accumulates
        if spin.free_spins_granted_on == today:
            return
        account = self.loyalty.get_account(spin.customer_id)
        spin.free_spins_remaining = (
            wheel.daily_free_spins_for_tier(self.loyalty.tier_level(account)) if account is not None else 0
        )
        spin.free_spins_granted_on = today

    @staticmethod
    def can_spin(spin: CustomerSpin, wheel: SpinWheel) -> bool:
        return spin.is_active and spin.has_available_spins() and spin.daily_spins_used < wheel.max_daily_spins

    def status(self, customer_id: int) -> dict:
        wheel = self._require_wheel()
        spin = self.customer_spin(customer_id, wheel)
        account = self.loyalty.get_account(customer_id)
        return {
            "wheel_id": wheel.id,
            "wheel_name": wheel.name,
            "free_spins_remaining": spin.free_spins_remaining,
            "paid_spins_remaining": spin.paid_spins_remaining,
            "total_available_spins": spin.total_available_spins,
            "daily_spins_used": spin.daily_spins_used,
            "max_daily_spins": wheel.max_daily_spins,
            "can_spin": self.can_spin(spin, wheel),
            "spin_cost_points": float(wheel.spin_cost_points),
            "tier_level": self.loyalty.tier_level(account),
            "current_points": float(account.current_points) if account is not None else 0.0,
        }

    def buy_spins(self, customer_id: int, quantity: int) -> CustomerSpin:
        """Buy paid spins with loyalty points; raises ``InsufficientPointsError``."""
        wheel = self._require_wheel()
        spin = self.customer_spin(customer_id, wheel)
        cost = Decimal(str(wheel.spin_cost_points)) * quantity
        self.loyalty.spend_points(
            customer_id, cost, "spin_purchase", {"spin_wheel_id": wheel.id, "quantity": quantity}
        )
        spin.paid_spins_remaining += quantity
        self.db.flush()
        logger.info(f"Customer {customer_id} bought {quantity} spin(s) for {cost} points")
        return spin

    # ------------------------------------------------------------------
    # Spinning
    # ------------------------------------------------------------------

    def select_prize(self, wheel: SpinWheel, tier_level: int) -> Optional[SpinWheelPrize]:
        prizes = [p for p in wheel.prizes if p.is_available() and p.allowed_for_tier(tier_level)]
        if not prizes:
            return None

        weights = [p.adjusted_probability(tier_level) for p in prizes]
        total = sum(weights)
        if total > 1:
            weights = [w / total for w in weights]

        draw = self.rng.random()
        cumulative = 0.0
        for prize, weight in zip(prizes, weights):
            cumulative += weight
            if draw < cumulative:
                return prize
        return prizes[0]

    def spin(self, customer_id: int) -> SpinResult:
        wheel = self._require_wheel()
        spin = self.customer_spin(customer_id, wheel)
        if not self.can_spin(spin, wheel):
            raise SpinWheelError("Cannot spin the wheel at this time")

        tier_level = self.loyalty.tier_level(self.loyalty.get_account(customer_id))
        prize = self.select_prize(wheel, tier_level)
        if prize is None:
            raise SpinWheelError("No prizes are available on this wheel")

        if spin.free_spins_remaining > 0:
            spin.free_spins_remaining -= 1
            spin_type = "free"
        else:
            spin.paid_spins_remaining -= 1
            spin_type = "paid"
        now = utcnow()
        spin.total_spins_used += 1
        spin.daily_spins_used += 1
        spin.last_spin_date = now.date()
        spin.last_spin_at = now

        expiry_days = int((prize.conditions or {}).get("expiration_days", DEFAULT_PRIZE_EXPIRY_DAYS))
        result = SpinResult(
            customer_id=customer_id,
            spin_wheel_id=wheel.id,
            spin_wheel_prize_id=prize.id,
            spin_type=spin_type,
            prize_type=prize.type,
            prize_value=prize.value,
            prize_name=prize.name,
            prize_description=prize.description,
            prize_details={"conditions": prize.conditions or {}, "tier_level": tier_level},
            is_redeemed=False,
            expires_at=now + timedelta(days=expiry_days),
        )
        self.db.add(result)
        if prize.max_redemptions is not None:
            prize.current_redemptions += 1
        self.db.flush()

        self._apply_prize(result)
        self.db.flush()
        logger.info(f"Customer {customer_id} won {prize.name} ({result.display_value}) on a {spin_type} spin")
        return result

    def _apply_prize(self, result: SpinResult) -> None:
        """Bonus points are credited at once; other prizes become customer credits."""
        if result.prize_type == "bonus_points":
            self.loyalty.award_points(
                result.customer_id, result.prize_value, "spin_wheel",
                {"spin_result_id": result.id, "prize_name": result.prize_name},
            )
            result.is_redeemed = True
            result.redeemed_at = utcnow()
            return

        customer = self.db.get(Customer, result.customer_id)
        grant_credit(customer, CREDIT_KEYS[result.prize_type], {
            "source": "spin_wheel",
            "spin_result_id": result.id,
            "value": str(result.prize_value),
            "expires_at": result.expires_at.isoformat(),
        })

    # ------------------------------------------------------------------
    # Redemption
    # ------------------------------------------------------------------

    def redeemable_prizes(self, customer_id: int) -> List[SpinResult]:
        results = (
            self.db.query(SpinResult)
            .filter(SpinResult.customer_id == customer_id, SpinResult.is_redeemed.is_(False))
            .order_by(SpinResult.created_at.desc(), SpinResult.id.desc())
            .all()
        )
        return [r for r in results if r.can_be_redeemed()]

    def redeem(self, customer_id: int, result_id: int, order_id: Optional[int] = None) -> SpinResult:
        result = self.db.query(SpinResult).filter(
            SpinResult.id == result_id, SpinResult.customer_id == customer_id
        ).first()
        if result is None:
            raise SpinWheelNotFound("Prize not found")
        if not result.can_be_redeemed():
            raise SpinWheelError("Prize cannot be redeemed")
        if order_id is not None:
            order = self.db.get(Order, order_id)
            if order is None or order.customer_id != customer_id:
                raise SpinWheelError("The order does not belong to the customer")

        result.is_redeemed = True
        result.redeemed_at = utcnow()
        result.redeemed_by_order_id = order_id
        self.db.flush()
        logger.info(f"Spin prize {result.id} redeemed by customer {customer_id} (order {order_id})")
        return result
