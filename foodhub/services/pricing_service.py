"""Order pricing: item prices, delivery fees, tax, discounts and monthly reports.

Order totals are always computed here on the server; amounts sent by clients
are never trusted. All money values are ``Decimal`` rounded half-up to cents.
"""

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Optional, Sequence

from sqlalchemy.orm import Session

from foodhub.core.config import settings
from foodhub.models.customer import CustomerAddress
from foodhub.models.menu import BranchMenuItem, MenuItem
from foodhub.models.order import Order, OrderStatus, OrderType
from foodhub.models.restaurant import RestaurantBranch
from foodhub.services.delivery_service import distance_between
from foodhub.services.loyalty_service import LoyaltyService

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
CENTS = Decimal("0.01")
HUNDRED = Decimal("100")

COUPONS = {
    "WELCOME10": {"type": "percentage", "value": Decimal("10"), "min_order": Decimal("50")},
    "SAVE20": {"type": "fixed", "value": Decimal("20"), "min_order": Decimal("100")},
    "HAPPYHOUR": {"type": "percentage", "value": Decimal("15"), "min_order": Decimal("30")},
}

ADDITION_COST = Decimal("2.00")
SUBSTITUTION_COST = Decimal("1.50")
SIZE_ADJUSTMENTS = {"large": Decimal("5.00"), "medium": Decimal("2.50"), "small": Decimal("-2.00")}


def money(value) -> Decimal:
    if value is None:
        return ZERO
    value = value if isinstance(value, Decimal) else Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


class PricingError(ValueError):
    """A price cannot be computed, e.g. the address is out of delivery range."""


class CouponError(PricingError):
    pass


class PricingService:
    def __init__(self, db: Session):
        self.db = db
        self.loyalty = LoyaltyService(db)

    # ------------------------------------------------------------------
    # Items
    # ------------------------------------------------------------------

    @staticmethod
    def customization_cost(customizations: Optional[Dict[str, Any]]) -> Decimal:
        """Extra cost of additions, substitutions and size; never negative."""
        if not customizations:
            return ZERO
        cost = ZERO
        cost += ADDITION_COST * len(customizations.get("additions") or [])
        cost += SUBSTITUTION_COST * len(customizations.get("substitutions") or [])
        size = customizations.get("size")
        if isinstance(size, dict):
            size = size.get("name")
        cost += SIZE_ADJUSTMENTS.get(str(size).lower(), ZERO) if size else ZERO
        return max(ZERO, cost)

    def base_price(self, menu_item: MenuItem, branch_id: Optional[int]) -> Decimal:
        """The branch override price when one exists, else the menu price."""
        if branch_id is not None:
            override = self.db.query(BranchMenuItem).filter(
                BranchMenuItem.restaurant_branch_id == branch_id,
                BranchMenuItem.menu_item_id == menu_item.id,
            ).first()
            if override is not None:
                return money(override.effective_price)
        return money(menu_item.price)

    def calculate_item_price(self, menu_item: MenuItem, branch_id: Optional[int],
                             customizations: Optional[Dict[str, Any]] = None) -> Decimal:
        return money(self.base_price(menu_item, branch_id) + self.customization_cost(customizations))

    # ------------------------------------------------------------------
    # Delivery and tax
    # ------------------------------------------------------------------

    @staticmethod
    def delivery_distance(branch: Optional[RestaurantBranch], address: Optional[CustomerAddress]) -> Optional[float]:
        if branch is None or address is None:
            return None
        return distance_between(
            (branch.latitude, branch.longitude),
            (address.latitude, address.longitude),
        )

    def calculate_delivery_fee(self, subtotal, branch: Optional[RestaurantBranch],
                               address: Optional[CustomerAddress] = None) -> Decimal:
        """Free above the threshold, per-km when both ends have coordinates,
        else the branch's flat fee (or the configured fixed fee)."""
        if money(subtotal) >= money(settings.free_delivery_threshold):
            return ZERO

        distance = self.delivery_distance(branch, address)
        if distance is not None:
            if distance > settings.max_delivery_distance_km:
                raise PricingError(
                    f"Delivery address is outside our delivery range "
                    f"(max {settings.max_delivery_distance_km:g} km)"
                )
            return money(Decimal(str(distance)) * Decimal(str(settings.delivery_fee_per_km)))

        if branch is not None and branch.delivery_fee is not None:
            return money(branch.delivery_fee)
        return money(settings.fixed_delivery_fee)

    @staticmethod
    def tax_rate() -> Decimal:
        return Decimal(str(settings.tax_rate))

    def calculate_tax(self, subtotal, delivery_fee) -> Decimal:
        return money((money(subtotal) + money(delivery_fee)) * self.tax_rate())

    # ------------------------------------------------------------------
    # Discounts
    # ------------------------------------------------------------------

    @staticmethod
    def coupon_discount(code: Optional[str], subtotal) -> Decimal:
        """Discount for a coupon, or 0 when the code is unknown or below its minimum."""
        coupon = COUPONS.get((code or "").strip().upper())
        subtotal = money(subtotal)
        if coupon is None or subtotal < coupon["min_order"]:
            return ZERO
        if coupon["type"] == "percentage":
            return money(subtotal * coupon["value"] / HUNDRED)
        return money(min(coupon["value"], subtotal))

    def validate_coupon(self, code: str, subtotal) -> Dict[str, Any]:
        """Describe a coupon's effect; raises ``CouponError`` when it does not apply."""
        code = code.strip().upper()
        coupon = COUPONS.get(code)
        if coupon is None:
            raise CouponError("Invalid coupon code")
        if money(subtotal) < coupon["min_order"]:
            raise CouponError(f"Minimum order amount of {coupon['min_order']:g} required")
        return {
            "coupon_code": code,
            "discount_amount": self.coupon_discount(code, subtotal),
            "discount_type": coupon["type"],
            "discount_value": coupon["value"],
            "minimum_order": coupon["min_order"],
            "valid": True,
        }

    def calculate_discounts(self, subtotal, customer_id: int, restaurant_id: Optional[int] = None,
                            points_used=ZERO, coupons: Sequence[str] = ()) -> Dict[str, Decimal]:
        """Loyalty redemption, tier percentage and coupons; the total never exceeds the subtotal."""
        subtotal = money(subtotal)
        account = self.loyalty.get_account(customer_id, restaurant_id)

        points_value = ZERO
        tier_discount = ZERO
        if account is not None:
            rate = account.program.dollar_per_point if account.program is not None else CENTS
            points_value = money(Decimal(str(points_used or 0)) * Decimal(str(rate)))
            if account.tier is not None:
                tier_discount = money(subtotal * Decimal(str(account.tier.discount_percentage)) / HUNDRED)

        codes = dict.fromkeys(c.strip().upper() for c in coupons if c)
        coupon = sum((self.coupon_discount(code, subtotal) for code in codes), ZERO)
        total = min(points_value + tier_discount + coupon, subtotal)
        return {
            "loyalty_discount": points_value,
            "tier_discount": tier_discount,
            "coupon_discount": coupon,
            "total_discount": money(total),
        }

    def free_delivery_for(self, customer_id: int, restaurant_id: Optional[int]) -> bool:
        account = self.loyalty.get_account(customer_id, restaurant_id)
        return account is not None and account.tier is not None and account.tier.free_delivery

    # ------------------------------------------------------------------
    # Whole orders
    # ------------------------------------------------------------------

    def price_order(self, order: Order, points_used=ZERO, address: Optional[CustomerAddress] = None,
                    coupons: Sequence[str] = ()) -> Dict[str, Any]:
        """Compute and set subtotal, delivery fee, tax, discount and total on ``order``.

        The order's promo code counts as a coupon alongside ``coupons``.

        The subtotal is the sum of the item lines; an order without lines keeps
        the subtotal it was created with.
        """
        if order.items:
            order.subtotal = money(sum((Decimal(str(i.total_price)) for i in order.items), ZERO))
        elif order.subtotal is None:
            raise PricingError("Orders need at least one item or a subtotal.")
        subtotal = money(order.subtotal)

        branch = self.db.get(RestaurantBranch, order.restaurant_branch_id)
        if address is None and order.customer_address_id is not None:
            address = self.db.get(CustomerAddress, order.customer_address_id)

        if OrderType(order.type) != OrderType.DELIVERY:
            delivery_fee = ZERO
        elif self.free_delivery_for(order.customer_id, order.restaurant_id):
            delivery_fee = ZERO
        else:
            delivery_fee = self.calculate_delivery_fee(subtotal, branch, address)

        tax = self.calculate_tax(subtotal, delivery_fee)
        discounts = self.calculate_discounts(
            subtotal, order.customer_id, order.restaurant_id, points_used,
            [order.promo_code, *coupons] if order.promo_code else list(coupons),
        )
        service_fee = money(order.service_fee)
        total = max(ZERO, subtotal + delivery_fee + tax + service_fee - discounts["total_discount"])

        order.delivery_fee = delivery_fee
        order.tax_amount = tax
        order.service_fee = service_fee
        order.discount_amount = discounts["total_discount"]
        order.total_amount = money(total)

        return {
            "subtotal": subtotal,
            "delivery_fee": delivery_fee,
            "tax_amount": tax,
            "service_fee": service_fee,
            "discount_amount": discounts["total_discount"],
            "total_amount": order.total_amount,
            "breakdown": {
                "items_total": subtotal,
                "delivery_cost": delivery_fee,
                "tax_cost": tax,
                "discount_savings": discounts["total_discount"],
                **discounts,
            },
        }

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def generate_monthly_report(self, restaurant_id: int, period: str) -> Dict[str, Any]:
        """Revenue summary for ``period`` (``YYYY-MM``), excluding cancelled orders."""
        start = datetime.strptime(period, "%Y-%m").replace(tzinfo=timezone.utc)
        end = (start + timedelta(days=32)).replace(day=1)

        orders = (
            self.db.query(Order)
            .filter(
                Order.restaurant_id == restaurant_id,
                Order.created_at >= start,
                Order.created_at < end,
                Order.status != OrderStatus.CANCELLED,
            )
            .all()
        )

        subtotal = sum((money(o.subtotal) for o in orders), ZERO)
        tax = sum((money(o.tax_amount) for o in orders), ZERO)
        delivery = sum((money(o.delivery_fee) for o in orders), ZERO)
        discounts = sum((money(o.discount_amount) for o in orders), ZERO)
        revenue = subtotal + tax + delivery - discounts

        margin = (revenue - subtotal) / revenue * HUNDRED if revenue > 0 else ZERO
        average = revenue / len(orders) if orders else ZERO

        return {
            "period": period,
            "summary": {
                "total_orders": len(orders),
                "total_revenue": float(money(revenue)),
                "total_subtotal": float(money(subtotal)),
                "total_tax": float(money(tax)),
                "total_delivery_fees": float(money(delivery)),
                "total_discounts": float(money(discounts)),
            },
            "breakdown": {
                "by_status": dict(Counter(OrderStatus(o.status).value for o in orders)),
                "by_branch": {str(k): v for k, v in Counter(o.restaurant_branch_id for o in orders).items()},
            } if orders else {},
            "profitability": {
                "profit_margin": float(money(margin)),
                "average_order_value": float(money(average)),
            },
        }
