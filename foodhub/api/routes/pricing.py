"""Pricing routes: tax, delivery fees, discounts, coupons and monthly revenue reports."""

import logging
from decimal import Decimal
from typing import Annotated, Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, Field, field_validator

from foodhub.core.policies import OrderPolicy
from foodhub.core.rate_limit import limiter
from foodhub.core.rbac import RequireRestaurantAdmin, TokenData, UserRole, forbid_unless, role_and_permission
from foodhub.db.session import DbSession
from foodhub.models.customer import CustomerAddress
from foodhub.models.menu import MenuItem
from foodhub.models.order import Order
from foodhub.models.restaurant import Restaurant, RestaurantBranch
from foodhub.services.pricing_service import CouponError, PricingError, PricingService

logger = logging.getLogger(__name__)

router = APIRouter()

RequirePricing = Annotated[
    TokenData,
    Depends(role_and_permission(
        "SUPER_ADMIN|RESTAURANT_OWNER|BRANCH_MANAGER|CUSTOMER_SERVICE|CASHIER|KITCHEN_STAFF"
    )),
]


# ============== Pydantic Schemas ==============

class OrderRef(BaseModel):
    order_id: int = Field(..., gt=0)


class DeliveryFeeRequest(OrderRef):
    address_id: int = Field(..., gt=0)


class DiscountRequest(OrderRef):
    coupons: List[str] = Field(default=[], max_length=10)


class CompletePricingRequest(DiscountRequest):
    address_id: Optional[int] = Field(default=None, gt=0)


class ItemPriceRequest(BaseModel):
    menu_item_id: int = Field(..., gt=0)
    branch_id: Optional[int] = Field(default=None, gt=0)
    customizations: Optional[Dict[str, Any]] = None


class CouponRequest(BaseModel):
    coupon_code: str = Field(..., min_length=1, max_length=50)
    subtotal: Decimal = Field(..., ge=0)

    @field_validator("coupon_code", mode="before")
    @classmethod
    def _upper(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class ReportRequest(BaseModel):
    restaurant_id: int = Field(..., gt=0)
    period: str = Field(..., pattern=r"^\d{4}-(0[1-9]|1[0-2])$")


# ============== Helper Functions ==============

def _money(value) -> float:
    return float(value)


def _order_or_404(db, order_id: int, user: TokenData) -> Order:
    order = db.get(Order, order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    forbid_unless(OrderPolicy.view(user, order))
    return order


def _address_for(db, order: Order, address_id: int) -> CustomerAddress:
    address = db.get(CustomerAddress, address_id)
    if address is None or address.customer_id != order.customer_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="The selected customer address does not belong to the customer.",
        )
    return address


def _bad_request(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=message)


# ============== Routes ==============

@router.post("/calculate-tax")
@limiter.limit("60/minute")
def calculate_tax(request: Request, data: OrderRef, db: DbSession, current_user: RequirePricing):
    order = _order_or_404(db, data.order_id, current_user)
    service = PricingService(db)
    return {
        "order_id": order.id,
        "tax_amount": _money(service.calculate_tax(order.subtotal, order.delivery_fee)),
        "tax_rate": float(service.tax_rate()),
        "taxable_amount": _money(order.subtotal + order.delivery_fee),
    }


@router.post("/calculate-delivery-fee")
@limiter.limit("60/minute")
def calculate_delivery_fee(request: Request, data: DeliveryFeeRequest, db: DbSession, current_user: RequirePricing):
    order = _order_or_404(db, data.order_id, current_user)
    address = _address_for(db, order, data.address_id)
    branch = db.get(RestaurantBranch, order.restaurant_branch_id)
    if address.latitude is None or address.longitude is None or branch.latitude is None or branch.longitude is None:
        raise _bad_request("Coordinates are required for delivery fee calculation")

    service = PricingService(db)
    try:
        fee = service.calculate_delivery_fee(order.subtotal, branch, address)
    except PricingError as e:
        raise _bad_request(str(e))
    return {
        "order_id": order.id,
        "delivery_fee": _money(fee),
        "distance_km": round(service.delivery_distance(branch, address), 2),
    }


@router.post("/apply-discounts")
@limiter.limit("60/minute")
def apply_discounts(request: Request, data: DiscountRequest, db: DbSession, current_user: RequirePricing):
    order = _order_or_404(db, data.order_id, current_user)
    discounts = PricingService(db).calculate_discounts(
        order.subtotal, order.customer_id, order.restaurant_id, order.loyalty_points_used, data.coupons,
    )
    return {"order_id": order.id, **{k: _money(v) for k, v in discounts.items()}}


@router.post("/calculate-item-price")
@limiter.limit("60/minute")
def calculate_item_price(request: Request, data: ItemPriceRequest, db: DbSession, current_user: RequirePricing):
    menu_item = db.get(MenuItem, data.menu_item_id)
    if menu_item is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Menu item not found")
    if not current_user.is_super_admin() and current_user.restaurant_id is not None:
        forbid_unless(menu_item.restaurant_id == current_user.restaurant_id)

    service = PricingService(db)
    return {
        "menu_item_id": menu_item.id,
        "branch_id": data.branch_id,
        "base_price": _money(service.base_price(menu_item, data.branch_id)),
        "customization_cost": _money(service.customization_cost(data.customizations)),
        "total_price": _money(service.calculate_item_price(menu_item, data.branch_id, data.customizations)),
    }


@router.post("/validate-coupon")
@limiter.limit("30/minute")
def validate_coupon(request: Request, data: CouponRequest, db: DbSession, current_user: RequirePricing):
    try:
        result = PricingService(db).validate_coupon(data.coupon_code, data.subtotal)
    except CouponError as e:
        raise _bad_request(str(e))
    return {
        **result,
        "discount_amount": _money(result["discount_amount"]),
        "discount_value": _money(result["discount_value"]),
        "minimum_order": _money(result["minimum_order"]),
    }


@router.post("/calculate-complete")
@limiter.limit("30/minute")
def calculate_complete(request: Request, data: CompletePricingRequest, db: DbSession, current_user: RequirePricing):
    """Re-price an order from its lines and store the new amounts."""
    order = _order_or_404(db, data.order_id, current_user)
    address = _address_for(db, order, data.address_id) if data.address_id else None

    try:
        pricing = PricingService(db).price_order(order, order.loyalty_points_used, address, data.coupons)
    except PricingError as e:
        db.rollback()
        raise _bad_request(str(e))
    db.commit()
    logger.info(f"Order {order.order_number} re-priced: total {pricing['total_amount']}")

    return {
        "order_id": order.id,
        **{k: _money(v) for k, v in pricing.items() if k != "breakdown"},
        "breakdown": {k: _money(v) for k, v in pricing["breakdown"].items()},
    }


@router.post("/generate-report")
@limiter.limit("10/minute")
def generate_report(request: Request, data: ReportRequest, db: DbSession, current_user: RequireRestaurantAdmin):
    if db.get(Restaurant, data.restaurant_id) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Restaurant not found")
    if current_user.role == UserRole.RESTAURANT_OWNER:
        forbid_unless(current_user.restaurant_id == data.restaurant_id)
    return {"restaurant_id": data.restaurant_id, **PricingService(db).generate_monthly_report(data.restaurant_id, data.period)}
