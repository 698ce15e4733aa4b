"""Spin-the-wheel routes."""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field

from foodhub.api.routes.customers import resolve_customer
from foodhub.core.rate_limit import limiter
from foodhub.core.rbac import CurrentUser
from foodhub.core.validators import OptionalIdQuery
from foodhub.db.base import isoformat
from foodhub.db.session import DbSession
from foodhub.models.spin_wheel import SpinResult, SpinWheel, SpinWheelPrize
from foodhub.services.loyalty_service import InsufficientPointsError
from foodhub.services.spin_wheel_service import SpinWheelError, SpinWheelNotFound, SpinWheelService

logger = logging.getLogger(__name__)

router = APIRouter()


# ============== Pydantic Schemas ==============

class SpinRequest(BaseModel):
    customer_id: Optional[int] = Field(default=None, gt=0)


class BuySpinsRequest(SpinRequest):
    quantity: int = Field(default=1, ge=1, le=10)


class RedeemPrizeRequest(SpinRequest):
    spin_result_id: int = Field(..., gt=0)
    order_id: Optional[int] = Field(default=None, gt=0)


# ============== Helper Functions ==============

def _result_to_dict(result: SpinResult) -> dict:
    return {
        "id": result.id,
        "spin_type": result.spin_type,
        "prize_type": result.prize_type,
        "prize_name": result.prize_name,
        "prize_description": result.prize_description,
        "prize_value": float(result.prize_value),
        "display_value": result.display_value,
        "is_redeemed": result.is_redeemed,
        "redeemed_at": isoformat(result.redeemed_at),
        "redeemed_by_order_id": result.redeemed_by_order_id,
        "expires_at": isoformat(result.expires_at),
        "created_at": isoformat(result.created_at),
    }


def _prize_to_dict(prize: SpinWheelPrize) -> dict:
    return {
        "id": prize.id,
        "name": prize.name,
        "description": prize.description,
        "type": prize.type,
        "value": float(prize.value),
        "display_value": prize.display_value,
        "probability": float(prize.probability),
        "tier_restrictions": prize.tier_restrictions or [],
        "available": prize.is_available(),
    }


def _wheel_to_dict(wheel: SpinWheel) -> dict:
    return {
        "id": wheel.id,
        "name": wheel.name,
        "description": wheel.description,
        "daily_free_spins_base": wheel.daily_free_spins_base,
        "max_daily_spins": wheel.max_daily_spins,
        "spin_cost_points": float(wheel.spin_cost_points),
        "tier_spin_multipliers": wheel.tier_spin_multipliers or {},
        "tier_probability_boost": wheel.tier_probability_boost or {},
        "starts_at": isoformat(wheel.starts_at),
        "ends_at": isoformat(wheel.ends_at),
        "prizes": [_prize_to_dict(p) for p in wheel.prizes if p.is_active],
    }


def _spin_error(e: SpinWheelError) -> HTTPException:
    code = status.HTTP_404_NOT_FOUND if isinstance(e, SpinWheelNotFound) else status.HTTP_400_BAD_REQUEST
    return HTTPException(status_code=code, detail=str(e))


# ============== Routes ==============

@router.get("/configuration")
@limiter.limit("60/minute")
def wheel_configuration(request: Request, db: DbSession, current_user: CurrentUser):
    wheel = SpinWheelService(db).active_wheel()
    if wheel is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active spin wheel available")
    return _wheel_to_dict(wheel)


@router.get("/status")
@limiter.limit("60/minute")
def spin_status(request: Request, db: DbSession, current_user: CurrentUser, customer_id: OptionalIdQuery = None):
    customer = resolve_customer(db, current_user, customer_id)
    try:
        data = SpinWheelService(db).status(customer.id)
    except SpinWheelError as e:
        raise _spin_error(e)
    db.commit()
    return {"customer_id": customer.id, **data}


@router.post("/spin")
@limiter.limit("10/minute")
def spin_wheel(request: Request, data: SpinRequest, db: DbSession, current_user: CurrentUser):
    customer = resolve_customer(db, current_user, data.customer_id)
    service = SpinWheelService(db)
    try:
        result = service.spin(customer.id)
    except SpinWheelError as e:
        db.rollback()
        raise _spin_error(e)
    db.commit()
    db.refresh(result)
    return {"result": _result_to_dict(result), "status": service.status(customer.id)}


@router.post("/buy-spins")
@limiter.limit("10/minute")
def buy_spins(request: Request, data: BuySpinsRequest, db: DbSession, current_user: CurrentUser):
    customer = resolve_customer(db, current_user, data.customer_id)
    service = SpinWheelService(db)
    try:
        service.buy_spins(customer.id, data.quantity)
    except SpinWheelError as e:
        db.rollback()
        raise _spin_error(e)
    except InsufficientPointsError as e:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    db.commit()
    logger.info(f"Customer {customer.id} bought {data.quantity} spin(s)")
    return service.status(customer.id)


@router.get("/redeemable-prizes")
@limiter.limit("60/minute")
def redeemable_prizes(request: Request, db: DbSession, current_user: CurrentUser, customer_id: OptionalIdQuery = None):
    customer = resolve_customer(db, current_user, customer_id)
    results = SpinWheelService(db).redeemable_prizes(customer.id)
    return {"items": [_result_to_dict(r) for r in results], "total": len(results)}


@router.post("/redeem-prize")
@limiter.limit("10/minute")
def redeem_prize(request: Request, data: RedeemPrizeRequest, db: DbSession, current_user: CurrentUser):
    customer = resolve_customer(db, current_user, data.customer_id)
    try:
        result = SpinWheelService(db).redeem(customer.id, data.spin_result_id, data.order_id)
    except SpinWheelError as e:
        db.rollback()
        raise _spin_error(e)
    db.commit()
    db.refresh(result)
    return _result_to_dict(result)
