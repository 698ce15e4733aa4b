"""Loyalty programs and customer loyalty accounts."""

import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request, Response, status
from pydantic import BaseModel, Field, field_validator, model_validator

from foodhub.core.config import settings
from foodhub.core.policies import CustomerPolicy, LoyaltyProgramPolicy
from foodhub.core.rate_limit import limiter
from foodhub.core.rbac import CurrentUser, UserRole, forbid_unless
from foodhub.core.responses import page_response, paginate
from foodhub.core.sanitize import sanitize_text
from foodhub.core.validators import OptionalIdQuery, PageNumber, PerPage, PositiveIntId
from foodhub.db.base import isoformat
from foodhub.db.session import DbSession
from foodhub.models.customer import Customer
from foodhub.models.loyalty import CustomerLoyaltyPoint, LoyaltyProgram, LoyaltyTier
from foodhub.models.restaurant import Restaurant

logger = logging.getLogger(__name__)

router = APIRouter()


# ============== Pydantic Schemas ==============

class TierInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    display_name: str = Field(..., min_length=1, max_length=100)
    min_points_required: Decimal = Field(default=Decimal("0"), ge=0)
    points_multiplier: Decimal = Field(default=Decimal("1"), gt=0, le=10)
    discount_percentage: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    free_delivery: bool = False
    sort_order: int = Field(default=0, ge=0)

    @field_validator("name", "display_name", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


class LoyaltyProgramCreate(BaseModel):
    restaurant_id: Optional[int] = Field(default=None, gt=0)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    type: str = Field(default="points", pattern=r"^(points|visits|tiered)$")
    is_active: bool = True
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    points_per_dollar: Decimal = Field(default=Decimal("1"), ge=0)
    dollar_per_point: Decimal = Field(default=Decimal("0.01"), ge=0)
    minimum_spend_for_points: Decimal = Field(default=Decimal("0"), ge=0)
    minimum_points_redemption: Decimal = Field(default=Decimal("0"), ge=0)
    bonus_multipliers: Optional[Dict[str, float]] = None
    terms_and_conditions: Optional[str] = None
    tiers: List[TierInput] = []

    @field_validator("name", "description", "terms_and_conditions", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)

    @model_validator(mode="after")
    def _dates(self):
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("The end date must be a date after or equal to start date.")
        return self


class LoyaltyProgramUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    is_active: Optional[bool] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    points_per_dollar: Optional[Decimal] = Field(default=None, ge=0)
    dollar_per_point: Optional[Decimal] = Field(default=None, ge=0)
    minimum_spend_for_points: Optional[Decimal] = Field(default=None, ge=0)
    minimum_points_redemption: Optional[Decimal] = Field(default=None, ge=0)
    bonus_multipliers: Optional[Dict[str, float]] = None
    terms_and_conditions: Optional[str] = None

    @field_validator("name", "description", "terms_and_conditions", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


class LoyaltyAccountCreate(BaseModel):
    customer_id: int = Field(..., gt=0)
    loyalty_program_id: int = Field(..., gt=0)
    current_points: Decimal = Field(default=Decimal("0"), ge=0)
    points_expiry_date: Optional[datetime] = None


# ============== Helper Functions ==============

def _num(value) -> Optional[float]:
    return float(value) if value is not None else None


def _tier_to_dict(tier: LoyaltyTier) -> dict:
    return {
        "id": tier.id,
        "name": tier.name,
        "display_name": tier.display_name,
        "min_points_required": _num(tier.min_points_required),
        "points_multiplier": _num(tier.points_multiplier),
        "discount_percentage": _num(tier.discount_percentage),
        "free_delivery": tier.free_delivery,
    }


def _program_to_dict(program: LoyaltyProgram) -> dict:
    return {
        "id": program.id,
        "restaurant_id": program.restaurant_id,
        "name": program.name,
        "description": program.description,
        "type": program.type,
        "is_active": program.is_active,
        "start_date": program.start_date.isoformat() if program.start_date else None,
        "end_date": program.end_date.isoformat() if program.end_date else None,
        "points_per_dollar": _num(program.points_per_dollar),
        "dollar_per_point": _num(program.dollar_per_point),
        "minimum_spend_for_points": _num(program.minimum_spend_for_points),
        "minimum_points_redemption": _num(program.minimum_points_redemption),
        "bonus_multipliers": program.bonus_multipliers or {},
        "terms_and_conditions": program.terms_and_conditions,
        "tiers": [_tier_to_dict(t) for t in program.tiers],
        "created_at": isoformat(program.created_at),
    }


def _account_to_dict(account: CustomerLoyaltyPoint) -> dict:
    return {
        "id": account.id,
        "customer_id": account.customer_id,
        "loyalty_program_id": account.loyalty_program_id,
        "program_name": account.program.name if account.program else None,
        "tier": _tier_to_dict(account.tier) if account.tier else None,
        "current_points": _num(account.current_points),
        "total_points_earned": _num(account.total_points_earned),
        "total_points_redeemed": _num(account.total_points_redeemed),
        "total_points_expired": _num(account.total_points_expired),
        "last_points_earned_date": isoformat(account.last_points_earned_date),
        "last_points_redeemed_date": isoformat(account.last_points_redeemed_date),
        "points_expiry_date": isoformat(account.points_expiry_date),
        "is_active": account.is_active,
    }


def _get_program_or_404(db, program_id: int) -> LoyaltyProgram:
    program = db.get(LoyaltyProgram, program_id)
    if not program:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Loyalty program not found")
    return program


def _scope_programs(query, user):
    if user.is_super_admin():
        return query
    if user.restaurant_id is not None:
        return query.filter(LoyaltyProgram.restaurant_id == user.restaurant_id)
    return query


def _starting_tier(program: LoyaltyProgram, points: Decimal) -> Optional[LoyaltyTier]:
    eligible = [t for t in program.tiers if t.is_active and t.min_points_required <= points]
    return max(eligible, key=lambda t: t.min_points_required) if eligible else None


# ============== Loyalty programs ==============

@router.get("/loyalty-programs")
@limiter.limit("60/minute")
def list_programs(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    page: PageNumber = 1,
    per_page: PerPage = settings.order_per_page_default,
    restaurant_id: OptionalIdQuery = None,
    is_active: Optional[bool] = None,
):
    forbid_unless(LoyaltyProgramPolicy.view_any(current_user))

    query = _scope_programs(db.query(LoyaltyProgram), current_user)
    if restaurant_id:
        query = query.filter(LoyaltyProgram.restaurant_id == restaurant_id)
    if is_active is not None:
        query = query.filter(LoyaltyProgram.is_active == is_active)

    programs, total = paginate(query.order_by(LoyaltyProgram.id), page, per_page)
    return page_response([_program_to_dict(p) for p in programs], total, page, per_page)


@router.post("/loyalty-programs", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_program(request: Request, data: LoyaltyProgramCreate, db: DbSession, current_user: CurrentUser):
    forbid_unless(LoyaltyProgramPolicy.create(current_user))

    restaurant_id = data.restaurant_id
    if current_user.role == UserRole.RESTAURANT_OWNER:
        restaurant_id = current_user.restaurant_id
    if not restaurant_id or not db.get(Restaurant, restaurant_id):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="The selected restaurant id is invalid.",
        )

    program = LoyaltyProgram(restaurant_id=restaurant_id, **data.model_dump(exclude={"restaurant_id", "tiers"}))
    program.tiers = [LoyaltyTier(**t.model_dump()) for t in data.tiers]
    db.add(program)
    db.commit()
    db.refresh(program)
    logger.info(f"Loyalty program {program.id} created for restaurant {restaurant_id}")
    return _program_to_dict(program)


@router.get("/loyalty-programs/{program_id}")
@limiter.limit("60/minute")
def get_program(request: Request, program_id: PositiveIntId, db: DbSession, current_user: CurrentUser):
    program = _get_program_or_404(db, program_id)
    forbid_unless(LoyaltyProgramPolicy.view(current_user, program))
    return _program_to_dict(program)


@router.put("/loyalty-programs/{program_id}")
@limiter.limit("30/minute")
def update_program(
    request: Request, program_id: PositiveIntId, data: LoyaltyProgramUpdate, db: DbSession, current_user: CurrentUser,
):
    program = _get_program_or_404(db, program_id)
    forbid_unless(LoyaltyProgramPolicy.update(current_user, program))
    if current_user.role == UserRole.RESTAURANT_OWNER:
        forbid_unless(program.restaurant_id == current_user.restaurant_id)

    changes: Dict[str, Any] = data.model_dump(exclude_unset=True)
    for field, value in changes.items():
        setattr(program, field, value)
    if program.start_date and program.end_date and program.end_date < program.start_date:
        db.rollback()
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="The end date must be a date after or equal to start date.",
        )

    db.commit()
    db.refresh(program)
    return _program_to_dict(program)


@router.delete("/loyalty-programs/{program_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("10/minute")
def delete_program(request: Request, program_id: PositiveIntId, db: DbSession, current_user: CurrentUser):
    program = _get_program_or_404(db, program_id)
    forbid_unless(LoyaltyProgramPolicy.delete(current_user, program))
    db.delete(program)
    db.commit()
    logger.info(f"Loyalty program {program_id} removed by user {current_user.user_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============== Customer loyalty accounts ==============

@router.get("/customer-loyalty-points")
@limiter.limit("60/minute")
def list_accounts(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    page: PageNumber = 1,
    per_page: PerPage = settings.order_per_page_default,
    customer_id: OptionalIdQuery = None,
    loyalty_program_id: OptionalIdQuery = None,
):
    forbid_unless(CustomerPolicy.view_any(current_user))

    query = db.query(CustomerLoyaltyPoint).join(LoyaltyProgram)
    query = _scope_programs(query, current_user)
    if customer_id:
        query = query.filter(CustomerLoyaltyPoint.customer_id == customer_id)
    if loyalty_program_id:
        query = query.filter(CustomerLoyaltyPoint.loyalty_program_id == loyalty_program_id)

    accounts, total = paginate(query.order_by(CustomerLoyaltyPoint.id), page, per_page)
    return page_response([_account_to_dict(a) for a in accounts], total, page, per_page)


@router.get("/customer-loyalty-points/{account_id}")
@limiter.limit("60/minute")
def get_account(request: Request, account_id: PositiveIntId, db: DbSession, current_user: CurrentUser):
    account = db.get(CustomerLoyaltyPoint, account_id)
    if not account:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Loyalty account not found")
    forbid_unless(CustomerPolicy.view_any(current_user))
    if not current_user.is_super_admin() and current_user.restaurant_id is not None:
        forbid_unless(account.program.restaurant_id == current_user.restaurant_id)
    return _account_to_dict(account)


@router.post("/customer-loyalty-points", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def enroll_customer(request: Request, data: LoyaltyAccountCreate, db: DbSession, current_user: CurrentUser):
    """Enroll a customer in a program, starting at the highest tier their points reach."""
    customer = db.get(Customer, data.customer_id)
    forbid_unless(CustomerPolicy.view_any(current_user))
    if customer is None:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail="The selected customer id is invalid.")
    forbid_unless(CustomerPolicy.update(current_user, customer))

    program = db.get(LoyaltyProgram, data.loyalty_program_id)
    if program is None or not program.is_active:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="The selected loyalty program id is invalid.",
        )
    exists = db.query(CustomerLoyaltyPoint.id).filter(
        CustomerLoyaltyPoint.customer_id == customer.id,
        CustomerLoyaltyPoint.loyalty_program_id == program.id,
    ).first()
    if exists:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="The customer is already enrolled in this loyalty program.",
        )

    tier = _starting_tier(program, data.current_points)
    account = CustomerLoyaltyPoint(
        customer_id=customer.id,
        loyalty_program_id=program.id,
        loyalty_tier_id=tier.id if tier else None,
        current_points=data.current_points,
        total_points_earned=data.current_points,
        points_expiry_date=data.points_expiry_date,
        is_active=True,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    logger.info(f"Customer {customer.id} enrolled in loyalty program {program.id}")
    return _account_to_dict(account)
