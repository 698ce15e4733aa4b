"""Stamp card routes: a customer's punch cards, their history and rewards."""

import logging
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field, field_validator

from foodhub.api.routes.customers import resolve_customer
from foodhub.core.config import settings
from foodhub.core.rate_limit import limiter
from foodhub.core.rbac import CurrentUser
from foodhub.core.responses import page_response, paginate
from foodhub.core.sanitize import sanitize_text
from foodhub.core.validators import OptionalIdQuery, PageNumber, PerPage, PositiveIntId
from foodhub.db.base import isoformat
from foodhub.db.session import DbSession
from foodhub.models.loyalty import LoyaltyProgram
from foodhub.models.stamp_card import CARD_TYPES, STAMP_ACTIONS, StampCard, StampHistory
from foodhub.services.loyalty_service import LoyaltyService
from foodhub.services.stamp_card_service import StampCardService

logger = logging.getLogger(__name__)

router = APIRouter()


# ============== Pydantic Schemas ==============

class StampCardCreate(BaseModel):
    customer_id: Optional[int] = Field(default=None, gt=0)
    loyalty_program_id: Optional[int] = Field(default=None, gt=0)
    card_type: str = Field(default="general", pattern=r"^(general|beverages|desserts|mains|healthy)$")
    stamps_required: int = Field(default=10, ge=1, le=50)
    reward_description: Optional[str] = Field(default=None, max_length=255)
    reward_value: Optional[Decimal] = Field(default=None, ge=0, le=1000)

    @field_validator("reward_description", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


class ClaimRequest(BaseModel):
    order_id: Optional[int] = Field(default=None, gt=0)


# ============== Helper Functions ==============

def _history_to_dict(entry: StampHistory) -> dict:
    return {
        "id": entry.id,
        "order_id": entry.order_id,
        "stamps_added": entry.stamps_added,
        "stamps_before": entry.stamps_before,
        "stamps_after": entry.stamps_after,
        "action_type": entry.action_type,
        "action_label": STAMP_ACTIONS.get(entry.action_type, entry.action_type),
        "description": entry.description,
        "metadata": entry.details or {},
        "created_at": isoformat(entry.created_at),
    }


def _card_to_dict(card: StampCard, include_history: bool = False) -> dict:
    data = {
        "id": card.id,
        "customer_id": card.customer_id,
        "loyalty_program_id": card.loyalty_program_id,
        "card_type": card.card_type,
        "card_type_name": CARD_TYPES.get(card.card_type, card.card_type),
        "stamps_required": card.stamps_required,
        "stamps_earned": card.stamps_earned,
        "remaining_stamps": card.remaining_stamps,
        "progress_percentage": card.progress_percentage,
        "is_completed": card.is_completed,
        "is_active": card.is_active,
        "completed_at": isoformat(card.completed_at),
        "reward_description": card.reward_description,
        "reward_value": float(card.reward_value),
        "created_at": isoformat(card.created_at),
    }
    if include_history:
        data["history"] = [_history_to_dict(h) for h in card.history]
    return data


def _get_card_or_404(db, card_id: int, current_user) -> StampCard:
    card = db.get(StampCard, card_id)
    if card is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Stamp card not found")
    resolve_customer(db, current_user, card.customer_id)
    return card


# ============== Routes ==============

@router.get("/stamp-cards/types")
@limiter.limit("60/minute")
def card_types(request: Request, current_user: CurrentUser):
    return {"card_types": [{"value": k, "label": v} for k, v in CARD_TYPES.items()]}


@router.get("/stamp-cards/statistics")
@limiter.limit("60/minute")
def card_statistics(request: Request, db: DbSession, current_user: CurrentUser, customer_id: OptionalIdQuery = None):
    customer = resolve_customer(db, current_user, customer_id)
    return {"customer_id": customer.id, **StampCardService(db).statistics(customer.id)}


@router.get("/stamp-cards")
@limiter.limit("60/minute")
def list_cards(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    page: PageNumber = 1,
    per_page: PerPage = settings.order_per_page_default,
    customer_id: OptionalIdQuery = None,
    card_type: Optional[str] = None,
    is_completed: Optional[bool] = None,
    is_active: Optional[bool] = None,
):
    customer = resolve_customer(db, current_user, customer_id)

    query = db.query(StampCard).filter(StampCard.customer_id == customer.id)
    if card_type:
        query = query.filter(StampCard.card_type == card_type)
    if is_completed is not None:
        query = query.filter(StampCard.is_completed == is_completed)
    if is_active is not None:
        query = query.filter(StampCard.is_active == is_active)

    cards, total = paginate(query.order_by(StampCard.created_at.desc(), StampCard.id.desc()), page, per_page)
    return page_response([_card_to_dict(c) for c in cards], total, page, per_page)


@router.post("/stamp-cards", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_card(request: Request, data: StampCardCreate, db: DbSession, current_user: CurrentUser):
    customer = resolve_customer(db, current_user, data.customer_id)

    if data.loyalty_program_id is not None:
        program = db.get(LoyaltyProgram, data.loyalty_program_id)
    else:
        account = LoyaltyService(db).get_account(customer.id)
        program = account.program if account is not None else None
    if program is None or not program.is_active:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="The customer is not enrolled in an active loyalty program.",
        )

    service = StampCardService(db)
    existing = service.find_open_card(customer.id, program.id, data.card_type)
    if existing is not None:
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "success": False,
                "message": "Customer already has an active stamp card of this type",
                "existing_card": _card_to_dict(existing),
            },
        )

    card = service.create_card(
        customer.id,
        program,
        data.card_type,
        stamps_required=data.stamps_required,
        reward_description=data.reward_description,
        reward_value=data.reward_value,
    )
    db.commit()
    db.refresh(card)
    logger.info(f"Stamp card {card.id} ({card.card_type}) created for customer {customer.id}")
    return _card_to_dict(card)


@router.get("/stamp-cards/{card_id}")
@limiter.limit("60/minute")
def get_card(request: Request, card_id: PositiveIntId, db: DbSession, current_user: CurrentUser):
    return _card_to_dict(_get_card_or_404(db, card_id, current_user), include_history=True)


@router.post("/stamp-cards/{card_id}/claim")
@limiter.limit("10/minute")
def claim_card_reward(
    request: Request, card_id: PositiveIntId, data: ClaimRequest, db: DbSession, current_user: CurrentUser,
):
    card = _get_card_or_404(db, card_id, current_user)
    try:
        StampCardService(db).claim_reward(card, data.order_id)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))
    db.commit()
    db.refresh(card)
    return _card_to_dict(card, include_history=True)
