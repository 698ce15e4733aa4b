"""Customer challenge routes: management, enrolment, leaderboards and engagement."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from pydantic import BaseModel, Field, field_validator

from foodhub.core.config import settings
from foodhub.core.policies import RewardsPolicy
from foodhub.core.rate_limit import limiter
from foodhub.core.rbac import RequireManagement, TokenData, forbid_unless, role_and_permission
from foodhub.core.responses import page_response, paginate
from foodhub.core.sanitize import sanitize_text
from foodhub.core.validators import PageNumber, PerPage, PositiveIntId
from foodhub.db.base import isoformat
from foodhub.db.session import DbSession
from foodhub.models.challenge import Challenge, CustomerChallenge
from foodhub.models.customer import Customer
from foodhub.services.challenge_service import ChallengeError, ChallengeService

logger = logging.getLogger(__name__)

router = APIRouter()

RequireChallengeSupport = Annotated[
    TokenData,
    Depends(role_and_permission("SUPER_ADMIN|RESTAURANT_OWNER|BRANCH_MANAGER|CUSTOMER_SERVICE")),
]


# ============== Pydantic Schemas ==============

class ChallengeCreate(BaseModel):
    restaurant_id: Optional[int] = Field(default=None, gt=0)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = Field(default=None, max_length=2000)
    challenge_type: str = Field(..., pattern=r"^(frequency|variety|spending|value|referral)$")
    requirements: Dict[str, Any] = {}
    reward_type: str = Field(..., pattern=r"^(points|discount|free_item)$")
    reward_value: Decimal = Field(..., ge=0, le=100000)
    reward_metadata: Optional[Dict[str, Any]] = None
    start_date: datetime
    end_date: datetime
    is_active: bool = True
    is_repeatable: bool = False
    max_participants: Optional[int] = Field(default=None, ge=1)
    priority: int = Field(default=0, ge=0, le=100)

    @field_validator("name", "description", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


class AssignRequest(BaseModel):
    customer_id: int = Field(..., gt=0)


class EngagementRequest(AssignRequest):
    event_type: str = Field(..., pattern=r"^(view|share|click|dismiss|reminder_opened)$")
    event_data: Optional[Dict[str, Any]] = None
    session_id: Optional[str] = Field(default=None, max_length=255)


# ============== Helper Functions ==============

def _challenge_to_dict(challenge: Challenge) -> dict:
    return {
        "id": challenge.id,
        "restaurant_id": challenge.restaurant_id,
        "name": challenge.name,
        "description": challenge.description,
        "challenge_type": challenge.challenge_type,
        "requirements": challenge.requirements or {},
        "target": challenge.target,
        "reward_type": challenge.reward_type,
        "reward_value": float(challenge.reward_value),
        "reward_metadata": challenge.reward_metadata or {},
        "start_date": isoformat(challenge.start_date),
        "end_date": isoformat(challenge.end_date),
        "is_active": challenge.is_active,
        "is_repeatable": challenge.is_repeatable,
        "max_participants": challenge.max_participants,
        "priority": challenge.priority,
    }


def _enrolment_to_dict(enrolment: CustomerChallenge) -> dict:
    return {
        "id": enrolment.id,
        "customer_id": enrolment.customer_id,
        "challenge_id": enrolment.challenge_id,
        "challenge_name": enrolment.challenge.name if enrolment.challenge else None,
        "status": enrolment.status,
        "progress_current": float(enrolment.progress_current),
        "progress_target": float(enrolment.progress_target),
        "progress_percentage": float(enrolment.progress_percentage),
        "assigned_at": isoformat(enrolment.assigned_at),
        "completed_at": isoformat(enrolment.completed_at),
        "expires_at": isoformat(enrolment.expires_at),
        "reward_claimed": enrolment.reward_claimed,
        "reward_claimed_at": isoformat(enrolment.reward_claimed_at),
    }


def _scope(query, user: TokenData):
    if user.is_super_admin() or user.restaurant_id is None:
        return query
    return query.filter((Challenge.restaurant_id == user.restaurant_id) | (Challenge.restaurant_id.is_(None)))


def _challenge_or_404(db, challenge_id: int, user: TokenData) -> Challenge:
    challenge = db.get(Challenge, challenge_id)
    if challenge is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Challenge not found")
    if not user.is_super_admin() and challenge.restaurant_id is not None:
        forbid_unless(challenge.restaurant_id == user.restaurant_id)
    return challenge


def _customer_or_404(db, customer_id: int) -> Customer:
    customer = db.get(Customer, customer_id)
    if customer is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")
    return customer


def _unprocessable(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=message)


# ============== Challenge management ==============

@router.get("")
@limiter.limit("60/minute")
def list_challenges(
    request: Request,
    db: DbSession,
    current_user: RequireManagement,
    page: PageNumber = 1,
    per_page: PerPage = settings.order_per_page_default,
    is_active: Optional[bool] = None,
    challenge_type: Optional[str] = None,
):
    query = _scope(db.query(Challenge), current_user)
    if is_active is not None:
        query = query.filter(Challenge.is_active == is_active)
    if challenge_type:
        query = query.filter(Challenge.challenge_type == challenge_type)

    challenges, total = paginate(query.order_by(Challenge.priority.desc(), Challenge.id.desc()), page, per_page)
    return page_response([_challenge_to_dict(c) for c in challenges], total, page, per_page)


@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_challenge(request: Request, data: ChallengeCreate, db: DbSession, current_user: RequireManagement):
    forbid_unless(RewardsPolicy.manage_challenges(current_user))
    fields = data.model_dump()
    if not current_user.is_super_admin():
        fields["restaurant_id"] = current_user.restaurant_id

    try:
        challenge = ChallengeService(db).create_challenge(fields)
    except ChallengeError as e:
        db.rollback()
        raise _unprocessable(str(e))
    db.commit()
    db.refresh(challenge)
    return _challenge_to_dict(challenge)


@router.post("/generate-weekly", status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def generate_weekly(request: Request, db: DbSession, current_user: RequireManagement):
    restaurant_id = None if current_user.is_super_admin() else current_user.restaurant_id
    challenges = ChallengeService(db).generate_weekly(restaurant_id)
    db.commit()
    logger.info(f"Weekly challenges generated by user {current_user.user_id} (restaurant {restaurant_id})")
    return {"items": [_challenge_to_dict(c) for c in challenges], "total": len(challenges)}


@router.post("/expire")
@limiter.limit("10/minute")
def expire_challenges(request: Request, db: DbSession, current_user: RequireManagement):
    expired = ChallengeService(db).expire_old()
    db.commit()
    return {"expired": expired}


@router.get("/customer/{customer_id}")
@limiter.limit("60/minute")
def customer_challenges(
    request: Request,
    customer_id: PositiveIntId,
    db: DbSession,
    current_user: RequireChallengeSupport,
    status_filter: Annotated[Optional[str], Query(alias="status")] = None,
):
    customer = _customer_or_404(db, customer_id)
    enrolments = ChallengeService(db).customer_challenges(customer.id, status_filter)
    return {"items": [_enrolment_to_dict(e) for e in enrolments], "total": len(enrolments)}


@router.get("/{challenge_id}")
@limiter.limit("60/minute")
def get_challenge(request: Request, challenge_id: PositiveIntId, db: DbSession, current_user: RequireManagement):
    challenge = _challenge_or_404(db, challenge_id, current_user)
    return {**_challenge_to_dict(challenge), "statistics": ChallengeService(db).statistics(challenge)}


@router.get("/{challenge_id}/leaderboard")
@limiter.limit("60/minute")
def challenge_leaderboard(
    request: Request, challenge_id: PositiveIntId, db: DbSession, current_user: RequireManagement, limit: int = 10,
):
    challenge = _challenge_or_404(db, challenge_id, current_user)
    return {
        "challenge_id": challenge.id,
        "leaderboard": ChallengeService(db).leaderboard(challenge.id, max(1, min(limit, 100))),
    }


# ============== Enrolment ==============

@router.post("/{challenge_id}/assign", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def assign_challenge(
    request: Request, challenge_id: PositiveIntId, data: AssignRequest, db: DbSession,
    current_user: RequireChallengeSupport,
):
    challenge = _challenge_or_404(db, challenge_id, current_user)
    customer = _customer_or_404(db, data.customer_id)
    try:
        enrolment = ChallengeService(db).assign(customer.id, challenge)
    except ChallengeError as e:
        db.rollback()
        raise _unprocessable(str(e))
    db.commit()
    db.refresh(enrolment)
    return _enrolment_to_dict(enrolment)


@router.post("/{challenge_id}/engagement", status_code=status.HTTP_201_CREATED)
@limiter.limit("60/minute")
def track_engagement(
    request: Request, challenge_id: PositiveIntId, data: EngagementRequest, db: DbSession,
    current_user: RequireChallengeSupport,
):
    challenge = _challenge_or_404(db, challenge_id, current_user)
    customer = _customer_or_404(db, data.customer_id)
    entry = ChallengeService(db).track_engagement(
        customer.id,
        challenge.id,
        data.event_type,
        data.event_data,
        data.session_id,
        request.headers.get("User-Agent"),
    )
    db.commit()
    return {"id": entry.id, "event_type": entry.event_type, "created_at": isoformat(entry.created_at)}
