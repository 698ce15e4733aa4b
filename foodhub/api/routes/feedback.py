"""Customer feedback on orders."""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Request, status
from pydantic import BaseModel, Field, field_validator

from foodhub.api.routes.customers import resolve_customer
from foodhub.core.config import settings
from foodhub.core.rate_limit import limiter
from foodhub.core.rbac import CurrentUser
from foodhub.core.responses import page_response, paginate
from foodhub.core.sanitize import sanitize_text
from foodhub.core.validators import OptionalIdQuery, PageNumber, PerPage
from foodhub.db.base import isoformat
from foodhub.db.session import DbSession
from foodhub.models.feedback import FEEDBACK_TYPES, CustomerFeedback
from foodhub.models.order import Order

logger = logging.getLogger(__name__)

router = APIRouter()


# ============== Pydantic Schemas ==============

class FeedbackCreate(BaseModel):
    order_id: int = Field(..., gt=0)
    rating: int = Field(..., ge=1, le=5)
    feedback_type: str = Field(default="overall")
    comments: Optional[str] = Field(default=None, max_length=1000)
    would_recommend: Optional[bool] = None
    is_anonymous: bool = False

    @field_validator("feedback_type")
    @classmethod
    def _known_type(cls, v):
        if v not in FEEDBACK_TYPES:
            raise ValueError(f"The feedback type must be one of: {', '.join(FEEDBACK_TYPES)}.")
        return v

    @field_validator("comments", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


# ============== Helper Functions ==============

def _feedback_to_dict(feedback: CustomerFeedback) -> dict:
    details = feedback.feedback_details or {}
    return {
        "id": feedback.id,
        "order_id": feedback.order_id,
        "rating": feedback.rating,
        "feedback_type": feedback.feedback_type,
        "comments": feedback.feedback_text,
        "would_recommend": details.get("would_recommend"),
        "is_anonymous": feedback.is_anonymous,
        "status": feedback.status,
        "created_at": isoformat(feedback.created_at),
    }


# ============== Routes ==============

@router.post("/customer/feedback", status_code=status.HTTP_201_CREATED)
@limiter.limit("10/minute")
def submit_feedback(request: Request, data: FeedbackCreate, db: DbSession, current_user: CurrentUser):
    order = db.get(Order, data.order_id)
    if order is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    customer = resolve_customer(db, current_user, order.customer_id)

    duplicate = db.query(CustomerFeedback.id).filter(
        CustomerFeedback.order_id == order.id,
        CustomerFeedback.feedback_type == data.feedback_type,
    ).first()
    if duplicate:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Feedback of this type has already been submitted for this order.",
        )

    feedback = CustomerFeedback(
        order_id=order.id,
        customer_id=customer.id,
        restaurant_id=order.restaurant_id,
        restaurant_branch_id=order.restaurant_branch_id,
        user_id=current_user.user_id,
        rating=data.rating,
        feedback_type=data.feedback_type,
        feedback_text=data.comments,
        feedback_details={"would_recommend": data.would_recommend},
        is_anonymous=data.is_anonymous,
        is_verified_purchase=True,
        status="pending",
    )
    db.add(feedback)
    db.commit()
    db.refresh(feedback)
    logger.info(f"Feedback {feedback.id} ({feedback.rating}/5) recorded for order {order.id}")
    return _feedback_to_dict(feedback)


@router.get("/customer/feedback")
@limiter.limit("60/minute")
def list_feedback(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    page: PageNumber = 1,
    per_page: PerPage = settings.order_per_page_default,
    customer_id: OptionalIdQuery = None,
    order_id: OptionalIdQuery = None,
):
    customer = resolve_customer(db, current_user, customer_id)
    query = db.query(CustomerFeedback).filter(CustomerFeedback.customer_id == customer.id)
    if order_id:
        query = query.filter(CustomerFeedback.order_id == order_id)

    rows, total = paginate(query.order_by(CustomerFeedback.id.desc()), page, per_page)
    return page_response([_feedback_to_dict(f) for f in rows], total, page, per_page)
