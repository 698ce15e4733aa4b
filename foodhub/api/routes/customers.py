"""Customer management routes. Phone numbers are masked in every response."""

import logging
from datetime import date
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlalchemy import or_

from foodhub.core.config import settings
from foodhub.core.policies import CustomerPolicy, RewardsPolicy
from foodhub.core.rate_limit import limiter
from foodhub.core.rbac import CurrentUser, forbid_unless
from foodhub.core.responses import page_response, paginate
from foodhub.core.sanitize import sanitize_text
from foodhub.core.validators import PageNumber, PerPage, PositiveIntId
from foodhub.db.base import isoformat
from foodhub.db.session import DbSession
from foodhub.models.customer import Customer, CustomerAddress
from foodhub.services.encryption_service import encryption_service

logger = logging.getLogger(__name__)

router = APIRouter()


# ============== Pydantic Schemas ==============

class AddressInput(BaseModel):
    label: Optional[str] = Field(default=None, max_length=50)
    address: str = Field(..., min_length=1, max_length=500)
    city: Optional[str] = Field(default=None, max_length=100)
    postal_code: Optional[str] = Field(default=None, max_length=20)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    is_default: bool = False

    @field_validator("label", "address", "city", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


class CustomerCreate(BaseModel):
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    phone: Optional[str] = Field(default=None, max_length=50)
    date_of_birth: Optional[date] = None
    gender: Optional[str] = Field(default=None, max_length=20)
    preferences: Optional[Dict[str, Any]] = None
    marketing_emails_enabled: bool = False
    sms_notifications_enabled: bool = True
    push_notifications_enabled: bool = True
    addresses: List[AddressInput] = []

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


class CustomerUpdate(BaseModel):
    first_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    last_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, max_length=50)
    date_of_birth: Optional[date] = None
    gender: Optional[str] = Field(default=None, max_length=20)
    preferences: Optional[Dict[str, Any]] = None
    status: Optional[str] = Field(default=None, pattern=r"^(active|inactive|blocked)$")
    marketing_emails_enabled: Optional[bool] = None
    sms_notifications_enabled: Optional[bool] = None
    push_notifications_enabled: Optional[bool] = None

    @field_validator("first_name", "last_name", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


# ============== Helper Functions ==============

def _address_to_dict(address: CustomerAddress) -> dict:
    return {
        "id": address.id,
        "label": address.label,
        "address": address.address,
        "city": address.city,
        "postal_code": address.postal_code,
        "latitude": address.latitude,
        "longitude": address.longitude,
        "is_default": address.is_default,
    }


def _customer_to_dict(customer: Customer) -> dict:
    return {
        "id": customer.id,
        "first_name": customer.first_name,
        "last_name": customer.last_name,
        "full_name": customer.full_name,
        "email": customer.email,
        "phone": encryption_service.mask_sensitive_data(customer.phone, "phone"),
        "date_of_birth": customer.date_of_birth.isoformat() if customer.date_of_birth else None,
        "gender": customer.gender,
        "preferences": customer.preferences or {},
        "status": customer.status,
        "marketing_emails_enabled": customer.marketing_emails_enabled,
        "sms_notifications_enabled": customer.sms_notifications_enabled,
        "push_notifications_enabled": customer.push_notifications_enabled,
        "addresses": [_address_to_dict(a) for a in customer.addresses],
        "created_at": isoformat(customer.created_at),
    }


def _get_customer_or_404(db, customer_id: int) -> Customer:
    customer = db.get(Customer, customer_id)
    if not customer:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")
    return customer


def resolve_customer(db, current_user, customer_id: Optional[int] = None) -> Customer:
    """The customer a rewards request is about: ``customer_id`` when given,
    else the customer record sharing the caller's email."""
    if customer_id is not None:
        customer = db.get(Customer, customer_id)
    else:
        customer = db.query(Customer).filter(Customer.email == current_user.email).first()
    if customer is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Customer not found")
    forbid_unless(RewardsPolicy.act_for(current_user, customer))
    return customer


def _ensure_unique_email(db, email: str, exclude_id: Optional[int] = None) -> None:
    query = db.query(Customer.id).filter(Customer.email == email)
    if exclude_id is not None:
        query = query.filter(Customer.id != exclude_id)
    if query.first():
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="The email has already been taken.",
        )


# ============== Routes ==============

@router.get("")
@limiter.limit("60/minute")
def list_customers(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    page: PageNumber = 1,
    per_page: PerPage = settings.order_per_page_default,
    search: Optional[str] = Query(default=None, max_length=100),
    customer_status: Optional[str] = Query(default=None, alias="status", max_length=20),
):
    forbid_unless(CustomerPolicy.view_any(current_user))

    query = db.query(Customer)
    if search:
        term = f"%{search}%"
        query = query.filter(or_(
            Customer.first_name.ilike(term),
            Customer.last_name.ilike(term),
            Customer.email.ilike(term),
        ))
    if customer_status:
        query = query.filter(Customer.status == customer_status)

    customers, total = paginate(query.order_by(Customer.id), page, per_page)
    return page_response([_customer_to_dict(c) for c in customers], total, page, per_page)


@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_customer(request: Request, data: CustomerCreate, db: DbSession, current_user: CurrentUser):
    forbid_unless(CustomerPolicy.create(current_user))
    _ensure_unique_email(db, data.email)

    customer = Customer(**data.model_dump(exclude={"addresses"}))
    customer.addresses = [CustomerAddress(**a.model_dump()) for a in data.addresses]
    db.add(customer)
    db.commit()
    db.refresh(customer)
    logger.info(f"Customer {customer.id} created by user {current_user.user_id}")
    return _customer_to_dict(customer)


@router.get("/{customer_id}")
@limiter.limit("60/minute")
def get_customer(request: Request, customer_id: PositiveIntId, db: DbSession, current_user: CurrentUser):
    customer = _get_customer_or_404(db, customer_id)
    forbid_unless(CustomerPolicy.view(current_user, customer))
    return _customer_to_dict(customer)


@router.put("/{customer_id}")
@limiter.limit("30/minute")
def update_customer(
    request: Request, customer_id: PositiveIntId, data: CustomerUpdate, db: DbSession, current_user: CurrentUser,
):
    customer = _get_customer_or_404(db, customer_id)
    forbid_unless(CustomerPolicy.update(current_user, customer))

    changes = data.model_dump(exclude_unset=True)
    if changes.get("email"):
        _ensure_unique_email(db, changes["email"], customer.id)
    for field, value in changes.items():
        setattr(customer, field, value)

    db.commit()
    db.refresh(customer)
    return _customer_to_dict(customer)


@router.delete("/{customer_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("30/minute")
def delete_customer(request: Request, customer_id: PositiveIntId, db: DbSession, current_user: CurrentUser):
    customer = _get_customer_or_404(db, customer_id)
    forbid_unless(CustomerPolicy.delete(current_user, customer))
    db.delete(customer)
    db.commit()
    logger.info(f"Customer {customer_id} removed by user {current_user.user_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{customer_id}/addresses", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def add_address(
    request: Request, customer_id: PositiveIntId, data: AddressInput, db: DbSession, current_user: CurrentUser,
):
    customer = _get_customer_or_404(db, customer_id)
    forbid_unless(CustomerPolicy.update(current_user, customer))

    if data.is_default:
        for existing in customer.addresses:
            existing.is_default = False
    address = CustomerAddress(customer_id=customer.id, **data.model_dump())
    db.add(address)
    db.commit()
    db.refresh(address)
    return _address_to_dict(address)
