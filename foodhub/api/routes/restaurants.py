"""Restaurant and branch routes. Reads are public; writes are policy-gated."""

import logging
import re
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query, Request, Response, status
from pydantic import BaseModel, EmailStr, Field, field_validator

from foodhub.core.config import settings
from foodhub.core.policies import BranchPolicy, RestaurantPolicy
from foodhub.core.rate_limit import limiter
from foodhub.core.rbac import CurrentUser, RequireManagement, RequireSuperAdmin, forbid_unless
from foodhub.core.responses import page_response, paginate
from foodhub.core.sanitize import sanitize_text
from foodhub.core.validators import OptionalIdQuery, PageNumber, PerPage, PositiveIntId
from foodhub.db.base import isoformat
from foodhub.db.session import DbSession
from foodhub.models.restaurant import Restaurant, RestaurantBranch

logger = logging.getLogger(__name__)

router = APIRouter()


def slugify(value: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
    return slug or "item"


# ============== Schemas ==============

class RestaurantCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = Field(default=None, max_length=255, pattern=r"^[a-z0-9-]+$")
    description: Optional[str] = None
    cuisine_type: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=50)
    email: Optional[EmailStr] = None
    website: Optional[str] = Field(default=None, max_length=500)
    logo_url: Optional[str] = Field(default=None, max_length=500)
    cover_image_url: Optional[str] = Field(default=None, max_length=500)
    business_hours: Optional[Dict[str, Any]] = None
    settings: Optional[Dict[str, Any]] = None
    status: str = Field(default="active", pattern=r"^(active|inactive|suspended)$")
    commission_rate: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    is_featured: bool = False

    @field_validator("name", "description", "cuisine_type", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


class RestaurantUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    cuisine_type: Optional[str] = Field(default=None, max_length=100)
    phone: Optional[str] = Field(default=None, max_length=50)
    email: Optional[EmailStr] = None
    website: Optional[str] = Field(default=None, max_length=500)
    logo_url: Optional[str] = Field(default=None, max_length=500)
    cover_image_url: Optional[str] = Field(default=None, max_length=500)
    business_hours: Optional[Dict[str, Any]] = None
    settings: Optional[Dict[str, Any]] = None
    status: Optional[str] = Field(default=None, pattern=r"^(active|inactive|suspended)$")
    commission_rate: Optional[Decimal] = Field(default=None, ge=0, le=100)
    is_featured: Optional[bool] = None
    verified_at: Optional[datetime] = None

    @field_validator("name", "description", "cuisine_type", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


class BranchCreate(BaseModel):
    restaurant_id: int = Field(..., gt=0)
    name: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = Field(default=None, max_length=255, pattern=r"^[a-z0-9-]+$")
    address: Optional[str] = Field(default=None, max_length=500)
    city: Optional[str] = Field(default=None, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    postal_code: Optional[str] = Field(default=None, max_length=20)
    country: Optional[str] = Field(default=None, max_length=100)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    phone: Optional[str] = Field(default=None, max_length=50)
    manager_name: Optional[str] = Field(default=None, max_length=255)
    manager_phone: Optional[str] = Field(default=None, max_length=50)
    operating_hours: Optional[Dict[str, Any]] = None
    delivery_zones: Optional[List[Any]] = None
    delivery_fee: Decimal = Field(default=Decimal("0"), ge=0)
    minimum_order_amount: Decimal = Field(default=Decimal("0"), ge=0)
    estimated_delivery_time: Optional[int] = Field(default=None, ge=0)
    status: str = Field(default="active", pattern=r"^(active|inactive|temporarily_closed)$")
    accepts_online_orders: bool = True
    accepts_delivery: bool = True
    accepts_pickup: bool = True
    settings: Optional[Dict[str, Any]] = None

    @field_validator("name", "address", "city", "manager_name", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


class BranchUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    address: Optional[str] = Field(default=None, max_length=500)
    city: Optional[str] = Field(default=None, max_length=100)
    state: Optional[str] = Field(default=None, max_length=100)
    postal_code: Optional[str] = Field(default=None, max_length=20)
    country: Optional[str] = Field(default=None, max_length=100)
    latitude: Optional[float] = Field(default=None, ge=-90, le=90)
    longitude: Optional[float] = Field(default=None, ge=-180, le=180)
    phone: Optional[str] = Field(default=None, max_length=50)
    manager_name: Optional[str] = Field(default=None, max_length=255)
    manager_phone: Optional[str] = Field(default=None, max_length=50)
    operating_hours: Optional[Dict[str, Any]] = None
    delivery_zones: Optional[List[Any]] = None
    delivery_fee: Optional[Decimal] = Field(default=None, ge=0)
    minimum_order_amount: Optional[Decimal] = Field(default=None, ge=0)
    estimated_delivery_time: Optional[int] = Field(default=None, ge=0)
    status: Optional[str] = Field(default=None, pattern=r"^(active|inactive|temporarily_closed)$")
    accepts_online_orders: Optional[bool] = None
    accepts_delivery: Optional[bool] = None
    accepts_pickup: Optional[bool] = None
    settings: Optional[Dict[str, Any]] = None

    @field_validator("name", "address", "city", "manager_name", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


# ============== Helpers ==============

def _restaurant_to_dict(restaurant: Restaurant) -> dict:
    return {
        "id": restaurant.id,
        "name": restaurant.name,
        "slug": restaurant.slug,
        "description": restaurant.description,
        "cuisine_type": restaurant.cuisine_type,
        "phone": restaurant.phone,
        "email": restaurant.email,
        "website": restaurant.website,
        "logo_url": restaurant.logo_url,
        "cover_image_url": restaurant.cover_image_url,
        "business_hours": restaurant.business_hours,
        "status": restaurant.status,
        "commission_rate": float(restaurant.commission_rate),
        "is_featured": restaurant.is_featured,
        "verified_at": isoformat(restaurant.verified_at),
        "branches_count": len(restaurant.branches),
        "created_at": isoformat(restaurant.created_at),
    }


def branch_to_dict(branch: RestaurantBranch) -> dict:
    return {
        "id": branch.id,
        "restaurant_id": branch.restaurant_id,
        "name": branch.name,
        "slug": branch.slug,
        "address": branch.address,
        "city": branch.city,
        "state": branch.state,
        "postal_code": branch.postal_code,
        "country": branch.country,
        "latitude": branch.latitude,
        "longitude": branch.longitude,
        "phone": branch.phone,
        "manager_name": branch.manager_name,
        "operating_hours": branch.operating_hours,
        "delivery_zones": branch.delivery_zones,
        "delivery_fee": float(branch.delivery_fee),
        "minimum_order_amount": float(branch.minimum_order_amount),
        "estimated_delivery_time": branch.estimated_delivery_time,
        "status": branch.status,
        "accepts_online_orders": branch.accepts_online_orders,
        "accepts_delivery": branch.accepts_delivery,
        "accepts_pickup": branch.accepts_pickup,
        "created_at": isoformat(branch.created_at),
    }


def _get_restaurant_or_404(db, restaurant_id: int) -> Restaurant:
    restaurant = db.get(Restaurant, restaurant_id)
    if not restaurant:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Restaurant not found")
    return restaurant


def _get_branch_or_404(db, branch_id: int) -> RestaurantBranch:
    branch = db.get(RestaurantBranch, branch_id)
    if not branch:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Restaurant branch not found")
    return branch


# ============== Restaurants ==============

@router.get("/restaurants")
@limiter.limit("120/minute")
def list_restaurants(
    request: Request,
    db: DbSession,
    page: PageNumber = 1,
    per_page: PerPage = settings.order_per_page_default,
    restaurant_status: Optional[str] = Query(default=None, alias="status", max_length=20),
    cuisine_type: Optional[str] = Query(default=None, max_length=100),
    is_featured: Optional[bool] = None,
):
    query = db.query(Restaurant)
    if restaurant_status:
        query = query.filter(Restaurant.status == restaurant_status)
    if cuisine_type:
        query = query.filter(Restaurant.cuisine_type == cuisine_type)
    if is_featured is not None:
        query = query.filter(Restaurant.is_featured.is_(is_featured))

    restaurants, total = paginate(query.order_by(Restaurant.name), page, per_page)
    return page_response([_restaurant_to_dict(r) for r in restaurants], total, page, per_page)


@router.post("/restaurants", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_restaurant(request: Request, data: RestaurantCreate, db: DbSession, current_user: RequireSuperAdmin):
    forbid_unless(RestaurantPolicy.create(current_user))

    slug = data.slug or slugify(data.name)
    if db.query(Restaurant.id).filter(Restaurant.slug == slug).first():
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="The slug has already been taken.",
        )

    restaurant = Restaurant(**data.model_dump(exclude={"slug"}), slug=slug)
    db.add(restaurant)
    db.commit()
    db.refresh(restaurant)
    logger.info(f"Restaurant {restaurant.id} ({restaurant.slug}) created by {current_user.user_id}")
    return _restaurant_to_dict(restaurant)


@router.get("/restaurants/{restaurant_id}")
@limiter.limit("120/minute")
def get_restaurant(request: Request, restaurant_id: PositiveIntId, db: DbSession):
    restaurant = _get_restaurant_or_404(db, restaurant_id)
    data = _restaurant_to_dict(restaurant)
    data["branches"] = [branch_to_dict(b) for b in restaurant.branches]
    return data


@router.put("/restaurants/{restaurant_id}")
@limiter.limit("30/minute")
def update_restaurant(
    request: Request, restaurant_id: PositiveIntId, data: RestaurantUpdate, db: DbSession, current_user: CurrentUser,
):
    restaurant = _get_restaurant_or_404(db, restaurant_id)
    forbid_unless(RestaurantPolicy.update(current_user, restaurant))

    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(restaurant, field, value)
    db.commit()
    db.refresh(restaurant)
    return _restaurant_to_dict(restaurant)


@router.delete("/restaurants/{restaurant_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("10/minute")
def delete_restaurant(request: Request, restaurant_id: PositiveIntId, db: DbSession, current_user: RequireSuperAdmin):
    restaurant = _get_restaurant_or_404(db, restaurant_id)
    forbid_unless(RestaurantPolicy.delete(current_user, restaurant))

    db.delete(restaurant)
    db.commit()
    logger.info(f"Restaurant {restaurant_id} removed by {current_user.user_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============== Branches ==============

@router.get("/restaurant-branches")
@limiter.limit("120/minute")
def list_branches(
    request: Request,
    db: DbSession,
    page: PageNumber = 1,
    per_page: PerPage = settings.order_per_page_default,
    restaurant_id: OptionalIdQuery = None,
    city: Optional[str] = Query(default=None, max_length=100),
):
    query = db.query(RestaurantBranch)
    if restaurant_id:
        query = query.filter(RestaurantBranch.restaurant_id == restaurant_id)
    if city:
        query = query.filter(RestaurantBranch.city == city)

    branches, total = paginate(query.order_by(RestaurantBranch.id), page, per_page)
    return page_response([branch_to_dict(b) for b in branches], total, page, per_page)


@router.post("/restaurant-branches", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_branch(request: Request, data: BranchCreate, db: DbSession, current_user: RequireManagement):
    _get_restaurant_or_404(db, data.restaurant_id)
    forbid_unless(BranchPolicy.create(current_user, data.restaurant_id))

    branch = RestaurantBranch(**data.model_dump(exclude={"slug"}), slug=data.slug or slugify(data.name))
    db.add(branch)
    db.commit()
    db.refresh(branch)
    logger.info(f"Branch {branch.id} created for restaurant {branch.restaurant_id}")
    return branch_to_dict(branch)


@router.get("/restaurant-branches/{branch_id}")
@limiter.limit("120/minute")
def get_branch(request: Request, branch_id: PositiveIntId, db: DbSession):
    return branch_to_dict(_get_branch_or_404(db, branch_id))


@router.put("/restaurant-branches/{branch_id}")
@limiter.limit("30/minute")
def update_branch(
    request: Request, branch_id: PositiveIntId, data: BranchUpdate, db: DbSession, current_user: RequireManagement,
):
    branch = _get_branch_or_404(db, branch_id)
    forbid_unless(BranchPolicy.update(current_user, branch))

    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(branch, field, value)
    db.commit()
    db.refresh(branch)
    return branch_to_dict(branch)


@router.delete("/restaurant-branches/{branch_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("10/minute")
def delete_branch(request: Request, branch_id: PositiveIntId, db: DbSession, current_user: RequireManagement):
    branch = _get_branch_or_404(db, branch_id)
    forbid_unless(BranchPolicy.delete(current_user, branch))

    db.delete(branch)
    db.commit()
    logger.info(f"Branch {branch_id} removed by {current_user.user_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
