"""Menu catalogue routes: categories, items with variants, per-branch overrides."""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Request, Response, status
from pydantic import BaseModel, Field, field_validator

from foodhub.api.routes.restaurants import slugify
from foodhub.core.config import settings
from foodhub.core.policies import MenuPolicy
from foodhub.core.rate_limit import limiter
from foodhub.core.rbac import RequireManagement, forbid_unless
from foodhub.core.responses import page_response, paginate
from foodhub.core.sanitize import sanitize_text
from foodhub.core.validators import OptionalIdQuery, PageNumber, PerPage, PositiveIntId
from foodhub.db.base import isoformat
from foodhub.db.session import DbSession
from foodhub.models.menu import BranchMenuItem, MenuCategory, MenuItem, MenuItemVariant
from foodhub.models.restaurant import RestaurantBranch

logger = logging.getLogger(__name__)

router = APIRouter()


# ============== Schemas ==============

class CategoryCreate(BaseModel):
    restaurant_id: int = Field(..., gt=0)
    name: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = Field(default=None, max_length=255, pattern=r"^[a-z0-9-]+$")
    description: Optional[str] = None
    sort_order: int = Field(default=0, ge=0)
    is_active: bool = True

    @field_validator("name", "description", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    sort_order: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None

    @field_validator("name", "description", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


class VariantInput(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    price_adjustment: Decimal = Decimal("0")
    is_available: bool = True

    @field_validator("name", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


class MenuItemCreate(BaseModel):
    restaurant_id: int = Field(..., gt=0)
    menu_category_id: Optional[int] = Field(default=None, gt=0)
    name: str = Field(..., min_length=1, max_length=255)
    slug: Optional[str] = Field(default=None, max_length=255, pattern=r"^[a-z0-9-]+$")
    description: Optional[str] = None
    price: Decimal = Field(..., ge=0)
    cost_price: Optional[Decimal] = Field(default=None, ge=0)
    currency: str = Field(default="USD", max_length=3)
    sku: Optional[str] = Field(default=None, max_length=100)
    preparation_time: Optional[int] = Field(default=None, ge=0)
    calories: Optional[int] = Field(default=None, ge=0)
    allergens: Optional[List[str]] = None
    dietary_tags: Optional[List[str]] = None
    is_available: bool = True
    is_featured: bool = False
    is_spicy: bool = False
    spice_level: Optional[int] = Field(default=None, ge=0, le=5)
    sort_order: int = Field(default=0, ge=0)
    customization_options: Optional[Dict[str, Any]] = None
    variants: List[VariantInput] = []

    @field_validator("name", "description", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


class MenuItemUpdate(BaseModel):
    menu_category_id: Optional[int] = Field(default=None, gt=0)
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    description: Optional[str] = None
    price: Optional[Decimal] = Field(default=None, ge=0)
    cost_price: Optional[Decimal] = Field(default=None, ge=0)
    sku: Optional[str] = Field(default=None, max_length=100)
    preparation_time: Optional[int] = Field(default=None, ge=0)
    calories: Optional[int] = Field(default=None, ge=0)
    allergens: Optional[List[str]] = None
    dietary_tags: Optional[List[str]] = None
    is_available: Optional[bool] = None
    is_featured: Optional[bool] = None
    is_spicy: Optional[bool] = None
    spice_level: Optional[int] = Field(default=None, ge=0, le=5)
    sort_order: Optional[int] = Field(default=None, ge=0)
    customization_options: Optional[Dict[str, Any]] = None

    @field_validator("name", "description", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


class BranchMenuItemCreate(BaseModel):
    restaurant_branch_id: int = Field(..., gt=0)
    menu_item_id: int = Field(..., gt=0)
    price: Optional[Decimal] = Field(default=None, ge=0)
    is_available: bool = True
    is_featured: bool = False
    sort_order: int = Field(default=0, ge=0)


class BranchMenuItemUpdate(BaseModel):
    price: Optional[Decimal] = Field(default=None, ge=0)
    is_available: Optional[bool] = None
    is_featured: Optional[bool] = None
    sort_order: Optional[int] = Field(default=None, ge=0)


# ============== Helpers ==============

def _category_to_dict(category: MenuCategory) -> dict:
    return {
        "id": category.id,
        "restaurant_id": category.restaurant_id,
        "name": category.name,
        "slug": category.slug,
        "description": category.description,
        "sort_order": category.sort_order,
        "is_active": category.is_active,
        "created_at": isoformat(category.created_at),
    }


def _item_to_dict(item: MenuItem) -> dict:
    return {
        "id": item.id,
        "restaurant_id": item.restaurant_id,
        "menu_category_id": item.menu_category_id,
        "name": item.name,
        "slug": item.slug,
        "description": item.description,
        "price": float(item.price),
        "currency": item.currency,
        "sku": item.sku,
        "preparation_time": item.preparation_time,
        "calories": item.calories,
        "allergens": item.allergens or [],
        "dietary_tags": item.dietary_tags or [],
        "is_available": item.is_available,
        "is_featured": item.is_featured,
        "is_spicy": item.is_spicy,
        "spice_level": item.spice_level,
        "sort_order": item.sort_order,
        "customization_options": item.customization_options,
        "variants": [
            {
                "id": v.id,
                "name": v.name,
                "price_adjustment": float(v.price_adjustment),
                "is_available": v.is_available,
            }
            for v in item.variants
        ],
        "created_at": isoformat(item.created_at),
    }


def _branch_item_to_dict(entry: BranchMenuItem) -> dict:
    return {
        "id": entry.id,
        "restaurant_branch_id": entry.restaurant_branch_id,
        "menu_item_id": entry.menu_item_id,
        "name": entry.menu_item.name,
        "price": float(entry.price) if entry.price is not None else None,
        "effective_price": float(entry.effective_price),
        "is_available": entry.is_available,
        "is_featured": entry.is_featured,
        "sort_order": entry.sort_order,
    }


def _get_or_404(db, model, object_id: int, label: str):
    obj = db.get(model, object_id)
    if not obj:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"{label} not found")
    return obj


def _branch_restaurant_id(db, branch_id: int) -> int:
    return _get_or_404(db, RestaurantBranch, branch_id, "Restaurant branch").restaurant_id


# ============== Categories ==============

@router.get("/menu-categories")
@limiter.limit("120/minute")
def list_categories(
    request: Request,
    db: DbSession,
    page: PageNumber = 1,
    per_page: PerPage = settings.order_per_page_default,
    restaurant_id: OptionalIdQuery = None,
):
    query = db.query(MenuCategory)
    if restaurant_id:
        query = query.filter(MenuCategory.restaurant_id == restaurant_id)
    categories, total = paginate(query.order_by(MenuCategory.sort_order, MenuCategory.id), page, per_page)
    return page_response([_category_to_dict(c) for c in categories], total, page, per_page)


@router.post("/menu-categories", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_category(request: Request, data: CategoryCreate, db: DbSession, current_user: RequireManagement):
    forbid_unless(MenuPolicy.manage(current_user, data.restaurant_id))
    category = MenuCategory(**data.model_dump())
    db.add(category)
    db.commit()
    db.refresh(category)
    return _category_to_dict(category)


@router.get("/menu-categories/{category_id}")
@limiter.limit("120/minute")
def get_category(request: Request, category_id: PositiveIntId, db: DbSession):
    return _category_to_dict(_get_or_404(db, MenuCategory, category_id, "Menu category"))


@router.put("/menu-categories/{category_id}")
@limiter.limit("30/minute")
def update_category(
    request: Request, category_id: PositiveIntId, data: CategoryUpdate, db: DbSession, current_user: RequireManagement,
):
    category = _get_or_404(db, MenuCategory, category_id, "Menu category")
    forbid_unless(MenuPolicy.manage(current_user, category.restaurant_id))
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(category, field, value)
    db.commit()
    db.refresh(category)
    return _category_to_dict(category)


@router.delete("/menu-categories/{category_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("30/minute")
def delete_category(request: Request, category_id: PositiveIntId, db: DbSession, current_user: RequireManagement):
    category = _get_or_404(db, MenuCategory, category_id, "Menu category")
    forbid_unless(MenuPolicy.manage(current_user, category.restaurant_id))
    db.delete(category)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============== Menu items ==============

@router.get("/menu-items")
@limiter.limit("120/minute")
def list_menu_items(
    request: Request,
    db: DbSession,
    page: PageNumber = 1,
    per_page: PerPage = settings.order_per_page_default,
    restaurant_id: OptionalIdQuery = None,
    menu_category_id: OptionalIdQuery = None,
    is_available: Optional[bool] = None,
):
    query = db.query(MenuItem)
    if restaurant_id:
        query = query.filter(MenuItem.restaurant_id == restaurant_id)
    if menu_category_id:
        query = query.filter(MenuItem.menu_category_id == menu_category_id)
    if is_available is not None:
        query = query.filter(MenuItem.is_available.is_(is_available))
    items, total = paginate(query.order_by(MenuItem.sort_order, MenuItem.id), page, per_page)
    return page_response([_item_to_dict(i) for i in items], total, page, per_page)


@router.post("/menu-items", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_menu_item(request: Request, data: MenuItemCreate, db: DbSession, current_user: RequireManagement):
    forbid_unless(MenuPolicy.manage(current_user, data.restaurant_id))
    if data.menu_category_id is not None:
        category = _get_or_404(db, MenuCategory, data.menu_category_id, "Menu category")
        if category.restaurant_id != data.restaurant_id:
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="The selected category belongs to another restaurant.",
            )

    item = MenuItem(
        **data.model_dump(exclude={"slug", "variants"}),
        slug=data.slug or slugify(data.name),
    )
    item.variants = [MenuItemVariant(**v.model_dump()) for v in data.variants]
    db.add(item)
    db.commit()
    db.refresh(item)
    logger.info(f"Menu item {item.id} created for restaurant {item.restaurant_id}")
    return _item_to_dict(item)


@router.get("/menu-items/{item_id}")
@limiter.limit("120/minute")
def get_menu_item(request: Request, item_id: PositiveIntId, db: DbSession):
    return _item_to_dict(_get_or_404(db, MenuItem, item_id, "Menu item"))


@router.put("/menu-items/{item_id}")
@limiter.limit("30/minute")
def update_menu_item(
    request: Request, item_id: PositiveIntId, data: MenuItemUpdate, db: DbSession, current_user: RequireManagement,
):
    item = _get_or_404(db, MenuItem, item_id, "Menu item")
    forbid_unless(MenuPolicy.manage(current_user, item.restaurant_id))
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(item, field, value)
    db.commit()
    db.refresh(item)
    return _item_to_dict(item)


@router.delete("/menu-items/{item_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("30/minute")
def delete_menu_item(request: Request, item_id: PositiveIntId, db: DbSession, current_user: RequireManagement):
    item = _get_or_404(db, MenuItem, item_id, "Menu item")
    forbid_unless(MenuPolicy.manage(current_user, item.restaurant_id))
    db.delete(item)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# ============== Branch overrides ==============

@router.get("/branch-menu-items")
@limiter.limit("120/minute")
def list_branch_menu_items(
    request: Request,
    db: DbSession,
    page: PageNumber = 1,
    per_page: PerPage = settings.order_per_page_default,
    restaurant_branch_id: OptionalIdQuery = None,
):
    query = db.query(BranchMenuItem)
    if restaurant_branch_id:
        query = query.filter(BranchMenuItem.restaurant_branch_id == restaurant_branch_id)
    entries, total = paginate(query.order_by(BranchMenuItem.sort_order, BranchMenuItem.id), page, per_page)
    return page_response([_branch_item_to_dict(e) for e in entries], total, page, per_page)


@router.post("/branch-menu-items", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_branch_menu_item(
    request: Request, data: BranchMenuItemCreate, db: DbSession, current_user: RequireManagement,
):
    restaurant_id = _branch_restaurant_id(db, data.restaurant_branch_id)
    item = _get_or_404(db, MenuItem, data.menu_item_id, "Menu item")
    forbid_unless(MenuPolicy.manage(current_user, restaurant_id))
    if item.restaurant_id != restaurant_id:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="The menu item belongs to another restaurant.",
        )
    if db.query(BranchMenuItem.id).filter(
        BranchMenuItem.restaurant_branch_id == data.restaurant_branch_id,
        BranchMenuItem.menu_item_id == data.menu_item_id,
    ).first():
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="This menu item is already configured for the branch.",
        )

    entry = BranchMenuItem(**data.model_dump())
    db.add(entry)
    db.commit()
    db.refresh(entry)
    return _branch_item_to_dict(entry)


@router.get("/branch-menu-items/{entry_id}")
@limiter.limit("120/minute")
def get_branch_menu_item(request: Request, entry_id: PositiveIntId, db: DbSession):
    return _branch_item_to_dict(_get_or_404(db, BranchMenuItem, entry_id, "Branch menu item"))


@router.put("/branch-menu-items/{entry_id}")
@limiter.limit("30/minute")
def update_branch_menu_item(
    request: Request, entry_id: PositiveIntId, data: BranchMenuItemUpdate, db: DbSession,
    current_user: RequireManagement,
):
    entry = _get_or_404(db, BranchMenuItem, entry_id, "Branch menu item")
    forbid_unless(MenuPolicy.manage(current_user, _branch_restaurant_id(db, entry.restaurant_branch_id)))
    for field, value in data.model_dump(exclude_unset=True).items():
        setattr(entry, field, value)
    db.commit()
    db.refresh(entry)
    return _branch_item_to_dict(entry)


@router.delete("/branch-menu-items/{entry_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("30/minute")
def delete_branch_menu_item(request: Request, entry_id: PositiveIntId, db: DbSession, current_user: RequireManagement):
    entry = _get_or_404(db, BranchMenuItem, entry_id, "Branch menu item")
    forbid_unless(MenuPolicy.manage(current_user, _branch_restaurant_id(db, entry.restaurant_branch_id)))
    db.delete(entry)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
