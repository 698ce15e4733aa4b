"""Staff user management. Owners are confined to their restaurant, managers to their branch."""

import logging
from typing import List, Optional

from fastapi import APIRouter, HTTPException, Request, Response, status
from pydantic import BaseModel, EmailStr, Field, field_validator

from foodhub.api.routes.auth import user_to_dict
from foodhub.core.config import settings
from foodhub.core.policies import StaffPolicy
from foodhub.core.rate_limit import limiter
from foodhub.core.rbac import RequireManagement, UserRole, forbid_unless
from foodhub.core.responses import page_response, paginate
from foodhub.core.sanitize import sanitize_text
from foodhub.core.security import get_password_hash
from foodhub.core.validators import PageNumber, PerPage, PositiveIntId
from foodhub.db.session import DbSession
from foodhub.models.user import User

logger = logging.getLogger(__name__)

router = APIRouter()


class UserCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=255)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    role: UserRole
    restaurant_id: Optional[int] = Field(default=None, gt=0)
    restaurant_branch_id: Optional[int] = Field(default=None, gt=0)
    permissions: List[str] = []
    phone: Optional[str] = Field(default=None, max_length=50)
    mfa_enabled: bool = False

    @field_validator("name", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


class UserUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=255)
    email: Optional[EmailStr] = None
    password: Optional[str] = Field(default=None, min_length=8, max_length=128)
    role: Optional[UserRole] = None
    restaurant_branch_id: Optional[int] = Field(default=None, gt=0)
    permissions: Optional[List[str]] = None
    status: Optional[str] = Field(default=None, pattern=r"^(active|inactive|suspended)$")
    phone: Optional[str] = Field(default=None, max_length=50)
    mfa_enabled: Optional[bool] = None

    @field_validator("name", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


def _get_user_or_404(db, user_id: int) -> User:
    user = db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")
    return user


def _check_assignable_role(current_user, role: Optional[UserRole]) -> None:
    """Only super admins hand out SUPER_ADMIN or RESTAURANT_OWNER."""
    if role is None or current_user.is_super_admin():
        return
    forbid_unless(role not in (UserRole.SUPER_ADMIN, UserRole.RESTAURANT_OWNER))


@router.get("")
@limiter.limit("60/minute")
def list_users(
    request: Request,
    db: DbSession,
    current_user: RequireManagement,
    page: PageNumber = 1,
    per_page: PerPage = settings.order_per_page_default,
):
    forbid_unless(StaffPolicy.view_any(current_user))

    query = db.query(User)
    if current_user.role == UserRole.RESTAURANT_OWNER:
        query = query.filter(User.restaurant_id == current_user.restaurant_id)
    elif current_user.role == UserRole.BRANCH_MANAGER:
        query = query.filter(User.restaurant_branch_id == current_user.restaurant_branch_id)

    users, total = paginate(query.order_by(User.id), page, per_page)
    return page_response([user_to_dict(u) for u in users], total, page, per_page)


@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
def create_user(request: Request, data: UserCreate, db: DbSession, current_user: RequireManagement):
    forbid_unless(StaffPolicy.create(current_user))
    _check_assignable_role(current_user, data.role)

    if db.query(User.id).filter(User.email == data.email).first():
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="The email has already been taken.",
        )

    restaurant_id, branch_id = data.restaurant_id, data.restaurant_branch_id
    if current_user.role == UserRole.RESTAURANT_OWNER:
        restaurant_id = current_user.restaurant_id
    elif current_user.role == UserRole.BRANCH_MANAGER:
        restaurant_id = current_user.restaurant_id
        branch_id = current_user.restaurant_branch_id

    user = User(
        name=data.name,
        email=data.email,
        password_hash=get_password_hash(data.password),
        role=data.role,
        restaurant_id=restaurant_id,
        restaurant_branch_id=branch_id,
        permissions=data.permissions,
        phone=data.phone,
        mfa_enabled=data.mfa_enabled,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    logger.info(f"User {user.id} ({user.role.value}) created by {current_user.user_id}")
    return user_to_dict(user)


@router.get("/{user_id}")
@limiter.limit("60/minute")
def get_user(request: Request, user_id: PositiveIntId, db: DbSession, current_user: RequireManagement):
    user = _get_user_or_404(db, user_id)
    forbid_unless(StaffPolicy.view(current_user, user))
    return user_to_dict(user)


@router.put("/{user_id}")
@limiter.limit("30/minute")
def update_user(
    request: Request, user_id: PositiveIntId, data: UserUpdate, db: DbSession, current_user: RequireManagement,
):
    user = _get_user_or_404(db, user_id)
    forbid_unless(StaffPolicy.update(current_user, user))
    _check_assignable_role(current_user, data.role)

    changes = data.model_dump(exclude_unset=True)
    if "email" in changes and changes["email"] != user.email:
        if db.query(User.id).filter(User.email == changes["email"], User.id != user.id).first():
            raise HTTPException(
                status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
                detail="The email has already been taken.",
            )
    if current_user.role == UserRole.BRANCH_MANAGER:
        changes.pop("restaurant_branch_id", None)

    password = changes.pop("password", None)
    if password:
        user.password_hash = get_password_hash(password)
    for field, value in changes.items():
        setattr(user, field, value)

    db.commit()
    db.refresh(user)
    logger.info(f"User {user.id} updated by {current_user.user_id}: {sorted(changes)}")
    return user_to_dict(user)


@router.delete("/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("30/minute")
def delete_user(request: Request, user_id: PositiveIntId, db: DbSession, current_user: RequireManagement):
    user = _get_user_or_404(db, user_id)
    forbid_unless(StaffPolicy.delete(current_user, user))
    if user.id == current_user.user_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="You cannot remove your own account.")

    db.delete(user)
    db.commit()
    logger.info(f"User {user_id} removed by {current_user.user_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)
