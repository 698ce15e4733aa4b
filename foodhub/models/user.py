"""User model."""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column, validates

from foodhub.core.rbac import UserRole
from foodhub.db.base import Base, TimestampMixin
from foodhub.models.validators import validate_list


class User(Base, TimestampMixin):
    """Staff or customer account used for authentication and RBAC."""

    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole),
        default=UserRole.CUSTOMER,
        nullable=False,
    )
    restaurant_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("restaurants.id", ondelete="SET NULL"), nullable=True, index=True
    )
    restaurant_branch_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("restaurant_branches.id", ondelete="SET NULL"), nullable=True, index=True
    )
    permissions: Mapped[List[str]] = mapped_column(JSON, default=list, nullable=False)
    status: Mapped[str] = mapped_column(String(20), default="active", nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Email OTP second factor
    mfa_enabled: Mapped[bool] = mapped_column(default=False, nullable=False)
    mfa_code_hash: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    mfa_code_expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    @validates("permissions")
    def _validate_permissions(self, key, value):
        return validate_list(key, value)

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def has_role(self, role) -> bool:
        return self.role == UserRole(role)

    def has_permission(self, permission: str) -> bool:
        return permission in (self.permissions or [])

    def is_super_admin(self) -> bool:
        return self.role == UserRole.SUPER_ADMIN

    def is_restaurant_owner(self) -> bool:
        return self.role in (UserRole.RESTAURANT_OWNER, UserRole.SUPER_ADMIN)
