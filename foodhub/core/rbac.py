"""Role-Based Access Control (RBAC) utilities.

``role_and_permission`` is the dependency form of the role/permission gate:
roles are ``|``-separated and any one of them matches, permissions are
``|``-separated and all of them are required. Super admins bypass both.
"""

from enum import Enum
from typing import Annotated, List, Optional

from fastapi import Depends, HTTPException, Request, status

from foodhub.core.security import decode_access_token
from foodhub.db.session import DbSession


class UserRole(str, Enum):
    """User roles for RBAC."""

    SUPER_ADMIN = "SUPER_ADMIN"
    RESTAURANT_OWNER = "RESTAURANT_OWNER"
    BRANCH_MANAGER = "BRANCH_MANAGER"
    CASHIER = "CASHIER"
    KITCHEN_STAFF = "KITCHEN_STAFF"
    DELIVERY_MANAGER = "DELIVERY_MANAGER"
    CUSTOMER_SERVICE = "CUSTOMER_SERVICE"
    CUSTOMER = "CUSTOMER"


BRANCH_STAFF_ROLES = frozenset({
    UserRole.CASHIER,
    UserRole.KITCHEN_STAFF,
    UserRole.DELIVERY_MANAGER,
    UserRole.CUSTOMER_SERVICE,
})

INTERNAL_STAFF_ROLES = frozenset({
    UserRole.RESTAURANT_OWNER,
    UserRole.BRANCH_MANAGER,
    *BRANCH_STAFF_ROLES,
})

UNAUTHENTICATED_MESSAGE = "Unauthenticated."
UNAUTHORIZED_MESSAGE = "This action is unauthorized."


class TokenData:
    """The authenticated principal for a request.

    Attributes:
        user_id: The user's database ID (``id`` is an alias).
        email: The user's email address.
        role: The user's role.
        restaurant_id: Restaurant the user belongs to, if any.
        restaurant_branch_id: Branch the user belongs to, if any.
        permissions: Explicit permission strings granted to the user.
        name: Display name (defaults to the email prefix).
        status: Account status; only ``active`` users pass policy checks.
    """

    def __init__(self, user_id: int, email: str, role: UserRole,
                 restaurant_id: Optional[int] = None,
                 restaurant_branch_id: Optional[int] = None,
                 permissions: Optional[List[str]] = None,
                 name: str = "", status: str = "active"):
        self.user_id = user_id
        self.id = user_id
        self.email = email
        self.role = role
        self.restaurant_id = restaurant_id
        self.restaurant_branch_id = restaurant_branch_id
        self.permissions = list(permissions or [])
        self.name = name or email.split("@")[0]
        self.status = status

    @classmethod
    def from_user(cls, user) -> "TokenData":
        return cls(
            user_id=user.id,
            email=user.email,
            role=UserRole(user.role),
            restaurant_id=user.restaurant_id,
            restaurant_branch_id=user.restaurant_branch_id,
            permissions=user.permissions,
            name=user.name or "",
            status=user.status,
        )

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def has_role(self, role) -> bool:
        return self.role == UserRole(role)

    def has_permission(self, permission: str) -> bool:
        return permission in self.permissions

    def is_super_admin(self) -> bool:
        return self.role == UserRole.SUPER_ADMIN

    def is_restaurant_owner(self) -> bool:
        return self.role in (UserRole.RESTAURANT_OWNER, UserRole.SUPER_ADMIN)


def extract_token(request: Request) -> Optional[str]:
    """Bearer header first, then the access_token cookie."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header.split(" ", 1)[1].strip()
        if token:
            return token
    return request.cookies.get("access_token")


def token_payload(request: Request) -> Optional[dict]:
    """Decoded claims of the request's token, or None."""
    token = extract_token(request)
    if not token:
        return None
    return decode_access_token(token)


async def get_current_user(request: Request, db: DbSession) -> TokenData:
    """Resolve the authenticated user from the JWT and the users table."""
    payload = token_payload(request)
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=UNAUTHENTICATED_MESSAGE,
            headers={"WWW-Authenticate": "Bearer"},
        )

    user_id = payload.get("sub")
    if user_id is None or payload.get("role") is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid token payload",
        )

    try:
        UserRole(payload["role"])
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid role in token",
        )

    from foodhub.models.user import User

    user = db.get(User, int(user_id))
    if user is None or not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User account is disabled",
        )

    current = TokenData.from_user(user)
    request.state.user = current
    return current


CurrentUser = Annotated[TokenData, Depends(get_current_user)]


async def get_optional_current_user(request: Request, db: DbSession) -> Optional[TokenData]:
    """Get the current user if a valid token is provided, otherwise return None."""
    if token_payload(request) is None:
        return None
    try:
        return await get_current_user(request, db)
    except HTTPException:
        return None


OptionalCurrentUser = Annotated[Optional[TokenData], Depends(get_optional_current_user)]


def _split(value: str) -> List[str]:
    return [part.strip() for part in value.split("|") if part.strip()]


def role_and_permission(roles: str = "", permissions: str = ""):
    """Dependency factory gating a route on roles and permissions."""
    required_roles = {UserRole(r) for r in _split(roles)}
    required_permissions = _split(permissions)

    async def checker(request: Request, current_user: CurrentUser) -> TokenData:
        if current_user.is_super_admin():
            return current_user

        if required_roles and current_user.role not in required_roles:
            _deny(request, current_user, "role", roles)

        if required_permissions and not all(
            current_user.has_permission(p) for p in required_permissions
        ):
            _deny(request, current_user, "permission", permissions)

        return current_user

    return checker


def _deny(request: Request, user: TokenData, check: str, required: str):
    from foodhub.services.security_logging_service import security_logger

    security_logger.log_authorization_failure(
        resource=request.url.path,
        action=request.method,
        context={"user_id": user.user_id, "role": user.role.value, check: required},
        request=request,
    )
    raise HTTPException(
        status_code=status.HTTP_403_FORBIDDEN,
        detail=UNAUTHORIZED_MESSAGE,
    )


def forbid_unless(allowed: bool) -> None:
    """Raise the standard 403 when a policy check fails."""
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=UNAUTHORIZED_MESSAGE,
        )


RequireSuperAdmin = Annotated[TokenData, Depends(role_and_permission("SUPER_ADMIN"))]
RequireRestaurantAdmin = Annotated[
    TokenData, Depends(role_and_permission("SUPER_ADMIN|RESTAURANT_OWNER"))
]
RequireManagement = Annotated[
    TokenData, Depends(role_and_permission("SUPER_ADMIN|RESTAURANT_OWNER|BRANCH_MANAGER"))
]
RequireDriverManagement = Annotated[
    TokenData, Depends(role_and_permission("SUPER_ADMIN|RESTAURANT_OWNER|DELIVERY_MANAGER"))
]
RequireDeliveryOps = Annotated[
    TokenData, Depends(role_and_permission("SUPER_ADMIN|DELIVERY_MANAGER"))
]
