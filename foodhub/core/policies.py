"""Per-model authorization policies.

Each policy answers "may this user do X to this record?". Every check
requires an active user; a missing user or record is always refused.
Routes call these after the role gate and turn a False into the standard
403 via ``forbid_unless``.
"""

from typing import Optional

from foodhub.core.rbac import TokenData, UserRole

_ORDER_BRANCH_STAFF = (
    UserRole.CASHIER,
    UserRole.KITCHEN_STAFF,
    UserRole.DELIVERY_MANAGER,
    UserRole.CUSTOMER_SERVICE,
)


def _active(user: Optional[TokenData]) -> bool:
    return user is not None and user.is_active


def _has_any_role(user: TokenData, *roles: UserRole) -> bool:
    return user.is_super_admin() or user.role in roles


class OrderPolicy:
    @staticmethod
    def view_any(user: Optional[TokenData]) -> bool:
        if not _active(user):
            return False
        return _has_any_role(
            user, UserRole.RESTAURANT_OWNER, UserRole.BRANCH_MANAGER, *_ORDER_BRANCH_STAFF
        )

    @staticmethod
    def view(user: Optional[TokenData], order) -> bool:
        """Owners see their restaurant's orders; everyone else sees their branch's."""
        if not _active(user) or order is None:
            return False
        if user.is_super_admin():
            return True
        if user.role == UserRole.RESTAURANT_OWNER and user.restaurant_id == order.restaurant_id:
            return True
        if user.role == UserRole.BRANCH_MANAGER and user.restaurant_branch_id == order.restaurant_branch_id:
            return True
        return user.role in _ORDER_BRANCH_STAFF and user.restaurant_branch_id == order.restaurant_branch_id

    update = view

    @staticmethod
    def create(user: Optional[TokenData]) -> bool:
        if not _active(user):
            return False
        return _has_any_role(
            user, UserRole.RESTAURANT_OWNER, UserRole.BRANCH_MANAGER, UserRole.CUSTOMER_SERVICE
        )

    @staticmethod
    def delete(user: Optional[TokenData], order) -> bool:
        if not _active(user) or order is None:
            return False
        if user.is_super_admin() or user.role == UserRole.CUSTOMER_SERVICE:
            return True
        if user.role == UserRole.RESTAURANT_OWNER and user.restaurant_id == order.restaurant_id:
            return True
        return user.role == UserRole.BRANCH_MANAGER and user.restaurant_branch_id == order.restaurant_branch_id

    restore = delete
    force_delete = delete


class RestaurantPolicy:
    @staticmethod
    def view_any(user: Optional[TokenData]) -> bool:
        return _active(user)

    @staticmethod
    def view(user: Optional[TokenData], restaurant) -> bool:
        return _active(user) and restaurant is not None

    @staticmethod
    def create(user: Optional[TokenData]) -> bool:
        return _active(user) and user.is_super_admin()

    @staticmethod
    def update(user: Optional[TokenData], restaurant) -> bool:
        if not _active(user) or restaurant is None:
            return False
        return user.is_super_admin() or (
            user.role == UserRole.RESTAURANT_OWNER and user.restaurant_id == restaurant.id
        )

    @staticmethod
    def delete(user: Optional[TokenData], restaurant) -> bool:
        return _active(user) and restaurant is not None and user.is_super_admin()


class BranchPolicy:
    @staticmethod
    def view(user: Optional[TokenData], branch) -> bool:
        return _active(user) and branch is not None

    @staticmethod
    def create(user: Optional[TokenData], restaurant_id: int) -> bool:
        if not _active(user):
            return False
        return user.is_super_admin() or (
            user.role == UserRole.RESTAURANT_OWNER and user.restaurant_id == restaurant_id
        )

    @staticmethod
    def update(user: Optional[TokenData], branch) -> bool:
        if not _active(user) or branch is None:
            return False
        if user.is_super_admin():
            return True
        if user.role == UserRole.RESTAURANT_OWNER and user.restaurant_id == branch.restaurant_id:
            return True
        return user.role == UserRole.BRANCH_MANAGER and user.restaurant_branch_id == branch.id

    @staticmethod
    def delete(user: Optional[TokenData], branch) -> bool:
        if not _active(user) or branch is None:
            return False
        return user.is_super_admin() or (
            user.role == UserRole.RESTAURANT_OWNER and user.restaurant_id == branch.restaurant_id
        )


class MenuPolicy:
    """Menu categories, items and branch overrides belong to one restaurant."""

    @staticmethod
    def manage(user: Optional[TokenData], restaurant_id: Optional[int]) -> bool:
        if not _active(user):
            return False
        if user.is_super_admin():
            return True
        return (
            user.role in (UserRole.RESTAURANT_OWNER, UserRole.BRANCH_MANAGER)
            and user.restaurant_id is not None
            and user.restaurant_id == restaurant_id
        )


class DriverPolicy:
    @staticmethod
    def view_any(user: Optional[TokenData]) -> bool:
        if not _active(user):
            return False
        return _has_any_role(
            user, UserRole.DELIVERY_MANAGER, UserRole.RESTAURANT_OWNER,
            UserRole.BRANCH_MANAGER, UserRole.CASHIER, UserRole.CUSTOMER_SERVICE,
        )

    @staticmethod
    def view(user: Optional[TokenData], driver) -> bool:
        return driver is not None and DriverPolicy.view_any(user)

    @staticmethod
    def create(user: Optional[TokenData]) -> bool:
        if not _active(user):
            return False
        return _has_any_role(
            user, UserRole.RESTAURANT_OWNER, UserRole.BRANCH_MANAGER, UserRole.DELIVERY_MANAGER
        )

    @staticmethod
    def update(user: Optional[TokenData], driver) -> bool:
        if not _active(user) or driver is None:
            return False
        return _has_any_role(
            user, UserRole.DELIVERY_MANAGER, UserRole.RESTAURANT_OWNER, UserRole.BRANCH_MANAGER
        )

    @staticmethod
    def delete(user: Optional[TokenData], driver) -> bool:
        if not _active(user) or driver is None:
            return False
        return _has_any_role(
            user, UserRole.RESTAURANT_OWNER, UserRole.BRANCH_MANAGER, UserRole.DELIVERY_MANAGER
        )


class CustomerPolicy:
    _VIEWERS = (
        UserRole.CUSTOMER_SERVICE,
        UserRole.CASHIER,
        UserRole.RESTAURANT_OWNER,
        UserRole.BRANCH_MANAGER,
    )

    @staticmethod
    def view_any(user: Optional[TokenData]) -> bool:
        return _active(user) and _has_any_role(user, *CustomerPolicy._VIEWERS)

    @staticmethod
    def view(user: Optional[TokenData], customer) -> bool:
        return customer is not None and CustomerPolicy.view_any(user)

    @staticmethod
    def create(user: Optional[TokenData]) -> bool:
        return _active(user) and _has_any_role(user, UserRole.CUSTOMER_SERVICE)

    @staticmethod
    def update(user: Optional[TokenData], customer) -> bool:
        if not _active(user) or customer is None:
            return False
        return _has_any_role(
            user, UserRole.CUSTOMER_SERVICE, UserRole.RESTAURANT_OWNER, UserRole.BRANCH_MANAGER
        )

    @staticmethod
    def delete(user: Optional[TokenData], customer) -> bool:
        if not _active(user) or customer is None:
            return False
        return _has_any_role(user, UserRole.CUSTOMER_SERVICE)


class LoyaltyProgramPolicy:
    """Explicit ``loyalty-program:view`` / ``:manage`` permissions widen read access."""

    @staticmethod
    def view_any(user: Optional[TokenData]) -> bool:
        if not _active(user):
            return False
        if user.has_permission("loyalty-program:view") or user.has_permission("loyalty-program:manage"):
            return True
        return _has_any_role(user, UserRole.RESTAURANT_OWNER, UserRole.CUSTOMER_SERVICE)

    @staticmethod
    def view(user: Optional[TokenData], program) -> bool:
        return program is not None and LoyaltyProgramPolicy.view_any(user)

    @staticmethod
    def create(user: Optional[TokenData]) -> bool:
        return _active(user) and _has_any_role(user, UserRole.RESTAURANT_OWNER)

    @staticmethod
    def update(user: Optional[TokenData], program) -> bool:
        if not _active(user) or program is None:
            return False
        return _has_any_role(user, UserRole.RESTAURANT_OWNER, UserRole.CUSTOMER_SERVICE)

    @staticmethod
    def delete(user: Optional[TokenData], program) -> bool:
        return _active(user) and program is not None and user.is_super_admin()


class StaffPolicy:
    """Owners manage their restaurant's staff, managers their branch's."""

    @staticmethod
    def view_any(user: Optional[TokenData]) -> bool:
        if not _active(user):
            return False
        if user.is_super_admin():
            return True
        if user.role == UserRole.RESTAURANT_OWNER:
            return user.restaurant_id is not None
        return user.role == UserRole.BRANCH_MANAGER and user.restaurant_branch_id is not None

    @staticmethod
    def view(user: Optional[TokenData], staff) -> bool:
        if not _active(user) or staff is None:
            return False
        if user.is_super_admin():
            return True
        if user.role == UserRole.RESTAURANT_OWNER:
            return user.restaurant_id == staff.restaurant_id
        return user.role == UserRole.BRANCH_MANAGER and user.restaurant_branch_id == staff.restaurant_branch_id

    update = view
    delete = view

    @staticmethod
    def create(user: Optional[TokenData]) -> bool:
        return _active(user) and _has_any_role(
            user, UserRole.RESTAURANT_OWNER, UserRole.BRANCH_MANAGER
        )


class ChannelPolicy:
    """Who may subscribe to a broadcast channel named ``<family>.<id>``."""

    KITCHEN_ROLES = (UserRole.KITCHEN_STAFF, UserRole.RESTAURANT_OWNER, UserRole.BRANCH_MANAGER)

    @staticmethod
    def join(user: Optional[TokenData], channel: str) -> bool:
        if not _active(user):
            return False
        family, _, key = channel.partition(".")
        if family not in ("customer", "driver", "restaurant", "kitchen") or not key.isdigit():
            return False
        if user.is_super_admin():
            return True

        target = int(key)
        if family in ("customer", "driver"):
            return user.user_id == target
        if family == "restaurant":
            return user.restaurant_branch_id == target
        return user.restaurant_branch_id == target and user.role in ChannelPolicy.KITCHEN_ROLES


can_join_channel = ChannelPolicy.join


class RewardsPolicy:
    """Stamp cards, spins, challenges and feedback belong to one customer.

    A customer user acts on the customer record sharing their email; front-of-house
    staff act on behalf of any customer.
    """

    STAFF = (
        UserRole.CUSTOMER_SERVICE,
        UserRole.CASHIER,
        UserRole.RESTAURANT_OWNER,
        UserRole.BRANCH_MANAGER,
    )

    @staticmethod
    def act_for(user: Optional[TokenData], customer) -> bool:
        if not _active(user) or customer is None:
            return False
        if _has_any_role(user, *RewardsPolicy.STAFF):
            return True
        return user.role == UserRole.CUSTOMER and customer.email.lower() == user.email.lower()

    @staticmethod
    def manage_challenges(user: Optional[TokenData]) -> bool:
        return _active(user) and _has_any_role(user, UserRole.RESTAURANT_OWNER, UserRole.BRANCH_MANAGER)
