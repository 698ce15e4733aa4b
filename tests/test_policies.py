"""Tests for the role gate and per-model policies."""

from types import SimpleNamespace

import pytest
from fastapi import HTTPException
from starlette.requests import Request

from foodhub.core.policies import (
    BranchPolicy,
    ChannelPolicy,
    CustomerPolicy,
    DriverPolicy,
    LoyaltyProgramPolicy,
    MenuPolicy,
    OrderPolicy,
    RestaurantPolicy,
    RewardsPolicy,
    StaffPolicy,
)
from foodhub.core.rbac import TokenData, UserRole, forbid_unless, role_and_permission


def principal(role, restaurant_id=1, branch_id=10, permissions=None, status="active", user_id=5):
    return TokenData(user_id, "staff@example.com", role, restaurant_id, branch_id, permissions, status=status)


def make_request(path="/api/orders"):
    return Request({"type": "http", "method": "GET", "path": path, "headers": [],
                    "query_string": b"", "client": ("10.1.1.1", 1234)})


ORDER = SimpleNamespace(restaurant_id=1, restaurant_branch_id=10)
FOREIGN_ORDER = SimpleNamespace(restaurant_id=2, restaurant_branch_id=20)


# ============== Role gate ==============

class TestRoleAndPermission:
    @pytest.mark.asyncio
    async def test_matching_role_passes(self):
        checker = role_and_permission("SUPER_ADMIN|RESTAURANT_OWNER")
        user = principal(UserRole.RESTAURANT_OWNER)
        assert await checker(make_request(), user) is user

    @pytest.mark.asyncio
    async def test_other_role_denied(self):
        checker = role_and_permission("SUPER_ADMIN|RESTAURANT_OWNER")
        with pytest.raises(HTTPException) as exc:
            await checker(make_request(), principal(UserRole.CASHIER))
        assert exc.value.status_code == 403
        assert exc.value.detail == "This action is unauthorized."

    @pytest.mark.asyncio
    async def test_all_permissions_required(self):
        checker = role_and_permission(permissions="orders:refund|orders:void")
        with pytest.raises(HTTPException):
            await checker(make_request(), principal(UserRole.CASHIER, permissions=["orders:refund"]))
        user = principal(UserRole.CASHIER, permissions=["orders:refund", "orders:void"])
        assert await checker(make_request(), user) is user

    @pytest.mark.asyncio
    async def test_super_admin_bypasses(self):
        checker = role_and_permission("CASHIER", "orders:void")
        admin = principal(UserRole.SUPER_ADMIN, None, None)
        assert await checker(make_request(), admin) is admin

    def test_unknown_role_rejected_at_definition(self):
        with pytest.raises(ValueError):
            role_and_permission("WIZARD")

    def test_forbid_unless(self):
        forbid_unless(True)
        with pytest.raises(HTTPException) as exc:
            forbid_unless(False)
        assert exc.value.status_code == 403


class TestTokenData:
    def test_name_defaults_to_email_prefix(self):
        assert principal(UserRole.CASHIER).name == "staff"

    def test_owner_helpers(self):
        assert principal(UserRole.SUPER_ADMIN).is_restaurant_owner()
        assert principal(UserRole.RESTAURANT_OWNER).has_role("RESTAURANT_OWNER")
        assert not principal(UserRole.CASHIER).is_restaurant_owner()


# ============== Policies ==============

class TestCommonRules:
    @pytest.mark.parametrize("check", [
        lambda u: OrderPolicy.view_any(u),
        lambda u: RestaurantPolicy.view_any(u),
        lambda u: CustomerPolicy.view_any(u),
        lambda u: DriverPolicy.view_any(u),
        lambda u: LoyaltyProgramPolicy.view_any(u),
    ])
    def test_anonymous_and_inactive_refused(self, check):
        assert not check(None)
        assert not check(principal(UserRole.SUPER_ADMIN, status="suspended"))

    def test_missing_record_refused(self):
        admin = principal(UserRole.SUPER_ADMIN)
        assert not OrderPolicy.view(admin, None)
        assert not BranchPolicy.update(admin, None)
        assert not LoyaltyProgramPolicy.delete(admin, None)


class TestOrderPolicy:
    def test_owner_scoped_to_restaurant(self):
        owner = principal(UserRole.RESTAURANT_OWNER)
        assert OrderPolicy.view(owner, ORDER)
        assert not OrderPolicy.view(owner, FOREIGN_ORDER)

    def test_branch_staff_scoped_to_branch(self):
        for role in (UserRole.CASHIER, UserRole.KITCHEN_STAFF, UserRole.BRANCH_MANAGER):
            assert OrderPolicy.view(principal(role), ORDER)
            assert not OrderPolicy.view(principal(role), FOREIGN_ORDER)

    def test_create(self):
        assert OrderPolicy.create(principal(UserRole.CUSTOMER_SERVICE))
        assert not OrderPolicy.create(principal(UserRole.CASHIER))

    def test_customer_service_deletes_anywhere(self):
        assert OrderPolicy.delete(principal(UserRole.CUSTOMER_SERVICE), FOREIGN_ORDER)
        assert not OrderPolicy.delete(principal(UserRole.CASHIER), ORDER)

    def test_customers_cannot_list(self):
        assert not OrderPolicy.view_any(principal(UserRole.CUSTOMER))


class TestCataloguePolicies:
    def test_only_super_admin_creates_restaurants(self):
        assert RestaurantPolicy.create(principal(UserRole.SUPER_ADMIN))
        assert not RestaurantPolicy.create(principal(UserRole.RESTAURANT_OWNER))

    def test_owner_updates_own_restaurant(self):
        owner = principal(UserRole.RESTAURANT_OWNER)
        assert RestaurantPolicy.update(owner, SimpleNamespace(id=1))
        assert not RestaurantPolicy.update(owner, SimpleNamespace(id=2))

    def test_branch_manager_updates_own_branch_only(self):
        manager = principal(UserRole.BRANCH_MANAGER)
        assert BranchPolicy.update(manager, SimpleNamespace(id=10, restaurant_id=1))
        assert not BranchPolicy.update(manager, SimpleNamespace(id=11, restaurant_id=1))
        assert not BranchPolicy.delete(manager, SimpleNamespace(id=10, restaurant_id=1))

    def test_menu_manage(self):
        assert MenuPolicy.manage(principal(UserRole.BRANCH_MANAGER), 1)
        assert not MenuPolicy.manage(principal(UserRole.BRANCH_MANAGER), 2)
        assert not MenuPolicy.manage(principal(UserRole.CASHIER), 1)
        assert not MenuPolicy.manage(principal(UserRole.RESTAURANT_OWNER, restaurant_id=None), None)


class TestPeoplePolicies:
    def test_customer_policy(self):
        customer = SimpleNamespace(id=1)
        assert CustomerPolicy.view_any(principal(UserRole.CASHIER))
        assert not CustomerPolicy.update(principal(UserRole.CASHIER), customer)
        assert CustomerPolicy.create(principal(UserRole.CUSTOMER_SERVICE))
        assert not CustomerPolicy.create(principal(UserRole.RESTAURANT_OWNER))
        assert not CustomerPolicy.delete(principal(UserRole.RESTAURANT_OWNER), customer)

    def test_driver_policy(self):
        driver = SimpleNamespace(id=1)
        assert DriverPolicy.view_any(principal(UserRole.CUSTOMER_SERVICE))
        assert not DriverPolicy.update(principal(UserRole.CASHIER), driver)
        assert DriverPolicy.delete(principal(UserRole.DELIVERY_MANAGER), driver)
        assert not DriverPolicy.view_any(principal(UserRole.KITCHEN_STAFF))

    def test_staff_policy(self):
        owner = principal(UserRole.RESTAURANT_OWNER)
        manager = principal(UserRole.BRANCH_MANAGER)
        colleague = SimpleNamespace(restaurant_id=1, restaurant_branch_id=10)
        elsewhere = SimpleNamespace(restaurant_id=1, restaurant_branch_id=11)
        assert StaffPolicy.update(owner, elsewhere)
        assert StaffPolicy.update(manager, colleague)
        assert not StaffPolicy.update(manager, elsewhere)
        assert not StaffPolicy.view_any(principal(UserRole.BRANCH_MANAGER, branch_id=None))
        assert not StaffPolicy.create(principal(UserRole.CASHIER))


class TestLoyaltyProgramPolicy:
    def test_permissions_widen_read_access(self):
        assert not LoyaltyProgramPolicy.view_any(principal(UserRole.CASHIER))
        assert LoyaltyProgramPolicy.view_any(principal(UserRole.CASHIER, permissions=["loyalty-program:manage"]))

    def test_customer_service_updates_but_cannot_create(self):
        agent = principal(UserRole.CUSTOMER_SERVICE)
        program = SimpleNamespace(id=1)
        assert LoyaltyProgramPolicy.update(agent, program)
        assert not LoyaltyProgramPolicy.create(agent)

    def test_delete_is_super_admin_only(self):
        program = SimpleNamespace(id=1)
        assert LoyaltyProgramPolicy.delete(principal(UserRole.SUPER_ADMIN), program)
        assert not LoyaltyProgramPolicy.delete(principal(UserRole.RESTAURANT_OWNER), program)


class TestChannelPolicy:
    def test_private_channels_match_user_id(self):
        user = principal(UserRole.CUSTOMER, None, None, user_id=5)
        assert ChannelPolicy.join(user, "customer.5")
        assert ChannelPolicy.join(user, "driver.5")
        assert not ChannelPolicy.join(user, "customer.6")
        assert not ChannelPolicy.join(user, "driver.6")

    def test_restaurant_channel_any_branch_staff(self):
        assert ChannelPolicy.join(principal(UserRole.CASHIER), "restaurant.10")
        assert not ChannelPolicy.join(principal(UserRole.CASHIER), "restaurant.11")
        assert not ChannelPolicy.join(principal(UserRole.CUSTOMER, None, None), "restaurant.10")

    def test_kitchen_channel_roles(self):
        for role in (UserRole.KITCHEN_STAFF, UserRole.RESTAURANT_OWNER, UserRole.BRANCH_MANAGER):
            assert ChannelPolicy.join(principal(role), "kitchen.10")
            assert not ChannelPolicy.join(principal(role), "kitchen.11")
        assert not ChannelPolicy.join(principal(UserRole.CASHIER), "kitchen.10")

    def test_super_admin_and_inactive(self):
        assert ChannelPolicy.join(principal(UserRole.SUPER_ADMIN, None, None), "kitchen.99")
        assert not ChannelPolicy.join(principal(UserRole.SUPER_ADMIN, status="suspended"), "kitchen.10")
        assert not ChannelPolicy.join(None, "customer.5")

    def test_malformed_channels(self):
        admin = principal(UserRole.SUPER_ADMIN)
        for channel in ("default", "order.1", "kitchen.", "kitchen.abc", "customer"):
            assert not ChannelPolicy.join(admin, channel)


class TestRewardsPolicy:
    ADA = SimpleNamespace(id=3, email="Ada@Example.com")

    def test_customer_acts_for_own_record(self):
        user = TokenData(9, "ada@example.com", UserRole.CUSTOMER, None, None)
        assert RewardsPolicy.act_for(user, self.ADA)
        other = TokenData(9, "grace@example.com", UserRole.CUSTOMER, None, None)
        assert not RewardsPolicy.act_for(other, self.ADA)

    def test_front_of_house_staff(self):
        for role in (UserRole.CUSTOMER_SERVICE, UserRole.CASHIER, UserRole.RESTAURANT_OWNER,
                     UserRole.BRANCH_MANAGER, UserRole.SUPER_ADMIN):
            assert RewardsPolicy.act_for(principal(role), self.ADA)
        for role in (UserRole.KITCHEN_STAFF, UserRole.DELIVERY_MANAGER):
            assert not RewardsPolicy.act_for(principal(role), self.ADA)

    def test_inactive_or_missing(self):
        assert not RewardsPolicy.act_for(principal(UserRole.CASHIER, status="suspended"), self.ADA)
        assert not RewardsPolicy.act_for(principal(UserRole.CASHIER), None)

    def test_manage_challenges(self):
        assert RewardsPolicy.manage_challenges(principal(UserRole.BRANCH_MANAGER))
        assert not RewardsPolicy.manage_challenges(principal(UserRole.CUSTOMER_SERVICE))
