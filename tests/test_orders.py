"""Tests for order creation, listing, status transitions and deletion."""

from decimal import Decimal

import pytest

from foodhub.core.rbac import UserRole
from foodhub.models.loyalty import CustomerLoyaltyPoint, LoyaltyPointsHistory, LoyaltyProgram
from foodhub.models.order import Order, OrderStatus, OrderStatusHistory, PaymentStatus
from foodhub.models.security_log import SecurityLog
from foodhub.services.order_service import InvalidTransitionError, OrderService


def order_payload(customer, branch, **overrides):
    payload = {
        "customer_id": customer.id,
        "restaurant_id": branch.restaurant_id,
        "restaurant_branch_id": branch.id,
        "type": "delivery",
        "payment_method": "card",
        "subtotal": "25.00",
        "delivery_address": "42 Elm Street",
    }
    payload.update(overrides)
    return payload


# ============== Creation ==============

class TestCreateOrder:
    def test_create_order(self, client, owner_headers, customer, branch, menu_item):
        response = client.post(
            "/api/orders",
            json=order_payload(customer, branch, items=[{"menu_item_id": menu_item.id, "quantity": 2}]),
            headers=owner_headers,
        )
        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["order_number"].startswith("ORD-")
        assert data["items"][0]["item_name"] == "Fish Tacos"
        assert data["items"][0]["total_price"] == 25.0
        assert data["status_history"][0]["status"] == "pending"

    def test_totals_are_priced_on_the_server(self, client, owner_headers, customer, branch, menu_item):
        response = client.post(
            "/api/orders",
            json=order_payload(
                customer, branch, subtotal="1.00", total_amount="1.00", tax_amount="0",
                items=[{"menu_item_id": menu_item.id, "quantity": 2}],
            ),
            headers=owner_headers,
        )
        assert response.status_code == 201
        data = response.json()
        assert data["subtotal"] == 25.0
        assert data["delivery_fee"] == 3.5
        assert data["tax_amount"] == 4.28
        assert data["total_amount"] == 32.78

    def test_explicit_order_number_kept(self, client, owner_headers, customer, branch):
        response = client.post(
            "/api/orders",
            json=order_payload(customer, branch, order_number="ORD-CUSTOM-1"),
            headers=owner_headers,
        )
        assert response.status_code == 201
        assert response.json()["order_number"] == "ORD-CUSTOM-1"

    def test_duplicate_order_number(self, client, owner_headers, customer, branch, order):
        response = client.post(
            "/api/orders",
            json=order_payload(customer, branch, order_number=order.order_number),
            headers=owner_headers,
        )
        assert response.status_code == 422

    def test_branch_must_belong_to_restaurant(self, client, owner_headers, customer, branch, other_restaurant):
        response = client.post(
            "/api/orders",
            json=order_payload(customer, branch, restaurant_id=other_restaurant.id),
            headers=owner_headers,
        )
        assert response.status_code == 422
        assert "branch" in response.json()["message"]

    def test_unknown_customer(self, client, owner_headers, customer, branch):
        response = client.post(
            "/api/orders",
            json=order_payload(customer, branch, customer_id=9999),
            headers=owner_headers,
        )
        assert response.status_code == 422

    def test_missing_type_is_validation_error(self, client, owner_headers, customer, branch):
        payload = order_payload(customer, branch)
        del payload["type"]
        response = client.post("/api/orders", json=payload, headers=owner_headers)
        assert response.status_code == 422

    def test_cashier_cannot_create(self, client, cashier_headers, customer, branch):
        response = client.post("/api/orders", json=order_payload(customer, branch), headers=cashier_headers)
        assert response.status_code == 403
        assert response.json()["message"] == "This action is unauthorized."

    def test_requires_authentication(self, client, customer, branch):
        response = client.post("/api/orders", json=order_payload(customer, branch))
        assert response.status_code == 401

    def test_creation_is_audited(self, client, db_session, owner_headers, customer, branch):
        response = client.post("/api/orders", json=order_payload(customer, branch), headers=owner_headers)
        log = db_session.query(SecurityLog).filter(SecurityLog.event_type == "order_created").first()
        assert log is not None
        assert log.target_type == "order"
        assert log.target_id == str(response.json()["id"])


# ============== Loyalty on creation ==============

class TestOrderLoyalty:
    @pytest.fixture
    def account(self, db_session, restaurant, customer):
        program = LoyaltyProgram(restaurant_id=restaurant.id, name="Harbor Points", points_per_dollar=Decimal("1"))
        db_session.add(program)
        db_session.flush()
        account = CustomerLoyaltyPoint(
            customer_id=customer.id,
            loyalty_program_id=program.id,
            current_points=Decimal("50"),
            total_points_earned=Decimal("50"),
        )
        db_session.add(account)
        db_session.commit()
        db_session.refresh(account)
        return account

    def test_points_earned_on_order(self, client, db_session, owner_headers, customer, branch, account):
        response = client.post("/api/orders", json=order_payload(customer, branch), headers=owner_headers)
        assert response.status_code == 201
        assert response.json()["loyalty_points_earned"] == 25.0
        db_session.refresh(account)
        assert account.current_points == Decimal("75.00")

    def test_redemption_deducts_points(self, client, db_session, owner_headers, customer, branch, account):
        response = client.post(
            "/api/orders",
            json=order_payload(customer, branch, loyalty_points_used="20"),
            headers=owner_headers,
        )
        assert response.status_code == 201
        assert response.json()["loyalty_points_used"] == 20.0
        db_session.refresh(account)
        assert account.current_points == Decimal("55.00")
        assert account.total_points_redeemed == Decimal("20.00")
        kinds = {row.transaction_type for row in db_session.query(LoyaltyPointsHistory).all()}
        assert kinds == {"earned", "redeemed"}

    def test_insufficient_points(self, client, db_session, owner_headers, customer, branch, account):
        response = client.post(
            "/api/orders",
            json=order_payload(customer, branch, loyalty_points_used="500"),
            headers=owner_headers,
        )
        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert body["message"] == "Insufficient loyalty points for redemption."
        assert "loyalty_points_used" in body["errors"]
        assert db_session.query(Order).count() == 0


# ============== Listing and viewing ==============

class TestListOrders:
    def test_owner_sees_restaurant_orders(self, client, owner_headers, order):
        response = client.get("/api/orders", headers=owner_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["items"][0]["order_number"] == order.order_number
        assert body["page"] == 1

    def test_other_restaurant_owner_sees_nothing(self, client, db_session, order, other_restaurant, user_factory,
                                                 auth_headers):
        stranger = user_factory("other.owner@example.com", UserRole.RESTAURANT_OWNER, other_restaurant)
        response = client.get("/api/orders", headers=auth_headers(stranger))
        assert response.status_code == 200
        assert response.json()["total"] == 0

    def test_filter_by_status(self, client, owner_headers, customer, branch, order_factory):
        order_factory(customer, branch, number="ORD-A", status=OrderStatus.PENDING)
        order_factory(customer, branch, number="ORD-B", status=OrderStatus.DELIVERED)
        response = client.get("/api/orders?status=delivered", headers=owner_headers)
        assert [o["order_number"] for o in response.json()["items"]] == ["ORD-B"]

    def test_pagination(self, client, owner_headers, customer, branch, order_factory):
        for i in range(3):
            order_factory(customer, branch, number=f"ORD-P{i}")
        body = client.get("/api/orders?per_page=2&page=2", headers=owner_headers).json()
        assert body["total"] == 3
        assert body["last_page"] == 2
        assert len(body["items"]) == 1

    def test_get_order(self, client, cashier_headers, order):
        response = client.get(f"/api/orders/{order.id}", headers=cashier_headers)
        assert response.status_code == 200
        assert response.json()["id"] == order.id

    def test_get_missing_order(self, client, owner_headers):
        response = client.get("/api/orders/9999", headers=owner_headers)
        assert response.status_code == 404
        assert response.json()["message"] == "Order not found"

    def test_cashier_of_other_branch_forbidden(self, client, db_session, order, restaurant, user_factory,
                                               auth_headers):
        from foodhub.models.restaurant import RestaurantBranch

        uptown = RestaurantBranch(restaurant_id=restaurant.id, name="Uptown", slug="uptown")
        db_session.add(uptown)
        db_session.commit()
        cashier = user_factory("uptown.cashier@example.com", UserRole.CASHIER, restaurant, uptown)
        response = client.get(f"/api/orders/{order.id}", headers=auth_headers(cashier))
        assert response.status_code == 403


# ============== Status transitions ==============

class TestOrderPredicates:
    def test_status_predicates(self, order):
        assert order.is_confirmed()
        assert not order.is_pending()
        order.status = OrderStatus.CANCELLED
        assert order.is_cancelled()
        assert not order.is_completed()

    def test_paid(self, order):
        assert not order.is_paid()
        order.payment_status = PaymentStatus.PAID
        assert order.is_paid()

    def test_terminal_status_is_final(self, order):
        order.status = OrderStatus.COMPLETED
        assert not order.can_transition_to(OrderStatus.CANCELLED)
        assert order.can_transition_to(OrderStatus.COMPLETED)


class TestOrderStatus:
    def test_forward_transition(self, client, db_session, manager_headers, order):
        response = client.put(f"/api/orders/{order.id}", json={"status": "preparing"}, headers=manager_headers)
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "preparing"
        assert data["status_history"][-1]["status"] == "preparing"

    def test_delivered_stamps_time(self, client, manager_headers, order):
        response = client.put(f"/api/orders/{order.id}", json={"status": "delivered"}, headers=manager_headers)
        assert response.status_code == 200
        assert response.json()["delivered_at"] is not None

    def test_backward_transition_rejected(self, client, db_session, manager_headers, order):
        response = client.put(f"/api/orders/{order.id}", json={"status": "pending"}, headers=manager_headers)
        assert response.status_code == 422
        db_session.refresh(order)
        assert order.status == OrderStatus.CONFIRMED

    def test_cancel_with_reason(self, client, manager_headers, order):
        response = client.put(
            f"/api/orders/{order.id}",
            json={"status": "cancelled", "cancellation_reason": "Customer changed their mind"},
            headers=manager_headers,
        )
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "cancelled"
        assert data["cancelled_at"] is not None
        assert data["status_history"][-1]["notes"] == "Customer changed their mind"

    def test_terminal_status_is_final(self, client, customer, branch, manager_headers, order_factory):
        done = order_factory(customer, branch, number="ORD-DONE", status=OrderStatus.COMPLETED)
        response = client.put(f"/api/orders/{done.id}", json={"status": "cancelled"}, headers=manager_headers)
        assert response.status_code == 422

    def test_same_status_is_a_no_op(self, db_session, order):
        assert OrderService(db_session).change_status(order, OrderStatus.CONFIRMED) is False
        assert db_session.query(OrderStatusHistory).count() == 0

    def test_service_raises_invalid_transition(self, db_session, order):
        with pytest.raises(InvalidTransitionError):
            OrderService(db_session).change_status(order, OrderStatus.PENDING)

    def test_non_status_update(self, client, manager_headers, order):
        response = client.put(
            f"/api/orders/{order.id}",
            json={"delivery_notes": "Ring twice"},
            headers=manager_headers,
        )
        assert response.status_code == 200
        assert response.json()["delivery_notes"] == "Ring twice"
        assert response.json()["status"] == "confirmed"


# ============== Deletion ==============

class TestDeleteOrder:
    def test_super_admin_deletes(self, client, db_session, admin_headers, order):
        response = client.delete(f"/api/orders/{order.id}", headers=admin_headers)
        assert response.status_code == 204
        assert db_session.query(Order).count() == 0

    def test_owner_cannot_delete(self, client, owner_headers, order):
        assert client.delete(f"/api/orders/{order.id}", headers=owner_headers).status_code == 403

    def test_delete_missing(self, client, admin_headers):
        assert client.delete("/api/orders/424242", headers=admin_headers).status_code == 404
