"""Tests for broadcast events, the connection manager and the WebSocket endpoint."""

from datetime import datetime
from types import SimpleNamespace

import pytest
from starlette.websockets import WebSocketDisconnect

from foodhub.core.rbac import UserRole
from foodhub.core.security import create_access_token
from foodhub.models.order import OrderItem, OrderStatus
from foodhub.services.delivery_service import DeliveryService
from foodhub.services.events import (
    BroadcastEvent,
    DeliveryStatusChanged,
    DriverLocationUpdated,
    KitchenOrderUpdated,
    NewOrderPlaced,
    OrderStatusUpdated,
    broadcast_event,
)
from foodhub.services.websocket_service import ConnectionManager, ws_manager


class RecordingManager:
    def __init__(self):
        self.sent = []

    async def broadcast(self, message, channel="default"):
        self.sent.append((channel, message))
        return 1


class FakeSocket:
    def __init__(self, fail=False):
        self.fail = fail
        self.accepted = False
        self.closed_with = None
        self.messages = []

    async def accept(self):
        self.accepted = True

    async def close(self, code=1000):
        self.closed_with = code

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("socket gone")
        self.messages.append(message)


@pytest.fixture
def assignment(db_session, order, driver):
    return DeliveryService(db_session).assign_order_to_driver(order)


# ============== Order events ==============

class TestOrderEvents:
    @pytest.mark.asyncio
    async def test_status_update_channels(self, order):
        manager = RecordingManager()
        event = OrderStatusUpdated(order, OrderStatus.CONFIRMED, OrderStatus.PREPARING)
        channels = await event.dispatch(manager)
        assert channels == [f"customer.{order.customer_id}", f"restaurant.{order.restaurant_branch_id}"]
        channel, message = manager.sent[0]
        assert message["event"] == "order.status.updated"
        assert message["data"]["previous_status"] == "confirmed"
        assert message["data"]["new_status"] == "preparing"
        assert message["data"]["version"] == "1.0"
        assert "timestamp" in message["data"]

    @pytest.mark.asyncio
    async def test_status_update_reaches_driver(self, db_session, order, assignment):
        db_session.refresh(order)
        event = OrderStatusUpdated(order, "confirmed", "out_for_delivery")
        assert f"driver.{assignment.driver_id}" in event.broadcast_on()
        assert event.broadcast_with()["driver_id"] == assignment.driver_id

    def test_new_order_payload(self, db_session, order):
        db_session.add(OrderItem(order_id=order.id, item_name="Fish Tacos", quantity=2,
                                 unit_price=12.5, total_price=25))
        db_session.commit()
        db_session.refresh(order)
        event = NewOrderPlaced(order)
        data = event.broadcast_with()
        assert event.broadcast_on()[-1] == f"kitchen.{order.restaurant_branch_id}"
        assert data["customer_name"] == "Ada Lovelace"
        assert data["items_count"] == 1
        assert data["total_amount"] == 28.5
        assert data["order_type"] == "delivery"


class TestKitchenPriority:
    def _order(self, **overrides):
        fields = dict(type="pickup", special_instructions=None, items=[], created_at=datetime(2026, 1, 5, 9, 0))
        fields.update(overrides)
        return SimpleNamespace(**fields)

    def test_base_priority(self):
        assert KitchenOrderUpdated.calculate_priority(self._order()) == 1

    def test_delivery_and_instructions(self):
        order = self._order(type="delivery", special_instructions="No onions")
        assert KitchenOrderUpdated.calculate_priority(order) == 4

    def test_large_order_at_peak_is_capped(self):
        order = self._order(
            type="delivery",
            special_instructions="Extra napkins",
            items=[object()] * 6,
            created_at=datetime(2026, 1, 5, 12, 30),
        )
        assert KitchenOrderUpdated.calculate_priority(order) == 5

    def test_evening_peak(self):
        assert KitchenOrderUpdated.calculate_priority(self._order(created_at=datetime(2026, 1, 5, 19, 0))) == 2

    def test_explicit_priority_wins(self, order):
        event = KitchenOrderUpdated(order, "status_changed", priority=2)
        data = event.broadcast_with()
        assert data["priority"] == 2
        assert data["update_type"] == "status_changed"
        assert data["status"] == "confirmed"


# ============== Delivery events ==============

class TestDeliveryEvents:
    def test_delivered_adds_delivery_time(self, assignment):
        event = DeliveryStatusChanged(assignment, "out_for_delivery", "delivered")
        data = event.broadcast_with()
        assert data["delivery_time"] == event.timestamp
        assert data["driver_name"] == "Sam Rider"
        assert "pickup_time" not in data

    def test_eta_serialized(self, assignment):
        eta = datetime(2026, 1, 5, 12, 30)
        data = DeliveryStatusChanged(assignment, "assigned", "picked_up", eta).broadcast_with()
        assert data["estimated_delivery_time"].startswith("2026-01-05T12:30")
        assert "pickup_time" in data

    def test_location_without_assignment(self, driver):
        event = DriverLocationUpdated(driver, {"latitude": 40.7, "longitude": -74.0})
        assert event.broadcast_on() == [f"driver.{driver.id}"]
        assert event.broadcast_with()["location"]["latitude"] == 40.7

    def test_location_with_assignment(self, assignment, driver):
        event = DriverLocationUpdated(driver, {"latitude": 40.7, "longitude": -74.0}, assignment, eta="soon")
        assert len(event.broadcast_on()) == 3
        data = event.broadcast_with()
        assert data["order_id"] == assignment.order_id
        assert data["eta"] == "soon"


class TestBroadcastEvent:
    @pytest.mark.asyncio
    async def test_failures_are_contained(self):
        class Broken(BroadcastEvent):
            name = "broken"

            def broadcast_on(self):
                raise RuntimeError("no channels")

            def payload(self):
                return {}

        assert await broadcast_event(Broken()) is False

    @pytest.mark.asyncio
    async def test_success(self, order):
        assert await broadcast_event(OrderStatusUpdated(order, "pending", "confirmed")) is True


# ============== Connection manager ==============

class TestConnectionManager:
    @pytest.mark.asyncio
    async def test_connect_and_broadcast(self):
        manager = ConnectionManager()
        socket = FakeSocket()
        assert await manager.connect(socket, "kitchen.1", user_id=3)
        assert socket.accepted
        assert await manager.broadcast({"event": "x"}, "kitchen.1") == 1
        assert socket.messages == [{"event": "x"}]
        assert manager.get_connection_count("kitchen.1") == 1

    @pytest.mark.asyncio
    async def test_failed_socket_dropped(self):
        manager = ConnectionManager()
        await manager.connect(FakeSocket(fail=True), "driver.1")
        assert await manager.broadcast({"event": "x"}, "driver.1") == 0
        assert manager.get_connection_count() == 0

    @pytest.mark.asyncio
    async def test_unknown_channel(self):
        assert await ConnectionManager().broadcast({"event": "x"}, "nobody") == 0

    @pytest.mark.asyncio
    async def test_channel_capacity(self, monkeypatch):
        manager = ConnectionManager()
        monkeypatch.setattr(ConnectionManager, "MAX_CONNECTIONS_PER_CHANNEL", 1)
        await manager.connect(FakeSocket(), "restaurant.1")
        rejected = FakeSocket()
        assert await manager.connect(rejected, "restaurant.1") is False
        assert rejected.closed_with == 1008

    @pytest.mark.asyncio
    async def test_disconnect_removes_empty_channel(self):
        manager = ConnectionManager()
        socket = FakeSocket()
        await manager.connect(socket, "customer.9")
        manager.disconnect(socket, "customer.9")
        assert "customer.9" not in manager.active_connections
        assert manager.connection_metadata == {}


# ============== WebSocket endpoint ==============

def ws_token(user):
    return create_access_token(data={"sub": str(user.id), "email": user.email, "role": user.role.value})


def assert_refused(client, path):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(path):
            pass
    assert exc.value.code == 1008


class TestWebSocketEndpoint:
    def test_rejected_without_token(self, client):
        assert_refused(client, "/ws/kitchen.1")

    def test_rejected_with_bad_token(self, client):
        assert_refused(client, "/ws/kitchen.1?token=garbage")

    def test_ping_pong(self, client, owner, branch):
        channel = f"kitchen.{branch.id}"
        with client.websocket_connect(f"/ws/{channel}?token={ws_token(owner)}") as websocket:
            websocket.send_text("ping")
            assert websocket.receive_text() == "pong"
            assert ws_manager.get_connection_count(channel) == 1

    def test_inactive_account_refused(self, client, user_factory, restaurant, branch):
        suspended = user_factory("gone@example.com", UserRole.KITCHEN_STAFF, restaurant, branch, status="suspended")
        assert_refused(client, f"/ws/kitchen.{branch.id}?token={ws_token(suspended)}")

    def test_deleted_account_refused(self, client, db_session, cashier, branch):
        token = ws_token(cashier)
        db_session.delete(cashier)
        db_session.commit()
        assert_refused(client, f"/ws/restaurant.{branch.id}?token={token}")


class TestChannelAuthorization:
    def pong(self, client, user, channel):
        with client.websocket_connect(f"/ws/{channel}?token={ws_token(user)}") as websocket:
            websocket.send_text("ping")
            return websocket.receive_text()

    def test_customer_channel_is_private(self, client, user_factory):
        diner = user_factory("diner@example.com", UserRole.CUSTOMER)
        assert self.pong(client, diner, f"customer.{diner.id}") == "pong"
        assert_refused(client, f"/ws/customer.{diner.id + 100}?token={ws_token(diner)}")

    def test_driver_channel_is_private(self, client, user_factory):
        rider = user_factory("rider@example.com", UserRole.CUSTOMER)
        assert self.pong(client, rider, f"driver.{rider.id}") == "pong"
        assert_refused(client, f"/ws/driver.42?token={ws_token(rider)}")

    def test_restaurant_channel_needs_matching_branch(self, client, cashier, branch):
        assert self.pong(client, cashier, f"restaurant.{branch.id}") == "pong"
        assert_refused(client, f"/ws/restaurant.{branch.id + 1}?token={ws_token(cashier)}")

    def test_kitchen_channel_needs_kitchen_role(self, client, cashier, manager, user_factory, restaurant, branch):
        cook = user_factory("cook@example.com", UserRole.KITCHEN_STAFF, restaurant, branch)
        assert self.pong(client, cook, f"kitchen.{branch.id}") == "pong"
        assert self.pong(client, manager, f"kitchen.{branch.id}") == "pong"
        assert_refused(client, f"/ws/kitchen.{branch.id}?token={ws_token(cashier)}")
        assert_refused(client, f"/ws/kitchen.{branch.id + 1}?token={ws_token(cook)}")

    def test_customer_without_branch_joins_nothing_else(self, client, user_factory, branch):
        diner = user_factory("diner@example.com", UserRole.CUSTOMER)
        for channel in ("customer.999", f"kitchen.{branch.id}", f"restaurant.{branch.id}", "driver.42"):
            assert_refused(client, f"/ws/{channel}?token={ws_token(diner)}")

    def test_super_admin_joins_any_channel(self, client, super_admin):
        for channel in ("customer.7", "driver.8", "restaurant.9", "kitchen.9"):
            assert self.pong(client, super_admin, channel) == "pong"

    def test_unknown_channel_refused(self, client, super_admin):
        assert_refused(client, f"/ws/default?token={ws_token(super_admin)}")
        assert_refused(client, f"/ws/kitchen.main?token={ws_token(super_admin)}")
