"""Broadcast events for orders, kitchens and deliveries.

Each event names the channels it goes to (``broadcast_on``), its wire name
(``broadcast_as``) and its payload (``broadcast_with``). ``dispatch`` sends
``{"event": name, "data": payload}`` to every channel through the WebSocket
connection manager.

Channels:
    customer.{customer_id}      order and delivery progress for one customer
    restaurant.{branch_id}      branch dashboard
    kitchen.{branch_id}         kitchen display
    driver.{driver_id}          one driver's app
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from foodhub.db.base import isoformat, utcnow
from foodhub.services.websocket_service import ConnectionManager, ws_manager

logger = logging.getLogger(__name__)

EVENT_VERSION = "1.0"


def _status_value(status) -> Optional[str]:
    return getattr(status, "value", status)


def _money(value) -> Optional[float]:
    return float(value) if value is not None else None


def _customer_name(order) -> Optional[str]:
    if order.customer_name:
        return order.customer_name
    customer = getattr(order, "customer", None)
    return customer.full_name if customer is not None else None


class BroadcastEvent:
    """Base class: subclasses set ``name`` and implement channels and payload."""

    name = ""

    def __init__(self):
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def broadcast_on(self) -> List[str]:
        raise NotImplementedError

    def broadcast_as(self) -> str:
        return self.name

    def payload(self) -> Dict[str, Any]:
        raise NotImplementedError

    def broadcast_with(self) -> Dict[str, Any]:
        data = self.payload()
        data["timestamp"] = self.timestamp
        data["version"] = EVENT_VERSION
        return data

    async def dispatch(self, manager: Optional[ConnectionManager] = None) -> List[str]:
        """Send the event to every channel; returns the channel names."""
        manager = manager or ws_manager
        message = {"event": self.broadcast_as(), "data": self.broadcast_with()}
        channels = self.broadcast_on()
        for channel in channels:
            await manager.broadcast(message, channel)
        logger.debug(f"Broadcast {self.broadcast_as()} to {channels}")
        return channels


async def broadcast_event(event: BroadcastEvent) -> bool:
    """Dispatch an event; failures are logged and never propagate to the request."""
    try:
        await event.dispatch()
        return True
    except Exception as e:
        logger.warning(f"WebSocket broadcast of {event.broadcast_as()} failed: {e}")
        return False


class OrderStatusUpdated(BroadcastEvent):
    name = "order.status.updated"

    def __init__(self, order, previous_status, new_status):
        super().__init__()
        self.order = order
        self.previous_status = _status_value(previous_status)
        self.new_status = _status_value(new_status)
        assignment = order.current_assignment
        self.driver_id = assignment.driver_id if assignment is not None else None

    def broadcast_on(self) -> List[str]:
        channels = [
            f"customer.{self.order.customer_id}",
            f"restaurant.{self.order.restaurant_branch_id}",
        ]
        if self.driver_id:
            channels.append(f"driver.{self.driver_id}")
        return channels

    def payload(self) -> Dict[str, Any]:
        return {
            "order_id": self.order.id,
            "order_number": self.order.order_number,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "customer_id": self.order.customer_id,
            "restaurant_branch_id": self.order.restaurant_branch_id,
            "driver_id": self.driver_id,
            "estimated_delivery_time": self.order.estimated_delivery_time,
        }


class DeliveryStatusChanged(BroadcastEvent):
    name = "delivery.status.changed"

    # Extra timestamp key added when the delivery enters these statuses
    STATUS_TIME_KEYS = {
        "picked_up": "pickup_time",
        "out_for_delivery": "out_for_delivery_time",
        "delivered": "delivery_time",
    }

    def __init__(self, assignment, previous_status, new_status, estimated_delivery_time=None):
        super().__init__()
        self.assignment = assignment
        self.previous_status = _status_value(previous_status)
        self.new_status = _status_value(new_status)
        self.estimated_delivery_time = estimated_delivery_time

    def broadcast_on(self) -> List[str]:
        order = self.assignment.order
        return [
            f"customer.{order.customer_id}",
            f"restaurant.{order.restaurant_branch_id}",
            f"driver.{self.assignment.driver_id}",
        ]

    def payload(self) -> Dict[str, Any]:
        order = self.assignment.order
        data = {
            "order_id": self.assignment.order_id,
            "order_number": order.order_number,
            "driver_id": self.assignment.driver_id,
            "driver_name": self.assignment.driver.full_name,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "customer_id": order.customer_id,
            "restaurant_branch_id": order.restaurant_branch_id,
        }
        if self.estimated_delivery_time:
            eta = self.estimated_delivery_time
            data["estimated_delivery_time"] = isoformat(eta) if isinstance(eta, datetime) else eta

        time_key = self.STATUS_TIME_KEYS.get(self.new_status)
        if time_key:
            data[time_key] = self.timestamp
        return data


class NewOrderPlaced(BroadcastEvent):
    name = "order.new.placed"

    def __init__(self, order):
        super().__init__()
        self.order = order

    def broadcast_on(self) -> List[str]:
        return [
            f"restaurant.{self.order.restaurant_branch_id}",
            f"customer.{self.order.customer_id}",
            f"kitchen.{self.order.restaurant_branch_id}",
        ]

    def payload(self) -> Dict[str, Any]:
        return {
            "order_id": self.order.id,
            "order_number": self.order.order_number,
            "customer_id": self.order.customer_id,
            "customer_name": _customer_name(self.order),
            "restaurant_branch_id": self.order.restaurant_branch_id,
            "total_amount": _money(self.order.total_amount),
            "order_type": _status_value(self.order.type),
            "estimated_preparation_time": self.order.estimated_preparation_time,
            "items_count": len(self.order.items),
            "special_instructions": self.order.special_instructions,
        }


class KitchenOrderUpdated(BroadcastEvent):
    name = "kitchen.order.updated"

    MAX_PRIORITY = 5
    PEAK_HOURS = (range(11, 15), range(17, 21))

    def __init__(self, order, update_type: str, priority: Optional[int] = None):
        super().__init__()
        self.order = order
        self.update_type = update_type
        self.priority = priority if priority is not None else self.calculate_priority(order)

    @classmethod
    def calculate_priority(cls, order) -> int:
        """Base 1; delivery +2, special instructions +1, over 5 items +1, peak hours +1."""
        priority = 1
        if _status_value(order.type) == "delivery":
            priority += 2
        if order.special_instructions:
            priority += 1
        if len(order.items) > 5:
            priority += 1
        hour = (order.created_at or utcnow()).hour
        if any(hour in peak for peak in cls.PEAK_HOURS):
            priority += 1
        return min(priority, cls.MAX_PRIORITY)

    def broadcast_on(self) -> List[str]:
        return [
            f"kitchen.{self.order.restaurant_branch_id}",
            f"restaurant.{self.order.restaurant_branch_id}",
        ]

    def payload(self) -> Dict[str, Any]:
        return {
            "order_id": self.order.id,
            "order_number": self.order.order_number,
            "customer_name": _customer_name(self.order),
            "update_type": self.update_type,
            "priority": self.priority,
            "status": _status_value(self.order.status),
            "order_type": _status_value(self.order.type),
            "total_amount": _money(self.order.total_amount),
            "estimated_preparation_time": self.order.estimated_preparation_time,
            "items": [
                {
                    "id": item.id,
                    "name": item.item_name,
                    "quantity": item.quantity,
                    "special_instructions": item.special_instructions,
                    "preparation_status": "pending",
                }
                for item in self.order.items
            ],
            "special_instructions": self.order.special_instructions,
            "created_at": isoformat(self.order.created_at),
        }


class DriverLocationUpdated(BroadcastEvent):
    name = "driver.location.updated"

    def __init__(self, driver, location: Dict[str, Any], assignment=None, eta=None):
        super().__init__()
        self.driver = driver
        self.location = location
        self.assignment = assignment
        self.eta = eta

    def broadcast_on(self) -> List[str]:
        channels = [f"driver.{self.driver.id}"]
        if self.assignment is not None:
            order = self.assignment.order
            channels.append(f"customer.{order.customer_id}")
            channels.append(f"restaurant.{order.restaurant_branch_id}")
        return channels

    def payload(self) -> Dict[str, Any]:
        data = {
            "driver_id": self.driver.id,
            "driver_name": self.driver.full_name,
            "location": {
                "latitude": self.location["latitude"],
                "longitude": self.location["longitude"],
                "accuracy": self.location.get("accuracy"),
                "speed": self.location.get("speed"),
                "heading": self.location.get("heading"),
            },
        }
        if self.assignment is not None:
            data["order_id"] = self.assignment.order_id
            data["order_number"] = self.assignment.order.order_number
        if self.eta:
            data["eta"] = self.eta
        return data
