"""Order creation and lifecycle management."""

import logging
import secrets
import string
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from foodhub.core.config import settings
from foodhub.db.base import utcnow
from foodhub.models.customer import Customer, CustomerAddress
from foodhub.models.menu import BranchMenuItem, MenuItem
from foodhub.models.order import Order, OrderItem, OrderStatus, OrderStatusHistory
from foodhub.models.restaurant import Restaurant, RestaurantBranch
from foodhub.schemas.order import OrderCreate, OrderUpdate
from foodhub.services.challenge_service import ChallengeService
from foodhub.services.loyalty_service import InsufficientPointsError, LoyaltyService
from foodhub.services.pricing_service import PricingService
from foodhub.services.security_logging_service import security_logger

logger = logging.getLogger(__name__)

_ORDER_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


class InvalidTransitionError(ValueError):
    """Raised when an order is asked to move to a status it cannot reach."""


class OrderService:
    def __init__(self, db: Session):
        self.db = db
        self.loyalty = LoyaltyService(db)
        self.pricing = PricingService(db)
        self.challenges = ChallengeService(db)

    def generate_order_number(self) -> str:
        """``ORD-YYYYMMDD-XXXXXX``, unique across orders."""
        while True:
            suffix = "".join(secrets.choice(_ORDER_NUMBER_ALPHABET) for _ in range(6))
            number = f"ORD-{utcnow():%Y%m%d}-{suffix}"
            if not self.db.query(Order.id).filter(Order.order_number == number).first():
                return number

    def _validate_references(self, data: OrderCreate) -> None:
        if self.db.get(Customer, data.customer_id) is None:
            raise ValueError("The selected customer does not exist.")
        if self.db.get(Restaurant, data.restaurant_id) is None:
            raise ValueError("The selected restaurant does not exist.")

        branch = self.db.get(RestaurantBranch, data.restaurant_branch_id)
        if branch is None or branch.restaurant_id != data.restaurant_id:
            raise ValueError("The selected restaurant branch does not belong to the restaurant.")

        if data.customer_address_id is not None:
            address = self.db.get(CustomerAddress, data.customer_address_id)
            if address is None or address.customer_id != data.customer_id:
                raise ValueError("The selected customer address does not belong to the customer.")

        if data.order_number and self.db.query(Order.id).filter(
            Order.order_number == data.order_number
        ).first():
            raise ValueError("The order number has already been taken.")

    def _build_item(self, data, restaurant_id: int, branch_id: int) -> OrderItem:
        name = data.item_name
        unit_price = data.unit_price
        menu_item = None

        if data.menu_item_id is not None:
            menu_item = self.db.get(MenuItem, data.menu_item_id)
            if menu_item is None or menu_item.restaurant_id != restaurant_id:
                raise ValueError(f"Menu item {data.menu_item_id} is not on this restaurant's menu.")
            override = self.db.query(BranchMenuItem).filter(
                BranchMenuItem.restaurant_branch_id == branch_id,
                BranchMenuItem.menu_item_id == menu_item.id,
            ).first()
            if override is not None and not override.is_available:
                raise ValueError(f"{menu_item.name} is not available at this branch.")
            name = name or menu_item.name
            if unit_price is None:
                unit_price = override.effective_price if override is not None else menu_item.price

        if not name or unit_price is None:
            raise ValueError("Order items need a menu item or a name and unit price.")

        return OrderItem(
            menu_item_id=data.menu_item_id,
            menu_item=menu_item,
            item_name=name,
            quantity=data.quantity,
            unit_price=unit_price,
            total_price=Decimal(str(unit_price)) * data.quantity,
            special_instructions=data.special_instructions,
        )

    def create_order(self, data: OrderCreate, user=None, request=None) -> Order:
        """Persist a new order with its items, history, loyalty points and audit row.

        Amounts are priced by ``PricingService`` from the item lines.

        Raises ``ValueError`` for invalid references or unpriceable orders and
        ``InsufficientPointsError`` when the requested redemption cannot be
        covered. Nothing is committed in either case.
        """
        self._validate_references(data)

        fields = data.model_dump(exclude={"items", "loyalty_points_used", "order_number"}, exclude_none=True)
        order = Order(
            order_number=data.order_number or self.generate_order_number(),
            currency=data.currency or settings.default_currency,
            **{k: v for k, v in fields.items() if k != "currency"},
        )
        order.items = [
            self._build_item(item, data.restaurant_id, data.restaurant_branch_id)
            for item in data.items
        ]
        points_used = data.loyalty_points_used
        self.pricing.price_order(order, points_used)

        order.stamp_status_time(order.status)
        self.db.add(order)
        self.db.flush()

        if points_used > 0 and not self.loyalty.validate_points_redemption(order, points_used):
            self.db.rollback()
            raise InsufficientPointsError("Insufficient loyalty points for redemption.")

        self._record_history(order, order.status, getattr(user, "id", None), "Order created")

        security_logger.log_security_event(
            self.db,
            user,
            "order_created",
            {
                "order_id": order.id,
                "customer_id": order.customer_id,
                "total_amount": str(order.total_amount),
                "loyalty_points_used": str(points_used),
            },
            "info",
            "order",
            order.id,
            request,
        )

        self.loyalty.process_order_loyalty_points(order)
        if points_used > 0:
            self.loyalty.process_points_redemption(order, points_used)
        self.challenges.record_order(order)

        self.db.commit()
        self.db.refresh(order)
        logger.info(f"Order {order.order_number} created for customer {order.customer_id}")
        return order

    def _record_history(self, order: Order, status, changed_by: Optional[int], notes: Optional[str] = None):
        self.db.add(OrderStatusHistory(
            order_id=order.id,
            status=OrderStatus(status).value,
            changed_by=changed_by,
            notes=notes,
        ))

    def change_status(self, order: Order, new_status, changed_by: Optional[int] = None,
                      notes: Optional[str] = None) -> bool:
        """Move an order to ``new_status``. Returns False when it is already there."""
        new_status = OrderStatus(new_status)
        if order.status == new_status:
            return False
        if not order.can_transition_to(new_status):
            raise InvalidTransitionError(
                f"Cannot change order status from {order.status.value} to {new_status.value}."
            )

        order.status = new_status
        order.stamp_status_time(new_status)
        self._record_history(order, new_status, changed_by, notes)
        return True

    def update_order(self, order: Order, data: OrderUpdate, user=None) -> Optional[OrderStatus]:
        """Apply a partial update; returns the previous status when it changed."""
        changes = data.model_dump(exclude_unset=True)
        new_status = changes.pop("status", None)

        if "customer_address_id" in changes and changes["customer_address_id"] is not None:
            address = self.db.get(CustomerAddress, changes["customer_address_id"])
            if address is None or address.customer_id != order.customer_id:
                raise ValueError("The selected customer address does not belong to the customer.")

        previous = order.status
        changed = False
        if new_status is not None:
            changed = self.change_status(
                order, new_status, getattr(user, "id", None), changes.get("cancellation_reason")
            )

        for field, value in changes.items():
            setattr(order, field, value)

        self.db.commit()
        self.db.refresh(order)
        if changed:
            logger.info(f"Order {order.order_number}: {previous.value} -> {order.status.value}")
            return previous
        return None

    def delete_order(self, order: Order) -> None:
        number = order.order_number
        self.db.delete(order)
        self.db.commit()
        logger.info(f"Order {number} deleted")
