"""Customer order models."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    JSON, DateTime, Enum as SQLEnum, ForeignKey, Integer, Numeric, String, Text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from foodhub.db.base import Base, TimestampMixin, utcnow
from foodhub.models.validators import non_negative, positive


class OrderStatus(str, Enum):
    """Lifecycle of an order. Declaration order is the forward direction."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    OUT_FOR_DELIVERY = "out_for_delivery"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ORDER_STATUS_SEQUENCE = [
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.OUT_FOR_DELIVERY,
    OrderStatus.DELIVERED,
    OrderStatus.COMPLETED,
]

TERMINAL_ORDER_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED})

# Timestamp column stamped when an order enters a status
STATUS_TIMESTAMP_FIELDS = {
    OrderStatus.CONFIRMED: "confirmed_at",
    OrderStatus.PREPARING: "prepared_at",
    OrderStatus.OUT_FOR_DELIVERY: "picked_up_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


class OrderType(str, Enum):
    DELIVERY = "delivery"
    PICKUP = "pickup"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"


class PaymentMethod(str, Enum):
    CASH = "cash"
    CARD = "card"
    WALLET = "wallet"


class Order(Base, TimestampMixin):
    """An order placed by a customer at a restaurant branch."""

    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_number: Mapped[str] = mapped_column(String(64), unique=True, index=True, nullable=False)
    customer_id: Mapped[int] = mapped_column(
        ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True
    )
    restaurant_id: Mapped[int] = mapped_column(
        ForeignKey("restaurants.id", ondelete="CASCADE"), nullable=False, index=True
    )
    restaurant_branch_id: Mapped[int] = mapped_column(
        ForeignKey("restaurant_branches.id", ondelete="CASCADE"), nullable=False, index=True
    )
    customer_address_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("customer_addresses.id", ondelete="SET NULL"), nullable=True
    )

    status: Mapped[OrderStatus] = mapped_column(
        SQLEnum(OrderStatus), default=OrderStatus.PENDING, nullable=False, index=True
    )
    type: Mapped[OrderType] = mapped_column(SQLEnum(OrderType), default=OrderType.DELIVERY, nullable=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        SQLEnum(PaymentStatus), default=PaymentStatus.PENDING, nullable=False
    )
    payment_method: Mapped[PaymentMethod] = mapped_column(
        SQLEnum(PaymentMethod), default=PaymentMethod.CASH, nullable=False
    )

    # Money
    subtotal: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    delivery_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    service_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    # Lifecycle timestamps
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    prepared_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    picked_up_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Minutes
    estimated_preparation_time: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    estimated_delivery_time: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    # Snapshot of customer contact at order time
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    delivery_address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    delivery_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    special_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    payment_transaction_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    payment_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    promo_code: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    loyalty_points_earned: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    loyalty_points_used: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0"), nullable=False)
    pos_data: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refund_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Relationships
    items: Mapped[List["OrderItem"]] = relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan"
    )
    status_history: Mapped[List["OrderStatusHistory"]] = relationship(
        "OrderStatusHistory", back_populates="order", cascade="all, delete-orphan",
        order_by="OrderStatusHistory.id",
    )
    assignments: Mapped[List["OrderAssignment"]] = relationship(
        "OrderAssignment", back_populates="order", cascade="all, delete-orphan",
        order_by="OrderAssignment.id",
    )
    customer: Mapped["Customer"] = relationship("Customer")
    branch: Mapped["RestaurantBranch"] = relationship("RestaurantBranch")

    @validates(
        "subtotal", "tax_amount", "delivery_fee", "service_fee", "discount_amount",
        "total_amount", "loyalty_points_earned", "loyalty_points_used", "refund_amount",
    )
    def _validate_amounts(self, key, value):
        return non_negative(key, value)

    # Predicates

    def is_pending(self) -> bool:
        return self.status == OrderStatus.PENDING

    def is_confirmed(self) -> bool:
        return self.status == OrderStatus.CONFIRMED

    def is_completed(self) -> bool:
        return self.status == OrderStatus.COMPLETED

    def is_cancelled(self) -> bool:
        return self.status == OrderStatus.CANCELLED

    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID

    def can_transition_to(self, new_status: OrderStatus) -> bool:
        """Forward moves and cancellation are allowed until a terminal status."""
        new_status = OrderStatus(new_status)
        if new_status == self.status:
            return True
        if self.status in TERMINAL_ORDER_STATUSES:
            return False
        if new_status == OrderStatus.CANCELLED:
            return True
        return ORDER_STATUS_SEQUENCE.index(new_status) > ORDER_STATUS_SEQUENCE.index(self.status)

    def stamp_status_time(self, new_status: OrderStatus) -> None:
        field = STATUS_TIMESTAMP_FIELDS.get(OrderStatus(new_status))
        if field and getattr(self, field) is None:
            setattr(self, field, utcnow())

    @property
    def current_assignment(self) -> Optional["OrderAssignment"]:
        """Latest assignment that a driver has not turned down."""
        for assignment in reversed(self.assignments):
            if assignment.status not in ("rejected", "cancelled"):
                return assignment
        return None

    @property
    def items_count(self) -> int:
        return sum(item.quantity for item in self.items)

    # Query scopes

    @classmethod
    def with_status(cls, status):
        return cls.status == OrderStatus(status)

    @classmethod
    def of_type(cls, order_type):
        return cls.type == OrderType(order_type)

    @classmethod
    def paid(cls):
        return cls.payment_status == PaymentStatus.PAID

    @classmethod
    def delivery(cls):
        return cls.type == OrderType.DELIVERY

    @classmethod
    def pickup(cls):
        return cls.type == OrderType.PICKUP


class OrderItem(Base, TimestampMixin):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    menu_item_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("menu_items.id", ondelete="SET NULL"), nullable=True
    )
    item_name: Mapped[str] = mapped_column(String(255), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    special_instructions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    order: Mapped["Order"] = relationship("Order", back_populates="items")
    menu_item: Mapped[Optional["MenuItem"]] = relationship("MenuItem")

    @validates("quantity")
    def _validate_quantity(self, key, value):
        return positive(key, value)

    @validates("unit_price", "total_price")
    def _validate_prices(self, key, value):
        return non_negative(key, value)


class OrderStatusHistory(Base):
    """Append-only log of every status an order has been in."""

    __tablename__ = "order_status_history"

    id: Mapped[int] = mapped_column(primary_key=True)
    order_id: Mapped[int] = mapped_column(
        ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(String(32), nullable=False)
    changed_by: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)

    order: Mapped["Order"] = relationship("Order", back_populates="status_history")


# Forward references
from foodhub.models.customer import Customer  # noqa: E402
from foodhub.models.restaurant import RestaurantBranch  # noqa: E402
from foodhub.models.delivery import OrderAssignment  # noqa: E402
