"""Order schemas."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, field_validator

from foodhub.core.sanitize import sanitize_text
from foodhub.models.order import OrderStatus, OrderType, PaymentMethod, PaymentStatus


class OrderItemCreate(BaseModel):
    """One line of a new order."""

    menu_item_id: Optional[int] = Field(default=None, gt=0)
    item_name: Optional[str] = Field(default=None, max_length=255)
    quantity: int = Field(default=1, ge=1, le=100)
    unit_price: Optional[Decimal] = Field(default=None, ge=0)
    special_instructions: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("item_name", "special_instructions", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)


class OrderCreate(BaseModel):
    """Order creation schema. ``order_number`` is generated when omitted.

    Fees, tax, discount and total are priced on the server; any amounts a
    client sends for them are ignored. ``subtotal`` is only read for orders
    without item lines.
    """

    order_number: Optional[str] = Field(default=None, max_length=255)
    customer_id: int = Field(..., gt=0)
    restaurant_id: int = Field(..., gt=0)
    restaurant_branch_id: int = Field(..., gt=0)
    customer_address_id: Optional[int] = Field(default=None, gt=0)
    status: OrderStatus = OrderStatus.PENDING
    type: OrderType
    payment_status: PaymentStatus = PaymentStatus.PENDING
    payment_method: PaymentMethod
    subtotal: Optional[Decimal] = Field(default=None, ge=0)
    currency: Optional[str] = Field(default=None, max_length=3)
    loyalty_points_used: Decimal = Field(default=Decimal("0"), ge=0)
    promo_code: Optional[str] = Field(default=None, max_length=255)
    customer_name: Optional[str] = Field(default=None, max_length=255)
    customer_phone: Optional[str] = Field(default=None, max_length=255)
    delivery_address: Optional[str] = None
    delivery_notes: Optional[str] = None
    special_instructions: Optional[str] = None
    payment_transaction_id: Optional[str] = Field(default=None, max_length=255)
    payment_data: Optional[Dict[str, Any]] = None
    pos_data: Optional[Dict[str, Any]] = None
    estimated_preparation_time: Optional[int] = Field(default=None, ge=0)
    estimated_delivery_time: Optional[int] = Field(default=None, ge=0)
    items: List[OrderItemCreate] = []

    @field_validator(
        "customer_name", "delivery_address", "delivery_notes", "special_instructions",
        mode="before",
    )
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)

    @field_validator("promo_code", mode="before")
    @classmethod
    def _upper_promo(cls, v):
        return v.strip().upper() if isinstance(v, str) else v


class OrderUpdate(BaseModel):
    """Partial order update. Only fields that are sent are applied."""

    customer_address_id: Optional[int] = Field(default=None, gt=0)
    status: Optional[OrderStatus] = None
    type: Optional[OrderType] = None
    payment_status: Optional[PaymentStatus] = None
    payment_method: Optional[PaymentMethod] = None
    subtotal: Optional[Decimal] = Field(default=None, ge=0)
    delivery_fee: Optional[Decimal] = Field(default=None, ge=0)
    tax_amount: Optional[Decimal] = Field(default=None, ge=0)
    total_amount: Optional[Decimal] = Field(default=None, ge=0)
    discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    delivery_notes: Optional[str] = None
    special_instructions: Optional[str] = None
    cancellation_reason: Optional[str] = Field(default=None, max_length=1000)
    estimated_preparation_time: Optional[int] = Field(default=None, ge=0)
    estimated_delivery_time: Optional[int] = Field(default=None, ge=0)

    @field_validator("delivery_notes", "special_instructions", "cancellation_reason", mode="before")
    @classmethod
    def _sanitize(cls, v):
        return sanitize_text(v)
