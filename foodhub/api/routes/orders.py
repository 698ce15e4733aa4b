"""Order routes: paginated listing, creation with loyalty points, status updates."""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, Response, status
from fastapi.responses import JSONResponse

from foodhub.core.config import settings
from foodhub.core.policies import OrderPolicy
from foodhub.core.rate_limit import limiter
from foodhub.core.rbac import CurrentUser, RequireSuperAdmin, UserRole, forbid_unless
from foodhub.core.responses import page_response, paginate
from foodhub.core.validators import OptionalIdQuery, PageNumber, PerPage, PositiveIntId
from foodhub.db.base import isoformat
from foodhub.db.session import DbSession
from foodhub.models.order import Order, OrderStatus, OrderType
from foodhub.schemas.order import OrderCreate, OrderUpdate
from foodhub.services.events import (
    KitchenOrderUpdated,
    NewOrderPlaced,
    OrderStatusUpdated,
    broadcast_event,
)
from foodhub.services.loyalty_service import InsufficientPointsError
from foodhub.services.order_service import OrderService

logger = logging.getLogger(__name__)

router = APIRouter()


def _money(value) -> Optional[float]:
    return float(value) if value is not None else None


def order_to_dict(order: Order, include_history: bool = False) -> dict:
    assignment = order.current_assignment
    data = {
        "id": order.id,
        "order_number": order.order_number,
        "customer_id": order.customer_id,
        "restaurant_id": order.restaurant_id,
        "restaurant_branch_id": order.restaurant_branch_id,
        "customer_address_id": order.customer_address_id,
        "status": order.status.value,
        "type": order.type.value,
        "payment_status": order.payment_status.value,
        "payment_method": order.payment_method.value,
        "subtotal": _money(order.subtotal),
        "tax_amount": _money(order.tax_amount),
        "delivery_fee": _money(order.delivery_fee),
        "service_fee": _money(order.service_fee),
        "discount_amount": _money(order.discount_amount),
        "total_amount": _money(order.total_amount),
        "currency": order.currency,
        "estimated_preparation_time": order.estimated_preparation_time,
        "estimated_delivery_time": order.estimated_delivery_time,
        "customer_name": order.customer_name,
        "delivery_address": order.delivery_address,
        "delivery_notes": order.delivery_notes,
        "special_instructions": order.special_instructions,
        "promo_code": order.promo_code,
        "loyalty_points_earned": _money(order.loyalty_points_earned),
        "loyalty_points_used": _money(order.loyalty_points_used),
        "cancellation_reason": order.cancellation_reason,
        "confirmed_at": isoformat(order.confirmed_at),
        "prepared_at": isoformat(order.prepared_at),
        "picked_up_at": isoformat(order.picked_up_at),
        "delivered_at": isoformat(order.delivered_at),
        "cancelled_at": isoformat(order.cancelled_at),
        "driver_id": assignment.driver_id if assignment is not None else None,
        "items": [
            {
                "id": item.id,
                "menu_item_id": item.menu_item_id,
                "item_name": item.item_name,
                "quantity": item.quantity,
                "unit_price": _money(item.unit_price),
                "total_price": _money(item.total_price),
                "special_instructions": item.special_instructions,
            }
            for item in order.items
        ],
        "created_at": isoformat(order.created_at),
        "updated_at": isoformat(order.updated_at),
    }
    if include_history:
        data["status_history"] = [
            {
                "status": entry.status,
                "changed_by": entry.changed_by,
                "notes": entry.notes,
                "created_at": isoformat(entry.created_at),
            }
            for entry in order.status_history
        ]
    return data


def _get_order_or_404(db, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Order not found")
    return order


def _unprocessable(message: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=message)


@router.get("")
@limiter.limit("60/minute")
def list_orders(
    request: Request,
    db: DbSession,
    current_user: CurrentUser,
    page: PageNumber = 1,
    per_page: PerPage = settings.order_per_page_default,
    order_status: Optional[OrderStatus] = Query(default=None, alias="status"),
    order_type: Optional[OrderType] = Query(default=None, alias="type"),
    restaurant_branch_id: OptionalIdQuery = None,
    customer_id: OptionalIdQuery = None,
):
    """Orders visible to the caller, newest first.

    Owners see their restaurant's orders and branch roles their branch's.
    """
    forbid_unless(OrderPolicy.view_any(current_user))

    query = db.query(Order)
    if current_user.role == UserRole.RESTAURANT_OWNER:
        query = query.filter(Order.restaurant_id == current_user.restaurant_id)
    elif not current_user.is_super_admin():
        query = query.filter(Order.restaurant_branch_id == current_user.restaurant_branch_id)

    if order_status:
        query = query.filter(Order.with_status(order_status))
    if order_type:
        query = query.filter(Order.of_type(order_type))
    if restaurant_branch_id:
        query = query.filter(Order.restaurant_branch_id == restaurant_branch_id)
    if customer_id:
        query = query.filter(Order.customer_id == customer_id)

    orders, total = paginate(query.order_by(Order.created_at.desc(), Order.id.desc()), page, per_page)
    return page_response([order_to_dict(o) for o in orders], total, page, per_page)


@router.post("", status_code=status.HTTP_201_CREATED)
@limiter.limit("30/minute")
async def create_order(request: Request, data: OrderCreate, db: DbSession, current_user: CurrentUser):
    forbid_unless(OrderPolicy.create(current_user))

    try:
        order = OrderService(db).create_order(data, current_user, request)
    except InsufficientPointsError:
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={
                "success": False,
                "message": "Insufficient loyalty points for redemption.",
                "errors": {
                    "loyalty_points_used": [
                        "The customer does not have enough points for this redemption."
                    ],
                },
            },
        )
    except ValueError as e:
        raise _unprocessable(str(e))

    await broadcast_event(NewOrderPlaced(order))
    await broadcast_event(KitchenOrderUpdated(order, "new"))
    return order_to_dict(order, include_history=True)


@router.get("/{order_id}")
@limiter.limit("60/minute")
def get_order(request: Request, order_id: PositiveIntId, db: DbSession, current_user: CurrentUser):
    order = _get_order_or_404(db, order_id)
    forbid_unless(OrderPolicy.view(current_user, order))
    return order_to_dict(order, include_history=True)


@router.put("/{order_id}")
@limiter.limit("30/minute")
async def update_order(
    request: Request, order_id: PositiveIntId, data: OrderUpdate, db: DbSession, current_user: CurrentUser,
):
    order = _get_order_or_404(db, order_id)
    forbid_unless(OrderPolicy.update(current_user, order))

    try:
        previous = OrderService(db).update_order(order, data, current_user)
    except ValueError as e:
        db.rollback()
        raise _unprocessable(str(e))

    if previous is not None:
        await broadcast_event(OrderStatusUpdated(order, previous, order.status))
        await broadcast_event(KitchenOrderUpdated(order, "status_change"))
    return order_to_dict(order, include_history=True)


@router.delete("/{order_id}", status_code=status.HTTP_204_NO_CONTENT)
@limiter.limit("10/minute")
def delete_order(request: Request, order_id: PositiveIntId, db: DbSession, current_user: RequireSuperAdmin):
    order = _get_order_or_404(db, order_id)
    forbid_unless(OrderPolicy.delete(current_user, order))
    OrderService(db).delete_order(order)
    return Response(status_code=status.HTTP_204_NO_CONTENT)
