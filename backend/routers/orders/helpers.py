from fastapi import HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from sqlalchemy.orm import selectinload
from models import Order, OrderItem, Product, OrderStatus, PaymentStatus, utcnow
from routers.users.helpers import get_profile_map, user_summary
from utils.response_helpers import safe_model_validate
from .schemas import OrderResponse, OrderItemResponse, OrderPaymentSummary, OrderDeliverySummary
from typing import Dict, Iterable, List
import uuid
import logging

logger = logging.getLogger(__name__)

# Allowed order status moves; anything else is rejected
ORDER_TRANSITIONS: Dict[str, set] = {
    OrderStatus.PENDING.value: {OrderStatus.CONFIRMED.value, OrderStatus.CANCELLED.value},
    OrderStatus.CONFIRMED.value: {OrderStatus.IN_TRANSIT.value, OrderStatus.CANCELLED.value},
    OrderStatus.IN_TRANSIT.value: {OrderStatus.DELIVERED.value},
    OrderStatus.DELIVERED.value: set(),
    OrderStatus.CANCELLED.value: set(),
}

PAID_ORDER_CANCEL_MESSAGE = "Cannot cancel paid order. Please request refund."


def can_transition(current: str, new: str) -> bool:
    return new in ORDER_TRANSITIONS.get(current, set())


def ensure_transition(order: Order, new_status: str) -> None:
    if not can_transition(order.status, new_status):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Cannot change order status from {order.status} to {new_status}"
        )


def set_order_status(order: Order, new_status: str) -> str:
    """Apply a validated status change; returns the previous status"""
    ensure_transition(order, new_status)
    previous = order.status
    order.status = new_status
    if new_status == OrderStatus.DELIVERED.value:
        order.delivered_at = utcnow()
    elif new_status == OrderStatus.CANCELLED.value:
        order.cancelled_at = utcnow()
    return previous


async def reserve_stock(db: AsyncSession, product_id: uuid.UUID, quantity: int) -> bool:
    """
    Decrement stock in a single conditional UPDATE.
    False means another order took the stock first or the product left the marketplace.
    """
    result = await db.execute(
        update(Product)
        .where(
            Product.id == product_id,
            Product.quantity >= quantity,
            Product.is_available == True,
            Product.is_approved == True,
            Product.deleted_at.is_(None)
        )
        .values(quantity=Product.quantity - quantity)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def restore_stock(db: AsyncSession, items: Iterable[OrderItem]) -> None:
    for item in items:
        await db.execute(
            update(Product)
            .where(Product.id == item.product_id)
            .values(quantity=Product.quantity + item.quantity)
            .execution_options(synchronize_session=False)
        )


async def cancel_order(db: AsyncSession, order: Order) -> None:
    """
    Cancel an order and give its stock back.
    Orders with a completed payment need a refund and stay as they are.
    """
    if order.status == OrderStatus.DELIVERED.value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot cancel delivered order"
        )
    if order.payment is not None and order.payment.status == PaymentStatus.COMPLETED.value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=PAID_ORDER_CANCEL_MESSAGE
        )

    set_order_status(order, OrderStatus.CANCELLED.value)
    await restore_stock(db, order.items)


async def load_order(db: AsyncSession, order_id: uuid.UUID) -> Order:
    result = await db.execute(
        order_query().where(Order.id == order_id, Order.deleted_at.is_(None))
    )
    order = result.scalar_one_or_none()
    if not order:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found"
        )
    return order


def order_query():
    return select(Order).options(
        selectinload(Order.items),
        selectinload(Order.payment),
        selectinload(Order.delivery)
    )


def serialize_order(order: Order, profiles: Dict) -> OrderResponse:
    """Order with items, payment and delivery; those relationships must be loaded"""
    items = [
        safe_model_validate(OrderItemResponse, item, subtotal=round(item.price * item.quantity, 2))
        for item in order.items
    ]
    payment = safe_model_validate(OrderPaymentSummary, order.payment) if order.payment else None
    delivery = safe_model_validate(OrderDeliverySummary, order.delivery) if order.delivery else None

    return safe_model_validate(
        OrderResponse,
        order,
        items=items,
        payment=payment,
        delivery=delivery,
        buyer=user_summary(order.buyer_id, profiles.get(order.buyer_id)),
        seller=user_summary(order.seller_id, profiles.get(order.seller_id))
    )


async def serialize_orders(db: AsyncSession, orders: List[Order]) -> List[OrderResponse]:
    user_ids = [o.buyer_id for o in orders] + [o.seller_id for o in orders]
    profiles = await get_profile_map(db, user_ids)
    return [serialize_order(order, profiles) for order in orders]
