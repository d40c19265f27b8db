from fastapi import APIRouter, Depends, HTTPException, status, Query, BackgroundTasks
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func
from config import get_db
from models import Order, OrderItem, Product, User, Profile, Transporter, OrderStatus, NotificationType, UserRole
from routers.auth.auth import get_current_user
from routers.notifications.helpers import notify, push_notifications
from dependencies.rbac import require_buyer_orders, require_seller_orders, require_seller_orders_write
from utils.response_helpers import ApiResponse, success_response, build_pagination
from utils.notifications import (
    send_email, send_sms,
    get_new_order_email, get_new_order_sms,
    get_order_status_email, get_order_status_sms,
)
from .schemas import OrderCreate, OrderStatusUpdate, OrderResponse, OrderListResponse
from .helpers import (
    reserve_stock,
    cancel_order,
    set_order_status,
    load_order,
    order_query,
    serialize_orders,
)
from typing import Optional
import uuid
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/orders", tags=["Orders"])


async def _contact_details(db: AsyncSession, user_id: uuid.UUID):
    result = await db.execute(
        select(User.email, Profile.phone_number)
        .join(Profile, Profile.user_id == User.id, isouter=True)
        .where(User.id == user_id)
    )
    return result.first()


async def _list_orders(db: AsyncSession, filters: list, page: int, limit: int) -> OrderListResponse:
    total_result = await db.execute(select(func.count(Order.id)).where(*filters))
    total = total_result.scalar()

    result = await db.execute(
        order_query()
        .where(*filters)
        .order_by(Order.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )
    orders = result.scalars().all()

    return OrderListResponse(
        orders=await serialize_orders(db, orders),
        pagination=build_pagination(page, limit, total)
    )


@router.post("/", response_model=ApiResponse[OrderResponse], status_code=status.HTTP_201_CREATED)
async def create_order(
    order_data: OrderCreate,
    background_tasks: BackgroundTasks,
    current_user = Depends(require_buyer_orders),
    db: AsyncSession = Depends(get_db)
):
    """
    Place an order with a single seller.
    Prices are frozen on the order items and stock is reserved immediately.
    """
    buyer_id = current_user["user_id"]
    try:
        product_ids = [item.product_id for item in order_data.items]
        result = await db.execute(
            select(Product).where(Product.id.in_(product_ids), Product.deleted_at.is_(None))
        )
        products = {product.id: product for product in result.scalars().all()}

        for item in order_data.items:
            product = products.get(item.product_id)
            if not product:
                raise HTTPException(
                    status_code=status.HTTP_404_NOT_FOUND,
                    detail=f"Product {item.product_id} not found"
                )
            if not product.is_approved or not product.is_available:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Product '{product.title}' is not available"
                )
            if product.seller_id == buyer_id:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail="You cannot order your own product"
                )
            if product.quantity < item.quantity:
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Insufficient quantity for '{product.title}'. Available: {product.quantity} {product.unit}"
                )

        seller_ids = {products[item.product_id].seller_id for item in order_data.items}
        if len(seller_ids) != 1:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="All items in an order must come from the same seller"
            )
        seller_id = seller_ids.pop()

        order_items = []
        total_amount = 0.0
        for item in order_data.items:
            product = products[item.product_id]
            if not await reserve_stock(db, product.id, item.quantity):
                await db.rollback()
                raise HTTPException(
                    status_code=status.HTTP_400_BAD_REQUEST,
                    detail=f"Insufficient quantity for '{product.title}'"
                )
            total_amount += product.price * item.quantity
            order_items.append(OrderItem(
                product_id=product.id,
                product_title=product.title,
                unit=product.unit,
                quantity=item.quantity,
                price=product.price
            ))

        order = Order(
            buyer_id=buyer_id,
            seller_id=seller_id,
            status=OrderStatus.PENDING.value,
            total_amount=round(total_amount, 2),
            delivery_address=order_data.delivery_address,
            delivery_city=order_data.delivery_city,
            delivery_region=order_data.delivery_region,
            delivery_lat=order_data.delivery_lat,
            delivery_lng=order_data.delivery_lng,
            notes=order_data.notes,
            items=order_items,
            payment=None,
            delivery=None
        )
        db.add(order)
        await db.flush()

        notification = notify(
            db,
            seller_id,
            NotificationType.ORDER,
            "New Order",
            f"You have a new order worth GHS {order.total_amount:.2f}",
            {"order_id": str(order.id)}
        )
        await db.commit()

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error creating order: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to create order"
        )

    logger.info(f"Order {order.id} placed by {buyer_id} with seller {seller_id}")
    await push_notifications([notification])

    response = (await serialize_orders(db, [order]))[0]

    contact = await _contact_details(db, seller_id)
    if contact:
        order_payload = response.model_dump()
        subject, body = get_new_order_email(order_payload)
        background_tasks.add_task(send_email, contact.email, subject, body)
        if contact.phone_number:
            background_tasks.add_task(send_sms, contact.phone_number, get_new_order_sms(response.id, response.total_amount))

    return success_response(response, message="Order placed successfully")


@router.get("/my-orders", response_model=ApiResponse[OrderListResponse])
async def my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    current_user = Depends(require_buyer_orders),
    db: AsyncSession = Depends(get_db)
):
    filters = [Order.buyer_id == current_user["user_id"], Order.deleted_at.is_(None)]
    if status_filter:
        filters.append(Order.status == status_filter.value)
    return success_response(await _list_orders(db, filters, page, limit))


@router.get("/seller/my-orders", response_model=ApiResponse[OrderListResponse])
async def seller_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
    current_user = Depends(require_seller_orders),
    db: AsyncSession = Depends(get_db)
):
    filters = [Order.seller_id == current_user["user_id"], Order.deleted_at.is_(None)]
    if status_filter:
        filters.append(Order.status == status_filter.value)
    return success_response(await _list_orders(db, filters, page, limit))


@router.get("/{order_id}", response_model=ApiResponse[OrderResponse])
async def get_order(
    order_id: uuid.UUID,
    current_user = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    order = await load_order(db, order_id)
    user_id = current_user["user_id"]

    allowed = user_id in (order.buyer_id, order.seller_id) or current_user["role"] == UserRole.ADMIN.value
    if not allowed and order.delivery is not None:
        result = await db.execute(select(Transporter.user_id).where(Transporter.id == order.delivery.transporter_id))
        allowed = result.scalar_one_or_none() == user_id
    if not allowed:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have access to this order"
        )

    return success_response((await serialize_orders(db, [order]))[0])


@router.patch("/{order_id}/status", response_model=ApiResponse[OrderResponse])
async def update_order_status(
    order_id: uuid.UUID,
    status_update: OrderStatusUpdate,
    background_tasks: BackgroundTasks,
    current_user = Depends(require_seller_orders_write),
    db: AsyncSession = Depends(get_db)
):
    """Seller-driven status change, validated against the order state machine"""
    order = await load_order(db, order_id)
    if order.seller_id != current_user["user_id"]:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found"
        )

    new_status = status_update.status.value
    try:
        if new_status == OrderStatus.CANCELLED.value:
            await cancel_order(db, order)
        else:
            set_order_status(order, new_status)

        notification = notify(
            db,
            order.buyer_id,
            NotificationType.ORDER,
            "Order Status Updated",
            f"Your order is now {new_status.replace('_', ' ').lower()}",
            {"order_id": str(order.id), "status": new_status}
        )
        await db.commit()

    except HTTPException:
        await db.rollback()
        raise
    except Exception as e:
        logger.error(f"Error updating order {order_id} status: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to update order status"
        )

    logger.info(f"Order {order.id} moved to {new_status} by seller {current_user['user_id']}")
    await push_notifications([notification])

    contact = await _contact_details(db, order.buyer_id)
    if contact:
        subject, body = get_order_status_email(str(order.id), new_status)
        background_tasks.add_task(send_email, contact.email, subject, body)
        if contact.phone_number:
            background_tasks.add_task(send_sms, contact.phone_number, get_order_status_sms(str(order.id), new_status))

    return success_response((await serialize_orders(db, [order]))[0], message="Order status updated")


@router.patch("/{order_id}/cancel", response_model=ApiResponse[OrderResponse])
async def buyer_cancel_order(
    order_id: uuid.UUID,
    current_user = Depends(require_buyer_orders),
    db: AsyncSession = Depends(get_db)
):
    order = await load_order(db, order_id)
    if order.buyer_id != current_user["user_id"]:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found"
        )

    try:
        await cancel_order(db, order)
        notification = notify(
            db,
            order.seller_id,
            NotificationType.ORDER,
            "Order Cancelled",
            f"Order #{str(order.id)[:8]} was cancelled by the buyer",
            {"order_id": str(order.id), "status": OrderStatus.CANCELLED.value}
        )
        await db.commit()

    except HTTPException:
        await db.rollback()
        raise
    except Exception as e:
        logger.error(f"Error cancelling order {order_id}: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to cancel order"
        )

    logger.info(f"Order {order.id} cancelled by buyer {current_user['user_id']}")
    await push_notifications([notification])
    return success_response((await serialize_orders(db, [order]))[0], message="Order cancelled")
