from fastapi import APIRouter, Depends, HTTPException, status, Query, Request, Header, BackgroundTasks
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, func, or_
from sqlalchemy.exc import IntegrityError
from config import get_db, PAYSTACK_CALLBACK_URL, PAYMENT_CURRENCY
from models import Payment, Order, User, WebhookEvent, PaymentStatus, PaymentMethod, OrderStatus
from routers.auth.auth import get_current_user
from routers.orders.helpers import load_order
from routers.notifications.helpers import push_notifications
from dependencies.rbac import require_payment_write
from utils.response_helpers import ApiResponse, success_response, safe_model_validate, safe_model_validate_list, build_pagination
from utils.notifications import send_email, get_payment_received_email
from .schemas import (
    PaymentInitialize,
    PaymentInitializeResponse,
    PaymentVerifyResponse,
    PaymentResponse,
    PaymentListResponse,
    WebhookAck,
)
from .paystack import (
    PaystackClient,
    PaystackError,
    PaystackNotConfigured,
    MOBILE_MONEY_PROVIDER_CODES,
    get_paystack_secret_key,
    verify_signature,
)
from .helpers import (
    FAILED_GATEWAY_STATUSES,
    generate_reference,
    get_payment_by_reference,
    apply_successful_charge,
    mark_payment_failed,
    retire_reference,
)
from typing import Optional
import json
import uuid
import logging

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/payments", tags=["Payments"])


async def _paystack_client(db: AsyncSession) -> PaystackClient:
    try:
        return PaystackClient(await get_paystack_secret_key(db))
    except PaystackNotConfigured as e:
        logger.error(str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Payment gateway is not configured"
        )


async def _email_seller_payment_received(db: AsyncSession, payment: Payment, background_tasks: BackgroundTasks):
    result = await db.execute(
        select(User.email).join(Order, Order.seller_id == User.id).where(Order.id == payment.order_id)
    )
    seller_email = result.scalar_one_or_none()
    if seller_email:
        subject, body = get_payment_received_email(str(payment.order_id), payment.amount, payment.reference)
        background_tasks.add_task(send_email, seller_email, subject, body)


@router.post("/initialize", response_model=ApiResponse[PaymentInitializeResponse])
async def initialize_payment(
    payment_data: PaymentInitialize,
    current_user = Depends(require_payment_write),
    db: AsyncSession = Depends(get_db)
):
    """
    Start a Paystack checkout for one of the buyer's orders.
    Re-initializing an unpaid order issues a new reference; the previous one
    still resolves to the same payment if the buyer completes that checkout.
    """
    order = await load_order(db, payment_data.order_id)
    if order.buyer_id != current_user["user_id"]:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Order not found"
        )
    if order.status == OrderStatus.CANCELLED.value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Cannot pay for a cancelled order"
        )
    if order.payment is not None and order.payment.status == PaymentStatus.COMPLETED.value:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Order is already paid"
        )

    client = await _paystack_client(db)
    reference = generate_reference()
    is_mobile_money = payment_data.method == PaymentMethod.MOBILE_MONEY
    metadata = {
        "order_id": str(order.id),
        "buyer_id": str(order.buyer_id),
    }
    if is_mobile_money:
        metadata["mobile_money"] = {
            "phone": payment_data.phone_number,
            "provider": MOBILE_MONEY_PROVIDER_CODES[payment_data.provider.value],
        }

    try:
        gateway_data = await client.initialize_transaction(
            email=current_user["email"],
            amount=order.total_amount,
            reference=reference,
            currency=PAYMENT_CURRENCY,
            callback_url=PAYSTACK_CALLBACK_URL,
            channels=["mobile_money"] if is_mobile_money else ["card"],
            metadata=metadata
        )
    except PaystackError as e:
        logger.error(f"Payment initialization failed for order {order.id}: {str(e)}")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Payment initialization failed: {str(e)}"
        )

    try:
        payment = order.payment
        if payment is None:
            payment = Payment(order_id=order.id)
            db.add(payment)
        payment.amount = order.total_amount
        payment.currency = PAYMENT_CURRENCY
        payment.method = payment_data.method.value
        payment.provider = payment_data.provider.value if payment_data.provider else None
        payment.phone_number = payment_data.phone_number
        retire_reference(db, payment, reference)
        payment.status = PaymentStatus.PENDING.value
        payment.gateway_response = gateway_data
        payment.paid_at = None
        await db.commit()

    except IntegrityError:
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="A payment for this order is already being initialized"
        )
    except Exception as e:
        logger.error(f"Error saving payment for order {order.id}: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to initialize payment"
        )

    logger.info(f"Payment {reference} initialized for order {order.id}")
    return success_response(PaymentInitializeResponse(
        authorization_url=gateway_data.get("authorization_url"),
        access_code=gateway_data.get("access_code"),
        reference=reference,
        payment=safe_model_validate(PaymentResponse, payment)
    ))


@router.get("/verify/{reference}", response_model=ApiResponse[PaymentVerifyResponse])
async def verify_payment(
    reference: str,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db)
):
    """
    Client-polled confirmation after the gateway redirect.
    The gateway is asked before the row is locked; the locked re-read then decides,
    so a webhook that settled the payment in the meantime wins.
    """
    payment = await get_payment_by_reference(db, reference)
    if not payment:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Payment not found"
        )

    applied = False
    notifications = []
    if payment.status != PaymentStatus.COMPLETED.value:
        client = await _paystack_client(db)
        try:
            gateway_data = await client.verify_transaction(reference)
        except PaystackError as e:
            logger.error(f"Payment verification failed for {reference}: {str(e)}")
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Payment verification failed: {str(e)}"
            )

        payment = await get_payment_by_reference(db, reference, for_update=True)

        gateway_status = gateway_data.get("status")
        if payment.status == PaymentStatus.COMPLETED.value:
            logger.info(f"Payment {reference} was settled while verifying")
        elif gateway_status == "success":
            applied, notifications = await apply_successful_charge(db, payment, {"reference": reference, **gateway_data})
        elif gateway_status in FAILED_GATEWAY_STATUSES:
            mark_payment_failed(payment, {"reference": reference, **gateway_data})
        elif payment.reference == reference:
            payment.status = PaymentStatus.PROCESSING.value
        await db.commit()

    await push_notifications(notifications)
    if applied:
        await _email_seller_payment_received(db, payment, background_tasks)

    order_result = await db.execute(select(Order.status).where(Order.id == payment.order_id))
    return success_response(PaymentVerifyResponse(
        reference=payment.reference,
        status=payment.status,
        order_id=str(payment.order_id),
        order_status=order_result.scalar_one(),
        payment=safe_model_validate(PaymentResponse, payment)
    ))


@router.post("/webhook/paystack", response_model=ApiResponse[WebhookAck])
async def paystack_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_paystack_signature: Optional[str] = Header(None),
    db: AsyncSession = Depends(get_db)
):
    """
    Gateway push notification, authenticated by HMAC-SHA512 of the raw body.
    Each event is recorded once; a replayed delivery is acknowledged without side effects.
    """
    raw_body = await request.body()
    try:
        secret_key = await get_paystack_secret_key(db)
    except PaystackNotConfigured as e:
        logger.error(str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Payment gateway is not configured"
        )

    if not verify_signature(secret_key, raw_body, x_paystack_signature):
        logger.warning("Rejected Paystack webhook with invalid signature")
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid signature"
        )

    try:
        event = json.loads(raw_body)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid payload"
        )

    event_type = event.get("event") or "unknown"
    data = event.get("data") or {}
    reference = data.get("reference")
    event_key = f"{event_type}:{data.get('id') or reference}"

    existing = await db.execute(select(WebhookEvent.id).where(WebhookEvent.event_key == event_key))
    if existing.scalar_one_or_none():
        logger.info(f"Duplicate Paystack webhook {event_key} ignored")
        return success_response(WebhookAck(duplicate=True))

    applied = False
    notifications = []
    try:
        db.add(WebhookEvent(
            provider="paystack",
            event_key=event_key,
            event_type=event_type,
            reference=reference,
            payload=event
        ))
        await db.flush()

        payment = await get_payment_by_reference(db, reference, for_update=True) if reference else None
        if payment is None:
            logger.warning(f"Paystack webhook {event_type} for unknown reference {reference}")
        elif event_type == "charge.success" and data.get("status", "success") == "success":
            applied, notifications = await apply_successful_charge(db, payment, data)
        elif event_type == "charge.failed":
            mark_payment_failed(payment, data)

        await db.commit()

    except IntegrityError:
        # Concurrent delivery of the same event won the insert
        await db.rollback()
        return success_response(WebhookAck(duplicate=True))
    except Exception as e:
        logger.error(f"Error processing Paystack webhook {event_key}: {str(e)}")
        await db.rollback()
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook processing failed"
        )

    await push_notifications(notifications)
    if applied:
        await _email_seller_payment_received(db, payment, background_tasks)
    return success_response(WebhookAck())


@router.get("/history", response_model=ApiResponse[PaymentListResponse])
async def payment_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Payments on orders where the user is the buyer or the seller"""
    user_id = current_user["user_id"]
    filters = [or_(Order.buyer_id == user_id, Order.seller_id == user_id)]

    total_result = await db.execute(
        select(func.count(Payment.id)).join(Order, Payment.order_id == Order.id).where(*filters)
    )
    total = total_result.scalar()

    result = await db.execute(
        select(Payment)
        .join(Order, Payment.order_id == Order.id)
        .where(*filters)
        .order_by(Payment.created_at.desc())
        .offset((page - 1) * limit)
        .limit(limit)
    )

    return success_response(PaymentListResponse(
        payments=safe_model_validate_list(PaymentResponse, result.scalars().all()),
        pagination=build_pagination(page, limit, total)
    ))


@router.get("/order/{order_id}", response_model=ApiResponse[PaymentResponse])
async def get_order_payment(
    order_id: uuid.UUID,
    current_user = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    order = await load_order(db, order_id)
    if current_user["user_id"] not in (order.buyer_id, order.seller_id):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="You do not have access to this order"
        )
    if order.payment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No payment found for this order"
        )
    return success_response(safe_model_validate(PaymentResponse, order.payment))
