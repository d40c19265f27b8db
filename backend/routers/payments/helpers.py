from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from models import (
    Payment, PaymentReference, Order, Transaction, Notification,
    PaymentStatus, OrderStatus, NotificationType, utcnow
)
from routers.notifications.helpers import notify
from routers.orders.helpers import set_order_status
from .paystack import to_minor_units
from typing import Any, Dict, List, Tuple
from datetime import datetime
import secrets
import time
import logging

logger = logging.getLogger(__name__)

SUCCESSFUL_CHARGE_TYPE = "charge"
FAILED_GATEWAY_STATUSES = {"failed", "abandoned", "reversed"}


def generate_reference() -> str:
    """AGR_<epoch ms>_<8 hex>"""
    return f"AGR_{int(time.time() * 1000)}_{secrets.token_hex(4)}"


def _parse_paid_at(gateway_data: Dict[str, Any]) -> datetime:
    raw = gateway_data.get("paid_at") or gateway_data.get("paidAt")
    if raw:
        try:
            return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Unparseable paid_at from gateway: {raw}")
    return utcnow()


async def get_payment_by_reference(db: AsyncSession, reference: str, for_update: bool = False):
    """
    Find a payment by its current reference or by one it superseded.
    A locked read also refreshes an instance already loaded in the session.
    """
    current = select(Payment).where(Payment.reference == reference)
    superseded = (
        select(Payment)
        .join(PaymentReference, PaymentReference.payment_id == Payment.id)
        .where(PaymentReference.reference == reference)
    )
    for query in (current, superseded):
        if for_update:
            query = query.with_for_update(of=Payment).execution_options(populate_existing=True)
        result = await db.execute(query)
        payment = result.scalar_one_or_none()
        if payment is not None:
            return payment
    return None


def retire_reference(db: AsyncSession, payment: Payment, new_reference: str) -> None:
    """Give the payment a new reference, keeping the old one resolvable"""
    if payment.id is not None and payment.reference and payment.reference != new_reference:
        db.add(PaymentReference(payment_id=payment.id, reference=payment.reference))
    payment.reference = new_reference


async def _restore_charged_reference(db: AsyncSession, payment: Payment, charged_reference: str) -> None:
    """Swap a superseded reference back onto the payment once it is the one that got paid"""
    result = await db.execute(
        select(PaymentReference).where(
            PaymentReference.payment_id == payment.id,
            PaymentReference.reference == charged_reference
        )
    )
    superseded = result.scalar_one_or_none()
    if superseded is None:
        return
    superseded.reference, payment.reference = payment.reference, charged_reference


async def apply_successful_charge(
    db: AsyncSession,
    payment: Payment,
    gateway_data: Dict[str, Any]
) -> Tuple[bool, List[Notification]]:
    """
    Settle a payment the gateway reports as successful.
    Shared by verify and webhook; a payment already COMPLETED is left untouched,
    so repeated success reports have no further effect. The caller commits.

    Returns (applied, notifications to push after commit).
    """
    charged_reference = gateway_data.get("reference") or payment.reference

    if payment.status == PaymentStatus.COMPLETED.value:
        if charged_reference != payment.reference:
            logger.warning(
                f"Second charge {charged_reference} for already completed payment {payment.reference}; refund required"
            )
        else:
            logger.info(f"Payment {payment.reference} already completed; ignoring repeat success")
        return False, []

    gateway_amount = gateway_data.get("amount")
    if gateway_amount is not None and int(gateway_amount) != to_minor_units(payment.amount):
        logger.error(
            f"Amount mismatch for {payment.reference}: gateway {gateway_amount}, "
            f"expected {to_minor_units(payment.amount)}"
        )
        payment.status = PaymentStatus.FAILED.value
        payment.gateway_response = gateway_data
        return False, []

    result = await db.execute(select(Order).where(Order.id == payment.order_id))
    order = result.scalar_one()

    if charged_reference != payment.reference:
        logger.info(f"Payment {payment.reference} settled through earlier reference {charged_reference}")
        await _restore_charged_reference(db, payment, charged_reference)

    payment.status = PaymentStatus.COMPLETED.value
    payment.paid_at = _parse_paid_at(gateway_data)
    payment.gateway_response = gateway_data

    if order.status == OrderStatus.PENDING.value:
        set_order_status(order, OrderStatus.CONFIRMED.value)
    elif order.status == OrderStatus.CANCELLED.value:
        logger.warning(f"Payment {payment.reference} completed for cancelled order {order.id}; refund required")

    db.add(Transaction(
        payment_id=payment.id,
        type=SUCCESSFUL_CHARGE_TYPE,
        amount=payment.amount,
        reference=payment.reference,
        status="success",
        gateway_data={
            "id": gateway_data.get("id"),
            "channel": gateway_data.get("channel"),
            "currency": gateway_data.get("currency"),
            "gateway_response": gateway_data.get("gateway_response"),
        }
    ))

    notifications = [
        notify(
            db,
            order.seller_id,
            NotificationType.PAYMENT,
            "Payment Received",
            f"Payment of GHS {payment.amount:.2f} received for order #{str(order.id)[:8]}",
            {"order_id": str(order.id), "reference": payment.reference}
        ),
        notify(
            db,
            order.buyer_id,
            NotificationType.PAYMENT,
            "Payment Successful",
            f"Your payment of GHS {payment.amount:.2f} was successful",
            {"order_id": str(order.id), "reference": payment.reference}
        ),
    ]
    logger.info(f"Payment {payment.reference} completed for order {order.id}")
    return True, notifications


def mark_payment_failed(payment: Payment, gateway_data: Dict[str, Any]) -> bool:
    """A completed payment never goes back to FAILED, and a superseded checkout cannot fail the current one"""
    if payment.status == PaymentStatus.COMPLETED.value:
        return False
    failed_reference = gateway_data.get("reference") or payment.reference
    if failed_reference != payment.reference:
        logger.info(f"Ignoring failure of superseded reference {failed_reference} for payment {payment.reference}")
        return False
    payment.status = PaymentStatus.FAILED.value
    payment.gateway_response = gateway_data
    logger.info(f"Payment {payment.reference} marked failed")
    return True
