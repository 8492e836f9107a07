"""Customer and admin notifications sent after fulfillment.

Both sends are best effort: a failure is logged and reported back as a
``Delivery`` so the caller can surface it, but it never undoes or fails the
fulfillment itself.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import parse_iso
from ..mailer import AdminSaleNotification, Mailer, PaymentConfirmationEmail
from ..model.db import Order, OrderType, User
from ..model.payloads import (
    EventDetails, MembershipDetails, OrderDetails, SessionDetails,
    parse_order_details,
)

logger = logging.getLogger(__name__)

DEFAULT_CUSTOMER_NAME = "Cliente"
DEFAULT_PAYMENT_METHOD = "Tarjeta"

SENT = "sent"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass(frozen=True)
class Delivery:
    status: str  # sent | skipped | failed
    error: Optional[str] = None

    def as_dict(self) -> dict:
        return {"status": self.status, "error": self.error}


@dataclass(frozen=True)
class Customer:
    email: Optional[str]
    name: str
    phone: Optional[str] = None


def _linked_user(order: Order) -> Optional[User]:
    # never trigger a lazy load from async code
    if "user" in inspect(order).unloaded:
        return None
    return order.user


async def resolve_customer(
    db: AsyncSession, order: Order, user_id: Optional[str]
) -> Customer:
    """Find who to write to: linked user, guest fields, user by id, metadata."""
    meta = order.meta or {}
    email = name = None

    user = _linked_user(order)
    if user is not None and user.email:
        email, name = user.email, user.name
    elif order.guest_email:
        email, name = order.guest_email, order.guest_name
    elif user_id:
        user = await db.get(User, user_id)
        if user is not None:
            email, name = user.email, user.name

    if not email:
        email = meta.get("customerEmail")
    name = name or meta.get("customerName") or DEFAULT_CUSTOMER_NAME

    return Customer(email=email, name=name, phone=meta.get("customerPhone"))


def sale_type_for(order_type: str, metadata: Optional[dict]) -> str:
    meta = metadata or {}
    if order_type == OrderType.SESSION:
        return "SESSION_PACK" if meta.get("productType") == "pack" else "SESSION"
    if order_type in (
        OrderType.MEMBERSHIP, OrderType.EVENT, OrderType.COURSE,
        OrderType.PREMIUM_CONTENT,
    ):
        return OrderType(order_type).value
    return "PRODUCT"


async def send_confirmation_email(
    db: AsyncSession,
    order: Order,
    user_id: Optional[str],
    mailer: Mailer,
    transaction_id: Optional[str] = None,
) -> Delivery:
    try:
        customer = await resolve_customer(db, order, user_id)
        if not customer.email:
            logger.warning("No email for order %s; confirmation not sent",
                           order.order_number)
            return Delivery(SKIPPED, "no customer email")

        await mailer.send_payment_confirmation(PaymentConfirmationEmail(
            email=customer.email,
            name=customer.name,
            order_number=order.order_number,
            order_type=order.order_type,
            item_name=order.item_name,
            amount=order.amount,
            currency=order.currency,
            payment_method=order.payment_method or DEFAULT_PAYMENT_METHOD,
            transaction_id=transaction_id,
        ))
        logger.info("Confirmation email sent for order %s",
                    order.order_number)
        return Delivery(SENT)
    except Exception as exc:
        logger.exception("Confirmation email failed for order %s",
                         order.order_number)
        return Delivery(FAILED, str(exc))


async def send_admin_sale_notification(
    db: AsyncSession,
    order: Order,
    user_id: Optional[str],
    mailer: Mailer,
    details: Optional[OrderDetails] = None,
    transaction_id: Optional[str] = None,
) -> Delivery:
    try:
        customer = await resolve_customer(db, order, user_id)
        if not customer.email:
            logger.warning("No customer email for order %s; admin not "
                           "notified", order.order_number)
            return Delivery(SKIPPED, "no customer email")

        if details is None:
            details = parse_order_details(
                order.order_type, order.meta, order.item_name
            )

        msg = AdminSaleNotification(
            sale_type=sale_type_for(order.order_type, order.meta),
            customer_name=customer.name,
            customer_email=customer.email,
            customer_phone=customer.phone,
            item_name=order.item_name,
            amount=order.amount,
            currency=order.currency,
            payment_method=order.payment_method or DEFAULT_PAYMENT_METHOD,
            order_number=order.order_number,
            transaction_id=transaction_id,
            session_date=parse_iso((order.meta or {}).get("scheduledAt")),
        )
        if isinstance(details, SessionDetails):
            if details.is_pack:
                msg.session_count = details.sessions_total
        elif isinstance(details, MembershipDetails):
            msg.membership_plan = order.item_name
            msg.membership_interval = details.billing_interval.value
        elif isinstance(details, EventDetails):
            msg.event_date = details.scheduled_at
            msg.event_seats = details.seats
            msg.event_type = details.event_type

        await mailer.send_admin_notification(msg)
        return Delivery(SENT)
    except Exception as exc:
        logger.exception("Admin notification failed for order %s",
                         order.order_number)
        return Delivery(FAILED, str(exc))
