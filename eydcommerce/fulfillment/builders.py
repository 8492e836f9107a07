"""One builder per order type, turning a paid order into domain rows.

Builders only add and flush; the orchestrator owns the transaction, so a
failure halfway (say, after the subscription but before its entitlement)
rolls everything back.
"""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..course_access import create_course_entitlement
from ..helpers import add_months
from ..packs import PACK_VALIDITY_MONTHS
from ..model.db import (
    BillingInterval, Booking, BookingType, Entitlement, EntitlementType,
    Order, OrderType, PaymentStatus, Subscription,
)
from ..model.payloads import (
    CourseDetails, EventDetails, MembershipDetails, OrderDetails,
    SessionDetails,
)

logger = logging.getLogger(__name__)

# no 0/O, 1/I: codes get typed in by hand
PACK_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
PACK_CODE_LENGTH = 6


@dataclass(frozen=True)
class CreatedResource:
    type: str  # subscription | booking | entitlement
    id: str


Builder = Callable[
    [AsyncSession, Order, OrderDetails, str, datetime],
    Awaitable[List[CreatedResource]],
]


def current_period_end(start: datetime, interval: BillingInterval) -> datetime:
    if interval == BillingInterval.YEARLY:
        return add_months(start, 12)
    return add_months(start, 1)


def payment_provider_for(payment_method: Optional[str]) -> str:
    method = (payment_method or "").upper()
    if "WOMPI" in method:
        return "wompi_nequi" if "NEQUI" in method else "wompi_card"
    if "EPAYCO" in method:
        return "epayco_paypal" if "PAYPAL" in method else "epayco_card"
    return "unknown"


def generate_pack_code() -> str:
    body = "".join(
        secrets.choice(PACK_CODE_ALPHABET) for _ in range(PACK_CODE_LENGTH)
    )
    return f"PACK-{body}"


async def build_membership(
    db: AsyncSession, order: Order, details: MembershipDetails,
    user_id: str, now: datetime,
) -> List[CreatedResource]:
    period_end = current_period_end(now, details.billing_interval)

    subscription = Subscription(
        user_id=user_id,
        membership_tier_id=order.item_id,
        membership_tier_name=order.item_name,
        status="ACTIVE",
        payment_provider=payment_provider_for(order.payment_method),
        billing_interval=details.billing_interval.value,
        amount=order.amount,
        currency=order.currency,
        start_date=now,
        current_period_start=now,
        current_period_end=period_end,
    )
    db.add(subscription)
    await db.flush()

    db.add(Entitlement(
        user_id=user_id,
        type=EntitlementType.MEMBERSHIP.value,
        resource_id=order.item_id,
        resource_name=order.item_name,
        expires_at=period_end,
        subscription_id=subscription.id,
        order_id=order.id,
    ))
    await db.flush()

    logger.info("Membership %s created for user %s (until %s)",
                subscription.id, user_id, period_end.isoformat())
    return [CreatedResource("subscription", subscription.id)]


async def build_session(
    db: AsyncSession, order: Order, details: SessionDetails,
    user_id: str, now: datetime,
) -> List[CreatedResource]:
    meta = None
    if details.is_pack:
        expires = add_months(now, PACK_VALIDITY_MONTHS)
        meta = {"packCode": generate_pack_code(),
                "generatedAt": now.isoformat(),
                "expiresAt": expires.isoformat()}

    booking = Booking(
        user_id=user_id,
        booking_type=BookingType.SESSION_1_ON_1.value,
        resource_id=order.item_id,
        resource_name=order.item_name,
        status="CONFIRMED",
        payment_status=PaymentStatus.COMPLETED.value,
        payment_method=order.payment_method,
        amount=order.amount,
        currency=order.currency,
        sessions_total=details.sessions_total,
        sessions_remaining=details.sessions_total,
        scheduled_at=details.scheduled_at,
        meta=meta,
    )
    db.add(booking)
    await db.flush()

    if details.is_pack:
        logger.info("Session pack %s created, code %s",
                    booking.id, meta["packCode"])
    else:
        logger.info("Session %s confirmed for %s",
                    booking.id, details.scheduled_at.isoformat())
    return [CreatedResource("booking", booking.id)]


async def build_event(
    db: AsyncSession, order: Order, details: EventDetails,
    user_id: str, now: datetime,
) -> List[CreatedResource]:
    booking = Booking(
        user_id=user_id,
        booking_type=BookingType.EVENT.value,
        resource_id=order.item_id,
        resource_name=order.item_name,
        status="CONFIRMED",
        payment_status=PaymentStatus.COMPLETED.value,
        payment_method=order.payment_method,
        amount=order.amount,
        currency=order.currency,
        scheduled_at=details.scheduled_at,
        meta={"seats": details.seats},
    )
    db.add(booking)
    db.add(Entitlement(
        user_id=user_id,
        type=EntitlementType.EVENT.value,
        resource_id=order.item_id,
        resource_name=order.item_name,
        order_id=order.id,
    ))
    await db.flush()

    logger.info("Event booking %s confirmed (%d seats)",
                booking.id, details.seats)
    return [CreatedResource("booking", booking.id)]


async def build_course(
    db: AsyncSession, order: Order, details: CourseDetails,
    user_id: str, now: datetime,
) -> List[CreatedResource]:
    if not details.course_ids and not details.items:
        logger.error("No courseIds in metadata for order %s", order.id)
        return []

    created = []
    for item in details.items:
        await create_course_entitlement(
            db,
            user_id=user_id,
            course_id=item.id,
            course_name=item.name,
            order_id=order.id,
        )
        created.append(CreatedResource("entitlement", item.id))

    logger.info("Courses granted: %s", ", ".join(i.name for i in details.items))
    return created


BUILDERS: Dict[OrderType, Builder] = {
    OrderType.MEMBERSHIP: build_membership,
    OrderType.SESSION: build_session,
    OrderType.EVENT: build_event,
    OrderType.COURSE: build_course,
}
