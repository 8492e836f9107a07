"""Protection against fulfilling the same order twice.

Two layers: ``check_for_duplicate_processing`` looks for resources created
for this purchase in the last 24 hours (also catches rows written by other
paths), and ``claim_fulfillment`` inserts a deterministic key inside the
fulfillment transaction so concurrent deliveries cannot both win.
"""
import hashlib

from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from ..helpers import now_ts
from ..model.db import (
    Booking, Entitlement, EntitlementType, Order, OrderType, PaymentStatus,
    Subscription,
)
from ..model.payloads import CourseDetails, OrderDetails

RECENT_WINDOW_SECONDS = 24 * 60 * 60


async def check_for_duplicate_processing(
    db: AsyncSession, order: Order, user_id: str, details: OrderDetails
) -> bool:
    cutoff = now_ts() - RECENT_WINDOW_SECONDS

    if order.order_type == OrderType.MEMBERSHIP:
        found = (await db.execute(
            select(Subscription.id).where(
                Subscription.user_id == user_id,
                Subscription.membership_tier_id == order.item_id,
                Subscription.created_at >= cutoff,
            ).limit(1)
        )).first()
        return found is not None

    if order.order_type in (OrderType.SESSION, OrderType.EVENT):
        found = (await db.execute(
            select(Booking.id).where(
                Booking.user_id == user_id,
                Booking.resource_id == order.item_id,
                Booking.payment_status == PaymentStatus.COMPLETED.value,
                Booking.created_at >= cutoff,
            ).limit(1)
        )).first()
        return found is not None

    if order.order_type == OrderType.COURSE:
        course_ids = (
            details.course_ids if isinstance(details, CourseDetails) else ()
        )
        if not course_ids:
            return False
        count = (await db.execute(
            select(func.count(func.distinct(Entitlement.resource_id))).where(
                Entitlement.user_id == user_id,
                Entitlement.type == EntitlementType.COURSE.value,
                Entitlement.resource_id.in_(course_ids),
                Entitlement.order_id == order.id,
            )
        )).scalar_one()
        # all-or-nothing: a partial overlap is fulfilled again
        return count == len(set(course_ids))

    # PRODUCT / PREMIUM_CONTENT: only the fulfillment key protects these
    return False


def fulfillment_key(order_id: str, kind: str) -> str:
    return hashlib.sha256(f"{order_id}:{kind}".encode()).hexdigest()


async def claim_fulfillment(db: AsyncSession, order_id: str, kind: str) -> bool:
    """Insert the order's fulfillment key; False if it is already taken.

    Runs in the caller's transaction, so the key only becomes visible to
    other deliveries together with the resources it guards.
    """
    row = (await db.execute(text("""
      INSERT INTO fulfillment_keys(key, order_id, kind, created_at)
      VALUES(:key, :order_id, :kind, :created_at)
      ON CONFLICT (key) DO NOTHING
      RETURNING key
    """), {
        "key": fulfillment_key(order_id, kind),
        "order_id": order_id,
        "kind": kind,
        "created_at": now_ts(),
    })).first()
    return row is not None
