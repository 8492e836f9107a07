"""Turn an approved payment into access for the buyer.

``process_approved_payment`` is the single entry point used by the webhook
processor and the admin confirmation route. It is safe to call repeatedly
for the same order and it never raises: every outcome, including failures,
comes back as a ``ProcessPaymentResult``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from ..discounts import record_discount_usage
from ..helpers import utcnow
from ..infra.timings import timeit
from ..mailer import Mailer
from ..model.db import Order
from ..model.payloads import parse_order_details
from .builders import BUILDERS, CreatedResource
from .duplicates import check_for_duplicate_processing, claim_fulfillment
from .guests import find_or_create_user_for_guest
from .notify import (
    FAILED, Delivery, send_admin_sale_notification, send_confirmation_email,
)

logger = logging.getLogger(__name__)

NO_USER_ERROR = "No se pudo determinar el usuario"


@dataclass
class ProcessPaymentResult:
    success: bool
    error: Optional[str] = None
    user_id: Optional[str] = None
    created_resources: List[CreatedResource] = field(default_factory=list)
    duplicate: bool = False
    notifications: Dict[str, Delivery] = field(default_factory=dict)

    @property
    def degraded(self) -> bool:
        # fulfilled, but somebody did not hear about it
        return self.success and any(
            d.status == FAILED for d in self.notifications.values()
        )

    def as_dict(self) -> dict:
        return {
            "success": self.success,
            "error": self.error,
            "userId": self.user_id,
            "createdResources": [
                {"type": r.type, "id": r.id} for r in self.created_resources
            ],
            "duplicate": self.duplicate,
            "degraded": self.degraded,
            "notifications": {
                k: d.as_dict() for k, d in self.notifications.items()
            },
        }


async def _resolve_user(db: AsyncSession, order: Order) -> Optional[str]:
    user_id = order.user_id
    meta = order.meta or {}
    is_guest = meta.get("isGuestCheckout") or (not user_id and order.guest_email)
    if not (is_guest and order.guest_email):
        return user_id

    user_id = await find_or_create_user_for_guest(
        db, order.guest_email, order.guest_name
    )
    order.user_id = user_id
    # reassign so the JSON column is flagged dirty
    order.meta = {
        **meta,
        "convertedFromGuest": True,
        "convertedAt": utcnow().isoformat(),
    }
    await db.commit()
    logger.info("Order %s linked to user %s (guest checkout)",
                order.order_number, user_id)
    return user_id


async def process_approved_payment(
    db: AsyncSession,
    order: Order,
    *,
    mailer: Mailer,
    skip_email: bool = False,
    transaction_id: Optional[str] = None,
) -> ProcessPaymentResult:
    # a rollback expires the instance; keep what the logs need
    order_id = order.id
    order_number = order.order_number

    try:
        details = parse_order_details(
            order.order_type, order.meta, order.item_name
        )

        user_id = await _resolve_user(db, order)
        if not user_id:
            logger.error("Could not determine user for order %s", order_id)
            return ProcessPaymentResult(success=False, error=NO_USER_ERROR)

        if await check_for_duplicate_processing(db, order, user_id, details):
            await db.commit()
            logger.info("Order %s already fulfilled, skipping", order_number)
            return ProcessPaymentResult(
                success=True, user_id=user_id, duplicate=True
            )

        async with timeit("fulfillment.build"):
            if not await claim_fulfillment(db, order_id, order.order_type):
                await db.commit()
                logger.info("Order %s claimed by another delivery, skipping",
                            order_number)
                return ProcessPaymentResult(
                    success=True, user_id=user_id, duplicate=True
                )

            created: List[CreatedResource] = []
            builder = BUILDERS.get(order.order_type)
            if builder is None:
                logger.info("Unhandled order type %s for order %s",
                            order.order_type, order_number)
            else:
                created = await builder(db, order, details, user_id, utcnow())

            if (order.discount_code_id and order.discount_code
                    and order.discount_amount):
                await record_discount_usage(
                    db,
                    discount_code_id=order.discount_code_id,
                    discount_code=order.discount_code,
                    user_id=user_id,
                    order_id=order_id,
                    discount_amount=order.discount_amount,
                    currency=order.currency,
                )

            await db.commit()
    except Exception as exc:
        logger.exception("Error processing order %s", order_id)
        try:
            await db.rollback()
        except Exception:
            logger.exception("Rollback failed for order %s", order_id)
        return ProcessPaymentResult(success=False, error=str(exc))

    notifications: Dict[str, Delivery] = {}
    if not skip_email:
        notifications["customer"] = await send_confirmation_email(
            db, order, user_id, mailer, transaction_id=transaction_id
        )
    notifications["admin"] = await send_admin_sale_notification(
        db, order, user_id, mailer, details=details,
        transaction_id=transaction_id,
    )

    logger.info("Payment processed for order %s (%d resources)",
                order_number, len(created))
    return ProcessPaymentResult(
        success=True,
        user_id=user_id,
        created_resources=created,
        notifications=notifications,
    )
