"""Gateway webhook handling shared by every provider.

Each verified notification is recorded in ``webhook_events`` under a
deterministic id, so a redelivered state change is recognized and skipped.
Approved payments are handed to the fulfillment pipeline.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping, Optional

import httpx
from sqlalchemy import JSON, bindparam, select, text, update
from sqlalchemy.ext.asyncio import AsyncSession

from .fulfillment import ProcessPaymentResult, process_approved_payment
from .helpers import new_id, now_ts, utcnow
from .mailer import Mailer
from .model.db import PaymentStatus, WebhookEvent, load_order
from .payments import GatewayEvent, PaymentGateway, payment_status_for
from .payments.base import APPROVED, DECLINED, ERROR, VOIDED

logger = logging.getLogger(__name__)

# orders are immutable once they leave these
OPEN_STATUSES = (PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value)


@dataclass
class WebhookResult:
    success: bool
    processed: bool
    event_id: Optional[str] = None
    error: Optional[str] = None
    payment: Optional[ProcessPaymentResult] = None

    def as_dict(self) -> dict:
        out = {
            "success": self.success,
            "processed": self.processed,
            "eventId": self.event_id,
            "error": self.error,
        }
        if self.payment is not None:
            out["payment"] = self.payment.as_dict()
        return out


def event_id_for(provider: str, event: GatewayEvent) -> str:
    return f"{provider}_{event.transaction_id or 'unknown'}_{event.status}"


async def is_event_processed(db: AsyncSession, event_id: str) -> bool:
    processed = (await db.execute(
        select(WebhookEvent.processed).where(WebhookEvent.event_id == event_id)
    )).scalar_one_or_none()
    return bool(processed)


async def register_event(
    db: AsyncSession, event_id: str, provider: str, event: GatewayEvent
) -> None:
    stmt = text("""
      INSERT INTO webhook_events(id, provider, event_id, event_type, payload,
                                 processed, failed, retry_count, created_at)
      VALUES(:id, :provider, :event_id, :event_type, :payload,
             false, false, 0, :created_at)
      ON CONFLICT (event_id) DO NOTHING
    """).bindparams(bindparam("payload", type_=JSON))
    await db.execute(stmt, {
        "id": new_id(),
        "provider": provider,
        "event_id": event_id,
        "event_type": event.event_type or "unknown",
        "payload": event.raw,
        "created_at": now_ts(),
    })
    await db.commit()


async def mark_event_processed(db: AsyncSession, event_id: str) -> None:
    await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.event_id == event_id)
        .values(processed=True, processed_at=now_ts())
    )
    await db.commit()


async def mark_event_failed(
    db: AsyncSession, event_id: str, error: str
) -> None:
    await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.event_id == event_id)
        .values(
            failed=True,
            error_message=error[:1000],
            retry_count=WebhookEvent.retry_count + 1,
        )
    )
    await db.commit()


async def apply_gateway_event(
    db: AsyncSession,
    provider: str,
    event: GatewayEvent,
    *,
    mailer: Mailer,
) -> WebhookResult:
    event_id = event_id_for(provider, event)

    if await is_event_processed(db, event_id):
        logger.info("[%s] event %s already processed", provider, event_id)
        return WebhookResult(success=True, processed=False, event_id=event_id)

    await register_event(db, event_id, provider, event)

    if not event.reference:
        logger.warning("[%s] no reference in event %s", provider, event_id)
        return WebhookResult(success=True, processed=False, event_id=event_id)

    order = await load_order(db, order_number=event.reference)
    if order is None:
        logger.error("[%s] order not found: %s", provider, event.reference)
        return WebhookResult(
            success=True, processed=False, event_id=event_id,
            error=f"Order not found: {event.reference}",
        )
    order_number = order.order_number

    try:
        new_status = payment_status_for(event.status).value
        if order.payment_status in OPEN_STATUSES:
            order.payment_status = new_status
        elif order.payment_status != new_status:
            logger.warning("[%s] order %s is %s, ignoring %s",
                           provider, order_number, order.payment_status,
                           event.status)
        order.meta = {
            **(order.meta or {}),
            f"{provider}TransactionId": event.transaction_id,
            f"{provider}Status": event.status,
            f"{provider}UpdatedAt": utcnow().isoformat(),
        }
        await db.commit()

        payment = None
        if (event.status == APPROVED
                and order.payment_status == PaymentStatus.COMPLETED):
            payment = await process_approved_payment(
                db, order, mailer=mailer, transaction_id=event.transaction_id
            )
            if not payment.success:
                logger.error("[%s] processing failed for order %s: %s",
                             provider, order_number, payment.error)
                await mark_event_failed(
                    db, event_id, payment.error or "Unknown error"
                )
                return WebhookResult(
                    success=False, processed=False, event_id=event_id,
                    error=payment.error, payment=payment,
                )
        elif event.status in (DECLINED, ERROR, VOIDED):
            logger.info("[%s] payment %s for order %s",
                        provider, event.status, order_number)

        await mark_event_processed(db, event_id)
    except Exception as exc:
        logger.exception("[%s] error processing event %s", provider, event_id)
        await db.rollback()
        await mark_event_failed(db, event_id, str(exc))
        return WebhookResult(
            success=False, processed=False, event_id=event_id, error=str(exc)
        )

    logger.info("[%s] processed event %s for order %s",
                provider, event_id, order_number)
    return WebhookResult(
        success=True, processed=True, event_id=event_id, payment=payment
    )


async def process_payment_webhook(
    db: AsyncSession,
    gateway: PaymentGateway,
    payload: bytes,
    headers: Mapping[str, str],
    *,
    mailer: Mailer,
) -> WebhookResult:
    # invalid signatures and payloads raise HTTPException (401/400)
    event = gateway.verify_webhook(payload, headers)
    return await apply_gateway_event(db, gateway.name, event, mailer=mailer)


async def verify_transaction(
    db: AsyncSession,
    gateway: PaymentGateway,
    http: httpx.AsyncClient,
    transaction_id: str,
    *,
    mailer: Mailer,
) -> WebhookResult:
    """Poll the gateway for a transaction and apply its current state.

    Used when a webhook never arrived. Raises ``GatewayError`` when the
    gateway cannot answer.
    """
    event = await gateway.fetch_transaction(http, transaction_id)
    return await apply_gateway_event(db, gateway.name, event, mailer=mailer)
