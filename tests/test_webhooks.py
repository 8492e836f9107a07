"""Tests for webhook event bookkeeping and order reconciliation."""
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from sqlalchemy import func, select

from eydcommerce.fulfillment import ProcessPaymentResult
from eydcommerce.model.db import Booking, OrderType, WebhookEvent
from eydcommerce.payments import GatewayEvent, Wompi
from eydcommerce.webhooks import (
    apply_gateway_event, event_id_for, process_payment_webhook,
    verify_transaction,
)

from tests.test_gateways import EVENTS_SECRET, wompi_body, wompi_headers

SCHEDULED = {"scheduledAt": "2024-02-01T15:00:00Z"}


def gateway_event(status="APPROVED", reference="EYD-0001", tx="tx-1"):
    return GatewayEvent(
        event_type="transaction.updated",
        transaction_id=tx,
        status=status,
        reference=reference,
        amount=15000000,
        currency="COP",
        raw={"id": tx},
    )


async def stored_event(db, event_id):
    return (await db.execute(
        select(WebhookEvent)
        .where(WebhookEvent.event_id == event_id)
        .execution_options(populate_existing=True)
    )).scalar_one()


class TestApplyGatewayEvent:

    @pytest.mark.asyncio
    async def test_approved_payment_is_fulfilled(self, db, mailer, make_user,
                                                 make_order):
        user = await make_user()
        order = await make_order(OrderType.SESSION, user=user, meta=SCHEDULED)

        result = await apply_gateway_event(
            db, "wompi", gateway_event(), mailer=mailer
        )

        assert result.success and result.processed
        assert result.event_id == "wompi_tx-1_APPROVED"
        assert result.payment.success
        assert order.payment_status == "COMPLETED"
        assert order.meta["wompiTransactionId"] == "tx-1"
        assert order.meta["wompiStatus"] == "APPROVED"
        assert "wompiUpdatedAt" in order.meta
        assert order.meta["scheduledAt"] == SCHEDULED["scheduledAt"]

        stored = await stored_event(db, result.event_id)
        assert stored.processed
        assert stored.processed_at is not None
        assert stored.provider == "wompi"
        assert stored.payload == {"id": "tx-1"}

    @pytest.mark.asyncio
    async def test_redelivery_is_skipped(self, db, mailer, make_user,
                                         make_order):
        user = await make_user()
        await make_order(OrderType.SESSION, user=user, meta=SCHEDULED)

        await apply_gateway_event(db, "wompi", gateway_event(), mailer=mailer)
        again = await apply_gateway_event(
            db, "wompi", gateway_event(), mailer=mailer
        )

        assert again.success and not again.processed
        n = (await db.execute(select(func.count(WebhookEvent.id)))).scalar_one()
        assert n == 1
        assert (await db.execute(
            select(func.count(Booking.id))
        )).scalar_one() == 1

    @pytest.mark.asyncio
    async def test_declined_payment_updates_status_only(self, db, mailer,
                                                        make_user, make_order):
        user = await make_user()
        order = await make_order(OrderType.SESSION, user=user, meta=SCHEDULED)

        result = await apply_gateway_event(
            db, "epayco", gateway_event(status="DECLINED"), mailer=mailer
        )

        assert result.success and result.processed
        assert order.payment_status == "FAILED"
        assert order.meta["epaycoStatus"] == "DECLINED"
        assert (await db.execute(select(Booking))).first() is None
        mailer.send_payment_confirmation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_late_decline_keeps_completed_order(self, db, mailer,
                                                      make_user, make_order):
        user = await make_user()
        order = await make_order(OrderType.SESSION, user=user, meta=SCHEDULED)

        await apply_gateway_event(db, "wompi", gateway_event(), mailer=mailer)
        result = await apply_gateway_event(
            db, "wompi", gateway_event(status="DECLINED"), mailer=mailer
        )

        assert result.success and result.processed
        assert order.payment_status == "COMPLETED"
        assert order.meta["wompiStatus"] == "DECLINED"
        assert (await db.execute(
            select(func.count(Booking.id))
        )).scalar_one() == 1

    @pytest.mark.asyncio
    async def test_late_approval_does_not_revive_failed_order(
            self, db, mailer, make_user, make_order):
        user = await make_user()
        order = await make_order(OrderType.SESSION, user=user, meta=SCHEDULED)

        await apply_gateway_event(
            db, "wompi", gateway_event(status="DECLINED"), mailer=mailer
        )
        result = await apply_gateway_event(
            db, "wompi", gateway_event(), mailer=mailer
        )

        assert result.success and result.payment is None
        assert order.payment_status == "FAILED"
        assert (await db.execute(select(Booking))).first() is None
        mailer.send_payment_confirmation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_approval_of_manually_confirmed_order(self, db, mailer,
                                                        make_user, make_order):
        user = await make_user()
        await make_order(OrderType.SESSION, user=user, meta=SCHEDULED,
                         payment_status="COMPLETED")

        result = await apply_gateway_event(
            db, "wompi", gateway_event(), mailer=mailer
        )

        assert result.success and result.processed
        assert result.payment.success
        assert len(result.payment.created_resources) == 1

    @pytest.mark.asyncio
    async def test_unknown_order(self, db, mailer):
        result = await apply_gateway_event(
            db, "wompi", gateway_event(reference="NOPE"), mailer=mailer
        )

        assert result.success and not result.processed
        assert result.error == "Order not found: NOPE"
        stored = await stored_event(db, result.event_id)
        assert not stored.processed

    @pytest.mark.asyncio
    async def test_missing_reference(self, db, mailer):
        result = await apply_gateway_event(
            db, "wompi", gateway_event(reference=None), mailer=mailer
        )

        assert result.success and not result.processed
        assert result.error is None

    @pytest.mark.asyncio
    async def test_failed_processing_marks_event(self, db, mailer, make_user,
                                                 make_order):
        user = await make_user()
        await make_order(OrderType.SESSION, user=user, meta={})

        result = await apply_gateway_event(
            db, "wompi", gateway_event(), mailer=mailer
        )

        assert not result.success
        assert "scheduledAt" in result.error
        stored = await stored_event(db, result.event_id)
        assert stored.failed
        assert not stored.processed
        assert stored.retry_count == 1
        assert "scheduledAt" in stored.error_message

    @pytest.mark.asyncio
    async def test_unexpected_error_marks_event(self, db, mailer, make_user,
                                                make_order):
        user = await make_user()
        await make_order(OrderType.SESSION, user=user, meta=SCHEDULED)

        with patch("eydcommerce.webhooks.process_approved_payment",
                   AsyncMock(side_effect=RuntimeError("kaput"))):
            result = await apply_gateway_event(
                db, "wompi", gateway_event(), mailer=mailer
            )

        assert not result.success
        assert result.error == "kaput"
        stored = await stored_event(db, result.event_id)
        assert stored.failed and stored.retry_count == 1

    @pytest.mark.asyncio
    async def test_retry_after_failure(self, db, mailer, make_user,
                                       make_order):
        user = await make_user()
        await make_order(OrderType.SESSION, user=user, meta=SCHEDULED)
        failing = AsyncMock(return_value=ProcessPaymentResult(
            success=False, error="temporary"
        ))

        with patch("eydcommerce.webhooks.process_approved_payment", failing):
            await apply_gateway_event(
                db, "wompi", gateway_event(), mailer=mailer
            )
        result = await apply_gateway_event(
            db, "wompi", gateway_event(), mailer=mailer
        )

        assert result.success and result.processed
        stored = await stored_event(db, result.event_id)
        assert stored.processed and stored.retry_count == 1


def test_event_id_is_deterministic():
    event = gateway_event(status="PENDING", tx="abc")
    assert event_id_for("wompi", event) == "wompi_abc_PENDING"
    assert event_id_for("wompi", event) != event_id_for(
        "wompi", gateway_event(status="APPROVED", tx="abc")
    )


class TestProcessPaymentWebhook:

    @pytest.mark.asyncio
    async def test_signed_wompi_webhook(self, db, mailer, make_user,
                                        make_order):
        user = await make_user()
        order = await make_order(OrderType.SESSION, user=user, meta=SCHEDULED)
        gateway = Wompi(events_secret=EVENTS_SECRET)
        body = wompi_body(reference=order.order_number)

        result = await process_payment_webhook(
            db, gateway, body, wompi_headers(body), mailer=mailer
        )

        assert result.success and result.processed
        assert order.payment_status == "COMPLETED"


class TestVerifyTransaction:

    @pytest.mark.asyncio
    async def test_polls_gateway_and_applies(self, db, mailer, make_user,
                                             make_order):
        user = await make_user()
        order = await make_order(OrderType.SESSION, user=user, meta=SCHEDULED)
        gateway = Wompi(private_key="prv_test")
        http = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"data": {
                "id": "tx-7", "status": "APPROVED",
                "reference": order.order_number,
                "amount_in_cents": order.amount, "currency": "COP",
            }})
        ))

        result = await verify_transaction(db, gateway, http, "tx-7",
                                          mailer=mailer)
        await http.aclose()

        assert result.success and result.processed
        assert result.event_id == "wompi_tx-7_APPROVED"
        assert order.payment_status == "COMPLETED"
