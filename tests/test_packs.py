"""Tests for pack code validation and redemption."""
from datetime import datetime

import pytest
from sqlalchemy import func, select

from eydcommerce.fulfillment.processor import process_approved_payment
from eydcommerce.model.db import Booking, OrderType
from eydcommerce.packs import (
    PackCodeError, redeem_pack_session, validate_pack_code,
)

SLOT = datetime(2024, 7, 10, 15, 0)


async def add_pack(db, user_id, code="PACK-ABC234", remaining=8,
                   status="CONFIRMED", expires="2099-01-01T00:00:00"):
    pack = Booking(
        user_id=user_id,
        booking_type="SESSION_1_ON_1",
        resource_id="session-pack",
        resource_name="Pack de 8 Sesiones",
        status=status,
        payment_status="COMPLETED",
        amount=100000000,
        currency="COP",
        sessions_total=8,
        sessions_remaining=remaining,
        meta={"packCode": code, "generatedAt": "2024-01-01T00:00:00",
              "expiresAt": expires},
    )
    db.add(pack)
    await db.commit()
    return pack.id


async def remaining_of(db, pack_id):
    return (await db.execute(
        select(Booking.sessions_remaining).where(Booking.id == pack_id)
    )).scalar_one()


async def booking_count(db):
    return (await db.execute(select(func.count(Booking.id)))).scalar_one()


class TestValidatePackCode:

    @pytest.mark.asyncio
    async def test_valid_code_is_normalized(self, db, make_user):
        user_id = (await make_user()).id
        pack_id = await add_pack(db, user_id, remaining=5)

        pack = await validate_pack_code(db, "  pack-abc234 ", user_id)

        assert pack.id == pack_id
        assert pack.code == "PACK-ABC234"
        assert (pack.sessions_total, pack.sessions_used,
                pack.sessions_remaining) == (8, 3, 5)
        assert pack.expires_at == datetime(2099, 1, 1)
        assert pack.as_dict()["sessionsRemaining"] == 5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("kwargs,status_code", [
        ({"status": "CANCELLED"}, 400),
        ({"expires": "2020-01-01T00:00:00"}, 400),
        ({"remaining": 0}, 400),
    ])
    async def test_unusable_pack(self, db, make_user, kwargs, status_code):
        user_id = (await make_user()).id
        await add_pack(db, user_id, **kwargs)

        with pytest.raises(PackCodeError) as exc:
            await validate_pack_code(db, "PACK-ABC234", user_id)
        assert exc.value.status_code == status_code

    @pytest.mark.asyncio
    async def test_code_of_other_user(self, db, make_user):
        owner_id = (await make_user()).id
        other_id = (await make_user(email="otra@example.com")).id
        await add_pack(db, owner_id)

        with pytest.raises(PackCodeError) as exc:
            await validate_pack_code(db, "PACK-ABC234", other_id)
        assert exc.value.status_code == 403

    @pytest.mark.asyncio
    async def test_unknown_code(self, db, make_user):
        user_id = (await make_user()).id

        with pytest.raises(PackCodeError) as exc:
            await validate_pack_code(db, "PACK-ZZZZZZ", user_id)
        assert exc.value.status_code == 404

    @pytest.mark.asyncio
    async def test_empty_code(self, db, make_user):
        user_id = (await make_user()).id

        with pytest.raises(PackCodeError) as exc:
            await validate_pack_code(db, "   ", user_id)
        assert exc.value.status_code == 400

    @pytest.mark.asyncio
    async def test_code_from_paid_pack_order(self, db, mailer, make_user,
                                             make_order):
        user = await make_user()
        user_id = user.id
        order = await make_order(OrderType.SESSION, user=user,
                                 meta={"productType": "pack"})

        result = await process_approved_payment(db, order, mailer=mailer)
        booking = await db.get(Booking, result.created_resources[0].id)

        pack = await validate_pack_code(db, booking.meta["packCode"], user_id)

        assert pack.sessions_remaining == 8
        assert pack.expires_at is not None


class TestRedeemPackSession:

    @pytest.mark.asyncio
    async def test_books_session_and_takes_one(self, db, make_user):
        user_id = (await make_user()).id
        pack_id = await add_pack(db, user_id, remaining=3)

        booking, remaining = await redeem_pack_session(
            db, pack_id, user_id, SLOT
        )

        assert remaining == 2
        assert await remaining_of(db, pack_id) == 2
        assert booking.scheduled_at == SLOT
        assert booking.status == "CONFIRMED"
        assert booking.payment_status == "COMPLETED"
        assert booking.amount == 0
        assert booking.user_id == user_id
        assert booking.meta == {"packBookingId": pack_id,
                                "redeemedFrom": "PACK-ABC234"}

    @pytest.mark.asyncio
    async def test_taken_slot(self, db, make_user):
        user_id = (await make_user()).id
        pack_id = await add_pack(db, user_id, remaining=3)
        await redeem_pack_session(db, pack_id, user_id, SLOT)

        with pytest.raises(PackCodeError) as exc:
            await redeem_pack_session(db, pack_id, user_id, SLOT)

        assert "reservado" in str(exc.value)
        assert await remaining_of(db, pack_id) == 2
        assert await booking_count(db) == 2

    @pytest.mark.asyncio
    async def test_last_session(self, db, make_user):
        user_id = (await make_user()).id
        pack_id = await add_pack(db, user_id, remaining=1)

        _, remaining = await redeem_pack_session(db, pack_id, user_id, SLOT)
        assert remaining == 0

        with pytest.raises(PackCodeError):
            await redeem_pack_session(
                db, pack_id, user_id, datetime(2024, 7, 11, 15, 0)
            )
        assert await remaining_of(db, pack_id) == 0

    @pytest.mark.asyncio
    async def test_other_user(self, db, make_user):
        owner_id = (await make_user()).id
        other_id = (await make_user(email="otra@example.com")).id
        pack_id = await add_pack(db, owner_id)

        with pytest.raises(PackCodeError) as exc:
            await redeem_pack_session(db, pack_id, other_id, SLOT)

        assert exc.value.status_code == 403
        assert await remaining_of(db, pack_id) == 8
        assert await booking_count(db) == 1

    @pytest.mark.asyncio
    async def test_unknown_pack(self, db, make_user):
        user_id = (await make_user()).id

        with pytest.raises(PackCodeError) as exc:
            await redeem_pack_session(db, "missing", user_id, SLOT)
        assert exc.value.status_code == 404
