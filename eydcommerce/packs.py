"""Session packs: validating a pack code and redeeming one session from it.

A pack is the SESSION_1_ON_1 booking created for a pack purchase. Its code
lives in ``meta["packCode"]`` and ``sessions_remaining`` counts what is left.
Redeeming books a paid-up session and takes one from the pack in the same
transaction.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .helpers import add_months, parse_iso, utcnow
from .model.db import Booking, BookingType, PaymentStatus

logger = logging.getLogger(__name__)

PACK_VALIDITY_MONTHS = 12
# a slot is taken by anything not cancelled or finished
BLOCKING_STATUSES = ("PENDING_PAYMENT", "CONFIRMED")


class PackCodeError(ValueError):
    def __init__(self, message: str, status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class PackSummary:
    id: str
    code: str
    pack_name: str
    sessions_total: int
    sessions_used: int
    sessions_remaining: int
    expires_at: Optional[datetime]

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "code": self.code,
            "packName": self.pack_name,
            "sessionsTotal": self.sessions_total,
            "sessionsUsed": self.sessions_used,
            "sessionsRemaining": self.sessions_remaining,
            "expiresAt": self.expires_at.isoformat() if self.expires_at else None,
        }


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def pack_expires_at(pack: Booking) -> Optional[datetime]:
    meta = pack.meta or {}
    expires = parse_iso(meta.get("expiresAt"))
    if expires is None:
        generated = parse_iso(meta.get("generatedAt"))
        if generated is not None:
            expires = add_months(generated, PACK_VALIDITY_MONTHS)
    return expires


def summarize(pack: Booking) -> PackSummary:
    total = pack.sessions_total or 0
    remaining = pack.sessions_remaining or 0
    return PackSummary(
        id=pack.id,
        code=(pack.meta or {}).get("packCode"),
        pack_name=pack.resource_name,
        sessions_total=total,
        sessions_used=total - remaining,
        sessions_remaining=remaining,
        expires_at=pack_expires_at(pack),
    )


def check_usable(pack: Booking, user_id: str, now: datetime) -> None:
    if pack.user_id != user_id:
        raise PackCodeError("Este código pertenece a otro usuario", 403)
    if pack.status != "CONFIRMED":
        raise PackCodeError("Este pack ya no está activo")
    expires = pack_expires_at(pack)
    if expires is not None and now > expires:
        raise PackCodeError("Este pack ha expirado")
    if (pack.sessions_remaining or 0) <= 0:
        raise PackCodeError("Ya has usado todas las sesiones de este pack")


async def find_pack_by_code(db: AsyncSession, code: str) -> Optional[Booking]:
    return (await db.execute(
        select(Booking).where(
            Booking.booking_type == BookingType.SESSION_1_ON_1.value,
            Booking.meta["packCode"].as_string() == normalize_code(code),
        )
    )).scalars().first()


async def validate_pack_code(
    db: AsyncSession, code: str, user_id: str
) -> PackSummary:
    if not normalize_code(code):
        raise PackCodeError("Código requerido")
    pack = await find_pack_by_code(db, code)
    if pack is None:
        raise PackCodeError("Código no encontrado", 404)
    check_usable(pack, user_id, utcnow())
    return summarize(pack)


async def redeem_pack_session(
    db: AsyncSession, pack_id: str, user_id: str, scheduled_at: datetime
) -> tuple[Booking, int]:
    """Book one session against a pack.

    Returns the new booking and the sessions left. Raises ``PackCodeError``
    and rolls back when the pack cannot be used or the slot is taken.
    """
    try:
        pack = (await db.execute(
            select(Booking)
            .where(Booking.id == pack_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )).scalars().first()
        if pack is None or (pack.meta or {}).get("packCode") is None:
            raise PackCodeError("Pack no encontrado", 404)
        check_usable(pack, user_id, utcnow())

        taken = (await db.execute(
            select(Booking.id).where(
                Booking.scheduled_at == scheduled_at,
                Booking.status.in_(BLOCKING_STATUSES),
            )
        )).first()
        if taken is not None:
            raise PackCodeError(
                "Este horario ya está reservado. Por favor selecciona otro."
            )

        # conditional decrement: two concurrent redeems cannot both take
        # the last session
        result = await db.execute(
            update(Booking)
            .where(Booking.id == pack.id, Booking.sessions_remaining > 0)
            .values(sessions_remaining=Booking.sessions_remaining - 1)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise PackCodeError("Ya has usado todas las sesiones de este pack")

        booking = Booking(
            user_id=user_id,
            booking_type=BookingType.SESSION_1_ON_1.value,
            resource_id=pack.resource_id,
            resource_name=f"{pack.resource_name} (Pack)",
            status="CONFIRMED",
            payment_status=PaymentStatus.COMPLETED.value,
            payment_method=None,
            amount=0,
            currency=pack.currency,
            sessions_total=1,
            sessions_remaining=1,
            scheduled_at=scheduled_at,
            meta={"packBookingId": pack.id,
                  "redeemedFrom": pack.meta["packCode"]},
        )
        db.add(booking)
        await db.flush()
        remaining = (await db.execute(
            select(Booking.sessions_remaining).where(Booking.id == pack.id)
        )).scalar_one()
        await db.commit()
    except PackCodeError:
        await db.rollback()
        raise

    logger.info("Pack %s redeemed for %s by user %s (%d left)",
                pack_id, scheduled_at.isoformat(), user_id, remaining)
    return booking, remaining
