"""Typed per-order-type payloads parsed from ``Order.meta``.

Checkout stores type specific fields (``scheduledAt``, ``seats``,
``billingInterval``, ``courseIds``...) in the order's JSON metadata. They are
parsed once, before fulfillment writes anything, so builders work with
validated values instead of probing the dict.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple, Union

from ..helpers import parse_iso
from .db import BillingInterval, OrderType

PACK_SESSIONS = 8


class InvalidOrderDetails(ValueError):
    pass


class MissingScheduleError(InvalidOrderDetails):
    pass


@dataclass(frozen=True)
class MembershipDetails:
    billing_interval: BillingInterval = BillingInterval.MONTHLY


@dataclass(frozen=True)
class SessionDetails:
    is_pack: bool
    scheduled_at: Optional[datetime]

    @property
    def sessions_total(self) -> int:
        return PACK_SESSIONS if self.is_pack else 1


@dataclass(frozen=True)
class EventDetails:
    scheduled_at: Optional[datetime]
    seats: int = 1
    event_type: Optional[str] = None


@dataclass(frozen=True)
class CourseItem:
    id: str
    name: str
    price: Optional[int] = None


@dataclass(frozen=True)
class CourseDetails:
    course_ids: Tuple[str, ...] = ()
    items: Tuple[CourseItem, ...] = ()


@dataclass(frozen=True)
class GenericDetails:
    pass


OrderDetails = Union[
    MembershipDetails, SessionDetails, EventDetails, CourseDetails,
    GenericDetails,
]


def _membership(meta: Dict[str, Any], item_name: str) -> MembershipDetails:
    raw = str(meta.get("billingInterval") or "monthly").strip().lower()
    if raw == "yearly":
        return MembershipDetails(BillingInterval.YEARLY)
    return MembershipDetails(BillingInterval.MONTHLY)


def _session(meta: Dict[str, Any], item_name: str) -> SessionDetails:
    is_pack = meta.get("productType") == "pack"
    scheduled_at = parse_iso(meta.get("scheduledAt"))
    if not is_pack and scheduled_at is None:
        raise MissingScheduleError(
            "Las sesiones individuales requieren fecha programada "
            "(scheduledAt)"
        )
    return SessionDetails(is_pack=is_pack, scheduled_at=scheduled_at)


def _event(meta: Dict[str, Any], item_name: str) -> EventDetails:
    raw_seats = meta.get("seats") or 1
    try:
        seats = int(raw_seats)
    except (TypeError, ValueError):
        raise InvalidOrderDetails(f"seats must be an integer: {raw_seats!r}")
    if seats < 1:
        raise InvalidOrderDetails(f"seats must be positive: {seats}")
    return EventDetails(
        scheduled_at=parse_iso(meta.get("scheduledAt")),
        seats=seats,
        event_type=meta.get("eventType"),
    )


def _course(meta: Dict[str, Any], item_name: str) -> CourseDetails:
    course_ids = tuple(str(c) for c in (meta.get("courseIds") or []))
    raw_items = meta.get("items")
    if raw_items:
        items = []
        for raw in raw_items:
            if not isinstance(raw, dict) or not raw.get("id"):
                raise InvalidOrderDetails(f"invalid course item: {raw!r}")
            items.append(CourseItem(
                id=str(raw["id"]),
                name=str(raw.get("name") or item_name),
                price=raw.get("price"),
            ))
        items = tuple(items)
    else:
        items = tuple(CourseItem(id=c, name=item_name) for c in course_ids)
    return CourseDetails(course_ids=course_ids, items=items)


def _generic(meta: Dict[str, Any], item_name: str) -> GenericDetails:
    return GenericDetails()


_PARSERS = {
    OrderType.MEMBERSHIP: _membership,
    OrderType.SESSION: _session,
    OrderType.EVENT: _event,
    OrderType.COURSE: _course,
    OrderType.PRODUCT: _generic,
    OrderType.PREMIUM_CONTENT: _generic,
}


def parse_order_details(
    order_type: str, metadata: Optional[Dict[str, Any]], item_name: str = ""
) -> OrderDetails:
    parser = _PARSERS.get(order_type)
    if parser is None:
        # unhandled types carry nothing the builders need
        return GenericDetails()
    return parser(metadata or {}, item_name)
