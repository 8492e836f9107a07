"""Course entitlements and access checks for the academy."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from .cms import COURSE_ACCESS_QUERY, SanityClient
from .helpers import utcnow
from .model.db import CourseProgress, Entitlement, EntitlementType, Subscription

logger = logging.getLogger(__name__)


@dataclass
class CourseAccess:
    has_access: bool
    # purchase | membership | free | no_access
    reason: str
    entitlement_id: Optional[str] = None
    expires_at: Optional[datetime] = None


async def create_course_entitlement(
    db: AsyncSession,
    user_id: str,
    course_id: str,
    course_name: str,
    order_id: str,
) -> str:
    """Grant perpetual access to a course bought in ``order_id``.

    Idempotent on (user, COURSE, course, order): an existing entitlement is
    returned untouched. Course progress is created only when missing, so a
    re-purchase never resets it. Flushes but does not commit.
    """
    existing = (await db.execute(
        select(Entitlement).where(
            Entitlement.user_id == user_id,
            Entitlement.type == EntitlementType.COURSE.value,
            Entitlement.resource_id == course_id,
            Entitlement.order_id == order_id,
        )
    )).scalars().first()
    if existing is not None:
        logger.info(
            "Course entitlement already exists for user %s, course %s",
            user_id, course_id,
        )
        return existing.id

    entitlement = Entitlement(
        user_id=user_id,
        type=EntitlementType.COURSE.value,
        resource_id=course_id,
        resource_name=course_name,
        order_id=order_id,
        expires_at=None,
    )
    db.add(entitlement)

    progress = (await db.execute(
        select(CourseProgress).where(
            CourseProgress.user_id == user_id,
            CourseProgress.course_id == course_id,
        )
    )).scalars().first()
    if progress is None:
        db.add(CourseProgress(
            user_id=user_id, course_id=course_id, completion_percentage=0,
        ))
    await db.flush()

    logger.info(
        "Created course entitlement for user %s, course %s",
        user_id, course_id,
    )
    return entitlement.id


async def can_access_course(
    db: AsyncSession, cms: SanityClient, user_id: str, course_id: str
) -> CourseAccess:
    now = utcnow()

    # 1. direct purchase
    entitlement = (await db.execute(
        select(Entitlement).where(
            Entitlement.user_id == user_id,
            Entitlement.type == EntitlementType.COURSE.value,
            Entitlement.resource_id == course_id,
            Entitlement.revoked.is_(False),
            or_(Entitlement.expires_at.is_(None),
                Entitlement.expires_at > now),
        )
    )).scalars().first()
    if entitlement is not None:
        return CourseAccess(
            has_access=True,
            reason="purchase",
            entitlement_id=entitlement.id,
            expires_at=entitlement.expires_at,
        )

    course = await cms.fetch(COURSE_ACCESS_QUERY, {"id": course_id}) or {}

    # 2. membership
    if course.get("includedInMembership"):
        membership = (await db.execute(
            select(Subscription).where(
                Subscription.user_id == user_id,
                Subscription.status == "ACTIVE",
                Subscription.current_period_end > now,
            )
        )).scalars().first()
        if membership is not None:
            tier_ids = [
                t.get("_id") for t in (course.get("membershipTiers") or [])
            ]
            if not tier_ids or membership.membership_tier_id in tier_ids:
                return CourseAccess(has_access=True, reason="membership")

    # 3. free course
    if course.get("price") == 0:
        return CourseAccess(has_access=True, reason="free")

    return CourseAccess(has_access=False, reason="no_access")
