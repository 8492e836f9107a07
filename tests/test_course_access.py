"""Tests for course entitlements, access checks and the CMS client."""
import json
from datetime import datetime, timedelta
from unittest.mock import AsyncMock

import httpx
import pytest
from sqlalchemy import func, select

from eydcommerce.cms import COURSE_ACCESS_QUERY, CMSError, SanityClient
from eydcommerce.course_access import (
    can_access_course, create_course_entitlement,
)
from eydcommerce.helpers import utcnow
from eydcommerce.model.db import (
    CourseProgress, Entitlement, OrderType, Subscription,
)


def cms_returning(course):
    cms = AsyncMock(spec=SanityClient)
    cms.fetch.return_value = course
    return cms


async def add_subscription(db, user, tier_id="tier-luz", status="ACTIVE",
                           period_end=None):
    now = utcnow()
    db.add(Subscription(
        user_id=user.id,
        membership_tier_id=tier_id,
        membership_tier_name="Luz",
        status=status,
        billing_interval="MONTHLY",
        amount=5000000,
        currency="COP",
        start_date=now,
        current_period_start=now,
        current_period_end=period_end or now + timedelta(days=30),
    ))
    await db.commit()


class TestCreateCourseEntitlement:

    @pytest.mark.asyncio
    async def test_is_idempotent(self, db, make_user, make_order):
        user = await make_user()
        order = await make_order(OrderType.COURSE, user=user)

        first = await create_course_entitlement(
            db, user.id, "c1", "Tarot", order.id
        )
        second = await create_course_entitlement(
            db, user.id, "c1", "Tarot", order.id
        )
        await db.commit()

        assert first == second
        n = (await db.execute(select(func.count(Entitlement.id)))).scalar_one()
        assert n == 1
        progress = (await db.execute(select(CourseProgress))).scalar_one()
        assert progress.completion_percentage == 0

    @pytest.mark.asyncio
    async def test_existing_progress_is_kept(self, db, make_user, make_order):
        user = await make_user()
        order = await make_order(OrderType.COURSE, user=user)
        db.add(CourseProgress(user_id=user.id, course_id="c1",
                              completion_percentage=40))
        await db.commit()

        await create_course_entitlement(db, user.id, "c1", "Tarot", order.id)
        await db.commit()

        progress = (await db.execute(select(CourseProgress))).scalar_one()
        assert progress.completion_percentage == 40

    @pytest.mark.asyncio
    async def test_new_order_gets_new_entitlement(self, db, make_user,
                                                  make_order):
        user = await make_user()
        first = await make_order(OrderType.COURSE, user=user)
        second = await make_order(OrderType.COURSE, user=user)

        a = await create_course_entitlement(db, user.id, "c1", "T", first.id)
        b = await create_course_entitlement(db, user.id, "c1", "T", second.id)
        await db.commit()

        assert a != b


class TestCanAccessCourse:

    @pytest.mark.asyncio
    async def test_purchase(self, db, make_user, make_order):
        user = await make_user()
        order = await make_order(OrderType.COURSE, user=user)
        ent_id = await create_course_entitlement(
            db, user.id, "c1", "Tarot", order.id
        )
        await db.commit()
        cms = cms_returning({})

        access = await can_access_course(db, cms, user.id, "c1")

        assert access.has_access
        assert access.reason == "purchase"
        assert access.entitlement_id == ent_id
        cms.fetch.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_revoked_purchase_does_not_count(self, db, make_user,
                                                   make_order):
        user = await make_user()
        order = await make_order(OrderType.COURSE, user=user)
        ent_id = await create_course_entitlement(
            db, user.id, "c1", "Tarot", order.id
        )
        (await db.get(Entitlement, ent_id)).revoked = True
        await db.commit()

        access = await can_access_course(
            db, cms_returning({"price": 100}), user.id, "c1"
        )

        assert access.reason == "no_access"

    @pytest.mark.asyncio
    async def test_membership(self, db, make_user):
        user = await make_user()
        await add_subscription(db, user)
        cms = cms_returning({
            "includedInMembership": True,
            "membershipTiers": [{"_id": "tier-luz"}],
            "price": 12000000,
        })

        access = await can_access_course(db, cms, user.id, "c1")

        assert (access.has_access, access.reason) == (True, "membership")
        cms.fetch.assert_awaited_once_with(COURSE_ACCESS_QUERY, {"id": "c1"})

    @pytest.mark.asyncio
    async def test_membership_of_other_tier(self, db, make_user):
        user = await make_user()
        await add_subscription(db, user, tier_id="tier-sol")
        cms = cms_returning({
            "includedInMembership": True,
            "membershipTiers": [{"_id": "tier-luz"}],
            "price": 12000000,
        })

        access = await can_access_course(db, cms, user.id, "c1")

        assert access.reason == "no_access"

    @pytest.mark.asyncio
    async def test_expired_membership(self, db, make_user):
        user = await make_user()
        await add_subscription(db, user, period_end=datetime(2020, 1, 1))
        cms = cms_returning({"includedInMembership": True, "price": 100})

        access = await can_access_course(db, cms, user.id, "c1")

        assert not access.has_access

    @pytest.mark.asyncio
    async def test_free_course(self, db, make_user):
        user = await make_user()

        access = await can_access_course(
            db, cms_returning({"price": 0}), user.id, "c1"
        )

        assert (access.has_access, access.reason) == (True, "free")

    @pytest.mark.asyncio
    async def test_unknown_course(self, db, make_user):
        user = await make_user()

        access = await can_access_course(
            db, cms_returning(None), user.id, "nope"
        )

        assert (access.has_access, access.reason) == (False, "no_access")


class TestSanityClient:

    @pytest.mark.asyncio
    async def test_fetch_sends_json_params(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"result": {"price": 0}})

        async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler)
        ) as http:
            cms = SanityClient(http, project_id="abc123", dataset="production",
                               api_version="2023-05-03", token="sk-test")
            result = await cms.fetch(COURSE_ACCESS_QUERY, {"id": "c1"})

        assert result == {"price": 0}
        request = seen[0]
        assert request.url.host == "abc123.api.sanity.io"
        assert request.url.path == "/v2023-05-03/data/query/production"
        assert json.loads(request.url.params["$id"]) == "c1"
        assert request.url.params["query"] == COURSE_ACCESS_QUERY
        assert request.headers["authorization"] == "Bearer sk-test"

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(500, text="oops")
        ))
        cms = SanityClient(http, project_id="abc123")

        with pytest.raises(CMSError):
            await cms.fetch(COURSE_ACCESS_QUERY, {"id": "c1"})
        await http.aclose()

    @pytest.mark.asyncio
    async def test_requires_project(self):
        http = httpx.AsyncClient(transport=httpx.MockTransport(
            lambda request: httpx.Response(200, json={"result": None})
        ))
        cms = SanityClient(http, project_id="")
        cms.project_id = ""

        with pytest.raises(CMSError):
            await cms.fetch(COURSE_ACCESS_QUERY)
        await http.aclose()
