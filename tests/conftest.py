import itertools
import os
from unittest.mock import AsyncMock

# server.py reads this at import time
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("EMAIL_SEND_ENABLED", "false")

import pytest
import pytest_asyncio

from eydcommerce.infra.sql import make_async_engine
from eydcommerce.mailer import Mailer
from eydcommerce.model.db import Base, Order, OrderType, User, load_order


@pytest_asyncio.fixture
async def session_factory():
    engine, SessionAsync, _ = make_async_engine("sqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield SessionAsync
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def mailer():
    return AsyncMock(spec=Mailer)


@pytest.fixture
def make_user(db):
    async def _make(email="ana@example.com", name="Ana"):
        user = User(email=email, name=name)
        db.add(user)
        await db.commit()
        return user
    return _make


@pytest.fixture
def make_order(db):
    numbers = itertools.count(1)

    async def _make(
        order_type=OrderType.SESSION,
        meta=None,
        user=None,
        item_id="item-1",
        item_name="Sesión de sanación",
        amount=15000000,
        payment_method="WOMPI_CARD",
        **kw,
    ):
        order = Order(
            order_number=f"EYD-{next(numbers):04d}",
            user_id=user.id if user is not None else None,
            order_type=OrderType(order_type).value,
            item_id=item_id,
            item_name=item_name,
            amount=amount,
            currency="COP",
            payment_method=payment_method,
            meta=meta,
            **kw,
        )
        db.add(order)
        await db.commit()
        return await load_order(db, order_id=order.id)
    return _make
