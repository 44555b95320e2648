"""Shared fixtures: a temporary SQLite database per test, fakeredis, settings."""

import os

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from decimal import Decimal

import fakeredis
import pytest
from sqlalchemy import insert, select
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool

from app import commands
from app.config import Settings
from app.schema import orders, products, setup_db

SHIPPING = {
    "address": "1 Main St",
    "city": "Springfield",
    "state": "IL",
    "country": "US",
    "postal_code": "62701",
    "phone": "555-0100",
}


def pricing_for(items) -> dict:
    items_total = sum(Decimal(str(i["unit_price"])) * i["quantity"] for i in items)
    tax = Decimal("1.00")
    shipping = Decimal("5.00")
    return {
        "items_total": items_total,
        "tax": tax,
        "shipping": shipping,
        "grand_total": items_total + tax + shipping,
    }


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}", poolclass=NullPool
    )
    await setup_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
def settings():
    return Settings(database_url="sqlite+aiosqlite://")


@pytest.fixture
def seed_product(session_factory):
    async def _seed(product_id: str, stock: int, name: str | None = None, price="10.00"):
        async with session_factory() as session:
            await session.execute(
                insert(products).values(
                    id=product_id,
                    name=name or f"Product {product_id}",
                    price=Decimal(price),
                    stock=stock,
                )
            )
            await session.commit()

    return _seed


@pytest.fixture
def stock_of(session_factory):
    async def _stock_of(product_id: str) -> int | None:
        async with session_factory() as session:
            return await session.scalar(
                select(products.c.stock).where(products.c.id == product_id)
            )

    return _stock_of


@pytest.fixture
def order_count(session_factory):
    async def _count() -> int:
        async with session_factory() as session:
            result = await session.execute(select(orders.c.id))
            return len(result.all())

    return _count


@pytest.fixture
def place_order(session_factory, redis, settings):
    """Create an order through the command handler in its own session."""

    async def _place(
        items,
        payment_status="succeeded",
        user_id="user-1",
        idempotency_key=None,
        settings_override=None,
    ):
        items = [
            {"name": f"Product {i['product_id']}", "unit_price": "10.00", **i}
            for i in items
        ]
        async with session_factory() as session:
            return await commands.create_order(
                session,
                redis,
                settings_override or settings,
                user_id,
                items,
                dict(SHIPPING),
                {"id": "pay-1", "status": payment_status},
                pricing_for(items),
                idempotency_key=idempotency_key,
            )

    return _place


@pytest.fixture
def transition(session_factory, redis, settings):
    async def _transition(order_id, new_status, settings_override=None):
        async with session_factory() as session:
            return await commands.transition_order(
                session, redis, settings_override or settings, order_id, new_status
            )

    return _transition
