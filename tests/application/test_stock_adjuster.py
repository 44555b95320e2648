"""Tests for the stock adjuster: conditional decrement, increment, pre-check."""

import asyncio

import pytest

from app import stock
from app.errors import InsufficientStock, ProductNotFound


class TestDecrease:
    async def test_decrease_returns_new_stock(self, session, seed_product, stock_of):
        await seed_product("p1", 10)
        assert await stock.decrease(session, "p1", 3) == 7
        await session.commit()
        assert await stock_of("p1") == 7

    async def test_decrease_to_exactly_zero(self, session, seed_product):
        await seed_product("p1", 4)
        assert await stock.decrease(session, "p1", 4) == 0

    async def test_insufficient_stock_leaves_stock_unchanged(
        self, session, seed_product, stock_of
    ):
        await seed_product("p1", 2, name="Widget")
        with pytest.raises(InsufficientStock) as exc_info:
            await stock.decrease(session, "p1", 3)
        await session.rollback()

        err = exc_info.value
        assert err.requested == 3
        assert err.available == 2
        assert err.message == (
            "Insufficient stock for product: Widget (Requested: 3, Available: 2)"
        )
        assert await stock_of("p1") == 2

    async def test_unknown_product(self, session):
        with pytest.raises(ProductNotFound):
            await stock.decrease(session, "missing", 1)

    @pytest.mark.parametrize("quantity", [0, -1, 1.5, True])
    async def test_rejects_non_positive_quantity(self, session, seed_product, quantity):
        await seed_product("p1", 10)
        with pytest.raises(ValueError):
            await stock.decrease(session, "p1", quantity)


class TestReturnedStock:
    async def test_each_adjustment_reports_the_stored_value(
        self, session, seed_product, stock_of
    ):
        await seed_product("p1", 5)
        assert await stock.decrease(session, "p1", 2) == 3
        assert await stock.increase(session, "p1", 4) == 7
        assert await stock.decrease(session, "p1", 7) == 0
        await session.commit()
        assert await stock_of("p1") == 0


class TestIncrease:
    async def test_increase(self, session, seed_product, stock_of):
        await seed_product("p1", 1)
        assert await stock.increase(session, "p1", 4) == 5
        await session.commit()
        assert await stock_of("p1") == 5

    async def test_increase_unknown_product(self, session):
        with pytest.raises(ProductNotFound):
            await stock.increase(session, "missing", 1)


class TestContention:
    async def test_concurrent_decrements_never_oversell(
        self, session_factory, seed_product, stock_of
    ):
        await seed_product("p1", 5)

        async def _take(quantity):
            async with session_factory() as session:
                try:
                    await stock.decrease(session, "p1", quantity)
                    await session.commit()
                    return True
                except InsufficientStock:
                    await session.rollback()
                    return False

        results = await asyncio.gather(*[_take(2) for _ in range(4)])

        assert results.count(True) == 2
        assert await stock_of("p1") == 1


class TestCheckAvailability:
    async def test_all_lines_available(self, session, seed_product):
        await seed_product("p1", 5)
        await seed_product("p2", 1)
        await stock.check_availability(session, [("p1", 5), ("p2", 1)])

    async def test_duplicate_product_lines_are_summed(self, session, seed_product):
        await seed_product("p1", 5)
        with pytest.raises(InsufficientStock) as exc_info:
            await stock.check_availability(session, [("p1", 3), ("p1", 3)])
        assert exc_info.value.requested == 6

    async def test_missing_product(self, session, seed_product):
        await seed_product("p1", 5)
        with pytest.raises(ProductNotFound):
            await stock.check_availability(session, [("p1", 1), ("nope", 1)])

    async def test_does_not_mutate(self, session, seed_product, stock_of):
        await seed_product("p1", 5)
        await seed_product("p2", 0)
        with pytest.raises(InsufficientStock):
            await stock.check_availability(session, [("p1", 2), ("p2", 1)])
        assert await stock_of("p1") == 5
