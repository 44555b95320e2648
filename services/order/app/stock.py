"""
Order Service — 在庫アジャスター

products.stock を増減する唯一の入口。注文作成（減算）と
キャンセル・削除（戻し）の両方から呼ばれる。

減算は「stock >= :qty の行だけを更新する」条件付き UPDATE 1 文で行う。
読み取り → 比較 → 書き込みに分けると、同時リクエストが同じ古い在庫数を
読んで両方通ってしまうため。
更新後の在庫数も RETURNING で同じ文から受け取る。

ここではコミットしない。在庫の変更とイベント追記を同じトランザクションで
確定させるのは呼び出し側の責任。
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from .errors import InsufficientStock, ProductNotFound
from .schema import products

logger = logging.getLogger(__name__)


class Direction(str, Enum):
    INCREASE = "increase"
    DECREASE = "decrease"


async def adjust(
    session: AsyncSession,
    product_id: str,
    quantity: int,
    direction: Direction,
) -> int:
    """在庫を quantity だけ増減し、更新後の在庫数を返す。"""
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValueError(f"quantity must be a positive integer, got {quantity!r}")

    now = datetime.now(timezone.utc)
    if direction is Direction.DECREASE:
        stmt = (
            update(products)
            .where(products.c.id == product_id, products.c.stock >= quantity)
            .values(stock=products.c.stock - quantity, updated_at=now)
        )
    else:
        stmt = (
            update(products)
            .where(products.c.id == product_id)
            .values(stock=products.c.stock + quantity, updated_at=now)
        )

    result = await session.execute(stmt.returning(products.c.stock))
    new_stock = result.scalar_one_or_none()
    if new_stock is None:
        row = await _load(session, product_id)
        if row is None:
            logger.error("Product not found for stock update: %s", product_id)
            raise ProductNotFound(product_id)
        logger.info(
            "Insufficient stock for product %s. Required: %d, Available: %d",
            product_id,
            quantity,
            row.stock,
        )
        raise InsufficientStock(product_id, row.name, quantity, row.stock)

    logger.debug(
        "Stock %s for %s by %d -> %d", direction.value, product_id, quantity, new_stock
    )
    return new_stock


async def decrease(session: AsyncSession, product_id: str, quantity: int) -> int:
    return await adjust(session, product_id, quantity, Direction.DECREASE)


async def increase(session: AsyncSession, product_id: str, quantity: int) -> int:
    return await adjust(session, product_id, quantity, Direction.INCREASE)


async def check_availability(
    session: AsyncSession, lines: Iterable[tuple[str, int]]
) -> None:
    """
    すべての明細について商品の存在と在庫数を確認する（副作用なし）。

    同じ商品が複数行に現れる場合は合計数量で判定する。
    最初に見つかった不足で ProductNotFound / InsufficientStock を送出する。
    """
    requested: dict[str, int] = {}
    for product_id, quantity in lines:
        requested[product_id] = requested.get(product_id, 0) + quantity

    for product_id, quantity in requested.items():
        row = await _load(session, product_id)
        if row is None:
            raise ProductNotFound(product_id)
        if row.stock < quantity:
            raise InsufficientStock(product_id, row.name, quantity, row.stock)


async def _load(session: AsyncSession, product_id: str):
    result = await session.execute(
        select(products.c.id, products.c.name, products.c.stock).where(
            products.c.id == product_id
        )
    )
    return result.first()
