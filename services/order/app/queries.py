"""
Order Service — クエリハンドラ (CQRS の Read 側)

読み取りはリードモデル (orders / order_items / products) から行う。
状態は変更しない。
"""

from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .aggregate import NON_REVENUE_STATUSES, OrderStatus
from .errors import Forbidden, OrderNotFound
from .schema import order_items, orders, products


@dataclass(frozen=True)
class Requester:
    """認証レイヤーから渡される呼び出し元"""
    user_id: str
    is_admin: bool = False


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _order_to_dict(row, items: list, internal: bool = False) -> dict:
    order = {
        "id": row.id,
        "user_id": row.user_id,
        "status": row.status,
        "items": [
            {
                "product_id": item.product_id,
                "name": item.name,
                "quantity": item.quantity,
                "unit_price": float(item.unit_price),
            }
            for item in items
        ],
        "shipping": row.shipping,
        "payment": row.payment,
        "pricing": {
            "items_total": float(row.items_total),
            "tax": float(row.tax),
            "shipping": float(row.shipping_price),
            "grand_total": float(row.grand_total),
        },
        "stock_committed": row.stock_committed,
        "paid_at": _iso(row.paid_at),
        "delivered_at": _iso(row.delivered_at),
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }
    if internal:
        # 運用者の突き合わせ用。利用者向けには返さない
        order["committed_lines"] = row.committed_lines
        order["restored_lines"] = row.restored_lines
    return order


async def _with_items(session: AsyncSession, rows, internal: bool = False) -> list[dict]:
    if not rows:
        return []
    result = await session.execute(
        select(order_items)
        .where(order_items.c.order_id.in_([r.id for r in rows]))
        .order_by(order_items.c.order_id, order_items.c.line_no)
    )
    by_order: dict[str, list] = {}
    for item in result.all():
        by_order.setdefault(item.order_id, []).append(item)
    return [_order_to_dict(r, by_order.get(r.id, []), internal) for r in rows]


async def fetch_order(
    session: AsyncSession, order_id: str, internal: bool = False
) -> dict | None:
    """
    リードモデルから注文を取得する（認可チェックなし）。

    internal=True のときは在庫の確定・戻しの進捗カウンタも含める。
    """
    result = await session.execute(select(orders).where(orders.c.id == order_id))
    row = result.first()
    if not row:
        return None
    return (await _with_items(session, [row], internal))[0]


async def get_order(session: AsyncSession, order_id: str, requester: Requester) -> dict:
    """注文の持ち主か管理者だけが参照できる。"""
    order = await fetch_order(session, order_id, internal=requester.is_admin)
    if order is None:
        raise OrderNotFound(order_id)
    if order["user_id"] != requester.user_id and not requester.is_admin:
        raise Forbidden()
    return order


async def find_by_idempotency_key(
    session: AsyncSession, user_id: str, key: str
) -> dict | None:
    result = await session.execute(
        select(orders).where(
            orders.c.user_id == user_id, orders.c.idempotency_key == key
        )
    )
    row = result.first()
    if not row:
        return None
    return (await _with_items(session, [row]))[0]


async def list_user_orders(session: AsyncSession, user_id: str) -> list[dict]:
    """ユーザーの注文一覧（新しい順）"""
    result = await session.execute(
        select(orders)
        .where(orders.c.user_id == user_id)
        .order_by(orders.c.created_at.desc())
    )
    return await _with_items(session, result.all())


async def list_all_orders(session: AsyncSession) -> dict:
    """
    全注文一覧（新しい順）と売上合計。

    売上合計は Cancelled / Failed を除いた grand_total の和。
    """
    result = await session.execute(select(orders).order_by(orders.c.created_at.desc()))
    rows = result.all()
    excluded = {s.value for s in NON_REVENUE_STATUSES}
    total = sum(
        (Decimal(r.grand_total) for r in rows if r.status not in excluded),
        Decimal("0"),
    )
    return {
        "count": len(rows),
        "total_amount": float(total),
        "orders": await _with_items(session, rows, internal=True),
    }


async def count_by_status(session: AsyncSession) -> dict[str, int]:
    """ステータス別の注文数（管理ダッシュボード用）"""
    result = await session.execute(select(orders.c.status))
    counts = {s.value: 0 for s in OrderStatus}
    for (status,) in result.all():
        counts[status] = counts.get(status, 0) + 1
    return counts


async def get_product(session: AsyncSession, product_id: str) -> dict | None:
    result = await session.execute(select(products).where(products.c.id == product_id))
    row = result.first()
    if not row:
        return None
    return {
        "id": row.id,
        "name": row.name,
        "price": float(row.price),
        "stock": row.stock,
        "updated_at": _iso(row.updated_at),
    }
