"""
Order Service — コマンドハンドラ (CQRS の Write 側)

コマンドは状態を変更する操作で、イベントを生成してストアに保存する。
同時にリードモデル (orders / order_items) も更新し、コミット後に
Redis Pub/Sub でイベントを発行する。

在庫の確定・戻しは明細 1 行ごとに
「在庫の条件付き更新 + イベント追記 + リードモデル更新」を
1 トランザクションでコミットする。途中で失敗しても、
どの行まで済んだかが注文レコードに残る。
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from uuid import uuid4

import redis.asyncio as aioredis
from sqlalchemy import delete, insert, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from . import event_store, queries, stock
from .aggregate import OrderAggregate, OrderStatus, next_status
from .config import Settings
from .errors import (
    EmptyOrder,
    IncompletePricing,
    IncompleteShipping,
    InvalidItem,
    MissingPayment,
    OrderNotFound,
    ConcurrentModification,
    OrderServiceError,
    PartialStockFailure,
    ProductNotFound,
    RestorationIncomplete,
    StockRestorationFailed,
)
from .events import (
    OrderCreated,
    OrderDeleted,
    OrderLine,
    OrderStatusChanged,
    StockCommitFailed,
    StockCommitted,
    StockRestored,
)
from .schema import order_items, orders

logger = logging.getLogger(__name__)

ORDER_CHANNEL = "order_events"
INVENTORY_CHANNEL = "inventory_events"

REQUIRED_SHIPPING_FIELDS = ("address", "city", "state", "country", "postal_code", "phone")
PRICING_FIELDS = ("items_total", "tax", "shipping", "grand_total")


# ── 入力検証 ─────────────────────────────────────


def validate_order(
    items: list[dict] | None,
    shipping: dict | None,
    payment: dict | None,
    pricing: dict | None,
) -> tuple[list[OrderLine], dict[str, Decimal]]:
    """
    注文内容を検証する。順番に 1 つ目の不備でエラーを送出する:
    明細 → 配送先 → 決済情報 → 金額。
    """
    if not items:
        raise EmptyOrder()

    lines: list[OrderLine] = []
    for i, item in enumerate(items):
        product_id = item.get("product_id")
        quantity = item.get("quantity")
        if not product_id:
            raise InvalidItem(i, "product_id is required")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidItem(i, "quantity must be a positive integer")
        unit_price = _to_decimal(item.get("unit_price"))
        if unit_price is None or unit_price < 0:
            raise InvalidItem(i, "unit_price must be a non-negative number")
        lines.append(
            OrderLine(
                product_id=str(product_id),
                name=str(item.get("name") or ""),
                quantity=quantity,
                unit_price=unit_price,
            )
        )

    shipping = shipping or {}
    for field in REQUIRED_SHIPPING_FIELDS:
        if not shipping.get(field):
            raise IncompleteShipping(field)

    if not payment or not payment.get("id") or not payment.get("status"):
        raise MissingPayment()

    pricing = pricing or {}
    amounts: dict[str, Decimal] = {}
    for field in PRICING_FIELDS:
        value = _to_decimal(pricing.get(field))
        if value is None:
            raise IncompletePricing(field)
        amounts[field] = value

    return lines, amounts


def _to_decimal(value) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


# ── 注文作成 ─────────────────────────────────────


async def create_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    settings: Settings,
    user_id: str,
    items: list[dict] | None,
    shipping: dict | None,
    payment: dict | None,
    pricing: dict | None,
    idempotency_key: str | None = None,
) -> dict:
    """
    注文作成コマンド

    1. 入力を検証する
    2. 同じ冪等キーの注文があればそれを返す
    3. 支払い済みなら全明細の在庫を事前確認する（ここで失敗すれば何も書かない）
    4. OrderCreated イベントとリードモデルを保存してコミット
    5. 支払い済みなら明細順に在庫を減算する
    """
    lines, amounts = validate_order(items, shipping, payment, pricing)

    if idempotency_key:
        existing = await queries.find_by_idempotency_key(session, user_id, idempotency_key)
        if existing is not None:
            logger.info(
                "Returning existing order %s for idempotency key %s",
                existing["id"],
                idempotency_key,
            )
            return existing

    now = datetime.now(timezone.utc)
    paid = payment["status"] == settings.paid_status
    status = OrderStatus.PROCESSING if paid else OrderStatus.PAYMENT_PENDING

    if paid:
        await stock.check_availability(
            session, [(line.product_id, line.quantity) for line in lines]
        )

    order_id = str(uuid4())
    event = OrderCreated(
        order_id=order_id,
        user_id=user_id,
        items=lines,
        shipping=shipping,
        payment=payment,
        pricing=amounts,
        status=status.value,
        paid_at=now if paid else None,
        idempotency_key=idempotency_key,
        timestamp=now,
    )
    event_data = event.model_dump(mode="json")

    try:
        version = await event_store.append_event(
            session, order_id, "Order", "OrderCreated", event_data, 0
        )
        await session.execute(
            insert(orders).values(
                id=order_id,
                user_id=user_id,
                status=status.value,
                shipping=shipping,
                payment=payment,
                items_total=amounts["items_total"],
                tax=amounts["tax"],
                shipping_price=amounts["shipping"],
                grand_total=amounts["grand_total"],
                stock_committed=False,
                committed_lines=0,
                restored_lines=0,
                version=version,
                idempotency_key=idempotency_key,
                paid_at=now if paid else None,
                created_at=now,
                updated_at=now,
            )
        )
        await session.execute(
            insert(order_items),
            [
                {
                    "order_id": order_id,
                    "line_no": line_no,
                    "product_id": line.product_id,
                    "name": line.name,
                    "quantity": line.quantity,
                    "unit_price": line.unit_price,
                }
                for line_no, line in enumerate(lines)
            ],
        )
        await session.commit()
    except IntegrityError:
        # 同じ冪等キーで同時に送られた別リクエストが先に保存した
        await session.rollback()
        if idempotency_key:
            existing = await queries.find_by_idempotency_key(
                session, user_id, idempotency_key
            )
            if existing is not None:
                return existing
        raise

    logger.info("Order %s created for user %s with status %s", order_id, user_id, status.value)
    await _publish(redis, ORDER_CHANNEL, "OrderCreated", event_data)

    if paid:
        await _commit_stock(session, redis, order_id, lines, version)

    return await queries.fetch_order(session, order_id)


async def _commit_stock(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    lines: list[OrderLine],
    version: int,
) -> None:
    """明細順に在庫を減算する。最初の行のコミットで stock_committed が立つ。"""
    for line_no, line in enumerate(lines):
        try:
            new_stock = await stock.decrease(session, line.product_id, line.quantity)
            event_data = StockCommitted(
                order_id=order_id,
                line_no=line_no,
                product_id=line.product_id,
                quantity=line.quantity,
                new_stock=new_stock,
                timestamp=datetime.now(timezone.utc),
            ).model_dump(mode="json")
            version = await event_store.append_event(
                session, order_id, "Order", "StockCommitted", event_data, version
            )
            await session.execute(
                update(orders)
                .where(orders.c.id == order_id)
                .values(
                    committed_lines=line_no + 1,
                    stock_committed=True,
                    version=version,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()
        except (OrderServiceError, SQLAlchemyError) as exc:
            await session.rollback()
            await _fail_order(session, redis, order_id, line_no, line, version, exc)

        await _publish(redis, INVENTORY_CHANNEL, "StockCommitted", event_data)


async def _fail_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    order_id: str,
    line_no: int,
    line: OrderLine,
    version: int,
    exc: Exception,
) -> None:
    """
    在庫減算の途中失敗を記録し、注文を Failed にしてから例外を送出する。

    1 行も減算していなければ整合性の問題は無いので、元の業務エラー
    (InsufficientStock など) をそのまま返す。1 行以上減算済みなら
    PartialStockFailure として運用者の手作業での突き合わせを求める。
    Failed の記録自体が他の書き込みと競合した場合も PartialStockFailure とし、
    ERROR ログだけが手掛かりになる。
    """
    now = datetime.now(timezone.utc)
    event_data = StockCommitFailed(
        order_id=order_id,
        line_no=line_no,
        product_id=line.product_id,
        decremented=line_no,
        reason=str(exc),
        timestamp=now,
    ).model_dump(mode="json")
    try:
        version = await event_store.append_event(
            session, order_id, "Order", "StockCommitFailed", event_data, version
        )
        await session.execute(
            update(orders)
            .where(orders.c.id == order_id)
            .values(
                status=OrderStatus.FAILED.value,
                stock_committed=False,
                version=version,
                updated_at=now,
            )
        )
        await session.commit()
    except ConcurrentModification as conflict:
        # 別のリクエスト (管理者のキャンセルなど) が先に注文を書き換えた
        await session.rollback()
        logger.error(
            "PARTIAL STOCK FAILURE order=%s failed_product=%s line=%d decremented=%d: "
            "order was modified concurrently, failure not recorded: %s",
            order_id,
            line.product_id,
            line_no,
            line_no,
            exc,
        )
        raise PartialStockFailure(order_id, line.product_id, line_no) from conflict
    await _publish(redis, ORDER_CHANNEL, "StockCommitFailed", event_data)

    if line_no == 0 and isinstance(exc, OrderServiceError):
        logger.info("Order %s failed before any stock was committed: %s", order_id, exc)
        raise exc

    logger.error(
        "PARTIAL STOCK FAILURE order=%s failed_product=%s line=%d decremented=%s: %s",
        order_id,
        line.product_id,
        line_no,
        line_no,
        exc,
    )
    raise PartialStockFailure(order_id, line.product_id, line_no) from exc


# ── ステータス変更 ───────────────────────────────


async def transition_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    settings: Settings,
    order_id: str,
    new_status: OrderStatus,
) -> dict:
    """
    ステータス変更コマンド（管理者）

    Cancelled への遷移で減算済みの明細があれば、先にその在庫を戻す。
    全行戻し終わるまでステータスは Cancelled にならない。
    戻しが途中で止まっている注文はキャンセル以外を受け付けない。
    """
    agg = await _load_aggregate(session, order_id)
    current = agg.status
    target = next_status(current, new_status)
    if agg.restoration_in_progress and target is not OrderStatus.CANCELLED:
        raise RestorationIncomplete(order_id, target.value)
    version = agg.version

    stock_released = False
    if (
        target is OrderStatus.CANCELLED
        and agg.held_lines
        and (current in settings.restore_on_cancel_from or agg.restoration_in_progress)
    ):
        version = await _restore_stock(session, redis, agg)
        stock_released = True

    now = datetime.now(timezone.utc)
    delivered_at = now if target is OrderStatus.DELIVERED else None
    event_data = OrderStatusChanged(
        order_id=order_id,
        from_status=current.value,
        to_status=target.value,
        stock_released=stock_released,
        delivered_at=delivered_at,
        timestamp=now,
    ).model_dump(mode="json")

    values = {"status": target.value, "updated_at": now}
    if stock_released:
        values["stock_committed"] = False
    if delivered_at is not None:
        values["delivered_at"] = delivered_at

    try:
        values["version"] = await event_store.append_event(
            session, order_id, "Order", "OrderStatusChanged", event_data, version
        )
        await session.execute(update(orders).where(orders.c.id == order_id).values(**values))
        await session.commit()
    except OrderServiceError:
        await session.rollback()
        raise

    logger.info("Order %s status %s -> %s", order_id, current.value, target.value)
    await _publish(redis, ORDER_CHANNEL, "OrderStatusChanged", event_data)
    return await queries.fetch_order(session, order_id, internal=True)


async def delete_order(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    settings: Settings,
    order_id: str,
) -> None:
    """
    注文削除コマンド（管理者）

    restore_stock_on_delete が有効で減算済みの明細があれば、先に在庫を戻す。
    リードモデルからは消えるが、イベント列には OrderDeleted が残る。
    """
    agg = await _load_aggregate(session, order_id)
    version = agg.version

    stock_released = False
    if settings.restore_stock_on_delete and agg.held_lines:
        version = await _restore_stock(session, redis, agg)
        stock_released = True
    elif agg.held_lines:
        logger.warning(
            "Deleting order %s with %d committed line(s); stock is not restored",
            order_id,
            len(agg.held_lines),
        )

    event_data = OrderDeleted(
        order_id=order_id,
        stock_released=stock_released,
        timestamp=datetime.now(timezone.utc),
    ).model_dump(mode="json")
    try:
        await event_store.append_event(
            session, order_id, "Order", "OrderDeleted", event_data, version
        )
        await session.execute(delete(order_items).where(order_items.c.order_id == order_id))
        await session.execute(delete(orders).where(orders.c.id == order_id))
        await session.commit()
    except OrderServiceError:
        await session.rollback()
        raise

    logger.info("Order %s deleted (stock released: %s)", order_id, stock_released)
    await _publish(redis, ORDER_CHANNEL, "OrderDeleted", event_data)


async def _restore_stock(
    session: AsyncSession,
    redis: aioredis.Redis | None,
    agg: OrderAggregate,
) -> int:
    """
    減算済みの明細 (committed_lines まで) の在庫を明細順に戻し、
    最後のストリームバージョンを返す。

    前回の試行で戻し済みの行 (restored_lines) は飛ばすので、
    運用者が再試行しても二重に戻ることはない。
    """
    version = agg.version
    restored = [item["product_id"] for item in agg.items[: agg.restored_lines]]

    for line_no in agg.held_lines:
        item = agg.items[line_no]
        try:
            new_stock = await stock.increase(session, item["product_id"], item["quantity"])
            event_data = StockRestored(
                order_id=agg.id,
                line_no=line_no,
                product_id=item["product_id"],
                quantity=item["quantity"],
                new_stock=new_stock,
                timestamp=datetime.now(timezone.utc),
            ).model_dump(mode="json")
            version = await event_store.append_event(
                session, agg.id, "Order", "StockRestored", event_data, version
            )
            await session.execute(
                update(orders)
                .where(orders.c.id == agg.id)
                .values(
                    restored_lines=line_no + 1,
                    version=version,
                    updated_at=datetime.now(timezone.utc),
                )
            )
            await session.commit()
        except (ProductNotFound, SQLAlchemyError) as exc:
            await session.rollback()
            pending = [i["product_id"] for i in agg.items[line_no : agg.committed_lines]]
            logger.error(
                "STOCK RESTORATION FAILED order=%s restored=%s pending=%s: %s",
                agg.id,
                restored,
                pending,
                exc,
            )
            raise StockRestorationFailed(agg.id, restored, pending, str(exc)) from exc
        except OrderServiceError:
            await session.rollback()
            raise

        restored.append(item["product_id"])
        await _publish(redis, INVENTORY_CHANNEL, "StockRestored", event_data)

    return version


# ── ヘルパー ─────────────────────────────────────


async def _load_aggregate(session: AsyncSession, order_id: str) -> OrderAggregate:
    """現在の集約をイベントから再構築する"""
    events = await event_store.load_events(session, order_id)
    agg = OrderAggregate.from_events(events)
    if not agg.exists:
        raise OrderNotFound(order_id)
    return agg


async def _publish(
    redis: aioredis.Redis | None, channel: str, event_type: str, data: dict
) -> None:
    if redis is None:
        return
    await redis.publish(
        channel,
        json.dumps({"event_type": event_type, "data": data}, default=str),
    )
