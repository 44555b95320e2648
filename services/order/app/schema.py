"""
Order Service — テーブル定義

products       : 在庫数の唯一の正 (stock >= 0 を CHECK 制約でも保証)
orders         : 注文のリードモデル (ステータスと在庫確定状況を含む)
order_items    : 注文明細 (line_no = カート順)
event_store    : 注文ごとのイベント列 (aggregate_id + version は UNIQUE)
"""

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.ext.asyncio import AsyncEngine

metadata = MetaData()

products = Table(
    "products",
    metadata,
    Column("id", String(64), primary_key=True),
    Column("name", String(200), nullable=False),
    Column("price", Numeric(12, 2), nullable=False, default=0),
    Column("stock", Integer, nullable=False, default=0),
    Column("updated_at", DateTime(timezone=True)),
    CheckConstraint("stock >= 0", name="ck_products_stock_non_negative"),
)

orders = Table(
    "orders",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("status", String(32), nullable=False, index=True),
    Column("shipping", JSON, nullable=False),
    Column("payment", JSON, nullable=False),
    Column("items_total", Numeric(12, 2), nullable=False),
    Column("tax", Numeric(12, 2), nullable=False),
    Column("shipping_price", Numeric(12, 2), nullable=False),
    Column("grand_total", Numeric(12, 2), nullable=False),
    Column("stock_committed", Boolean, nullable=False, default=False),
    Column("committed_lines", Integer, nullable=False, default=0),
    Column("restored_lines", Integer, nullable=False, default=0),
    Column("version", Integer, nullable=False),
    Column("idempotency_key", String(128)),
    Column("paid_at", DateTime(timezone=True)),
    Column("delivered_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("user_id", "idempotency_key", name="uq_orders_idempotency"),
)

order_items = Table(
    "order_items",
    metadata,
    Column("order_id", String(36), ForeignKey("orders.id"), primary_key=True),
    Column("line_no", Integer, primary_key=True),
    Column("product_id", String(64), nullable=False),
    Column("name", String(200), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("unit_price", Numeric(12, 2), nullable=False),
)

event_store = Table(
    "event_store",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("aggregate_id", String(36), nullable=False, index=True),
    Column("aggregate_type", String(50), nullable=False),
    Column("event_type", String(50), nullable=False),
    Column("event_data", Text, nullable=False),
    Column("version", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("aggregate_id", "version", name="uq_event_store_version"),
)


async def setup_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


async def drop_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
