"""
Order Service — イベント定義

Event Sourcing では、ドメインで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel


class OrderLine(BaseModel):
    product_id: str
    name: str
    quantity: int
    unit_price: Decimal


class OrderCreated(BaseModel):
    """注文が作成された"""
    order_id: str
    user_id: str
    items: list[OrderLine]
    shipping: dict
    payment: dict
    pricing: dict[str, Decimal]
    status: str
    paid_at: datetime | None = None
    idempotency_key: str | None = None
    timestamp: datetime


class StockCommitted(BaseModel):
    """明細 1 行分の在庫が減算された"""
    order_id: str
    line_no: int
    product_id: str
    quantity: int
    new_stock: int
    timestamp: datetime


class StockCommitFailed(BaseModel):
    """在庫の減算が途中で失敗し、注文が Failed になった"""
    order_id: str
    line_no: int
    product_id: str
    decremented: int
    reason: str
    timestamp: datetime


class StockRestored(BaseModel):
    """明細 1 行分の在庫が戻された（キャンセル・削除時）"""
    order_id: str
    line_no: int
    product_id: str
    quantity: int
    new_stock: int
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """管理者によりステータスが変更された"""
    order_id: str
    from_status: str
    to_status: str
    stock_released: bool = False
    delivered_at: datetime | None = None
    timestamp: datetime


class OrderDeleted(BaseModel):
    """注文が削除された"""
    order_id: str
    stock_released: bool = False
    timestamp: datetime
