"""
Order Service — 設定

接続先と在庫ポリシーを環境変数から読み込む。
"""

import os
from dataclasses import dataclass, field

from .aggregate import OrderStatus


def _parse_statuses(raw: str) -> frozenset[OrderStatus]:
    return frozenset(OrderStatus(s.strip()) for s in raw.split(",") if s.strip())


def _parse_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str
    redis_url: str | None = None
    log_level: str = "INFO"
    # 決済ゲートウェイが「支払い済み」を表すステータス文字列
    paid_status: str = "succeeded"
    # キャンセル時に在庫を戻してよい遷移元ステータス
    restore_on_cancel_from: frozenset[OrderStatus] = field(
        default_factory=lambda: frozenset(
            {OrderStatus.PROCESSING, OrderStatus.SHIPPED}
        )
    )
    restore_stock_on_delete: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.environ["DATABASE_URL"],
            redis_url=os.environ.get("REDIS_URL") or None,
            log_level=os.environ.get("LOG_LEVEL", "INFO"),
            paid_status=os.environ.get("PAID_STATUS", "succeeded"),
            restore_on_cancel_from=_parse_statuses(
                os.environ.get("RESTORE_ON_CANCEL_FROM", "Processing,Shipped")
            ),
            restore_stock_on_delete=_parse_bool(
                os.environ.get("RESTORE_STOCK_ON_DELETE", "false")
            ),
        )
