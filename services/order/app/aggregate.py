"""
Order Service — 注文集約 (Order Aggregate)

Event Sourcing では集約の状態を直接保存しない。
イベントをリプレイして現在の状態を復元する。

apply_xxx メソッド: 各イベントを適用して状態を変更する
"""

from enum import Enum

from .errors import InvalidTransition, OrderTerminal


class OrderStatus(str, Enum):
    PAYMENT_PENDING = "PaymentPending"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    FAILED = "Failed"


# 状態遷移表: ここに無い遷移はすべて拒否する
TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PAYMENT_PENDING: frozenset(
        {OrderStatus.PROCESSING, OrderStatus.CANCELLED, OrderStatus.FAILED}
    ),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
    OrderStatus.FAILED: frozenset(),
}

TERMINAL_STATUSES = frozenset(s for s, nxt in TRANSITIONS.items() if not nxt)

# 売上集計から除外するステータス
NON_REVENUE_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.FAILED})


def next_status(current: OrderStatus, target: OrderStatus) -> OrderStatus:
    """
    (現在の状態, 要求された状態) から遷移後の状態を決める。

    終端状態からはどこへも遷移できない (OrderTerminal)。
    遷移表に無い組み合わせは InvalidTransition。
    """
    if current in TERMINAL_STATUSES:
        raise OrderTerminal(current.value)
    if target not in TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)
    return target


class OrderAggregate:
    """
    注文集約 — イベントから現在の状態を再構築する。

    在庫の確定・戻しは明細の先頭から順に行うため、
    committed_lines / restored_lines は「先頭から何行済んだか」を表す。
    stock_committed は最初の 1 行を減算した時点で立つ。
    在庫を戻し終えたとき、または作成が途中で失敗したときに下りる。
    """

    def __init__(self) -> None:
        self.id: str | None = None
        self.user_id: str = ""
        self.items: list[dict] = []
        self.status: OrderStatus | None = None
        self.stock_committed: bool = False
        self.committed_lines: int = 0
        self.restored_lines: int = 0
        self.paid_at: str | None = None
        self.delivered_at: str | None = None
        self.deleted: bool = False
        self.version: int = 0

    @property
    def exists(self) -> bool:
        return self.id is not None and not self.deleted

    @property
    def held_lines(self) -> range:
        """減算済みでまだ戻していない明細の範囲"""
        return range(self.restored_lines, self.committed_lines)

    @property
    def restoration_in_progress(self) -> bool:
        return 0 < self.restored_lines < self.committed_lines

    # ── イベント適用メソッド ──────────────────────────

    def apply_order_created(self, data: dict) -> None:
        self.id = data["order_id"]
        self.user_id = data["user_id"]
        self.items = data["items"]
        self.status = OrderStatus(data["status"])
        self.paid_at = data.get("paid_at")

    def apply_stock_committed(self, data: dict) -> None:
        self.committed_lines = data["line_no"] + 1
        self.stock_committed = True

    def apply_stock_commit_failed(self, data: dict) -> None:
        self.status = OrderStatus.FAILED
        self.stock_committed = False

    def apply_stock_restored(self, data: dict) -> None:
        self.restored_lines = data["line_no"] + 1

    def apply_status_changed(self, data: dict) -> None:
        self.status = OrderStatus(data["to_status"])
        if data.get("stock_released"):
            self.stock_committed = False
        if data.get("delivered_at"):
            self.delivered_at = data["delivered_at"]

    def apply_order_deleted(self, data: dict) -> None:
        self.deleted = True
        if data.get("stock_released"):
            self.stock_committed = False

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        """イベントタイプに応じた apply メソッドを呼び出す。"""
        handler = {
            "OrderCreated": self.apply_order_created,
            "StockCommitted": self.apply_stock_committed,
            "StockCommitFailed": self.apply_stock_commit_failed,
            "StockRestored": self.apply_stock_restored,
            "OrderStatusChanged": self.apply_status_changed,
            "OrderDeleted": self.apply_order_deleted,
        }.get(event_type)
        if handler:
            handler(event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        """イベント列から集約を再構築する。"""
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg
