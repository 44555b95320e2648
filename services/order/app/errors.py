"""
Order Service — エラー定義

すべてのドメインエラーは OrderServiceError を継承し、
HTTP ステータスと利用者向けメッセージを持つ。

整合性エラー (PartialStockFailure / StockRestorationFailed) は
内部の詳細を属性に保持するが、利用者にはサポート問い合わせの
汎用メッセージだけを返す。詳細はログに残す。
"""

SUPPORT_MESSAGE = (
    "We could not complete this order operation. "
    "Please contact support with your order id."
)


class OrderServiceError(Exception):
    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def public_message(self) -> str:
        return self.message


# ── 入力エラー (400) ─────────────────────────────


class ValidationFailed(OrderServiceError):
    status_code = 400


class EmptyOrder(ValidationFailed):
    def __init__(self) -> None:
        super().__init__("Order must contain at least one item")


class InvalidItem(ValidationFailed):
    def __init__(self, index: int, reason: str) -> None:
        super().__init__(f"items[{index}]: {reason}")
        self.index = index


class IncompleteShipping(ValidationFailed):
    def __init__(self, field: str) -> None:
        super().__init__(f"Shipping information missing required field: {field}")
        self.field = field


class MissingPayment(ValidationFailed):
    def __init__(self) -> None:
        super().__init__("Payment information (id and status) is required")


class IncompletePricing(ValidationFailed):
    def __init__(self, field: str) -> None:
        super().__init__(
            f"Price details (items, tax, shipping, total) are required: missing {field}"
        )
        self.field = field


# ── 在庫エラー ───────────────────────────────────


class ProductNotFound(OrderServiceError):
    status_code = 404

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product with ID {product_id} not found.")
        self.product_id = product_id


class InsufficientStock(OrderServiceError):
    status_code = 400

    def __init__(self, product_id: str, name: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for product: {name} "
            f"(Requested: {requested}, Available: {available})"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class PartialStockFailure(OrderServiceError):
    """注文は保存されたが、在庫の減算が途中で失敗した。"""

    def __init__(self, order_id: str, failed_product_id: str, decremented: int) -> None:
        super().__init__(
            f"Order {order_id}: stock commit failed at product {failed_product_id} "
            f"after {decremented} line(s) were decremented"
        )
        self.order_id = order_id
        self.failed_product_id = failed_product_id
        self.decremented = decremented

    @property
    def public_message(self) -> str:
        return SUPPORT_MESSAGE


class StockRestorationFailed(OrderServiceError):
    """在庫の戻しが途中で失敗した。ステータスは変更されていない。"""

    def __init__(
        self, order_id: str, restored: list[str], pending: list[str], cause: str
    ) -> None:
        super().__init__(
            f"Order {order_id}: stock restoration incomplete "
            f"(restored={restored}, pending={pending}): {cause}"
        )
        self.order_id = order_id
        self.restored = restored
        self.pending = pending

    @property
    def public_message(self) -> str:
        return SUPPORT_MESSAGE


# ── 注文・状態遷移エラー ─────────────────────────


class OrderNotFound(OrderServiceError):
    status_code = 404

    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order not found with ID: {order_id}")
        self.order_id = order_id


class Forbidden(OrderServiceError):
    status_code = 403

    def __init__(self, message: str = "Not authorized to view this order") -> None:
        super().__init__(message)


class InvalidTransition(OrderServiceError):
    status_code = 400

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"Cannot transition from {current} to {target}")
        self.current = current
        self.target = target


class OrderTerminal(OrderServiceError):
    status_code = 400

    def __init__(self, current: str) -> None:
        super().__init__(f"Cannot update status. Order is already {current}.")
        self.current = current


class ConcurrentModification(OrderServiceError):
    status_code = 409

    def __init__(self, order_id: str) -> None:
        super().__init__(
            f"Order {order_id} was modified by another request. Please retry."
        )
        self.order_id = order_id


class Unauthorized(OrderServiceError):
    status_code = 401

    def __init__(self) -> None:
        super().__init__("Login required to access this resource.")


class UnknownStatus(ValidationFailed):
    def __init__(self, value: str, allowed: list[str]) -> None:
        super().__init__(
            f"Invalid status provided. Allowed statuses: {', '.join(allowed)}"
        )
        self.value = value


class RestorationIncomplete(OrderServiceError):
    """在庫の戻しが途中で止まっている注文は、キャンセル以外に遷移できない。"""

    status_code = 409

    def __init__(self, order_id: str, target: str) -> None:
        super().__init__(
            f"Stock restoration for order {order_id} is incomplete; "
            f"it can only be cancelled, not moved to {target}."
        )
        self.order_id = order_id
        self.target = target
