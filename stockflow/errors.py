"""
エラー分類 (Error Taxonomy)

すべての部分的な副作用(在庫の引き当て)は Coordinator の内側で
補償されてから例外が境界を越える。呼び出し側が後始末をする必要はない。

retryable:
    True  → 呼び出し側は同じリクエストを再試行してよい
    False → 入力か状態遷移の誤り。再試行しても結果は変わらない
"""

from collections.abc import Iterable


class OrderingError(Exception):
    """ドメインエラーの基底クラス"""

    code = "ORDERING_ERROR"
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


class ValidationError(OrderingError):
    """リクエストの形式が不正(副作用の前に拒否される)"""

    code = "VALIDATION_ERROR"


class UnknownCustomerError(ValidationError):
    code = "UNKNOWN_CUSTOMER"

    def __init__(self, customer_id: str) -> None:
        super().__init__(f"Customer {customer_id!r} does not exist")
        self.customer_id = customer_id


class UnknownProductError(ValidationError):
    code = "UNKNOWN_PRODUCT"

    def __init__(self, sku: str) -> None:
        super().__init__(f"Product {sku!r} is not in the catalog")
        self.sku = sku


class NotFoundError(OrderingError):
    code = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: object) -> None:
        super().__init__(f"{entity_type} {entity_id} not found")
        self.entity_type = entity_type
        self.entity_id = entity_id


class InsufficientStockError(OrderingError):
    """在庫不足。想定内のビジネス結果であり、システム障害ではない。"""

    code = "INSUFFICIENT_STOCK"
    retryable = True

    def __init__(self, sku: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient stock for {sku}: requested={requested}, available={available}"
        )
        self.sku = sku
        self.requested = requested
        self.available = available

    @property
    def skus(self) -> list[str]:
        return [self.sku]


class PersistenceError(OrderingError):
    """ストレージ層の障害"""

    code = "PERSISTENCE_ERROR"
    retryable = True


class LookupUnavailableError(OrderingError):
    """カタログ・顧客サービスに到達できない"""

    code = "LOOKUP_UNAVAILABLE"
    retryable = True


class ConcurrencyTimeoutError(OrderingError):
    """同一 SKU のロック競合が上限時間を超えた"""

    code = "CONCURRENCY_TIMEOUT"
    retryable = True

    def __init__(self, skus: Iterable[str], timeout: float) -> None:
        self.skus = sorted(skus)
        self.timeout = timeout
        super().__init__(
            f"Could not reserve {', '.join(self.skus)} within {timeout:g}s"
        )


class ReservationExpiredError(ConcurrencyTimeoutError):
    """引き当てがコミット前にスイーパーによって解放された"""

    code = "RESERVATION_EXPIRED"

    def __init__(self, skus: Iterable[str]) -> None:
        self.skus = sorted(skus)
        self.timeout = 0.0
        OrderingError.__init__(
            self, f"Reservation for {', '.join(self.skus)} expired before commit"
        )


class InvalidTransitionError(OrderingError):
    """状態機械に違反する遷移。呼び出し側のバグとして扱う。"""

    code = "INVALID_TRANSITION"

    def __init__(self, order_id: object, current: str, requested: str) -> None:
        super().__init__(
            f"Order {order_id} cannot move from {current} to {requested}"
        )
        self.order_id = order_id
        self.current = current
        self.requested = requested
