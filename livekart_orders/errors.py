"""
Order Service — 例外定義

すべてのドメイン例外は LiveKartError を継承する。
HTTP ステータスと機械可読なエラーコードを持ち、main.py の
例外ハンドラで JSON レスポンスに変換される。

retryable = True のエラーは「後で再試行してよい」ことを示す。
それ以外は「入力を直すべき」エラー。
"""


class LiveKartError(Exception):
    """Base exception for all order service errors."""

    status_code = 500
    code = "internal_error"
    retryable = False

    def __init__(self, message: str, **detail) -> None:
        self.message = message
        self.detail = detail
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
            **self.detail,
        }


class AuthenticationError(LiveKartError):
    """Raised when the bearer token is missing or rejected by the identity provider."""

    status_code = 401
    code = "unauthenticated"


class ValidationError(LiveKartError):
    """Raised for malformed or semantically invalid requests."""

    status_code = 400
    code = "validation_error"


class ProductNotFound(LiveKartError):
    status_code = 404
    code = "product_not_found"

    def __init__(self, product_id: str):
        self.product_id = product_id
        super().__init__(f"Product {product_id} not found", product_id=product_id)


class InsufficientStock(LiveKartError):
    status_code = 409
    code = "insufficient_stock"

    def __init__(self, product_id: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product {product_id}: "
            f"requested={requested}, available={available}",
            product_id=product_id,
            requested=requested,
            available=available,
        )


class OrderNotFound(LiveKartError):
    status_code = 404
    code = "order_not_found"

    def __init__(self, order_id: str):
        self.order_id = order_id
        super().__init__("Order not found", order_id=order_id)


class SubmissionInProgress(LiveKartError):
    """Raised when another request holding the same idempotency key has not finished yet."""

    status_code = 409
    code = "submission_in_progress"
    retryable = True

    def __init__(self) -> None:
        super().__init__("An order with this idempotency key is still being processed")


class IdempotencyKeyReused(LiveKartError):
    """Raised when an idempotency key is presented again with a different request body."""

    status_code = 422
    code = "idempotency_key_reused"

    def __init__(self) -> None:
        super().__init__("Idempotency key was already used for a different order request")


class StorageError(LiveKartError):
    """Transient storage failure. Safe to retry with the same idempotency key."""

    status_code = 500
    code = "storage_error"
    retryable = True


class IdentityServiceError(LiveKartError):
    status_code = 503
    code = "identity_unavailable"
    retryable = True


class InternalError(LiveKartError):
    status_code = 500
    code = "internal_error"
