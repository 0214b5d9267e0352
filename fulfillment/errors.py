"""
Fulfillment Service - ドメイン例外

各例外は HTTP ステータスコードを持ち、コントローラの例外ハンドラが
{success, error, details} エンベロープに変換する。

    FulfillmentError (500)
    ├── ValidationError          (400) リクエスト形状の不正
    ├── ProductNotFound          (404)
    ├── OrderNotFound            (404)
    ├── ProductUnavailable       (400) 注文不可の商品
    ├── InsufficientInventory    (400) 在庫不足
    ├── InventoryRecordNotFound  (404)
    ├── InvalidTransition        (400) 許可されていない状態遷移
    ├── ConcurrentModification   (409) 楽観的ロック競合
    ├── DuplicateIdempotencyKey  (409) 冪等キーの重複 (サービス内部で処理)
    ├── Unauthenticated          (401)
    └── Forbidden                (403)
"""

from typing import Any


class FulfillmentError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Any = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(FulfillmentError):
    status_code = 400


class ProductNotFound(FulfillmentError):
    status_code = 404

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product with ID {product_id} not found")
        self.product_id = product_id


class OrderNotFound(FulfillmentError):
    status_code = 404

    def __init__(self, order_id: str) -> None:
        super().__init__("Order not found")
        self.order_id = order_id


class ProductUnavailable(FulfillmentError):
    status_code = 400

    def __init__(self, product_id: str, product_name: str) -> None:
        super().__init__(f"Product {product_name} is not available")
        self.product_id = product_id


class InsufficientInventory(FulfillmentError):
    status_code = 400

    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Insufficient inventory for product {product_id}",
            {"product_id": product_id, "requested": requested, "available": available},
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class InventoryRecordNotFound(FulfillmentError):
    status_code = 404

    def __init__(self, product_id: str) -> None:
        super().__init__(f"Inventory not found for product {product_id}")
        self.product_id = product_id


class InvalidTransition(FulfillmentError):
    status_code = 400

    def __init__(self, current: str, requested: str, allowed: list[str]) -> None:
        super().__init__(
            f"Cannot change order status from {current} to {requested}",
            {"current_status": current, "requested_status": requested, "allowed": allowed},
        )


class ConcurrentModification(FulfillmentError):
    status_code = 409

    def __init__(self, order_id: str) -> None:
        super().__init__("Order was modified concurrently, retry the request")
        self.order_id = order_id


class DuplicateIdempotencyKey(FulfillmentError):
    status_code = 409

    def __init__(self, user_id: str, key: str) -> None:
        super().__init__("An order with this idempotency key already exists")
        self.user_id = user_id
        self.key = key


class Unauthenticated(FulfillmentError):
    status_code = 401

    def __init__(self, message: str = "Unauthorized") -> None:
        super().__init__(message)


class Forbidden(FulfillmentError):
    status_code = 403

    def __init__(self, message: str = "Forbidden: You do not have access to this order") -> None:
        super().__init__(message)
