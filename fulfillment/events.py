"""
Fulfillment Service - イベント定義

ドメインで発生した事実(イベント)を定義する。
イベントは過去形で命名し、不変(immutable)として扱う。

event_store と Redis にはそれぞれ model_dump(mode="json") の結果を保存・発行する。
"""

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel

from .aggregate import OrderItem, OrderStatus


class OrderCreated(BaseModel):
    """注文が作成された (在庫引き当て済み)"""
    order_id: str
    user_id: str
    items: list[OrderItem]
    subtotal: Decimal
    tax: Decimal
    shipping_cost: Decimal
    total: Decimal
    payment_details: dict
    shipping_info: dict
    idempotency_key: str | None = None
    timestamp: datetime


class OrderStatusChanged(BaseModel):
    """注文ステータスが変更された"""
    order_id: str
    from_status: OrderStatus
    to_status: OrderStatus
    timestamp: datetime


class InventoryReserved(BaseModel):
    """在庫が引き当てられた"""
    product_id: str
    order_id: str
    quantity: int
    timestamp: datetime


class InventoryReleased(BaseModel):
    """在庫が解放された (補償トランザクション / キャンセル時の戻し)"""
    product_id: str
    order_id: str
    quantity: int
    reason: str
    timestamp: datetime
