"""
Fulfillment Service - 注文集約 (Order Aggregate)

集約の状態は直接保存せず、イベントをリプレイして復元する。
apply_xxx メソッド: 各イベントを適用して状態を変更する

状態遷移:
    pending    → processing, cancelled
    processing → shipped, cancelled
    shipped    → delivered, cancelled
    delivered  → refunded
    cancelled  → refunded
    refunded   (終端)
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict


class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.CANCELLED: frozenset({OrderStatus.REFUNDED}),
    OrderStatus.REFUNDED: frozenset(),
}

# 出荷前のキャンセルだけが在庫を戻す対象
RESTOCKABLE = frozenset({OrderStatus.PENDING, OrderStatus.PROCESSING})


class OrderItem(BaseModel):
    """注文時点の商品名・単価のスナップショット"""
    model_config = ConfigDict(frozen=True)

    product_id: str
    product_name: str
    quantity: int
    price: Decimal
    subtotal: Decimal

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "price": float(self.price),
            "subtotal": float(self.subtotal),
        }


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class OrderAggregate:
    """
    注文集約 - イベントから現在の状態を再構築する。

    items と金額は OrderCreated で確定し、以降は変更されない。
    変更できるのはステータスとタイムスタンプのみ。
    """

    def __init__(self) -> None:
        self.id: str | None = None
        self.user_id: str = ""
        self.status: OrderStatus = OrderStatus.PENDING
        self.items: tuple[OrderItem, ...] = ()
        self.subtotal: Decimal = Decimal("0")
        self.tax: Decimal = Decimal("0")
        self.shipping_cost: Decimal = Decimal("0")
        self.total: Decimal = Decimal("0")
        self.payment_details: dict = {}
        self.shipping_info: dict = {}
        self.idempotency_key: str | None = None
        self.created_at: datetime | None = None
        self.updated_at: datetime | None = None
        self.completed_at: datetime | None = None
        self.version: int = 0

    # ── イベント適用メソッド ──────────────────────────

    def apply_order_created(self, data: dict) -> None:
        self.id = data["order_id"]
        self.user_id = data["user_id"]
        self.status = OrderStatus.PENDING
        self.items = tuple(
            OrderItem(
                product_id=i["product_id"],
                product_name=i["product_name"],
                quantity=i["quantity"],
                price=Decimal(i["price"]),
                subtotal=Decimal(i["subtotal"]),
            )
            for i in data["items"]
        )
        self.subtotal = Decimal(data["subtotal"])
        self.tax = Decimal(data["tax"])
        self.shipping_cost = Decimal(data["shipping_cost"])
        self.total = Decimal(data["total"])
        self.payment_details = data["payment_details"]
        self.shipping_info = data["shipping_info"]
        self.idempotency_key = data.get("idempotency_key")
        self.created_at = _parse_ts(data["timestamp"])
        self.updated_at = self.created_at

    def apply_order_status_changed(self, data: dict) -> None:
        self.status = OrderStatus(data["to_status"])
        self.updated_at = _parse_ts(data["timestamp"])
        if self.status == OrderStatus.DELIVERED:
            self.completed_at = self.updated_at

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        """イベントタイプに応じた apply メソッドを呼び出す。"""
        handler = {
            "OrderCreated": self.apply_order_created,
            "OrderStatusChanged": self.apply_order_status_changed,
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

    # ── 状態遷移 ─────────────────────────────────────

    def allowed_transitions(self) -> list[str]:
        return sorted(s.value for s in TRANSITIONS[self.status])

    def can_transition_to(self, status: OrderStatus) -> bool:
        return status in TRANSITIONS[self.status]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "status": self.status.value,
            "items": [i.to_dict() for i in self.items],
            "subtotal": float(self.subtotal),
            "tax": float(self.tax),
            "shipping_cost": float(self.shipping_cost),
            "total": float(self.total),
            "payment_details": self.payment_details,
            "shipping_info": self.shipping_info,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
