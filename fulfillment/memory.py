"""
Fulfillment Service - インメモリ実装

台帳・ストア・外部サービスをプロセス内で置き換える。
テストとローカル実行用。SQL 実装と同じ契約を守る:
在庫の引き当ては商品ごとのロック内で判定と減算をまとめて行う。
"""

import asyncio
from collections import defaultdict
from datetime import datetime, timezone

from .aggregate import OrderAggregate
from .clients import Caller, Product
from .errors import (
    ConcurrentModification,
    DuplicateIdempotencyKey,
    InsufficientInventory,
    InventoryRecordNotFound,
)
from .events import OrderCreated, OrderStatusChanged
from .ledger import InventoryRecord


class InMemoryInventoryLedger:
    def __init__(self) -> None:
        self.records: dict[str, InventoryRecord] = {}
        self.movements: list[dict] = []
        self._locks: defaultdict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    async def stock(self, product_id: str, quantity: int, location: str = "", reorder_point: int = 0) -> InventoryRecord:
        record = InventoryRecord(
            product_id=product_id,
            quantity=quantity,
            location=location,
            reorder_point=reorder_point,
            updated_at=datetime.now(timezone.utc),
        )
        self.records[product_id] = record
        return record.model_copy()

    async def get(self, product_id: str) -> InventoryRecord | None:
        record = self.records.get(product_id)
        return record.model_copy() if record else None

    async def reserve(self, product_id: str, quantity: int, order_id: str) -> None:
        if quantity < 1:
            raise ValueError(f"quantity must be positive, got {quantity}")
        async with self._locks[product_id]:
            # 実ストアと同じくここで中断が起こりうる
            await asyncio.sleep(0)
            record = self.records.get(product_id)
            if record is None or record.quantity < quantity:
                raise InsufficientInventory(product_id, quantity, record.quantity if record else 0)
            self._move(record, -quantity, order_id, "reserved")

    async def release(self, product_id: str, quantity: int, order_id: str, reason: str) -> None:
        if quantity < 1:
            raise ValueError(f"quantity must be positive, got {quantity}")
        async with self._locks[product_id]:
            await asyncio.sleep(0)
            record = self.records.get(product_id)
            if record is None:
                raise InventoryRecordNotFound(product_id)
            self._move(record, quantity, order_id, reason)

    async def low_stock(self) -> list[InventoryRecord]:
        return [
            r.model_copy()
            for _, r in sorted(self.records.items())
            if r.quantity <= r.reorder_point
        ]

    def _move(self, record: InventoryRecord, delta: int, order_id: str, reason: str) -> None:
        now = datetime.now(timezone.utc)
        record.quantity += delta
        record.updated_at = now
        self.movements.append({
            "product_id": record.product_id,
            "order_id": order_id,
            "delta": delta,
            "reason": reason,
            "created_at": now.isoformat(),
        })


class InMemoryOrderStore:
    """イベント列を注文ごとに保持し、読み出しのたびにリプレイする。"""

    def __init__(self) -> None:
        self.events: dict[str, list[dict]] = {}
        self._idempotency: dict[tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def add(self, event: OrderCreated) -> OrderAggregate:
        data = event.model_dump(mode="json")
        async with self._lock:
            if event.idempotency_key:
                key = (event.user_id, event.idempotency_key)
                if key in self._idempotency:
                    raise DuplicateIdempotencyKey(event.user_id, event.idempotency_key)
                self._idempotency[key] = event.order_id
            self.events[event.order_id] = [
                {"event_type": "OrderCreated", "event_data": data, "version": 1}
            ]
        return OrderAggregate.from_events(self.events[event.order_id])

    async def append_status_change(
        self, order: OrderAggregate, event: OrderStatusChanged
    ) -> OrderAggregate:
        data = event.model_dump(mode="json")
        async with self._lock:
            stream = self.events[order.id]
            if len(stream) != order.version:
                raise ConcurrentModification(order.id)
            stream.append({
                "event_type": "OrderStatusChanged",
                "event_data": data,
                "version": order.version + 1,
            })
        order.apply_order_status_changed(data)
        order.version += 1
        return order

    async def get(self, order_id: str) -> OrderAggregate | None:
        stream = self.events.get(order_id)
        if not stream:
            return None
        return OrderAggregate.from_events(stream)

    async def list_for_user(self, user_id: str) -> list[OrderAggregate]:
        orders = [OrderAggregate.from_events(s) for s in self.events.values()]
        orders = [o for o in orders if o.user_id == user_id]
        return sorted(orders, key=lambda o: o.created_at, reverse=True)

    async def find_by_idempotency_key(self, user_id: str, key: str) -> OrderAggregate | None:
        order_id = self._idempotency.get((user_id, key))
        return await self.get(order_id) if order_id else None


class InMemoryProductLookup:
    def __init__(self, products: list[Product] | None = None) -> None:
        self.products = {p.id: p for p in products or []}

    def add(self, product: Product) -> None:
        self.products[product.id] = product

    async def get_product(self, product_id: str) -> Product | None:
        await asyncio.sleep(0)
        return self.products.get(product_id)


class InMemoryAuthenticator:
    """トークン → 呼び出し元 の固定マップ"""

    def __init__(self, tokens: dict[str, Caller] | None = None) -> None:
        self.tokens = dict(tokens or {})

    async def authenticate(self, token: str) -> Caller | None:
        return self.tokens.get(token)


class RecordingPublisher:
    def __init__(self) -> None:
        self.published: list[tuple[str, str, dict]] = []

    async def publish(self, channel: str, event_type: str, data: dict) -> None:
        self.published.append((channel, event_type, data))
