"""
Fulfillment Service - 注文ストア

Write 側: 注文の状態変更はすべてイベントとして event_store に追記し、
同じトランザクションでリードモデル (orders_read_model) も更新する。
Read 側: 単一注文はイベントのリプレイで、一覧はリードモデルから取得する。
"""

import json
from datetime import datetime
from typing import Protocol

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from . import event_store
from .aggregate import OrderAggregate, OrderStatus
from .errors import ConcurrentModification, DuplicateIdempotencyKey
from .events import OrderCreated, OrderStatusChanged


class OrderStore(Protocol):
    async def add(self, event: OrderCreated) -> OrderAggregate: ...

    async def get(self, order_id: str) -> OrderAggregate | None: ...

    async def list_for_user(self, user_id: str) -> list[OrderAggregate]: ...

    async def find_by_idempotency_key(self, user_id: str, key: str) -> OrderAggregate | None: ...

    async def append_status_change(
        self, order: OrderAggregate, event: OrderStatusChanged
    ) -> OrderAggregate: ...


class SqlOrderStore:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    # ── Commands ─────────────────────────────────────

    async def add(self, event: OrderCreated) -> OrderAggregate:
        """
        注文作成

        1. OrderCreated イベントを追記
        2. リードモデルに INSERT
        (user_id, idempotency_key) が重複していれば DuplicateIdempotencyKey
        """
        data = event.model_dump(mode="json")
        async with self._session_factory() as session:
            version = await event_store.append(session, event, 0)
            try:
                await session.execute(
                    text("""
                        INSERT INTO orders_read_model
                            (id, user_id, status, items, subtotal, tax, shipping_cost, total,
                             payment_details, shipping_info, idempotency_key, version,
                             created_at, updated_at, completed_at)
                        VALUES
                            (:id, :user_id, 'pending', :items, :subtotal, :tax, :shipping_cost, :total,
                             :payment_details, :shipping_info, :idempotency_key, :version,
                             :now, :now, NULL)
                    """),
                    {
                        "id": data["order_id"],
                        "user_id": data["user_id"],
                        "items": json.dumps(data["items"]),
                        "subtotal": data["subtotal"],
                        "tax": data["tax"],
                        "shipping_cost": data["shipping_cost"],
                        "total": data["total"],
                        "payment_details": json.dumps(data["payment_details"]),
                        "shipping_info": json.dumps(data["shipping_info"]),
                        "idempotency_key": data["idempotency_key"],
                        "version": version,
                        "now": data["timestamp"],
                    },
                )
            except IntegrityError as e:
                await session.rollback()
                if event.idempotency_key:
                    raise DuplicateIdempotencyKey(event.user_id, event.idempotency_key) from e
                raise
            await session.commit()

        agg = OrderAggregate()
        agg.apply_order_created(data)
        agg.version = version
        return agg

    async def append_status_change(
        self, order: OrderAggregate, event: OrderStatusChanged
    ) -> OrderAggregate:
        """ステータス変更イベントを order.version を期待値として追記する。"""
        data = event.model_dump(mode="json")
        completed_at = order.completed_at.isoformat() if order.completed_at else None
        if event.to_status == OrderStatus.DELIVERED:
            completed_at = data["timestamp"]

        async with self._session_factory() as session:
            try:
                version = await event_store.append(session, event, order.version)
            except event_store.VersionConflict as e:
                await session.rollback()
                raise ConcurrentModification(order.id) from e

            await session.execute(
                text("""
                    UPDATE orders_read_model
                    SET status = :status, updated_at = :now, completed_at = :completed_at,
                        version = :version
                    WHERE id = :id
                """),
                {
                    "id": order.id,
                    "status": data["to_status"],
                    "now": data["timestamp"],
                    "completed_at": completed_at,
                    "version": version,
                },
            )
            await session.commit()

        order.apply_order_status_changed(data)
        order.version = version
        return order

    # ── Queries ──────────────────────────────────────

    async def get(self, order_id: str) -> OrderAggregate | None:
        async with self._session_factory() as session:
            events = await event_store.load(session, order_id)
        if not events:
            return None
        return OrderAggregate.from_events(events)

    async def list_for_user(self, user_id: str) -> list[OrderAggregate]:
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT * FROM orders_read_model
                    WHERE user_id = :user_id
                    ORDER BY created_at DESC
                """),
                {"user_id": user_id},
            )
            return [_from_row(row) for row in result.fetchall()]

    async def find_by_idempotency_key(self, user_id: str, key: str) -> OrderAggregate | None:
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT * FROM orders_read_model
                    WHERE user_id = :user_id AND idempotency_key = :key
                """),
                {"user_id": user_id, "key": key},
            )
            row = result.fetchone()
        return _from_row(row) if row else None


def _from_row(row) -> OrderAggregate:
    """リードモデルの行から集約を組み立てる。"""
    agg = OrderAggregate()
    agg.apply_order_created({
        "order_id": row.id,
        "user_id": row.user_id,
        "items": json.loads(row.items),
        "subtotal": row.subtotal,
        "tax": row.tax,
        "shipping_cost": row.shipping_cost,
        "total": row.total,
        "payment_details": json.loads(row.payment_details),
        "shipping_info": json.loads(row.shipping_info),
        "idempotency_key": row.idempotency_key,
        "timestamp": row.created_at,
    })
    agg.status = OrderStatus(row.status)
    agg.updated_at = datetime.fromisoformat(row.updated_at)
    agg.completed_at = datetime.fromisoformat(row.completed_at) if row.completed_at else None
    agg.version = row.version
    return agg
