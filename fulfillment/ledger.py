"""
Fulfillment Service - 在庫台帳 (Inventory Ledger)

在庫の引き当て(Reserve)と解放(Release)を処理する。

引き当ては「現在庫 >= 要求数 のときだけ減算する」単一の条件付き UPDATE で行う。
読み取り → 判定 → 書き込み の 3 ステップに分けると、同時リクエストで
在庫がマイナスになるため使わない。UPDATE の rowcount で成否を判定する。

すべての増減は inventory_movements に同じトランザクションで記録する。
"""

from datetime import datetime, timezone
from typing import Protocol
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .errors import InsufficientInventory, InventoryRecordNotFound


class InventoryRecord(BaseModel):
    product_id: str
    quantity: int
    location: str = ""
    reorder_point: int = 0
    updated_at: datetime | None = None


class InventoryLedger(Protocol):
    async def get(self, product_id: str) -> InventoryRecord | None: ...

    async def reserve(self, product_id: str, quantity: int, order_id: str) -> None:
        """在庫を引き当てる。不足時は InsufficientInventory。"""
        ...

    async def release(self, product_id: str, quantity: int, order_id: str, reason: str) -> None: ...

    async def low_stock(self) -> list[InventoryRecord]: ...


def _check_quantity(quantity: int) -> None:
    if quantity < 1:
        raise ValueError(f"quantity must be positive, got {quantity}")


class SqlInventoryLedger:
    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    async def get(self, product_id: str) -> InventoryRecord | None:
        async with self._session_factory() as session:
            result = await session.execute(
                text("SELECT * FROM inventory WHERE product_id = :pid"),
                {"pid": product_id},
            )
            row = result.fetchone()
        return _to_record(row) if row else None

    async def stock(
        self,
        product_id: str,
        quantity: int,
        location: str = "",
        reorder_point: int = 0,
    ) -> InventoryRecord:
        """在庫数を設定する (入荷・初期投入用)。"""
        if quantity < 0:
            raise ValueError(f"quantity must not be negative, got {quantity}")
        now = datetime.now(timezone.utc)
        async with self._session_factory() as session:
            await session.execute(
                text("""
                    INSERT INTO inventory (product_id, quantity, location, reorder_point, updated_at)
                    VALUES (:pid, :qty, :loc, :rp, :now)
                    ON CONFLICT (product_id) DO UPDATE SET
                        quantity = :qty,
                        location = :loc,
                        reorder_point = :rp,
                        updated_at = :now
                """),
                {"pid": product_id, "qty": quantity, "loc": location, "rp": reorder_point, "now": now.isoformat()},
            )
            await session.commit()
        return InventoryRecord(
            product_id=product_id,
            quantity=quantity,
            location=location,
            reorder_point=reorder_point,
            updated_at=now,
        )

    async def reserve(self, product_id: str, quantity: int, order_id: str) -> None:
        _check_quantity(quantity)
        now = datetime.now(timezone.utc).isoformat()
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    UPDATE inventory
                    SET quantity = quantity - :qty, updated_at = :now
                    WHERE product_id = :pid AND quantity >= :qty
                """),
                {"qty": quantity, "now": now, "pid": product_id},
            )
            if result.rowcount != 1:
                await session.rollback()
                record = await self.get(product_id)
                raise InsufficientInventory(product_id, quantity, record.quantity if record else 0)

            await _journal(session, product_id, order_id, -quantity, "reserved", now)
            await session.commit()

    async def release(self, product_id: str, quantity: int, order_id: str, reason: str) -> None:
        _check_quantity(quantity)
        now = datetime.now(timezone.utc).isoformat()
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    UPDATE inventory
                    SET quantity = quantity + :qty, updated_at = :now
                    WHERE product_id = :pid
                """),
                {"qty": quantity, "now": now, "pid": product_id},
            )
            if result.rowcount != 1:
                await session.rollback()
                raise InventoryRecordNotFound(product_id)

            await _journal(session, product_id, order_id, quantity, reason, now)
            await session.commit()

    async def low_stock(self) -> list[InventoryRecord]:
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT * FROM inventory
                    WHERE quantity <= reorder_point
                    ORDER BY product_id
                """),
            )
            return [_to_record(row) for row in result.fetchall()]

    async def movements(self, product_id: str) -> list[dict]:
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT order_id, delta, reason, created_at
                    FROM inventory_movements
                    WHERE product_id = :pid
                    ORDER BY created_at ASC
                """),
                {"pid": product_id},
            )
            return [
                {"order_id": row.order_id, "delta": row.delta, "reason": row.reason, "created_at": row.created_at}
                for row in result.fetchall()
            ]


async def _journal(
    session: AsyncSession,
    product_id: str,
    order_id: str,
    delta: int,
    reason: str,
    now: str,
) -> None:
    await session.execute(
        text("""
            INSERT INTO inventory_movements (id, product_id, order_id, delta, reason, created_at)
            VALUES (:id, :pid, :oid, :delta, :reason, :now)
        """),
        {"id": str(uuid4()), "pid": product_id, "oid": order_id, "delta": delta, "reason": reason, "now": now},
    )


def _to_record(row) -> InventoryRecord:
    return InventoryRecord(
        product_id=row.product_id,
        quantity=row.quantity,
        location=row.location,
        reorder_point=row.reorder_point,
        updated_at=datetime.fromisoformat(row.updated_at) if row.updated_at else None,
    )
