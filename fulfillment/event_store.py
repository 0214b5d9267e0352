"""
Fulfillment Service - イベントストア

注文ごとのイベント列 (ストリーム) を追記専用で保存する。
ストリーム内の位置 = version。同じ位置への二重書き込みは主キーで弾く。
"""

import json

from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

AGGREGATE_TYPE = "Order"


class VersionConflict(Exception):
    def __init__(self, order_id: str, version: int) -> None:
        super().__init__(f"order {order_id} already has version {version}")
        self.order_id = order_id
        self.version = version


async def append(session: AsyncSession, event: BaseModel, expected_version: int) -> int:
    """
    注文イベントをストリームの末尾に追記し、新しい version を返す。

    event は order_id と timestamp を持つイベントモデル。
    イベント名はクラス名をそのまま使う (OrderCreated, OrderStatusChanged)。
    コミットは呼び出し側が行う。
    """
    data = event.model_dump(mode="json")
    version = expected_version + 1
    try:
        await session.execute(
            text("""
                INSERT INTO event_store
                    (aggregate_id, aggregate_type, event_type, event_data, version, created_at)
                VALUES
                    (:order_id, :aggregate_type, :event_type, :data, :version, :created_at)
            """),
            {
                "order_id": data["order_id"],
                "aggregate_type": AGGREGATE_TYPE,
                "event_type": type(event).__name__,
                "data": json.dumps(data),
                "version": version,
                "created_at": data["timestamp"],
            },
        )
    except IntegrityError as e:
        raise VersionConflict(data["order_id"], version) from e
    return version


async def load(session: AsyncSession, order_id: str) -> list[dict]:
    """ストリームを version 順に返す。OrderAggregate.from_events にそのまま渡せる形。"""
    result = await session.execute(
        text("""
            SELECT event_type, event_data, version
            FROM event_store
            WHERE aggregate_id = :order_id AND aggregate_type = :aggregate_type
            ORDER BY version
        """),
        {"order_id": order_id, "aggregate_type": AGGREGATE_TYPE},
    )
    return [
        {"event_type": row.event_type, "event_data": json.loads(row.event_data), "version": row.version}
        for row in result
    ]
