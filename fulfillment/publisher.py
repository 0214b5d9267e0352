"""
Fulfillment Service - イベント発行

コミット済みのイベントを Redis Pub/Sub で他サービスへ通知する。
Pub/Sub は fire-and-forget なので、購読側が停止中のイベントは失われる。
"""

import json
from typing import Protocol

import redis.asyncio as aioredis

ORDER_CHANNEL = "order_events"
INVENTORY_CHANNEL = "inventory_events"


class EventPublisher(Protocol):
    async def publish(self, channel: str, event_type: str, data: dict) -> None: ...


class RedisEventPublisher:
    def __init__(self, redis: aioredis.Redis) -> None:
        self.redis = redis

    async def publish(self, channel: str, event_type: str, data: dict) -> None:
        await self.redis.publish(channel, json.dumps({
            "event_type": event_type,
            "data": data,
        }, default=str))
