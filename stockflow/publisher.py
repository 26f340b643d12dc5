"""
Redis Pub/Sub へのイベント発行

監査ログに追記したイベントを audit_events チャネルに流す。
Pub/Sub は fire-and-forget なので、発行の失敗は記録するだけで
注文処理の結果には影響させない。真実の記録はあくまで audit_events テーブル。
"""

import json
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

AUDIT_CHANNEL = "audit_events"


class EventPublisher:
    def __init__(self, redis: aioredis.Redis | None, channel: str = AUDIT_CHANNEL):
        self.redis = redis
        self.channel = channel

    async def publish(self, event_type: str, data: dict) -> None:
        if self.redis is None:
            return
        try:
            await self.redis.publish(
                self.channel,
                json.dumps(
                    {
                        "event_type": event_type,
                        "data": data,
                    },
                    default=str,
                ),
            )
        except (RedisError, OSError):
            logger.warning("Failed to publish %s to %s", event_type, self.channel, exc_info=True)
