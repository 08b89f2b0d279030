import json
import asyncio
from typing import Dict, Any
import redis.asyncio as aioredis
from fastapi import WebSocket
import logging

from config import REDIS_URL

logger = logging.getLogger(__name__)


class RedisClient:
    """Pub/sub fan-out of live events to each user's WebSocket.

    With an empty ``REDIS_URL`` the client stays disabled and callers fall
    back to delivering events in-process.
    """

    def __init__(self, redis_url: str = REDIS_URL):
        self.redis_url = redis_url
        self.redis = None

    @property
    def enabled(self) -> bool:
        return self.redis is not None

    async def connect(self):
        if not self.redis_url:
            logger.info("Redis disabled, live events stay in-process")
            return
        try:
            self.redis = await aioredis.from_url(self.redis_url, decode_responses=True)
            await self.redis.ping()
            logger.info("Connected to Redis")
        except Exception as e:
            logger.error(f"Redis connection failed: {e}")
            raise

    async def close(self):
        if self.redis:
            await self.redis.close()
            self.redis = None

    async def ping(self):
        if not self.redis:
            return False
        return await self.redis.ping()

    async def publish_event(self, user_id: int, event: Dict[str, Any]) -> bool:
        try:
            channel = f"user:{user_id}:events"
            await self.redis.publish(channel, json.dumps(event, default=str))
            return True
        except Exception as e:
            logger.error(f"Event publishing to user {user_id} failed: {e}")
            return False

    async def subscribe_to_user_events(self, user_id: int, websocket: WebSocket):
        channel = f"user:{user_id}:events"
        pubsub = self.redis.pubsub()
        try:
            await pubsub.subscribe(channel)
            logger.info(f"Subscribed to channel: {channel}")

            while True:
                try:
                    message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
                    if message and message["type"] == "message":
                        await websocket.send_text(message["data"])
                except asyncio.TimeoutError:
                    continue
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Subscription error on {channel}: {e}")
        finally:
            await pubsub.unsubscribe(channel)
            await pubsub.close()
