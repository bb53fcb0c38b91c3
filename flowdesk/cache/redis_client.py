"""Redis broadcast channel for PubSub fan-out across processes."""

from typing import Optional

import redis.asyncio as redis
from flowdesk.config import config


class RedisClient:
    """Publishes broadcast topics on namespaced Redis channels."""

    def __init__(self, url: Optional[str] = None, namespace: str = "flowdesk"):
        self.pool = redis.ConnectionPool.from_url(url or config.redis_url)
        self.client = redis.Redis(connection_pool=self.pool)
        self.namespace = namespace

    def channel(self, topic: str) -> str:
        """Channel name for a broadcast topic, e.g. ``flowdesk:workflow:<id>``."""
        return f"{self.namespace}:{topic}"

    async def publish(self, topic: str, message: str) -> int:
        """Publish a message on a topic's channel; returns receiver count."""
        return await self.client.publish(self.channel(topic), message)

    async def health(self) -> bool:
        """Check Redis connectivity."""
        try:
            await self.client.ping()
            return True
        except Exception:
            return False

    async def close(self):
        await self.client.close()
