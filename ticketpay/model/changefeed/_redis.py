from __future__ import annotations
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict

import orjson
import redis.asyncio as redis


# ---- keys
def k_channel(ticket_id: str) -> str: return f"ticket:{ticket_id}"


class RedisChangeFeed:
    """Snapshot fan-out across workers via redis pub/sub."""

    def __init__(self, r: redis.Redis) -> None:
        self.r = r

    async def publish(self, snapshot: Dict[str, Any]) -> None:
        await self.r.publish(k_channel(snapshot["id"]), orjson.dumps(snapshot))

    @asynccontextmanager
    async def listen(
        self, ticket_id: str
    ) -> AsyncIterator[AsyncIterator[Dict[str, Any]]]:
        pubsub = self.r.pubsub()
        await pubsub.subscribe(k_channel(ticket_id))
        try:
            yield self._messages(pubsub)
        finally:
            await pubsub.unsubscribe(k_channel(ticket_id))
            await pubsub.aclose()

    @staticmethod
    async def _messages(pubsub) -> AsyncIterator[Dict[str, Any]]:
        async for msg in pubsub.listen():
            if msg.get("type") != "message":
                continue
            yield orjson.loads(msg["data"])

    async def close(self) -> None:
        # the redis connection pool is owned by the app
        return None
