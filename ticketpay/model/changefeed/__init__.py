# model/changefeed/__init__.py
from typing import Optional
import redis.asyncio as redis

from ...config import CHANGEFEED_BACKEND
from ._local import LocalChangeFeed
from ._redis import RedisChangeFeed

ChangeFeed = LocalChangeFeed | RedisChangeFeed


# Factory keeps server.py simple and constructor-agnostic:
def new_feed(*, r: Optional[redis.Redis] = None,
             backend: Optional[str] = None) -> ChangeFeed:
    backend = (backend or CHANGEFEED_BACKEND).lower()
    if backend == "redis":
        if r is None:
            raise RuntimeError("ChangeFeed(redis) requires r=redis.Redis")
        return RedisChangeFeed(r)
    if backend == "local":
        return LocalChangeFeed()
    raise RuntimeError(f"unknown CHANGEFEED_BACKEND: {backend!r}")


__all__ = ["ChangeFeed", "LocalChangeFeed", "RedisChangeFeed", "new_feed"]
