from __future__ import annotations
import asyncio
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Set


async def _drain(q: asyncio.Queue) -> AsyncIterator[Dict[str, Any]]:
    while True:
        yield await q.get()


class LocalChangeFeed:
    """In-process fan-out of ticket snapshots. Single worker only."""

    def __init__(self) -> None:
        self._queues: Dict[str, Set[asyncio.Queue]] = {}

    async def publish(self, snapshot: Dict[str, Any]) -> None:
        for q in list(self._queues.get(snapshot["id"], ())):
            q.put_nowait(snapshot)

    @asynccontextmanager
    async def listen(
        self, ticket_id: str
    ) -> AsyncIterator[AsyncIterator[Dict[str, Any]]]:
        q: asyncio.Queue = asyncio.Queue()
        self._queues.setdefault(ticket_id, set()).add(q)
        try:
            yield _drain(q)
        finally:
            subs = self._queues.get(ticket_id)
            if subs is not None:
                subs.discard(q)
                if not subs:
                    del self._queues[ticket_id]

    def listener_count(self, ticket_id: str) -> int:
        return len(self._queues.get(ticket_id, ()))

    async def close(self) -> None:
        self._queues.clear()
