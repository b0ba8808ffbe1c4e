"""
Client-side bindings of the ticketpay HTTP surface.

`TicketApi` is what the confirmation coordinator talks to. `HttpTicketApi`
implements it over httpx: request/response calls for initiate, poll, pull
and receipt dispatch, plus a push subscription that reads the server-sent
event stream of one ticket in a background task and reconnects with backoff
when the stream drops.
"""
from __future__ import annotations
import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Optional

import httpx
import orjson

log = logging.getLogger(__name__)

SnapshotCallback = Callable[[Dict[str, Any]], None]


class ApiError(Exception):
    def __init__(self, message: str, status_code: int = 0) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class Subscription:
    """Handle of a running push subscription."""

    def __init__(self, task: Optional[asyncio.Task] = None) -> None:
        self._task = task
        self.cancelled = False

    @property
    def active(self) -> bool:
        return (not self.cancelled and self._task is not None
                and not self._task.done())

    def cancel(self) -> None:
        self.cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()


class TicketApi(ABC):
    @abstractmethod
    async def initiate(
        self, ticket_id: str, amount: Any, phone: str,
        email: Optional[str] = None,
    ) -> Dict[str, Any]: ...

    @abstractmethod
    async def poll(
        self, ticket_id: str, gateway_request_id: str
    ) -> Dict[str, Any]: ...

    @abstractmethod
    async def get_ticket(self, ticket_id: str) -> Dict[str, Any]: ...

    @abstractmethod
    def subscribe(
        self, ticket_id: str, callback: SnapshotCallback
    ) -> Subscription: ...

    @abstractmethod
    async def dispatch_email(self, ticket_id: str) -> Dict[str, Any]: ...


class HttpTicketApi(TicketApi):

    def __init__(
        self,
        client: httpx.AsyncClient,
        base: str = "",
        *,
        reconnect_min: float = 0.5,
        reconnect_max: float = 10.0,
    ) -> None:
        self.client = client
        self.base = base.rstrip("/")
        self.reconnect_min = reconnect_min
        self.reconnect_max = reconnect_max

    async def _call(
        self, method: str, path: str, json: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        try:
            resp = await self.client.request(
                method, f"{self.base}{path}", json=json
            )
        except httpx.HTTPError as e:
            log.warning("%s %s failed: %r", method, path, e)
            raise ApiError(
                "Network error. Please check your connection and try again."
            ) from e
        try:
            data = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400:
            detail = data.get("detail") if isinstance(data, dict) else None
            if not isinstance(detail, str):
                detail = f"HTTP {resp.status_code}"
            raise ApiError(detail, resp.status_code)
        return data

    async def initiate(self, ticket_id, amount, phone, email=None):
        return await self._call("POST", "/api/payments/initiate", {
            "ticket_id": ticket_id,
            "amount": amount,
            "phone": phone,
            "email": email,
        })

    async def poll(self, ticket_id, gateway_request_id):
        return await self._call("POST", "/api/payments/poll", {
            "ticket_id": ticket_id,
            "gateway_request_id": gateway_request_id,
        })

    async def get_ticket(self, ticket_id):
        return await self._call("GET", f"/api/tickets/{ticket_id}")

    async def dispatch_email(self, ticket_id):
        return await self._call("POST", f"/api/tickets/{ticket_id}/receipt")

    def subscribe(self, ticket_id, callback):
        task = asyncio.create_task(self._follow(ticket_id, callback))
        return Subscription(task)

    async def _follow(self, ticket_id: str, callback: SnapshotCallback):
        delay = self.reconnect_min
        url = f"{self.base}/api/tickets/{ticket_id}/events"
        while True:
            try:
                async with self.client.stream(
                    "GET", url, timeout=httpx.Timeout(10.0, read=None)
                ) as resp:
                    if resp.status_code == 404:
                        log.warning("subscription: ticket %s not found",
                                    ticket_id)
                        return
                    resp.raise_for_status()
                    delay = self.reconnect_min
                    await self._read_events(resp, callback)
            except httpx.HTTPError as e:
                log.info("subscription for %s dropped: %r; reconnecting "
                         "in %.1fs", ticket_id, e, delay)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self.reconnect_max)

    @staticmethod
    async def _read_events(
        resp: httpx.Response, callback: SnapshotCallback
    ) -> None:
        data = []
        async for line in resp.aiter_lines():
            if line.startswith("data:"):
                data.append(line[5:].lstrip())
            elif not line and data:
                try:
                    snapshot = orjson.loads("\n".join(data))
                except orjson.JSONDecodeError:
                    log.warning("subscription: undecodable event dropped")
                else:
                    callback(snapshot)
                data = []
