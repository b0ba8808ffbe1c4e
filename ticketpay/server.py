from __future__ import annotations
import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

import httpx
import orjson
import redis.asyncio as redis
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import ORJSONResponse, StreamingResponse

from . import config
from .emailguard import EmailDispatchGuard
from .errors import (
    GatewayRejectedError, NotFoundError, PaymentError, ValidationError,
)
from .gateway import GatewayClient, MockGateway, UmeskiaGateway
from .infra.sql import Database, make_database
from .infra.timings import aggregates, timeit
from .initiation import InitiationCoordinator
from .mailer import Mailer, new_mailer
from .model.changefeed import ChangeFeed, new_feed
from .model.db import create_schema
from .model.evidence import Outcome
from .model.ticketstore import TicketStore
from .poller import StatusPoller
from .reconcile import ReconciliationEngine

log = logging.getLogger(__name__)

ACK = {"ResultCode": 0, "ResultDesc": "Accepted"}
ACK_WITH_ERROR = {
    "ResultCode": 0,
    "ResultDesc": "Accepted with internal processing error",
}


# ----------------------------
# Wiring
# ----------------------------
@dataclass
class Services:
    db: Database
    http: httpx.AsyncClient
    feed: ChangeFeed
    store: TicketStore
    gateway: GatewayClient
    engine: ReconciliationEngine
    initiator: InitiationCoordinator
    poller: StatusPoller
    guard: EmailDispatchGuard
    redis: Optional[redis.Redis] = None
    tasks: Set[asyncio.Task] = field(default_factory=set)

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def aclose(self) -> None:
        if self.tasks:
            await asyncio.gather(*self.tasks, return_exceptions=True)
        await self.gateway.aclose()
        await self.feed.close()
        await self.http.aclose()
        if self.redis is not None:
            await self.redis.aclose()
        await self.db.dispose()


async def _auto_receipt(guard: EmailDispatchGuard, ticket_id: str) -> None:
    try:
        result = await guard.dispatch_if_needed(ticket_id)
    except Exception:
        log.exception("automatic receipt for ticket %s failed", ticket_id)
        return
    log.info("automatic receipt for ticket %s: %s", ticket_id,
             result["message"])


def build_services(
    *,
    database_url: Optional[str] = None,
    gateway: Optional[GatewayClient] = None,
    mailer: Optional[Mailer] = None,
    feed_backend: Optional[str] = None,
) -> Services:
    db = make_database(database_url or config.DATABASE_URL)
    http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=512, max_keepalive_connections=512
        ),
    )

    r = None
    backend = (feed_backend or config.CHANGEFEED_BACKEND).lower()
    if backend == "redis":
        r = redis.from_url(
            config.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    feed = new_feed(r=r, backend=backend)
    store = TicketStore(db, feed)

    if gateway is None:
        if config.GATEWAY_BACKEND == "umeskia":
            gateway = UmeskiaGateway(http)
        else:
            gateway = MockGateway(http=http)
    if mailer is None:
        mailer = new_mailer(http)

    engine = ReconciliationEngine(store)
    svc = Services(
        db=db,
        http=http,
        feed=feed,
        store=store,
        gateway=gateway,
        engine=engine,
        initiator=InitiationCoordinator(store, gateway),
        poller=StatusPoller(store, gateway, engine),
        guard=EmailDispatchGuard(store, mailer),
        redis=r,
    )

    # receipt goes out in the background; the webhook acks right away
    @engine.on_confirmed
    async def _send_receipt(snapshot: Dict[str, Any]) -> None:
        svc.spawn(_auto_receipt(svc.guard, snapshot["id"]))

    return svc


def services(request: Request) -> Services:
    return request.app.state.services


router = APIRouter()


# ----------------------------
# API: payment initiation
# ----------------------------
@router.post("/api/payments/initiate")
async def initiate_payment(payload: dict, svc: Services = Depends(services)):
    async with timeit("api.initiate"):
        return await svc.initiator.initiate(
            str(payload.get("ticket_id") or "").strip(),
            payload.get("amount"),
            payload.get("phone"),
            payload.get("email"),
        )


# ----------------------------
# API: manual status poll
# ----------------------------
@router.post("/api/payments/poll")
async def poll_payment(payload: dict, svc: Services = Depends(services)):
    async with timeit("api.poll"):
        return await svc.poller.poll(
            str(payload.get("ticket_id") or "").strip(),
            str(payload.get("gateway_request_id") or "").strip(),
        )


# ----------------------------
# Webhook endpoint (gateway callback)
# ----------------------------
async def _process_callback(svc: Services, body: bytes) -> Dict[str, Any]:
    try:
        payload = orjson.loads(body)
    except orjson.JSONDecodeError:
        log.warning("webhook: body is not JSON (%d bytes)", len(body))
        await svc.engine.record_rejected(
            None, "webhook", {"body": body[:500].decode(errors="replace")},
            "invalid JSON",
        )
        return ACK
    log.debug("webhook payload: %s", payload)

    try:
        evidence = svc.gateway.parse_callback(payload)
    except ValidationError as e:
        ref = _callback_reference(payload)
        log.warning("webhook: rejected callback for ticket %s: %s (%s)",
                    ref, e.message, e.detail)
        await svc.engine.record_rejected(
            ref, "webhook",
            payload if isinstance(payload, dict) else {"payload": payload},
            e.detail or e.message,
        )
        return ACK

    try:
        async with timeit("reconcile.webhook"):
            result = await svc.engine.confirm_or_fail(
                evidence.ticket_id, evidence
            )
    except NotFoundError:
        return {**ACK, "message": "ticket not found internally"}
    return {**ACK, "status": result.status, "applied": result.applied}


def _callback_reference(payload: Any) -> Optional[str]:
    try:
        ref = payload["Body"]["stkCallback"]["TransactionReference"]
    except (KeyError, TypeError):
        return None
    return ref if isinstance(ref, str) and ref else None


@router.post("/payments/webhook")
async def payments_webhook(request: Request,
                           svc: Services = Depends(services)):
    # always acknowledge, so the gateway does not retry-storm us
    body = await request.body()
    try:
        return await _process_callback(svc, body)
    except PaymentError as e:
        log.warning("webhook processing error: %s (%s)", e.message, e.detail)
    except Exception:
        log.exception("webhook processing failed")
    return ACK_WITH_ERROR


@router.get("/payments/webhook")
async def payments_webhook_alive():
    return {"message": "Webhook endpoint is active. "
                       "Use POST for STK callbacks."}


# ----------------------------
# API: tickets (pull, push, audit)
# ----------------------------
@router.get("/api/tickets/{ticket_id}")
async def get_ticket(ticket_id: str, svc: Services = Depends(services)):
    ticket = await svc.store.get_ticket(ticket_id)
    if ticket is None:
        raise NotFoundError(f"Ticket {ticket_id} not found.")
    return ticket


def _sse(snapshot: Dict[str, Any]) -> bytes:
    return b"event: ticket\ndata: " + orjson.dumps(snapshot) + b"\n\n"


@router.get("/api/tickets/{ticket_id}/events")
async def ticket_events(ticket_id: str, svc: Services = Depends(services)):
    if await svc.store.get_ticket(ticket_id) is None:
        raise NotFoundError(f"Ticket {ticket_id} not found.")

    async def stream():
        async with svc.feed.listen(ticket_id) as updates:
            # read after subscribing: no write can fall in between
            current = await svc.store.get_ticket(ticket_id)
            if current is not None:
                yield _sse(current)
            async for snapshot in updates:
                yield _sse(snapshot)

    return StreamingResponse(
        stream(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache"},
    )


@router.get("/api/tickets/{ticket_id}/audit")
async def ticket_audit(ticket_id: str, svc: Services = Depends(services)):
    return {"items": await svc.store.list_audit(ticket_id)}


@router.post("/api/tickets/{ticket_id}/receipt")
async def dispatch_receipt(ticket_id: str,
                           svc: Services = Depends(services)):
    return await svc.guard.dispatch_if_needed(ticket_id, source="client")


@router.post("/api/tickets/{ticket_id}/receipt/resend")
async def resend_receipt(ticket_id: str, svc: Services = Depends(services)):
    return await svc.guard.resend(ticket_id)


# ----------------------------
# Mock gateway (GATEWAY_BACKEND=mock only)
# ----------------------------
@router.post("/mockgateway/{request_id}/emit")
async def mockgateway_emit(request_id: str, payload: dict,
                           svc: Services = Depends(services)):
    if not isinstance(svc.gateway, MockGateway):
        raise HTTPException(404, detail="mock gateway not enabled")
    try:
        outcome = Outcome(payload.get("outcome", "success"))
    except ValueError:
        raise HTTPException(400, detail="invalid outcome")
    try:
        callback = await svc.gateway.emit(
            request_id, outcome, payload.get("receipt_number")
        )
    except GatewayRejectedError:
        raise HTTPException(404, detail="unknown request")
    return {"ok": True, "callback": callback}


@router.get("/api/admin/timings")
async def api_admin_timings():
    return {"items": aggregates()}


# ----------------------------
# App
# ----------------------------
async def _payment_error(request: Request, exc: PaymentError):
    if exc.detail:
        log.info("%s %s -> %s: %s", request.method, request.url.path,
                 exc.status_code, exc.detail)
    return ORJSONResponse({"detail": exc.message},
                          status_code=exc.status_code)


def _say_hello(svc: Services) -> None:
    print('\n' * 2)
    print('=' * 50)
    print('ticketpay is starting up...')
    print(f'   - Gateway:     {type(svc.gateway).__name__}')
    print(f'   - Change feed: {type(svc.feed).__name__}')
    print(f'   - Mailer:      {type(svc.guard.mailer).__name__}')
    print('=' * 50)
    print('\n' * 2)


def create_app(svc: Optional[Services] = None) -> FastAPI:
    svc = svc or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logging.basicConfig(
            level=config.LOG_LEVEL,
            format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        )
        _say_hello(svc)
        await create_schema(svc.db.engine)
        yield
        await svc.aclose()

    app = FastAPI(
        title="ticketpay",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.services = svc
    app.add_exception_handler(PaymentError, _payment_error)
    app.include_router(router)
    return app


app = create_app()
