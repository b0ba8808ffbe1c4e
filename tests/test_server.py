"""
HTTP surface, end to end through httpx.ASGITransport.

ASGITransport does not run the lifespan, so the fixture creates the schema
and closes the services itself.
"""
import asyncio

import httpx
import orjson
import pytest
import pytest_asyncio

from ticketpay.errors import GatewayRejectedError
from ticketpay.gateway import MockGateway
from ticketpay.mailer import LogMailer
from ticketpay.model.db import create_schema
from ticketpay.model.evidence import Outcome
from ticketpay.server import ACK, _sse, build_services, create_app


@pytest_asyncio.fixture
async def svc(database_url):
    services = build_services(
        database_url=database_url,
        gateway=MockGateway(),
        mailer=LogMailer(),
        feed_backend="local",
    )
    await create_schema(services.db.engine)
    yield services
    await services.aclose()


@pytest_asyncio.fixture
async def client(svc):
    app = create_app(svc)
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c


async def _drain(svc):
    while svc.tasks:
        await asyncio.gather(*list(svc.tasks))


class TestEndToEnd:

    @pytest.mark.asyncio
    async def test_initiate_webhook_receipt(self, svc, client):
        await svc.store.create_ticket("T-1", 500, email="fan@example.com")

        r = await client.post("/api/payments/initiate", json={
            "ticket_id": "T-1", "amount": 500, "phone": "0712345678",
        })
        assert r.status_code == 200
        assert r.json()["gateway_request_id"] == "R-1"

        callback = svc.gateway.settle("R-1", Outcome.SUCCESS, "ABC123")
        r = await client.post("/payments/webhook", json=callback)
        assert r.status_code == 200
        assert r.json() == {**ACK, "status": "confirmed", "applied": True}

        await _drain(svc)
        t = (await client.get("/api/tickets/T-1")).json()
        assert t["status"] == "confirmed"
        assert t["receipt_number"] == "ABC123"
        assert t["paid_amount"] == 500.0
        assert t["email_sent"] is True
        assert len(svc.guard.mailer.sent) == 1

        # the gateway retries the callback
        r = await client.post("/payments/webhook", json=callback)
        assert r.json() == {**ACK, "status": "confirmed", "applied": False}
        await _drain(svc)

        again = (await client.get("/api/tickets/T-1")).json()
        assert again["receipt_number"] == "ABC123"
        assert again["version"] == t["version"]
        assert len(svc.guard.mailer.sent) == 1

        items = (await client.get("/api/tickets/T-1/audit")).json()["items"]
        assert [a["note"] for a in items if a["action"] == "initiate"] == [
            "push_sent"
        ]
        assert [a["note"] for a in items if a["action"] == "evidence"] == [
            "applied", "duplicate",
        ]
        assert [a["note"] for a in items if a["action"] == "email"] == [
            "sent"
        ]

    @pytest.mark.asyncio
    async def test_poll_endpoint(self, svc, client):
        await svc.store.create_ticket("T-1", 500)
        await client.post("/api/payments/initiate", json={
            "ticket_id": "T-1", "amount": 500, "phone": "0712345678",
        })

        body = {"ticket_id": "T-1", "gateway_request_id": "R-1"}
        r = await client.post("/api/payments/poll", json=body)
        assert r.json()["is_confirmed"] is False

        svc.gateway.settle("R-1", Outcome.SUCCESS)
        r = await client.post("/api/payments/poll", json=body)
        assert r.json()["is_confirmed"] is True
        await _drain(svc)

    @pytest.mark.asyncio
    async def test_receipt_endpoints(self, svc, client):
        await svc.store.create_ticket("T-1", 500, email="fan@example.com")
        await client.post("/api/payments/initiate", json={
            "ticket_id": "T-1", "amount": 500, "phone": "0712345678",
        })
        await client.post("/payments/webhook",
                          json=svc.gateway.settle("R-1", Outcome.SUCCESS))
        await _drain(svc)

        r = await client.post("/api/tickets/T-1/receipt")
        assert r.json()["attempted"] is False
        assert r.json()["success"] is True

        r = await client.post("/api/tickets/T-1/receipt/resend")
        assert r.json()["attempted"] is True
        assert len(svc.guard.mailer.sent) == 2


class TestWebhook:

    @pytest.mark.asyncio
    async def test_not_json(self, svc, client):
        r = await client.post("/payments/webhook", content=b"<xml/>")

        assert r.status_code == 200
        assert r.json() == ACK
        items = (await client.get("/api/tickets/-/audit")).json()["items"]
        assert [a["note"] for a in items] == ["rejected"]

    @pytest.mark.asyncio
    async def test_malformed_callback(self, svc, client):
        r = await client.post("/payments/webhook",
                              json={"Body": {"stkCallback": {"x": 1}}})

        assert r.status_code == 200
        assert r.json() == ACK

    @pytest.mark.asyncio
    async def test_unknown_ticket(self, svc, client):
        await svc.gateway.initiate_push(ticket_id="T-404", amount=500,
                                        phone="0712345678")
        callback = svc.gateway.settle("R-1", Outcome.SUCCESS)

        r = await client.post("/payments/webhook", json=callback)

        assert r.status_code == 200
        assert r.json()["ResultCode"] == 0
        assert r.json()["message"] == "ticket not found internally"

    @pytest.mark.asyncio
    async def test_failure_callback(self, svc, client):
        await svc.store.create_ticket("T-1", 500)
        await client.post("/api/payments/initiate", json={
            "ticket_id": "T-1", "amount": 500, "phone": "0712345678",
        })

        r = await client.post("/payments/webhook",
                              json=svc.gateway.settle("R-1", Outcome.FAILURE))

        assert r.json()["status"] == "failed"
        t = (await client.get("/api/tickets/T-1")).json()
        assert t["last_error"] == "Request cancelled by user"

    @pytest.mark.asyncio
    async def test_liveness(self, client):
        r = await client.get("/payments/webhook")
        assert r.status_code == 200
        assert "active" in r.json()["message"]


class TestErrors:

    @pytest.mark.asyncio
    async def test_validation(self, svc, client):
        await svc.store.create_ticket("T-1", 500)

        r = await client.post("/api/payments/initiate", json={
            "ticket_id": "T-1", "amount": 500, "phone": "12345",
        })

        assert r.status_code == 400
        assert r.json() == {
            "detail": "Invalid phone format. Use 07XXXXXXXX or 2547XXXXXXXX."
        }

    @pytest.mark.asyncio
    async def test_not_found(self, client):
        assert (await client.get("/api/tickets/nope")).status_code == 404
        r = await client.get("/api/tickets/nope/events")
        assert r.status_code == 404

    @pytest.mark.asyncio
    async def test_gateway_rejection_hides_detail(self, svc, client):
        await svc.store.create_ticket("T-1", 500)
        svc.gateway.next_error = GatewayRejectedError(
            detail="HTTP 500 secret stack trace"
        )

        r = await client.post("/api/payments/initiate", json={
            "ticket_id": "T-1", "amount": 500, "phone": "0712345678",
        })

        assert r.status_code == 502
        assert "secret" not in r.text

    @pytest.mark.asyncio
    async def test_poll_with_another_tickets_request(self, svc, client):
        await svc.store.create_ticket("T-1", 500)
        await svc.store.create_ticket("T-2", 500)
        await client.post("/api/payments/initiate", json={
            "ticket_id": "T-1", "amount": 500, "phone": "0712345678",
        })
        svc.gateway.settle("R-1", Outcome.SUCCESS)

        r = await client.post("/api/payments/poll", json={
            "ticket_id": "T-2", "gateway_request_id": "R-1",
        })

        assert r.status_code == 400
        t2 = (await client.get("/api/tickets/T-2")).json()
        assert t2["status"] == "created"

    @pytest.mark.asyncio
    async def test_already_confirmed(self, svc, client):
        await svc.store.create_ticket("T-1", 500)
        await client.post("/api/payments/initiate", json={
            "ticket_id": "T-1", "amount": 500, "phone": "0712345678",
        })
        await client.post("/payments/webhook",
                          json=svc.gateway.settle("R-1", Outcome.SUCCESS))

        r = await client.post("/api/payments/initiate", json={
            "ticket_id": "T-1", "amount": 500, "phone": "0712345678",
        })
        assert r.status_code == 409
        await _drain(svc)


class TestMockGatewayAndAdmin:

    @pytest.mark.asyncio
    async def test_emit(self, svc, client):
        await svc.store.create_ticket("T-1", 500)
        await client.post("/api/payments/initiate", json={
            "ticket_id": "T-1", "amount": 500, "phone": "0712345678",
        })

        r = await client.post("/mockgateway/R-1/emit",
                              json={"outcome": "success"})

        assert r.status_code == 200
        cb = r.json()["callback"]["Body"]["stkCallback"]
        assert cb["TransactionReference"] == "T-1"
        assert cb["ResponseCode"] == 0

    @pytest.mark.asyncio
    async def test_emit_errors(self, client):
        r = await client.post("/mockgateway/R-1/emit",
                              json={"outcome": "maybe"})
        assert r.status_code == 400
        r = await client.post("/mockgateway/R-9/emit",
                              json={"outcome": "failure"})
        assert r.status_code == 404

    @pytest.mark.asyncio
    async def test_timings(self, svc, client):
        await svc.store.create_ticket("T-1", 500)
        await client.get("/api/tickets/T-1")

        items = (await client.get("/api/admin/timings")).json()["items"]

        kinds = {i["kind"] for i in items}
        assert "ticketstore.get" in kinds
        assert all(set(i) == {"kind", "n", "mean", "std"} for i in items)


class TestEvents:

    @pytest.mark.asyncio
    async def test_stream_starts_with_snapshot_then_follows_writes(
        self, svc
    ):
        # the SSE body never ends, so drive the feed directly
        await svc.store.create_ticket("T-1", 500)
        async with svc.feed.listen("T-1") as updates:
            await svc.store.update_if("T-1", {"phone": "0712345678"})
            snap = await asyncio.wait_for(updates.__anext__(), 1)

        assert snap["phone"] == "0712345678"
        assert snap["version"] == 2
        assert svc.feed.listener_count("T-1") == 0

    def test_sse_frame(self):
        frame = _sse({"id": "T-1", "status": "confirmed"})

        assert frame.startswith(b"event: ticket\ndata: ")
        assert frame.endswith(b"\n\n")
        assert orjson.loads(frame.split(b"data: ", 1)[1]) == {
            "id": "T-1", "status": "confirmed",
        }
