import asyncio

import httpx
import orjson
import pytest

from ticketpay.client.api import ApiError, HttpTicketApi


def sse(*snapshots):
    return b"".join(
        b"event: ticket\ndata: " + orjson.dumps(s) + b"\n\n"
        for s in snapshots
    )


class TestCalls:

    @pytest.mark.asyncio
    async def test_initiate(self):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json={"gateway_request_id": "R-1",
                                             "message": "ok"})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        api = HttpTicketApi(client, "http://pay.test/")
        res = await api.initiate("T-1", 500, "0712345678")
        await client.aclose()

        assert res["gateway_request_id"] == "R-1"
        assert str(seen[0].url) == "http://pay.test/api/payments/initiate"
        assert orjson.loads(seen[0].content) == {
            "ticket_id": "T-1", "amount": 500, "phone": "0712345678",
            "email": None,
        }

    @pytest.mark.asyncio
    async def test_error_detail_is_surfaced(self):
        def handler(request):
            return httpx.Response(400, json={"detail": "Invalid phone."})

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        api = HttpTicketApi(client, "http://pay.test")
        with pytest.raises(ApiError) as exc_info:
            await api.poll("T-1", "R-1")
        await client.aclose()

        assert exc_info.value.message == "Invalid phone."
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        api = HttpTicketApi(client, "http://pay.test")
        with pytest.raises(ApiError) as exc_info:
            await api.get_ticket("T-1")
        await client.aclose()

        assert exc_info.value.status_code == 0


class TestSubscription:

    @pytest.mark.asyncio
    async def test_reads_events_and_reconnects(self):
        calls = []

        def handler(request):
            calls.append(request.url.path)
            if len(calls) == 1:
                return httpx.Response(200, content=sse(
                    {"id": "T-1", "status": "push_sent"},
                    {"id": "T-1", "status": "confirmed"},
                ), headers={"content-type": "text/event-stream"})
            if len(calls) == 2:
                return httpx.Response(503)
            # ticket gone: the subscription ends
            return httpx.Response(404)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        api = HttpTicketApi(client, "http://pay.test",
                            reconnect_min=0.01, reconnect_max=0.02)
        got = []
        sub = api.subscribe("T-1", got.append)
        await asyncio.wait_for(sub._task, timeout=2)
        await client.aclose()

        assert [s["status"] for s in got] == ["push_sent", "confirmed"]
        assert calls == ["/api/tickets/T-1/events"] * 3
        assert not sub.active

    @pytest.mark.asyncio
    async def test_cancel(self):
        def handler(request):
            return httpx.Response(503)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        api = HttpTicketApi(client, "http://pay.test",
                            reconnect_min=0.01, reconnect_max=0.02)
        sub = api.subscribe("T-1", lambda snap: None)
        await asyncio.sleep(0.05)
        assert sub.active

        sub.cancel()
        await asyncio.sleep(0)

        assert not sub.active
        await client.aclose()
