"""
Email dispatch guard: at most one automatic receipt flag flip per ticket,
explicit resends always attempted.
"""
import asyncio

import orjson
import pytest

from ticketpay.emailguard import EmailDispatchGuard
from ticketpay.errors import NotFoundError

STATUS_URL = "https://tickets.example/status/{ticket_id}"


async def _email_notes(store, ticket_id, action="email"):
    return [
        a["note"] for a in await store.list_audit(ticket_id)
        if a["action"] == action
    ]


class TestDispatchIfNeeded:

    @pytest.mark.asyncio
    async def test_not_confirmed_yet(self, store, guard, mailer, ticket):
        res = await guard.dispatch_if_needed("T-1")

        assert res["attempted"] is False
        assert res["success"] is False
        assert mailer.sent == []
        assert (await store.get_ticket("T-1"))["email_attempts"] == 0

    @pytest.mark.asyncio
    async def test_no_email_address(self, store, guard, mailer, engine,
                                    evidence):
        await store.create_ticket("T-2", 500)
        await engine.confirm_or_fail("T-2", evidence("T-2"))

        res = await guard.dispatch_if_needed("T-2")

        assert res["attempted"] is False
        assert mailer.sent == []

    @pytest.mark.asyncio
    async def test_unknown_ticket(self, guard):
        with pytest.raises(NotFoundError):
            await guard.dispatch_if_needed("T-404")

    @pytest.mark.asyncio
    async def test_sends_once(self, store, guard, mailer, ticket, engine,
                              evidence):
        await engine.confirm_or_fail("T-1", evidence())

        first = await guard.dispatch_if_needed("T-1")
        second = await guard.dispatch_if_needed("T-1")

        assert first == {"attempted": True, "success": True,
                         "message": "Receipt sent to fan@example.com."}
        assert second["attempted"] is False
        assert second["success"] is True
        assert len(mailer.sent) == 1
        msg = mailer.sent[0]
        assert msg.to == "fan@example.com"
        assert msg.subject == "Payment Confirmed - Ticket T-1"
        assert "ABC123" in msg.text
        assert STATUS_URL.format(ticket_id="T-1") in msg.text

        t = await store.get_ticket("T-1")
        assert t["email_sent"] is True
        assert t["email_attempts"] == 1
        assert t["last_email_error"] is None
        assert await _email_notes(store, "T-1") == ["sent"]

    @pytest.mark.asyncio
    async def test_concurrent_triggers_flip_flag_once(
        self, store, guard, mailer, ticket, engine, evidence
    ):
        await engine.confirm_or_fail("T-1", evidence())

        results = await asyncio.gather(*[
            guard.dispatch_if_needed("T-1") for _ in range(5)
        ])

        attempted = [r for r in results if r["attempted"]]
        assert all(r["success"] for r in results)
        assert len(attempted) >= 1
        # every attempt really sent; only one of them owns the flag
        assert len(mailer.sent) == len(attempted)
        notes = await _email_notes(store, "T-1")
        assert notes.count("sent") == 1
        assert notes.count("duplicate_send") == len(attempted) - 1
        assert (await store.get_ticket("T-1"))["email_sent"] is True

    @pytest.mark.asyncio
    async def test_delivery_failure_keeps_flag_clear(
        self, store, failing_mailer, ticket, engine, evidence
    ):
        await engine.confirm_or_fail("T-1", evidence())
        guard = EmailDispatchGuard(store, failing_mailer,
                                   status_url_template=STATUS_URL)

        res = await guard.dispatch_if_needed("T-1")

        assert res == {"attempted": True, "success": False,
                       "message": "Failed to send the receipt email."}
        t = await store.get_ticket("T-1")
        assert t["email_sent"] is False
        assert t["email_attempts"] == 1
        assert t["last_email_error"] == "mailgun: HTTP 503 unavailable"

        # not sent, so the next trigger tries again
        await guard.dispatch_if_needed("T-1")
        assert failing_mailer.calls == 2
        assert (await store.get_ticket("T-1"))["email_attempts"] == 2
        assert await _email_notes(store, "T-1") == ["failed", "failed"]

    @pytest.mark.asyncio
    async def test_flag_flip_does_not_touch_receipt(self, store, guard,
                                                    ticket, engine, evidence):
        await engine.confirm_or_fail("T-1", evidence())
        before = await store.get_ticket("T-1")

        await guard.dispatch_if_needed("T-1")

        after = await store.get_ticket("T-1")
        for f in ("status", "receipt_number", "paid_amount", "paid_phone",
                  "paid_at"):
            assert after[f] == before[f]


class TestResend:

    @pytest.mark.asyncio
    async def test_resend_ignores_flag(self, store, guard, mailer, ticket,
                                       engine, evidence):
        await engine.confirm_or_fail("T-1", evidence())
        await guard.dispatch_if_needed("T-1")

        res = await guard.resend("T-1")

        assert res["attempted"] is True
        assert res["success"] is True
        assert len(mailer.sent) == 2
        t = await store.get_ticket("T-1")
        assert t["email_sent"] is True
        assert t["email_attempts"] == 2
        assert await _email_notes(store, "T-1", "resend") == ["sent"]

    @pytest.mark.asyncio
    async def test_resend_before_automatic_send_leaves_flag(
        self, store, guard, mailer, ticket, engine, evidence
    ):
        await engine.confirm_or_fail("T-1", evidence())

        await guard.resend("T-1")

        t = await store.get_ticket("T-1")
        assert t["email_sent"] is False
        assert t["email_attempts"] == 1

    @pytest.mark.asyncio
    async def test_resend_failure_is_recorded(
        self, store, failing_mailer, ticket, engine, evidence
    ):
        await engine.confirm_or_fail("T-1", evidence())
        guard = EmailDispatchGuard(store, failing_mailer,
                                   status_url_template=STATUS_URL)

        res = await guard.resend("T-1")

        assert res["attempted"] is True
        assert res["success"] is False
        t = await store.get_ticket("T-1")
        assert t["email_attempts"] == 1
        assert t["last_email_error"] == "mailgun: HTTP 503 unavailable"
        entries = [
            a for a in await store.list_audit("T-1")
            if a["action"] == "resend"
        ]
        assert entries[0]["note"] == "failed"
        assert orjson.loads(entries[0]["detail"])["error"] == \
            "mailgun: HTTP 503 unavailable"

    @pytest.mark.asyncio
    async def test_resend_requires_confirmation(self, guard, mailer, ticket):
        res = await guard.resend("T-1")

        assert res["attempted"] is False
        assert mailer.sent == []
