"""
Pytest configuration and fixtures.

The store runs against a throwaway SQLite file per test, so conditional
writes and lost updates behave as they do in production.
"""
from typing import Any, AsyncGenerator, Callable

import pytest
import pytest_asyncio

from ticketpay.emailguard import EmailDispatchGuard
from ticketpay.errors import EmailDispatchError
from ticketpay.gateway import MockGateway
from ticketpay.infra.sql import Database, make_database
from ticketpay.initiation import InitiationCoordinator
from ticketpay.mailer import LogMailer, Mailer, ReceiptEmail
from ticketpay.model.changefeed import LocalChangeFeed
from ticketpay.model.db import create_schema
from ticketpay.model.evidence import (
    SOURCE_WEBHOOK, ConfirmationEvidence, Outcome,
)
from ticketpay.model.ticketstore import TicketStore
from ticketpay.poller import StatusPoller
from ticketpay.reconcile import ReconciliationEngine

STATUS_URL = "https://tickets.example/status/{ticket_id}"


class FailingMailer(Mailer):
    """Every delivery fails, like a provider outage."""

    def __init__(self) -> None:
        self.calls = 0

    async def send(self, message: ReceiptEmail) -> None:
        self.calls += 1
        raise EmailDispatchError(detail="mailgun: HTTP 503 unavailable")


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'ticketpay.db'}"


@pytest_asyncio.fixture
async def db(database_url) -> AsyncGenerator[Database, Any]:
    database = make_database(database_url)
    await create_schema(database.engine)
    yield database
    await database.dispose()


@pytest.fixture
def feed() -> LocalChangeFeed:
    return LocalChangeFeed()


@pytest.fixture
def store(db, feed) -> TicketStore:
    return TicketStore(db, feed)


@pytest.fixture
def gateway() -> MockGateway:
    return MockGateway()


@pytest.fixture
def mailer() -> LogMailer:
    return LogMailer()


@pytest.fixture
def failing_mailer() -> FailingMailer:
    return FailingMailer()


@pytest.fixture
def engine(store) -> ReconciliationEngine:
    return ReconciliationEngine(store)


@pytest.fixture
def initiator(store, gateway) -> InitiationCoordinator:
    return InitiationCoordinator(store, gateway)


@pytest.fixture
def poller(store, gateway, engine) -> StatusPoller:
    return StatusPoller(store, gateway, engine)


@pytest.fixture
def guard(store, mailer) -> EmailDispatchGuard:
    return EmailDispatchGuard(store, mailer, status_url_template=STATUS_URL)


@pytest_asyncio.fixture
async def ticket(store) -> dict:
    """T-1: 500 KES, receipt goes to fan@example.com."""
    return await store.create_ticket("T-1", 500, email="fan@example.com")


@pytest.fixture
def evidence() -> Callable[..., ConfirmationEvidence]:
    def make(
        ticket_id: str = "T-1",
        outcome: Outcome = Outcome.SUCCESS,
        source: str = SOURCE_WEBHOOK,
        **kw: Any,
    ) -> ConfirmationEvidence:
        if outcome is Outcome.SUCCESS:
            kw.setdefault("receipt_number", "ABC123")
            kw.setdefault("amount", 500.0)
            kw.setdefault("phone", "0712345678")
        else:
            kw.setdefault("error_detail", "Request cancelled by user")
        return ConfirmationEvidence(
            ticket_id=ticket_id, outcome=outcome, source=source, **kw
        )

    return make
