"""API-specific test fixtures."""

import asyncio

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payhub.core.config import get_settings
from payhub.db import create_engine
from payhub.db.models import AdmissionFailure, PaymentRequest, WebhookEvent

PAGBANK_TOKEN = "pagbank-test-token"
MP_SECRET = "mp-test-secret"


class Database:
    """Synchronous access to the test database from outside the TestClient's loop.

    Each call opens its own engine in a fresh event loop; the file-backed SQLite
    database is shared with the app.
    """

    def __init__(self, url: str):
        self.url = url

    def _run(self, work):
        async def _go():
            engine = create_engine(self.url)
            try:
                factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
                async with factory() as session:
                    result = await work(session)
                    await session.commit()
                    return result
            finally:
                await engine.dispose()

        return asyncio.run(_go())

    def seed(self, request_id: int, status: str = "CREATED", **fields) -> None:
        fields.setdefault("product_type", "birth_chart")

        async def work(session):
            session.add(PaymentRequest(request_id=request_id, status=status, **fields))

        self._run(work)

    def payment_request(self, request_id: int) -> PaymentRequest | None:
        return self._run(lambda session: session.get(PaymentRequest, request_id))

    def ledger_row(self, provider: str, event_id: str) -> WebhookEvent | None:
        return self._run(lambda session: session.get(WebhookEvent, (provider, event_id)))

    def ledger_rows(self, provider: str) -> list[WebhookEvent]:
        async def work(session):
            result = await session.execute(select(WebhookEvent).where(WebhookEvent.provider == provider))
            return list(result.scalars().all())

        return self._run(work)

    def admission_failures(self) -> list[AdmissionFailure]:
        async def work(session):
            return list((await session.execute(select(AdmissionFailure))).scalars().all())

        return self._run(work)

    def count_payment_requests(self) -> int:
        async def work(session):
            return (await session.execute(select(func.count()).select_from(PaymentRequest))).scalar_one()

        return self._run(work)


@pytest.fixture
def api_env(monkeypatch, db_url):
    """Environment for a fully configured app backed by the test database."""
    monkeypatch.setenv("DATABASE_URL", db_url)
    monkeypatch.setenv("DEBUG", "false")
    monkeypatch.setenv("PAGBANK_API_TOKEN", PAGBANK_TOKEN)
    monkeypatch.setenv("MERCADOPAGO_WEBHOOK_SECRET", MP_SECRET)
    monkeypatch.setenv("MERCADOPAGO_ACCESS_TOKEN", "")
    monkeypatch.setenv("PAYPAL_CLIENT_ID", "")
    monkeypatch.setenv("WEBHOOK_PATH_SECRET", "")
    monkeypatch.setenv("ALLOW_UNSIGNED_WEBHOOKS", "false")
    get_settings.cache_clear()
    yield monkeypatch
    get_settings.cache_clear()


@pytest.fixture
def make_client(api_env):
    """Factory: TestClient for an app built after applying extra env overrides.

    The app's own lifespan initializes the database inside the TestClient's loop.
    """
    clients = []

    def _make(**env: str) -> TestClient:
        for key, value in env.items():
            api_env.setenv(key.upper(), value)
        get_settings.cache_clear()

        from payhub.main import create_app

        client = TestClient(create_app())
        client.__enter__()
        clients.append(client)
        return client

    yield _make

    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def api_client(make_client) -> TestClient:
    return make_client()


@pytest.fixture
def db(db_url) -> Database:
    """Handle on the database the app under test uses. The app creates the schema on startup."""
    return Database(db_url)
