"""Shared test fixtures for all test groups."""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payhub.core.context import RequestContext
from payhub.db.base import Base, create_engine
from payhub.db.models import PaymentRequest
from payhub.payments.channel import EventChannel
from payhub.payments.distributor import LiveStatusDistributor
from payhub.payments.orchestrator import Reconciler
from payhub.payments.order_lookup import SqlOrderLookup
from payhub.payments.snapshots import SnapshotStore


@pytest.fixture
def db_url(tmp_path) -> str:
    """File-backed SQLite database, so separate engines/event loops see the same data."""
    return f"sqlite+aiosqlite:///{tmp_path / 'payhub_test.db'}"


@pytest.fixture
async def session_factory(db_url):
    """Session factory bound to a fresh schema in the pytest-asyncio event loop."""
    engine = create_engine(db_url)

    import payhub.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    await engine.dispose()


@pytest.fixture
def ctx():
    return RequestContext(correlation_id="test-corr-0001", provider="mercadopago")


@pytest.fixture
def channel():
    return EventChannel()


@pytest.fixture
def distributor(channel):
    return LiveStatusDistributor(channel)


@pytest.fixture
def snapshots():
    return SnapshotStore(reject_stale_updates=True)


@pytest.fixture
def reconciler(session_factory, channel, snapshots):
    return Reconciler(session_factory, channel, SqlOrderLookup(session_factory), snapshots)


@pytest.fixture
def make_request(session_factory):
    """Insert a checkout-time PaymentRequest (status CREATED) and return it."""

    async def _make(request_id: int | None = None, **fields) -> PaymentRequest:
        fields.setdefault("product_type", "birth_chart")
        async with session_factory() as session:
            row = PaymentRequest(request_id=request_id, status="CREATED", **fields)
            session.add(row)
            await session.commit()
            return row

    return _make
