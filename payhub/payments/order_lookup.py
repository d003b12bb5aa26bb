"""Order lookup collaborator used to tag published events with a product category."""

from typing import Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payhub.db.models.payment_request import PaymentRequest


class OrderLookup(Protocol):
    async def product_category(self, request_id: int) -> str | None: ...


class SqlOrderLookup:
    """Reads ``payment_requests.product_type``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def product_category(self, request_id: int) -> str | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(PaymentRequest.product_type).where(PaymentRequest.request_id == request_id)
            )
            return result.scalar_one_or_none()
