"""Latest-state payment snapshot per order (``payment_requests``)."""

from dataclasses import dataclass, fields
from datetime import UTC, datetime

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from payhub.db.dialect import upsert_insert
from payhub.db.models.payment_request import PaymentRequest
from payhub.payments.schemas import PaymentStatus

logger = structlog.get_logger(__name__)

# Fields that never downgrade a known value to null
_COALESCED = (
    "product_type",
    "amount_minor",
    "currency",
    "checkout_id",
    "payment_id",
    "payment_link",
    "customer_name",
    "customer_email",
    "customer_tax_id",
    "authorized_at",
    "provider_updated_at",  # guard field: a timestamp-less update keeps the known one
)
# Fields that always carry the provider's latest assertion
_OVERWRITTEN = ("provider", "status", "status_detail")


@dataclass
class SnapshotUpdate:
    request_id: int
    provider: str
    status: str
    status_detail: str | None = None
    amount_minor: int | None = None
    currency: str | None = None
    checkout_id: str | None = None
    payment_id: str | None = None
    payment_link: str | None = None
    product_type: str | None = None
    customer_name: str | None = None
    customer_email: str | None = None
    customer_tax_id: str | None = None
    authorized_at: datetime | None = None
    provider_updated_at: datetime | None = None

    def values(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


class SnapshotStore:
    """Reads and atomic upserts of PaymentRequest rows."""

    def __init__(self, reject_stale_updates: bool = True):
        self.reject_stale_updates = reject_stale_updates

    async def create_request(
        self,
        session: AsyncSession,
        *,
        provider: str | None = None,
        product_type: str | None = None,
        amount_minor: int | None = None,
        currency: str | None = None,
        checkout_id: str | None = None,
        payment_link: str | None = None,
        customer_name: str | None = None,
        customer_email: str | None = None,
        customer_tax_id: str | None = None,
    ) -> PaymentRequest:
        """Create the checkout-time row (status CREATED). Caller commits."""
        request = PaymentRequest(
            provider=provider,
            product_type=product_type,
            status=PaymentStatus.CREATED.value,
            amount_minor=amount_minor,
            currency=currency,
            checkout_id=checkout_id,
            payment_link=payment_link,
            customer_name=customer_name,
            customer_email=customer_email.lower() if customer_email else None,
            customer_tax_id=customer_tax_id,
        )
        session.add(request)
        await session.flush()
        return request

    async def get(self, session: AsyncSession, request_id: int) -> PaymentRequest | None:
        return await session.get(PaymentRequest, request_id)

    async def find_by_checkout_id(self, session: AsyncSession, checkout_id: str) -> PaymentRequest | None:
        result = await session.execute(select(PaymentRequest).where(PaymentRequest.checkout_id == checkout_id))
        return result.scalar_one_or_none()

    async def find_by_payment_id(self, session: AsyncSession, payment_id: str) -> PaymentRequest | None:
        result = await session.execute(
            select(PaymentRequest)
            .where(PaymentRequest.payment_id == payment_id)
            .order_by(PaymentRequest.request_id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def upsert(self, session: AsyncSession, update: SnapshotUpdate) -> PaymentRequest | None:
        """Apply an update in one INSERT ... ON CONFLICT DO UPDATE statement.

        Returns the resulting row, or None when the update was older than the
        stored provider timestamp and ``reject_stale_updates`` is on.
        """
        now = datetime.now(UTC)
        insert_stmt = upsert_insert(session, PaymentRequest).values(
            **update.values(), created_at=now, updated_at=now
        )
        excluded = insert_stmt.excluded
        table = PaymentRequest.__table__.c

        set_ = {name: func.coalesce(excluded[name], table[name]) for name in _COALESCED}
        set_.update({name: excluded[name] for name in _OVERWRITTEN})
        set_["updated_at"] = now

        where = None
        if self.reject_stale_updates:
            where = or_(
                excluded.provider_updated_at.is_(None),
                table.provider_updated_at.is_(None),
                excluded.provider_updated_at >= table.provider_updated_at,
            )

        stmt = insert_stmt.on_conflict_do_update(
            index_elements=[table.request_id],
            set_=set_,
            where=where,
        ).returning(PaymentRequest)

        result = await session.scalars(stmt, execution_options={"populate_existing": True})
        row = result.first()
        if row is None:
            logger.info(
                "snapshot_update_stale",
                request_id=update.request_id,
                provider_updated_at=update.provider_updated_at.isoformat() if update.provider_updated_at else None,
            )
        return row
