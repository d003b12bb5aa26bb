"""Reconciliation: apply a canonical event to the order snapshot, then publish.

Publishing happens strictly after the snapshot transaction commits; a failed
or skipped write publishes nothing.
"""

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payhub.core.context import RequestContext
from payhub.db.models.payment_request import PaymentRequest
from payhub.payments.channel import EventChannel
from payhub.payments.order_lookup import OrderLookup
from payhub.payments.schemas import (
    CanonicalEvent,
    IngestOutcome,
    PaymentStatus,
    StatusChangedEvent,
    is_canonical,
)
from payhub.payments.snapshots import SnapshotStore, SnapshotUpdate

logger = structlog.get_logger(__name__)

_MAX_DETAIL = 255
_MAX_REQUEST_ID_DIGITS = 18  # fits a signed 64-bit column


def _as_request_id(reference_id: str | None) -> int | None:
    if reference_id and reference_id.isdigit() and len(reference_id) <= _MAX_REQUEST_ID_DIGITS:
        return int(reference_id)
    return None


def build_snapshot_update(request_id: int, event: CanonicalEvent) -> SnapshotUpdate:
    """Translate a canonical event into snapshot columns.

    Statuses outside the canonical vocabulary are stored as UPDATED and the raw
    value is kept in the status detail.
    """
    status = event.status
    detail = event.status_detail
    if not is_canonical(status):
        detail = f"{status}: {detail}" if detail else status
        status = PaymentStatus.UPDATED.value

    customer = event.customer
    return SnapshotUpdate(
        request_id=request_id,
        provider=event.provider,
        status=status,
        status_detail=detail[:_MAX_DETAIL] if detail else None,
        amount_minor=event.amount.value,
        currency=event.amount.currency.upper() if event.amount.currency else None,
        checkout_id=event.checkout_id,
        payment_id=event.provider_payment_id,
        customer_name=customer.name if customer else None,
        customer_email=customer.email if customer else None,
        customer_tax_id=customer.tax_id if customer else None,
        authorized_at=event.authorized_at if status == PaymentStatus.PAID.value else None,
        provider_updated_at=event.occurred_at,
    )


class Reconciler:
    """Drives the snapshot state for one canonical event at a time."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        channel: EventChannel,
        order_lookup: OrderLookup,
        snapshots: SnapshotStore,
    ):
        self._session_factory = session_factory
        self.channel = channel
        self._order_lookup = order_lookup
        self._snapshots = snapshots

    async def _resolve(self, session: AsyncSession, event: CanonicalEvent) -> PaymentRequest | None:
        """Owning order: internal id, then checkout/session id, then payment id."""
        request_id = _as_request_id(event.reference_id)
        if request_id is not None:
            row = await self._snapshots.get(session, request_id)
            if row is not None:
                return row
        if event.checkout_id:
            row = await self._snapshots.find_by_checkout_id(session, event.checkout_id)
            if row is not None:
                return row
        if event.provider_payment_id:
            return await self._snapshots.find_by_payment_id(session, event.provider_payment_id)
        return None

    async def reconcile(self, event: CanonicalEvent, ctx: RequestContext) -> IngestOutcome:
        log = logger.bind(event_id=event.event_id, **ctx.log_fields())

        if event.is_thin:
            log.info("reconcile_skipped_no_status", object_type=event.object_type.value)
            return IngestOutcome.SKIPPED

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    request = await self._resolve(session, event)
                    if request is None:
                        log.warning(
                            "reconcile_order_unknown",
                            reference_id=event.reference_id,
                            checkout_id=event.checkout_id,
                            payment_id=event.provider_payment_id,
                        )
                        return IngestOutcome.ORDER_UNKNOWN

                    snapshot = await self._snapshots.upsert(
                        session, build_snapshot_update(request.request_id, event)
                    )
                    if snapshot is None:
                        log.info("reconcile_stale_event", request_id=request.request_id)
                        return IngestOutcome.STALE

                    published = StatusChangedEvent(
                        request_id=snapshot.request_id,
                        product_type=snapshot.product_type,
                        provider=snapshot.provider or event.provider,
                        status=snapshot.status,
                        status_detail=snapshot.status_detail,
                        amount=snapshot.amount_minor,
                        currency=snapshot.currency,
                        checkout_id=snapshot.checkout_id,
                        payment_id=snapshot.payment_id,
                        authorized_at=snapshot.authorized_at,
                        updated_at=snapshot.updated_at,
                        correlation_id=ctx.correlation_id,
                    )
        except SQLAlchemyError:
            log.exception("snapshot_upsert_failed")
            return IngestOutcome.STORE_FAILED

        try:
            category = await self._order_lookup.product_category(published.request_id)
        except SQLAlchemyError:
            log.warning("order_lookup_failed", request_id=published.request_id, exc_info=True)
            category = None
        if category:
            published = published.model_copy(update={"product_type": category})

        await self.channel.publish(published)
        log.info(
            "payment_status_changed",
            request_id=published.request_id,
            status=published.status,
            product_type=published.product_type,
        )
        return IngestOutcome.PROCESSED
