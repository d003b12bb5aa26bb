"""Webhook ledger (insert once, amended after enrichment) and admission-failure audit."""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

import structlog
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payhub.core.context import RequestContext
from payhub.db.dialect import upsert_insert
from payhub.db.models.admission_failure import AdmissionFailure
from payhub.db.models.webhook_event import WebhookEvent
from payhub.payments.schemas import CanonicalEvent

logger = structlog.get_logger(__name__)


@dataclass
class DeliveryMeta:
    """Transport details recorded alongside a ledger row."""

    headers: dict[str, str] = field(default_factory=dict)  # already sanitized
    query: dict[str, str] = field(default_factory=dict)
    auth: dict[str, Any] = field(default_factory=dict)
    # Unsanitized lower-cased headers for out-of-band verification; never stored
    raw_headers: dict[str, str] = field(default_factory=dict, repr=False)


class EventLedger:
    """Insert-if-absent log keyed by (provider, event_id)."""

    async def append(
        self,
        session: AsyncSession,
        event: CanonicalEvent,
        meta: DeliveryMeta,
        ctx: RequestContext,
    ) -> bool:
        """Record an event. Returns False (not an error) when it was already recorded."""
        stmt = (
            upsert_insert(session, WebhookEvent)
            .values(
                provider=event.provider,
                event_id=event.event_id,
                object_type=event.object_type.value,
                topic=event.topic,
                action=event.action,
                status=event.status,
                checkout_id=event.checkout_id,
                charge_id=event.charge_id,
                payment_id=event.payment_id,
                reference_id=event.reference_id,
                headers=meta.headers or None,
                query=meta.query or None,
                auth=meta.auth or None,
                raw_payload=event.raw_payload,
                correlation_id=ctx.correlation_id,
                received_at=ctx.received_at,
            )
            .on_conflict_do_nothing(index_elements=["provider", "event_id"])
            .returning(WebhookEvent.event_id)
        )
        result = await session.execute(stmt)
        inserted = result.scalar_one_or_none() is not None

        if not inserted:
            logger.info("ledger_duplicate", event_id=event.event_id, **ctx.log_fields())
        return inserted

    async def amend(self, session: AsyncSession, event: CanonicalEvent, auth: Mapping[str, Any] | None) -> bool:
        """Rewrite a recorded row with what was learned after receipt.

        Used for the enriched Mercado Pago payment and the PayPal verdict. The
        key columns and the receipt metadata never change.
        """
        stmt = (
            update(WebhookEvent)
            .where(WebhookEvent.provider == event.provider, WebhookEvent.event_id == event.event_id)
            .values(
                object_type=event.object_type.value,
                status=event.status,
                checkout_id=event.checkout_id,
                charge_id=event.charge_id,
                payment_id=event.payment_id,
                reference_id=event.reference_id,
                auth=dict(auth) if auth else None,
                raw_payload=event.raw_payload,
            )
        )
        result = await session.execute(stmt)
        return result.rowcount == 1

    async def get(self, session: AsyncSession, provider: str, event_id: str) -> WebhookEvent | None:
        return await session.get(WebhookEvent, (provider, event_id))


class AdmissionFailureLog:
    """Best-effort audit of deliveries rejected at admission control."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def record(
        self,
        provider: str,
        reason: str,
        status_code: int,
        headers: Mapping[str, str],
        correlation_id: str | None,
    ) -> None:
        try:
            async with self._session_factory() as session:
                session.add(
                    AdmissionFailure(
                        provider=provider,
                        reason=reason,
                        status_code=status_code,
                        headers=dict(headers) or None,
                        correlation_id=correlation_id,
                    )
                )
                await session.commit()
        except SQLAlchemyError:
            logger.exception("admission_failure_record_failed", provider=provider, reason=reason)
