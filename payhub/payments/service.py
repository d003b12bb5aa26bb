"""Webhook ingestion: canonicalize, record, enrich and verify, reconcile.

The webhook contract with a provider is "receipt was durably recorded". Once a
request is past admission control nothing here raises; every downstream failure
is logged and reported as an IngestOutcome.
"""

from typing import Any

import httpx
import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payhub.core.context import RequestContext
from payhub.core.exceptions import ProviderAPIError
from payhub.payments.clients import MercadoPagoClient, PayPalClient, TransientProviderError
from payhub.payments.ledger import DeliveryMeta, EventLedger
from payhub.payments.orchestrator import Reconciler
from payhub.payments.providers.base import PaymentProvider
from payhub.payments.providers.mercadopago import MercadoPagoProvider
from payhub.payments.providers.paypal import PayPalProvider
from payhub.payments.schemas import CanonicalEvent, IngestOutcome, ObjectType

logger = structlog.get_logger(__name__)

_OUTBOUND_ERRORS = (ProviderAPIError, TransientProviderError, httpx.HTTPError, ValueError, KeyError)


class VerificationVerdict:
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    UNAVAILABLE = "unavailable"
    SKIPPED = "skipped"


class WebhookIngestor:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        reconciler: Reconciler,
        ledger: EventLedger | None = None,
        paypal_client: PayPalClient | None = None,
        mercadopago_client: MercadoPagoClient | None = None,
    ):
        self._session_factory = session_factory
        self._reconciler = reconciler
        self._ledger = ledger or EventLedger()
        self._paypal = paypal_client
        self._mercadopago = mercadopago_client

    async def ingest(
        self,
        provider: PaymentProvider,
        payload: Any,
        meta: DeliveryMeta,
        ctx: RequestContext,
    ) -> IngestOutcome:
        log = logger.bind(**ctx.log_fields())
        try:
            event = provider.canonicalize(payload)
            log.info(
                "webhook_received",
                event_id=event.event_id,
                object_type=event.object_type.value,
                status=event.status,
            )

            # Receipt is recorded before any outbound call; duplicates stop here
            try:
                async with self._session_factory() as session:
                    async with session.begin():
                        inserted = await self._ledger.append(session, event, meta, ctx)
            except SQLAlchemyError:
                log.exception("ledger_append_failed", event_id=event.event_id)
                return IngestOutcome.STORE_FAILED

            if not inserted:
                return IngestOutcome.DUPLICATE

            event = await self._complete(provider, event, payload, meta, log)
            outcome = await self._reconciler.reconcile(event, ctx)
        except Exception:
            log.exception("webhook_ingest_failed")
            return IngestOutcome.STORE_FAILED

        log.info("webhook_processed", event_id=event.event_id, outcome=outcome.value)
        return outcome

    async def _complete(
        self,
        provider: PaymentProvider,
        event: CanonicalEvent,
        payload: Any,
        meta: DeliveryMeta,
        log,
    ) -> CanonicalEvent:
        """Run enrichment and out-of-band verification, then amend the recorded row."""
        enriched = await self._enrich(provider, event, log)
        verified = isinstance(provider, PayPalProvider)
        if verified:
            meta.auth["provider_verdict"] = await self._verify_with_paypal(meta, payload, log)
        if enriched is event and not verified:
            return event

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    await self._ledger.amend(session, enriched, meta.auth)
        except SQLAlchemyError:
            # The receipt stands; only the amendment is lost
            log.exception("ledger_amend_failed", event_id=enriched.event_id)
        return enriched

    async def _enrich(self, provider: PaymentProvider, event: CanonicalEvent, log) -> CanonicalEvent:
        """Fetch the full Mercado Pago payment behind a thin notification."""
        if not isinstance(provider, MercadoPagoProvider):
            return event
        if not (event.is_thin and event.payment_id and event.object_type is ObjectType.PAYMENT):
            return event
        if self._mercadopago is None or not self._mercadopago.configured:
            return event

        try:
            payment = await self._mercadopago.get_payment(event.payment_id)
        except _OUTBOUND_ERRORS:
            log.warning("mercadopago_enrichment_failed", payment_id=event.payment_id, exc_info=True)
            return event

        enriched = provider.with_payment(event, payment)
        log.debug("mercadopago_enriched", payment_id=enriched.payment_id, status=enriched.status)
        return enriched

    async def _verify_with_paypal(self, meta: DeliveryMeta, payload: Any, log) -> str:
        """Out-of-band PayPal check. The verdict is audit metadata, never admission control."""
        if self._paypal is None or not self._paypal.configured:
            return VerificationVerdict.SKIPPED
        flags = meta.auth.get("flags") or {}
        if not flags or not all(flags.values()):
            return VerificationVerdict.SKIPPED

        try:
            verdict = await self._paypal.verify_webhook_signature(meta.raw_headers, payload)
        except _OUTBOUND_ERRORS:
            log.warning("paypal_verification_unavailable", exc_info=True)
            return VerificationVerdict.UNAVAILABLE

        if verdict != VerificationVerdict.SUCCESS:
            log.warning("paypal_verification_failed", verdict=verdict)
        return verdict
