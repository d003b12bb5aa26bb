"""Tests for WebhookIngestor: dedup, enrichment and out-of-band PayPal verification."""

import json

import httpx
import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from payhub.payments.clients import MercadoPagoClient, PayPalClient
from payhub.payments.ledger import DeliveryMeta, EventLedger
from payhub.payments.providers import MercadoPagoProvider, PagBankProvider, PayPalProvider
from payhub.payments.providers.registry import PAYPAL_SIGNATURE_HEADERS
from payhub.payments.schemas import IngestOutcome
from payhub.payments.service import WebhookIngestor
from payhub.payments.verification import SoftSignatureVerifier, WebhookRequest

pytestmark = pytest.mark.unit

PAYPAL_HEADERS = {
    "paypal-transmission-id": "t-1",
    "paypal-transmission-sig": "sig",
    "paypal-cert-url": "https://api.paypal.com/cert",
    "paypal-auth-algo": "SHA256withRSA",
    "paypal-transmission-time": "2024-05-01T12:00:00Z",
}

PAYPAL_EVENT = {
    "id": "WH-1",
    "event_type": "PAYMENT.CAPTURE.COMPLETED",
    "resource": {"id": "CAP1", "status": "COMPLETED", "custom_id": "42"},
}


@pytest.fixture
def received(channel):
    events = []
    channel.subscribe(events.append)
    return events


@pytest.fixture
def paypal_provider():
    return PayPalProvider(SoftSignatureVerifier(PAYPAL_SIGNATURE_HEADERS, strategy="paypal_soft"))


def _mock_http(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _paypal_meta(provider: PayPalProvider, headers: dict[str, str]) -> DeliveryMeta:
    result = provider.verifier.verify(WebhookRequest.build(b"{}", headers))
    return DeliveryMeta(auth=result.as_dict(), raw_headers=dict(headers))


async def _ledger_row(session_factory, provider: str, event_id: str):
    async with session_factory() as session:
        return await EventLedger().get(session, provider, event_id)


# ── Dedup ───────────────────────────────────────────────────────────


async def test_duplicate_delivery_publishes_once(session_factory, reconciler, make_request, received, ctx):
    await make_request(request_id=42)
    ingestor = WebhookIngestor(session_factory, reconciler)
    provider = PagBankProvider(SoftSignatureVerifier(()))
    payload = {"event_id": "evt-1", "charge": {"id": "CHAR_1", "reference_id": "42", "status": "PAID"}}

    first = await ingestor.ingest(provider, payload, DeliveryMeta(), ctx)
    second = await ingestor.ingest(provider, payload, DeliveryMeta(), ctx)

    assert first is IngestOutcome.PROCESSED
    assert second is IngestOutcome.DUPLICATE
    assert len(received) == 1


async def test_unknown_order_is_still_recorded(session_factory, reconciler, received, ctx):
    ingestor = WebhookIngestor(session_factory, reconciler)
    provider = PagBankProvider(SoftSignatureVerifier(()))

    outcome = await ingestor.ingest(
        provider, {"event_id": "evt-9", "charge": {"id": "CHAR_9", "reference_id": "999", "status": "PAID"}}, DeliveryMeta(), ctx
    )

    assert outcome is IngestOutcome.ORDER_UNKNOWN
    assert received == []
    assert (await _ledger_row(session_factory, "pagbank", "evt-9")) is not None


async def test_non_object_payload_is_recorded(session_factory, reconciler, ctx):
    ingestor = WebhookIngestor(session_factory, reconciler)
    provider = PagBankProvider(SoftSignatureVerifier(()))

    outcome = await ingestor.ingest(provider, "not json at all", DeliveryMeta(), ctx)

    assert outcome is IngestOutcome.SKIPPED


async def test_oversized_amount_still_recorded_and_reconciled(session_factory, reconciler, make_request, received, ctx):
    await make_request(request_id=42)
    ingestor = WebhookIngestor(session_factory, reconciler)
    payload = {
        "id": "pay-evt-1",
        "type": "payment",
        "data": {"id": "123", "status": "approved", "external_reference": "42", "transaction_amount": 1e30},
    }

    outcome = await ingestor.ingest(MercadoPagoProvider(SoftSignatureVerifier(())), payload, DeliveryMeta(), ctx)

    assert outcome is IngestOutcome.PROCESSED
    assert received[0].amount is None
    row = await _ledger_row(session_factory, "mercadopago", "pay-evt-1")
    assert row is not None
    assert row.status == "PAID"


class ExplodingPagBankProvider(PagBankProvider):
    def _canonicalize(self, payload):
        raise KeyError("charge")


async def test_unmappable_payload_is_recorded_as_unknown(session_factory, reconciler, received, ctx):
    ingestor = WebhookIngestor(session_factory, reconciler)
    provider = ExplodingPagBankProvider(SoftSignatureVerifier(()))
    payload = {"charge": {"id": "CHAR_2", "status": "PAID"}}

    outcome = await ingestor.ingest(provider, payload, DeliveryMeta(), ctx)

    assert outcome is IngestOutcome.SKIPPED
    assert received == []
    event_id = provider.canonicalize(payload).event_id
    row = await _ledger_row(session_factory, "pagbank", event_id)
    assert row.object_type == "unknown"
    assert row.raw_payload == payload


async def test_ledger_failure_is_reported_not_raised(db_url, reconciler, ctx):
    # Engine without schema: the ledger insert fails
    engine = create_async_engine(db_url.replace("payhub_test.db", "empty.db"))
    try:
        ingestor = WebhookIngestor(async_sessionmaker(engine), reconciler)
        outcome = await ingestor.ingest(
            PagBankProvider(SoftSignatureVerifier(())), {"charge": {"id": "C", "status": "PAID"}}, DeliveryMeta(), ctx
        )
    finally:
        await engine.dispose()

    assert outcome is IngestOutcome.STORE_FAILED


# ── Mercado Pago enrichment ─────────────────────────────────────────


async def test_thin_mercadopago_notification_is_enriched(session_factory, reconciler, make_request, received, ctx):
    await make_request(request_id=42)
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(
            200,
            json={
                "id": 999,
                "status": "approved",
                "external_reference": "42",
                "transaction_amount": 35.9,
                "currency_id": "BRL",
            },
        )

    client = MercadoPagoClient("mp-token", "https://mp.test", http=_mock_http(handler))
    ingestor = WebhookIngestor(session_factory, reconciler, mercadopago_client=client)

    outcome = await ingestor.ingest(
        MercadoPagoProvider(SoftSignatureVerifier(())),
        {"id": 12345, "type": "payment", "action": "payment.updated", "data": {"id": "999"}},
        DeliveryMeta(),
        ctx,
    )

    assert outcome is IngestOutcome.PROCESSED
    assert calls[0].url.path == "/v1/payments/999"
    assert calls[0].headers["authorization"] == "Bearer mp-token"
    assert received[0].status == "PAID"
    assert received[0].amount == 3590

    row = await _ledger_row(session_factory, "mercadopago", "12345")
    assert row.status == "PAID"
    assert row.raw_payload["payment"]["id"] == 999


async def test_duplicate_thin_notification_fetches_payment_once(session_factory, reconciler, make_request, received, ctx):
    await make_request(request_id=42)
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={"id": 123, "status": "approved", "external_reference": "42"})

    client = MercadoPagoClient("mp-token", "https://mp.test", http=_mock_http(handler))
    ingestor = WebhookIngestor(session_factory, reconciler, mercadopago_client=client)
    provider = MercadoPagoProvider(SoftSignatureVerifier(()))
    payload = {"id": "n-1", "type": "payment", "data": {"id": "123"}}

    first = await ingestor.ingest(provider, payload, DeliveryMeta(), ctx)
    second = await ingestor.ingest(provider, dict(payload), DeliveryMeta(), ctx)

    assert first is IngestOutcome.PROCESSED
    assert second is IngestOutcome.DUPLICATE
    assert len(calls) == 1
    assert len(received) == 1


async def test_enrichment_failure_leaves_thin_event(session_factory, reconciler, received, ctx):
    client = MercadoPagoClient("mp-token", "https://mp.test", http=_mock_http(lambda r: httpx.Response(404)))
    ingestor = WebhookIngestor(session_factory, reconciler, mercadopago_client=client)

    outcome = await ingestor.ingest(
        MercadoPagoProvider(SoftSignatureVerifier(())),
        {"id": 1, "type": "payment", "data": {"id": "999"}},
        DeliveryMeta(),
        ctx,
    )

    assert outcome is IngestOutcome.SKIPPED
    assert received == []
    assert (await _ledger_row(session_factory, "mercadopago", "1")).status == "UNKNOWN"


async def test_enrichment_skipped_without_access_token(session_factory, reconciler, ctx):
    def handler(request):
        raise AssertionError("no outbound call expected")

    client = MercadoPagoClient("", "https://mp.test", http=_mock_http(handler))
    ingestor = WebhookIngestor(session_factory, reconciler, mercadopago_client=client)

    outcome = await ingestor.ingest(
        MercadoPagoProvider(SoftSignatureVerifier(())), {"id": 2, "type": "payment", "data": {"id": "1"}}, DeliveryMeta(), ctx
    )
    assert outcome is IngestOutcome.SKIPPED


# ── PayPal out-of-band verification ─────────────────────────────────


def _paypal_handler(verification_status: str = "SUCCESS", verify_code: int = 200):
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21", "expires_in": 3600})
        body = json.loads(request.content)
        assert body["webhook_id"] == "WH-ID"
        assert body["transmission_sig"] == "sig"
        assert body["webhook_event"]["id"] == "WH-1"
        return httpx.Response(verify_code, json={"verification_status": verification_status})

    return handler


def _paypal_client(handler) -> PayPalClient:
    return PayPalClient("cid", "csecret", "WH-ID", "https://paypal.test", http=_mock_http(handler))


async def test_paypal_verdict_recorded(session_factory, reconciler, make_request, paypal_provider, received, ctx):
    await make_request(request_id=42)
    ingestor = WebhookIngestor(session_factory, reconciler, paypal_client=_paypal_client(_paypal_handler()))

    outcome = await ingestor.ingest(paypal_provider, PAYPAL_EVENT, _paypal_meta(paypal_provider, PAYPAL_HEADERS), ctx)

    assert outcome is IngestOutcome.PROCESSED
    row = await _ledger_row(session_factory, "paypal", "WH-1")
    assert row.auth["provider_verdict"] == "SUCCESS"
    assert row.auth["strategy"] == "paypal_soft"
    assert received[0].status == "PAID"


async def test_paypal_failure_verdict_does_not_block(session_factory, reconciler, make_request, paypal_provider, received, ctx):
    await make_request(request_id=42)
    client = _paypal_client(_paypal_handler(verification_status="FAILURE"))
    ingestor = WebhookIngestor(session_factory, reconciler, paypal_client=client)

    outcome = await ingestor.ingest(paypal_provider, PAYPAL_EVENT, _paypal_meta(paypal_provider, PAYPAL_HEADERS), ctx)

    assert outcome is IngestOutcome.PROCESSED
    assert (await _ledger_row(session_factory, "paypal", "WH-1")).auth["provider_verdict"] == "FAILURE"


async def test_paypal_verification_skipped_when_headers_missing(session_factory, reconciler, paypal_provider, ctx):
    def handler(request):
        raise AssertionError("no outbound call expected")

    ingestor = WebhookIngestor(session_factory, reconciler, paypal_client=_paypal_client(handler))
    headers = {"paypal-transmission-id": "t-1"}

    outcome = await ingestor.ingest(paypal_provider, PAYPAL_EVENT, _paypal_meta(paypal_provider, headers), ctx)

    assert outcome is IngestOutcome.ORDER_UNKNOWN
    row = await _ledger_row(session_factory, "paypal", "WH-1")
    assert row.auth["provider_verdict"] == "skipped"
    assert row.auth["reason"] == "headers_missing"


async def test_paypal_api_error_is_unavailable(session_factory, reconciler, paypal_provider, ctx):
    ingestor = WebhookIngestor(session_factory, reconciler, paypal_client=_paypal_client(_paypal_handler(verify_code=400)))

    await ingestor.ingest(paypal_provider, PAYPAL_EVENT, _paypal_meta(paypal_provider, PAYPAL_HEADERS), ctx)

    assert (await _ledger_row(session_factory, "paypal", "WH-1")).auth["provider_verdict"] == "unavailable"


async def test_paypal_without_client_is_skipped(session_factory, reconciler, paypal_provider, ctx):
    ingestor = WebhookIngestor(session_factory, reconciler)
    await ingestor.ingest(paypal_provider, PAYPAL_EVENT, _paypal_meta(paypal_provider, PAYPAL_HEADERS), ctx)
    assert (await _ledger_row(session_factory, "paypal", "WH-1")).auth["provider_verdict"] == "skipped"


async def test_duplicate_paypal_delivery_is_not_reverified(session_factory, reconciler, make_request, paypal_provider, ctx):
    await make_request(request_id=42)
    paths = []
    verify = _paypal_handler()

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return verify(request)

    ingestor = WebhookIngestor(session_factory, reconciler, paypal_client=_paypal_client(handler))

    first = await ingestor.ingest(paypal_provider, PAYPAL_EVENT, _paypal_meta(paypal_provider, PAYPAL_HEADERS), ctx)
    second = await ingestor.ingest(paypal_provider, PAYPAL_EVENT, _paypal_meta(paypal_provider, PAYPAL_HEADERS), ctx)

    assert first is IngestOutcome.PROCESSED
    assert second is IngestOutcome.DUPLICATE
    assert paths.count("/v1/notifications/verify-webhook-signature") == 1
