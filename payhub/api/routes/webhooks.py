"""Inbound provider webhooks.

Admission control (path secret, then signature) runs on the raw bytes before
any parsing. Past admission the response is always 200 ``{"status": "ok"}``;
processing outcomes are visible in logs only.
"""

import asyncio
import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from payhub.api.deps import get_admission_log, get_ingestor, get_path_guard, get_registry
from payhub.core.context import RequestContext
from payhub.core.exceptions import AuthenticityError, ProviderNotFound
from payhub.payments.ledger import AdmissionFailureLog, DeliveryMeta
from payhub.payments.providers.registry import ProviderRegistry
from payhub.payments.schemas import WebhookAck
from payhub.payments.service import WebhookIngestor
from payhub.payments.verification import PathSecretGuard, WebhookRequest, sanitize_headers

logger = structlog.get_logger(__name__)

router = APIRouter()

_NO_STORE = {"Cache-Control": "no-store"}
_SECRET_QUERY_KEYS = frozenset({"s", "secret"})


def _parse_body(body: bytes):
    """Decode JSON; anything unparsable is kept as text and canonicalized as unknown."""
    if not body.strip():
        return None
    try:
        return json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return body.decode("utf-8", errors="replace")


async def _handle_webhook(
    provider_route: str,
    request: Request,
    path_secret: str | None,
    registry: ProviderRegistry,
    guard: PathSecretGuard,
    ingestor: WebhookIngestor,
    admission_log: AdmissionFailureLog,
) -> JSONResponse:
    ctx = RequestContext.current(provider_route)
    log = logger.bind(**ctx.log_fields())

    try:
        provider = registry.get(provider_route)
    except ProviderNotFound:
        raise HTTPException(status_code=404, detail="Not found", headers=_NO_STORE)

    body = await request.body()
    webhook = WebhookRequest.build(body, request.headers, request.query_params, path_secret)
    safe_headers = sanitize_headers(request.headers)

    try:
        guard.check(webhook)
        verification = provider.verifier.verify(webhook)
    except AuthenticityError as exc:
        log.warning(
            "webhook_admission_rejected",
            reason=exc.reason,
            status_code=exc.status_code,
            headers=safe_headers,
        )
        await admission_log.record(provider.name, exc.reason, exc.status_code, safe_headers, ctx.correlation_id)
        detail = "Not found" if exc.status_code == 404 else str(exc)
        raise HTTPException(status_code=exc.status_code, detail=detail, headers=_NO_STORE)

    meta = DeliveryMeta(
        headers=safe_headers,
        query={k: v for k, v in request.query_params.items() if k not in _SECRET_QUERY_KEYS},
        auth=verification.as_dict(),
        raw_headers=dict(webhook.headers),
    )

    # Recording must finish even if the provider hangs up mid-request
    await asyncio.shield(ingestor.ingest(provider, _parse_body(body), meta, ctx))

    return JSONResponse(content=WebhookAck().model_dump(), headers=_NO_STORE)


@router.post("/webhook/{provider}", response_model=WebhookAck)
async def receive_webhook(
    provider: str,
    request: Request,
    registry: ProviderRegistry = Depends(get_registry),
    guard: PathSecretGuard = Depends(get_path_guard),
    ingestor: WebhookIngestor = Depends(get_ingestor),
    admission_log: AdmissionFailureLog = Depends(get_admission_log),
):
    """Receive a provider webhook."""
    return await _handle_webhook(provider, request, None, registry, guard, ingestor, admission_log)


@router.post("/webhook/{provider}/{secret}", response_model=WebhookAck)
async def receive_webhook_with_secret(
    provider: str,
    secret: str,
    request: Request,
    registry: ProviderRegistry = Depends(get_registry),
    guard: PathSecretGuard = Depends(get_path_guard),
    ingestor: WebhookIngestor = Depends(get_ingestor),
    admission_log: AdmissionFailureLog = Depends(get_admission_log),
):
    """Receive a provider webhook presenting the path secret as a trailing segment."""
    return await _handle_webhook(provider, request, secret, registry, guard, ingestor, admission_log)
