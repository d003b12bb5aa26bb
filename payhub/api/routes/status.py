"""Payment status for waiting clients: polling, live stream, and browser return."""

from urllib.parse import urlencode, urlsplit, urlunsplit

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import RedirectResponse, StreamingResponse
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payhub.api.deps import get_db_session_factory, get_distributor, get_registry, get_snapshot_store
from payhub.core.config import get_settings
from payhub.core.exceptions import ProviderNotFound
from payhub.db.models.payment_request import PaymentRequest
from payhub.payments.distributor import LiveStatusDistributor, snapshot_message, status_event_stream
from payhub.payments.providers.base import PaymentProvider
from payhub.payments.providers.registry import ProviderRegistry
from payhub.payments.schemas import PaymentStatus, PaymentStatusResponse
from payhub.payments.snapshots import SnapshotStore

logger = structlog.get_logger(__name__)

router = APIRouter()

_PENDING_STATUSES = frozenset(
    {PaymentStatus.CREATED.value, PaymentStatus.PENDING.value, PaymentStatus.UPDATED.value}
)


def _provider_or_404(registry: ProviderRegistry, provider: str) -> PaymentProvider:
    try:
        return registry.get(provider)
    except ProviderNotFound:
        raise HTTPException(status_code=404, detail="Not found")


def _parse_request_id(request_id: str | None) -> int:
    if not request_id:
        raise HTTPException(status_code=400, detail="request_id is required")
    if not request_id.isdigit() or len(request_id) > 18:
        raise HTTPException(status_code=400, detail="request_id must be a positive integer")
    return int(request_id)


async def _load(
    session_factory: async_sessionmaker[AsyncSession], snapshots: SnapshotStore, request_id: int
) -> PaymentRequest | None:
    async with session_factory() as session:
        return await snapshots.get(session, request_id)


@router.get("/{provider}/status", response_model=PaymentStatusResponse)
async def payment_status(
    provider: str,
    request_id: str | None = Query(None),
    registry: ProviderRegistry = Depends(get_registry),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    snapshots: SnapshotStore = Depends(get_snapshot_store),
):
    """Current snapshot for polling clients."""
    _provider_or_404(registry, provider)
    rid = _parse_request_id(request_id)

    snapshot = await _load(session_factory, snapshots, rid)
    if snapshot is None:
        raise HTTPException(status_code=404, detail="Payment request not found")

    return PaymentStatusResponse(
        request_id=snapshot.request_id,
        status=snapshot.status,
        status_detail=snapshot.status_detail,
        updated_at=snapshot.updated_at,
    )


@router.get("/{provider}/stream")
async def payment_status_stream(
    provider: str,
    request: Request,
    request_id: str | None = Query(None),
    registry: ProviderRegistry = Depends(get_registry),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    snapshots: SnapshotStore = Depends(get_snapshot_store),
    distributor: LiveStatusDistributor = Depends(get_distributor),
):
    """Stream status changes for one order via SSE.

    Sends the current snapshot immediately, then every change for the order,
    and a ``: keep-alive`` comment while idle. Ends when the client disconnects.
    """
    _provider_or_404(registry, provider)
    rid = _parse_request_id(request_id)

    if await _load(session_factory, snapshots, rid) is None:
        raise HTTPException(status_code=404, detail="Payment request not found")

    async def load_initial() -> dict | None:
        snapshot = await _load(session_factory, snapshots, rid)
        return snapshot_message(snapshot) if snapshot is not None else None

    return StreamingResponse(
        status_event_stream(
            distributor,
            rid,
            request.is_disconnected,
            load_initial=load_initial,
            keepalive_seconds=get_settings().stream_keepalive_seconds,
        ),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


def _with_query(url: str, **params: str | None) -> str:
    parts = urlsplit(url)
    extra = urlencode({k: v for k, v in params.items() if v})
    query = "&".join(q for q in (parts.query, extra) if q)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, query, parts.fragment))


async def _resolve_return(
    session_factory: async_sessionmaker[AsyncSession], snapshots: SnapshotStore, request: Request
) -> PaymentRequest | None:
    q = request.query_params
    async with session_factory() as session:
        for key in ("external_reference", "request_id", "reference_id"):
            value = q.get(key)
            if value and value.isdigit() and len(value) <= 18:
                row = await snapshots.get(session, int(value))
                if row is not None:
                    return row
        for key in ("preference_id", "checkout_id", "token"):
            value = q.get(key)
            if value:
                row = await snapshots.find_by_checkout_id(session, value)
                if row is not None:
                    return row
        for key in ("payment_id", "collection_id"):
            value = q.get(key)
            if value:
                row = await snapshots.find_by_payment_id(session, value)
                if row is not None:
                    return row
    return None


@router.get("/{provider}/return")
async def payment_return(
    provider: str,
    request: Request,
    registry: ProviderRegistry = Depends(get_registry),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_db_session_factory),
    snapshots: SnapshotStore = Depends(get_snapshot_store),
):
    """Redirect a customer coming back from the provider's checkout page."""
    payment_provider = _provider_or_404(registry, provider)
    settings = get_settings()

    snapshot = await _resolve_return(session_factory, snapshots, request)
    if snapshot is not None:
        status = snapshot.status
    else:
        # Unknown order: fall back to the provider's own hint in the query string
        hint = request.query_params.get("collection_status") or request.query_params.get("status")
        status = payment_provider.canonical_status(hint)

    ref = str(snapshot.request_id) if snapshot is not None else None
    payment_id = request.query_params.get("payment_id") or request.query_params.get("collection_id")

    if status == PaymentStatus.PAID.value:
        target = _with_query(settings.return_success_url, ref=ref, payment_id=payment_id)
    elif status in _PENDING_STATUSES:
        target = _with_query(settings.return_pending_url, ref=ref, payment_id=payment_id)
    else:
        target = _with_query(settings.return_failure_url, ref=ref)

    logger.info("payment_return_redirect", provider=provider, request_id=ref, status=status)
    return RedirectResponse(target, status_code=303, headers={"Cache-Control": "no-store"})
