"""FastAPI dependencies resolving the components wired onto ``app.state`` at startup."""

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payhub.payments.distributor import LiveStatusDistributor
from payhub.payments.ledger import AdmissionFailureLog
from payhub.payments.providers.registry import ProviderRegistry
from payhub.payments.service import WebhookIngestor
from payhub.payments.snapshots import SnapshotStore
from payhub.payments.verification import PathSecretGuard


def get_registry(request: Request) -> ProviderRegistry:
    return request.app.state.registry


def get_path_guard(request: Request) -> PathSecretGuard:
    return request.app.state.path_guard


def get_ingestor(request: Request) -> WebhookIngestor:
    return request.app.state.ingestor


def get_admission_log(request: Request) -> AdmissionFailureLog:
    return request.app.state.admission_log


def get_distributor(request: Request) -> LiveStatusDistributor:
    return request.app.state.distributor


def get_snapshot_store(request: Request) -> SnapshotStore:
    return request.app.state.snapshots


def get_db_session_factory(request: Request) -> async_sessionmaker[AsyncSession]:
    return request.app.state.session_factory
