"""AdmissionFailure model: audit trail of webhooks rejected at admission control."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Integer, String

from payhub.db.base import Base
from payhub.db.types import BigIntegerPK, JSONColumn


class AdmissionFailure(Base):
    """Rejected delivery (bad signature, stale timestamp, ...). Headers are sanitized."""

    __tablename__ = "webhook_admission_failures"

    id = Column(BigIntegerPK, primary_key=True, autoincrement=True)
    provider = Column(String(32), nullable=False, index=True)
    reason = Column(String(64), nullable=False)
    status_code = Column(Integer, nullable=False)
    headers = Column(JSONColumn, nullable=True)
    correlation_id = Column(String(128), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))
