"""WebhookEvent model: append-only ledger of every accepted webhook delivery."""

from datetime import UTC, datetime

from sqlalchemy import Column, DateTime, Index, String

from payhub.db.base import Base
from payhub.db.types import JSONColumn


class WebhookEvent(Base):
    """One row per distinct provider event.

    The composite primary key (provider, event_id) is the only defense against
    duplicate provider delivery: inserts use ON CONFLICT DO NOTHING.
    """

    __tablename__ = "webhook_events"

    provider = Column(String(32), primary_key=True)
    event_id = Column(String(255), primary_key=True)

    object_type = Column(String(32), nullable=False, default="unknown")
    topic = Column(String(255), nullable=True)
    action = Column(String(255), nullable=True)
    status = Column(String(64), nullable=True)  # canonical status as seen at receipt

    # Identifiers extracted by the canonicalizer (for audit lookups)
    checkout_id = Column(String(255), nullable=True)
    charge_id = Column(String(255), nullable=True)
    payment_id = Column(String(255), nullable=True)
    reference_id = Column(String(255), nullable=True)

    headers = Column(JSONColumn, nullable=True)  # allow-listed subset, no secret values
    query = Column(JSONColumn, nullable=True)
    auth = Column(JSONColumn, nullable=True)  # verification outcome and presence flags
    raw_payload = Column(JSONColumn, nullable=True)

    correlation_id = Column(String(128), nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC))

    __table_args__ = (
        Index("ix_webhook_events_checkout_id", "checkout_id"),
        Index("ix_webhook_events_payment_id", "payment_id"),
    )
