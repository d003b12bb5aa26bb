"""Canonical payment vocabulary and the records that flow through the pipeline."""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

STATUS_CHANGED = "payments:status-changed"


class PaymentStatus(str, Enum):
    """Provider-independent payment status."""

    CREATED = "CREATED"
    PENDING = "PENDING"
    PAID = "PAID"
    REJECTED = "REJECTED"
    CANCELED = "CANCELED"
    REFUNDED = "REFUNDED"
    CHARGED_BACK = "CHARGED_BACK"
    EXPIRED = "EXPIRED"
    UPDATED = "UPDATED"  # provider status with no mapping


# Marker for "no status present in the payload" (never stored on a snapshot)
UNKNOWN_STATUS = "UNKNOWN"

_CANONICAL_VALUES = frozenset(s.value for s in PaymentStatus)


def is_canonical(status: str | None) -> bool:
    return status in _CANONICAL_VALUES


class ObjectType(str, Enum):
    CHARGE = "charge"
    CHECKOUT = "checkout"
    PAYMENT = "payment"
    UNKNOWN = "unknown"


class Customer(BaseModel):
    name: str | None = None
    email: str | None = None
    tax_id: str | None = None


class Money(BaseModel):
    value: int | None = None  # minor currency units
    currency: str | None = None


class CanonicalEvent(BaseModel):
    """Provider-agnostic view of one webhook delivery."""

    model_config = ConfigDict(frozen=True)

    event_id: str
    provider: str
    object_type: ObjectType = ObjectType.UNKNOWN
    topic: str | None = None
    action: str | None = None

    checkout_id: str | None = None
    charge_id: str | None = None
    payment_id: str | None = None
    reference_id: str | None = None

    status: str = UNKNOWN_STATUS  # canonical value, pass-through uppercase, or UNKNOWN
    status_detail: str | None = None
    customer: Customer | None = None
    amount: Money = Field(default_factory=Money)

    occurred_at: datetime | None = None  # provider's last-updated timestamp
    authorized_at: datetime | None = None

    raw_payload: Any = None

    @property
    def provider_payment_id(self) -> str | None:
        return self.payment_id or self.charge_id

    @property
    def is_thin(self) -> bool:
        """True when the payload carried identifiers but no status (e.g. "id changed" pings)."""
        return self.status == UNKNOWN_STATUS


class StatusChangedEvent(BaseModel):
    """Normalized domain event published after a snapshot write commits."""

    type: str = STATUS_CHANGED
    request_id: int
    product_type: str | None = None
    provider: str
    status: str
    status_detail: str | None = None
    amount: int | None = None
    currency: str | None = None
    checkout_id: str | None = None
    payment_id: str | None = None
    authorized_at: datetime | None = None
    updated_at: datetime | None = None
    correlation_id: str | None = None


class IngestOutcome(str, Enum):
    """Result of one webhook ingestion, reported in logs only."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    ORDER_UNKNOWN = "order_unknown"
    STALE = "stale"
    SKIPPED = "skipped"
    STORE_FAILED = "store_failed"


class PaymentStatusResponse(BaseModel):
    request_id: int
    status: str
    status_detail: str | None = None
    updated_at: datetime | None = None


class WebhookAck(BaseModel):
    status: str = "ok"
