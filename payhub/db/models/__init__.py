"""Re-export all models so Base.metadata sees them."""

from payhub.db.models.admission_failure import AdmissionFailure
from payhub.db.models.payment_request import PaymentRequest
from payhub.db.models.webhook_event import WebhookEvent

__all__ = [
    "AdmissionFailure",
    "PaymentRequest",
    "WebhookEvent",
]
