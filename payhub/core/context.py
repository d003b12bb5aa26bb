"""Per-request context passed explicitly through the webhook pipeline."""

import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime

from payhub.middleware.correlation import get_correlation_id


@dataclass(frozen=True)
class RequestContext:
    """Identifies one inbound webhook from receipt to broadcast."""

    correlation_id: str
    provider: str
    received_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    @classmethod
    def current(cls, provider: str) -> "RequestContext":
        """Build a context from the active correlation id, generating one if absent."""
        return cls(correlation_id=get_correlation_id() or uuid.uuid4().hex, provider=provider)

    def log_fields(self) -> dict[str, str]:
        return {"correlation_id": self.correlation_id, "provider": self.provider}
