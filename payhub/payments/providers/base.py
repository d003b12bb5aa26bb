"""Provider interface shared by every payment integration."""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any, ClassVar

import structlog

from payhub.payments.canonical import canonicalize_status, derive_event_id
from payhub.payments.schemas import CanonicalEvent, ObjectType
from payhub.payments.verification import WebhookVerifier

logger = structlog.get_logger(__name__)


class PaymentProvider(ABC):
    """One implementation per provider, selected once per request by the registry.

    Subclasses declare their route name, event-id prefix and status table, and
    implement ``_canonicalize`` for object payloads.
    """

    name: ClassVar[str]
    prefix: ClassVar[str]
    status_table: ClassVar[Mapping[str, str]]

    def __init__(self, verifier: WebhookVerifier):
        self.verifier = verifier

    @property
    def route(self) -> str:
        return self.name

    def canonical_status(self, raw: Any) -> str:
        return canonicalize_status(raw, self.status_table)

    def canonicalize(self, payload: Any) -> CanonicalEvent:
        """Map a provider payload to a CanonicalEvent. Never raises.

        A payload the mapping cannot handle is still accepted, as an unknown
        event carrying the raw body, so it reaches the ledger.
        """
        if not isinstance(payload, Mapping):
            return self.unknown_event(payload)
        try:
            return self._canonicalize(payload)
        except Exception:
            logger.exception("canonicalize_failed", provider=self.name)
            return self.unknown_event(payload)

    def unknown_event(self, payload: Any) -> CanonicalEvent:
        """Event for payloads that cannot be mapped (accepted, marked unknown)."""
        return CanonicalEvent(
            event_id=derive_event_id(self.prefix, ObjectType.UNKNOWN.value, None, {}, payload),
            provider=self.name,
            object_type=ObjectType.UNKNOWN,
            raw_payload=payload,
        )

    @abstractmethod
    def _canonicalize(self, payload: Mapping) -> CanonicalEvent:
        """Provider-specific mapping for object payloads."""
