"""Mercado Pago webhooks: thin ``{type, action, data: {id}}`` notifications or full payments."""

import re
from collections.abc import Mapping

import structlog

from payhub.payments.canonical import (
    as_mapping,
    as_str,
    build_customer,
    build_status_table,
    derive_event_id,
    first_present,
    lower_text,
    parse_timestamp,
    to_minor_units,
    unwrap_envelope,
)
from payhub.payments.providers.base import PaymentProvider
from payhub.payments.schemas import CanonicalEvent, Money, ObjectType, PaymentStatus

MERCADOPAGO_STATUS_TABLE = build_status_table(
    {
        PaymentStatus.PAID: ("approved",),
        PaymentStatus.PENDING: ("pending", "in_process", "in_mediation", "authorized"),
        PaymentStatus.REJECTED: ("rejected",),
        PaymentStatus.CANCELED: ("cancelled", "canceled"),
        PaymentStatus.REFUNDED: ("refunded",),
        PaymentStatus.CHARGED_BACK: ("charged_back",),
        PaymentStatus.EXPIRED: ("expired",),
    }
)

logger = structlog.get_logger(__name__)

_RESOURCE_ID_RE = re.compile(r"(?:^|/)(\d+)(?:\?.*)?$")


def is_notification(payload: Mapping) -> bool:
    """True for webhook/IPN envelopes, False for a full payment object."""
    return isinstance(payload.get("data"), Mapping) or any(
        payload.get(key) not in (None, "") for key in ("type", "topic", "action", "resource")
    )


def _detect_type(payload: Mapping, inner: Mapping) -> ObjectType:
    topic = lower_text(payload.get("type"), payload.get("topic"))
    if topic == "payment":
        return ObjectType.PAYMENT
    if "payment" in lower_text(payload.get("action")):
        return ObjectType.PAYMENT
    if inner.get("transaction_amount") is not None and inner.get("status") and inner.get("id"):
        return ObjectType.PAYMENT
    if inner.get("init_point") or inner.get("sandbox_init_point"):
        return ObjectType.CHECKOUT
    return ObjectType.UNKNOWN


def _resource_id(payload: Mapping) -> str | None:
    resource = as_str(payload.get("resource"))
    if not resource:
        return None
    match = _RESOURCE_ID_RE.search(resource)
    return match.group(1) if match else None


class MercadoPagoProvider(PaymentProvider):
    name = "mercadopago"
    prefix = "mp"
    status_table = MERCADOPAGO_STATUS_TABLE

    def _canonicalize(self, payload: Mapping) -> CanonicalEvent:
        notification = is_notification(payload)
        inner = unwrap_envelope(payload)
        object_type = _detect_type(payload, inner)

        if object_type is ObjectType.CHECKOUT:
            payment_id = None
            checkout_id = as_str(first_present(inner.get("id"), payload.get("preference_id")))
        else:
            payment_id = as_str(
                first_present(
                    inner.get("id") if inner is not payload or not notification else None,
                    payload.get("payment_id"),
                    _resource_id(payload),
                )
            )
            checkout_id = as_str(first_present(inner.get("preference_id"), payload.get("preference_id")))

        reference_id = as_str(first_present(inner.get("external_reference"), payload.get("external_reference")))

        raw_status = first_present(inner.get("status"), payload.get("status") if not notification else None)
        if as_str(raw_status) is None and (object_type is ObjectType.CHECKOUT or (checkout_id and not payment_id)):
            status = PaymentStatus.CREATED.value
        else:
            status = self.canonical_status(raw_status)

        payer = as_mapping(inner.get("payer"))
        full_name = " ".join(
            part for part in (as_str(payer.get("first_name")), as_str(payer.get("last_name"))) if part
        )
        customer = build_customer(
            first_present(payer.get("name"), full_name),
            payer.get("email"),
            as_mapping(payer.get("identification")).get("number"),
        )

        amount = Money(
            value=to_minor_units(inner.get("transaction_amount")),
            currency=as_str(inner.get("currency_id")),
        )

        native_id = first_present(payload.get("id"), payload.get("notification_id")) if notification else None
        event_id = derive_event_id(
            self.prefix,
            object_type.value,
            native_id,
            {
                "payment_id": payment_id,
                "checkout_id": checkout_id,
                "reference_id": reference_id,
                "status": raw_status,
            },
            payload,
        )

        return CanonicalEvent(
            event_id=event_id,
            provider=self.name,
            object_type=object_type,
            topic=as_str(first_present(payload.get("type"), payload.get("topic"))),
            action=as_str(payload.get("action")),
            checkout_id=checkout_id,
            payment_id=payment_id,
            reference_id=reference_id,
            status=status,
            status_detail=as_str(inner.get("status_detail")),
            customer=customer,
            amount=amount,
            occurred_at=parse_timestamp(inner.get("date_last_updated")),
            authorized_at=parse_timestamp(inner.get("date_approved")),
            raw_payload=dict(payload),
        )

    def with_payment(self, notification: CanonicalEvent, payment: Mapping) -> CanonicalEvent:
        """Re-canonicalize a fetched payment, keeping the notification's identity."""
        try:
            full = self._canonicalize(payment)
        except Exception:
            logger.exception("canonicalize_failed", provider=self.name, payment_id=notification.payment_id)
            return notification
        return full.model_copy(
            update={
                "event_id": notification.event_id,
                "topic": notification.topic,
                "action": notification.action,
                "payment_id": full.payment_id or notification.payment_id,
                "raw_payload": {"notification": notification.raw_payload, "payment": dict(payment)},
            }
        )
