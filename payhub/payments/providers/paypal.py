"""PayPal webhooks: ``{id, event_type, resource: {...}}`` for orders and captures."""

from collections.abc import Mapping

from payhub.payments.canonical import (
    as_mapping,
    as_str,
    build_customer,
    build_status_table,
    derive_event_id,
    dig,
    first_present,
    parse_timestamp,
    to_minor_units,
    unwrap_envelope,
)
from payhub.payments.providers.base import PaymentProvider
from payhub.payments.schemas import CanonicalEvent, Money, ObjectType, PaymentStatus

PAYPAL_STATUS_TABLE = build_status_table(
    {
        PaymentStatus.PAID: ("COMPLETED",),
        PaymentStatus.CREATED: ("CREATED", "SAVED"),
        PaymentStatus.PENDING: ("APPROVED", "PAYER_ACTION_REQUIRED", "PENDING"),
        PaymentStatus.REJECTED: ("DENIED", "DECLINED", "FAILED"),
        PaymentStatus.CANCELED: ("VOIDED", "CANCELLED", "CANCELED"),
        PaymentStatus.REFUNDED: ("REFUNDED", "PARTIALLY_REFUNDED"),
        PaymentStatus.CHARGED_BACK: ("REVERSED",),
        PaymentStatus.EXPIRED: ("EXPIRED",),
    }
)

# Event types whose resource status describes a different object (e.g. the refund
# itself is COMPLETED); the event type is the authoritative payment status.
_EVENT_TYPE_STATUS = {
    "PAYMENT.CAPTURE.REFUNDED": PaymentStatus.REFUNDED.value,
    "PAYMENT.CAPTURE.REVERSED": PaymentStatus.CHARGED_BACK.value,
    "PAYMENT.CAPTURE.DENIED": PaymentStatus.REJECTED.value,
}


def _detect_type(event_type: str, resource: Mapping) -> ObjectType:
    if "CHECKOUT.ORDER" in event_type:
        return ObjectType.CHECKOUT
    if event_type.startswith("PAYMENT."):
        return ObjectType.PAYMENT
    if resource.get("purchase_units"):
        return ObjectType.CHECKOUT
    if resource.get("amount") and resource.get("status"):
        return ObjectType.PAYMENT
    return ObjectType.UNKNOWN


def _amount(resource: Mapping, object_type: ObjectType) -> Money:
    if object_type is ObjectType.CHECKOUT:
        amount = as_mapping(dig(resource, "purchase_units", 0, "amount"))
    else:
        amount = as_mapping(resource.get("amount"))
    return Money(value=to_minor_units(amount.get("value")), currency=as_str(amount.get("currency_code")))


class PayPalProvider(PaymentProvider):
    name = "paypal"
    prefix = "pp"
    status_table = PAYPAL_STATUS_TABLE

    def _canonicalize(self, payload: Mapping) -> CanonicalEvent:
        resource = unwrap_envelope(payload, "resource")
        event_type = (as_str(payload.get("event_type")) or "").upper()
        object_type = _detect_type(event_type, resource)
        is_envelope = resource is not payload

        if object_type is ObjectType.CHECKOUT:
            checkout_id = as_str(resource.get("id"))
            payment_id = as_str(dig(resource, "purchase_units", 0, "payments", "captures", 0, "id"))
        else:
            checkout_id = as_str(dig(resource, "supplementary_data", "related_ids", "order_id"))
            payment_id = as_str(resource.get("id"))

        reference_id = as_str(
            first_present(
                resource.get("custom_id"),
                dig(resource, "purchase_units", 0, "custom_id"),
                resource.get("invoice_id"),
                payload.get("custom_id"),
            )
        )

        raw_status = first_present(resource.get("status"), payload.get("status") if not is_envelope else None)
        if event_type in _EVENT_TYPE_STATUS:
            status = _EVENT_TYPE_STATUS[event_type]
        elif as_str(raw_status) is None and object_type is ObjectType.CHECKOUT:
            status = PaymentStatus.CREATED.value
        else:
            status = self.canonical_status(raw_status)

        payer = as_mapping(resource.get("payer"))
        name = " ".join(
            part
            for part in (as_str(dig(payer, "name", "given_name")), as_str(dig(payer, "name", "surname")))
            if part
        )
        customer = build_customer(name, payer.get("email_address"), dig(payer, "tax_info", "tax_id"))

        updated = parse_timestamp(first_present(resource.get("update_time"), resource.get("create_time")))

        event_id = derive_event_id(
            self.prefix,
            object_type.value,
            payload.get("id") if is_envelope or event_type else None,
            {
                "payment_id": payment_id,
                "checkout_id": checkout_id,
                "reference_id": reference_id,
                "event_type": event_type,
                "status": raw_status,
            },
            payload,
        )

        return CanonicalEvent(
            event_id=event_id,
            provider=self.name,
            object_type=object_type,
            topic=event_type or None,
            action=as_str(payload.get("summary")),
            checkout_id=checkout_id,
            payment_id=payment_id,
            reference_id=reference_id,
            status=status,
            status_detail=as_str(dig(resource, "status_details", "reason")),
            customer=customer,
            amount=_amount(resource, object_type),
            occurred_at=updated,
            authorized_at=updated if status == PaymentStatus.PAID.value else None,
            raw_payload=dict(payload),
        )
