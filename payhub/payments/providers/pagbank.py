"""PagBank webhooks (charge, checkout and order notifications, v1/v2 shapes)."""

from collections.abc import Mapping

from payhub.payments.canonical import (
    as_mapping,
    as_str,
    build_customer,
    build_status_table,
    derive_event_id,
    dig,
    first_present,
    lower_text,
    parse_timestamp,
    to_minor_units,
    unwrap_envelope,
)
from payhub.payments.providers.base import PaymentProvider
from payhub.payments.schemas import CanonicalEvent, Money, ObjectType, PaymentStatus

PAGBANK_STATUS_TABLE = build_status_table(
    {
        PaymentStatus.PAID: ("PAID", "PAID_OUT", "AUTHORIZED", "CAPTURED", "APPROVED"),
        PaymentStatus.PENDING: ("PENDING", "WAITING", "IN_ANALYSIS", "IN_REVIEW", "AWAITING_PAYMENT", "PROCESSING"),
        PaymentStatus.REJECTED: ("DECLINED", "REFUSED", "FAILED"),
        PaymentStatus.CANCELED: ("CANCELED", "CANCELLED", "VOIDED"),
        PaymentStatus.REFUNDED: ("REFUNDED", "PARTIALLY_REFUNDED"),
        PaymentStatus.CHARGED_BACK: ("CHARGEBACK", "CHARGED_BACK"),
        PaymentStatus.EXPIRED: ("EXPIRED", "INACTIVE"),
        PaymentStatus.CREATED: ("CREATED", "ACTIVE"),
    }
)


def _charge_of(payload: Mapping, inner: Mapping) -> Mapping:
    """The charge object, wherever this payload variant keeps it."""
    for candidate in (
        payload.get("charge"),
        inner.get("charge"),
        dig(inner, "charges", 0),
        dig(payload, "charges", 0),
    ):
        if isinstance(candidate, Mapping):
            return candidate
    return {}


def _detect_type(payload: Mapping, inner: Mapping, charge: Mapping) -> ObjectType:
    explicit = lower_text(
        payload.get("object_type"),
        dig(payload, "object", "type"),
        payload.get("type"),
        payload.get("topic"),
        payload.get("event_type"),
        payload.get("event"),
    )
    if "charge" in explicit:
        return ObjectType.CHARGE
    if "checkout" in explicit:
        return ObjectType.CHECKOUT

    if charge or inner.get("charge_id") or payload.get("charge_id"):
        return ObjectType.CHARGE
    if isinstance(payload.get("checkout"), Mapping) or isinstance(inner.get("checkout"), Mapping):
        return ObjectType.CHECKOUT
    if inner.get("checkout_id") or payload.get("checkout_id"):
        return ObjectType.CHECKOUT

    object_id = as_str(inner.get("id")) or ""
    if object_id.startswith("CHAR_"):
        return ObjectType.CHARGE
    if object_id.startswith("CHEC_"):
        return ObjectType.CHECKOUT
    return ObjectType.UNKNOWN


class PagBankProvider(PaymentProvider):
    name = "pagbank"
    prefix = "pb"
    status_table = PAGBANK_STATUS_TABLE

    def _canonicalize(self, payload: Mapping) -> CanonicalEvent:
        inner = unwrap_envelope(payload)
        charge = _charge_of(payload, inner)
        checkout = as_mapping(first_present(payload.get("checkout"), inner.get("checkout")))
        object_type = _detect_type(payload, inner, charge)

        charge_id = as_str(
            first_present(
                payload.get("charge_id"),
                charge.get("id"),
                inner.get("charge_id"),
                inner.get("id") if object_type is ObjectType.CHARGE and not charge else None,
            )
        )
        checkout_id = as_str(
            first_present(
                payload.get("checkout_id"),
                checkout.get("id"),
                inner.get("checkout_id"),
                inner.get("id") if object_type is ObjectType.CHECKOUT else None,
            )
        )
        reference_id = as_str(
            first_present(
                payload.get("reference_id"),
                inner.get("reference_id"),
                charge.get("reference_id"),
                checkout.get("reference_id"),
            )
        )

        raw_status = first_present(
            payload.get("status"),
            inner.get("status"),
            charge.get("status"),
            checkout.get("status"),
            payload.get("current_status"),
        )
        if as_str(raw_status) is None and (
            object_type is ObjectType.CHECKOUT or (checkout_id and not charge_id)
        ):
            # A checkout with no status is the start of the flow
            status = PaymentStatus.CREATED.value
        else:
            status = self.canonical_status(raw_status)

        amount_obj = first_present(charge.get("amount"), inner.get("amount"), payload.get("amount"))
        if isinstance(amount_obj, Mapping):
            amount = Money(
                value=to_minor_units(amount_obj.get("value"), already_minor=True),
                currency=as_str(amount_obj.get("currency")),
            )
        else:
            amount = Money(value=to_minor_units(amount_obj, already_minor=True))

        customer_obj = as_mapping(
            first_present(payload.get("customer"), inner.get("customer"), payload.get("buyer"))
        )
        tax_id = customer_obj.get("tax_id")
        if isinstance(tax_id, Mapping):
            tax_id = first_present(tax_id.get("number"), tax_id.get("value"))
        else:
            tax_id = first_present(
                tax_id, customer_obj.get("document"), customer_obj.get("cpf"), customer_obj.get("cnpj")
            )
        customer = build_customer(
            first_present(customer_obj.get("name"), customer_obj.get("full_name")),
            customer_obj.get("email"),
            tax_id,
        )

        paid_at = parse_timestamp(first_present(charge.get("paid_at"), inner.get("paid_at")))
        occurred_at = parse_timestamp(
            first_present(charge.get("updated_at"), inner.get("updated_at"), payload.get("updated_at"))
        ) or paid_at

        event_id = derive_event_id(
            self.prefix,
            object_type.value,
            first_present(payload.get("event_id"), payload.get("notification_id"), inner.get("event_id")),
            {
                "charge_id": charge_id,
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
            topic=as_str(first_present(payload.get("event"), payload.get("type"), payload.get("topic"))),
            action=as_str(payload.get("action")),
            checkout_id=checkout_id,
            charge_id=charge_id,
            reference_id=reference_id,
            status=status,
            status_detail=as_str(dig(charge, "payment_response", "message")),
            customer=customer,
            amount=amount,
            occurred_at=occurred_at,
            authorized_at=paid_at,
            raw_payload=dict(payload),
        )
