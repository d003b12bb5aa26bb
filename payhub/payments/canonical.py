"""Shared helpers for turning provider JSON into a CanonicalEvent.

Every helper here is pure and tolerant: missing or malformed fields yield None
rather than an exception, because a canonicalization error would surface to
the provider as a failed webhook and trigger retries.
"""

import hashlib
import json
import secrets
from collections.abc import Mapping
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from payhub.payments.schemas import UNKNOWN_STATUS, Customer, PaymentStatus

_MISSING = object()
_MAX_MINOR_UNITS = 2**63 - 1


def first_present(*values: Any) -> Any:
    """Return the first value that is neither None nor an empty string."""
    for value in values:
        if value is not None and value != "":
            return value
    return None


def dig(obj: Any, *path: str | int) -> Any:
    """Walk nested dicts/lists, returning None as soon as a step is missing."""
    current = obj
    for step in path:
        if isinstance(step, int):
            if not isinstance(current, list) or len(current) <= step:
                return None
            current = current[step]
        else:
            if not isinstance(current, Mapping):
                return None
            current = current.get(step, _MISSING)
            if current is _MISSING:
                return None
    return current


def as_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    if isinstance(value, (dict, list)):
        return None
    return str(value).strip() or None


def as_mapping(value: Any) -> Mapping:
    return value if isinstance(value, Mapping) else {}


def unwrap_envelope(payload: Any, key: str = "data") -> Mapping:
    """Unwrap one level of ``{key: {...}}`` nesting; non-objects become {}."""
    if not isinstance(payload, Mapping):
        return {}
    inner = payload.get(key)
    if isinstance(inner, Mapping):
        return inner
    return payload


def build_status_table(groups: Mapping[PaymentStatus, tuple[str, ...]]) -> dict[str, str]:
    """Flatten ``{canonical: (provider values...)}`` into an uppercase lookup table."""
    return {raw.upper(): canonical.value for canonical, raws in groups.items() for raw in raws}


def canonicalize_status(raw: Any, table: Mapping[str, str]) -> str:
    """Map a provider status through ``table``; unmapped values pass through uppercased."""
    text = as_str(raw)
    if text is None:
        return UNKNOWN_STATUS
    upper = text.upper()
    return table.get(upper, upper)


def to_minor_units(value: Any, *, already_minor: bool = False) -> int | None:
    """Normalize a monetary amount to integer minor units.

    Accepts ints, floats, Decimals and numeric strings ("35", "35.00", "35,00").
    ``already_minor`` marks sources that report cents (e.g. PagBank); a value with
    a fractional part is still treated as major units.
    """
    if value is None or isinstance(value, bool):
        return None
    try:
        if isinstance(value, str):
            text = value.strip().replace(",", ".")
            if not text:
                return None
            amount = Decimal(text)
        else:
            amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None

    if not amount.is_finite():
        return None

    if already_minor and amount == amount.to_integral_value():
        minor = int(amount)
    else:
        try:
            minor = int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
        except InvalidOperation:
            return None
    # amount_minor is a BIGINT column
    if abs(minor) > _MAX_MINOR_UNITS:
        return None
    return minor


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO-8601 strings or epoch seconds into an aware UTC datetime."""
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, tz=UTC)
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    except (ValueError, OverflowError, OSError):
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def stable_json(obj: Any) -> str:
    """Deterministic JSON (sorted keys at every level) for hashing."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)


def hash_payload(obj: Any) -> str:
    return hashlib.sha256(stable_json(obj).encode("utf-8")).hexdigest()


def derive_event_id(
    prefix: str,
    object_type: str,
    native_id: Any,
    identifiers: Mapping[str, Any],
    payload: Any,
) -> str:
    """Compute a stable event id.

    1. Provider-native event/notification id, used verbatim.
    2. Hash of the extracted identifiers (plus raw status), so retransmissions collide
       but status changes for the same object do not.
    3. Hash of the whole payload.
    4. Random token, only for an empty payload (dedup impossible).
    """
    native = as_str(native_id)
    if native:
        return native

    stable = {k: as_str(v) for k, v in identifiers.items() if as_str(v) is not None}
    id_keys = set(stable) - {"status"}
    if id_keys:
        return f"{prefix}_{object_type}_{hash_payload(stable)[:32]}"

    if payload:
        return f"{prefix}_{object_type}_{hash_payload(payload)[:32]}"

    return f"{prefix}_{object_type}_{secrets.token_hex(16)}"


def build_customer(name: Any = None, email: Any = None, tax_id: Any = None) -> Customer | None:
    """Assemble a PII-minimized customer; None when nothing useful is present."""
    name_s = as_str(name)
    email_s = as_str(email)
    tax_s = as_str(tax_id)
    if not (name_s or email_s or tax_s):
        return None
    return Customer(
        name=name_s,
        email=email_s.lower() if email_s else None,
        tax_id=tax_s,
    )


def lower_text(*values: Any) -> str:
    """Lowercased first non-empty string among ``values`` ("" when none)."""
    found = first_present(*(as_str(v) for v in values))
    return found.lower() if found else ""
