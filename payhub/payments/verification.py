"""Webhook authenticity strategies.

Three strategies, one per provider, selected through the provider registry:

- Signature verification (strong): recompute a keyed hash over the raw body and
  compare it to a header; failures raise ``AuthenticityError``.
- Soft verification (weak): record presence of signature headers as flags and
  never block; the real check is an out-of-band provider API call.
- Path-secret guard: optional shared secret that hides the endpoint behind 404.

Strong checks run on the raw bytes, before JSON parsing.
"""

import hashlib
import hmac
import json
import re
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from payhub.core.exceptions import AuthenticityError

# Headers kept in the ledger / admission audit. Anything else is dropped.
_HEADER_ALLOWLIST = frozenset(
    {
        "content-type",
        "user-agent",
        "x-request-id",
        "x-correlation-id",
        "x-forwarded-for",
        "x-signature",
        "x-authenticity-token",
        "paypal-transmission-id",
        "paypal-transmission-time",
        "paypal-transmission-sig",
        "paypal-cert-url",
        "paypal-auth-algo",
    }
)
# Allow-listed headers whose values are secret-derived: keep presence only
_REDACTED_HEADERS = frozenset({"x-authenticity-token", "paypal-transmission-sig"})


def sanitize_headers(headers: Mapping[str, str]) -> dict[str, str]:
    """Allow-listed, lower-cased header subset safe for logs and storage."""
    out: dict[str, str] = {}
    for name, value in headers.items():
        key = name.lower()
        if key not in _HEADER_ALLOWLIST:
            continue
        out[key] = "[redacted]" if key in _REDACTED_HEADERS else value
    return out


@dataclass(frozen=True)
class WebhookRequest:
    """The parts of an inbound webhook the verifiers need."""

    body: bytes
    headers: Mapping[str, str]  # lower-cased keys
    query: Mapping[str, str] = field(default_factory=dict)
    path_secret: str | None = None

    @classmethod
    def build(
        cls,
        body: bytes,
        headers: Mapping[str, str],
        query: Mapping[str, str] | None = None,
        path_secret: str | None = None,
    ) -> "WebhookRequest":
        return cls(
            body=body,
            headers={k.lower(): v for k, v in headers.items()},
            query=dict(query or {}),
            path_secret=path_secret,
        )

    def header(self, name: str) -> str | None:
        value = self.headers.get(name.lower())
        if value is None:
            return None
        value = value.strip()
        return value or None


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of an admitted request. Stored in the ledger row's ``auth`` column."""

    signature_ok: bool
    strategy: str
    flags: dict[str, bool] = field(default_factory=dict)
    reason: str | None = None

    def as_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"strategy": self.strategy, "signature_ok": self.signature_ok}
        if self.flags:
            out["flags"] = dict(self.flags)
        if self.reason:
            out["reason"] = self.reason
        return out


def _constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


# ── Path-secret guard ───────────────────────────────────────────────


class PathSecretGuard:
    """Optional shared secret presented as path segment, query param, or header.

    A mismatch is reported as 404 so scanners cannot tell the endpoint exists.
    """

    def __init__(self, secret: str | None):
        self._secret = secret or ""

    @property
    def enabled(self) -> bool:
        return bool(self._secret)

    def check(self, request: WebhookRequest) -> None:
        if not self.enabled:
            return

        presented = (
            request.path_secret
            or request.query.get("s")
            or request.query.get("secret")
            or request.header("x-webhook-secret")
        )
        if not presented or not _constant_time_equals(presented, self._secret):
            raise AuthenticityError(404, "path_secret_mismatch", "Not found")


# ── Strategies ──────────────────────────────────────────────────────


class WebhookVerifier:
    """Base strategy. Subclasses implement ``verify``."""

    strategy = "none"
    blocking = False

    def verify(self, request: WebhookRequest) -> VerificationResult:
        raise NotImplementedError


class _StrongVerifier(WebhookVerifier):
    blocking = True

    def __init__(self, secret: str | None, *, allow_unsigned: bool = False):
        self._secret = secret or ""
        self._allow_unsigned = allow_unsigned

    def _unconfigured(self) -> VerificationResult:
        # Fail closed unless unsigned delivery was explicitly enabled
        if self._allow_unsigned:
            return VerificationResult(False, self.strategy, reason="unsigned_allowed")
        raise AuthenticityError(503, "secret_not_configured", "Webhook endpoint is not configured")


class PagBankSignatureVerifier(_StrongVerifier):
    """``x-authenticity-token`` = sha256("{token}-{raw body}") as hex."""

    strategy = "pagbank_sha256"

    def verify(self, request: WebhookRequest) -> VerificationResult:
        if not self._secret:
            return self._unconfigured()

        received = request.header("x-authenticity-token")
        if not received:
            raise AuthenticityError(401, "missing_signature", "Missing x-authenticity-token header")

        digest = hashlib.sha256(self._secret.encode("utf-8") + b"-" + request.body).hexdigest()
        if not _constant_time_equals(received.lower(), digest):
            raise AuthenticityError(403, "invalid_signature", "Invalid signature")

        return VerificationResult(True, self.strategy)


def parse_mercadopago_signature(header: str) -> dict[str, str]:
    """Parse ``ts=...,v1=...`` (comma or semicolon separated) into a dict."""
    parts: dict[str, str] = {}
    for chunk in header.replace(";", ",").split(","):
        key, sep, value = chunk.partition("=")
        if not sep:
            continue
        key = key.strip().lower()
        value = value.strip()
        if key and value:
            parts[key] = value
    return parts


_RESOURCE_ID_RE = re.compile(r"(?:^|/)(\d+)(?:\?.*)?$")


def _mercadopago_data_id(request: WebhookRequest) -> str | None:
    data_id = request.query.get("data.id") or request.query.get("id")
    if data_id:
        return str(data_id)
    try:
        body = json.loads(request.body or b"{}")
    except (ValueError, UnicodeDecodeError):
        return None
    if not isinstance(body, dict):
        return None
    data = body.get("data")
    if isinstance(data, dict) and data.get("id") not in (None, ""):
        return str(data["id"])
    # Legacy feed: "resource" is a URL ending in the numeric id
    resource = body.get("resource")
    if isinstance(resource, (str, int)):
        match = _RESOURCE_ID_RE.search(str(resource))
        if match:
            return match.group(1)
    return None


class MercadoPagoSignatureVerifier(_StrongVerifier):
    """HMAC-SHA256 over ``id:{data.id};request-id:{x-request-id};ts:{ts};``."""

    strategy = "mercadopago_hmac"

    def __init__(self, secret: str | None, *, allow_unsigned: bool = False, tolerance_seconds: int = 300):
        super().__init__(secret, allow_unsigned=allow_unsigned)
        self._tolerance = tolerance_seconds

    def verify(self, request: WebhookRequest, now: float | None = None) -> VerificationResult:
        if not self._secret:
            return self._unconfigured()

        header = request.header("x-signature")
        if not header:
            raise AuthenticityError(401, "missing_signature", "Missing x-signature header")

        parts = parse_mercadopago_signature(header)
        ts = parts.get("ts")
        v1 = parts.get("v1")
        if not ts or not v1:
            raise AuthenticityError(401, "malformed_signature", "Malformed x-signature header")

        request_id = request.header("x-request-id")
        if not request_id:
            raise AuthenticityError(401, "missing_request_id", "Missing x-request-id header")

        data_id = _mercadopago_data_id(request)
        if not data_id:
            raise AuthenticityError(401, "missing_data_id", "Missing data.id")

        try:
            ts_value = int(ts)
        except ValueError:
            raise AuthenticityError(401, "malformed_signature", "Malformed x-signature timestamp")

        # Mercado Pago sends milliseconds; accept seconds too
        ts_seconds = ts_value / 1000 if ts_value > 10_000_000_000 else ts_value
        current = time.time() if now is None else now
        if abs(current - ts_seconds) > self._tolerance:
            raise AuthenticityError(401, "stale_signature", "Signature timestamp outside tolerance")

        manifest = f"id:{data_id};request-id:{request_id};ts:{ts};"
        expected = hmac.new(self._secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()
        if not _constant_time_equals(v1.lower(), expected):
            raise AuthenticityError(403, "invalid_signature", "Invalid signature")

        return VerificationResult(True, self.strategy)


class SoftSignatureVerifier(WebhookVerifier):
    """Record which signature headers are present; never blocks delivery."""

    strategy = "soft"

    def __init__(self, header_names: tuple[str, ...], strategy: str = "soft"):
        self._header_names = header_names
        self.strategy = strategy

    def verify(self, request: WebhookRequest) -> VerificationResult:
        flags = {name: request.header(name) is not None for name in self._header_names}
        return VerificationResult(
            signature_ok=False,
            strategy=self.strategy,
            flags=flags,
            reason="deferred" if all(flags.values()) else "headers_missing",
        )
