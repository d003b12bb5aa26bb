"""Outbound provider API clients.

- PayPalClient: OAuth token + ``/v1/notifications/verify-webhook-signature``
- MercadoPagoClient: ``/v1/payments/{id}`` lookup for thin notifications

Transient failures (network errors, 429, 5xx) are retried with tenacity;
anything else surfaces as ProviderAPIError.
"""

from collections.abc import AsyncIterator, Mapping
from contextlib import asynccontextmanager
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from payhub.core.config import Settings
from payhub.core.exceptions import ProviderAPIError

logger = structlog.get_logger(__name__)


class TransientProviderError(Exception):
    """Retryable upstream failure (429 or 5xx)."""

    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"transient upstream status {status_code}")


_retry_transient = retry(
    retry=retry_if_exception_type((httpx.TransportError, TransientProviderError)),
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
    reraise=True,
    before_sleep=lambda rs: logger.warning(
        "provider_api_retrying",
        attempt=rs.attempt_number,
        sleep_seconds=rs.next_action.sleep,
    ),
)


def _raise_for_transient(response: httpx.Response) -> None:
    if response.status_code == 429 or response.status_code >= 500:
        raise TransientProviderError(response.status_code)


class _BaseClient:
    def __init__(self, base_url: str, timeout: float, http: httpx.AsyncClient | None = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._http = http

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http is not None:
            yield self._http
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client


class PayPalClient(_BaseClient):
    """Client for PayPal's webhook signature verification API."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        webhook_id: str,
        base_url: str,
        timeout: float = 15.0,
        http: httpx.AsyncClient | None = None,
    ):
        super().__init__(base_url, timeout, http)
        self.client_id = client_id
        self.client_secret = client_secret
        self.webhook_id = webhook_id
        self._access_token: str | None = None
        self._token_expires: datetime | None = None

    @classmethod
    def from_settings(cls, settings: Settings, http: httpx.AsyncClient | None = None) -> "PayPalClient":
        return cls(
            client_id=settings.paypal_client_id,
            client_secret=settings.paypal_client_secret,
            webhook_id=settings.paypal_webhook_id,
            base_url=settings.paypal_api_base,
            timeout=settings.outbound_timeout_seconds,
            http=http,
        )

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.webhook_id)

    @_retry_transient
    async def _fetch_token(self) -> dict:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/v1/oauth2/token",
                auth=(self.client_id, self.client_secret),
                data={"grant_type": "client_credentials"},
                headers={"Accept": "application/json"},
            )
        _raise_for_transient(response)
        if response.status_code != 200:
            raise ProviderAPIError("paypal", "oauth_token", response.status_code)
        return response.json()

    async def _get_access_token(self) -> str:
        if self._access_token and self._token_expires and datetime.now(UTC) < self._token_expires:
            return self._access_token

        data = await self._fetch_token()
        self._access_token = data["access_token"]
        # Refresh a minute early
        expires_in = int(data.get("expires_in", 3600))
        self._token_expires = datetime.now(UTC) + timedelta(seconds=max(expires_in - 60, 0))
        return self._access_token

    @_retry_transient
    async def _post_verification(self, token: str, body: dict) -> httpx.Response:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/v1/notifications/verify-webhook-signature",
                json=body,
                headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"},
            )
        _raise_for_transient(response)
        return response

    async def verify_webhook_signature(self, headers: Mapping[str, str], event: Any) -> str:
        """Ask PayPal whether a delivery is authentic.

        Args:
            headers: Lower-cased request headers
            event: The parsed webhook body, sent back verbatim

        Returns:
            PayPal's ``verification_status`` ("SUCCESS" or "FAILURE")

        Raises:
            ProviderAPIError: On non-retryable API errors
            TransientProviderError / httpx.TransportError: After retries are exhausted
        """
        token = await self._get_access_token()
        body = {
            "auth_algo": headers.get("paypal-auth-algo"),
            "cert_url": headers.get("paypal-cert-url"),
            "transmission_id": headers.get("paypal-transmission-id"),
            "transmission_sig": headers.get("paypal-transmission-sig"),
            "transmission_time": headers.get("paypal-transmission-time"),
            "webhook_id": self.webhook_id,
            "webhook_event": event,
        }
        response = await self._post_verification(token, body)
        if response.status_code != 200:
            raise ProviderAPIError("paypal", "verify_webhook_signature", response.status_code)
        return str(response.json().get("verification_status", "FAILURE")).upper()


class MercadoPagoClient(_BaseClient):
    """Client for Mercado Pago's payments API."""

    def __init__(
        self,
        access_token: str,
        base_url: str,
        timeout: float = 15.0,
        http: httpx.AsyncClient | None = None,
    ):
        super().__init__(base_url, timeout, http)
        self.access_token = access_token

    @classmethod
    def from_settings(cls, settings: Settings, http: httpx.AsyncClient | None = None) -> "MercadoPagoClient":
        return cls(
            access_token=settings.mercadopago_access_token,
            base_url=settings.mercadopago_api_base,
            timeout=settings.outbound_timeout_seconds,
            http=http,
        )

    @property
    def configured(self) -> bool:
        return bool(self.access_token)

    @_retry_transient
    async def get_payment(self, payment_id: str) -> dict:
        """Fetch the full payment object for a notification's ``data.id``."""
        async with self._client() as client:
            response = await client.get(
                f"{self.base_url}/v1/payments/{payment_id}",
                headers={"Authorization": f"Bearer {self.access_token}"},
            )
        _raise_for_transient(response)
        if response.status_code != 200:
            raise ProviderAPIError("mercadopago", "get_payment", response.status_code)
        return response.json()
