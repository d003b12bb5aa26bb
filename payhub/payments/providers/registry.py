"""Route-keyed provider registry."""

import structlog

from payhub.core.config import Settings
from payhub.core.exceptions import ProviderNotFound
from payhub.payments.providers.base import PaymentProvider
from payhub.payments.providers.mercadopago import MercadoPagoProvider
from payhub.payments.providers.pagbank import PagBankProvider
from payhub.payments.providers.paypal import PayPalProvider
from payhub.payments.verification import (
    MercadoPagoSignatureVerifier,
    PagBankSignatureVerifier,
    SoftSignatureVerifier,
)

logger = structlog.get_logger(__name__)

PAYPAL_SIGNATURE_HEADERS = (
    "paypal-transmission-id",
    "paypal-transmission-sig",
    "paypal-cert-url",
    "paypal-auth-algo",
    "paypal-transmission-time",
)


class ProviderRegistry:
    """Maps a route segment (``/webhook/{provider}``) to its provider implementation."""

    def __init__(self, providers: list[PaymentProvider] | None = None):
        self._providers: dict[str, PaymentProvider] = {}
        for provider in providers or []:
            self.register(provider)

    def register(self, provider: PaymentProvider) -> None:
        if provider.route in self._providers:
            raise ValueError(f"Provider route '{provider.route}' already registered")
        self._providers[provider.route] = provider

    def get(self, route: str) -> PaymentProvider:
        try:
            return self._providers[route.lower()]
        except KeyError:
            raise ProviderNotFound(route) from None

    def __contains__(self, route: str) -> bool:
        return route.lower() in self._providers

    @property
    def routes(self) -> list[str]:
        return sorted(self._providers)


def build_registry(settings: Settings) -> ProviderRegistry:
    """Wire the built-in providers with verifiers configured from settings."""
    allow_unsigned = settings.allow_unsigned_webhooks
    if allow_unsigned:
        logger.warning("unsigned_webhooks_allowed")

    return ProviderRegistry(
        [
            PagBankProvider(
                PagBankSignatureVerifier(settings.pagbank_api_token, allow_unsigned=allow_unsigned),
            ),
            MercadoPagoProvider(
                MercadoPagoSignatureVerifier(
                    settings.mercadopago_webhook_secret,
                    allow_unsigned=allow_unsigned,
                    tolerance_seconds=settings.mercadopago_signature_tolerance_seconds,
                ),
            ),
            PayPalProvider(SoftSignatureVerifier(PAYPAL_SIGNATURE_HEADERS, strategy="paypal_soft")),
        ]
    )
