"""Payment provider implementations."""

from payhub.payments.providers.base import PaymentProvider
from payhub.payments.providers.mercadopago import MercadoPagoProvider
from payhub.payments.providers.pagbank import PagBankProvider
from payhub.payments.providers.paypal import PayPalProvider
from payhub.payments.providers.registry import ProviderRegistry, build_registry

__all__ = [
    "MercadoPagoProvider",
    "PagBankProvider",
    "PayPalProvider",
    "PaymentProvider",
    "ProviderRegistry",
    "build_registry",
]
