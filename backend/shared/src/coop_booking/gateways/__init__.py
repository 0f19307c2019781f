"""Payment provider adapters behind one PaymentGateway interface."""

from ..config import Settings, get_settings
from ..models.enums import PaymentProvider
from .base import (
    AmountMismatchError,
    OrderMismatchError,
    PaymentGateway,
    ProviderCredentials,
    WebhookNotice,
)
from .nicepay import NicePayGateway
from .toss import TossPaymentsGateway

GATEWAY_CLASSES: dict[PaymentProvider, type[PaymentGateway]] = {
    PaymentProvider.TOSS: TossPaymentsGateway,
    PaymentProvider.NICEPAY: NicePayGateway,
}


def get_payment_gateway(
    provider: PaymentProvider,
    settings: Settings | None = None,
    credentials: ProviderCredentials | None = None,
) -> PaymentGateway:
    """Build the adapter for a provider.

    Args:
        provider: Which provider backs the payment
        settings: Settings override; defaults to the cached process settings
        credentials: Explicit keys; otherwise loaded from SSM on first use

    Returns:
        A PaymentGateway for the provider
    """
    return GATEWAY_CLASSES[provider](settings or get_settings(), credentials)


__all__ = [
    "AmountMismatchError",
    "GATEWAY_CLASSES",
    "NicePayGateway",
    "OrderMismatchError",
    "PaymentGateway",
    "ProviderCredentials",
    "TossPaymentsGateway",
    "WebhookNotice",
    "get_payment_gateway",
]
