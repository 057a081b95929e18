"""Payment provider implementations."""

from tableside.core.config import Settings
from tableside.services.payment_providers.base import (
    PaymentProvider,
    ProviderIntent,
    ProviderResult,
    normalize_status,
)
from tableside.services.payment_providers.sandbox import SandboxProvider


def build_provider(settings: Settings) -> PaymentProvider:
    """Construct the provider selected by ``PAYMENT_PROVIDER``."""
    if settings.payment_provider == "stripe":
        from tableside.services.payment_providers.stripe_provider import StripeProvider

        return StripeProvider(
            secret_key=settings.stripe_secret_key,
            webhook_secret=settings.stripe_webhook_secret,
            timeout_seconds=settings.payment_provider_timeout_seconds,
        )
    return SandboxProvider(timeout_seconds=settings.payment_provider_timeout_seconds)
