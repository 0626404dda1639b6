"""
Factory for payment provider adapters.
"""
from __future__ import annotations

from typing import Optional

import httpx

from application.ports.payment_gateway import PaymentProvider
from application.services.provider_registry import ProviderRegistry
from core.settings import PaymentSettings, payment_settings


def build_provider(
    name: str,
    settings: PaymentSettings,
    *,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> PaymentProvider:
    key = name.strip().upper()
    timeouts = settings.timeouts.model_dump()
    retry = {"max": settings.retry.max, "base": settings.retry.base_backoff}
    if key == "MOCK":
        from .mock_client import MockPaymentClient
        return MockPaymentClient(settings.mock)
    if key == "STRIPE":
        from .stripe_client import StripeClient
        return StripeClient(settings.stripe, tolerance_seconds=settings.webhook.tolerance_seconds)
    if key == "BKASH":
        from .bkash_client import BkashClient
        return BkashClient(settings.bkash, timeouts=timeouts, retry=retry, transport=transport)
    if key == "NAGAD":
        from .nagad_client import NagadClient
        return NagadClient(settings.nagad, timeouts=timeouts, retry=retry, transport=transport)
    raise ValueError(f"Unsupported payment provider: {name}")


def build_provider_registry(settings: Optional[PaymentSettings] = None) -> ProviderRegistry:
    """Instantiate every enabled provider; an unknown name fails at startup."""
    settings = settings or payment_settings
    return ProviderRegistry([build_provider(name, settings) for name in settings.enabled_providers])


__all__ = ["build_provider", "build_provider_registry"]
