"""
Registry of enabled payment providers, keyed by exact provider name.
"""
from __future__ import annotations

from typing import Iterable, Iterator, Optional

from application.ports.payment_gateway import PaymentProvider
from domain.payment.exceptions import ProviderNotSupportedException


class ProviderRegistry:
    """Closed set of provider adapters resolved by case-sensitive name."""

    def __init__(self, providers: Iterable[PaymentProvider]) -> None:
        self._providers: dict[str, PaymentProvider] = {}
        for provider in providers:
            if provider.name in self._providers:
                raise ValueError(f"Duplicate payment provider: {provider.name}")
            self._providers[provider.name] = provider

    def resolve(self, name: Optional[str]) -> PaymentProvider:
        provider = self._providers.get(name) if name else None
        if provider is None:
            raise ProviderNotSupportedException(str(name))
        return provider

    def get(self, name: Optional[str]) -> Optional[PaymentProvider]:
        return self._providers.get(name) if name else None

    @property
    def names(self) -> list[str]:
        return list(self._providers)

    def __contains__(self, name: object) -> bool:
        return name in self._providers

    def __iter__(self) -> Iterator[PaymentProvider]:
        return iter(self._providers.values())

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()
