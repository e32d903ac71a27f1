"""
Payment provider registry.

Providers are built from settings on first use and cached per name.
Tests swap in adapters wired to httpx.MockTransport via register_provider().
"""

from typing import Dict, Optional

from eventpass.core.config import get_settings
from eventpass.core.errors import NotFoundError
from eventpass.infrastructure.payment_providers.base import (
    InitializeRequest,
    InitializeResult,
    OutcomeStatus,
    PaymentProvider,
    ProviderOutcome,
)
from eventpass.infrastructure.payment_providers.opay import OpayProvider
from eventpass.infrastructure.payment_providers.paystack import PaystackProvider


_providers: Dict[str, PaymentProvider] = {}


def build_provider(name: str) -> PaymentProvider:
    settings = get_settings()
    if name == "paystack":
        return PaystackProvider(settings.PAYSTACK_SECRET_KEY, settings.PAYSTACK_BASE_URL)
    if name == "opay":
        return OpayProvider(
            settings.OPAY_SECRET_KEY,
            settings.OPAY_PUBLIC_KEY,
            settings.OPAY_MERCHANT_ID,
            settings.OPAY_BASE_URL,
        )
    raise NotFoundError(f"Unknown payment provider '{name}'")


def get_payment_provider(name: Optional[str] = None) -> PaymentProvider:
    name = (name or get_settings().DEFAULT_PAYMENT_PROVIDER).lower()
    if name not in _providers:
        _providers[name] = build_provider(name)
    return _providers[name]


def register_provider(provider: PaymentProvider) -> None:
    _providers[provider.name] = provider


def reset_providers() -> None:
    _providers.clear()


__all__ = [
    "InitializeRequest",
    "InitializeResult",
    "OpayProvider",
    "OutcomeStatus",
    "PaymentProvider",
    "PaystackProvider",
    "ProviderOutcome",
    "build_provider",
    "get_payment_provider",
    "register_provider",
    "reset_providers",
]
