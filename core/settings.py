"""
Payment-related settings using pydantic-settings v2 with nested env keys.

Kept apart from core.config.Settings; every key lives under the ``PAYMENT__``
prefix, e.g. ``PAYMENT__DEFAULT_PROVIDER`` or ``PAYMENT__BKASH__APP_SECRET``.
"""
from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class PaymentTimeouts(BaseModel):
    connect: float = 1.0
    read: float = 3.0
    write: float = 3.0
    total: float = 5.0


class PaymentRetry(BaseModel):
    max: int = 2
    base_backoff: float = 0.2


class WebhookSettings(BaseModel):
    tolerance_seconds: int = 300
    ip_allowlist: list[str] | None = None  # Optional IPs/CIDRs allowed to post webhooks


class OutboxSettings(BaseModel):
    batch_size: int = 100


class ReconciliationSettings(BaseModel):
    payment_age_seconds: int = 900
    refund_age_seconds: int = 300
    batch_limit: int = 50


class MockSettings(BaseModel):
    webhook_token: str = "mock-webhook-secret"
    decline_refunds: bool = False


class StripeSettings(BaseModel):
    secret_key: Optional[str] = None
    webhook_secret: Optional[str] = None


class BkashSettings(BaseModel):
    base_url: str = "https://tokenized.sandbox.bka.sh/v1.2.0-beta"
    app_key: Optional[str] = None
    app_secret: Optional[str] = None
    username: Optional[str] = None
    password: Optional[str] = None
    webhook_secret: Optional[str] = None
    currency: str = "BDT"
    callback_url: str = "http://localhost:8000/api/v1/payments/webhooks/BKASH"
    token_ttl_seconds: int = 55 * 60


class NagadSettings(BaseModel):
    base_url: str = "http://sandbox.mynagad.com:10080"
    merchant_id: Optional[str] = None
    merchant_number: Optional[str] = None
    currency: str = "BDT"
    # PEM encoded keys
    merchant_private_key: Optional[str] = None
    nagad_public_key: Optional[str] = None
    callback_url: str = "http://localhost:8000/api/v1/payments/webhooks/NAGAD"


class PaymentSettings(BaseSettings):
    default_provider: str = "MOCK"
    enabled_providers: list[str] = Field(default_factory=lambda: ["MOCK", "STRIPE", "BKASH", "NAGAD"])
    timeouts: PaymentTimeouts = Field(default_factory=PaymentTimeouts)
    retry: PaymentRetry = Field(default_factory=PaymentRetry)
    webhook: WebhookSettings = Field(default_factory=WebhookSettings)
    outbox: OutboxSettings = Field(default_factory=OutboxSettings)
    reconciliation: ReconciliationSettings = Field(default_factory=ReconciliationSettings)

    mock: MockSettings = Field(default_factory=MockSettings)
    stripe: StripeSettings = Field(default_factory=StripeSettings)
    bkash: BkashSettings = Field(default_factory=BkashSettings)
    nagad: NagadSettings = Field(default_factory=NagadSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="PAYMENT__",
        case_sensitive=False,
        extra="ignore",
        env_nested_delimiter="__",
    )

    @field_validator("enabled_providers", mode="before")
    @classmethod
    def _split_providers(cls, v):
        if isinstance(v, str) and not v.strip().startswith("["):
            return [item.strip() for item in v.split(",") if item.strip()]
        return v


payment_settings = PaymentSettings()
