"""
Composition root shared by the HTTP app and the Celery worker.

Wires the unit of work, provider registry, event publisher, order gateway
and application services from settings. Tests pass their own pieces in.
"""
from __future__ import annotations

from dataclasses import dataclass
from functools import partial
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from application.ports.event_publisher import EventPublisher
from application.ports.order_gateway import OrderGateway
from application.services.outbox_relay import OutboxRelay
from application.services.payment_service import PaymentLedgerService
from application.services.provider_registry import ProviderRegistry
from application.services.reconciliation_service import ReconciliationService
from application.services.refund_service import RefundService
from application.services.webhook_service import WebhookService
from application.utils.provider_calls import UnitOfWorkFactory
from core.config import settings
from core.logging_config import get_logger
from core.settings import PaymentSettings, payment_settings
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork


logger = get_logger(__name__)


@dataclass
class PaymentContainer:
    uow_factory: UnitOfWorkFactory
    providers: ProviderRegistry
    publisher: EventPublisher
    orders: OrderGateway
    ledger: PaymentLedgerService
    webhooks: WebhookService
    refunds: RefundService
    reconciliation: ReconciliationService
    relay: OutboxRelay

    async def aclose(self) -> None:
        await self.providers.aclose()
        await self.publisher.close()
        close_orders = getattr(self.orders, "aclose", None)
        if close_orders is not None:
            await close_orders()
        logger.info("payment_container_closed")


def build_container(
    *,
    session_factory: Optional[Callable[[], AsyncSession]] = None,
    providers: Optional[ProviderRegistry] = None,
    publisher: Optional[EventPublisher] = None,
    orders: Optional[OrderGateway] = None,
    config: Optional[PaymentSettings] = None,
) -> PaymentContainer:
    config = config or payment_settings
    if providers is None:
        from infrastructure.external.payments import build_provider_registry

        providers = build_provider_registry(config)
    if publisher is None:
        from infrastructure.external.messaging import create_event_publisher, messaging_config_from_settings

        publisher = create_event_publisher(messaging_config_from_settings(settings.messaging))
    if orders is None:
        from infrastructure.external.api_clients import OrderServiceClient

        orders = OrderServiceClient(settings.order_service)

    uow_factory: UnitOfWorkFactory = partial(SQLAlchemyUnitOfWork, session_factory)
    call_timeout = config.timeouts.total
    ledger = PaymentLedgerService(
        uow_factory,
        providers,
        default_provider=config.default_provider,
        call_timeout=call_timeout,
    )
    refunds = RefundService(uow_factory, providers, call_timeout=call_timeout)
    webhooks = WebhookService(
        uow_factory,
        providers,
        ledger,
        verify_timeout=call_timeout,
        ip_allowlist=config.webhook.ip_allowlist,
    )
    reconciliation = ReconciliationService(uow_factory, providers, ledger, refunds, call_timeout=call_timeout)
    relay = OutboxRelay(uow_factory, publisher)
    logger.info("payment_container_built", providers=providers.names, default_provider=config.default_provider)
    return PaymentContainer(
        uow_factory=uow_factory,
        providers=providers,
        publisher=publisher,
        orders=orders,
        ledger=ledger,
        webhooks=webhooks,
        refunds=refunds,
        reconciliation=reconciliation,
        relay=relay,
    )
