import json
import os
from decimal import Decimal
from typing import Any, Optional

# Settings are read at import time; point them at throwaway backends first
os.environ["DATABASE__URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["MESSAGING__PROVIDER"] = "inmemory"
os.environ.setdefault("DEBUG", "true")

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from application.dtos.payments import (
    Order,
    OrderStatus,
    PaymentIntentResult,
    RefundResult,
    WebhookRequest,
)
from application.services.provider_registry import ProviderRegistry
from core.settings import PaymentSettings
from domain.payment.entity import PaymentStatus
from infrastructure.container import build_container
from infrastructure.database import create_tables
from infrastructure.external.messaging.factory import BrokerEventPublisher
from infrastructure.external.messaging.providers.memory.publisher import InMemoryPublisher
from infrastructure.external.messaging.serializers.json import JsonSerializer
from infrastructure.external.payments.base import BasePaymentClient


class ScriptedProvider(BasePaymentClient):
    """Provider double; tests queue the outcomes they want."""

    signature_headers = ("X-Test-Signature",)

    def __init__(self, name: str) -> None:
        super().__init__()
        self.name = name
        self.signature_ok = True
        self.create_error: Optional[Exception] = None
        self.create_keys: list[Optional[str]] = []
        self.refund_outcomes: list[Any] = []
        self.refund_calls: list[dict] = []
        self.status_answer: Any = None
        self._intents = 0

    async def create_payment_intent(self, order, *, amount, currency, idempotency_key=None):
        self.create_keys.append(idempotency_key)
        if self.create_error is not None:
            raise self.create_error
        self._intents += 1
        intent_id = f"pi_{self.name.lower()}_{order.id}_{self._intents}"
        return PaymentIntentResult(
            provider_intent_id=intent_id,
            client_secret=f"{intent_id}_secret",
            status="requires_payment_method",
        )

    async def verify_webhook(self, request: WebhookRequest) -> bool:
        return self.signature_ok

    async def refund_payment(self, transaction_id, amount, metadata):
        self.refund_calls.append({"transaction_id": transaction_id, "amount": amount, **metadata})
        outcome = self.refund_outcomes.pop(0) if self.refund_outcomes else None
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or RefundResult.succeeded(f"re_{len(self.refund_calls)}")

    async def query_payment_status(self, provider_intent_id):
        if isinstance(self.status_answer, Exception):
            raise self.status_answer
        return self.status_answer


class FakeOrderGateway:
    def __init__(self) -> None:
        self.orders: dict[str, Order] = {}

    def add(
        self,
        order_id: str = "ord-1",
        total: str = "100.00",
        currency: str = "USD",
        status: OrderStatus = OrderStatus.PENDING_PAYMENT,
        user_id: str = "user-1",
        booking_id: Optional[str] = None,
    ) -> Order:
        order = Order(
            id=order_id,
            total_amount=Decimal(total),
            currency=currency,
            status=status,
            user_id=user_id,
            booking_id=booking_id if booking_id is not None else f"bk-{order_id}",
        )
        self.orders[order_id] = order
        return order

    async def get_order(self, order_id: str) -> Optional[Order]:
        return self.orders.get(order_id)


@pytest.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await create_tables(bind=engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(bind=engine, expire_on_commit=False)


@pytest.fixture
def mock_provider():
    return ScriptedProvider("MOCK")


@pytest.fixture
def stripe_provider():
    return ScriptedProvider("STRIPE")


@pytest.fixture
def broker():
    return InMemoryPublisher(JsonSerializer())


@pytest.fixture
def orders():
    return FakeOrderGateway()


@pytest.fixture
def payment_config():
    return PaymentSettings(_env_file=None, default_provider="MOCK", enabled_providers=["MOCK", "STRIPE"])


@pytest.fixture
def container(session_factory, mock_provider, stripe_provider, broker, orders, payment_config):
    return build_container(
        session_factory=session_factory,
        providers=ProviderRegistry([mock_provider, stripe_provider]),
        publisher=BrokerEventPublisher(broker),
        orders=orders,
        config=payment_config,
    )


@pytest.fixture
def webhook_body():
    def _body(event_id: str, event_type: str, intent_id: Optional[str] = None, **extra: Any) -> bytes:
        data = {"id": event_id, "type": event_type}
        if intent_id is not None:
            data["payment_intent_id"] = intent_id
        data.update(extra)
        return json.dumps(data).encode("utf-8")

    return _body


@pytest.fixture
def paid_payment(container, orders):
    """Create an order, open a MOCK intent for it and settle it as succeeded."""

    async def _paid(order_id: str = "ord-paid", total: str = "100.00", **order_kwargs: Any):
        order = orders.add(order_id, total=total, **order_kwargs)
        payment = await container.ledger.create_payment_intent(order)
        payment, _ = await container.ledger.update_payment_status(
            payment.id, PaymentStatus.SUCCEEDED, transaction_id=f"txn_{order_id}"
        )
        return payment

    return _paid
