"""
支付仓储接口 - 定义支付数据访问的抽象接口
"""
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from .entity import Payment, PaymentStatus, Refund, RefundStatus, WebhookEvent, WebhookStatus
from .events import OutboxMessage


class PaymentRepository(ABC):
    """支付仓储抽象接口 - 只定义能做什么，不管怎么做"""

    @abstractmethod
    async def create(self, payment: Payment) -> Payment:
        """Insert; raises PaymentAlreadyPendingException when the order already has a pending payment."""

    @abstractmethod
    async def get_by_id(self, payment_id: int) -> Optional[Payment]:
        pass

    @abstractmethod
    async def get_by_provider_intent_id(self, provider_intent_id: str) -> Optional[Payment]:
        pass

    @abstractmethod
    async def get_by_booking_id(self, booking_id: str) -> Optional[Payment]:
        """Most recent succeeded payment for a booking, else the most recent one."""

    @abstractmethod
    async def list_by_order(self, order_id: str) -> List[Payment]:
        pass

    @abstractmethod
    async def list_pending_older_than(self, cutoff: datetime, limit: int = 100) -> List[Payment]:
        pass

    @abstractmethod
    async def count_by_status(self) -> dict[PaymentStatus, int]:
        pass

    @abstractmethod
    async def succeeded_amount_by_currency(self) -> dict[str, Decimal]:
        """Sum of SUCCEEDED payment amounts, keyed by currency."""

    @abstractmethod
    async def update(self, payment: Payment) -> Payment:
        """Persist a status change; only a row still PENDING is written, else IllegalPaymentTransitionException."""

    @abstractmethod
    async def add_refunded_amount(self, payment_id: int, amount: Decimal) -> Payment:
        """Atomically add a completed refund to a SUCCEEDED payment."""


class RefundRepository(ABC):
    """退款仓储抽象接口"""

    @abstractmethod
    async def create(self, refund: Refund) -> Refund:
        """Insert; raises RefundAlreadyPendingException when the payment already has a pending refund."""

    @abstractmethod
    async def get_by_id(self, refund_id: int) -> Optional[Refund]:
        pass

    @abstractmethod
    async def get_pending_for_payment(self, payment_id: int) -> Optional[Refund]:
        pass

    @abstractmethod
    async def list_by_payment(self, payment_id: int) -> List[Refund]:
        pass

    @abstractmethod
    async def list_by_user(self, user_id: str) -> List[Refund]:
        """Refunds of payments owned by the user."""

    @abstractmethod
    async def list_by_status_older_than(
        self, status: RefundStatus, cutoff: datetime, limit: int = 100
    ) -> List[Refund]:
        pass

    @abstractmethod
    async def update(self, refund: Refund) -> Refund:
        """Persist a status change from its single allowed source status; the pending-per-payment guard applies here too."""


class WebhookEventRepository(ABC):

    @abstractmethod
    async def create(self, event: WebhookEvent) -> WebhookEvent:
        """Insert; raises DuplicateWebhookException on (provider, webhook_id) conflict."""

    @abstractmethod
    async def get_by_provider_and_webhook_id(self, provider: str, webhook_id: str) -> Optional[WebhookEvent]:
        pass

    @abstractmethod
    async def update(self, event: WebhookEvent) -> WebhookEvent:
        pass

    @abstractmethod
    async def count_by_status(self) -> dict[WebhookStatus, int]:
        pass

    @abstractmethod
    async def count_by_provider_and_status(self) -> dict[str, dict[WebhookStatus, int]]:
        pass


class OutboxRepository(ABC):

    @abstractmethod
    async def add(self, message: OutboxMessage) -> OutboxMessage:
        pass

    @abstractmethod
    async def list_unpublished(self, limit: int = 100) -> List[OutboxMessage]:
        """Oldest first."""

    @abstractmethod
    async def update(self, message: OutboxMessage) -> OutboxMessage:
        pass
