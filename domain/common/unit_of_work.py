"""Unit of Work 抽象定义"""
from __future__ import annotations

from abc import ABC, abstractmethod

from domain.payment.repository import (
    OutboxRepository,
    PaymentRepository,
    RefundRepository,
    WebhookEventRepository,
)


class AbstractUnitOfWork(ABC):
    """应用层事务边界控制抽象

    Exiting the context commits on success and rolls back on error, so
    a state change and its outbox rows land together or not at all.
    """

    payment_repository: PaymentRepository
    refund_repository: RefundRepository
    webhook_repository: WebhookEventRepository
    outbox_repository: OutboxRepository

    def __init__(self, *, readonly: bool = False) -> None:
        self._committed = False
        self._readonly = readonly
        self.payment_repository = None  # type: ignore[assignment]
        self.refund_repository = None  # type: ignore[assignment]
        self.webhook_repository = None  # type: ignore[assignment]
        self.outbox_repository = None  # type: ignore[assignment]

    async def __aenter__(self) -> "AbstractUnitOfWork":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc:
            await self.rollback()
        else:
            # 只在非只读且未显式提交时自动提交
            if not self._readonly and not self._committed:
                await self.commit()

    @abstractmethod
    async def commit(self) -> None:
        """提交事务"""
        ...

    @abstractmethod
    async def rollback(self) -> None:
        """回滚事务"""
        ...
