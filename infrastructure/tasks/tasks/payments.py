"""Payment background jobs: outbox relay, reconciliation and refund execution.

Each task runs its coroutine with ``asyncio.run`` on a fresh, unpooled engine
so no connection outlives the event loop it was opened on. Only
PaymentRecoverableError is retried; business errors are logged and dropped.
"""
from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Any, Awaitable, Callable, TypeVar

from celery import shared_task
from sqlalchemy.ext.asyncio import async_sessionmaker

from application.dtos.payments import BookingRefundRequested
from core.logging_config import get_logger
from core.settings import payment_settings
from domain.common.exceptions import BusinessException
from domain.payment.exceptions import PaymentRecoverableError
from infrastructure.container import PaymentContainer, build_container
from infrastructure.database import create_task_engine

from ..utils.base_task import BaseTask

logger = get_logger(__name__)

T = TypeVar("T")


def run_with_container(fn: Callable[[PaymentContainer], Awaitable[T]]) -> T:
    async def _run() -> T:
        engine = create_task_engine()
        container = build_container(session_factory=async_sessionmaker(bind=engine, expire_on_commit=False))
        try:
            return await fn(container)
        finally:
            await container.aclose()
            await engine.dispose()

    return asyncio.run(_run())


def _refund_summary(refund: Any) -> dict:
    return {"refund_id": refund.id, "status": refund.status.value, "attempt": refund.attempt}


@shared_task(name="payments.relay_outbox", bind=True, base=BaseTask)
def relay_outbox(self, batch_size: int | None = None) -> int:
    size = batch_size or payment_settings.outbox.batch_size
    return run_with_container(lambda c: c.relay.relay_pending(size))


@shared_task(name="payments.reconcile", bind=True, base=BaseTask)
def reconcile(self) -> dict:
    cfg = payment_settings.reconciliation

    async def _run(c: PaymentContainer) -> dict:
        payments = await c.reconciliation.reconcile_pending_payments(
            timedelta(seconds=cfg.payment_age_seconds), cfg.batch_limit
        )
        refunds = await c.reconciliation.resume_pending_refunds(
            timedelta(seconds=cfg.refund_age_seconds), cfg.batch_limit
        )
        return {"payments": payments, "refunds": refunds}

    result = run_with_container(_run)
    logger.info("reconciliation_finished", **result)
    return result


@shared_task(name="payments.process_refund", bind=True, base=BaseTask, max_retries=5, default_retry_delay=30)
def process_refund(self, refund_id: int) -> dict | None:
    try:
        refund = run_with_container(lambda c: c.refunds.process_refund(refund_id))
    except PaymentRecoverableError as exc:
        logger.warning("refund_task_retry", refund_id=refund_id, error=exc.message, retries=self.request.retries)
        raise self.retry(exc=exc)
    except BusinessException as exc:
        logger.warning("refund_task_rejected", refund_id=refund_id, code=int(exc.code), error=exc.message)
        return None
    return _refund_summary(refund)


@shared_task(name="payments.process_booking_refund", bind=True, base=BaseTask, max_retries=5, default_retry_delay=30)
def process_booking_refund(self, payload: dict) -> dict | None:
    """Consume an upstream "refund requested" trigger, then execute the refund."""
    request = BookingRefundRequested.model_validate(payload)

    async def _run(c: PaymentContainer):
        refund = await c.refunds.process_booking_refund(request)
        return await c.refunds.process_refund(refund.id)

    try:
        refund = run_with_container(_run)
    except PaymentRecoverableError as exc:
        # The PENDING refund exists; reconciliation resumes it with the same key
        logger.warning("booking_refund_task_transient", booking_id=request.booking_id, error=exc.message)
        return None
    except BusinessException as exc:
        logger.warning("booking_refund_task_rejected", booking_id=request.booking_id, error=exc.message)
        return None
    return _refund_summary(refund)


@shared_task(name="payments.retry_refund", bind=True, base=BaseTask, max_retries=5, default_retry_delay=30)
def retry_refund(self, refund_id: int) -> dict | None:
    try:
        refund = run_with_container(lambda c: c.refunds.retry_failed_refund(refund_id))
    except PaymentRecoverableError as exc:
        # retry() already moved the refund back to PENDING; finish it via process_refund
        logger.warning("refund_retry_task_transient", refund_id=refund_id, error=exc.message)
        process_refund.apply_async(args=[refund_id], countdown=30)
        return None
    except BusinessException as exc:
        logger.warning("refund_retry_task_rejected", refund_id=refund_id, error=exc.message)
        return None
    return _refund_summary(refund)
