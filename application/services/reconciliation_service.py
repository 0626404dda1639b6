"""
Scheduled reconciliation for records left non-terminal by transient failures.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

from application.services.payment_service import PaymentLedgerService
from application.services.provider_registry import ProviderRegistry
from application.services.refund_service import RefundService
from application.utils.provider_calls import UnitOfWorkFactory, call_provider, uow_scope
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException
from domain.payment.entity import PaymentStatus, RefundStatus
from domain.payment.exceptions import PaymentRecoverableError


logger = get_logger(__name__)


class ReconciliationService:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        providers: ProviderRegistry,
        ledger: PaymentLedgerService,
        refunds: RefundService,
        *,
        call_timeout: float,
    ) -> None:
        self._uow_factory = uow_factory
        self._providers = providers
        self._ledger = ledger
        self._refunds = refunds
        self._call_timeout = call_timeout

    async def reconcile_pending_payments(self, older_than: timedelta, limit: int = 50) -> int:
        """Poll providers for stuck PENDING payments; returns how many were settled."""
        cutoff = datetime.now(timezone.utc) - older_than
        async with uow_scope(self._uow_factory, readonly=True) as uow:
            payments = await uow.payment_repository.list_pending_older_than(cutoff, limit)

        settled = 0
        for payment in payments:
            provider = self._providers.get(payment.provider)
            if provider is None or not payment.provider_intent_id:
                continue
            try:
                status = await call_provider(
                    provider.name,
                    "query_payment_status",
                    provider.query_payment_status(payment.provider_intent_id),
                    self._call_timeout,
                )
            except PaymentRecoverableError as exc:
                logger.warning("reconcile_payment_transient", payment_id=payment.id, error=exc.message)
                continue
            if status is None or status is PaymentStatus.PENDING:
                continue
            reason = None if status is PaymentStatus.SUCCEEDED else "reconciled from provider status"
            try:
                _, changed = await self._ledger.update_payment_status(payment.id, status, failure_reason=reason)
            except BusinessException as exc:
                logger.warning("reconcile_payment_rejected", payment_id=payment.id, error=exc.message)
                continue
            if changed:
                settled += 1
                logger.info("payment_reconciled", payment_id=payment.id, status=status.value)
        return settled

    async def resume_pending_refunds(self, older_than: timedelta, limit: int = 50) -> int:
        """Re-run PENDING refunds with their current idempotency key."""
        cutoff = datetime.now(timezone.utc) - older_than
        async with uow_scope(self._uow_factory, readonly=True) as uow:
            refunds = await uow.refund_repository.list_by_status_older_than(RefundStatus.PENDING, cutoff, limit)

        settled = 0
        for refund in refunds:
            try:
                result = await self._refunds.process_refund(refund.id)
            except PaymentRecoverableError as exc:
                logger.warning("reconcile_refund_transient", refund_id=refund.id, error=exc.message)
                continue
            except BusinessException as exc:
                logger.warning("reconcile_refund_rejected", refund_id=refund.id, error=exc.message)
                continue
            if result.status is not RefundStatus.PENDING:
                settled += 1
        return settled
