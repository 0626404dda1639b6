"""Application-level helpers shared by services that call payment providers."""
from __future__ import annotations

import asyncio
import hashlib
from contextlib import asynccontextmanager
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from domain.common.unit_of_work import AbstractUnitOfWork
from domain.payment.exceptions import PaymentRecoverableError

T = TypeVar("T")

UnitOfWorkFactory = Callable[..., AbstractUnitOfWork]


async def call_provider(provider: str, operation: str, awaitable: Awaitable[T], timeout: float) -> T:
    """Bound a provider call; a timeout is retryable and never terminal."""
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        raise PaymentRecoverableError(
            f"{provider} {operation} timed out after {timeout}s",
            provider=provider,
            provider_code="timeout",
        ) from None


def stable_key(*parts: object) -> str:
    """Reproducible idempotency key from business identifiers (no timestamp)."""
    base = "|".join("" if p is None else str(p) for p in parts)
    return hashlib.sha256(base.encode("utf-8")).hexdigest()


@asynccontextmanager
async def uow_scope(
    factory: UnitOfWorkFactory,
    uow: Optional[AbstractUnitOfWork] = None,
    *,
    readonly: bool = False,
) -> AsyncIterator[AbstractUnitOfWork]:
    """Join the caller's unit of work when given, else open (and finish) a new one."""
    if uow is not None:
        yield uow
        return
    async with factory(readonly=readonly) as own:
        yield own
