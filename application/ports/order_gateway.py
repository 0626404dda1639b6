"""
Order service port. The Order aggregate is owned elsewhere; we only read it.
"""
from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from application.dtos.payments import Order


@runtime_checkable
class OrderGateway(Protocol):
    async def get_order(self, order_id: str) -> Optional[Order]:
        """Return the order snapshot, or None when the order does not exist."""
        ...
