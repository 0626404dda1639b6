"""
Order service client implementing the OrderGateway port.
"""
from __future__ import annotations

from typing import Optional

import httpx
from pydantic import ValidationError

from application.dtos.payments import Order
from core.config import OrderServiceSettings
from core.logging_config import get_logger
from domain.common.exceptions import BusinessException
from shared.codes import BusinessCode

from .base import APIError, BaseAPIClient, NotFoundError


logger = get_logger(__name__)


class OrderServiceUnavailable(BusinessException):
    def __init__(self, order_id: str, reason: str):
        super().__init__(
            code=BusinessCode.SERVICE_UNAVAILABLE,
            message=f"Order service unavailable: {reason}",
            error_type="OrderServiceUnavailable",
            details={"order_id": order_id},
        )


class OrderServiceClient(BaseAPIClient):
    """Reads order snapshots from ``GET /orders/{id}``."""

    def __init__(self, settings: OrderServiceSettings, *, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(
            base_url=settings.base_url,
            timeout=settings.timeout,
            max_retries=settings.retries,
            retry_delay=0.2,
            auth_token=settings.token,
            transport=transport,
        )

    async def get_order(self, order_id: str) -> Optional[Order]:
        try:
            response = await self.get(f"orders/{order_id}")
        except NotFoundError:
            return None
        except APIError as exc:
            logger.warning("order_lookup_failed", order_id=order_id, error=str(exc))
            raise OrderServiceUnavailable(order_id, exc.message) from exc

        data = response.json()
        # Some deployments wrap the body in {"data": {...}}
        if isinstance(data, dict) and isinstance(data.get("data"), dict):
            data = data["data"]
        try:
            return Order.model_validate(data)
        except ValidationError as exc:
            logger.warning("order_payload_invalid", order_id=order_id, error=str(exc))
            raise OrderServiceUnavailable(order_id, "malformed order payload") from exc

    async def aclose(self) -> None:
        await self.close()
