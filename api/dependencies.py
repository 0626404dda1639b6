"""
API依赖项 - 从应用状态中取出支付服务
"""
from fastapi import Depends, Request

from application.ports.order_gateway import OrderGateway
from application.services.payment_service import PaymentLedgerService
from application.services.refund_service import RefundService
from application.services.webhook_service import WebhookService
from infrastructure.container import PaymentContainer


async def get_container(request: Request) -> PaymentContainer:
    """lifespan 中构建的组合根；测试通过 dependency_overrides 替换"""
    return request.app.state.container


async def get_ledger_service(container: PaymentContainer = Depends(get_container)) -> PaymentLedgerService:
    return container.ledger


async def get_webhook_service(container: PaymentContainer = Depends(get_container)) -> WebhookService:
    return container.webhooks


async def get_refund_service(container: PaymentContainer = Depends(get_container)) -> RefundService:
    return container.refunds


async def get_order_gateway(container: PaymentContainer = Depends(get_container)) -> OrderGateway:
    return container.orders
