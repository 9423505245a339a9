"""
API依赖项 - 调用方身份与应用服务装配

会话工厂、处理方网关、领域事件发布器在应用启动时放入 app.state，
这里按请求组装应用服务。
"""
from functools import partial
from typing import Mapping, Optional

from fastapi import Depends, Header, Request

from application.ports.event_publisher import DomainEventPublisher
from application.ports.payment_gateway import ProcessorGateway
from application.services.common import UowFactory
from application.services.payment_intent_service import PaymentIntentManager
from application.services.payment_method_service import PaymentMethodRegistry
from application.services.refund_service import RefundProcessor
from application.services.transaction_service import TransactionRecorder
from application.services.webhook_service import WebhookIngester
from core.config import settings
from core.exceptions import UnauthorizedException
from core.settings import payment_settings
from domain.common.exceptions import PaymentError
from infrastructure.unit_of_work import SQLAlchemyUnitOfWork
from shared.codes.payment_codes import PaymentErrorKind


async def get_current_user_id(
    user_id: Optional[str] = Header(default=None, alias=settings.USER_ID_HEADER),
) -> str:
    """上游网关已完成认证，这里只读取透传的用户标识"""
    if not user_id or not user_id.strip():
        raise UnauthorizedException(f"Missing {settings.USER_ID_HEADER} header")
    return user_id.strip()


def get_uow_factory(request: Request) -> UowFactory:
    return partial(SQLAlchemyUnitOfWork, request.app.state.session_factory)


def get_payment_gateways(request: Request) -> Mapping[str, ProcessorGateway]:
    return getattr(request.app.state, "payment_gateways", None) or {}


def get_payment_gateway(
    gateways: Mapping[str, ProcessorGateway] = Depends(get_payment_gateways),
) -> ProcessorGateway:
    gateway = gateways.get(payment_settings.default_provider)
    if gateway is None:
        raise PaymentError(
            PaymentErrorKind.PROCESSOR_UNAVAILABLE,
            "Payment processor is not configured",
            details={"provider": payment_settings.default_provider},
        )
    return gateway


def get_event_publisher(request: Request) -> Optional[DomainEventPublisher]:
    return getattr(request.app.state, "event_publisher", None)


async def get_intent_manager(
    uow_factory: UowFactory = Depends(get_uow_factory),
    gateway: ProcessorGateway = Depends(get_payment_gateway),
    publisher: Optional[DomainEventPublisher] = Depends(get_event_publisher),
) -> PaymentIntentManager:
    return PaymentIntentManager(uow_factory, gateway, publisher)


async def get_transaction_recorder(
    uow_factory: UowFactory = Depends(get_uow_factory),
    gateway: ProcessorGateway = Depends(get_payment_gateway),
    intents: PaymentIntentManager = Depends(get_intent_manager),
    publisher: Optional[DomainEventPublisher] = Depends(get_event_publisher),
) -> TransactionRecorder:
    return TransactionRecorder(uow_factory, gateway, intents, publisher)


async def get_refund_processor(
    uow_factory: UowFactory = Depends(get_uow_factory),
    gateway: ProcessorGateway = Depends(get_payment_gateway),
    transactions: TransactionRecorder = Depends(get_transaction_recorder),
    publisher: Optional[DomainEventPublisher] = Depends(get_event_publisher),
) -> RefundProcessor:
    return RefundProcessor(uow_factory, gateway, transactions, publisher)


async def get_payment_method_registry(
    uow_factory: UowFactory = Depends(get_uow_factory),
    gateways: Mapping[str, ProcessorGateway] = Depends(get_payment_gateways),
) -> PaymentMethodRegistry:
    return PaymentMethodRegistry(uow_factory, gateways)


async def get_webhook_ingester(
    uow_factory: UowFactory = Depends(get_uow_factory),
    gateways: Mapping[str, ProcessorGateway] = Depends(get_payment_gateways),
    intents: PaymentIntentManager = Depends(get_intent_manager),
    transactions: TransactionRecorder = Depends(get_transaction_recorder),
    refunds: RefundProcessor = Depends(get_refund_processor),
    publisher: Optional[DomainEventPublisher] = Depends(get_event_publisher),
) -> WebhookIngester:
    return WebhookIngester(uow_factory, gateways, intents, transactions, refunds, publisher)
