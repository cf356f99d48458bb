"""Explicit wiring of the payment core from settings.

Nothing here is discovered implicitly: the gateway, strategies, store and
monitoring sinks are built in one place and handed to `PaymentService`.
"""

import httpx

from paycore.common.config import PaymentSettings
from paycore.common.db import SessionLocal, engine, init_schema
from paycore.common.errors import ConfigurationError
from paycore.common.metrics import CompositeMetricsSink, LoggingMetricsSink, PrometheusMetricsSink
from paycore.services.gateway.schemas import GatewayConfig, ResponseCodePolicy
from paycore.services.gateway.service import VNPayGateway
from paycore.services.payments.methods import PaymentMethodRegistry
from paycore.services.payments.repository import (
    InMemoryTransactionRepository,
    SqlTransactionRepository,
    TransactionRepository,
)
from paycore.services.payments.service import PaymentService
from paycore.services.payments.store import TransactionStore
from paycore.services.payments.strategies import build_strategies


def build_repository(settings: PaymentSettings) -> TransactionRepository:
    if settings.transaction_store == "memory":
        return InMemoryTransactionRepository()
    if settings.transaction_store == "sql":
        init_schema(engine)
        return SqlTransactionRepository(SessionLocal)
    raise ConfigurationError(f"unknown transaction store {settings.transaction_store!r}")


def build_payment_service(
    settings: PaymentSettings,
    http_client: httpx.Client | None = None,
    repository: TransactionRepository | None = None,
    methods: PaymentMethodRegistry | None = None,
) -> PaymentService:
    """Assemble a ready-to-use `PaymentService`."""

    gateway = VNPayGateway(
        GatewayConfig.from_settings(settings),
        http_client=http_client,
        service_name=settings.service_name,
    )
    return PaymentService(
        gateway=gateway,
        strategies=build_strategies(gateway),
        store=TransactionStore(repository or build_repository(settings)),
        methods=methods or PaymentMethodRegistry(),
        policy=ResponseCodePolicy.from_settings(settings),
        metrics=CompositeMetricsSink(PrometheusMetricsSink(settings.service_name), LoggingMetricsSink()),
        callback_max_age_seconds=settings.callback_max_age_seconds,
        service_name=settings.service_name,
    )
