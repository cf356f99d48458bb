"""Per-method request shaping on top of the VNPay gateway adapter.

Strategies are a closed set of variants keyed by `PaymentMethodType`.
`build_strategies` refuses to start when a method type has no variant.
"""

from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from typing import Union

from paycore.common.errors import ConfigurationError, ValidationError
from paycore.common.logging import logger
from paycore.services.gateway.schemas import PaymentRedirect, RefundResponse
from paycore.services.gateway.service import INTERNATIONAL_CARD_CODE, VNPayGateway, normalize_bank_code
from paycore.services.payments.schemas import OrderSnapshot, PaymentMethod, PaymentMethodType


def _require_gateway(gateway: VNPayGateway | None, strategy: str) -> VNPayGateway:
    if gateway is None:
        raise ConfigurationError(f"{strategy} requires a gateway adapter")
    return gateway


def _prepare(
    gateway: VNPayGateway,
    order: OrderSnapshot,
    method: PaymentMethod,
    client_params: Mapping[str, str],
    created_at: datetime | None,
) -> dict[str, str]:
    params = gateway.prepare_payment_parameters(
        order,
        method,
        client_ip=client_params.get("ip_addr") or "127.0.0.1",
        created_at=created_at,
    )
    if client_params.get("locale") in ("vn", "en"):
        params["vnp_Locale"] = client_params["locale"]
    return params


def _refund(
    gateway: VNPayGateway,
    original_txn_ref: str,
    order: OrderSnapshot,
    amount: Decimal,
    reason: str,
    transaction_no: str | None,
    transaction_date: datetime | None,
) -> RefundResponse:
    if order is None:
        raise ValidationError("Order is required for a refund")
    params = gateway.prepare_refund_parameters(
        order,
        original_txn_ref,
        amount,
        reason,
        transaction_no=transaction_no,
        transaction_date=transaction_date,
    )
    return gateway.process_refund(params)


class CreditCardStrategy:
    """International cards; no mandatory client parameters."""

    method_type = PaymentMethodType.CREDIT_CARD

    def __init__(self, gateway: VNPayGateway | None) -> None:
        self.gateway = _require_gateway(gateway, "CreditCardStrategy")

    def process_payment(
        self,
        order: OrderSnapshot,
        client_params: Mapping[str, str] | None = None,
        method: PaymentMethod | None = None,
        created_at: datetime | None = None,
    ) -> PaymentRedirect:
        if order is None:
            raise ValidationError("Order cannot be null for credit card payment")
        client_params = client_params or {}
        method = method or PaymentMethod(payment_method_id="one-off", method_type=self.method_type)
        params = _prepare(self.gateway, order, method, client_params, created_at)
        params["vnp_BankCode"] = INTERNATIONAL_CARD_CODE
        logger.info("credit card payment prepared order_id=%s", order.order_id)
        return self.gateway.process_payment(params)

    def process_refund(
        self,
        original_txn_ref: str,
        order: OrderSnapshot,
        amount: Decimal,
        reason: str,
        transaction_no: str | None = None,
        transaction_date: datetime | None = None,
    ) -> RefundResponse:
        return _refund(self.gateway, original_txn_ref, order, amount, reason, transaction_no, transaction_date)


class DomesticCardStrategy:
    """Domestic ATM/debit cards; the client must choose a bank."""

    method_type = PaymentMethodType.DOMESTIC_DEBIT_CARD

    def __init__(self, gateway: VNPayGateway | None) -> None:
        self.gateway = _require_gateway(gateway, "DomesticCardStrategy")

    def process_payment(
        self,
        order: OrderSnapshot,
        client_params: Mapping[str, str] | None = None,
        method: PaymentMethod | None = None,
        created_at: datetime | None = None,
    ) -> PaymentRedirect:
        if order is None:
            raise ValidationError("Order cannot be null for domestic card payment")
        client_params = client_params or {}
        raw_bank_code = client_params.get("bank_code")
        if raw_bank_code is None or not str(raw_bank_code).strip():
            raise ValidationError("Parameter 'bank_code' is required for domestic card payments")
        bank_code = normalize_bank_code(raw_bank_code)
        if bank_code is None:
            raise ValidationError("Parameter 'bank_code' must be 2-20 letters or digits")

        method = method or PaymentMethod(payment_method_id="one-off", method_type=self.method_type)
        params = _prepare(self.gateway, order, method, client_params, created_at)
        params["vnp_BankCode"] = bank_code
        logger.info("domestic card payment prepared order_id=%s bank_code=%s", order.order_id, bank_code)
        return self.gateway.process_payment(params)

    def process_refund(
        self,
        original_txn_ref: str,
        order: OrderSnapshot,
        amount: Decimal,
        reason: str,
        transaction_no: str | None = None,
        transaction_date: datetime | None = None,
    ) -> RefundResponse:
        return _refund(self.gateway, original_txn_ref, order, amount, reason, transaction_no, transaction_date)


PaymentStrategy = Union[CreditCardStrategy, DomesticCardStrategy]

STRATEGY_VARIANTS: dict[PaymentMethodType, type[PaymentStrategy]] = {
    PaymentMethodType.CREDIT_CARD: CreditCardStrategy,
    PaymentMethodType.DOMESTIC_DEBIT_CARD: DomesticCardStrategy,
}


class StrategySet:
    """Immutable method-type → strategy mapping, exhaustive over method types."""

    def __init__(self, strategies: Mapping[PaymentMethodType, PaymentStrategy]) -> None:
        missing = set(PaymentMethodType) - set(strategies)
        if missing:
            names = ", ".join(sorted(m.value for m in missing))
            raise ConfigurationError(f"no payment strategy configured for: {names}")
        for method_type, strategy in strategies.items():
            if strategy.method_type is not method_type:
                raise ConfigurationError(
                    f"strategy {type(strategy).__name__} registered under {method_type.value}"
                )
        self._strategies = dict(strategies)

    def select(self, method_type: PaymentMethodType | str) -> PaymentStrategy:
        try:
            return self._strategies[PaymentMethodType(method_type)]
        except (KeyError, ValueError) as exc:
            raise ConfigurationError(f"unsupported payment method type {method_type!r}") from exc


def build_strategies(gateway: VNPayGateway | None) -> StrategySet:
    return StrategySet({method_type: variant(gateway) for method_type, variant in STRATEGY_VARIANTS.items()})
