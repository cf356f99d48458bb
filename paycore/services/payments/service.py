"""Payment orchestration.

Selects a strategy per payment method, records transactions, and applies
gateway callbacks and status queries to them. This service is the only writer
of transaction state; every write goes through the store's per-key lock.
"""

import json
from collections.abc import Callable, Mapping
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from time import perf_counter
from uuid import uuid4

from paycore.common.errors import (
    AmountMismatchError,
    ConfigurationError,
    GatewayError,
    NotFoundError,
    PaymentError,
    PaymentInProgressError,
    SecurityViolation,
    ValidationError,
)
from paycore.common.logging import bind_context, logger
from paycore.common.metrics import LoggingMetricsSink, MetricsSink, MonitoringEvent, callback_duplicates_total
from paycore.common.state_machine import TransactionStatus
from paycore.services.gateway.schemas import GatewayPayload, ResponseCodePolicy
from paycore.services.gateway.service import VNPayGateway, parse_gateway_date, sanitize_text, to_gateway_amount
from paycore.services.payments.methods import PaymentMethodRegistry
from paycore.services.payments.schemas import OrderSnapshot, PaymentTransaction, TransactionType
from paycore.services.payments.store import TransactionStore
from paycore.services.payments.strategies import StrategySet


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentService:
    """Owns the payment transaction state machine."""

    def __init__(
        self,
        gateway: VNPayGateway,
        strategies: StrategySet,
        store: TransactionStore,
        methods: PaymentMethodRegistry,
        policy: ResponseCodePolicy | None = None,
        metrics: MetricsSink | None = None,
        clock: Callable[[], datetime] | None = None,
        callback_max_age_seconds: int = 86400,
        service_name: str = "paycore",
    ) -> None:
        for name, dependency in (("gateway", gateway), ("strategies", strategies), ("store", store), ("methods", methods)):
            if dependency is None:
                raise ConfigurationError(f"PaymentService requires {name}")
        self.gateway = gateway
        self.strategies = strategies
        self.store = store
        self.methods = methods
        self.policy = policy or ResponseCodePolicy()
        self.metrics = metrics or LoggingMetricsSink()
        self.clock = clock or _utcnow
        self.callback_max_age_seconds = callback_max_age_seconds
        self.service_name = service_name

    @contextmanager
    def _monitored(self, operation: str, **fields):
        """Emit one monitoring event for the wrapped operation.

        The body may update the yielded dict; setting `emit` to False skips
        the event. Sink failures are logged and never propagate.
        """

        started = perf_counter()
        event = dict(fields)
        success = False
        try:
            yield event
            success = event.pop("success", True)
        except PaymentError as exc:
            event["error_code"] = exc.code
            raise
        finally:
            if event.pop("emit", True):
                event.pop("success", None)
                try:
                    self.metrics.emit(
                        MonitoringEvent(
                            operation=operation,
                            duration_seconds=perf_counter() - started,
                            success=success,
                            **event,
                        )
                    )
                except Exception as exc:
                    logger.warning("monitoring_emit_failed operation=%s error=%s", operation, exc)

    @staticmethod
    def _validate_order(order: OrderSnapshot | None) -> None:
        if order is None:
            raise ValidationError("Order is required")
        if not order.order_id or not order.order_id.strip():
            raise ValidationError("Order ID is required")
        if order.amount is None or order.amount <= 0:
            raise ValidationError("Payment amount must be greater than zero")

    def process_payment(
        self,
        order: OrderSnapshot | None,
        payment_method_id: str | None,
        client_params: Mapping[str, str] | None = None,
    ) -> PaymentTransaction:
        """Start a payment and return its PENDING_USER_ACTION transaction.

        A repeat call for an order whose payment is still pending with the
        same method and amount returns that transaction; any other overlapping
        attempt is rejected with PaymentInProgressError.
        """

        with self._monitored("payment.initiate") as event:
            self._validate_order(order)
            if not payment_method_id or not str(payment_method_id).strip():
                raise ValidationError("Payment method ID is required")
            event["order_id"] = order.order_id

            with bind_context(order_id=order.order_id):
                method = self.methods.get(payment_method_id)
                if method is None:
                    raise NotFoundError(f"Payment method not found: {payment_method_id}")
                strategy = self.strategies.select(method.method_type)

                with self.store.order_lock(order.order_id):
                    now = self.clock()
                    pending = self.store.pending_for_order(order.order_id, now)
                    if pending is not None:
                        if pending.payment_method_id == method.payment_method_id and pending.amount == order.amount:
                            logger.info("payment pending reused transaction_id=%s", pending.transaction_id)
                            event.update(transaction_id=pending.transaction_id, status=pending.status.value)
                            return pending
                        raise PaymentInProgressError(
                            f"Order {order.order_id} already has a pending payment {pending.transaction_id}",
                            transaction_id=pending.transaction_id,
                        )

                    redirect = strategy.process_payment(order, client_params or {}, method=method, created_at=now)
                    transaction = PaymentTransaction(
                        transaction_id=f"PAY-{uuid4()}",
                        external_transaction_id=redirect.transaction_ref,
                        order_id=order.order_id,
                        amount=order.amount,
                        currency=order.currency,
                        transaction_type=TransactionType.PAYMENT,
                        status=TransactionStatus.PENDING_USER_ACTION,
                        payment_method_id=method.payment_method_id,
                        raw_gateway_response=json.dumps(
                            {
                                "paymentUrl": redirect.payment_url,
                                "vnp_TxnRef": redirect.transaction_ref,
                                "vnp_ExpireDate": redirect.expires_at,
                            }
                        ),
                        expires_at=now + timedelta(minutes=self.gateway.config.expiry_minutes),
                        created_at=now,
                        updated_at=now,
                    )
                    self.store.save(transaction)

                self.methods.mark_used(method.payment_method_id)
                logger.info(
                    "payment initiated transaction_id=%s txn_ref=%s method_type=%s",
                    transaction.transaction_id,
                    transaction.external_transaction_id,
                    method.method_type.value,
                )
            event.update(transaction_id=transaction.transaction_id, status=transaction.status.value)
            return transaction

    @staticmethod
    def _callback_params(raw_response_payload: str | Mapping[str, object] | None) -> dict[str, str]:
        if raw_response_payload is None:
            raise SecurityViolation("callback carries no signed payload")
        return GatewayPayload.parse(raw_response_payload).raw

    def _reject_replay(self, payload: GatewayPayload) -> None:
        if self.callback_max_age_seconds <= 0 or not payload.pay_date:
            return
        try:
            paid_at = parse_gateway_date(payload.pay_date)
        except ValueError as exc:
            raise SecurityViolation(f"callback pay date {payload.pay_date!r} is not a gateway timestamp") from exc
        age = (self.clock() - paid_at).total_seconds()
        if age > self.callback_max_age_seconds:
            raise SecurityViolation(f"callback for {payload.transaction_ref} is stale ({int(age)}s old)")

    def update_transaction_status_from_callback(
        self,
        external_txn_id: str | None,
        response_code: str | None,
        gateway_txn_no: str | None,
        raw_response_payload: str | Mapping[str, object] | None,
    ) -> PaymentTransaction:
        """Apply a verified gateway callback to a known pending transaction.

        Callbacks for transactions that are already terminal return the stored
        record unchanged.
        """

        transaction, _ = self._apply_callback(external_txn_id, response_code, gateway_txn_no, raw_response_payload)
        return transaction

    def _apply_callback(
        self,
        external_txn_id: str | None,
        response_code: str | None,
        gateway_txn_no: str | None,
        raw_response_payload: str | Mapping[str, object] | None,
    ) -> tuple[PaymentTransaction, bool]:
        with self._monitored("payment.callback", transaction_id=external_txn_id) as event:
            if not external_txn_id or not str(external_txn_id).strip():
                raise ValidationError("Gateway transaction reference is required")
            if not response_code or not str(response_code).strip():
                raise ValidationError("Response code is required")

            with bind_context(transaction_id=external_txn_id):
                params = self._callback_params(raw_response_payload)
                if not self.gateway.validate_response_signature(params, source="callback"):
                    raise SecurityViolation("callback signature is missing or invalid")
                payload = GatewayPayload.parse(params)
                if (
                    payload.transaction_ref != external_txn_id
                    or payload.response_code != response_code
                    or (gateway_txn_no and payload.transaction_no != gateway_txn_no)
                ):
                    logger.warning("callback arguments differ from signed payload txn_ref=%s", payload.transaction_ref)
                    raise SecurityViolation("callback arguments do not match the signed payload")
                self._reject_replay(payload)

                duplicate = False
                stored_payload = json.dumps(payload.raw, sort_keys=True)

                def apply(current: PaymentTransaction) -> PaymentTransaction:
                    nonlocal duplicate
                    if current.is_terminal:
                        duplicate = True
                        return current
                    expected_amount = to_gateway_amount(current.amount, self.gateway.config.amount_multiplier)
                    if payload.amount != expected_amount:
                        logger.warning(
                            "callback amount mismatch expected=%s received=%s", expected_amount, payload.amount
                        )
                        raise AmountMismatchError(f"callback amount {payload.amount} does not match {expected_amount}")
                    return current.model_copy(
                        update={
                            "status": self.policy.status_for(response_code),
                            "gateway_transaction_no": gateway_txn_no or payload.transaction_no,
                            "raw_gateway_response": stored_payload,
                            "updated_at": self.clock(),
                        }
                    )

                transaction = self.store.update(external_txn_id, apply)

            if duplicate:
                callback_duplicates_total.labels(service=self.service_name).inc()
                logger.info(
                    "duplicate callback ignored txn_ref=%s stored_status=%s received_code=%s",
                    external_txn_id,
                    transaction.status.value,
                    response_code,
                )
                event["emit"] = False
                return transaction, True

            logger.info(
                "callback applied txn_ref=%s response_code=%s status=%s",
                external_txn_id,
                response_code,
                transaction.status.value,
            )
            event.update(
                order_id=transaction.order_id,
                transaction_id=transaction.transaction_id,
                status=transaction.status.value,
            )
            return transaction, False

    def handle_callback(self, params: Mapping[str, object]) -> PaymentTransaction:
        """Entry point for a raw callback map (return URL or IPN query string)."""

        transaction, _ = self.acknowledge_callback(params)
        return transaction

    def acknowledge_callback(self, params: Mapping[str, object]) -> tuple[PaymentTransaction, bool]:
        """Like `handle_callback`, also reporting whether this call was a duplicate.

        The flag is decided inside the store update, so of two racing callbacks
        exactly one sees `False`.
        """

        return self._apply_callback(
            params.get("vnp_TxnRef"),
            params.get("vnp_ResponseCode"),
            params.get("vnp_TransactionNo"),
            params,
        )

    def _resolve(self, internal_txn_id: str | None, external_txn_id: str | None) -> PaymentTransaction:
        if not internal_txn_id and not external_txn_id:
            raise ValidationError("A transaction ID is required")
        transaction = None
        if internal_txn_id:
            transaction = self.store.get(internal_txn_id)
        elif external_txn_id:
            transaction = self.store.get_by_external_id(external_txn_id)
        if transaction is None:
            raise NotFoundError(f"Transaction not found: {internal_txn_id or external_txn_id}")
        if external_txn_id and transaction.external_transaction_id != external_txn_id:
            raise ValidationError("Internal and external transaction IDs refer to different transactions")
        return transaction

    def check_payment_status(
        self, internal_txn_id: str | None, external_txn_id: str | None = None
    ) -> PaymentTransaction:
        """Reconcile a pending transaction with the gateway.

        Terminal transactions are returned as stored, without a gateway call.
        """

        with self._monitored("payment.status_check", transaction_id=internal_txn_id) as event:
            transaction = self._resolve(internal_txn_id, external_txn_id)
            event.update(order_id=transaction.order_id, transaction_id=transaction.transaction_id)
            if transaction.is_terminal or transaction.transaction_type is TransactionType.REFUND:
                event["status"] = transaction.status.value
                return transaction

            with bind_context(order_id=transaction.order_id, transaction_id=transaction.transaction_id):
                try:
                    result = self.gateway.query_transaction_status(
                        transaction.external_transaction_id,
                        transaction.order_id,
                        transaction.created_at,
                    )
                except (NotFoundError, SecurityViolation):
                    raise
                except GatewayError as exc:
                    logger.warning("status check failed txn_ref=%s error=%s", transaction.external_transaction_id, exc)
                    raise type(exc)(f"Unable to check payment status: {exc}") from exc

                outcome = self.policy.status_for_query(result.transaction_status)
                if outcome is None:
                    logger.info(
                        "status check inconclusive txn_ref=%s gateway_status=%s",
                        transaction.external_transaction_id,
                        result.transaction_status,
                    )
                    event["status"] = transaction.status.value
                    return transaction

                expected_amount = to_gateway_amount(transaction.amount, self.gateway.config.amount_multiplier)
                if result.amount is not None and result.amount != expected_amount:
                    raise AmountMismatchError(f"gateway reports amount {result.amount}, expected {expected_amount}")

                updated = transaction.model_copy(
                    update={
                        "status": outcome,
                        "gateway_transaction_no": result.transaction_no or transaction.gateway_transaction_no,
                        "raw_gateway_response": result.raw_response,
                        "updated_at": self.clock(),
                    }
                )
                if self.store.compare_and_set(transaction, updated):
                    logger.info("status check applied txn_ref=%s status=%s", updated.external_transaction_id, outcome.value)
                    event["status"] = outcome.value
                    return updated

                # A callback won the race; the stored state stands.
                current = self.store.get(transaction.transaction_id)
                if current.status is not outcome:
                    logger.warning(
                        "status check conflicts with stored state txn_ref=%s stored=%s gateway=%s",
                        current.external_transaction_id,
                        current.status.value,
                        outcome.value,
                    )
                event["status"] = current.status.value
                return current

    def process_refund(
        self,
        original_txn_ref: str | None,
        order: OrderSnapshot | None,
        amount: Decimal | None,
        reason: str | None,
    ) -> PaymentTransaction:
        """Refund part or all of a successful payment as a new REFUND transaction.

        Gateway failures propagate and leave nothing behind; a gateway decline
        is recorded as a FAILED refund transaction.
        """

        with self._monitored("payment.refund") as event:
            self._validate_order(order)
            if not original_txn_ref or not str(original_txn_ref).strip():
                raise ValidationError("Original transaction reference is required")
            if amount is None or amount <= 0:
                raise ValidationError("Refund amount must be greater than zero")
            event["order_id"] = order.order_id

            original = self.store.get_by_external_id(original_txn_ref)
            if original is None:
                raise NotFoundError(f"Transaction not found with external ID: {original_txn_ref}")
            if original.transaction_type is not TransactionType.PAYMENT:
                raise ValidationError("Only payment transactions can be refunded")
            if original.order_id != order.order_id:
                raise ValidationError("Transaction does not belong to this order")
            if original.status is not TransactionStatus.SUCCESS:
                raise ValidationError(f"Only successful payments can be refunded (status {original.status.value})")
            method = self.methods.get(original.payment_method_id) if original.payment_method_id else None
            if method is None:
                raise NotFoundError(f"Payment method not found: {original.payment_method_id}")
            strategy = self.strategies.select(method.method_type)

            with bind_context(order_id=order.order_id, transaction_id=original.transaction_id):
                with self.store.transaction_lock(original.external_transaction_id):
                    refunded = sum(
                        (
                            t.amount
                            for t in self.store.list_for_order(order.order_id)
                            if t.transaction_type is TransactionType.REFUND
                            and t.status is TransactionStatus.SUCCESS
                            and t.parent_transaction_id == original.transaction_id
                        ),
                        Decimal(0),
                    )
                    if refunded + amount > original.amount:
                        raise ValidationError(
                            f"Refund of {amount} exceeds the refundable balance {original.amount - refunded}"
                        )

                    response = strategy.process_refund(
                        original.external_transaction_id,
                        order,
                        amount,
                        reason or "",
                        transaction_no=original.gateway_transaction_no,
                        transaction_date=original.created_at,
                    )
                    now = self.clock()
                    refund = PaymentTransaction(
                        transaction_id=f"REF-{uuid4()}",
                        external_transaction_id=response.request_id,
                        order_id=order.order_id,
                        amount=amount,
                        currency=original.currency,
                        transaction_type=TransactionType.REFUND,
                        status=TransactionStatus.SUCCESS if response.succeeded else TransactionStatus.FAILED,
                        payment_method_id=original.payment_method_id,
                        gateway_transaction_no=response.transaction_no,
                        raw_gateway_response=response.raw_response,
                        parent_transaction_id=original.transaction_id,
                        description=sanitize_text(f"Refund reason: {reason or ''}"),
                        created_at=now,
                        updated_at=now,
                    )
                    self.store.save(refund)

                logger.info(
                    "refund recorded refund_id=%s status=%s response_code=%s",
                    refund.transaction_id,
                    refund.status.value,
                    response.response_code,
                )
            event.update(
                transaction_id=refund.transaction_id,
                status=refund.status.value,
                success=response.succeeded,
            )
            return refund

    def get_transaction(self, transaction_id: str) -> PaymentTransaction:
        transaction = self.store.get(transaction_id)
        if transaction is None:
            raise NotFoundError(f"Transaction not found: {transaction_id}")
        return transaction

    def find_transaction_by_external_id(self, external_txn_id: str) -> PaymentTransaction:
        transaction = self.store.get_by_external_id(external_txn_id)
        if transaction is None:
            raise NotFoundError(f"Transaction not found with external ID: {external_txn_id}")
        return transaction

    def get_latest_transaction_for_order(self, order_id: str) -> PaymentTransaction:
        transaction = self.store.latest_for_order(order_id)
        if transaction is None:
            raise NotFoundError(f"No transactions found for order: {order_id}")
        return transaction

    def list_transactions_for_order(self, order_id: str) -> list[PaymentTransaction]:
        return self.store.list_for_order(order_id)
