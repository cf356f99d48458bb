"""HTTP surface for the payment core.

Routes are thin: they translate request bodies into domain objects, call
`PaymentService`, and map typed payment errors to status codes.
"""

from contextlib import asynccontextmanager
from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from paycore.common.errors import (
    AmountMismatchError,
    GatewayError,
    GatewayTimeoutError,
    NotFoundError,
    PaymentError,
    PaymentInProgressError,
    SecurityViolation,
    ValidationError,
)
from paycore.common.logging import logger, trace_id_ctx
from paycore.common.metrics import http_request_duration_seconds, http_requests_total, metrics_response
from paycore.common.tracing import instrument_app
from paycore.services.gateway.schemas import GatewayPayload
from paycore.services.payments.methods import PaymentMethodRegistry
from paycore.services.payments.schemas import (
    PaymentCreateRequest,
    PaymentMethod,
    PaymentMethodCreateRequest,
    PaymentTransaction,
    PaymentTransactionResponse,
    RefundCreateRequest,
)
from paycore.services.payments.service import PaymentService


# Most specific first; the first isinstance match wins.
ERROR_STATUS = (
    (PaymentInProgressError, 409),
    (ValidationError, 400),
    (SecurityViolation, 403),
    (NotFoundError, 404),
    (GatewayTimeoutError, 504),
    (GatewayError, 502),
)

IPN_CONFIRMED = ("00", "Confirm Success")
IPN_NOT_FOUND = ("01", "Order not found")
IPN_ALREADY_CONFIRMED = ("02", "Order already confirmed")
IPN_INVALID_AMOUNT = ("04", "Invalid amount")
IPN_INVALID_SIGNATURE = ("97", "Invalid signature")
IPN_UNKNOWN_ERROR = ("99", "Unknown error")


def status_for_error(exc: PaymentError) -> int:
    for error_type, status_code in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status_code
    return 500


def to_response(transaction: PaymentTransaction) -> PaymentTransactionResponse:
    payment_url = None
    if not transaction.is_terminal:
        payment_url = GatewayPayload.parse(transaction.raw_gateway_response).payment_url
    return PaymentTransactionResponse(
        transaction_id=transaction.transaction_id,
        external_transaction_id=transaction.external_transaction_id,
        order_id=transaction.order_id,
        amount=transaction.amount,
        transaction_type=transaction.transaction_type,
        status=transaction.status,
        payment_url=payment_url,
        parent_transaction_id=transaction.parent_transaction_id,
        created_at=transaction.created_at,
        updated_at=transaction.updated_at,
    )


def _ipn_reply(result: tuple[str, str]) -> dict[str, str]:
    code, message = result
    return {"RspCode": code, "Message": message}


def create_app(
    service: PaymentService,
    registry: PaymentMethodRegistry | None = None,
    service_name: str = "paycore",
) -> FastAPI:
    """Build the FastAPI app around an already-wired payment service."""

    registry = registry or service.methods

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        service.gateway.http_client.close()

    app = FastAPI(title="Paycore Payment API", lifespan=lifespan)
    instrument_app(app)

    @app.middleware("http")
    async def metrics_middleware(request: Request, call_next):
        """Record request count and latency for every HTTP call."""

        trace_id_ctx.set(request.headers.get("x-trace-id") or str(uuid4()))
        start = perf_counter()
        route = request.url.path
        method = request.method
        status_code = 500
        try:
            response = await call_next(request)
            status_code = response.status_code
            route_obj = request.scope.get("route")
            if route_obj is not None and getattr(route_obj, "path", None):
                route = route_obj.path
            return response
        finally:
            elapsed = max(0.0, perf_counter() - start)
            http_request_duration_seconds.labels(service=service_name, route=route, method=method).observe(elapsed)
            http_requests_total.labels(
                service=service_name,
                route=route,
                method=method,
                status_code=str(status_code),
            ).inc()

    @app.exception_handler(PaymentError)
    async def payment_error_handler(_: Request, exc: PaymentError):
        status_code = status_for_error(exc)
        if status_code >= 500:
            logger.error("request_failed error=%s detail=%s", exc.code, exc)
        body = {"error": exc.code, "detail": str(exc), "retryable": exc.retryable}
        if isinstance(exc, PaymentInProgressError):
            body["transaction_id"] = exc.transaction_id
        return JSONResponse(status_code=status_code, content=body)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(_: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=400,
            content={"error": ValidationError.code, "detail": str(exc.errors()), "retryable": False},
        )

    @app.post("/payment-methods", response_model=PaymentMethod)
    def register_payment_method(req: PaymentMethodCreateRequest):
        """Register (or update, while unused) a payment method."""

        return registry.register(
            PaymentMethod(
                payment_method_id=req.payment_method_id,
                method_type=req.method_type,
                card_details=req.card_details,
                user_id=req.user_id,
                is_default=req.is_default,
            )
        )

    @app.post("/payments", response_model=PaymentTransactionResponse)
    def create_payment(req: PaymentCreateRequest):
        """Start a payment; the response carries the gateway redirect URL."""

        transaction = service.process_payment(req.order.to_snapshot(), req.payment_method_id, req.client_params)
        return to_response(transaction)

    @app.get("/payments/{transaction_id}", response_model=PaymentTransactionResponse)
    def get_payment(transaction_id: str):
        return to_response(service.get_transaction(transaction_id))

    @app.post("/payments/{transaction_id}/status-check", response_model=PaymentTransactionResponse)
    def check_payment_status(transaction_id: str):
        """Ask the gateway for the outcome of a pending payment."""

        return to_response(service.check_payment_status(transaction_id))

    @app.post("/refunds", response_model=PaymentTransactionResponse)
    def create_refund(req: RefundCreateRequest):
        refund = service.process_refund(
            req.original_transaction_ref,
            req.order.to_snapshot(),
            req.amount,
            req.reason,
        )
        return to_response(refund)

    @app.get("/vnpay/ipn")
    def vnpay_ipn(request: Request):
        """Server-to-server notification; always answers 200 with an `RspCode`."""

        params = dict(request.query_params)
        try:
            transaction, duplicate = service.acknowledge_callback(params)
        except NotFoundError:
            return _ipn_reply(IPN_NOT_FOUND)
        except AmountMismatchError:
            return _ipn_reply(IPN_INVALID_AMOUNT)
        except SecurityViolation:
            return _ipn_reply(IPN_INVALID_SIGNATURE)
        except PaymentError as exc:
            logger.warning("ipn_failed error=%s detail=%s", exc.code, exc)
            return _ipn_reply(IPN_UNKNOWN_ERROR)
        if duplicate:
            return _ipn_reply(IPN_ALREADY_CONFIRMED)
        logger.info("ipn_confirmed txn_ref=%s status=%s", transaction.external_transaction_id, transaction.status.value)
        return _ipn_reply(IPN_CONFIRMED)

    @app.get("/vnpay/return", response_model=PaymentTransactionResponse)
    def vnpay_return(request: Request):
        """Browser return leg; applies the signed result the same way as the IPN."""

        return to_response(service.handle_callback(dict(request.query_params)))

    @app.get("/metrics")
    def metrics():
        """Prometheus scrape endpoint."""

        return metrics_response()

    @app.get("/health")
    def health():
        """Container health probe endpoint."""

        return {"ok": True}

    return app
