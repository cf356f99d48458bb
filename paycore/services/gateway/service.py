"""VNPay gateway adapter.

Builds signed payment/refund/query requests, produces the redirect URL, and
validates every gateway response before the payment service acts on it.
"""

import json
import re
import secrets
import unicodedata
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from time import perf_counter
from urllib.parse import quote, urlencode

import httpx

from paycore.common.errors import (
    GatewayError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    MalformedGatewayResponseError,
    NotFoundError,
    SecurityViolation,
    ValidationError,
)
from paycore.common.logging import logger
from paycore.common.metrics import (
    gateway_request_duration_seconds,
    gateway_requests_total,
    signature_failures_total,
)
from paycore.common.tracing import get_tracer
from paycore.services.gateway.schemas import (
    SUCCESS_CODE,
    GatewayConfig,
    GatewayPayload,
    PaymentRedirect,
    RefundResponse,
    StatusResponse,
)
from paycore.services.gateway.signing import GATEWAY_FIELDS, SIGNATURE_FIELD, sign_params, verify
from paycore.services.payments.schemas import CardDetails, OrderSnapshot, PaymentMethod, PaymentMethodType


# VNPay expects Vietnam local time; the zone has no DST.
VN_TZ = timezone(timedelta(hours=7), "Asia/Ho_Chi_Minh")
DATE_FORMAT = "%Y%m%d%H%M%S"
INTERNATIONAL_CARD_CODE = "INTCARD"
QUERY_NOT_FOUND_CODE = "91"
FULL_REFUND = "02"
PARTIAL_REFUND = "03"

MAX_TEXT_LENGTH = 255
MAX_REF_ORDER_PART = 40
_UNSAFE_TEXT = re.compile(r"[^0-9A-Za-z .,:_#-]")
_UNSAFE_REF = re.compile(r"[^0-9A-Za-z-]")
_BANK_CODE = re.compile(r"^[A-Z0-9]{2,20}$")
_WHITESPACE = re.compile(r"\s+")

tracer = get_tracer(__name__)


def sanitize_text(value: object, max_length: int = MAX_TEXT_LENGTH) -> str:
    """Reduce free text to plain ASCII words and punctuation.

    Markup, quotes, and SQL/shell metacharacters are dropped rather than
    rejected, so hostile input travels as inert data.
    """

    text = unicodedata.normalize("NFKD", "" if value is None else str(value))
    text = "".join(ch for ch in text if not unicodedata.combining(ch))
    text = _UNSAFE_TEXT.sub("", text)
    text = _WHITESPACE.sub(" ", text).strip()
    return text[:max_length]


def normalize_bank_code(value: object) -> str | None:
    code = str(value or "").strip().upper()
    return code if _BANK_CODE.match(code) else None


def to_gateway_amount(amount: object, multiplier: int) -> int:
    """Convert a currency amount to the gateway's integer unit, exactly."""

    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"invalid amount {amount!r}") from exc
    if not value.is_finite():
        raise ValidationError(f"invalid amount {amount!r}")
    scaled = value * multiplier
    if scaled != scaled.to_integral_value():
        raise ValidationError(f"amount {amount} cannot be expressed in gateway units without truncation")
    return int(scaled)


def format_gateway_date(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(VN_TZ).strftime(DATE_FORMAT)


def parse_gateway_date(value: str) -> datetime:
    return datetime.strptime(value, DATE_FORMAT).replace(tzinfo=VN_TZ)


class VNPayGateway:
    """Request builder and response validator for one VNPay merchant terminal."""

    def __init__(
        self,
        config: GatewayConfig,
        http_client: httpx.Client | None = None,
        clock: Callable[[], datetime] | None = None,
        service_name: str = "paycore",
    ) -> None:
        self.config = config
        self.http_client = http_client or httpx.Client(timeout=config.timeout_seconds)
        self.clock = clock or (lambda: datetime.now(VN_TZ))
        self.service_name = service_name
        if not config.is_configured:
            logger.warning("vnpay gateway initialized with placeholder credentials tmn_code=%s", config.tmn_code)

    def _now(self) -> datetime:
        return self.clock().astimezone(VN_TZ)

    def _millis(self) -> int:
        return int(self._now().timestamp() * 1000)

    def new_transaction_ref(self, order_id: str) -> str:
        """Order ID plus a fresh suffix, so a retry never reuses a reference."""

        order_part = _UNSAFE_REF.sub("", str(order_id))[:MAX_REF_ORDER_PART] or "ORDER"
        return f"{order_part}_{self._millis()}{secrets.token_hex(2)}"

    def _request_id(self, prefix: str) -> str:
        return f"{prefix}{self._millis()}{secrets.token_hex(3)}"[:32]

    def prepare_payment_parameters(
        self,
        order: OrderSnapshot | None,
        method: PaymentMethod | None,
        card_details: CardDetails | None = None,
        client_ip: str = "127.0.0.1",
        created_at: datetime | None = None,
    ) -> dict[str, str]:
        """Build the unsigned `pay` parameter set for an order.

        `created_at` is the instant the caller records for the transaction; it
        becomes `vnp_CreateDate`, which later querydr and refund calls must echo.
        """

        if order is None:
            raise ValidationError("Order information is required for VNPay payment")
        if method is None:
            raise ValidationError("Payment method is required for VNPay payment")
        if order.amount is None or order.amount <= 0:
            raise ValidationError("Order amount must be greater than zero")

        cfg = self.config
        created = created_at.astimezone(VN_TZ) if created_at is not None else self._now()
        expires = created + timedelta(minutes=cfg.expiry_minutes)
        params = {
            "vnp_Version": cfg.version,
            "vnp_Command": "pay",
            "vnp_TmnCode": cfg.tmn_code,
            "vnp_Amount": str(to_gateway_amount(order.amount, cfg.amount_multiplier)),
            "vnp_CurrCode": cfg.currency,
            "vnp_TxnRef": self.new_transaction_ref(order.order_id),
            "vnp_OrderInfo": sanitize_text(f"Thanh toan don hang {order.order_id}"),
            "vnp_OrderType": cfg.order_type,
            "vnp_Locale": cfg.locale,
            "vnp_ReturnUrl": cfg.return_url,
            "vnp_IpAddr": sanitize_text(client_ip, 45) or "127.0.0.1",
            "vnp_CreateDate": created.strftime(DATE_FORMAT),
            "vnp_ExpireDate": expires.strftime(DATE_FORMAT),
        }

        card = card_details or method.card_details
        if method.method_type is PaymentMethodType.CREDIT_CARD:
            params["vnp_BankCode"] = INTERNATIONAL_CARD_CODE
        elif card is not None and normalize_bank_code(card.issuing_bank):
            # Preselect the issuing bank; an explicit client bank code overrides it.
            params["vnp_BankCode"] = normalize_bank_code(card.issuing_bank)
        return params

    def _signable(self, params: Mapping[str, object]) -> dict[str, str]:
        fields = {}
        dropped = []
        for key, value in params.items():
            if value is None or str(value) == "" or key == SIGNATURE_FIELD:
                continue
            if key not in GATEWAY_FIELDS:
                dropped.append(key)
                continue
            fields[key] = str(value)
        if dropped:
            logger.info("vnpay dropped non-gateway params keys=%s", sorted(dropped))
        return fields

    def _sign(self, fields: dict[str, str]) -> dict[str, str]:
        signed = dict(fields)
        cfg = self.config
        signed[SIGNATURE_FIELD] = sign_params(cfg.hash_secret, fields, encode=cfg.encode_signed_values)
        return signed

    def process_payment(self, params: Mapping[str, object]) -> PaymentRedirect:
        """Sign the parameters and build the redirect URL."""

        fields = self._signable(params)
        if not fields.get("vnp_TxnRef"):
            raise ValidationError("vnp_TxnRef is required to build a payment URL")
        signed = self._sign(fields)
        query = urlencode(sorted(signed.items()), quote_via=quote)
        separator = "&" if "?" in self.config.pay_url else "?"
        payment_url = f"{self.config.pay_url}{separator}{query}"
        logger.info(
            "vnpay payment url generated txn_ref=%s amount=%s",
            fields["vnp_TxnRef"],
            fields.get("vnp_Amount"),
        )
        return PaymentRedirect(
            payment_url=payment_url,
            transaction_ref=fields["vnp_TxnRef"],
            expires_at=fields.get("vnp_ExpireDate"),
        )

    def validate_response_signature(self, response_params: Mapping[str, object], source: str = "callback") -> bool:
        """Sole authority for accepting an inbound callback or API response."""

        if verify(self.config.hash_secret, response_params, encode=self.config.encode_signed_values):
            return True
        signature_failures_total.labels(service=self.service_name, source=source).inc()
        logger.warning(
            "vnpay signature rejected source=%s txn_ref=%s has_signature=%s",
            source,
            response_params.get("vnp_TxnRef"),
            bool(response_params.get(SIGNATURE_FIELD)),
        )
        return False

    def _post(self, command: str, payload: dict[str, str]) -> dict[str, str]:
        """POST one signed JSON request to the VNPay API with a bounded timeout."""

        started = perf_counter()
        outcome = "error"
        with tracer.start_as_current_span(f"vnpay.{command}") as span:
            span.set_attribute("vnpay.command", command)
            try:
                resp = self.http_client.post(
                    self.config.api_url,
                    json=payload,
                    timeout=self.config.timeout_seconds,
                )
                resp.raise_for_status()
                data = resp.json()
                outcome = "ok"
            except httpx.TimeoutException as exc:
                outcome = "timeout"
                raise GatewayTimeoutError(
                    f"VNPay {command} timed out after {self.config.timeout_seconds}s"
                ) from exc
            except httpx.HTTPError as exc:
                raise GatewayUnavailableError(f"VNPay {command} request failed: {exc}") from exc
            except ValueError as exc:
                raise MalformedGatewayResponseError(f"VNPay {command} returned a non-JSON body") from exc
            finally:
                span.set_attribute("vnpay.outcome", outcome)
                gateway_requests_total.labels(service=self.service_name, command=command, outcome=outcome).inc()
                gateway_request_duration_seconds.labels(service=self.service_name, command=command).observe(
                    perf_counter() - started
                )
        if not isinstance(data, dict):
            raise MalformedGatewayResponseError(f"VNPay {command} returned a non-object body")
        return {str(k): str(v) for k, v in data.items() if v is not None}

    def prepare_refund_parameters(
        self,
        order: OrderSnapshot | None,
        original_txn_ref: str | None,
        refund_amount: Decimal | None,
        reason: str | None,
        transaction_no: str | None = None,
        transaction_date: datetime | None = None,
        created_by: str = "paycore",
    ) -> dict[str, str]:
        """Build the unsigned `refund` parameter set."""

        if order is None:
            raise ValidationError("Order is required for a refund")
        if not original_txn_ref or not str(original_txn_ref).strip():
            raise ValidationError("Original transaction reference is required for a refund")
        if refund_amount is None or refund_amount <= 0:
            raise ValidationError("Refund amount must be greater than zero")
        if refund_amount > order.amount:
            raise ValidationError("Refund amount exceeds the order amount")

        cfg = self.config
        params = {
            "vnp_RequestId": self._request_id("REFUND"),
            "vnp_Version": cfg.version,
            "vnp_Command": "refund",
            "vnp_TmnCode": cfg.tmn_code,
            "vnp_TransactionType": FULL_REFUND if refund_amount == order.amount else PARTIAL_REFUND,
            "vnp_TxnRef": str(original_txn_ref).strip(),
            "vnp_Amount": str(to_gateway_amount(refund_amount, cfg.amount_multiplier)),
            "vnp_OrderInfo": sanitize_text(f"Hoan tien don hang {order.order_id}. Ly do: {reason or ''}"),
            "vnp_TransactionDate": format_gateway_date(transaction_date or order.created_at),
            "vnp_CreateBy": sanitize_text(created_by, 64) or "paycore",
            "vnp_CreateDate": self._now().strftime(DATE_FORMAT),
            "vnp_IpAddr": "127.0.0.1",
        }
        if transaction_no:
            params["vnp_TransactionNo"] = str(transaction_no)
        return params

    def process_refund(self, params: Mapping[str, object]) -> RefundResponse:
        """Send a refund request; a non-`00` answer is returned, not raised."""

        signed = self._sign(self._signable(params))
        data = self._post("refund", signed)
        if not self.validate_response_signature(data, source="refund"):
            raise SecurityViolation("VNPay refund response signature is invalid")
        parsed = GatewayPayload.parse(data)
        if parsed.response_code is None:
            raise MalformedGatewayResponseError("VNPay refund response has no vnp_ResponseCode")
        if parsed.response_code != SUCCESS_CODE:
            logger.warning(
                "vnpay refund declined txn_ref=%s code=%s message=%s",
                signed.get("vnp_TxnRef"),
                parsed.response_code,
                parsed.message,
            )
        return RefundResponse(
            request_id=signed["vnp_RequestId"],
            response_code=parsed.response_code,
            message=parsed.message,
            transaction_no=parsed.transaction_no,
            raw_response=json.dumps(data, sort_keys=True),
        )

    def query_transaction_status(self, txn_ref: str, order_id: str, txn_date: datetime) -> StatusResponse:
        """Look a transaction up at the gateway (`querydr`).

        Raises NotFoundError when the gateway does not know the reference and a
        GatewayError subclass when the answer could not be obtained.
        """

        if not txn_ref:
            raise ValidationError("Transaction reference is required for a status query")
        fields = {
            "vnp_RequestId": self._request_id("QUERY"),
            "vnp_Version": self.config.version,
            "vnp_Command": "querydr",
            "vnp_TmnCode": self.config.tmn_code,
            "vnp_TxnRef": txn_ref,
            "vnp_OrderInfo": sanitize_text(f"Truy van GD don hang {order_id}"),
            "vnp_TransactionDate": format_gateway_date(txn_date),
            "vnp_CreateDate": self._now().strftime(DATE_FORMAT),
            "vnp_IpAddr": "127.0.0.1",
        }
        data = self._post("querydr", self._sign(fields))
        if not self.validate_response_signature(data, source="querydr"):
            raise SecurityViolation("VNPay query response signature is invalid")

        parsed = GatewayPayload.parse(data)
        if parsed.response_code == QUERY_NOT_FOUND_CODE:
            raise NotFoundError(f"VNPay has no transaction {txn_ref}")
        if parsed.response_code is None:
            raise MalformedGatewayResponseError("VNPay query response has no vnp_ResponseCode")
        if parsed.response_code != SUCCESS_CODE:
            raise GatewayError(f"VNPay query failed code={parsed.response_code} message={parsed.message}")
        if parsed.transaction_ref and parsed.transaction_ref != txn_ref:
            raise SecurityViolation(f"VNPay query answered for {parsed.transaction_ref}, expected {txn_ref}")

        return StatusResponse(
            transaction_ref=txn_ref,
            response_code=parsed.response_code,
            transaction_status=parsed.transaction_status,
            transaction_no=parsed.transaction_no,
            amount=parsed.amount,
            raw_response=json.dumps(data, sort_keys=True),
        )
