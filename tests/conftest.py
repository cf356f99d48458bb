"""Shared fixtures: a fixed clock, a scripted VNPay API and a wired service."""

import json
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import httpx
import pytest

from paycore.services.gateway.schemas import GatewayConfig
from paycore.services.gateway.service import VNPayGateway, format_gateway_date
from paycore.services.gateway.signing import SIGNATURE_FIELD, sign_params
from paycore.services.payments.methods import PaymentMethodRegistry
from paycore.services.payments.schemas import CardDetails, OrderSnapshot, PaymentMethod, PaymentMethodType
from paycore.services.payments.service import PaymentService
from paycore.services.payments.store import TransactionStore
from paycore.services.payments.strategies import build_strategies


SECRET = "TESTSECRET0123456789"


class FakeClock:
    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class FakeVNPayApi:
    """Scripted `merchant_webapi` endpoint; records every request body.

    Set `error` to "timeout" or "connect" to fail at the transport level,
    `status_code` for HTTP errors, or `reply` to answer with a custom body.
    """

    def __init__(self, secret: str) -> None:
        self.secret = secret
        self.requests: list[dict] = []
        self.error: str | None = None
        self.status_code = 200
        self.sign_replies = True
        self.reply = None
        self.query_code = "00"
        self.query_status = "00"
        self.query_amount: str | None = None
        self.refund_code = "00"

    def default_reply(self, body: dict) -> dict:
        if body["vnp_Command"] == "refund":
            return {
                "vnp_ResponseId": "RESP-REFUND-1",
                "vnp_Command": "refund",
                "vnp_ResponseCode": self.refund_code,
                "vnp_Message": "Refund processed",
                "vnp_TmnCode": body["vnp_TmnCode"],
                "vnp_TxnRef": body["vnp_TxnRef"],
                "vnp_Amount": body["vnp_Amount"],
                "vnp_TransactionNo": "15000001",
                "vnp_TransactionType": body["vnp_TransactionType"],
            }
        data = {
            "vnp_ResponseId": "RESP-QUERY-1",
            "vnp_Command": "querydr",
            "vnp_ResponseCode": self.query_code,
            "vnp_Message": "Query processed",
            "vnp_TmnCode": body["vnp_TmnCode"],
            "vnp_TxnRef": body["vnp_TxnRef"],
            "vnp_TransactionNo": "14000001",
            "vnp_TransactionStatus": self.query_status,
        }
        if self.query_amount is not None:
            data["vnp_Amount"] = self.query_amount
        return data

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        self.requests.append(body)
        if self.error == "timeout":
            raise httpx.ReadTimeout("timed out", request=request)
        if self.error == "connect":
            raise httpx.ConnectError("connection refused", request=request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, json={"error": "unavailable"})
        data = (self.reply or self.default_reply)(body)
        if self.sign_replies:
            data = {**data, SIGNATURE_FIELD: sign_params(self.secret, data)}
        return httpx.Response(200, json=data)


class RecordingSink:
    def __init__(self) -> None:
        self.events = []

    def emit(self, event) -> None:
        self.events.append(event)

    def for_operation(self, operation: str) -> list:
        return [e for e in self.events if e.operation == operation]


@pytest.fixture
def secret():
    return SECRET


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 1, 3, 0, tzinfo=timezone.utc))


@pytest.fixture
def gateway_config():
    return GatewayConfig(
        tmn_code="TESTTMN1",
        hash_secret=SECRET,
        pay_url="https://sandbox.vnpayment.vn/paymentv2/vpcpay.html",
        api_url="https://sandbox.vnpayment.vn/merchant_webapi/api/transaction",
        return_url="http://localhost:8000/vnpay/return",
    )


@pytest.fixture
def vnpay_api():
    return FakeVNPayApi(SECRET)


@pytest.fixture
def make_gateway(gateway_config, clock):
    def factory(handler) -> VNPayGateway:
        client = httpx.Client(transport=httpx.MockTransport(handler))
        return VNPayGateway(gateway_config, http_client=client, clock=clock)

    return factory


@pytest.fixture
def gateway(make_gateway, vnpay_api):
    return make_gateway(vnpay_api.handler)


@pytest.fixture
def credit_method():
    return PaymentMethod(payment_method_id="pm-credit", method_type=PaymentMethodType.CREDIT_CARD, user_id="user-1")


@pytest.fixture
def domestic_method():
    return PaymentMethod(
        payment_method_id="pm-domestic",
        method_type=PaymentMethodType.DOMESTIC_DEBIT_CARD,
        card_details=CardDetails(
            cardholder_name="NGUYEN VAN A",
            card_number_masked="************1234",
            expiry_mmyy="12/27",
            issuing_bank="NCB",
        ),
    )


@pytest.fixture
def registry(credit_method, domestic_method):
    return PaymentMethodRegistry([credit_method, domestic_method])


@pytest.fixture
def sink():
    return RecordingSink()


@pytest.fixture
def service(gateway, registry, sink, clock):
    return PaymentService(
        gateway=gateway,
        strategies=build_strategies(gateway),
        store=TransactionStore(),
        methods=registry,
        metrics=sink,
        clock=clock,
    )


@pytest.fixture
def order(clock):
    return OrderSnapshot(order_id="ORDER123", amount=Decimal("250000"), created_at=clock())


@pytest.fixture
def signed_callback(clock):
    """Build gateway-signed callback params for a stored transaction."""

    def build(transaction, response_code="00", amount=None, transaction_no="14000000", pay_date=None):
        params = {
            "vnp_TmnCode": "TESTTMN1",
            "vnp_TxnRef": transaction.external_transaction_id,
            "vnp_Amount": str(amount if amount is not None else int(transaction.amount * 100)),
            "vnp_ResponseCode": response_code,
            "vnp_TransactionStatus": response_code,
            "vnp_TransactionNo": transaction_no,
            "vnp_BankCode": "NCB",
            "vnp_OrderInfo": f"Thanh toan don hang {transaction.order_id}",
            "vnp_PayDate": format_gateway_date(pay_date or clock()),
        }
        params[SIGNATURE_FIELD] = sign_params(SECRET, params)
        return params

    return build
