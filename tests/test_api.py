"""HTTP surface via FastAPI TestClient."""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from paycore.services.payments.api import create_app


ORDER = {"order_id": "ORDER123", "amount": 250000}


@pytest.fixture
def client(service):
    return TestClient(create_app(service))


def _pay(client, method_id="pm-credit", order=ORDER, **client_params):
    return client.post(
        "/payments",
        json={"order": order, "payment_method_id": method_id, "client_params": client_params},
    )


def _stored(service, response):
    return service.get_transaction(response.json()["transaction_id"])


def test_health_and_metrics(client):
    """Health and scrape endpoints answer."""

    assert client.get("/health").json() == {"ok": True}
    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "http_requests_total" in metrics.text


def test_register_payment_method_masks_card(client):
    """Registered cards keep only the last four digits."""

    resp = client.post(
        "/payment-methods",
        json={
            "payment_method_id": "pm-new",
            "method_type": "CREDIT_CARD",
            "card_details": {
                "cardholder_name": "TRAN THI B",
                "card_number_masked": "XXXX XXXX XXXX 4242",
                "expiry_mmyy": "01/28",
            },
        },
    )

    assert resp.status_code == 200
    assert resp.json()["card_details"]["card_number_masked"] == "************4242"


def test_full_card_number_is_refused(client):
    """A full PAN in the masked field is a validation error."""

    resp = client.post(
        "/payment-methods",
        json={
            "payment_method_id": "pm-leaky",
            "method_type": "CREDIT_CARD",
            "card_details": {
                "cardholder_name": "TRAN THI B",
                "card_number_masked": "4242424242424242",
                "expiry_mmyy": "01/28",
            },
        },
    )

    assert resp.status_code == 400
    assert resp.json()["error"] == "VALIDATION_ERROR"


def test_used_payment_method_cannot_change(client):
    """A method referenced by a payment cannot be re-registered differently."""

    assert _pay(client).status_code == 200

    resp = client.post("/payment-methods", json={"payment_method_id": "pm-credit", "method_type": "DOMESTIC_DEBIT_CARD"})

    assert resp.status_code == 400


def test_create_and_fetch_payment(client):
    """A new payment returns a redirect URL and can be fetched back."""

    resp = _pay(client, ip_addr="10.0.0.7")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "PENDING_USER_ACTION"
    assert body["transaction_type"] == "PAYMENT"
    assert Decimal(body["amount"]) == Decimal("250000")
    assert "vnp_Amount=25000000" in body["payment_url"]
    assert "vnp_BankCode=INTCARD" in body["payment_url"]

    fetched = client.get(f"/payments/{body['transaction_id']}")
    assert fetched.status_code == 200
    assert fetched.json()["external_transaction_id"] == body["external_transaction_id"]


def test_error_status_codes(client):
    """Domain errors map onto HTTP status codes."""

    assert client.get("/payments/PAY-missing").status_code == 404
    assert _pay(client, "pm-missing").status_code == 404

    missing_bank = _pay(client, "pm-domestic")
    assert missing_bank.status_code == 400
    assert missing_bank.json()["error"] == "VALIDATION_ERROR"

    bad_body = client.post("/payments", json={"order": {"order_id": "ORDER123", "amount": -1}, "payment_method_id": "x"})
    assert bad_body.status_code == 400


def test_overlapping_payment_is_conflict(client):
    """A second method for a pending order answers 409."""

    first = _pay(client).json()

    resp = _pay(client, "pm-domestic", bank_code="NCB")

    assert resp.status_code == 409
    assert resp.json()["error"] == "PAYMENT_IN_PROGRESS"
    assert resp.json()["transaction_id"] == first["transaction_id"]


def test_ipn_acknowledgement_codes(client, service, signed_callback):
    """Each IPN outcome gets the RspCode VNPay expects."""

    pending = _stored(service, _pay(client))
    params = signed_callback(pending, "00")

    assert client.get("/vnpay/ipn", params=params).json() == {"RspCode": "00", "Message": "Confirm Success"}
    assert client.get("/vnpay/ipn", params=params).json()["RspCode"] == "02"
    assert service.get_transaction(pending.transaction_id).status.value == "SUCCESS"

    tampered = {**params, "vnp_Amount": "1"}
    assert client.get("/vnpay/ipn", params=tampered).json()["RspCode"] == "97"

    ghost = pending.model_copy(update={"external_transaction_id": "ORDER404_1"})
    assert client.get("/vnpay/ipn", params=signed_callback(ghost, "00")).json()["RspCode"] == "01"


def test_ipn_amount_mismatch(client, service, signed_callback):
    """A signed IPN with the wrong amount answers 04 and changes nothing."""

    pending = _stored(service, _pay(client, order={"order_id": "ORDER555", "amount": 120000}))

    resp = client.get("/vnpay/ipn", params=signed_callback(pending, "00", amount=100))

    assert resp.json()["RspCode"] == "04"
    assert service.get_transaction(pending.transaction_id).status.value == "PENDING_USER_ACTION"


def test_ipn_missing_fields_is_unknown_error(client):
    """An empty IPN answers 99."""

    assert client.get("/vnpay/ipn").json()["RspCode"] == "99"


def test_browser_return(client, service, signed_callback):
    """The return leg applies the signed result and rejects edited ones."""

    pending = _stored(service, _pay(client))
    params = signed_callback(pending, "24")

    resp = client.get("/vnpay/return", params=params)

    assert resp.status_code == 200
    assert resp.json()["status"] == "CANCELLED"
    assert resp.json()["payment_url"] is None
    assert client.get("/vnpay/return", params={**params, "vnp_ResponseCode": "00"}).status_code == 403


def test_status_check_endpoint(client, vnpay_api):
    """Gateway timeouts, outages and success surface as 504, 502 and 200."""

    created = _pay(client).json()
    url = f"/payments/{created['transaction_id']}/status-check"

    vnpay_api.error = "timeout"
    timeout = client.post(url)
    assert timeout.status_code == 504
    assert timeout.json()["retryable"] is True

    vnpay_api.error = "connect"
    assert client.post(url).status_code == 502

    vnpay_api.error = None
    vnpay_api.query_amount = "25000000"
    settled = client.post(url)
    assert settled.status_code == 200
    assert settled.json()["status"] == "SUCCESS"


def test_refund_endpoint(client, service, signed_callback, vnpay_api):
    """Refunds go through the HTTP surface."""

    pending = _stored(service, _pay(client))
    client.get("/vnpay/ipn", params=signed_callback(pending, "00"))

    resp = client.post(
        "/refunds",
        json={
            "original_transaction_ref": pending.external_transaction_id,
            "order": ORDER,
            "amount": 50000,
            "reason": "customer request",
        },
    )

    assert resp.status_code == 200
    body = resp.json()
    assert body["transaction_type"] == "REFUND"
    assert body["status"] == "SUCCESS"
    assert body["parent_transaction_id"] == pending.transaction_id
    assert vnpay_api.requests[-1]["vnp_TransactionType"] == "03"
