"""Canonical string and HMAC-SHA512 signature checks."""

import hashlib
import hmac

from paycore.services.gateway.signing import SIGNATURE_FIELD, canonicalize, sign, sign_params, verify


SECRET = "SIGNINGSECRET"


def _signed(params):
    return {**params, SIGNATURE_FIELD: sign_params(SECRET, params)}


def test_canonical_form_sorts_by_bytes_and_skips_empty_and_signature():
    """Byte order, no empties, no signature fields."""

    params = {
        "vnp_TxnRef": "ORDER123_1",
        "vnp_amount": "1",
        "vnp_Amount": "25000000",
        "vnp_BankCode": "",
        "vnp_Locale": None,
        SIGNATURE_FIELD: "deadbeef",
        "vnp_SecureHashType": "HmacSHA512",
    }

    assert canonicalize(params) == "vnp_Amount=25000000&vnp_TxnRef=ORDER123_1&vnp_amount=1"


def test_values_are_used_verbatim():
    """No URL-encoding or trimming happens before signing."""

    assert canonicalize({"vnp_OrderInfo": " Thanh toan #1 "}) == "vnp_OrderInfo= Thanh toan #1 "


def test_encoded_form_matches_gateway_url_encoding():
    """Live terminals hash form-encoded keys and values."""

    params = {"vnp_ReturnUrl": "https://shop.vn/return?a=1", "vnp_OrderInfo": "Thanh toan #1"}

    assert canonicalize(params, encode=True) == (
        "vnp_OrderInfo=Thanh+toan+%231&vnp_ReturnUrl=https%3A%2F%2Fshop.vn%2Freturn%3Fa%3D1"
    )
    assert sign_params(SECRET, params, encode=True) != sign_params(SECRET, params)


def test_sign_is_hmac_sha512_hex():
    """Signatures are HMAC-SHA512 in lowercase hex."""

    expected = hmac.new(SECRET.encode(), b"a=1&b=2", hashlib.sha512).hexdigest()

    assert sign(SECRET, "a=1&b=2") == expected
    assert len(expected) == 128


def test_insertion_order_does_not_matter():
    """Map order has no effect on the signature."""

    first = {"vnp_TxnRef": "A", "vnp_Amount": "100", "vnp_Command": "pay"}
    second = dict(reversed(list(first.items())))

    assert sign_params(SECRET, first) == sign_params(SECRET, second)


def test_verify_accepts_own_signature_in_any_case():
    """Hex case is ignored on verification."""

    params = _signed({"vnp_TxnRef": "ORDER123_1", "vnp_Amount": "25000000", "vnp_ResponseCode": "00"})

    assert verify(SECRET, params)
    assert verify(SECRET, {**params, SIGNATURE_FIELD: params[SIGNATURE_FIELD].upper()})


def test_verify_rejects_missing_or_empty_signature():
    """No signature means no trust."""

    params = {"vnp_TxnRef": "ORDER123_1", "vnp_Amount": "25000000"}

    assert not verify(SECRET, params)
    assert not verify(SECRET, {**params, SIGNATURE_FIELD: ""})
    assert not verify(SECRET, {**params, SIGNATURE_FIELD: None})


def test_verify_rejects_tampered_known_field():
    """Changing any signed field breaks verification."""

    params = _signed(
        {"vnp_TxnRef": "ORDER123_1", "vnp_Amount": "25000000", "vnp_ResponseCode": "24", "vnp_BankCode": "NCB"}
    )

    assert not verify(SECRET, {**params, "vnp_ResponseCode": "00"})
    assert not verify(SECRET, {**params, "vnp_Amount": "1"})
    assert not verify(SECRET, {**params, "vnp_TxnRef": "ORDER124_1"})
    assert not verify(SECRET, {**params, "vnp_BankCode": "VCB"})


def test_verify_rejects_removed_field_and_wrong_secret():
    """Dropped fields and other secrets fail."""

    params = _signed({"vnp_TxnRef": "ORDER123_1", "vnp_Amount": "25000000"})
    stripped = {k: v for k, v in params.items() if k != "vnp_Amount"}

    assert not verify(SECRET, stripped)
    assert not verify("OTHER", params)


def test_verify_ignores_injected_unknown_keys():
    """Extra keys outside the gateway schema cannot change the outcome."""

    params = _signed({"vnp_TxnRef": "ORDER123_1", "vnp_Amount": "25000000"})

    assert verify(SECRET, {**params, "utm_source": "mail", "vnp_Unknown": "x"})


def test_verify_handles_non_ascii_signature():
    """A non-ASCII signature fails cleanly."""

    params = {"vnp_TxnRef": "ORDER123_1", SIGNATURE_FIELD: "chữ ký"}

    assert not verify(SECRET, params)
