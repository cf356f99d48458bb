"""VNPay signing protocol: canonical parameter string + HMAC-SHA512.

The canonical form is built only from fields of the documented gateway schema
so that keys injected into an inbound map after signing cannot change the
outcome, while any missing or altered known field does.
"""

import hashlib
import hmac
from collections.abc import Iterable, Mapping
from urllib.parse import quote_plus


SIGNATURE_FIELD = "vnp_SecureHash"
SIGNATURE_FIELDS = frozenset({SIGNATURE_FIELD, "vnp_SecureHashType"})

GATEWAY_FIELDS = frozenset(
    {
        # Payment request.
        "vnp_Version",
        "vnp_Command",
        "vnp_TmnCode",
        "vnp_Amount",
        "vnp_CurrCode",
        "vnp_BankCode",
        "vnp_TxnRef",
        "vnp_OrderInfo",
        "vnp_OrderType",
        "vnp_Locale",
        "vnp_ReturnUrl",
        "vnp_IpAddr",
        "vnp_CreateDate",
        "vnp_ExpireDate",
        # Return URL / IPN callback.
        "vnp_BankTranNo",
        "vnp_CardType",
        "vnp_PayDate",
        "vnp_TransactionNo",
        "vnp_ResponseCode",
        "vnp_TransactionStatus",
        # Query / refund API.
        "vnp_RequestId",
        "vnp_ResponseId",
        "vnp_TransactionType",
        "vnp_TransactionDate",
        "vnp_CreateBy",
        "vnp_Message",
        "vnp_PromotionCode",
        "vnp_PromotionAmount",
    }
)


def canonicalize(
    params: Mapping[str, object], fields: Iterable[str] | None = None, encode: bool = False
) -> str:
    """Build the `key=value&...` string that gets signed.

    Signature fields and empty values are skipped. Keys are sorted by their
    UTF-8 bytes, so `vnp_amount` and `vnp_Amount` are different keys. Values are
    used verbatim unless `encode` is set, in which case keys and values are
    form-encoded the way VNPay's live terminals hash them (`://` becomes
    `%3A%2F%2F`, spaces become `+`).
    """

    allowed = None if fields is None else frozenset(fields)
    pairs = []
    for key, value in params.items():
        if key in SIGNATURE_FIELDS:
            continue
        if allowed is not None and key not in allowed:
            continue
        if value is None:
            continue
        text = str(value)
        if not text:
            continue
        pairs.append((key, text))
    pairs.sort(key=lambda pair: pair[0].encode("utf-8"))
    if encode:
        pairs = [(quote_plus(key, safe="*"), quote_plus(value, safe="*")) for key, value in pairs]
    return "&".join(f"{key}={value}" for key, value in pairs)


def sign(secret: str, canonical: str) -> str:
    """HMAC-SHA512 of the canonical string, lowercase hex."""

    return hmac.new(secret.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha512).hexdigest()


def sign_params(
    secret: str, params: Mapping[str, object], fields: Iterable[str] | None = None, encode: bool = False
) -> str:
    return sign(secret, canonicalize(params, fields, encode=encode))


def verify(
    secret: str,
    params: Mapping[str, object],
    fields: Iterable[str] | None = GATEWAY_FIELDS,
    encode: bool = False,
) -> bool:
    """Return True only when the carried signature matches the recomputed one."""

    received = params.get(SIGNATURE_FIELD)
    if not isinstance(received, str) or not received:
        return False
    expected = sign_params(secret, params, fields, encode=encode)
    return hmac.compare_digest(expected.encode("ascii"), received.lower().encode("utf-8"))
