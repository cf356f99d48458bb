"""Send a signed VNPay-style callback to a running payment API.

Useful for exercising the IPN/return handlers locally without the sandbox:
the payload is signed with the configured hash secret exactly like the
gateway would sign it.
"""

import argparse
import json
from datetime import datetime

import httpx

from paycore.common.config import settings
from paycore.services.gateway.service import DATE_FORMAT, VN_TZ, to_gateway_amount
from paycore.services.gateway.signing import SIGNATURE_FIELD, sign_params


def build_callback(
    txn_ref: str,
    amount: str,
    response_code: str,
    transaction_no: str,
    bank_code: str,
    tmn_code: str,
    hash_secret: str,
) -> dict[str, str]:
    """Signed callback query parameters for one transaction reference."""

    params = {
        "vnp_TmnCode": tmn_code,
        "vnp_TxnRef": txn_ref,
        "vnp_Amount": str(to_gateway_amount(amount, settings.amount_multiplier)),
        "vnp_ResponseCode": response_code,
        "vnp_TransactionStatus": response_code,
        "vnp_TransactionNo": transaction_no,
        "vnp_BankCode": bank_code,
        "vnp_OrderInfo": f"Thanh toan don hang {txn_ref.split('_')[0]}",
        "vnp_PayDate": datetime.now(VN_TZ).strftime(DATE_FORMAT),
    }
    params[SIGNATURE_FIELD] = sign_params(hash_secret, params, encode=settings.vnp_encode_signed_values)
    return params


def main() -> None:
    """CLI entrypoint for manual callback tests."""

    parser = argparse.ArgumentParser(description="Send a signed VNPay callback to the payment API.")
    parser.add_argument("--base-url", default="http://localhost:8000")
    parser.add_argument("--endpoint", choices=["ipn", "return"], default="ipn")
    parser.add_argument("--txn-ref", required=True, help="external transaction reference (vnp_TxnRef)")
    parser.add_argument("--amount", required=True, help="order amount in VND, before the gateway multiplier")
    parser.add_argument("--response-code", default="00")
    parser.add_argument("--transaction-no", default="14000000")
    parser.add_argument("--bank-code", default="NCB")
    parser.add_argument("--tmn-code", default=settings.vnp_tmn_code)
    parser.add_argument("--hash-secret", default=settings.vnp_hash_secret.get_secret_value())
    parser.add_argument("--tamper", action="store_true", help="alter the amount after signing")
    args = parser.parse_args()

    params = build_callback(
        txn_ref=args.txn_ref,
        amount=args.amount,
        response_code=args.response_code,
        transaction_no=args.transaction_no,
        bank_code=args.bank_code,
        tmn_code=args.tmn_code,
        hash_secret=args.hash_secret,
    )
    if args.tamper:
        params["vnp_Amount"] = str(int(params["vnp_Amount"]) + 100)

    resp = httpx.get(f"{args.base_url}/vnpay/{args.endpoint}", params=params, timeout=10.0)
    print(f"HTTP {resp.status_code}")
    try:
        print(json.dumps(resp.json(), indent=2))
    except ValueError:
        print(resp.text)


if __name__ == "__main__":
    main()
