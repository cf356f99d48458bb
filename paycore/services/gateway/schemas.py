"""Gateway configuration, results, and the narrow gateway payload parser."""

import json
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, Field

from paycore.common.errors import MalformedGatewayResponseError
from paycore.common.logging import logger
from paycore.common.state_machine import TransactionStatus


SUCCESS_CODE = "00"


class GatewayConfig(BaseModel):
    """Merchant credentials and endpoints for one VNPay terminal."""

    model_config = ConfigDict(frozen=True)

    tmn_code: str
    hash_secret: str = Field(repr=False)
    pay_url: str
    api_url: str
    return_url: str
    version: str = "2.1.0"
    locale: str = "vn"
    currency: str = "VND"
    order_type: str = "other"
    amount_multiplier: int = Field(default=100, gt=0)
    expiry_minutes: int = Field(default=15, gt=0)
    timeout_seconds: float = Field(default=15.0, gt=0)
    encode_signed_values: bool = False

    @classmethod
    def from_settings(cls, settings) -> "GatewayConfig":
        return cls(
            tmn_code=settings.vnp_tmn_code,
            hash_secret=settings.vnp_hash_secret.get_secret_value(),
            pay_url=settings.vnp_pay_url,
            api_url=settings.vnp_api_url,
            return_url=settings.vnp_return_url,
            version=settings.vnp_version,
            locale=settings.vnp_locale,
            currency=settings.vnp_currency,
            amount_multiplier=settings.amount_multiplier,
            expiry_minutes=settings.payment_expiry_minutes,
            timeout_seconds=settings.gateway_timeout_seconds,
            encode_signed_values=settings.vnp_encode_signed_values,
        )

    @property
    def is_configured(self) -> bool:
        placeholders = ("YOUR_TMN_CODE", "YOUR_HASH_SECRET")
        values = (self.tmn_code, self.hash_secret)
        return all(values) and not any(p in v for p in placeholders for v in values)


class PaymentRedirect(BaseModel):
    payment_url: str
    transaction_ref: str
    expires_at: str | None = None


class GatewayPayload(BaseModel):
    """Typed view over the handful of gateway fields the core acts on.

    Everything else stays in `raw` untouched.
    """

    response_code: str | None = None
    transaction_status: str | None = None
    transaction_ref: str | None = None
    transaction_no: str | None = None
    amount: int | None = None
    bank_code: str | None = None
    pay_date: str | None = None
    message: str | None = None
    payment_url: str | None = None
    raw: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def parse(cls, raw: str | Mapping[str, object] | None) -> "GatewayPayload":
        if raw is None:
            return cls()
        if isinstance(raw, str):
            try:
                data = json.loads(raw)
            except ValueError as exc:
                raise MalformedGatewayResponseError(f"gateway payload is not JSON: {exc}") from exc
        else:
            data = raw
        if not isinstance(data, Mapping):
            raise MalformedGatewayResponseError("gateway payload is not an object")
        fields = {str(k): str(v) for k, v in data.items() if v is not None}

        amount = None
        if fields.get("vnp_Amount"):
            try:
                amount = int(fields["vnp_Amount"])
            except ValueError as exc:
                raise MalformedGatewayResponseError(f"invalid vnp_Amount {fields['vnp_Amount']!r}") from exc

        return cls(
            response_code=fields.get("vnp_ResponseCode"),
            transaction_status=fields.get("vnp_TransactionStatus"),
            transaction_ref=fields.get("vnp_TxnRef"),
            transaction_no=fields.get("vnp_TransactionNo"),
            amount=amount,
            bank_code=fields.get("vnp_BankCode"),
            pay_date=fields.get("vnp_PayDate"),
            message=fields.get("vnp_Message"),
            payment_url=fields.get("paymentUrl"),
            raw=fields,
        )


class StatusResponse(BaseModel):
    """Result of a `querydr` lookup."""

    transaction_ref: str
    response_code: str
    transaction_status: str | None = None
    transaction_no: str | None = None
    amount: int | None = None
    raw_response: str


class RefundResponse(BaseModel):
    request_id: str
    response_code: str
    message: str | None = None
    transaction_no: str | None = None
    raw_response: str

    @property
    def succeeded(self) -> bool:
        return self.response_code == SUCCESS_CODE


class ResponseCodePolicy(BaseModel):
    """Maps gateway codes to transaction outcomes.

    `00` is the only success. Cancellation codes are explicit; every other code
    is a failure, and codes outside `failed_codes` are logged as unclassified.
    """

    model_config = ConfigDict(frozen=True)

    cancelled_codes: frozenset[str] = frozenset({"24"})
    failed_codes: frozenset[str] = frozenset({"07", "09", "10", "11", "12", "13", "51", "65", "75", "79", "99"})
    # querydr `vnp_TransactionStatus` values meaning the user has not finished yet.
    pending_query_statuses: frozenset[str] = frozenset({"01"})

    @classmethod
    def from_settings(cls, settings) -> "ResponseCodePolicy":
        return cls(
            cancelled_codes=frozenset(settings.cancelled_response_codes),
            failed_codes=frozenset(settings.failed_response_codes),
        )

    def status_for(self, response_code: str | None) -> TransactionStatus:
        if response_code == SUCCESS_CODE:
            return TransactionStatus.SUCCESS
        if response_code in self.cancelled_codes:
            return TransactionStatus.CANCELLED
        if response_code not in self.failed_codes:
            logger.warning("unclassified gateway response code=%s mapped to FAILED", response_code)
        return TransactionStatus.FAILED

    def status_for_query(self, transaction_status: str | None) -> TransactionStatus | None:
        """Outcome from a status query, or None when it is still inconclusive."""

        if transaction_status is None or transaction_status in self.pending_query_statuses:
            return None
        if transaction_status == SUCCESS_CODE:
            return TransactionStatus.SUCCESS
        return TransactionStatus.FAILED
