"""Domain objects and API request/response schemas for the payment core."""

import re
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, field_validator

from paycore.common.state_machine import TransactionStatus, is_terminal


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class PaymentMethodType(str, Enum):
    CREDIT_CARD = "CREDIT_CARD"
    DOMESTIC_DEBIT_CARD = "DOMESTIC_DEBIT_CARD"


class TransactionType(str, Enum):
    PAYMENT = "PAYMENT"
    REFUND = "REFUND"


_MASKED_PAN = re.compile(r"^[*Xx]{4,}\d{4}$")
_MMYY = re.compile(r"^(0[1-9]|1[0-2])/\d{2}$")


class CardDetails(BaseModel):
    """Card data safe to persist: masked number only, never a full PAN or CVV."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    cardholder_name: str = Field(min_length=1, max_length=255)
    card_number_masked: str
    expiry_mmyy: str
    valid_from_mmyy: str | None = None
    issuing_bank: str | None = None

    @field_validator("card_number_masked")
    @classmethod
    def _only_last_four_visible(cls, value: str) -> str:
        compact = value.replace(" ", "")
        if not _MASKED_PAN.match(compact):
            raise ValueError("card number must be masked with only the last 4 digits visible")
        return "*" * (len(compact) - 4) + compact[-4:]

    @field_validator("expiry_mmyy", "valid_from_mmyy")
    @classmethod
    def _mmyy(cls, value: str | None) -> str | None:
        if value is not None and not _MMYY.match(value):
            raise ValueError("expected MM/YY")
        return value

    @classmethod
    def from_card_number(
        cls,
        card_number: str,
        cardholder_name: str,
        expiry_mmyy: str,
        issuing_bank: str | None = None,
        valid_from_mmyy: str | None = None,
    ) -> "CardDetails":
        """Mask a full card number on the way in; the full number is not kept."""

        digits = re.sub(r"\D", "", card_number)
        if len(digits) < 12:
            raise ValueError("card number is too short")
        return cls(
            cardholder_name=cardholder_name,
            card_number_masked="*" * (len(digits) - 4) + digits[-4:],
            expiry_mmyy=expiry_mmyy,
            valid_from_mmyy=valid_from_mmyy,
            issuing_bank=issuing_bank,
        )


class PaymentMethod(BaseModel):
    model_config = ConfigDict(frozen=True)

    payment_method_id: str = Field(min_length=1)
    method_type: PaymentMethodType
    card_details: CardDetails | None = None
    # None for guest / one-off methods.
    user_id: str | None = None
    is_default: bool = False


class OrderSnapshot(BaseModel):
    """Read-only view of the order being paid, supplied by the order owner."""

    model_config = ConfigDict(frozen=True)

    order_id: str
    amount: Decimal
    currency: str = "VND"
    created_at: datetime = Field(default_factory=utcnow)


class PaymentTransaction(BaseModel):
    """One payment or refund attempt; replaced, never mutated in place."""

    model_config = ConfigDict(frozen=True)

    transaction_id: str
    external_transaction_id: str
    order_id: str
    amount: Decimal = Field(gt=0)
    currency: str = "VND"
    transaction_type: TransactionType
    status: TransactionStatus
    payment_method_id: str | None = None
    gateway_transaction_no: str | None = None
    # Opaque serialized gateway payload; read through `GatewayPayload.parse`.
    raw_gateway_response: str | None = None
    parent_transaction_id: str | None = None
    description: str | None = None
    expires_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return is_terminal(self.status)


class PaymentMethodCreateRequest(BaseModel):
    payment_method_id: str = Field(min_length=1)
    method_type: PaymentMethodType
    card_details: CardDetails | None = None
    user_id: str | None = None
    is_default: bool = False


class OrderPayload(BaseModel):
    order_id: str = Field(min_length=1)
    amount: Decimal = Field(gt=0)
    currency: str = Field(default="VND", min_length=3, max_length=3)
    created_at: datetime | None = None

    def to_snapshot(self) -> OrderSnapshot:
        if self.created_at is None:
            return OrderSnapshot(order_id=self.order_id, amount=self.amount, currency=self.currency)
        return OrderSnapshot(
            order_id=self.order_id, amount=self.amount, currency=self.currency, created_at=self.created_at
        )


class PaymentCreateRequest(BaseModel):
    order: OrderPayload
    payment_method_id: str = Field(min_length=1)
    client_params: dict[str, str] = Field(default_factory=dict)


class RefundCreateRequest(BaseModel):
    original_transaction_ref: str = Field(min_length=1)
    order: OrderPayload
    amount: Decimal = Field(gt=0)
    reason: str = ""


class PaymentTransactionResponse(BaseModel):
    transaction_id: str
    external_transaction_id: str
    order_id: str
    amount: Decimal
    transaction_type: TransactionType
    status: TransactionStatus
    payment_url: str | None = None
    parent_transaction_id: str | None = None
    created_at: datetime
    updated_at: datetime
