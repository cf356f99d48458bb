"""Payment transaction persistence model.

The table is append-only from the core's point of view: rows are inserted
once and later updated in place only for the pending → terminal transition.
"""

from datetime import datetime
from decimal import Decimal

from sqlalchemy import DateTime, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from paycore.common.db import Base


class PaymentTransactionRecord(Base):
    """Current state of one payment or refund transaction."""

    __tablename__ = "payment_transactions"

    transaction_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    external_transaction_id: Mapped[str] = mapped_column(String(100), unique=True, index=True)
    order_id: Mapped[str] = mapped_column(String(100), index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 2))
    currency: Mapped[str] = mapped_column(String(3))
    transaction_type: Mapped[str] = mapped_column(String(20))
    status: Mapped[str] = mapped_column(String(32), index=True)
    payment_method_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    gateway_transaction_no: Mapped[str | None] = mapped_column(String(100), nullable=True)
    raw_gateway_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    parent_transaction_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
