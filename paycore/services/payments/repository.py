"""Swappable persistence behind the transaction store."""

import threading
from abc import ABC, abstractmethod
from datetime import timezone

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from paycore.common.errors import ValidationError
from paycore.services.payments.models import PaymentTransactionRecord
from paycore.services.payments.schemas import PaymentTransaction


class TransactionRepository(ABC):
    """Raw load/save operations; locking is the store's job."""

    @abstractmethod
    def get(self, transaction_id: str) -> PaymentTransaction | None: ...

    @abstractmethod
    def get_by_external_id(self, external_transaction_id: str) -> PaymentTransaction | None: ...

    @abstractmethod
    def list_by_order(self, order_id: str) -> list[PaymentTransaction]:
        """All transactions of an order, oldest first."""

    @abstractmethod
    def insert(self, transaction: PaymentTransaction) -> None: ...

    @abstractmethod
    def replace(self, transaction: PaymentTransaction) -> None: ...


class InMemoryTransactionRepository(TransactionRepository):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_id: dict[str, PaymentTransaction] = {}
        self._id_by_external: dict[str, str] = {}
        self._ids_by_order: dict[str, list[str]] = {}

    def get(self, transaction_id: str) -> PaymentTransaction | None:
        return self._by_id.get(transaction_id)

    def get_by_external_id(self, external_transaction_id: str) -> PaymentTransaction | None:
        transaction_id = self._id_by_external.get(external_transaction_id)
        return self._by_id.get(transaction_id) if transaction_id else None

    def list_by_order(self, order_id: str) -> list[PaymentTransaction]:
        with self._lock:
            ids = list(self._ids_by_order.get(order_id, ()))
        return [self._by_id[i] for i in ids]

    def insert(self, transaction: PaymentTransaction) -> None:
        with self._lock:
            if transaction.transaction_id in self._by_id:
                raise ValidationError(f"duplicate transaction id {transaction.transaction_id}")
            if transaction.external_transaction_id in self._id_by_external:
                raise ValidationError(f"duplicate external transaction id {transaction.external_transaction_id}")
            self._by_id[transaction.transaction_id] = transaction
            self._id_by_external[transaction.external_transaction_id] = transaction.transaction_id
            self._ids_by_order.setdefault(transaction.order_id, []).append(transaction.transaction_id)

    def replace(self, transaction: PaymentTransaction) -> None:
        with self._lock:
            current = self._by_id.get(transaction.transaction_id)
            if current is None:
                raise KeyError(transaction.transaction_id)
            if current.external_transaction_id != transaction.external_transaction_id:
                raise ValueError("external transaction id is immutable")
            self._by_id[transaction.transaction_id] = transaction


_COLUMNS = (
    "transaction_id",
    "external_transaction_id",
    "order_id",
    "amount",
    "currency",
    "transaction_type",
    "status",
    "payment_method_id",
    "gateway_transaction_no",
    "raw_gateway_response",
    "parent_transaction_id",
    "description",
    "expires_at",
    "created_at",
    "updated_at",
)


def _to_record_values(transaction: PaymentTransaction) -> dict:
    values = transaction.model_dump(include=set(_COLUMNS))
    values["transaction_type"] = transaction.transaction_type.value
    values["status"] = transaction.status.value
    return values


def _to_domain(record: PaymentTransactionRecord) -> PaymentTransaction:
    values = {column: getattr(record, column) for column in _COLUMNS}
    for column in ("expires_at", "created_at", "updated_at"):
        moment = values[column]
        # SQLite hands back naive datetimes; everything is stored in UTC.
        if moment is not None and moment.tzinfo is None:
            values[column] = moment.replace(tzinfo=timezone.utc)
    return PaymentTransaction(**values)


class SqlTransactionRepository(TransactionRepository):
    """SQLAlchemy-backed repository; one short session per call."""

    def __init__(self, session_factory) -> None:
        self.session_factory = session_factory

    def get(self, transaction_id: str) -> PaymentTransaction | None:
        with self.session_factory() as db:
            record = db.get(PaymentTransactionRecord, transaction_id)
            return _to_domain(record) if record else None

    def get_by_external_id(self, external_transaction_id: str) -> PaymentTransaction | None:
        with self.session_factory() as db:
            record = db.execute(
                select(PaymentTransactionRecord).where(
                    PaymentTransactionRecord.external_transaction_id == external_transaction_id
                )
            ).scalar_one_or_none()
            return _to_domain(record) if record else None

    def list_by_order(self, order_id: str) -> list[PaymentTransaction]:
        with self.session_factory() as db:
            records = db.execute(
                select(PaymentTransactionRecord)
                .where(PaymentTransactionRecord.order_id == order_id)
                .order_by(PaymentTransactionRecord.created_at, PaymentTransactionRecord.transaction_id)
            ).scalars()
            return [_to_domain(record) for record in records]

    def insert(self, transaction: PaymentTransaction) -> None:
        with self.session_factory() as db:
            db.add(PaymentTransactionRecord(**_to_record_values(transaction)))
            try:
                db.commit()
            except IntegrityError as exc:
                db.rollback()
                raise ValidationError(f"duplicate transaction {transaction.transaction_id}") from exc

    def replace(self, transaction: PaymentTransaction) -> None:
        with self.session_factory() as db:
            record = db.get(PaymentTransactionRecord, transaction.transaction_id)
            if record is None:
                raise KeyError(transaction.transaction_id)
            if record.external_transaction_id != transaction.external_transaction_id:
                raise ValueError("external transaction id is immutable")
            for column, value in _to_record_values(transaction).items():
                setattr(record, column, value)
            db.commit()
