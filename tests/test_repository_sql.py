"""SQLAlchemy repository against an in-memory SQLite database."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from paycore.common.db import init_schema, make_session_factory
from paycore.common.errors import ValidationError
from paycore.common.state_machine import TransactionStatus
from paycore.services.payments.repository import SqlTransactionRepository
from paycore.services.payments.schemas import PaymentTransaction, TransactionType
from paycore.services.payments.store import TransactionStore


NOW = datetime(2024, 5, 1, 3, 0, tzinfo=timezone.utc)


@pytest.fixture
def repository():
    engine = create_engine(
        "sqlite+pysqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_schema(engine)
    yield SqlTransactionRepository(make_session_factory(engine))
    engine.dispose()


def _transaction(suffix, created_at=NOW, **overrides):
    values = dict(
        transaction_id=f"PAY-{suffix}",
        external_transaction_id=f"ORDER123_{suffix}",
        order_id="ORDER123",
        amount=Decimal("250000"),
        transaction_type=TransactionType.PAYMENT,
        status=TransactionStatus.PENDING_USER_ACTION,
        payment_method_id="pm-credit",
        raw_gateway_response='{"paymentUrl": "https://pay"}',
        expires_at=created_at + timedelta(minutes=15),
        created_at=created_at,
        updated_at=created_at,
    )
    values.update(overrides)
    return PaymentTransaction(**values)


def test_round_trip_keeps_values(repository):
    """Rows load back with types, amounts and timezones intact."""

    original = _transaction("1")
    repository.insert(original)

    loaded = repository.get("PAY-1")

    assert loaded.amount == Decimal("250000")
    assert loaded.status is TransactionStatus.PENDING_USER_ACTION
    assert loaded.transaction_type is TransactionType.PAYMENT
    assert loaded.created_at == NOW
    assert loaded.created_at.tzinfo is not None
    assert loaded.expires_at == NOW + timedelta(minutes=15)
    assert loaded.raw_gateway_response == original.raw_gateway_response
    assert repository.get_by_external_id("ORDER123_1").transaction_id == "PAY-1"
    assert repository.get("PAY-404") is None
    assert repository.get_by_external_id("ORDER123_404") is None


def test_list_by_order_is_oldest_first(repository):
    """Order listings are sorted by creation time."""

    repository.insert(_transaction("2", created_at=NOW + timedelta(minutes=1)))
    repository.insert(_transaction("1"))
    repository.insert(_transaction("9", order_id="ORDER999"))

    assert [t.transaction_id for t in repository.list_by_order("ORDER123")] == ["PAY-1", "PAY-2"]


def test_duplicate_external_id_is_rejected(repository):
    """The external ID is unique at the database level."""

    repository.insert(_transaction("1"))

    with pytest.raises(ValidationError):
        repository.insert(_transaction("1", transaction_id="PAY-other"))


def test_replace_updates_row(repository):
    """Replacing a transaction rewrites its row."""

    repository.insert(_transaction("1"))

    repository.replace(
        _transaction("1", status=TransactionStatus.SUCCESS, gateway_transaction_no="14000000")
    )

    loaded = repository.get("PAY-1")
    assert loaded.status is TransactionStatus.SUCCESS
    assert loaded.gateway_transaction_no == "14000000"


def test_replace_cannot_change_external_id(repository):
    """The external ID of a stored row is fixed."""

    repository.insert(_transaction("1"))

    with pytest.raises(ValueError):
        repository.replace(_transaction("1", external_transaction_id="ORDER123_other"))


def test_store_on_sql_repository_enforces_transitions(repository):
    """The store keeps its transition rules on top of SQL."""

    store = TransactionStore(repository)
    snapshot = store.save(_transaction("1"))

    settled = store.update("ORDER123_1", lambda t: t.model_copy(update={"status": TransactionStatus.FAILED}))

    assert settled.status is TransactionStatus.FAILED
    assert not store.compare_and_set(snapshot, snapshot.model_copy(update={"status": TransactionStatus.SUCCESS}))
    with pytest.raises(ValueError):
        store.update("ORDER123_1", lambda t: t.model_copy(update={"status": TransactionStatus.SUCCESS}))
    assert store.get("PAY-1").status is TransactionStatus.FAILED
