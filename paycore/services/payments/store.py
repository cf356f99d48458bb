"""Transaction store: the single source of truth for transaction state.

Writers for one external transaction ID are serialized by a per-key lock;
readers get frozen snapshots without locking.
"""

import threading
from collections.abc import Callable
from contextlib import contextmanager
from datetime import datetime

from paycore.common.errors import NotFoundError
from paycore.common.state_machine import TransactionStatus, validate_transition
from paycore.services.payments.repository import InMemoryTransactionRepository, TransactionRepository
from paycore.services.payments.schemas import PaymentTransaction, TransactionType


class KeyedLock:
    """Re-entrant lock per key; entries are dropped once nobody holds or waits."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = [threading.RLock(), 0]
            entry[1] += 1
        lock = entry[0]
        lock.acquire()
        try:
            yield
        finally:
            lock.release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class TransactionStore:
    def __init__(self, repository: TransactionRepository | None = None) -> None:
        self.repository = repository or InMemoryTransactionRepository()
        self._transaction_locks = KeyedLock()
        self._order_locks = KeyedLock()

    def get(self, transaction_id: str) -> PaymentTransaction | None:
        return self.repository.get(transaction_id)

    def get_by_external_id(self, external_transaction_id: str) -> PaymentTransaction | None:
        return self.repository.get_by_external_id(external_transaction_id)

    def list_for_order(self, order_id: str) -> list[PaymentTransaction]:
        return self.repository.list_by_order(order_id)

    def latest_for_order(
        self, order_id: str, transaction_type: TransactionType = TransactionType.PAYMENT
    ) -> PaymentTransaction | None:
        for transaction in reversed(self.list_for_order(order_id)):
            if transaction.transaction_type is transaction_type:
                return transaction
        return None

    def pending_for_order(self, order_id: str, now: datetime) -> PaymentTransaction | None:
        """The in-flight payment for an order, ignoring ones whose gateway session expired."""

        for transaction in reversed(self.list_for_order(order_id)):
            if transaction.transaction_type is not TransactionType.PAYMENT:
                continue
            if transaction.status is not TransactionStatus.PENDING_USER_ACTION:
                continue
            if transaction.expires_at is not None and transaction.expires_at <= now:
                continue
            return transaction
        return None

    def order_lock(self, order_id: str):
        return self._order_locks.hold(order_id)

    def transaction_lock(self, external_transaction_id: str):
        return self._transaction_locks.hold(external_transaction_id)

    def save(self, transaction: PaymentTransaction) -> PaymentTransaction:
        """Insert a new transaction under both its internal and external IDs."""

        with self.transaction_lock(transaction.external_transaction_id):
            self.repository.insert(transaction)
        return transaction

    def update(
        self,
        external_transaction_id: str,
        mutate: Callable[[PaymentTransaction], PaymentTransaction],
    ) -> PaymentTransaction:
        """Atomically read-modify-write one transaction.

        `mutate` runs under the key's lock and returns either the same object
        (no change) or a replacement.
        """

        with self.transaction_lock(external_transaction_id):
            current = self.repository.get_by_external_id(external_transaction_id)
            if current is None:
                raise NotFoundError(f"transaction not found for external id {external_transaction_id}")
            updated = mutate(current)
            if updated is current or updated == current:
                return current
            self._check_replacement(current, updated)
            self.repository.replace(updated)
            return updated

    def compare_and_set(self, expected: PaymentTransaction, updated: PaymentTransaction) -> bool:
        """Replace `expected` with `updated` only if nothing changed in between."""

        with self.transaction_lock(expected.external_transaction_id):
            current = self.repository.get_by_external_id(expected.external_transaction_id)
            if current is None or current != expected:
                return False
            self._check_replacement(current, updated)
            self.repository.replace(updated)
            return True

    @staticmethod
    def _check_replacement(current: PaymentTransaction, updated: PaymentTransaction) -> None:
        if (
            updated.transaction_id != current.transaction_id
            or updated.external_transaction_id != current.external_transaction_id
        ):
            raise ValueError("transaction identity cannot change on update")
        if updated.status is not current.status:
            validate_transition(current.status, updated.status)
