"""In-process payment method registry used to resolve method IDs."""

import threading

from paycore.common.errors import ValidationError
from paycore.services.payments.schemas import PaymentMethod


class PaymentMethodRegistry:
    """Methods become immutable once a transaction has used them."""

    def __init__(self, methods: tuple[PaymentMethod, ...] | list[PaymentMethod] = ()) -> None:
        self._lock = threading.Lock()
        self._methods: dict[str, PaymentMethod] = {}
        self._used: set[str] = set()
        for method in methods:
            self.register(method)

    def register(self, method: PaymentMethod) -> PaymentMethod:
        with self._lock:
            existing = self._methods.get(method.payment_method_id)
            if existing is not None and method.payment_method_id in self._used and existing != method:
                raise ValidationError(
                    f"payment method {method.payment_method_id} is already used by a transaction and cannot change"
                )
            self._methods[method.payment_method_id] = method
            return method

    def get(self, payment_method_id: str) -> PaymentMethod | None:
        return self._methods.get(payment_method_id)

    def mark_used(self, payment_method_id: str) -> None:
        with self._lock:
            self._used.add(payment_method_id)

    def is_used(self, payment_method_id: str) -> bool:
        return payment_method_id in self._used
