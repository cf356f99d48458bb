"""Payment transaction state machine enforced by the payment service."""

from enum import Enum


class TransactionStatus(str, Enum):
    PENDING_USER_ACTION = "PENDING_USER_ACTION"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


ALLOWED_TRANSITIONS: dict[TransactionStatus, set[TransactionStatus]] = {
    TransactionStatus.PENDING_USER_ACTION: {
        TransactionStatus.SUCCESS,
        TransactionStatus.FAILED,
        TransactionStatus.CANCELLED,
    },
    TransactionStatus.SUCCESS: set(),
    TransactionStatus.FAILED: set(),
    TransactionStatus.CANCELLED: set(),
}

TERMINAL_STATUSES = frozenset(status for status, targets in ALLOWED_TRANSITIONS.items() if not targets)


def is_terminal(status: TransactionStatus) -> bool:
    return TransactionStatus(status) in TERMINAL_STATUSES


def validate_transition(current: TransactionStatus, new: TransactionStatus) -> None:
    """Raise when a transition is not allowed by the state machine."""

    current, new = TransactionStatus(current), TransactionStatus(new)
    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current.value} -> {new.value}")
