"""Unit tests for payment transaction state-machine guardrails."""

import pytest

from paycore.common.state_machine import TERMINAL_STATUSES, TransactionStatus, is_terminal, validate_transition


@pytest.mark.parametrize("target", ["SUCCESS", "FAILED", "CANCELLED"])
def test_pending_can_settle(target):
    """A pending payment may move to any terminal outcome."""

    validate_transition(TransactionStatus.PENDING_USER_ACTION, TransactionStatus(target))


@pytest.mark.parametrize("current", sorted(TERMINAL_STATUSES))
def test_terminal_states_are_final(current):
    """Terminal transactions never change status again."""

    for target in TransactionStatus:
        with pytest.raises(ValueError):
            validate_transition(current, target)


def test_strings_are_accepted():
    """Status names work as well as enum members."""

    validate_transition("PENDING_USER_ACTION", "SUCCESS")
    with pytest.raises(ValueError, match="SUCCESS -> FAILED"):
        validate_transition("SUCCESS", "FAILED")


def test_is_terminal():
    """Only pending is non-terminal."""

    assert not is_terminal(TransactionStatus.PENDING_USER_ACTION)
    assert all(is_terminal(status) for status in TERMINAL_STATUSES)
