"""Unit tests for intent state-machine guardrails."""

import pytest

from paysync.common.state_machine import is_terminal, validate_transition


def test_valid_transition():
    """Sanity check: pending may settle either way."""

    validate_transition("pending", "approved")
    validate_transition("pending", "rejected")


def test_terminal_states_do_not_move():
    """A settled intent must never change status again."""

    with pytest.raises(ValueError):
        validate_transition("approved", "rejected")
    with pytest.raises(ValueError):
        validate_transition("rejected", "approved")


def test_unknown_status_is_rejected():
    with pytest.raises(ValueError):
        validate_transition("pending", "refunded")


def test_is_terminal():
    assert is_terminal("approved")
    assert is_terminal("rejected")
    assert not is_terminal("pending")
