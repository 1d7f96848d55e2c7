"""Payment intent state machine.

Intents only ever move forward from `pending` to one terminal state.
"""

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {APPROVED, REJECTED},
    APPROVED: set(),
    REJECTED: set(),
}

TERMINAL_STATES = frozenset({APPROVED, REJECTED})


def validate_transition(current: str, new: str) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in ALLOWED_TRANSITIONS.get(current, set()):
        raise ValueError(f"Invalid transition: {current} -> {new}")


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES
