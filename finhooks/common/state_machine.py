"""Delivery record and subscription state machines."""

from finhooks.common.errors import InvalidTransition

PENDING = "PENDING"
RETRYING = "RETRYING"
SUCCESS = "SUCCESS"
FAILED = "FAILED"

ACTIVE = "ACTIVE"
INACTIVE = "INACTIVE"
DISABLED = "DISABLED"

# FAILED -> PENDING is only taken by manual dead-letter replay.
DELIVERY_TRANSITIONS: dict[str, set[str]] = {
    PENDING: {SUCCESS, RETRYING, FAILED},
    RETRYING: {SUCCESS, RETRYING, FAILED},
    SUCCESS: set(),
    FAILED: {PENDING},
}

SUBSCRIPTION_TRANSITIONS: dict[str, set[str]] = {
    ACTIVE: {ACTIVE, INACTIVE, DISABLED},
    INACTIVE: {ACTIVE, INACTIVE},
    DISABLED: {ACTIVE, INACTIVE, DISABLED},
}

TERMINAL_DELIVERY_STATES = frozenset({SUCCESS, FAILED})


def validate_transition(current: str, new: str, transitions: dict[str, set[str]] = DELIVERY_TRANSITIONS) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in transitions.get(current, set()):
        raise InvalidTransition(f"Invalid transition: {current} -> {new}")
