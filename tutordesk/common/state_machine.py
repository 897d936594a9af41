"""Status transitions enforced for lessons and notification logs."""

from tutordesk.common.errors import InvalidInput

LESSON_TRANSITIONS: dict[str, set[str]] = {
    "SCHEDULED": {"COMPLETED", "CANCELED"},
    "COMPLETED": set(),
    "CANCELED": set(),
}

NOTIFICATION_TRANSITIONS: dict[str, set[str]] = {
    "PENDING": {"SENT", "FAILED"},
    "SENT": set(),
    "FAILED": set(),
}


def validate_transition(current: str, new: str, transitions: dict[str, set[str]] = LESSON_TRANSITIONS) -> None:
    """Raise when a transition is not allowed by the state machine."""

    if new not in transitions.get(current, set()):
        raise InvalidInput(f"Invalid transition: {current} -> {new}")
