"""Unit tests for lesson and notification status guardrails."""

import pytest

from tutordesk.common.state_machine import NOTIFICATION_TRANSITIONS, validate_transition


def test_valid_transition():
    """Sanity check: a scheduled lesson can be completed."""

    validate_transition("SCHEDULED", "COMPLETED")
    validate_transition("SCHEDULED", "CANCELED")


def test_invalid_transition():
    """Finished lessons never go back to the schedule."""

    with pytest.raises(ValueError):
        validate_transition("COMPLETED", "SCHEDULED")
    with pytest.raises(ValueError):
        validate_transition("CANCELED", "COMPLETED")


def test_notification_log_is_final_once_sent():
    validate_transition("PENDING", "SENT", NOTIFICATION_TRANSITIONS)
    validate_transition("PENDING", "FAILED", NOTIFICATION_TRANSITIONS)
    with pytest.raises(ValueError):
        validate_transition("SENT", "FAILED", NOTIFICATION_TRANSITIONS)
