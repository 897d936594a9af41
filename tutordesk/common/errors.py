"""Error taxonomy shared by scheduling, ledger and notification services.

Dedupe collisions and gateway delivery failures are deliberately absent: the
first is a successful no-op and the second is only recorded on the log row.
"""


class TutorDeskError(Exception):
    """Base class for errors surfaced to callers of the core services."""


class InvalidInput(TutorDeskError, ValueError):
    """Rejected input; raised before any network call or state mutation."""


class NotFound(TutorDeskError, LookupError):
    """Referenced lesson, account or participant does not exist for the teacher."""


class RangeLoadError(TutorDeskError, RuntimeError):
    """Lesson range fetch failed or timed out; cached entries are untouched."""


class MutationError(TutorDeskError, RuntimeError):
    """Save/delete/ledger write failed; no local state was committed."""
