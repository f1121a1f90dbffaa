"""
Error taxonomy for the ledger core.

ValidationError and NoOverlap are user-correctable. InvariantViolation is
raised before commit, so the store is never left half-written.
ConfirmationRequired is not a failure: the caller re-issues the same call
with the token once the user has agreed to the rewrite.
"""


class LedgerError(Exception):
    """Base class for all ledger errors."""

    pass


class ValidationError(LedgerError):
    """Malformed input: bad interval, bad recurrence rule, bad sequence."""

    pass


class InvariantViolation(LedgerError):
    """Raised when an operation would leave the stored facts inconsistent."""

    def __init__(self, message: str, violations: list[str] | None = None):
        super().__init__(message)
        self.violations = violations or [message]


class NoOverlap(LedgerError):
    """A removal window touches no recorded session."""

    def __init__(self, start_ts: int, end_ts: int):
        super().__init__(f"No session overlaps [{start_ts}, {end_ts})")
        self.start_ts = start_ts
        self.end_ts = end_ts


class ConfirmationRequired(LedgerError):
    """
    A history rewrite needs explicit consent.

    Attributes:
        token: value to pass back as ``confirmation_token``
        changes: the planned SessionChange list, for preview
    """

    def __init__(self, token: str, changes: list):
        super().__init__(
            f"Rewriting {len(changes)} session change(s) requires confirmation (token {token})"
        )
        self.token = token
        self.changes = changes


class NotFound(LedgerError):
    pass


class TaskNotFound(NotFound):
    def __init__(self, task_id: int):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


class NoOpenSession(NotFound):
    def __init__(self):
        super().__init__("No session is running")
