"""
Timeline records: tasks, sessions, external hand-offs and audit events.

These are plain rows. Derived state (stage) and rules (invariants) live in
taskledger.stages.
"""

from dataclasses import dataclass, field
from enum import Enum


class Lifecycle(str, Enum):
    """Task lifecycle. Completed and Cancelled are terminal."""

    OPEN = "open"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not Lifecycle.OPEN


class EventKind(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    ENQUEUED = "enqueued"
    DEQUEUED = "dequeued"
    REORDERED = "reordered"
    SESSION_OPENED = "session_opened"
    SESSION_CLOSED = "session_closed"
    SESSIONS_REWRITTEN = "sessions_rewritten"
    EXTERNAL_SENT = "external_sent"
    EXTERNAL_COLLECTED = "external_collected"
    LIFECYCLE_CHANGED = "lifecycle_changed"
    RESPAWNED = "respawned"
    DELETED = "deleted"


# Attributes a caller may change after creation.
MUTABLE_TASK_FIELDS = (
    "description",
    "project",
    "tags",
    "due_ts",
    "scheduled_ts",
    "wait_ts",
    "alloc_secs",
    "recurrence_rule",
)


@dataclass
class Task:
    id: int
    uuid: str
    description: str
    lifecycle: Lifecycle = Lifecycle.OPEN
    project: str | None = None
    tags: list[str] = field(default_factory=list)
    due_ts: int | None = None
    scheduled_ts: int | None = None
    wait_ts: int | None = None
    alloc_secs: int | None = None
    recurrence_rule: str | None = None
    created_ts: int = 0
    modified_ts: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.lifecycle.is_terminal


@dataclass
class Session:
    id: int
    task_id: int
    start_ts: int
    end_ts: int | None = None
    created_ts: int = 0

    @property
    def is_open(self) -> bool:
        return self.end_ts is None

    def duration(self, now: int | None = None) -> int:
        """Seconds covered. Open sessions are measured up to *now*."""
        end = self.end_ts if self.end_ts is not None else now
        if end is None:
            return 0
        return max(0, end - self.start_ts)

    @property
    def bounds(self) -> tuple[int, int | None]:
        return (self.start_ts, self.end_ts)


@dataclass
class ExternalRecord:
    id: int
    task_id: int
    sent_ts: int
    recipient: str | None = None
    request: str | None = None
    collected_ts: int | None = None

    @property
    def is_waiting(self) -> bool:
        return self.collected_ts is None


@dataclass
class TaskEvent:
    id: int
    task_id: int
    kind: str
    ts: int
    detail: dict = field(default_factory=dict)
