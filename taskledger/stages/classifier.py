"""
Stage Classifier - derives a task's workflow stage from stored facts.

Stages are never stored. classify() is total over every combination of
its inputs and resolves conflicts by strict precedence:

    cancelled > completed > external > active > queued > stalled > proposed

External outranks Active only when nothing is being timed: a hand-off
that is still on the clock reads as Active.
"""

from dataclasses import dataclass
from enum import Enum

from taskledger.timeline.models import Lifecycle


class Stage(str, Enum):
    """Derived workflow stages."""

    CANCELLED = "cancelled"
    COMPLETED = "completed"
    EXTERNAL = "external"
    ACTIVE = "active"
    QUEUED = "queued"
    STALLED = "stalled"
    PROPOSED = "proposed"

    @property
    def sort_order(self) -> int:
        """Display order: the task being worked on first, finished work last."""
        return _SORT_ORDER[self]

    @property
    def is_terminal(self) -> bool:
        return self in (Stage.CANCELLED, Stage.COMPLETED)


_SORT_ORDER = {
    Stage.ACTIVE: 0,
    Stage.QUEUED: 1,
    Stage.EXTERNAL: 2,
    Stage.STALLED: 3,
    Stage.PROPOSED: 4,
    Stage.COMPLETED: 5,
    Stage.CANCELLED: 6,
}


@dataclass(frozen=True)
class TaskFacts:
    """The orthogonal facts the stage is derived from."""

    lifecycle: Lifecycle = Lifecycle.OPEN
    is_queued_at_head: bool = False
    is_queued: bool = False
    has_open_session: bool = False
    is_external_waiting: bool = False
    has_any_sessions: bool = False


def classify(
    lifecycle: Lifecycle,
    is_queued_at_head: bool,
    is_queued: bool,
    has_open_session: bool,
    is_external_waiting: bool,
    has_any_sessions: bool,
) -> Stage:
    # is_queued_at_head is implied by has_open_session whenever the
    # invariants hold, so it never decides the stage on its own.
    lifecycle = Lifecycle(lifecycle)
    if lifecycle is Lifecycle.CANCELLED:
        return Stage.CANCELLED
    if lifecycle is Lifecycle.COMPLETED:
        return Stage.COMPLETED
    if is_external_waiting and not has_open_session:
        return Stage.EXTERNAL
    if has_open_session:
        return Stage.ACTIVE
    if is_queued:
        return Stage.QUEUED
    if has_any_sessions:
        return Stage.STALLED
    return Stage.PROPOSED


def classify_stage(facts: TaskFacts) -> Stage:
    return classify(
        facts.lifecycle,
        facts.is_queued_at_head,
        facts.is_queued,
        facts.has_open_session,
        facts.is_external_waiting,
        facts.has_any_sessions,
    )
