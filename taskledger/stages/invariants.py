"""
Invariants Module - consistency checks over the stored facts.

Each check reads a TimelineSnapshot and raises InvariantViolation on the
first problem it finds. They run inside every guarded mutation, before
commit, so a failing check rolls the whole operation back.

The rules:
- at most one session is open
- the task with the open session is at the queue head
- completed/cancelled tasks are neither queued nor waiting on a hand-off
- a task waiting on a hand-off is queued only while it is being timed
- queue ordinals are exactly 0..N-1
- a task's sessions are well-formed and pairwise disjoint
"""

from collections import defaultdict
from dataclasses import dataclass, field

from taskledger.errors import InvariantViolation
from taskledger.sessions.intervals import find_overlaps
from taskledger.timeline.models import Session, Task
from taskledger.timeline.store import TimelineStore


@dataclass
class TimelineSnapshot:
    tasks: dict[int, Task] = field(default_factory=dict)
    sessions: list[Session] = field(default_factory=list)
    queue_ordinals: dict[int, int] = field(default_factory=dict)
    waiting_counts: dict[int, int] = field(default_factory=dict)

    @property
    def open_sessions(self) -> list[Session]:
        return [s for s in self.sessions if s.is_open]

    @property
    def head(self) -> int | None:
        for task_id, ordinal in self.queue_ordinals.items():
            if ordinal == 0:
                return task_id
        return None


def take_snapshot(store: TimelineStore) -> TimelineSnapshot:
    waiting: dict[int, int] = defaultdict(int)
    for record in store.get_waiting_externals():
        waiting[record.task_id] += 1
    return TimelineSnapshot(
        tasks={task.id: task for task in store.list_tasks()},
        sessions=store.list_sessions(),
        queue_ordinals=store.get_queue_ordinals(),
        waiting_counts=dict(waiting),
    )


# =============================================================================
# INVARIANT FUNCTIONS
# =============================================================================


def check_single_open_session(snap: TimelineSnapshot) -> None:
    open_sessions = snap.open_sessions
    if len(open_sessions) > 1:
        ids = [s.id for s in open_sessions]
        raise InvariantViolation(f"{len(open_sessions)} sessions are open: {ids}")


def check_timed_task_at_head(snap: TimelineSnapshot) -> None:
    for session in snap.open_sessions:
        ordinal = snap.queue_ordinals.get(session.task_id)
        if ordinal != 0:
            where = "not queued" if ordinal is None else f"at position {ordinal}"
            raise InvariantViolation(f"Timed task {session.task_id} is {where}, expected head")


def check_terminal_tasks_detached(snap: TimelineSnapshot) -> None:
    for task in snap.tasks.values():
        if not task.is_terminal:
            continue
        if task.id in snap.queue_ordinals:
            raise InvariantViolation(f"Task {task.id} is {task.lifecycle.value} but still queued")
        if snap.waiting_counts.get(task.id):
            raise InvariantViolation(
                f"Task {task.id} is {task.lifecycle.value} but still waiting on a hand-off"
            )
        if any(s.is_open for s in snap.sessions if s.task_id == task.id):
            raise InvariantViolation(f"Task {task.id} is {task.lifecycle.value} but still timed")


def check_external_not_queued(snap: TimelineSnapshot) -> None:
    timed = {s.task_id for s in snap.open_sessions}
    for task_id, count in snap.waiting_counts.items():
        if count > 1:
            raise InvariantViolation(f"Task {task_id} has {count} open hand-off records")
        if task_id in snap.queue_ordinals and task_id not in timed:
            raise InvariantViolation(f"Task {task_id} is waiting on a hand-off but queued")


def check_queue_dense(snap: TimelineSnapshot) -> None:
    ordinals = sorted(snap.queue_ordinals.values())
    if ordinals != list(range(len(ordinals))):
        raise InvariantViolation(f"Queue ordinals are not 0..{len(ordinals) - 1}: {ordinals}")


def check_sessions_disjoint(snap: TimelineSnapshot) -> None:
    by_task: dict[int, list] = defaultdict(list)
    for session in snap.sessions:
        by_task[session.task_id].append(session.bounds)
    for task_id, bounds in by_task.items():
        problems = find_overlaps(bounds)
        if problems:
            first, second = problems[0]
            if first == second:
                raise InvariantViolation(f"Task {task_id} has a malformed session {first}")
            raise InvariantViolation(f"Task {task_id} has overlapping sessions {first} and {second}")


# =============================================================================
# REGISTRY
# =============================================================================

ALL_INVARIANTS = [
    check_single_open_session,
    check_timed_task_at_head,
    check_terminal_tasks_detached,
    check_external_not_queued,
    check_queue_dense,
    check_sessions_disjoint,
]


def enforce_invariants(snap: TimelineSnapshot) -> list[str]:
    """
    Run all invariants. Returns list of violation messages. Empty = pass.
    """
    violations = []

    for invariant in ALL_INVARIANTS:
        try:
            invariant(snap)
        except InvariantViolation as e:
            violations.append(str(e))

    return violations


def check_invariants(store: TimelineStore) -> list[str]:
    return enforce_invariants(take_snapshot(store))


def assert_invariants(store: TimelineStore) -> None:
    """
    Raises:
        InvariantViolation: carrying every violated rule
    """
    violations = check_invariants(store)
    if violations:
        raise InvariantViolation("; ".join(violations), violations)
