"""
Invariant Guard - the only way stored facts change.

Every mutating operation runs in one store transaction:
1. reject the request if it cannot be made consistent
2. apply the forced side effects (close a session, dequeue, ...)
3. apply the change itself
4. re-check every invariant; any violation rolls everything back

Forced side effects are returned to the caller as SideEffect records so
nothing changes silently.
"""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

from taskledger.errors import InvariantViolation, TaskNotFound, ValidationError
from taskledger.respawn.scheduler import RespawnOutcome, RespawnScheduler, RespawnStatus
from taskledger.sessions.engine import CloseResult, IntervalEngine
from taskledger.sessions.intervals import SessionChange
from taskledger.stages.invariants import assert_invariants
from taskledger.timeline.models import EventKind, Lifecycle, Task
from taskledger.timeline.store import TimelineStore

logger = logging.getLogger(__name__)


class SideEffectKind(str, Enum):
    SESSION_CLOSED = "session_closed"
    MOVED_TO_HEAD = "moved_to_head"
    ENQUEUED = "enqueued"
    DEQUEUED = "dequeued"
    EXTERNAL_COLLECTED = "external_collected"
    SESSIONS_DELETED = "sessions_deleted"
    EXTERNALS_DELETED = "externals_deleted"


@dataclass
class SideEffect:
    kind: SideEffectKind
    task_id: int
    detail: dict = field(default_factory=dict)


@dataclass
class TransitionResult:
    task_id: int
    lifecycle: Lifecycle
    side_effects: list[SideEffect] = field(default_factory=list)
    respawn: RespawnOutcome = field(
        default_factory=lambda: RespawnOutcome(RespawnStatus.NOT_APPLICABLE)
    )


class InvariantGuard:
    """
    Gatekeeper for queue, session, hand-off and lifecycle changes.

    Timestamps are supplied by the caller; the guard never reads a clock.
    """

    def __init__(
        self,
        store: TimelineStore,
        engine: IntervalEngine | None = None,
        scheduler: RespawnScheduler | None = None,
    ):
        self.store = store
        self.engine = engine or IntervalEngine(store)
        self.scheduler = scheduler or RespawnScheduler(store)

    @contextmanager
    def transaction(self) -> Iterator[TimelineStore]:
        """Store transaction that re-checks every invariant before commit."""
        with self.store.transaction():
            yield self.store
            assert_invariants(self.store)

    # ==================== Lookups ====================

    def _task(self, task_id: int) -> Task:
        task = self.store.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def _live_task(self, task_id: int, action: str) -> Task:
        task = self._task(task_id)
        if task.is_terminal:
            raise InvariantViolation(f"Task {task_id} is {task.lifecycle.value}; cannot {action}")
        return task

    def _timed_task_id(self) -> int | None:
        session = self.store.get_open_session()
        return session.task_id if session else None

    def _is_waiting(self, task_id: int) -> bool:
        return bool(self.store.get_waiting_externals(task_id))

    # ==================== Cascade helpers ====================
    # No invariant checks here: intermediate states may be inconsistent
    # until the enclosing transaction() finishes.

    def _remove_from_queue(self, task_id: int, at_ts: int, reason: str) -> SideEffect | None:
        queue = self.store.get_queue()
        if task_id not in queue:
            return None
        position = queue.index(task_id)
        queue.remove(task_id)
        self.store.set_queue(queue, at_ts)
        self.store.record_event(task_id, EventKind.DEQUEUED, at_ts, {"reason": reason})
        return SideEffect(
            SideEffectKind.DEQUEUED, task_id, {"position": position, "reason": reason}
        )

    def _close_running(self, at_ts: int, reason: str) -> tuple[CloseResult, list[SideEffect]]:
        result = self.engine.close_open(at_ts)
        self.store.record_event(
            result.task_id,
            EventKind.SESSION_CLOSED,
            at_ts,
            {
                "session_id": result.session_id,
                "duration": result.duration,
                "outcome": result.outcome.value,
                "reason": reason,
            },
        )
        effects = [
            SideEffect(
                SideEffectKind.SESSION_CLOSED,
                result.task_id,
                {
                    "session_id": result.session_id,
                    "duration": result.duration,
                    "outcome": result.outcome.value,
                },
            )
        ]
        # An untimed hand-off may not sit in the queue.
        if self._is_waiting(result.task_id):
            dequeued = self._remove_from_queue(result.task_id, at_ts, "external")
            if dequeued:
                effects.append(dequeued)
        return result, effects

    # ==================== Sessions ====================

    def open_session(self, task_id: int, at_ts: int) -> list[SideEffect]:
        """
        Start timing *task_id* at *at_ts*.

        Closes any other running session at the same instant and brings the
        task to the queue head.
        """
        self._live_task(task_id, "start timing")

        running = self.store.get_open_session()
        if running is not None and running.task_id == task_id:
            raise InvariantViolation(f"Task {task_id} is already being timed")

        for session in self.store.list_sessions(task_id):
            if session.end_ts is not None and session.start_ts <= at_ts < session.end_ts:
                raise InvariantViolation(
                    f"Start {at_ts} falls inside session {session.id} "
                    f"[{session.start_ts}, {session.end_ts}) of task {task_id}"
                )

        effects: list[SideEffect] = []
        with self.transaction():
            if running is not None:
                _, closed = self._close_running(at_ts, "switch")
                effects.extend(closed)

            queue = self.store.get_queue()
            if not queue or queue[0] != task_id:
                if task_id in queue:
                    queue.remove(task_id)
                    kind = SideEffectKind.MOVED_TO_HEAD
                else:
                    kind = SideEffectKind.ENQUEUED
                self.store.set_queue([task_id] + queue, at_ts)
                self.store.record_event(task_id, EventKind.ENQUEUED, at_ts, {"position": 0})
                effects.append(SideEffect(kind, task_id, {"position": 0}))

            session = self.store.create_session(task_id, at_ts, None, at_ts)
            self.store.record_event(
                task_id, EventKind.SESSION_OPENED, at_ts, {"session_id": session.id}
            )

        logger.info(
            "Started timing task %s at %s",
            task_id,
            at_ts,
            extra={"task_id": task_id, "session_id": session.id},
        )
        return effects

    def close_session(self, at_ts: int) -> CloseResult:
        """
        Stop the running session.

        Raises:
            NoOpenSession: nothing is running
        """
        with self.transaction():
            result, effects = self._close_running(at_ts, "stop")
        # The first effect describes the close itself.
        result.side_effects = effects[1:]
        return result

    # ==================== Queue ====================

    def enqueue(self, task_id: int, at_ts: int) -> list[SideEffect]:
        """Append to the queue tail. An already-queued task moves to the tail."""
        self._live_task(task_id, "enqueue")
        timed = self._timed_task_id()
        if self._is_waiting(task_id) and timed != task_id:
            raise InvariantViolation(f"Task {task_id} is waiting on a hand-off; collect it first")

        queue = self.store.get_queue()
        if timed == task_id:
            if len(queue) > 1:
                raise InvariantViolation(
                    f"Task {task_id} is being timed and must stay at the queue head"
                )
            return []

        with self.transaction():
            queue = [t for t in queue if t != task_id] + [task_id]
            self.store.set_queue(queue, at_ts)
            self.store.record_event(
                task_id, EventKind.ENQUEUED, at_ts, {"position": len(queue) - 1}
            )
        logger.info("Enqueued task %s at position %s", task_id, len(queue) - 1)
        return []

    def move_to_head(self, task_id: int, at_ts: int) -> list[SideEffect]:
        self._live_task(task_id, "move to the queue head")
        timed = self._timed_task_id()
        if timed is not None and timed != task_id:
            raise InvariantViolation(
                f"Task {timed} is being timed and must stay at the queue head"
            )
        if self._is_waiting(task_id) and timed != task_id:
            raise InvariantViolation(f"Task {task_id} is waiting on a hand-off; collect it first")

        queue = self.store.get_queue()
        if queue and queue[0] == task_id:
            return []
        with self.transaction():
            self.store.set_queue([task_id] + [t for t in queue if t != task_id], at_ts)
            self.store.record_event(task_id, EventKind.ENQUEUED, at_ts, {"position": 0})
        logger.info("Moved task %s to the queue head", task_id)
        return []

    def dequeue(self, task_id: int, at_ts: int) -> list[SideEffect]:
        """Remove from the queue, stopping the clock first if it is running."""
        self._task(task_id)
        if task_id not in self.store.get_queue():
            raise ValidationError(f"Task {task_id} is not queued")

        effects: list[SideEffect] = []
        with self.transaction():
            if self._timed_task_id() == task_id:
                _, closed = self._close_running(at_ts, "dequeue")
                effects.extend(closed)
            self._remove_from_queue(task_id, at_ts, "requested")
        logger.info("Dequeued task %s", task_id)
        return [e for e in effects if e.kind is not SideEffectKind.DEQUEUED]

    def reorder(self, sequence: list[int], at_ts: int) -> list[SideEffect]:
        """
        Replace the queue order. *sequence* must be a permutation of the
        current queue and keep the timed task at the head.
        """
        sequence = list(sequence)
        queue = self.store.get_queue()
        if len(set(sequence)) != len(sequence) or sorted(sequence) != sorted(queue):
            raise ValidationError(
                f"Reorder must be a permutation of the current queue {queue}, got {sequence}"
            )
        timed = self._timed_task_id()
        if timed is not None and sequence[0] != timed:
            raise InvariantViolation(
                f"Task {timed} is being timed and must stay at the queue head"
            )
        if sequence == queue:
            return []

        with self.transaction():
            self.store.set_queue(sequence, at_ts)
            self.store.record_event(sequence[0], EventKind.REORDERED, at_ts, {"order": sequence})
        logger.info("Queue reordered: %s", sequence)
        return []

    # ==================== External hand-offs ====================

    def mark_external(
        self,
        task_id: int,
        at_ts: int,
        recipient: str | None = None,
        request: str | None = None,
    ) -> list[SideEffect]:
        """
        Record that *task_id* was handed off. A queued task that is not being
        timed leaves the queue.
        """
        self._live_task(task_id, "hand off")
        if self._is_waiting(task_id):
            raise ValidationError(f"Task {task_id} is already waiting on a hand-off")

        effects: list[SideEffect] = []
        with self.transaction():
            if self._timed_task_id() != task_id:
                dequeued = self._remove_from_queue(task_id, at_ts, "external")
                if dequeued:
                    effects.append(dequeued)
            record = self.store.create_external(task_id, at_ts, recipient, request)
            self.store.record_event(
                task_id,
                EventKind.EXTERNAL_SENT,
                at_ts,
                {"external_id": record.id, "recipient": recipient},
            )
        logger.info("Task %s handed off to %s", task_id, recipient or "(unspecified)")
        return effects

    def collect_external(self, task_id: int, at_ts: int, requeue: bool = False) -> list[SideEffect]:
        """Mark the hand-off as returned. With *requeue*, append to the queue."""
        self._task(task_id)
        if not self._is_waiting(task_id):
            raise ValidationError(f"Task {task_id} is not waiting on a hand-off")

        effects: list[SideEffect] = []
        with self.transaction():
            self.store.collect_externals(task_id, at_ts)
            self.store.record_event(task_id, EventKind.EXTERNAL_COLLECTED, at_ts, {})
            queue = self.store.get_queue()
            if requeue and task_id not in queue:
                self.store.set_queue(queue + [task_id], at_ts)
                self.store.record_event(
                    task_id, EventKind.ENQUEUED, at_ts, {"position": len(queue)}
                )
                effects.append(
                    SideEffect(SideEffectKind.ENQUEUED, task_id, {"position": len(queue)})
                )
        logger.info("Collected hand-off for task %s", task_id)
        return effects

    # ==================== History corrections ====================

    def _check_rewrite(self, changes: list[SessionChange], at_ts: int) -> None:
        """Reject plans touching terminal tasks or pushing the running session past now."""
        for task_id in sorted({c.task_id for c in changes}):
            self._live_task(task_id, "rewrite its sessions")
        for change in changes:
            if change.before is None or change.before[1] is not None:
                continue
            for piece in (change.after, change.remainder):
                if piece is not None and piece[1] is None and piece[0] > at_ts:
                    raise ValidationError(
                        f"Correction would restart the running session at {piece[0]}, "
                        f"after the current time {at_ts}"
                    )

    def remove_interval(
        self, t0: int, t1: int, at_ts: int, confirmation_token: str | None = None
    ) -> list[SessionChange]:
        self._check_rewrite(self.engine.plan_remove(t0, t1), at_ts)
        with self.transaction():
            changes = self.engine.remove(t0, t1, at_ts, confirmation_token)
            self._record_rewrite(changes, at_ts)
        return changes

    def insert_interval(
        self,
        t0: int,
        t1: int,
        task_id: int,
        at_ts: int,
        confirmation_token: str | None = None,
    ) -> list[SessionChange]:
        self._live_task(task_id, "record time")
        self._check_rewrite(self.engine.plan_insert(t0, t1), at_ts)
        with self.transaction():
            changes = self.engine.insert(t0, t1, task_id, at_ts, confirmation_token)
            self._record_rewrite(changes, at_ts)
        return changes

    def _record_rewrite(self, changes: list[SessionChange], at_ts: int) -> None:
        for task_id in sorted({c.task_id for c in changes}):
            self.store.record_event(
                task_id,
                EventKind.SESSIONS_REWRITTEN,
                at_ts,
                {"changes": [c.to_dict() for c in changes if c.task_id == task_id]},
            )

    # ==================== Lifecycle ====================

    def transition_lifecycle(self, task_id: int, target: Lifecycle, at_ts: int) -> TransitionResult:
        """
        Complete or cancel a task, detaching it from the clock, the queue and
        any hand-off first. Respawn runs afterwards in its own transaction.
        """
        try:
            target = Lifecycle(target)
        except ValueError:
            raise ValidationError(f"Unknown lifecycle target: {target!r}") from None
        if not target.is_terminal:
            raise ValidationError(f"Lifecycle can only move to completed or cancelled, not {target.value}")
        task = self._live_task(task_id, f"mark {target.value}")

        effects: list[SideEffect] = []
        with self.transaction():
            if self._timed_task_id() == task_id:
                _, closed = self._close_running(at_ts, target.value)
                effects.extend(closed)
            dequeued = self._remove_from_queue(task_id, at_ts, target.value)
            if dequeued:
                effects.append(dequeued)
            if self.store.collect_externals(task_id, at_ts):
                self.store.record_event(task_id, EventKind.EXTERNAL_COLLECTED, at_ts, {})
                effects.append(SideEffect(SideEffectKind.EXTERNAL_COLLECTED, task_id))

            self.store.update_task(task_id, {"lifecycle": target, "modified_ts": at_ts})
            self.store.record_event(
                task_id,
                EventKind.LIFECYCLE_CHANGED,
                at_ts,
                {"from": task.lifecycle.value, "to": target.value},
            )
        logger.info("Task %s is now %s", task_id, target.value)

        finished = self._task(task_id)
        outcome = self.scheduler.respawn(finished, at_ts)
        return TransitionResult(task_id, target, effects, outcome)

    # ==================== Deletion ====================

    def delete_task(self, task_id: int, at_ts: int) -> list[SideEffect]:
        """Remove a task and everything it owns. A correction, not a lifecycle state."""
        task = self._task(task_id)

        effects: list[SideEffect] = []
        with self.transaction():
            sessions = self.store.list_sessions(task_id)
            for session in sessions:
                self.store.delete_session(session.id)
            if sessions:
                effects.append(
                    SideEffect(
                        SideEffectKind.SESSIONS_DELETED,
                        task_id,
                        {"session_ids": [s.id for s in sessions]},
                    )
                )
            dequeued = self._remove_from_queue(task_id, at_ts, "deleted")
            if dequeued:
                effects.append(dequeued)
            removed = self.store.delete_externals(task_id)
            if removed:
                effects.append(SideEffect(SideEffectKind.EXTERNALS_DELETED, task_id, {"count": removed}))

            self.store.delete_task(task_id)
            self.store.record_event(
                task_id, EventKind.DELETED, at_ts, {"description": task.description}
            )
        logger.info("Deleted task %s", task_id)
        return effects
