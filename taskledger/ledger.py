"""
Ledger - the operation surface of the task-and-time core.

Wires the Timeline Store, Interval Engine, Invariant Guard and Respawn
Scheduler together, fills in timestamps from an injectable clock and runs
every public mutation under an OperationContext so its log lines share an
operation id.

Usage:
    ledger = Ledger.from_config()
    task = ledger.create_task("Write report")
    ledger.enqueue(task.id)
    ledger.open_session(task.id)
    ledger.close_session()
"""

import functools
import logging
import time
from collections.abc import Callable
from pathlib import Path

from taskledger.config import LedgerSettings, load_settings
from taskledger.errors import TaskNotFound, ValidationError
from taskledger.observability import OperationContext, configure_logging
from taskledger.respawn.rules import normalize_rule
from taskledger.respawn.scheduler import RespawnScheduler
from taskledger.sessions.engine import CloseResult, IntervalEngine
from taskledger.sessions.intervals import SessionChange
from taskledger.stages.classifier import Stage, TaskFacts, classify_stage
from taskledger.stages.guard import InvariantGuard, SideEffect, TransitionResult
from taskledger.stages.invariants import check_invariants
from taskledger.timeline.models import (
    MUTABLE_TASK_FIELDS,
    EventKind,
    Lifecycle,
    Session,
    Task,
    TaskEvent,
)
from taskledger.timeline.store import TimelineStore

logger = logging.getLogger(__name__)

Clock = Callable[[], int]


def system_clock() -> int:
    return int(time.time())


def _operation(func):
    """Run a public method inside an OperationContext named after it."""

    @functools.wraps(func)
    def wrapper(self, *args, **kwargs):
        with OperationContext(func.__name__):
            return func(self, *args, **kwargs)

    return wrapper


class Ledger:
    def __init__(
        self,
        db_path: str | None = None,
        settings: LedgerSettings | None = None,
        clock: Clock | None = None,
        store: TimelineStore | None = None,
    ):
        self.settings = settings or LedgerSettings()
        self.clock = clock or system_clock
        self.store = store or TimelineStore(db_path)
        self.engine = IntervalEngine(self.store, self.settings.micro_session_secs)
        self.scheduler = RespawnScheduler(self.store, self.settings.respawn_on_cancel)
        self.guard = InvariantGuard(self.store, self.engine, self.scheduler)

    @classmethod
    def from_config(
        cls,
        config_path: Path | None = None,
        db_path: str | None = None,
        clock: Clock | None = None,
        configure_logs: bool = True,
    ) -> "Ledger":
        """Build a ledger from the YAML/env settings, optionally configuring logging."""
        settings = load_settings(config_path)
        if configure_logs:
            configure_logging(settings.log_level, settings.log_json)
        return cls(db_path=db_path, settings=settings, clock=clock)

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> "Ledger":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def _now(self, at_ts: int | None) -> int:
        return int(self.clock()) if at_ts is None else int(at_ts)

    # ==================== Tasks ====================

    @_operation
    def create_task(
        self,
        description: str,
        project: str | None = None,
        tags: list[str] | None = None,
        due_ts: int | None = None,
        scheduled_ts: int | None = None,
        wait_ts: int | None = None,
        alloc_secs: int | None = None,
        recurrence_rule: str | None = None,
        at_ts: int | None = None,
    ) -> Task:
        now = self._now(at_ts)
        description = _clean_description(description)
        if alloc_secs is not None and alloc_secs < 0:
            raise ValidationError(f"Allocation must not be negative: {alloc_secs}")
        if recurrence_rule is not None:
            recurrence_rule = normalize_rule(recurrence_rule)

        with self.guard.transaction():
            task = self.store.create_task(
                description=description,
                created_ts=now,
                project=project,
                tags=tags,
                due_ts=due_ts,
                scheduled_ts=scheduled_ts,
                wait_ts=wait_ts,
                alloc_secs=alloc_secs,
                recurrence_rule=recurrence_rule,
            )
            self.store.record_event(task.id, EventKind.CREATED, now, {"description": description})
        logger.info("Created task %s", task.id, extra={"task_id": task.id})
        return task

    @_operation
    def modify_task(self, task_id: int, at_ts: int | None = None, **attrs) -> Task:
        """
        Change free attributes. Lifecycle, sessions and queue membership have
        their own operations.
        """
        unknown = sorted(set(attrs) - set(MUTABLE_TASK_FIELDS))
        if unknown:
            raise ValidationError(f"Cannot modify {', '.join(unknown)}")
        self.get_task(task_id)
        if not attrs:
            return self.get_task(task_id)

        now = self._now(at_ts)
        if "description" in attrs:
            attrs["description"] = _clean_description(attrs["description"])
        if attrs.get("recurrence_rule") is not None:
            attrs["recurrence_rule"] = normalize_rule(attrs["recurrence_rule"])
        if attrs.get("alloc_secs") is not None and attrs["alloc_secs"] < 0:
            raise ValidationError(f"Allocation must not be negative: {attrs['alloc_secs']}")

        with self.guard.transaction():
            self.store.update_task(task_id, {**attrs, "modified_ts": now})
            self.store.record_event(task_id, EventKind.MODIFIED, now, {"fields": sorted(attrs)})
        logger.info("Modified task %s: %s", task_id, sorted(attrs))
        return self.get_task(task_id)

    @_operation
    def delete_task(self, task_id: int, at_ts: int | None = None) -> list[SideEffect]:
        return self.guard.delete_task(task_id, self._now(at_ts))

    def get_task(self, task_id: int) -> Task:
        task = self.store.get_task(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def list_tasks(self, lifecycle: Lifecycle | None = None) -> list[Task]:
        return self.store.list_tasks(lifecycle)

    # ==================== Sessions ====================

    @_operation
    def open_session(self, task_id: int, at_ts: int | None = None) -> list[SideEffect]:
        return self.guard.open_session(task_id, self._now(at_ts))

    @_operation
    def close_session(self, at_ts: int | None = None) -> CloseResult:
        return self.guard.close_session(self._now(at_ts))

    def open_session_info(self) -> Session | None:
        return self.store.get_open_session()

    def sessions(self, task_id: int | None = None) -> list[Session]:
        return self.store.list_sessions(task_id)

    @_operation
    def remove_interval(
        self, start_ts: int, end_ts: int, confirmation_token: str | None = None
    ) -> list[SessionChange]:
        return self.guard.remove_interval(start_ts, end_ts, self._now(None), confirmation_token)

    @_operation
    def insert_interval(
        self,
        start_ts: int,
        end_ts: int,
        task_id: int,
        confirmation_token: str | None = None,
    ) -> list[SessionChange]:
        return self.guard.insert_interval(
            start_ts, end_ts, task_id, self._now(None), confirmation_token
        )

    # ==================== Queue ====================

    def queue(self) -> list[int]:
        return self.store.get_queue()

    @_operation
    def enqueue(self, task_id: int, at_ts: int | None = None) -> list[SideEffect]:
        return self.guard.enqueue(task_id, self._now(at_ts))

    @_operation
    def dequeue(self, task_id: int, at_ts: int | None = None) -> list[SideEffect]:
        return self.guard.dequeue(task_id, self._now(at_ts))

    @_operation
    def reorder(self, new_sequence: list[int], at_ts: int | None = None) -> list[SideEffect]:
        return self.guard.reorder(new_sequence, self._now(at_ts))

    @_operation
    def move_to_head(self, task_id: int, at_ts: int | None = None) -> list[SideEffect]:
        return self.guard.move_to_head(task_id, self._now(at_ts))

    # ==================== External hand-offs ====================

    @_operation
    def mark_external(
        self,
        task_id: int,
        at_ts: int | None = None,
        recipient: str | None = None,
        request: str | None = None,
    ) -> list[SideEffect]:
        return self.guard.mark_external(task_id, self._now(at_ts), recipient, request)

    @_operation
    def collect_external(
        self, task_id: int, at_ts: int | None = None, requeue: bool = False
    ) -> list[SideEffect]:
        return self.guard.collect_external(task_id, self._now(at_ts), requeue)

    # ==================== Lifecycle ====================

    @_operation
    def transition_lifecycle(
        self, task_id: int, target: Lifecycle, at_ts: int | None = None
    ) -> TransitionResult:
        return self.guard.transition_lifecycle(task_id, target, self._now(at_ts))

    # ==================== Stages ====================

    def facts_of(self, task_id: int) -> TaskFacts:
        task = self.get_task(task_id)
        queue = self.store.get_queue()
        running = self.store.get_open_session()
        return TaskFacts(
            lifecycle=task.lifecycle,
            is_queued_at_head=bool(queue) and queue[0] == task_id,
            is_queued=task_id in queue,
            has_open_session=running is not None and running.task_id == task_id,
            is_external_waiting=bool(self.store.get_waiting_externals(task_id)),
            has_any_sessions=bool(self.store.list_sessions(task_id)),
        )

    def stage_of(self, task_id: int) -> Stage:
        return classify_stage(self.facts_of(task_id))

    def stages(self, lifecycle: Lifecycle | None = None) -> list[tuple[Task, Stage]]:
        """Every task with its stage, in display order (stage, then queue position)."""
        queue = self.store.get_queue()
        positions = {task_id: i for i, task_id in enumerate(queue)}
        running = self.store.get_open_session()
        timed = running.task_id if running else None
        waiting = {r.task_id for r in self.store.get_waiting_externals()}
        with_sessions = {s.task_id for s in self.store.list_sessions()}

        listing = []
        for task in self.store.list_tasks(lifecycle):
            facts = TaskFacts(
                lifecycle=task.lifecycle,
                is_queued_at_head=positions.get(task.id) == 0,
                is_queued=task.id in positions,
                has_open_session=task.id == timed,
                is_external_waiting=task.id in waiting,
                has_any_sessions=task.id in with_sessions,
            )
            listing.append((task, classify_stage(facts)))

        listing.sort(key=lambda pair: (pair[1].sort_order, positions.get(pair[0].id, len(queue)), pair[0].id))
        return listing

    # ==================== Audit ====================

    def events(self, task_id: int | None = None) -> list[TaskEvent]:
        return self.store.list_events(task_id)

    def check_invariants(self) -> list[str]:
        return check_invariants(self.store)


def _clean_description(description: str) -> str:
    if description is None or not str(description).strip():
        raise ValidationError("Task description must not be empty")
    return str(description).strip()
