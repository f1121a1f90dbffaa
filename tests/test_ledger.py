"""
Tests for the Ledger operation surface: guarded cascades and rejections.
"""

import pytest

from taskledger.errors import (
    ConfirmationRequired,
    InvariantViolation,
    NoOpenSession,
    TaskNotFound,
    ValidationError,
)
from taskledger.respawn.scheduler import RespawnStatus
from taskledger.sessions.engine import CloseOutcome, confirmation_token
from taskledger.sessions.intervals import ChangeKind
from taskledger.stages.classifier import Stage
from taskledger.stages.guard import SideEffectKind
from taskledger.timeline.models import EventKind, Lifecycle


def kinds(effects):
    return [e.kind for e in effects]


# =============================================================================
# STAGE WALKTHROUGHS
# =============================================================================


class TestStageWalkthrough:
    def test_proposed_queued_active(self, ledger):
        task = ledger.create_task("Write report")
        assert ledger.stage_of(task.id) is Stage.PROPOSED

        ledger.enqueue(task.id)
        assert ledger.stage_of(task.id) is Stage.QUEUED

        ledger.open_session(task.id)
        assert ledger.stage_of(task.id) is Stage.ACTIVE

    def test_stalled_after_dequeue_with_history(self, ledger, clock):
        task = ledger.create_task("t")
        ledger.open_session(task.id)
        clock.advance(3600)
        ledger.close_session()
        ledger.dequeue(task.id)
        assert ledger.stage_of(task.id) is Stage.STALLED

    def test_external_on_queued_task(self, ledger):
        head = ledger.create_task("head")
        task = ledger.create_task("handed off")
        ledger.enqueue(head.id)
        ledger.enqueue(task.id)

        effects = ledger.mark_external(task.id, recipient="alice", request="sign-off")

        assert kinds(effects) == [SideEffectKind.DEQUEUED]
        assert effects[0].task_id == task.id
        assert ledger.stage_of(task.id) is Stage.EXTERNAL
        assert ledger.queue() == [head.id]

    def test_completed(self, ledger):
        task = ledger.create_task("t")
        ledger.transition_lifecycle(task.id, Lifecycle.COMPLETED)
        assert ledger.stage_of(task.id) is Stage.COMPLETED

    def test_stages_listing_in_display_order(self, ledger):
        proposed = ledger.create_task("proposed")
        queued = ledger.create_task("queued")
        active = ledger.create_task("active")
        ledger.enqueue(queued.id)
        ledger.open_session(active.id)

        listing = [(task.id, stage) for task, stage in ledger.stages()]
        assert listing == [
            (active.id, Stage.ACTIVE),
            (queued.id, Stage.QUEUED),
            (proposed.id, Stage.PROPOSED),
        ]


# =============================================================================
# SESSIONS
# =============================================================================


class TestOpenSession:
    def test_enqueues_at_head(self, ledger):
        other = ledger.create_task("other")
        task = ledger.create_task("t")
        ledger.enqueue(other.id)

        effects = ledger.open_session(task.id)

        assert kinds(effects) == [SideEffectKind.ENQUEUED]
        assert ledger.queue() == [task.id, other.id]

    def test_moves_queued_task_to_head(self, ledger):
        first = ledger.create_task("first")
        second = ledger.create_task("second")
        ledger.enqueue(first.id)
        ledger.enqueue(second.id)

        effects = ledger.open_session(second.id)

        assert kinds(effects) == [SideEffectKind.MOVED_TO_HEAD]
        assert ledger.queue() == [second.id, first.id]

    def test_switch_closes_previous_at_same_instant(self, ledger, clock):
        a = ledger.create_task("a")
        b = ledger.create_task("b")
        ledger.open_session(a.id)
        clock.advance(600)

        effects = ledger.open_session(b.id)

        assert kinds(effects) == [SideEffectKind.SESSION_CLOSED, SideEffectKind.ENQUEUED]
        (closed,) = ledger.sessions(a.id)
        assert closed.end_ts == clock.now
        assert ledger.open_session_info().task_id == b.id
        assert ledger.queue() == [b.id, a.id]

    def test_switch_away_from_timed_handoff_dequeues_it(self, ledger, clock):
        a = ledger.create_task("a")
        b = ledger.create_task("b")
        ledger.open_session(a.id)
        ledger.mark_external(a.id)
        clock.advance(600)

        effects = ledger.open_session(b.id)

        assert SideEffectKind.DEQUEUED in kinds(effects)
        assert ledger.queue() == [b.id]
        assert ledger.stage_of(a.id) is Stage.EXTERNAL

    def test_already_timed_rejected(self, ledger):
        task = ledger.create_task("t")
        ledger.open_session(task.id)
        with pytest.raises(InvariantViolation):
            ledger.open_session(task.id)

    def test_start_inside_existing_session_rejected(self, ledger, ts):
        task = ledger.create_task("t")
        ledger.insert_interval(ts(9), ts(12), task.id)
        with pytest.raises(InvariantViolation):
            ledger.open_session(task.id, at_ts=ts(10))
        assert ledger.open_session_info() is None

    def test_terminal_task_rejected(self, ledger):
        task = ledger.create_task("t")
        ledger.transition_lifecycle(task.id, Lifecycle.CANCELLED)
        with pytest.raises(InvariantViolation):
            ledger.open_session(task.id)

    def test_unknown_task(self, ledger):
        with pytest.raises(TaskNotFound):
            ledger.open_session(404)


class TestCloseSession:
    def test_reports_duration(self, ledger, clock):
        task = ledger.create_task("t")
        ledger.open_session(task.id)
        clock.advance(1800)

        result = ledger.close_session()

        assert result.duration == 1800
        assert result.outcome is CloseOutcome.CLOSED
        assert result.side_effects == []
        assert ledger.queue() == [task.id]

    def test_nothing_running(self, ledger):
        with pytest.raises(NoOpenSession):
            ledger.close_session()

    def test_timed_handoff_leaves_queue_on_close(self, ledger, clock):
        task = ledger.create_task("t")
        ledger.open_session(task.id)
        ledger.mark_external(task.id)
        assert ledger.queue() == [task.id]
        clock.advance(1800)

        result = ledger.close_session()

        assert kinds(result.side_effects) == [SideEffectKind.DEQUEUED]
        assert ledger.queue() == []
        assert ledger.stage_of(task.id) is Stage.EXTERNAL

    def test_micro_session_discarded(self, ledger, clock):
        task = ledger.create_task("t")
        ledger.open_session(task.id)
        clock.advance(5)
        result = ledger.close_session()
        assert result.outcome is CloseOutcome.DISCARDED
        assert ledger.sessions(task.id) == []


# =============================================================================
# QUEUE
# =============================================================================


class TestQueue:
    def test_enqueue_appends(self, ledger):
        ids = [ledger.create_task(str(i)).id for i in range(3)]
        for task_id in ids:
            ledger.enqueue(task_id)
        assert ledger.queue() == ids

    def test_enqueue_again_moves_to_tail(self, ledger):
        a = ledger.create_task("a").id
        b = ledger.create_task("b").id
        ledger.enqueue(a)
        ledger.enqueue(b)
        ledger.enqueue(a)
        assert ledger.queue() == [b, a]

    def test_timed_task_cannot_move_to_tail(self, ledger):
        a = ledger.create_task("a").id
        b = ledger.create_task("b").id
        ledger.open_session(a)
        ledger.enqueue(b)
        with pytest.raises(InvariantViolation):
            ledger.enqueue(a)
        assert ledger.queue() == [a, b]

    def test_timed_task_alone_enqueue_is_noop(self, ledger):
        a = ledger.create_task("a").id
        ledger.open_session(a)
        assert ledger.enqueue(a) == []
        assert ledger.queue() == [a]

    def test_enqueue_waiting_task_rejected(self, ledger):
        task = ledger.create_task("t").id
        ledger.mark_external(task)
        with pytest.raises(InvariantViolation):
            ledger.enqueue(task)

    def test_enqueue_terminal_rejected(self, ledger):
        task = ledger.create_task("t").id
        ledger.transition_lifecycle(task, Lifecycle.COMPLETED)
        with pytest.raises(InvariantViolation):
            ledger.enqueue(task)

    def test_dequeue_timed_task_closes_session(self, ledger, clock):
        task = ledger.create_task("t").id
        ledger.open_session(task)
        clock.advance(900)

        effects = ledger.dequeue(task)

        assert kinds(effects) == [SideEffectKind.SESSION_CLOSED]
        assert ledger.open_session_info() is None
        assert ledger.queue() == []

    def test_dequeue_not_queued(self, ledger):
        task = ledger.create_task("t").id
        with pytest.raises(ValidationError):
            ledger.dequeue(task)

    def test_reorder(self, ledger):
        a, b, c = (ledger.create_task(n).id for n in "abc")
        for task_id in (a, b, c):
            ledger.enqueue(task_id)
        ledger.reorder([c, a, b])
        assert ledger.queue() == [c, a, b]

    def test_reorder_must_be_permutation(self, ledger):
        a, b = (ledger.create_task(n).id for n in "ab")
        ledger.enqueue(a)
        ledger.enqueue(b)
        with pytest.raises(ValidationError):
            ledger.reorder([a])
        with pytest.raises(ValidationError):
            ledger.reorder([a, a])
        with pytest.raises(ValidationError):
            ledger.reorder([a, b, 99])

    def test_reorder_keeps_timed_task_at_head(self, ledger):
        a, b = (ledger.create_task(n).id for n in "ab")
        ledger.open_session(a)
        ledger.enqueue(b)
        with pytest.raises(InvariantViolation):
            ledger.reorder([b, a])
        assert ledger.queue() == [a, b]

    def test_move_to_head(self, ledger):
        a, b, c = (ledger.create_task(n).id for n in "abc")
        for task_id in (a, b, c):
            ledger.enqueue(task_id)
        ledger.move_to_head(c)
        assert ledger.queue() == [c, a, b]

    def test_move_to_head_blocked_by_timer(self, ledger):
        a, b = (ledger.create_task(n).id for n in "ab")
        ledger.open_session(a)
        ledger.enqueue(b)
        with pytest.raises(InvariantViolation):
            ledger.move_to_head(b)


# =============================================================================
# EXTERNAL HAND-OFFS
# =============================================================================


class TestExternal:
    def test_timed_task_stays_at_head(self, ledger):
        task = ledger.create_task("t").id
        ledger.open_session(task)
        effects = ledger.mark_external(task)
        assert effects == []
        assert ledger.queue() == [task]
        assert ledger.stage_of(task) is Stage.ACTIVE

    def test_double_mark_rejected(self, ledger):
        task = ledger.create_task("t").id
        ledger.mark_external(task)
        with pytest.raises(ValidationError):
            ledger.mark_external(task)

    def test_collect(self, ledger):
        task = ledger.create_task("t").id
        ledger.open_session(task)
        ledger.close_session(at_ts=ledger.clock() + 3600)
        ledger.mark_external(task)

        effects = ledger.collect_external(task)

        assert effects == []
        assert ledger.stage_of(task) is Stage.STALLED

    def test_collect_and_requeue(self, ledger):
        task = ledger.create_task("t").id
        ledger.mark_external(task)
        effects = ledger.collect_external(task, requeue=True)
        assert kinds(effects) == [SideEffectKind.ENQUEUED]
        assert ledger.stage_of(task) is Stage.QUEUED

    def test_collect_when_not_waiting(self, ledger):
        task = ledger.create_task("t").id
        with pytest.raises(ValidationError):
            ledger.collect_external(task)

    def test_terminal_rejected(self, ledger):
        task = ledger.create_task("t").id
        ledger.transition_lifecycle(task, Lifecycle.COMPLETED)
        with pytest.raises(InvariantViolation):
            ledger.mark_external(task)


# =============================================================================
# INTERVAL CORRECTIONS
# =============================================================================


class TestIntervalCorrections:
    def test_remove_with_confirmation(self, ledger, ts):
        task = ledger.create_task("seven").id
        ledger.insert_interval(ts(9), ts(17), task)

        with pytest.raises(ConfirmationRequired) as exc:
            ledger.remove_interval(ts(14, 30), ts(15))
        changes = ledger.remove_interval(ts(14, 30), ts(15), confirmation_token=exc.value.token)

        assert [c.kind for c in changes] == [ChangeKind.SPLIT]
        assert [(s.start_ts, s.end_ts) for s in ledger.sessions(task)] == [
            (ts(9), ts(14, 30)),
            (ts(15), ts(17)),
        ]
        assert EventKind.SESSIONS_REWRITTEN.value in [e.kind for e in ledger.events(task)]

    def test_insert_over_other_task(self, ledger, ts):
        ten = ledger.create_task("ten").id
        five = ledger.create_task("five").id
        ledger.insert_interval(ts(9), ts(17), ten)

        with pytest.raises(ConfirmationRequired) as exc:
            ledger.insert_interval(ts(14), ts(15), five)
        ledger.insert_interval(ts(14), ts(15), five, confirmation_token=exc.value.token)

        assert [(s.start_ts, s.end_ts) for s in ledger.sessions(ten)] == [
            (ts(9), ts(14)),
            (ts(15), ts(17)),
        ]
        assert [(s.start_ts, s.end_ts) for s in ledger.sessions(five)] == [(ts(14), ts(15))]

    def test_insert_for_terminal_task_rejected(self, ledger, ts):
        task = ledger.create_task("t").id
        ledger.transition_lifecycle(task, Lifecycle.COMPLETED)
        with pytest.raises(InvariantViolation):
            ledger.insert_interval(ts(9), ts(10), task)

    def test_rewrite_of_terminal_history_rejected(self, ledger, ts):
        task = ledger.create_task("t").id
        ledger.insert_interval(ts(9), ts(10), task)
        ledger.transition_lifecycle(task, Lifecycle.COMPLETED)
        with pytest.raises(InvariantViolation):
            ledger.remove_interval(ts(9), ts(10))

    def test_insert_inside_open_session_splits_it(self, ledger, ts, clock):
        task = ledger.create_task("t").id
        clock.set(ts(9))
        ledger.open_session(task)
        clock.set(ts(12))
        with pytest.raises(ConfirmationRequired) as exc:
            ledger.insert_interval(ts(10), ts(11), task)
        ledger.insert_interval(ts(10), ts(11), task, confirmation_token=exc.value.token)
        assert [(s.start_ts, s.end_ts) for s in ledger.sessions(task)] == [
            (ts(9), ts(10)),
            (ts(10), ts(11)),
            (ts(11), None),
        ]

    def test_insert_reaching_past_now_over_running_session_rejected(self, ledger, ts, clock):
        timed = ledger.create_task("timed").id
        other = ledger.create_task("other").id
        clock.set(ts(10))
        ledger.open_session(timed)
        clock.set(ts(10, 30))

        # A token matching the plan does not get it through either
        token = confirmation_token(ts(9), ts(11), ledger.engine.plan_insert(ts(9), ts(11)), other)
        with pytest.raises(ValidationError):
            ledger.insert_interval(ts(9), ts(11), other, confirmation_token=token)

        assert [(s.start_ts, s.end_ts) for s in ledger.sessions(timed)] == [(ts(10), None)]
        assert ledger.sessions(other) == []
        clock.set(ts(10, 45))
        assert ledger.close_session().duration == 45 * 60
        assert ledger.check_invariants() == []

    def test_remove_reaching_past_now_over_running_session_rejected(self, ledger, ts, clock):
        task = ledger.create_task("t").id
        clock.set(ts(10))
        ledger.open_session(task)
        clock.set(ts(10, 30))

        with pytest.raises(ValidationError):
            ledger.remove_interval(ts(10), ts(11))
        assert [(s.start_ts, s.end_ts) for s in ledger.sessions(task)] == [(ts(10), None)]

    def test_window_ending_now_over_running_session_allowed(self, ledger, ts, clock):
        task = ledger.create_task("t").id
        clock.set(ts(10))
        ledger.open_session(task)
        clock.set(ts(10, 30))

        with pytest.raises(ConfirmationRequired) as exc:
            ledger.remove_interval(ts(10), ts(10, 30))
        ledger.remove_interval(ts(10), ts(10, 30), confirmation_token=exc.value.token)

        assert [(s.start_ts, s.end_ts) for s in ledger.sessions(task)] == [(ts(10, 30), None)]


# =============================================================================
# LIFECYCLE
# =============================================================================


class TestLifecycle:
    def test_complete_detaches_everything(self, ledger, clock):
        task = ledger.create_task("t").id
        ledger.open_session(task)
        ledger.mark_external(task)
        clock.advance(3600)

        result = ledger.transition_lifecycle(task, Lifecycle.COMPLETED)

        assert kinds(result.side_effects) == [
            SideEffectKind.SESSION_CLOSED,
            SideEffectKind.DEQUEUED,
            SideEffectKind.EXTERNAL_COLLECTED,
        ]
        assert ledger.open_session_info() is None
        assert ledger.queue() == []
        assert ledger.get_task(task).lifecycle is Lifecycle.COMPLETED
        assert ledger.check_invariants() == []

    def test_terminal_is_final(self, ledger):
        task = ledger.create_task("t").id
        ledger.transition_lifecycle(task, Lifecycle.COMPLETED)
        with pytest.raises(InvariantViolation):
            ledger.transition_lifecycle(task, Lifecycle.CANCELLED)

    def test_open_is_not_a_target(self, ledger):
        task = ledger.create_task("t").id
        with pytest.raises(ValidationError):
            ledger.transition_lifecycle(task, Lifecycle.OPEN)
        with pytest.raises(ValidationError):
            ledger.transition_lifecycle(task, "archived")

    def test_complete_respawns(self, ledger, ts, clock):
        task = ledger.create_task("Pay rent", recurrence_rule="14,30", project="home", tags=["bills"])
        clock.set(ts(12, day=31))

        result = ledger.transition_lifecycle(task.id, Lifecycle.COMPLETED)

        assert result.respawn.status is RespawnStatus.SPAWNED
        spawned = ledger.get_task(result.respawn.new_task_id)
        assert spawned.lifecycle is Lifecycle.OPEN
        assert spawned.due_ts == ts(12, day=14, month=2)
        assert spawned.description == "Pay rent"
        assert spawned.project == "home"
        assert spawned.tags == ["bills"]
        assert spawned.recurrence_rule == "14,30"
        assert ledger.stage_of(spawned.id) is Stage.PROPOSED

    def test_weekday_respawn_skips_completion_day(self, ledger, ts, clock):
        # Due Monday 17:00, done Monday morning: the copy is due Wednesday
        task = ledger.create_task("Gym", recurrence_rule="mon,wed,fri", due_ts=ts(17))
        clock.set(ts(9))

        result = ledger.transition_lifecycle(task.id, Lifecycle.COMPLETED)

        assert result.respawn.status is RespawnStatus.SPAWNED
        assert ledger.get_task(result.respawn.new_task_id).due_ts == ts(17, day=7)

    def test_cancel_respawn_follows_setting(self, db_path, clock):
        from taskledger.config import LedgerSettings
        from taskledger.ledger import Ledger

        with Ledger(db_path, LedgerSettings(respawn_on_cancel=False), clock) as led:
            task = led.create_task("t", recurrence_rule="daily").id
            result = led.transition_lifecycle(task, Lifecycle.CANCELLED)
            assert result.respawn.status is RespawnStatus.NOT_APPLICABLE
            assert len(led.list_tasks()) == 1

    def test_respawn_failure_keeps_transition(self, ledger, monkeypatch):
        import sqlite3

        task = ledger.create_task("t", recurrence_rule="daily").id

        def broken(*args, **kwargs):
            raise sqlite3.OperationalError("disk full")

        monkeypatch.setattr(ledger.store, "create_task", broken)
        result = ledger.transition_lifecycle(task, Lifecycle.COMPLETED)

        assert result.respawn.status is RespawnStatus.FAILED
        assert "disk full" in result.respawn.error
        assert ledger.get_task(task).lifecycle is Lifecycle.COMPLETED


# =============================================================================
# TASK MANAGEMENT
# =============================================================================


class TestTaskManagement:
    def test_create_validates(self, ledger):
        with pytest.raises(ValidationError):
            ledger.create_task("   ")
        with pytest.raises(ValidationError):
            ledger.create_task("t", recurrence_rule="fortnightly")
        with pytest.raises(ValidationError):
            ledger.create_task("t", alloc_secs=-1)

    def test_create_normalizes_rule(self, ledger):
        task = ledger.create_task("t", recurrence_rule="weekdays:Fri,Mon")
        assert task.recurrence_rule == "mon,fri"

    def test_modify(self, ledger, clock):
        task = ledger.create_task("t").id
        clock.advance(60)
        modified = ledger.modify_task(task, description="renamed", tags=["x"], due_ts=123)
        assert modified.description == "renamed"
        assert modified.tags == ["x"]
        assert modified.due_ts == 123
        assert modified.modified_ts == clock.now

    def test_modify_rejects_unknown_fields(self, ledger):
        task = ledger.create_task("t").id
        with pytest.raises(ValidationError):
            ledger.modify_task(task, lifecycle="completed")

    def test_modify_missing_task(self, ledger):
        with pytest.raises(TaskNotFound):
            ledger.modify_task(404, description="x")

    def test_delete_reports_everything_removed(self, ledger, ts):
        task = ledger.create_task("mistake").id
        ledger.insert_interval(ts(9), ts(10), task)
        ledger.enqueue(task)
        effects = ledger.delete_task(task)

        assert kinds(effects) == [SideEffectKind.SESSIONS_DELETED, SideEffectKind.DEQUEUED]
        with pytest.raises(TaskNotFound):
            ledger.get_task(task)
        assert ledger.sessions() == []
        assert ledger.events(task)[-1].kind == EventKind.DELETED.value

    def test_delete_waiting_task(self, ledger):
        task = ledger.create_task("t").id
        ledger.mark_external(task)
        effects = ledger.delete_task(task)
        assert kinds(effects) == [SideEffectKind.EXTERNALS_DELETED]

    def test_events_trail(self, ledger):
        task = ledger.create_task("t").id
        ledger.enqueue(task)
        ledger.open_session(task)
        assert [e.kind for e in ledger.events(task)] == ["created", "enqueued", "session_opened"]
