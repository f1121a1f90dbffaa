"""
Session Interval Engine - rewrites session history around a target window.

Two corrections are supported:
- remove(t0, t1): clear [t0, t1) across every task
- insert(t0, t1, task_id): clear [t0, t1), then record it for one task

Plans are computed read-only first. Any plan that alters an existing
session needs a confirmation token derived from the plan itself, so a
token issued for one preview cannot authorise a different rewrite.

Also owns the close of the running session and the micro-session rule.
"""

import hashlib
import logging
from dataclasses import dataclass, field
from enum import Enum

from taskledger.errors import ConfirmationRequired, NoOpenSession, NoOverlap, ValidationError
from taskledger.sessions.intervals import ChangeKind, SessionChange, plan_removal
from taskledger.timeline.store import TimelineStore

logger = logging.getLogger(__name__)

DEFAULT_MICRO_SESSION_SECS = 30


class CloseOutcome(str, Enum):
    CLOSED = "closed"
    MERGED = "merged"
    DISCARDED = "discarded"


@dataclass
class CloseResult:
    """
    What happened to the running session.

    duration is the seconds that ended up recorded: the full span for
    CLOSED and MERGED, 0 for DISCARDED.
    """

    session_id: int
    task_id: int
    start_ts: int
    end_ts: int
    duration: int
    outcome: CloseOutcome = CloseOutcome.CLOSED
    merged_into: int | None = None
    side_effects: list = field(default_factory=list)

    @property
    def is_micro(self) -> bool:
        return self.outcome is not CloseOutcome.CLOSED


def confirmation_token(
    t0: int, t1: int, changes: list[SessionChange], task_id: int | None = None
) -> str:
    """Deterministic token for a planned rewrite. Changes when the plan does."""
    parts = [f"{t0}:{t1}:{task_id if task_id is not None else '-'}"]
    for change in sorted(changes, key=lambda c: c.session_id or 0):
        start, end = change.before
        parts.append(f"{change.session_id}:{change.kind.value}:{start}:{end}")
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return digest[:16]


class IntervalEngine:
    """
    Applies interval corrections to a TimelineStore.

    Does not check lifecycle or queue rules; callers go through the guard.
    """

    def __init__(self, store: TimelineStore, micro_session_secs: int = DEFAULT_MICRO_SESSION_SECS):
        self.store = store
        self.micro_session_secs = micro_session_secs

    # ==================== Planning ====================

    def plan_remove(self, t0: int, t1: int) -> list[SessionChange]:
        """Changes remove(t0, t1) would make. Reads only."""
        if t0 > t1:
            raise ValidationError(f"Window start {t0} is after end {t1}")
        candidates = self.store.sessions_touching(t0, t1)
        changes = plan_removal(candidates, t0, t1)
        logger.debug("Planned %d change(s) for [%s, %s)", len(changes), t0, t1)
        return changes

    def plan_insert(self, t0: int, t1: int) -> list[SessionChange]:
        if t0 >= t1:
            raise ValidationError(f"Insert needs start < end, got [{t0}, {t1})")
        return self.plan_remove(t0, t1)

    def _require_confirmation(
        self,
        t0: int,
        t1: int,
        changes: list[SessionChange],
        supplied: str | None,
        task_id: int | None = None,
    ) -> None:
        expected = confirmation_token(t0, t1, changes, task_id)
        if supplied != expected:
            if supplied is not None:
                logger.info("Stale confirmation token for [%s, %s)", t0, t1)
            raise ConfirmationRequired(expected, changes)

    # ==================== Corrections ====================

    def remove(
        self, t0: int, t1: int, created_ts: int, confirmation_token: str | None = None
    ) -> list[SessionChange]:
        """
        Clear [t0, t1) from every task's history.

        Raises:
            ValidationError: t0 > t1
            NoOverlap: nothing recorded in the window
            ConfirmationRequired: token missing or does not match the plan
        """
        changes = self.plan_remove(t0, t1)
        if not changes:
            raise NoOverlap(t0, t1)
        self._require_confirmation(t0, t1, changes, confirmation_token)

        with self.store.transaction():
            self._apply(changes, created_ts)
        logger.info("Removed [%s, %s): %d session(s) rewritten", t0, t1, len(changes))
        return changes

    def insert(
        self,
        t0: int,
        t1: int,
        task_id: int,
        created_ts: int,
        confirmation_token: str | None = None,
    ) -> list[SessionChange]:
        """
        Record [t0, t1) for *task_id*, displacing whatever was there.

        A window over empty time needs no token.
        """
        changes = self.plan_insert(t0, t1)
        if changes:
            self._require_confirmation(t0, t1, changes, confirmation_token, task_id)

        with self.store.transaction():
            self._apply(changes, created_ts)
            session = self.store.create_session(task_id, t0, t1, created_ts)
        created = SessionChange(
            ChangeKind.CREATED, session.id, task_id, None, after=(t0, t1), new_session_id=session.id
        )
        logger.info("Inserted [%s, %s) for task %s, displaced %d", t0, t1, task_id, len(changes))
        return changes + [created]

    def _apply(self, changes: list[SessionChange], created_ts: int) -> None:
        # Close the left piece before opening the right one: at most one
        # row may have a NULL end at any moment.
        for change in changes:
            if change.kind is ChangeKind.DELETED:
                self.store.delete_session(change.session_id)
            elif change.kind is ChangeKind.TRUNCATED:
                self.store.update_session(change.session_id, *change.after)
            elif change.kind is ChangeKind.SPLIT:
                self.store.update_session(change.session_id, *change.after)
                start, end = change.remainder
                piece = self.store.create_session(change.task_id, start, end, created_ts)
                change.new_session_id = piece.id

    # ==================== Closing ====================

    def close_open(self, at_ts: int) -> CloseResult:
        """
        Stop the running session at *at_ts*, applying the micro-session rule.

        A session shorter than micro_session_secs (zero-length always counts)
        is folded into the same task's previous session when that one ended
        within the threshold before it started, and dropped otherwise.

        Raises:
            NoOpenSession: nothing is running
            ValidationError: at_ts is before the session start
        """
        session = self.store.get_open_session()
        if session is None:
            raise NoOpenSession()
        if at_ts < session.start_ts:
            raise ValidationError(
                f"Close time {at_ts} is before session start {session.start_ts}"
            )

        duration = at_ts - session.start_ts
        threshold = max(self.micro_session_secs, 1)

        with self.store.transaction():
            if duration >= threshold:
                self.store.update_session(session.id, session.start_ts, at_ts)
                logger.info(
                    "Closed session %s after %ss",
                    session.id,
                    duration,
                    extra={
                        "task_id": session.task_id,
                        "session_id": session.id,
                        "duration": duration,
                    },
                )
                return CloseResult(session.id, session.task_id, session.start_ts, at_ts, duration)

            neighbour = self._merge_candidate(session.task_id, session.start_ts)
            self.store.delete_session(session.id)
            if neighbour is not None:
                self.store.update_session(neighbour.id, neighbour.start_ts, at_ts)
                logger.warning(
                    "Merged micro-session %s (%ss) into session %s",
                    session.id,
                    duration,
                    neighbour.id,
                )
                return CloseResult(
                    session.id,
                    session.task_id,
                    session.start_ts,
                    at_ts,
                    duration,
                    outcome=CloseOutcome.MERGED,
                    merged_into=neighbour.id,
                )

            logger.warning("Discarded micro-session %s (%ss)", session.id, duration)
            return CloseResult(
                session.id,
                session.task_id,
                session.start_ts,
                at_ts,
                0,
                outcome=CloseOutcome.DISCARDED,
            )

    def _merge_candidate(self, task_id: int, start_ts: int):
        """Latest closed session of the task ending in [start - threshold, start]."""
        best = None
        for other in self.store.list_sessions(task_id):
            if other.end_ts is None:
                continue
            if start_ts - self.micro_session_secs <= other.end_ts <= start_ts:
                if best is None or other.end_ts > best.end_ts:
                    best = other
        return best
