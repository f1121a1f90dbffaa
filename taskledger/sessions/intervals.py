"""
Interval algebra over half-open sessions [start, end).

Pure functions, no storage. An open session (end None) extends to infinity.
A zero-width window [t, t) is a split point: it removes no time and only
matches sessions with start < t < end.
"""

from dataclasses import dataclass
from enum import Enum

Bounds = tuple[int, int | None]


class Cut(str, Enum):
    """What a removal window does to one session."""

    DELETE = "delete"  # window covers the whole session
    SPLIT = "split"  # window strictly inside
    TRIM_START = "trim_start"  # window covers the head; keep [t1, end)
    TRIM_END = "trim_end"  # window covers the tail; keep [start, t0)


class ChangeKind(str, Enum):
    DELETED = "deleted"
    SPLIT = "split"
    TRUNCATED = "truncated"
    CREATED = "created"
    MERGED = "merged"
    DISCARDED = "discarded"
    CLOSED = "closed"


@dataclass
class SessionChange:
    """
    One rewrite of a stored session.

    before/after are (start, end) bounds. For SPLIT, after is the left piece
    and remainder is the right piece, stored under new_session_id once
    applied. For CREATED, before is None.
    """

    kind: ChangeKind
    session_id: int | None
    task_id: int
    before: Bounds | None
    after: Bounds | None = None
    remainder: Bounds | None = None
    new_session_id: int | None = None

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "session_id": self.session_id,
            "task_id": self.task_id,
            "before": list(self.before) if self.before else None,
            "after": list(self.after) if self.after else None,
            "remainder": list(self.remainder) if self.remainder else None,
            "new_session_id": self.new_session_id,
        }


def overlaps(start: int, end: int | None, t0: int, t1: int) -> bool:
    """True if [start, end) meets the window [t0, t1)."""
    if t0 == t1:
        return start < t0 and (end is None or t0 < end)
    return start < t1 and (end is None or end > t0)


def classify_cut(start: int, end: int | None, t0: int, t1: int) -> Cut | None:
    """Which of the four rewrites applies, or None if there is no overlap."""
    if not overlaps(start, end, t0, t1):
        return None

    covers_start = t0 <= start
    covers_end = end is not None and t1 >= end

    if covers_start and covers_end:
        return Cut.DELETE
    if not covers_start and not covers_end:
        return Cut.SPLIT
    if covers_start:
        return Cut.TRIM_START
    return Cut.TRIM_END


def subtract(start: int, end: int | None, t0: int, t1: int) -> list[Bounds]:
    """
    [start, end) minus [t0, t1), as a list of remaining pieces.

    A zero-width window splits at t0 without removing anything.
    """
    cut = classify_cut(start, end, t0, t1)
    if cut is None:
        return [(start, end)]
    if cut is Cut.DELETE:
        return []
    if cut is Cut.SPLIT:
        return [(start, t0), (t1, end)]
    if cut is Cut.TRIM_START:
        return [(t1, end)]
    return [(start, t0)]


def plan_removal(sessions, t0: int, t1: int) -> list[SessionChange]:
    """
    Plan the rewrite of *sessions* (objects with id, task_id, start_ts,
    end_ts) needed to clear [t0, t1). Sessions that do not overlap are
    left out of the plan.
    """
    changes = []
    for session in sessions:
        start, end = session.start_ts, session.end_ts
        cut = classify_cut(start, end, t0, t1)
        if cut is None:
            continue

        before = (start, end)
        if cut is Cut.DELETE:
            changes.append(SessionChange(ChangeKind.DELETED, session.id, session.task_id, before))
        elif cut is Cut.SPLIT:
            changes.append(
                SessionChange(
                    ChangeKind.SPLIT,
                    session.id,
                    session.task_id,
                    before,
                    after=(start, t0),
                    remainder=(t1, end),
                )
            )
        else:
            (piece,) = subtract(start, end, t0, t1)
            changes.append(
                SessionChange(ChangeKind.TRUNCATED, session.id, session.task_id, before, after=piece)
            )
    return changes


def find_overlaps(intervals: list[Bounds]) -> list[tuple[Bounds, Bounds]]:
    """
    Pairs of intervals that overlap, or that are malformed (start >= end).

    A malformed interval is reported paired with itself.
    """
    problems = []
    for bounds in intervals:
        start, end = bounds
        if end is not None and start >= end:
            problems.append((bounds, bounds))

    ordered = sorted(intervals, key=lambda b: b[0])
    for i, (start_a, end_a) in enumerate(ordered):
        for start_b, end_b in ordered[i + 1 :]:
            if end_a is not None and start_b >= end_a:
                break
            problems.append(((start_a, end_a), (start_b, end_b)))
    return problems
