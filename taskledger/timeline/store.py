"""
Timeline Store - the persisted record of tasks, sessions, queue order and
external hand-offs.

Primitives only. Nothing here checks invariants or cascades a change into
another table; that is the Guard's job (taskledger.stages.guard). Every
multi-step change must run inside transaction() so a failure leaves no
partial write behind.
"""

import json
import logging
import sqlite3
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from taskledger import db as db_module
from taskledger import safe_sql
from taskledger.timeline.models import (
    ExternalRecord,
    Lifecycle,
    Session,
    Task,
    TaskEvent,
)

logger = logging.getLogger(__name__)

_TASK_COLUMNS = {
    "description",
    "lifecycle",
    "project",
    "tags_json",
    "due_ts",
    "scheduled_ts",
    "wait_ts",
    "alloc_secs",
    "recurrence_rule",
    "modified_ts",
}


class TimelineStore:
    """
    SQLite-backed store. One connection per store, autocommit outside
    transaction().
    """

    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or db_module.get_db_path_str()
        self._conn = db_module.connect(self.db_path)
        self._tx_depth = 0

        db_module.ensure_schema(self._conn)
        logger.debug("TimelineStore ready, DB path: %s", self.db_path)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "TimelineStore":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ==================== Transactions ====================

    @property
    def in_transaction(self) -> bool:
        return self._tx_depth > 0

    @contextmanager
    def transaction(self) -> Iterator["TimelineStore"]:
        """
        Run a block atomically. Nested calls join the outermost transaction;
        an exception anywhere rolls the whole thing back.
        """
        if self._tx_depth:
            self._tx_depth += 1
            try:
                yield self
            finally:
                self._tx_depth -= 1
            return

        self._conn.execute("BEGIN IMMEDIATE")
        self._tx_depth = 1
        try:
            yield self
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        else:
            self._conn.execute("COMMIT")
        finally:
            self._tx_depth = 0

    def _execute(self, sql: str, params: list | tuple = ()) -> sqlite3.Cursor:
        return self._conn.execute(sql, params)

    def _query(self, sql: str, params: list | tuple = ()) -> list[sqlite3.Row]:
        return self._conn.execute(sql, params).fetchall()

    # ==================== Tasks ====================

    def create_task(
        self,
        description: str,
        created_ts: int,
        project: str | None = None,
        tags: list[str] | None = None,
        due_ts: int | None = None,
        scheduled_ts: int | None = None,
        wait_ts: int | None = None,
        alloc_secs: int | None = None,
        recurrence_rule: str | None = None,
        lifecycle: Lifecycle = Lifecycle.OPEN,
    ) -> Task:
        data = {
            "uuid": str(uuid.uuid4()),
            "description": description,
            "lifecycle": Lifecycle(lifecycle).value,
            "project": project,
            "tags_json": json.dumps(list(tags or [])),
            "due_ts": due_ts,
            "scheduled_ts": scheduled_ts,
            "wait_ts": wait_ts,
            "alloc_secs": alloc_secs,
            "recurrence_rule": recurrence_rule,
            "created_ts": created_ts,
            "modified_ts": created_ts,
        }
        cursor = self._execute(safe_sql.insert("tasks", list(data)), list(data.values()))
        return self.get_task(cursor.lastrowid)

    def get_task(self, task_id: int) -> Task | None:
        rows = self._query(safe_sql.select("tasks", where="id = ?"), [task_id])
        return _row_to_task(rows[0]) if rows else None

    def get_task_by_uuid(self, task_uuid: str) -> Task | None:
        rows = self._query(safe_sql.select("tasks", where="uuid = ?"), [task_uuid])
        return _row_to_task(rows[0]) if rows else None

    def list_tasks(self, lifecycle: Lifecycle | None = None) -> list[Task]:
        if lifecycle is None:
            rows = self._query(safe_sql.select("tasks", order_by="id"))
        else:
            rows = self._query(
                safe_sql.select("tasks", where="lifecycle = ?", order_by="id"),
                [Lifecycle(lifecycle).value],
            )
        return [_row_to_task(row) for row in rows]

    def update_task(self, task_id: int, data: dict[str, Any]) -> bool:
        """
        Update task columns. ``tags`` and ``lifecycle`` are accepted in their
        model form and stored in column form.
        """
        if not data:
            return False
        row: dict[str, Any] = {}
        for key, value in data.items():
            if key == "tags":
                row["tags_json"] = json.dumps(list(value or []))
            elif key == "lifecycle":
                row["lifecycle"] = Lifecycle(value).value
            else:
                row[key] = value
        unknown = set(row) - _TASK_COLUMNS
        if unknown:
            raise ValueError(f"Not task columns: {sorted(unknown)}")

        values = list(row.values()) + [task_id]
        result = self._execute(safe_sql.update("tasks", list(row)), values)
        return result.rowcount > 0

    def delete_task(self, task_id: int) -> bool:
        result = self._execute(safe_sql.delete("tasks"), [task_id])
        return result.rowcount > 0

    # ==================== Sessions ====================

    def create_session(
        self, task_id: int, start_ts: int, end_ts: int | None, created_ts: int
    ) -> Session:
        cursor = self._execute(
            safe_sql.insert("sessions", ["task_id", "start_ts", "end_ts", "created_ts"]),
            [task_id, start_ts, end_ts, created_ts],
        )
        return Session(
            id=cursor.lastrowid,
            task_id=task_id,
            start_ts=start_ts,
            end_ts=end_ts,
            created_ts=created_ts,
        )

    def get_session(self, session_id: int) -> Session | None:
        rows = self._query(safe_sql.select("sessions", where="id = ?"), [session_id])
        return _row_to_session(rows[0]) if rows else None

    def get_open_sessions(self) -> list[Session]:
        """All rows with no end. More than one means the store is inconsistent."""
        rows = self._query(safe_sql.select("sessions", where="end_ts IS NULL", order_by="id"))
        return [_row_to_session(row) for row in rows]

    def get_open_session(self) -> Session | None:
        sessions = self.get_open_sessions()
        return sessions[0] if sessions else None

    def list_sessions(self, task_id: int | None = None) -> list[Session]:
        """Sessions ordered by start time (oldest first)."""
        if task_id is None:
            rows = self._query(safe_sql.select("sessions", order_by="start_ts, id"))
        else:
            rows = self._query(
                safe_sql.select("sessions", where="task_id = ?", order_by="start_ts, id"),
                [task_id],
            )
        return [_row_to_session(row) for row in rows]

    def sessions_touching(self, start_ts: int, end_ts: int) -> list[Session]:
        """
        Sessions whose [start, end) intersects the closed window
        [start_ts, end_ts]. Open sessions extend to infinity.

        Deliberately a superset; the interval engine decides what overlaps.
        """
        rows = self._query(
            safe_sql.select(
                "sessions",
                where="start_ts <= ? AND (end_ts IS NULL OR end_ts >= ?)",
                order_by="start_ts, id",
            ),
            [end_ts, start_ts],
        )
        return [_row_to_session(row) for row in rows]

    def update_session(self, session_id: int, start_ts: int, end_ts: int | None) -> bool:
        result = self._execute(
            safe_sql.update("sessions", ["start_ts", "end_ts"]),
            [start_ts, end_ts, session_id],
        )
        return result.rowcount > 0

    def delete_session(self, session_id: int) -> bool:
        result = self._execute(safe_sql.delete("sessions"), [session_id])
        return result.rowcount > 0

    # ==================== Queue ====================

    def get_queue(self) -> list[int]:
        """Queued task ids, head first."""
        rows = self._query(safe_sql.select("queue_items", "task_id", order_by="ordinal, added_ts"))
        return [row["task_id"] for row in rows]

    def get_queue_ordinals(self) -> dict[int, int]:
        """Raw task_id -> stored ordinal, for invariant checks."""
        rows = self._query(safe_sql.select("queue_items", "task_id, ordinal"))
        return {row["task_id"]: row["ordinal"] for row in rows}

    def set_queue(self, task_ids: list[int], now_ts: int) -> None:
        """
        Replace the queue with *task_ids* in order, renumbering 0..N-1.

        Entries that stay keep their original added_ts.
        """
        added = {
            row["task_id"]: row["added_ts"]
            for row in self._query(safe_sql.select("queue_items", "task_id, added_ts"))
        }
        with self.transaction():
            self._execute("DELETE FROM queue_items")
            sql = safe_sql.insert("queue_items", ["task_id", "ordinal", "added_ts"])
            for ordinal, task_id in enumerate(task_ids):
                self._execute(sql, [task_id, ordinal, added.get(task_id, now_ts)])

    # ==================== External hand-offs ====================

    def create_external(
        self,
        task_id: int,
        sent_ts: int,
        recipient: str | None = None,
        request: str | None = None,
    ) -> ExternalRecord:
        cursor = self._execute(
            safe_sql.insert("externals", ["task_id", "recipient", "request", "sent_ts"]),
            [task_id, recipient, request, sent_ts],
        )
        return ExternalRecord(
            id=cursor.lastrowid,
            task_id=task_id,
            sent_ts=sent_ts,
            recipient=recipient,
            request=request,
        )

    def get_waiting_externals(self, task_id: int | None = None) -> list[ExternalRecord]:
        if task_id is None:
            rows = self._query(
                safe_sql.select("externals", where="collected_ts IS NULL", order_by="sent_ts, id")
            )
        else:
            rows = self._query(
                safe_sql.select(
                    "externals",
                    where="task_id = ? AND collected_ts IS NULL",
                    order_by="sent_ts, id",
                ),
                [task_id],
            )
        return [_row_to_external(row) for row in rows]

    def list_externals(self, task_id: int) -> list[ExternalRecord]:
        rows = self._query(
            safe_sql.select("externals", where="task_id = ?", order_by="sent_ts, id"), [task_id]
        )
        return [_row_to_external(row) for row in rows]

    def collect_externals(self, task_id: int, collected_ts: int) -> int:
        """Stamp every waiting record of a task as collected. Returns count."""
        result = self._execute(
            safe_sql.update("externals", ["collected_ts"], where="task_id = ? AND collected_ts IS NULL"),
            [collected_ts, task_id],
        )
        return result.rowcount

    def delete_externals(self, task_id: int) -> int:
        result = self._execute(safe_sql.delete("externals", where="task_id = ?"), [task_id])
        return result.rowcount

    # ==================== Events ====================

    def record_event(self, task_id: int, kind: str, ts: int, detail: dict | None = None) -> None:
        self._execute(
            safe_sql.insert("task_events", ["task_id", "kind", "ts", "detail_json"]),
            [task_id, str(kind), ts, json.dumps(detail or {}, default=str)],
        )

    def list_events(self, task_id: int | None = None) -> list[TaskEvent]:
        if task_id is None:
            rows = self._query(safe_sql.select("task_events", order_by="id"))
        else:
            rows = self._query(
                safe_sql.select("task_events", where="task_id = ?", order_by="id"), [task_id]
            )
        return [
            TaskEvent(
                id=row["id"],
                task_id=row["task_id"],
                kind=row["kind"],
                ts=row["ts"],
                detail=json.loads(row["detail_json"] or "{}"),
            )
            for row in rows
        ]

    def count(self, table: str, where: str | None = None, params: list | None = None) -> int:
        row = self._conn.execute(safe_sql.select_count(table, where=where), params or []).fetchone()
        return row["c"] if row else 0


# ==================== Row conversion ====================


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        uuid=row["uuid"],
        description=row["description"],
        lifecycle=Lifecycle(row["lifecycle"]),
        project=row["project"],
        tags=json.loads(row["tags_json"] or "[]"),
        due_ts=row["due_ts"],
        scheduled_ts=row["scheduled_ts"],
        wait_ts=row["wait_ts"],
        alloc_secs=row["alloc_secs"],
        recurrence_rule=row["recurrence_rule"],
        created_ts=row["created_ts"],
        modified_ts=row["modified_ts"],
    )


def _row_to_session(row: sqlite3.Row) -> Session:
    return Session(
        id=row["id"],
        task_id=row["task_id"],
        start_ts=row["start_ts"],
        end_ts=row["end_ts"],
        created_ts=row["created_ts"],
    )


def _row_to_external(row: sqlite3.Row) -> ExternalRecord:
    return ExternalRecord(
        id=row["id"],
        task_id=row["task_id"],
        sent_ts=row["sent_ts"],
        recipient=row["recipient"],
        request=row["request"],
        collected_ts=row["collected_ts"],
    )
