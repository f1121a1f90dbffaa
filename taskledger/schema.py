"""
Declarative Schema Definition.

Every table and index of the ledger database lives here. The schema_engine
creates whatever is missing, and safe_sql only builds statements naming
these tables and columns.

All timestamps are integer epoch seconds (UTC).
"""

from collections import OrderedDict

# =============================================================================
# Schema version: bump when you change this file
# =============================================================================
SCHEMA_VERSION = 1

# =============================================================================
# Table Definitions
#
# Format: TABLES[name] = {"columns": [(col_name, col_ddl), ...]}
# =============================================================================

TABLES: dict[str, dict] = OrderedDict()

TABLES["tasks"] = {
    "columns": [
        ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
        ("uuid", "TEXT NOT NULL UNIQUE"),
        ("description", "TEXT NOT NULL"),
        ("lifecycle", "TEXT NOT NULL DEFAULT 'open'"),
        ("project", "TEXT"),
        ("tags_json", "TEXT NOT NULL DEFAULT '[]'"),
        ("due_ts", "INTEGER"),
        ("scheduled_ts", "INTEGER"),
        ("wait_ts", "INTEGER"),
        ("alloc_secs", "INTEGER"),
        ("recurrence_rule", "TEXT"),
        ("created_ts", "INTEGER NOT NULL"),
        ("modified_ts", "INTEGER NOT NULL"),
    ],
}

TABLES["sessions"] = {
    "columns": [
        ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
        ("task_id", "INTEGER NOT NULL REFERENCES tasks(id)"),
        ("start_ts", "INTEGER NOT NULL"),
        ("end_ts", "INTEGER"),
        ("created_ts", "INTEGER NOT NULL"),
    ],
}

# Dense 0..N-1 ordinals; position 0 is the head.
TABLES["queue_items"] = {
    "columns": [
        ("task_id", "INTEGER PRIMARY KEY REFERENCES tasks(id)"),
        ("ordinal", "INTEGER NOT NULL"),
        ("added_ts", "INTEGER NOT NULL"),
    ],
}

TABLES["externals"] = {
    "columns": [
        ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
        ("task_id", "INTEGER NOT NULL REFERENCES tasks(id)"),
        ("recipient", "TEXT"),
        ("request", "TEXT"),
        ("sent_ts", "INTEGER NOT NULL"),
        ("collected_ts", "INTEGER"),
    ],
}

# Append-only audit trail. No FK: events outlive deleted tasks.
TABLES["task_events"] = {
    "columns": [
        ("id", "INTEGER PRIMARY KEY AUTOINCREMENT"),
        ("task_id", "INTEGER NOT NULL"),
        ("kind", "TEXT NOT NULL"),
        ("ts", "INTEGER NOT NULL"),
        ("detail_json", "TEXT NOT NULL DEFAULT '{}'"),
    ],
}

# =============================================================================
# Indexes
#
# Format: (name, table, columns, where, unique)
# =============================================================================

INDEXES: list[tuple[str, str, str, str | None, bool]] = [
    ("idx_tasks_lifecycle", "tasks", "lifecycle", None, False),
    ("idx_sessions_task", "sessions", "task_id, start_ts", None, False),
    ("idx_sessions_start", "sessions", "start_ts", None, False),
    # Backstop for the single-clock rule: at most one row with end_ts NULL.
    ("idx_sessions_single_open", "sessions", "(end_ts IS NULL)", "end_ts IS NULL", True),
    ("idx_queue_ordinal", "queue_items", "ordinal", None, False),
    ("idx_externals_task", "externals", "task_id", None, False),
    ("idx_events_task", "task_events", "task_id, ts", None, False),
]
