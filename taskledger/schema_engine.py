"""
Schema convergence: create what taskledger.schema declares and is missing.

Tables and indexes are created when absent and PRAGMA user_version is
stamped. Existing tables are left as they are; the ledger has one schema
version and no column migrations.
"""

import logging
import sqlite3

from taskledger import safe_sql, schema

logger = logging.getLogger(__name__)


def _existing(conn: sqlite3.Connection, kind: str) -> set[str]:
    cursor = conn.execute(
        "SELECT name FROM sqlite_master WHERE type = ? AND name NOT LIKE 'sqlite_%'", (kind,)
    )
    return {row[0] for row in cursor.fetchall()}


def converge(conn: sqlite3.Connection) -> dict:
    """Create missing tables, then missing indexes, then stamp the version."""
    results = {"tables_created": [], "indexes_created": []}

    existing_tables = _existing(conn, "table")
    for table_name in schema.TABLES:
        if table_name not in existing_tables:
            conn.execute(safe_sql.create_table(table_name))
            results["tables_created"].append(table_name)
            logger.info("schema_engine: created table %s", table_name)

    existing_indexes = _existing(conn, "index")
    for idx_name, *_ in schema.INDEXES:
        if idx_name not in existing_indexes:
            conn.execute(safe_sql.create_index(idx_name))
            results["indexes_created"].append(idx_name)

    conn.execute(safe_sql.user_version(schema.SCHEMA_VERSION))
    results["schema_version"] = schema.SCHEMA_VERSION
    return results
