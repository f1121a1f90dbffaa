"""
Centralized Database Access for the ledger.

Single source of truth for:
- DB path resolution
- Connection factory
- Schema convergence (delegated to schema_engine)

ALL code must use this module for DB access. No direct sqlite3.connect() elsewhere.
"""

import logging
import sqlite3
from pathlib import Path

from taskledger import paths, schema, schema_engine

logger = logging.getLogger(__name__)

MEMORY_DB = ":memory:"


# ============================================================
# DB PATH RESOLUTION
# ============================================================


def get_db_path() -> Path:
    """
    Get the canonical DB path.

    Resolution order:
    1. TASKLEDGER_DB env var (explicit override)
    2. ~/.taskledger/data/taskledger.db (default via paths.db_path())
    """
    return paths.db_path()


def get_db_path_str() -> str:
    """Get DB path as string for sqlite3.connect()."""
    return str(get_db_path())


# ============================================================
# CONNECTION FACTORY
# ============================================================


def connect(db_path: str | None = None) -> sqlite3.Connection:
    """
    Open a connection with the ledger's settings.

    The connection runs in autocommit mode (isolation_level=None); callers
    that need atomicity issue BEGIN/COMMIT themselves (see
    TimelineStore.transaction).
    """
    db_path = db_path or get_db_path_str()
    if db_path != MEMORY_DB:
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(db_path, isolation_level=None)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    return conn


# ============================================================
# SCHEMA INTROSPECTION
# ============================================================


def table_exists(conn: sqlite3.Connection, table: str) -> bool:
    cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table' AND name=?", (table,))
    return cursor.fetchone() is not None


def get_schema_version(conn: sqlite3.Connection) -> int:
    """Get current schema version from PRAGMA user_version."""
    cursor = conn.execute("PRAGMA user_version")
    return cursor.fetchone()[0]


# ============================================================
# SCHEMA CONVERGENCE: delegates to schema_engine
# ============================================================


def ensure_schema(conn: sqlite3.Connection) -> dict:
    """
    Converge the database schema to match taskledger.schema.

    Returns a results dict for logging.
    """
    previous_version = get_schema_version(conn)
    results = schema_engine.converge(conn)
    results["previous_version"] = previous_version

    if results["tables_created"] or results["indexes_created"]:
        logger.info(
            "Schema converged to v%s (tables=%s, indexes=%s)",
            schema.SCHEMA_VERSION,
            results["tables_created"],
            results["indexes_created"],
        )
    return results
