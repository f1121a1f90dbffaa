"""
SQL builders for the ledger tables.

Table and column names are looked up in taskledger.schema before they are
interpolated, so a statement can only name what the schema declares. Values
always travel as ? parameters. WHERE clauses are written by the store and
are passed through untouched.
"""

# ruff: noqa: S608

from __future__ import annotations

from collections.abc import Iterable

from taskledger import schema


def table(name: str) -> str:
    """Return *name* if it is a declared ledger table; raise ValueError otherwise."""
    if name not in schema.TABLES:
        raise ValueError(f"Unknown ledger table: {name!r}")
    return name


def columns(table_name: str, names: Iterable[str]) -> list[str]:
    """Return *names* if every one is a column of *table_name*."""
    declared = {col for col, _ in schema.TABLES[table(table_name)]["columns"]}
    names = list(names)
    unknown = [n for n in names if n not in declared]
    if unknown:
        raise ValueError(f"Unknown column(s) for {table_name}: {', '.join(unknown)}")
    return names


def _column_list(table_name: str, spec: str) -> str:
    if spec == "*":
        return spec
    return ", ".join(columns(table_name, (part.strip() for part in spec.split(","))))


# ────────────────────────────────────────────────────────────
# DDL
# ────────────────────────────────────────────────────────────


def create_table(name: str) -> str:
    body = ",\n".join(f"    {col} {ddl}" for col, ddl in schema.TABLES[table(name)]["columns"])
    return f"CREATE TABLE IF NOT EXISTS {name} (\n{body}\n)"


def create_index(name: str) -> str:
    """CREATE INDEX for an index declared in schema.INDEXES."""
    for idx_name, idx_table, idx_cols, idx_where, unique in schema.INDEXES:
        if idx_name == name:
            kind = "UNIQUE INDEX" if unique else "INDEX"
            where_clause = f" WHERE {idx_where}" if idx_where else ""
            return (
                f"CREATE {kind} IF NOT EXISTS {name} "
                f"ON {table(idx_table)}({idx_cols}){where_clause}"
            )
    raise ValueError(f"Unknown ledger index: {name!r}")


def user_version(version: int) -> str:
    if not isinstance(version, int) or version < 0:
        raise ValueError(f"Invalid schema version: {version!r}")
    return f"PRAGMA user_version = {version}"


# ────────────────────────────────────────────────────────────
# DML
# ────────────────────────────────────────────────────────────


def select(
    table_name: str,
    cols: str = "*",
    where: str | None = None,
    order_by: str | None = None,
) -> str:
    """
    SELECT from a ledger table.

    *cols* and *order_by* are comma-separated column names; *where* omits
    the keyword and uses ? for every value.
    """
    sql = f"SELECT {_column_list(table_name, cols)} FROM {table(table_name)}"
    if where:
        sql += f" WHERE {where}"
    if order_by:
        sql += f" ORDER BY {_column_list(table_name, order_by)}"
    return sql


def select_count(table_name: str, where: str | None = None) -> str:
    sql = f"SELECT COUNT(*) AS c FROM {table(table_name)}"
    if where:
        sql += f" WHERE {where}"
    return sql


def insert(table_name: str, cols: list[str]) -> str:
    names = columns(table_name, cols)
    placeholders = ", ".join("?" for _ in names)
    return f"INSERT INTO {table_name} ({', '.join(names)}) VALUES ({placeholders})"


def update(table_name: str, set_cols: list[str], where: str = "id = ?") -> str:
    sets = ", ".join(f"{col} = ?" for col in columns(table_name, set_cols))
    return f"UPDATE {table_name} SET {sets} WHERE {where}"


def delete(table_name: str, where: str = "id = ?") -> str:
    return f"DELETE FROM {table(table_name)} WHERE {where}"
