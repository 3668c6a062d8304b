from __future__ import annotations

from typing import Optional


def escape(value: str) -> str:
    return value.replace("'", "''")


def format_query(
    entity: str,
    *,
    where: Optional[str] = None,
    start_position: Optional[int] = None,
    max_results: Optional[int] = None,
) -> str:
    """Build a QuickBooks query statement; paging clauses follow the WHERE clause."""
    statement = f"SELECT * FROM {entity}"
    if where:
        statement = f"{statement} WHERE {where}"
    if start_position:
        statement = f"{statement} STARTPOSITION {start_position}"
    if max_results:
        statement = f"{statement} MAXRESULTS {max_results}"
    return statement


def format_count_query(entity: str, *, where: Optional[str] = None) -> str:
    statement = f"SELECT COUNT(*) FROM {entity}"
    if where:
        statement = f"{statement} WHERE {where}"
    return statement


def equals(field: str, value: str) -> str:
    return f"{field} = '{escape(value)}'"


def including_inactive(clause: str) -> str:
    return f"{clause} AND Active IN (true, false)"
