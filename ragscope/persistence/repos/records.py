from __future__ import annotations

from datetime import datetime
from typing import Any, Callable

from sqlalchemy import Column, DateTime, MetaData, String, Table, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.sql.elements import ColumnElement

from ragscope.core.errors import VectorStoreError


def _table_for(name: str, columns: list[str], timestamp_field: str) -> Table:
    # Declare only the columns scope filters need; the table itself is owned elsewhere.
    cols = []
    for col in columns:
        if col == timestamp_field:
            cols.append(Column(col, DateTime(timezone=True)))
        else:
            cols.append(Column(col, String))
    return Table(name, MetaData(), *cols)


def filter_predicates(table: Table, filter_clauses: dict[str, Any], timestamp_field: str) -> list[ColumnElement[bool]]:
    predicates: list[ColumnElement[bool]] = []
    for field, value in filter_clauses.items():
        column = table.c[field]
        if isinstance(value, dict):
            if "gte" in value:
                bound = value["gte"]
                predicates.append(column >= (datetime.fromisoformat(bound) if isinstance(bound, str) else bound))
            if "lte" in value:
                bound = value["lte"]
                predicates.append(column <= (datetime.fromisoformat(bound) if isinstance(bound, str) else bound))
        else:
            predicates.append(column == (value if field == timestamp_field else str(value)))
    return predicates


async def count_records(
    session: AsyncSession,
    table_name: str,
    filter_clauses: dict[str, Any],
    *,
    timestamp_field: str = "created_at",
) -> int:
    # Count rows with the same equality/range semantics the vector store applies.
    table = _table_for(table_name, list(filter_clauses), timestamp_field)
    stmt = select(func.count()).select_from(table)
    predicates = filter_predicates(table, filter_clauses, timestamp_field)
    if predicates:
        stmt = stmt.where(*predicates)
    try:
        result = await session.execute(stmt)
    except SQLAlchemyError as exc:
        raise VectorStoreError(f"system-of-record count failed for {table_name}") from exc
    return int(result.scalar_one())


class SqlRecordCounter:
    """Authoritative counts from the relational system of record."""

    def __init__(
        self,
        tables: dict[str, str],
        session_factory: Callable[[], Any],
        *,
        timestamp_field: str = "created_at",
    ) -> None:
        self._tables = dict(tables)
        self._session_factory = session_factory
        self._timestamp_field = timestamp_field

    def supports(self, collection: str) -> bool:
        return collection in self._tables

    async def count(self, collection: str, filter_clauses: dict[str, Any]) -> int:
        table_name = self._tables.get(collection)
        if table_name is None:
            raise VectorStoreError(f"no system-of-record table for {collection}")
        async with self._session_factory() as session:
            return await count_records(
                session,
                table_name,
                filter_clauses,
                timestamp_field=self._timestamp_field,
            )
