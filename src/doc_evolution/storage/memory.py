from __future__ import annotations

import copy
from typing import Any

from doc_evolution.core.errors import ImmutableRecordError, PersistenceError

TABLES = (
    "documents",
    "feedback",
    "rules",
    "jobs",
    "history",
    "applications",
    "attributions",
    "self_jobs",
)

# Rows in these tables are frozen once the named field is set
_FROZEN_WHEN = {"jobs": "completed_at", "self_jobs": "completed_at"}


class InMemoryStore:
    """Dict-of-tables store. Rows go in and come out as copies.

    No method awaits between reading and writing a row, so each call is
    atomic with respect to other coroutines on the same loop. Writes are
    staged on a copy of the table and become visible only once persisted.
    """

    def __init__(self) -> None:
        self._tables: dict[str, dict[str, dict[str, Any]]] = {name: {} for name in TABLES}

    def _table(self, table: str) -> dict[str, dict[str, Any]]:
        if table not in self._tables:
            raise PersistenceError(f"Unknown table {table!r}")
        return self._tables[table]

    def _row(self, table: str, row_id: str) -> dict[str, Any]:
        row = self._table(table).get(row_id)
        if row is None:
            raise PersistenceError(f"No row {row_id!r} in {table}")
        return row

    def _check_mutable(self, table: str, row: dict[str, Any]) -> None:
        field_name = _FROZEN_WHEN.get(table)
        if field_name and row.get(field_name) is not None:
            raise ImmutableRecordError(f"{table} row {row['id']!r} is already completed")

    def _persist(self, table: str, rows: dict[str, dict[str, Any]]) -> None:
        """Hook for subclasses that write tables out; raising discards the write."""

    def _commit(self, table: str, changed: dict[str, dict[str, Any]]) -> None:
        staged = {**self._table(table), **changed}
        self._persist(table, staged)
        self._tables[table] = staged

    @staticmethod
    def _changed(row: dict[str, Any], changes: dict[str, Any]) -> dict[str, Any]:
        new_row = copy.deepcopy(row)
        new_row.update(copy.deepcopy(changes))
        return new_row

    async def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        rows = self._table(table)
        row_id = row.get("id")
        if not row_id:
            raise PersistenceError(f"Row for {table} has no id")
        if row_id in rows:
            raise PersistenceError(f"Duplicate id {row_id!r} in {table}")
        new_row = copy.deepcopy(row)
        self._commit(table, {row_id: new_row})
        return copy.deepcopy(new_row)

    async def get(self, table: str, row_id: str) -> dict[str, Any] | None:
        row = self._table(table).get(row_id)
        return copy.deepcopy(row) if row is not None else None

    async def select(self, table: str, **filters: Any) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(row)
            for row in self._table(table).values()
            if all(row.get(k) == v for k, v in filters.items())
        ]

    async def update(
        self, table: str, row_id: str, changes: dict[str, Any]
    ) -> dict[str, Any]:
        row = self._row(table, row_id)
        self._check_mutable(table, row)
        new_row = self._changed(row, changes)
        self._commit(table, {row_id: new_row})
        return copy.deepcopy(new_row)

    async def update_many(
        self, table: str, row_ids: list[str], changes: dict[str, Any]
    ) -> int:
        rows = [self._row(table, row_id) for row_id in row_ids]
        for row in rows:
            self._check_mutable(table, row)
        if rows:
            self._commit(
                table, {row_id: self._changed(row, changes) for row_id, row in zip(row_ids, rows)}
            )
        return len(rows)

    async def compare_and_set(
        self,
        table: str,
        row_id: str,
        expected: dict[str, Any],
        changes: dict[str, Any],
    ) -> bool:
        row = self._row(table, row_id)
        if any(row.get(k) != v for k, v in expected.items()):
            return False
        self._check_mutable(table, row)
        self._commit(table, {row_id: self._changed(row, changes)})
        return True
