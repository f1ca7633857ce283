from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Protocol, Sequence

from syncbridge.core.errors import TableAlreadyExists
from syncbridge.integrations.columns import TableDescriptor
from syncbridge.integrations.ddl import drop_schema_sql
from syncbridge.integrations.documents import Document, merge_patch, rows_differ


Row = dict[str, Any]


@dataclass(frozen=True)
class UpsertCommand:
    schema: str
    table: str
    key_column: str
    key: Any
    # Denormalized column values, remote key included; skipped columns are absent.
    values: dict[str, Any]
    data: Document
    # Set only when the integration resolves conflicts by recency.
    recency_column: str | None = None


@dataclass(frozen=True)
class StoreOutcome:
    action: str
    row: Row
    previous: Row | None = None


def incoming_is_not_older(stored: Any, incoming: Any) -> bool:
    if stored is None:
        return True
    if incoming is None:
        return False
    return incoming >= stored


class RowStore(Protocol):
    async def create_tables(
        self, schema: str, tables: Sequence[TableDescriptor], statements: Sequence[str]
    ) -> None: ...

    async def fetch_row(self, schema: str, table: str, key_column: str, key: Any) -> Row | None: ...

    async def upsert(self, command: UpsertCommand) -> StoreOutcome: ...

    async def delete_row(self, schema: str, table: str, key_column: str, key: Any) -> Row | None: ...

    async def next_sequence_value(self, schema: str, sequence: str) -> int: ...

    async def upsert_rows(
        self, schema: str, table: str, conflict_columns: Sequence[str], rows: Sequence[Row]
    ) -> int: ...

    async def drop_schema(self, schema: str) -> None: ...


@dataclass
class _MemoryTable:
    descriptor: TableDescriptor
    rows: list[Row] = field(default_factory=list)
    next_pk: int = 1


class InMemoryRowStore:
    """Row store used by tests and local runs; applies the same rules as the Postgres statements."""

    def __init__(self) -> None:
        self._tables: dict[tuple[str, str], _MemoryTable] = {}
        self._sequences: dict[tuple[str, str], int] = defaultdict(int)
        self._lock = asyncio.Lock()
        self.executed: list[str] = []

    def _table(self, schema: str, table: str) -> _MemoryTable:
        try:
            return self._tables[(schema, table)]
        except KeyError:
            raise LookupError(f"table {schema}.{table} does not exist") from None

    def has_table(self, schema: str, table: str) -> bool:
        return (schema, table) in self._tables

    def rows(self, schema: str, table: str) -> list[Row]:
        return [dict(row) for row in self._table(schema, table).rows]

    async def create_tables(
        self, schema: str, tables: Sequence[TableDescriptor], statements: Sequence[str]
    ) -> None:
        async with self._lock:
            for descriptor in tables:
                if (schema, descriptor.name) in self._tables:
                    raise TableAlreadyExists(f"relation {schema}.{descriptor.name} already exists")
            for descriptor in tables:
                self._tables[(schema, descriptor.name)] = _MemoryTable(descriptor=descriptor)
            self.executed.extend(statements)

    async def fetch_row(self, schema: str, table: str, key_column: str, key: Any) -> Row | None:
        for row in self._table(schema, table).rows:
            if row.get(key_column) == key:
                return dict(row)
        return None

    async def upsert(self, command: UpsertCommand) -> StoreOutcome:
        async with self._lock:
            table = self._table(command.schema, command.table)
            index, previous = self._find(table, command.key_column, command.key)
            if previous is None:
                row: Row = {"pk": table.next_pk}
                for col in table.descriptor.columns:
                    if col.name not in ("pk", "data"):
                        row[col.name] = None
                row.update(command.values)
                row["data"] = dict(command.data)
                table.next_pk += 1
                table.rows.append(row)
                return StoreOutcome(action="inserted", row=dict(row))
            if command.recency_column is not None and not incoming_is_not_older(
                previous.get(command.recency_column), command.values.get(command.recency_column)
            ):
                return StoreOutcome(action="unchanged", row=dict(previous), previous=dict(previous))
            updated = {**previous, **command.values, "data": merge_patch(previous.get("data"), command.data)}
            if not rows_differ(previous, updated):
                return StoreOutcome(action="unchanged", row=dict(previous), previous=dict(previous))
            table.rows[index] = updated
            return StoreOutcome(action="updated", row=dict(updated), previous=dict(previous))

    async def delete_row(self, schema: str, table: str, key_column: str, key: Any) -> Row | None:
        async with self._lock:
            memory_table = self._table(schema, table)
            index, previous = self._find(memory_table, key_column, key)
            if previous is None:
                return None
            del memory_table.rows[index]
            return dict(previous)

    async def next_sequence_value(self, schema: str, sequence: str) -> int:
        async with self._lock:
            self._sequences[(schema, sequence)] += 1
            return self._sequences[(schema, sequence)]

    async def upsert_rows(
        self, schema: str, table: str, conflict_columns: Sequence[str], rows: Sequence[Row]
    ) -> int:
        async with self._lock:
            memory_table = self._table(schema, table)
            for incoming in rows:
                match = None
                for existing in memory_table.rows:
                    if all(existing.get(col) == incoming.get(col) for col in conflict_columns):
                        match = existing
                        break
                if match is None:
                    memory_table.rows.append({"pk": memory_table.next_pk, **incoming})
                    memory_table.next_pk += 1
                else:
                    match.update(incoming)
            return len(rows)

    async def drop_schema(self, schema: str) -> None:
        async with self._lock:
            for key in [key for key in self._tables if key[0] == schema]:
                del self._tables[key]
            for key in [key for key in self._sequences if key[0] == schema]:
                del self._sequences[key]
            self.executed.append(drop_schema_sql(schema))

    @staticmethod
    def _find(table: _MemoryTable, key_column: str, key: Any) -> tuple[int, Row | None]:
        for index, row in enumerate(table.rows):
            if row.get(key_column) == key:
                return index, row
        return -1, None
