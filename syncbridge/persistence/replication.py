from __future__ import annotations

import logging
from typing import Any, Sequence

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from syncbridge.integrations.columns import TableDescriptor
from syncbridge.integrations.ddl import drop_schema_sql, qualified_table, quote_identifier
from syncbridge.integrations.documents import dumps
from syncbridge.integrations.store import Row, StoreOutcome, UpsertCommand


logger = logging.getLogger(__name__)

_INSERTED_FLAG = "_sb_inserted"


def _bind_value(name: str, value: Any) -> tuple[str, Any]:
    # Documents travel as JSON text and are cast server-side.
    if isinstance(value, dict):
        return f"CAST(:{name} AS jsonb)", dumps(value)
    return f":{name}", value


def build_upsert_sql(command: UpsertCommand) -> tuple[str, dict[str, Any]]:
    """Render one atomic insert-or-merge for ``command``.

    The conflict branch only fires when the incoming row is not older than the
    stored one (when a recency column is set) and the merged row differs from
    the stored row; otherwise no row is returned and the caller re-reads.
    """
    table = qualified_table(command.schema, command.table)
    key = quote_identifier(command.key_column)
    params: dict[str, Any] = {}
    columns: list[str] = []
    placeholders: list[str] = []
    for index, (column, value) in enumerate(command.values.items()):
        placeholder, bound = _bind_value(f"v{index}", value)
        params[f"v{index}"] = bound
        columns.append(quote_identifier(column))
        placeholders.append(placeholder)
    params["data"] = dumps(command.data)
    columns.append("data")
    placeholders.append("CAST(:data AS jsonb)")

    updated = [quote_identifier(column) for column in command.values if column != command.key_column]
    assignments = [f"{column} = EXCLUDED.{column}" for column in updated]
    assignments.append("data = t.data || EXCLUDED.data")
    stored = ", ".join([*(f"t.{column}" for column in updated), "t.data"])
    incoming = ", ".join([*(f"EXCLUDED.{column}" for column in updated), "t.data || EXCLUDED.data"])
    conditions = [f"ROW({stored}) IS DISTINCT FROM ROW({incoming})"]
    if command.recency_column is not None:
        recency = quote_identifier(command.recency_column)
        conditions.insert(0, f"(t.{recency} IS NULL OR EXCLUDED.{recency} >= t.{recency})")

    sql = (
        f"INSERT INTO {table} AS t ({', '.join(columns)}) VALUES ({', '.join(placeholders)}) "
        f"ON CONFLICT ({key}) DO UPDATE SET {', '.join(assignments)} "
        f"WHERE {' AND '.join(conditions)} "
        f"RETURNING t.*, (t.xmax = 0) AS {_INSERTED_FLAG}"
    )
    return sql, params


def build_upsert_rows_sql(
    schema: str, table: str, conflict_columns: Sequence[str], columns: Sequence[str]
) -> str:
    quoted = [quote_identifier(column) for column in columns]
    targets = ", ".join(quote_identifier(column) for column in conflict_columns)
    updates = [
        f"{quote_identifier(column)} = EXCLUDED.{quote_identifier(column)}"
        for column in columns
        if column not in conflict_columns
    ]
    action = f"DO UPDATE SET {', '.join(updates)}" if updates else "DO NOTHING"
    values = ", ".join(f":{column}" for column in columns)
    return (
        f"INSERT INTO {qualified_table(schema, table)} ({', '.join(quoted)}) VALUES ({values}) "
        f"ON CONFLICT ({targets}) {action}"
    )


class PostgresRowStore:
    """Row store over the tenant's replication schema; every write is a single statement."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine

    async def create_tables(
        self, schema: str, tables: Sequence[TableDescriptor], statements: Sequence[str]
    ) -> None:
        # CREATE TABLE errors (already exists) propagate; indices use IF NOT EXISTS.
        async with self.engine.begin() as conn:
            for statement in statements:
                await conn.exec_driver_sql(statement)

    async def fetch_row(self, schema: str, table: str, key_column: str, key: Any) -> Row | None:
        sql = f"SELECT * FROM {qualified_table(schema, table)} WHERE {quote_identifier(key_column)} = :key"
        async with self.engine.connect() as conn:
            result = await conn.execute(text(sql), {"key": key})
            row = result.mappings().first()
        return dict(row) if row is not None else None

    async def upsert(self, command: UpsertCommand) -> StoreOutcome:
        sql, params = build_upsert_sql(command)
        async with self.engine.begin() as conn:
            result = await conn.execute(text(sql), params)
            returned = result.mappings().first()
        if returned is None:
            # Guarded update skipped: stale or identical payload.
            current = await self.fetch_row(command.schema, command.table, command.key_column, command.key)
            return StoreOutcome(action="unchanged", row=current or {}, previous=current)
        row = dict(returned)
        inserted = bool(row.pop(_INSERTED_FLAG))
        return StoreOutcome(action="inserted" if inserted else "updated", row=row)

    async def delete_row(self, schema: str, table: str, key_column: str, key: Any) -> Row | None:
        sql = f"DELETE FROM {qualified_table(schema, table)} WHERE {quote_identifier(key_column)} = :key RETURNING *"
        async with self.engine.begin() as conn:
            result = await conn.execute(text(sql), {"key": key})
            row = result.mappings().first()
        return dict(row) if row is not None else None

    async def next_sequence_value(self, schema: str, sequence: str) -> int:
        async with self.engine.begin() as conn:
            result = await conn.execute(text("SELECT nextval(:seq)"), {"seq": qualified_table(schema, sequence)})
            return int(result.scalar_one())

    async def upsert_rows(
        self, schema: str, table: str, conflict_columns: Sequence[str], rows: Sequence[Row]
    ) -> int:
        if not rows:
            return 0
        columns = list(rows[0].keys())
        sql = build_upsert_rows_sql(schema, table, conflict_columns, columns)
        async with self.engine.begin() as conn:
            await conn.execute(text(sql), [dict(row) for row in rows])
        return len(rows)

    async def drop_schema(self, schema: str) -> None:
        async with self.engine.begin() as conn:
            await conn.exec_driver_sql(drop_schema_sql(schema))
        logger.info("replication_schema_dropped", extra={"schema": schema})
