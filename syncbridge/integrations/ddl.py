from __future__ import annotations

import re
from typing import Iterable, Sequence

from syncbridge.integrations.columns import Column, ColumnType, IndexDescriptor, TableDescriptor


COLTYPE_MAP: dict[ColumnType, str] = {
    ColumnType.TEXT: "text",
    ColumnType.INTEGER: "integer",
    ColumnType.BIGINT: "bigint",
    ColumnType.FLOAT: "real",
    ColumnType.DOUBLE: "double precision",
    ColumnType.DECIMAL: "numeric",
    ColumnType.BOOLEAN: "boolean",
    ColumnType.DATE: "date",
    ColumnType.TIMESTAMP: "timestamptz",
    ColumnType.OBJECT: "jsonb",
    ColumnType.TEXT_ARRAY: "text[]",
    ColumnType.INTEGER_ARRAY: "integer[]",
}

# PostgreSQL keywords that are reserved in every identifier position.
RESERVED_KEYWORDS = frozenset(
    """
    all analyse analyze and any array as asc asymmetric authorization binary both case cast check
    collate collation column concurrently constraint create cross current_catalog current_date
    current_role current_schema current_time current_timestamp current_user default deferrable desc
    distinct do else end except false fetch for foreign freeze from full grant group having ilike in
    initially inner intersect into is isnull join lateral leading left like limit localtime
    localtimestamp natural not notnull null offset on only or order outer overlaps placing primary
    references returning right select session_user similar some symmetric table tablesample then to
    trailing true union unique user using variadic verbose when where window with
    """.split()
)

_BARE_IDENTIFIER = re.compile(r"^[a-z_][a-z0-9_$]*$")


def quote_identifier(name: str) -> str:
    # Bare identifiers pass through; anything Postgres would fold or reject gets double quotes.
    if not name:
        raise ValueError("identifier must not be empty")
    if _BARE_IDENTIFIER.match(name) and name not in RESERVED_KEYWORDS:
        return name
    return '"' + name.replace('"', '""') + '"'


def qualified_table(schema: str, table: str) -> str:
    return f"{quote_identifier(schema)}.{quote_identifier(table)}"


def column_definition(column: Column) -> str:
    name = quote_identifier(column.name)
    if column.primary_key:
        return f"{name} bigserial PRIMARY KEY"
    parts = [name, COLTYPE_MAP[column.type]]
    if column.unique:
        parts.append("UNIQUE")
    if not column.optional:
        parts.append("NOT NULL")
    return " ".join(parts)


def create_table_sql(schema: str, table: TableDescriptor) -> str:
    columns = ", ".join(column_definition(col) for col in table.columns)
    return f"CREATE TABLE {qualified_table(schema, table.name)} ({columns});"


def create_index_sql(schema: str, table_name: str, index: IndexDescriptor) -> str:
    unique = "UNIQUE " if index.unique else ""
    columns = ", ".join(quote_identifier(col) for col in index.columns)
    return (
        f"CREATE {unique}INDEX IF NOT EXISTS {quote_identifier(index.name)} "
        f"ON {qualified_table(schema, table_name)} ({columns});"
    )


def derived_indices(short_id: str, table: TableDescriptor) -> list[IndexDescriptor]:
    # Primary-table indices are named from the integration's short id, one per flagged column.
    return [
        IndexDescriptor(name=f"{short_id}_{col.name}_idx", columns=(col.name,))
        for col in table.columns
        if col.index and not col.primary_key
    ]


def replication_ddl(
    schema: str,
    short_id: str,
    primary: TableDescriptor,
    enrichment_tables: Sequence[TableDescriptor] = (),
) -> list[str]:
    statements = [create_table_sql(schema, primary)]
    statements.extend(
        create_index_sql(schema, primary.name, index)
        for index in [*derived_indices(short_id, primary), *primary.indices]
    )
    for table in enrichment_tables:
        statements.append(create_table_sql(schema, table))
        statements.extend(create_index_sql(schema, table.name, index) for index in table.indices)
    return statements


def create_schema_sql(schema: str) -> str:
    return f"CREATE SCHEMA IF NOT EXISTS {quote_identifier(schema)};"


def drop_schema_sql(schema: str) -> str:
    return f"DROP SCHEMA IF EXISTS {quote_identifier(schema)} CASCADE;"


def join_statements(statements: Iterable[str]) -> str:
    return "\n".join(statements)
