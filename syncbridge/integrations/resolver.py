from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from syncbridge.integrations.columns import SEQUENCE_NEXTVAL, ExtractionSource
from syncbridge.integrations.documents import Document, json_safe
from syncbridge.integrations.store import Row, RowStore, UpsertCommand

if TYPE_CHECKING:
    from syncbridge.integrations.base import Integration
    from syncbridge.integrations.webhook import WebhookRequest


logger = logging.getLogger(__name__)

CHANGING_ACTIONS = frozenset({"inserted", "updated", "deleted"})


@dataclass(frozen=True)
class RowChange:
    action: str
    row: Row | None
    previous: Row | None
    external_id: Any
    external_id_column: str

    @property
    def changed(self) -> bool:
        return self.action in CHANGING_ACTIONS

    def summary(self) -> dict[str, Any]:
        # Queue-safe payload for row-change fan-out.
        return {
            "action": self.action,
            "row": json_safe(self.row if self.row is not None else self.previous),
            "external_id_column": self.external_id_column,
            "external_id": json_safe(self.external_id),
        }


@dataclass(frozen=True)
class UpsertResult:
    # inserted, updated, unchanged, deleted, absent (delete of a missing key) or skipped.
    action: str
    row: Row | None
    remote_key: Any = None
    previous: Row | None = None
    key_column: str = ""

    @property
    def changed(self) -> bool:
        return self.action in CHANGING_ACTIONS

    @property
    def inserted(self) -> bool:
        return self.action == "inserted"

    def to_change(self) -> RowChange:
        return RowChange(
            action=self.action,
            row=self.row,
            previous=self.previous,
            external_id=self.remote_key,
            external_id_column=self.key_column,
        )


SKIPPED = UpsertResult(action="skipped", row=None)


class ConflictResolver:
    """Turns one resource document into a single atomic upsert or delete against the row store."""

    def __init__(self, store: RowStore) -> None:
        self.store = store

    async def resolve(
        self,
        integration: Integration,
        *,
        resource: Document,
        event: Document | None = None,
        enrichment: Document | None = None,
        request: WebhookRequest | None = None,
        delete: bool = False,
    ) -> UpsertResult:
        source = ExtractionSource(resource=resource, event=event, enrichment=enrichment, request=request)
        key_column = integration.key_column()
        key = key_column.extract(source)
        schema = integration.schema
        table = integration.table_name

        if delete:
            if key is SEQUENCE_NEXTVAL:
                return UpsertResult(action="absent", row=None, key_column=key_column.name)
            previous = await self.store.delete_row(schema, table, key_column.name, key)
            return UpsertResult(
                action="deleted" if previous is not None else "absent",
                row=None,
                remote_key=key,
                previous=previous,
                key_column=key_column.name,
            )

        if key is SEQUENCE_NEXTVAL:
            key = await self.store.next_sequence_value(schema, integration.sequence_name)
        values: dict[str, Any] = {key_column.name: key}
        for column in integration.denormalized_columns():
            value = column.extract(source)
            if value is SEQUENCE_NEXTVAL:
                value = await self.store.next_sequence_value(schema, integration.sequence_name)
            if value is None and column.skip_nil:
                continue
            values[column.name] = value
        if integration.store_enrichment_body:
            values["enrichment"] = enrichment
        command = UpsertCommand(
            schema=schema,
            table=table,
            key_column=key_column.name,
            key=key,
            values=values,
            data=integration.prepare_document(resource, event=event, enrichment=enrichment, remote_key=key),
            recency_column=integration.recency_column_name(),
        )
        outcome = await self.store.upsert(command)
        logger.debug(
            "row_upserted",
            extra={"table": table, "action": outcome.action, "service": integration.service_name},
        )
        return UpsertResult(
            action=outcome.action,
            row=outcome.row,
            remote_key=key,
            previous=outcome.previous,
            key_column=key_column.name,
        )
