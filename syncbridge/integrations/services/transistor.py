from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from syncbridge.core.errors import MalformedPayload
from syncbridge.integrations.base import Integration
from syncbridge.integrations.backfill import Page
from syncbridge.integrations.columns import (
    Column,
    ColumnType,
    IndexDescriptor,
    TableDescriptor,
    date_in_format,
    to_int,
    to_timestamp,
)
from syncbridge.integrations.documents import Document
from syncbridge.integrations.http import response_json, send
from syncbridge.integrations.registry import Descriptor
from syncbridge.integrations.resolver import UpsertResult
from syncbridge.integrations.state_machine import Requirement
from syncbridge.integrations.webhook import AlwaysAccept, WebhookAuthenticator, WebhookRequest
from syncbridge.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

API_URL = "https://api.transistor.fm"
TRANSISTOR_DATE_FORMAT = "%d-%m-%Y"
to_stats_date = date_in_format(TRANSISTOR_DATE_FORMAT)


class TransistorEpisodeV1(Integration):
    # Transistor allows 10 requests per 10 seconds per key.
    enrichment_min_interval_s = 1.0

    @classmethod
    def descriptor(cls) -> Descriptor:
        return Descriptor(
            name="transistor_episode_v1",
            integration_class=cls,
            resource_name_singular="Transistor Episode",
            resource_name_plural="Transistor Episodes",
            supports_backfill=True,
        )

    @property
    def stats_table_name(self) -> str:
        return f"{self.table_name}_stats"

    def remote_key_column(self) -> Column:
        return Column("transistor_id", ColumnType.TEXT, data_key="id")

    def denormalized_columns(self) -> tuple[Column, ...]:
        return (
            Column("author", ColumnType.TEXT, data_key=("attributes", "author")),
            Column("created_at", ColumnType.TIMESTAMP, data_key=("attributes", "created_at"), converter=to_timestamp),
            Column("duration", ColumnType.INTEGER, data_key=("attributes", "duration"), converter=to_int),
            Column("number", ColumnType.INTEGER, data_key=("attributes", "number"), converter=to_int),
            Column(
                "published_at",
                ColumnType.TIMESTAMP,
                data_key=("attributes", "published_at"),
                converter=to_timestamp,
                index=True,
            ),
            Column("season", ColumnType.INTEGER, data_key=("attributes", "season"), converter=to_int),
            Column("show_id", ColumnType.TEXT, data_key=("relationships", "show", "data", "id"), index=True),
            Column("status", ColumnType.TEXT, data_key=("attributes", "status")),
            Column("title", ColumnType.TEXT, data_key=("attributes", "title")),
            Column("type", ColumnType.TEXT, data_key=("attributes", "type")),
            Column("updated_at", ColumnType.TIMESTAMP, data_key=("attributes", "updated_at"), converter=to_timestamp),
        )

    def timestamp_column(self) -> Column | None:
        return self.denormalized_columns()[-1]

    def enrichment_tables_descriptors(self) -> tuple[TableDescriptor, ...]:
        return (
            TableDescriptor(
                name=self.stats_table_name,
                columns=(
                    Column("pk", ColumnType.BIGINT, primary_key=True, optional=False),
                    Column("date", ColumnType.DATE, optional=False),
                    Column("downloads", ColumnType.INTEGER),
                    Column("episode_id", ColumnType.TEXT, optional=False),
                ),
                indices=(
                    IndexDescriptor(
                        name=f"{self.service_integration.opaque_id}_stats_date_episode_id_idx",
                        columns=("date", "episode_id"),
                        unique=True,
                    ),
                ),
            ),
        )

    def authenticator(self) -> WebhookAuthenticator:
        # Transistor does not sign webhooks.
        return AlwaysAccept()

    def resource_and_event(self, request: WebhookRequest) -> tuple[Document | None, Document | None]:
        body = request.json()
        if "event_name" in body:
            return body.get("data") or None, body
        return body, None

    def create_requirements(self) -> list[Requirement]:
        return self.backfill_requirements()

    def backfill_requirements(self) -> list[Requirement]:
        return [
            Requirement(
                field="backfill_key",
                prompt="Paste or type your API key here:",
                secret=True,
                output=(
                    "To backfill Transistor Episodes and their download stats we need an API key.\n"
                    "You can find it on your Transistor account page."
                ),
            )
        ]

    def create_completion_output(self) -> str:
        return (
            f"{super().create_completion_output()}\n"
            f"Download analytics for each episode are stored in {self.stats_table_name}."
        )

    async def fetch_enrichment(
        self, resource: Document, event: Document | None, request: WebhookRequest | None
    ) -> Document | None:
        sint = self.service_integration
        if not sint.backfill_key:
            return None
        created_at = to_timestamp((resource.get("attributes") or {}).get("created_at"))
        params = {"end_date": self.context.clock().strftime(TRANSISTOR_DATE_FORMAT)}
        if created_at is not None:
            params["start_date"] = created_at.strftime(TRANSISTOR_DATE_FORMAT)
        response = await send(
            self.context.http,
            "GET",
            f"{API_URL}/v1/analytics/episodes/{resource.get('id')}",
            integration=self.service_name,
            params=params,
            headers={"x-api-key": sint.backfill_key},
        )
        return response_json(response)

    async def after_upsert(self, result: UpsertResult, resource: Document, enrichment: Document | None) -> None:
        if not enrichment or result.remote_key is None:
            return
        downloads = ((enrichment.get("data") or {}).get("attributes") or {}).get("downloads") or []
        rows = []
        for entry in downloads:
            try:
                rows.append(self._stats_row(entry, result.remote_key))
            except MalformedPayload as exc:
                increment_counter("enrichment_rows_malformed_total")
                logger.warning(
                    "transistor_stats_entry_skipped",
                    extra={"episode_id": result.remote_key, "reason": str(exc)},
                )
        if rows:
            await self.context.store.upsert_rows(self.schema, self.stats_table_name, ("date", "episode_id"), rows)

    @staticmethod
    def _stats_row(entry: Any, episode_id: Any) -> dict[str, Any]:
        if not isinstance(entry, dict):
            raise MalformedPayload(f"stats entry is not an object: {entry!r}")
        day = to_stats_date(entry.get("date"))
        if day is None:
            raise MalformedPayload("stats entry has no date")
        return {"date": day, "downloads": to_int(entry.get("downloads")), "episode_id": episode_id}

    async def fetch_backfill_page(self, cursor: Any, *, last_backfilled_at: datetime | None) -> Page:
        page_number = int(cursor or 1)
        response = await send(
            self.context.http,
            "GET",
            f"{API_URL}/v1/episodes",
            integration=self.service_name,
            params={"pagination[page]": page_number},
            headers={"x-api-key": self.service_integration.backfill_key},
        )
        body = response_json(response)
        meta = body.get("meta") or {}
        current_page = int(meta.get("currentPage") or page_number)
        total_pages = int(meta.get("totalPages") or current_page)
        next_page = current_page + 1 if current_page < total_pages else None
        return Page(items=list(body.get("data") or []), next_cursor=next_page)
