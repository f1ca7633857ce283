from __future__ import annotations

from datetime import datetime
from typing import Any

from syncbridge.integrations.base import Integration
from syncbridge.integrations.backfill import Page
from syncbridge.integrations.columns import Column, ColumnType, to_timestamp
from syncbridge.integrations.documents import Document, json_safe
from syncbridge.integrations.http import response_json, send
from syncbridge.integrations.registry import Descriptor
from syncbridge.integrations.resolver import RowChange
from syncbridge.integrations.state_machine import Requirement
from syncbridge.integrations.webhook import (
    AlwaysAccept,
    HmacSignature,
    WebhookAuthenticator,
    WebhookRequest,
)


class FakeV1(Integration):
    """Reference integration used to exercise the core without a real source."""

    @classmethod
    def descriptor(cls) -> Descriptor:
        return Descriptor(
            name="fake_v1",
            integration_class=cls,
            resource_name_singular="Fake",
            resource_name_plural="Fakes",
            supports_backfill=True,
            feature_roles=("internal",),
        )

    def remote_key_column(self) -> Column:
        return Column("my_id", ColumnType.TEXT)

    def denormalized_columns(self) -> tuple[Column, ...]:
        return (Column("at", ColumnType.TIMESTAMP, converter=to_timestamp, index=True),)

    def timestamp_column(self) -> Column | None:
        return self.denormalized_columns()[0]

    def authenticator(self) -> WebhookAuthenticator:
        return HmacSignature(header="X-Fake-Signature", prefix="sha256=", success_status=202)

    def create_requirements(self) -> list[Requirement]:
        return [
            Requirement(
                field="webhook_secret",
                prompt="Paste or type your fake API secret here:",
                secret=True,
                output=f"Fake webhooks are delivered to {self.webhook_endpoint}.",
            )
        ]

    def backfill_requirements(self) -> list[Requirement]:
        return [
            Requirement(field="api_url", prompt="Enter the fake API URL:", output="Where does the fake API live?"),
            Requirement(
                field="backfill_key",
                prompt="Paste or type your fake API key here:",
                output="We need an API key to backfill fakes.",
            ),
            Requirement(
                field="backfill_secret",
                prompt="Paste or type your fake API secret here:",
                secret=True,
                output="We also need the matching API secret.",
            ),
        ]

    async def fetch_backfill_page(self, cursor: Any, *, last_backfilled_at: datetime | None) -> Page:
        sint = self.service_integration
        params = {"token": cursor or ""}
        if last_backfilled_at is not None:
            params["since"] = last_backfilled_at.isoformat()
        response = await send(
            self.context.http,
            "GET",
            sint.api_url,
            integration=self.service_name,
            params=params,
            headers={"Authorization": f"Bearer {sint.backfill_key}:{sint.backfill_secret}"},
        )
        body = response_json(response)
        return Page(items=list(body.get("data") or []), next_cursor=(body.get("pagination") or {}).get("next_cursor"))


class FakeWithEnrichmentsV1(FakeV1):
    store_enrichment_body = True

    @classmethod
    def descriptor(cls) -> Descriptor:
        return Descriptor(
            name="fake_with_enrichments_v1",
            integration_class=cls,
            resource_name_singular="Enriched Fake",
            resource_name_plural="Enriched Fakes",
            supports_backfill=True,
            feature_roles=("internal",),
        )

    def denormalized_columns(self) -> tuple[Column, ...]:
        return (
            *super().denormalized_columns(),
            Column("extra", ColumnType.TEXT, from_enrichment=True),
        )

    async def fetch_enrichment(
        self, resource: Document, event: Document | None, request: WebhookRequest | None
    ) -> Document | None:
        base = (self.service_integration.api_url or "https://fake-integration").rstrip("/")
        response = await send(
            self.context.http,
            "GET",
            f"{base}/enrichment/{resource.get('my_id')}",
            integration=self.service_name,
        )
        return response_json(response)


class FakeDependentV1(FakeV1):
    """Mirrors its parent's rows; used to exercise cascades through the dependency graph."""

    @classmethod
    def descriptor(cls) -> Descriptor:
        return Descriptor(
            name="fake_dependent_v1",
            integration_class=cls,
            resource_name_singular="Fake Dependent",
            resource_name_plural="Fake Dependents",
            dependency_descriptor=FakeV1.descriptor(),
            feature_roles=("internal",),
        )

    def authenticator(self) -> WebhookAuthenticator:
        return AlwaysAccept()

    def create_requirements(self) -> list[Requirement]:
        return []

    def backfill_requirements(self) -> list[Requirement]:
        return []

    async def on_dependency_webhook_upsert(self, parent: Integration, change: RowChange) -> None:
        if change.action in ("deleted", "absent"):
            if change.external_id is None:
                return
            await self.upsert_webhook(
                WebhookRequest.from_json({"my_id": change.external_id}, method="DELETE")
            )
            return
        row = json_safe(change.row) or {}
        await self.upsert_webhook_body(
            {"my_id": change.external_id, "at": row.get("at"), "parent": row.get("data")}
        )


class FakeDependentDependentV1(FakeDependentV1):
    @classmethod
    def descriptor(cls) -> Descriptor:
        return Descriptor(
            name="fake_dependent_dependent_v1",
            integration_class=cls,
            resource_name_singular="Fake Dependent Dependent",
            resource_name_plural="Fake Dependent Dependents",
            dependency_descriptor=FakeDependentV1.descriptor(),
            feature_roles=("internal",),
        )
