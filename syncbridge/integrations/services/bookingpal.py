from __future__ import annotations

from typing import Any

from syncbridge.integrations.base import Integration
from syncbridge.integrations.columns import (
    Column,
    ColumnType,
    int_or_sequence_from_path,
    now_defaulter,
    to_int,
)
from syncbridge.integrations.documents import Document, dumps
from syncbridge.integrations.registry import Descriptor
from syncbridge.integrations.resolver import UpsertResult
from syncbridge.integrations.state_machine import Requirement
from syncbridge.integrations.webhook import SharedSecretHeader, WebhookAuthenticator, WebhookRequest


def _optional_text(name: str) -> Column:
    # BookingPal sends partial documents; absent fields must not clear stored values.
    return Column(name, ColumnType.TEXT, skip_nil=True)


class BookingpalListingV1(Integration):
    """BookingPal pushes listing CRUD to us as a REST API and expects the stored resource back."""

    process_webhooks_synchronously = True
    supports_row_diff = False
    requires_sequence = True

    @classmethod
    def descriptor(cls) -> Descriptor:
        return Descriptor(
            name="bookingpal_listing_v1",
            integration_class=cls,
            resource_name_singular="BookingPal Listing",
            resource_name_plural="BookingPal Listings",
        )

    def remote_key_column(self) -> Column:
        return Column(
            "listing_id",
            ColumnType.BIGINT,
            converter=int_or_sequence_from_path(r"/v2/listings/(\d+)"),
        )

    def denormalized_columns(self) -> tuple[Column, ...]:
        return (
            _optional_text("name"),
            _optional_text("apt"),
            _optional_text("street"),
            _optional_text("city"),
            _optional_text("country_code"),
            _optional_text("pm_name"),
            Column("pm_id", ColumnType.BIGINT, converter=to_int, skip_nil=True),
            Column("row_updated_at", ColumnType.TIMESTAMP, defaulter=now_defaulter, index=True),
        )

    def authenticator(self) -> WebhookAuthenticator:
        return SharedSecretHeader(header="Authorization")

    def create_requirements(self) -> list[Requirement]:
        return [
            Requirement(
                field="webhook_secret",
                prompt="Paste or type the API key you gave BookingPal here:",
                secret=True,
                output=(
                    "Give BookingPal this endpoint as the base URL for your listings API:\n\n"
                    f"{self.webhook_endpoint}\n\n"
                    "along with a strong API key they send in the Authorization header."
                ),
            )
        ]

    def prepare_document(
        self,
        resource: Document,
        *,
        event: Document | None = None,
        enrichment: Document | None = None,
        remote_key: Any = None,
    ) -> Document:
        return {"listing_id": remote_key, **resource}

    def synchronous_processing_response_body(self, upserted: UpsertResult, request: WebhookRequest) -> str:
        if request.method == "DELETE":
            return dumps({"listing_id": upserted.remote_key})
        return dumps({"schema": {"listing_id": upserted.remote_key, **request.json()}})


class BookingpalListingPhotoV1(Integration):
    process_webhooks_synchronously = True
    supports_row_diff = False
    requires_sequence = True

    @classmethod
    def descriptor(cls) -> Descriptor:
        return Descriptor(
            name="bookingpal_listing_photo_v1",
            integration_class=cls,
            resource_name_singular="BookingPal Listing Photo",
            resource_name_plural="BookingPal Listing Photos",
            dependency_descriptor=BookingpalListingV1.descriptor(),
        )

    def remote_key_column(self) -> Column:
        return Column(
            "photo_id",
            ColumnType.BIGINT,
            converter=int_or_sequence_from_path(r"/v2/listing_photos/(\d+)"),
        )

    def denormalized_columns(self) -> tuple[Column, ...]:
        return (
            Column("listing_id", ColumnType.BIGINT, converter=to_int, skip_nil=True, index=True),
            _optional_text("url"),
            _optional_text("content_type"),
            _optional_text("filename"),
            Column("row_updated_at", ColumnType.TIMESTAMP, defaulter=now_defaulter),
        )

    def authenticator(self) -> WebhookAuthenticator:
        return SharedSecretHeader(header="Authorization")

    def webhook_auth_secret(self) -> str:
        # Photos share the listing's API key unless one was entered for this integration.
        own = self.service_integration.webhook_secret
        if own:
            return own
        return self.find_ancestor_with("webhook_secret").webhook_secret

    def create_requirements(self) -> list[Requirement]:
        return [
            Requirement(
                field="webhook_secret",
                prompt="Paste or type the API key you gave BookingPal here:",
                secret=True,
                output=f"BookingPal sends listing photos to {self.webhook_endpoint}.",
            )
        ]

    def prepare_document(
        self,
        resource: Document,
        *,
        event: Document | None = None,
        enrichment: Document | None = None,
        remote_key: Any = None,
    ) -> Document:
        return {"photo_id": remote_key, **resource}

    def synchronous_processing_response_body(self, upserted: UpsertResult, request: WebhookRequest) -> str:
        if request.method == "DELETE":
            previous = upserted.previous or {}
            return dumps({"photo_id": upserted.remote_key, "listing_id": previous.get("listing_id")})
        return dumps({"photo_id": upserted.remote_key, **request.json()})
