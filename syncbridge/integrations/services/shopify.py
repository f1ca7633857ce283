from __future__ import annotations

from datetime import datetime
from typing import Any

from syncbridge.integrations.base import Integration
from syncbridge.integrations.backfill import Page
from syncbridge.integrations.columns import Column, ColumnType, to_int, to_timestamp
from syncbridge.integrations.http import response_json, send
from syncbridge.integrations.registry import Descriptor
from syncbridge.integrations.state_machine import Requirement
from syncbridge.integrations.webhook import HmacSignature, WebhookAuthenticator

SHOPIFY_API_VERSION = "2024-01"


class ShopifyOrderV1(Integration):
    @classmethod
    def descriptor(cls) -> Descriptor:
        return Descriptor(
            name="shopify_order_v1",
            integration_class=cls,
            resource_name_singular="Shopify Order",
            resource_name_plural="Shopify Orders",
            supports_backfill=True,
        )

    def remote_key_column(self) -> Column:
        return Column("shopify_id", ColumnType.BIGINT, data_key="id", converter=to_int)

    def denormalized_columns(self) -> tuple[Column, ...]:
        return (
            Column("cancelled_at", ColumnType.TIMESTAMP, converter=to_timestamp),
            Column("closed_at", ColumnType.TIMESTAMP, converter=to_timestamp),
            Column("created_at", ColumnType.TIMESTAMP, converter=to_timestamp),
            Column("customer_id", ColumnType.BIGINT, data_key=("customer", "id"), converter=to_int, index=True),
            Column("name", ColumnType.TEXT),
            Column("order_number", ColumnType.INTEGER, converter=to_int, index=True),
            Column("updated_at", ColumnType.TIMESTAMP, converter=to_timestamp, index=True),
        )

    def timestamp_column(self) -> Column | None:
        return self.denormalized_columns()[-1]

    def authenticator(self) -> WebhookAuthenticator:
        # Shopify signs the raw body with base64 HMAC-SHA256 and expects a 200.
        return HmacSignature(header="X-Shopify-Hmac-SHA256", encoding="base64", success_status=200)

    def create_requirements(self) -> list[Requirement]:
        return [
            Requirement(
                field="webhook_secret",
                prompt="Paste or type your webhook signing secret here:",
                secret=True,
                output=(
                    "In your Shopify admin, go to Settings -> Notifications -> Webhooks and create "
                    f"Order webhooks pointing at:\n\n{self.webhook_endpoint}\n\n"
                    "Shopify shows the signing secret below the webhook list."
                ),
            )
        ]

    def backfill_requirements(self) -> list[Requirement]:
        return [
            Requirement(
                field="api_url",
                prompt="Enter your store URL (https://<store>.myshopify.com):",
                output="We need your store URL to backfill orders.",
            ),
            Requirement(
                field="backfill_secret",
                prompt="Paste or type your Admin API access token here:",
                secret=True,
                output="Create a custom app with read_orders access and copy its Admin API access token.",
            ),
        ]

    async def fetch_backfill_page(self, cursor: Any, *, last_backfilled_at: datetime | None) -> Page:
        sint = self.service_integration
        if cursor:
            # Cursor is the full "next" URL from the Link header, page_info included.
            url, params = cursor, None
        else:
            url = f"{sint.api_url.rstrip('/')}/admin/api/{SHOPIFY_API_VERSION}/orders.json"
            params = {"status": "any", "limit": 250}
            if last_backfilled_at is not None:
                params["updated_at_min"] = last_backfilled_at.isoformat()
        response = await send(
            self.context.http,
            "GET",
            url,
            integration=self.service_name,
            params=params,
            headers={"X-Shopify-Access-Token": sint.backfill_secret},
        )
        body = response_json(response)
        next_link = response.links.get("next", {}).get("url")
        return Page(items=list(body.get("orders") or []), next_cursor=next_link)
