from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from syncbridge.core.errors import MalformedPayload
from syncbridge.integrations.base import Integration
from syncbridge.integrations.backfill import Page
from syncbridge.integrations.columns import Column, ColumnType, to_date, to_int, to_timestamp
from syncbridge.integrations.documents import Document
from syncbridge.integrations.http import response_json, send
from syncbridge.integrations.registry import Descriptor
from syncbridge.integrations.state_machine import Requirement
from syncbridge.integrations.webhook import (
    CustomDispatch,
    WebhookAuthenticator,
    WebhookRequest,
    WebhookResponse,
    constant_time_equals,
    hmac_digest,
)

SIGNATURE_HEADER = "Increase-Webhook-Signature"
OLD_CUTOFF = timedelta(days=35)
NEW_CUTOFF = timedelta(days=4)
DEFAULT_API_URL = "https://api.increase.com"


@dataclass(frozen=True)
class IncreaseSignature:
    t: datetime | None = None
    v1: list[str] = field(default_factory=list)


def parse_signature(header: str) -> IncreaseSignature:
    # "t=2022-01-31T23:59:59Z,v1=3f9c..."; repeated v1 entries allow secret rotation.
    timestamp = None
    signatures: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            try:
                timestamp = to_timestamp(value)
            except MalformedPayload:
                timestamp = None
        elif key == "v1" and value:
            signatures.append(value)
    return IncreaseSignature(t=timestamp, v1=signatures)


def compute_signature(secret: str, body: bytes, t: datetime) -> str:
    signed = t.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ").encode("utf-8") + b"." + body
    return hmac_digest(secret, signed)


def signature_responder(now: Callable[[], datetime]) -> Callable[[WebhookRequest, str], WebhookResponse]:
    def respond(request: WebhookRequest, secret: str) -> WebhookResponse:
        header = request.header(SIGNATURE_HEADER)
        if header is None:
            return WebhookResponse.error("missing header")
        parsed = parse_signature(header)
        if parsed.t is None:
            return WebhookResponse.error("missing timestamp")
        if not parsed.v1:
            return WebhookResponse.error("missing signatures")
        current = now()
        if parsed.t < current - OLD_CUTOFF:
            return WebhookResponse.error("too old")
        if parsed.t > current + NEW_CUTOFF:
            return WebhookResponse.error("too new")
        expected = compute_signature(secret, request.body, parsed.t)
        if not secret or not any(constant_time_equals(candidate, expected) for candidate in parsed.v1):
            return WebhookResponse.error("invalid signature")
        return WebhookResponse.ok()

    return respond


class IncreaseTransactionV1(Integration):
    verify_messages = {
        401: "It looks like that API Key is invalid. Please reenter the API Key you just created.",
        403: "That API Key cannot read transactions. Please create a key with read access.",
    }

    @classmethod
    def descriptor(cls) -> Descriptor:
        return Descriptor(
            name="increase_transaction_v1",
            integration_class=cls,
            resource_name_singular="Increase Transaction",
            resource_name_plural="Increase Transactions",
            supports_backfill=True,
        )

    def remote_key_column(self) -> Column:
        return Column("increase_id", ColumnType.TEXT, data_key="id")

    def denormalized_columns(self) -> tuple[Column, ...]:
        return (
            Column("account_id", ColumnType.TEXT, index=True),
            Column("amount", ColumnType.INTEGER, converter=to_int),
            Column("date", ColumnType.DATE, data_key="created_at", converter=to_date, index=True),
            Column("route_id", ColumnType.TEXT, index=True),
            Column("created_at", ColumnType.TIMESTAMP, converter=to_timestamp),
        )

    def timestamp_column(self) -> Column | None:
        return self.denormalized_columns()[-1]

    def authenticator(self) -> WebhookAuthenticator:
        return CustomDispatch(signature_responder(self.context.clock))

    def resource_and_event(self, request: WebhookRequest) -> tuple[Document | None, Document | None]:
        body = request.json()
        # Only transaction events carry a transaction; other categories are acknowledged and dropped.
        if "associated_object_type" in body:
            if body.get("associated_object_type") != "transaction":
                return None, None
            return body.get("data") or None, body
        return body, None

    def create_requirements(self) -> list[Requirement]:
        return [
            Requirement(
                field="webhook_secret",
                prompt="Paste or type your secret here:",
                secret=True,
                output=(
                    "From your Increase admin dashboard, go to Team Settings -> Webhooks and enter:\n\n"
                    f"{self.webhook_endpoint}\n\n"
                    "For the shared secret, generate a strong password and paste it below."
                ),
            )
        ]

    def backfill_requirements(self) -> list[Requirement]:
        return [
            Requirement(
                field="backfill_key",
                prompt="Paste or type your API Key here:",
                secret=True,
                output=(
                    "In order to backfill Increase Transactions, we need an API key.\n"
                    "From your Increase admin dashboard, go to Team Settings -> API Keys."
                ),
            )
        ]

    async def fetch_backfill_page(self, cursor: Any, *, last_backfilled_at: datetime | None) -> Page:
        sint = self.service_integration
        params: dict[str, Any] = {}
        if cursor:
            params["cursor"] = cursor
        if last_backfilled_at is not None:
            params["created_at.on_or_after"] = last_backfilled_at.isoformat()
        response = await send(
            self.context.http,
            "GET",
            f"{(sint.api_url or DEFAULT_API_URL).rstrip('/')}/transactions",
            integration=self.service_name,
            params=params,
            headers={"Authorization": f"Bearer {sint.backfill_key}"},
        )
        body = response_json(response)
        next_cursor = (body.get("response_metadata") or {}).get("next_cursor")
        return Page(items=list(body.get("data") or []), next_cursor=next_cursor)
