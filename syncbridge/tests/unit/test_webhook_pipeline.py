from __future__ import annotations

import pytest

from syncbridge.core.config import get_settings
from syncbridge.integrations.webhook import WebhookRequest, hmac_digest
from syncbridge.services.telemetry import counters_snapshot
from syncbridge.services.webhook_pipeline import apply_webhook, handle_webhook
from syncbridge.tests.utils.factories import create_with_table, make_context, make_organization

SECRET = "fake-secret"


def _signed(payload: dict, *, secret: str = SECRET) -> WebhookRequest:
    unsigned = WebhookRequest.from_json(payload)
    signature = "sha256=" + hmac_digest(secret, unsigned.body)
    return WebhookRequest(body=unsigned.body, headers={**unsigned.headers, "X-Fake-Signature": signature})


async def _fake_integration(store, publisher):
    context = make_context(store=store, publisher=publisher)
    sint = await create_with_table(context, make_organization(), "fake_v1", webhook_secret=SECRET)
    return context, sint


@pytest.mark.asyncio
async def test_queued_mode_acknowledges_and_enqueues(store, publisher) -> None:
    context, sint = await _fake_integration(store, publisher)

    response = await handle_webhook(
        context, sint, _signed({"my_id": "1", "at": "2024-01-01T00:00:00Z"}), execution_mode="queue"
    )

    assert response.status == 202
    assert response.body == '{"o":"k"}'
    [job] = publisher.of("process_webhook")
    assert job["opaque_id"] == sint.opaque_id
    assert WebhookRequest.from_payload(job["request"]).json()["my_id"] == "1"
    assert store.rows("public", sint.table_name) == []


@pytest.mark.asyncio
async def test_inline_mode_applies_in_the_request(store, publisher) -> None:
    context, sint = await _fake_integration(store, publisher)

    response = await handle_webhook(
        context, sint, _signed({"my_id": "1", "at": "2024-01-01T00:00:00Z"}), execution_mode="inline"
    )

    assert response.status == 202
    assert publisher.of("process_webhook") == []
    [row] = store.rows("public", sint.table_name)
    assert row["my_id"] == "1"
    assert counters_snapshot()["webhook_inserted_total"] == 1


@pytest.mark.asyncio
async def test_execution_mode_defaults_to_settings(store, publisher, monkeypatch) -> None:
    context, sint = await _fake_integration(store, publisher)
    monkeypatch.setenv("WEBHOOK_EXECUTION_MODE", "inline")
    get_settings.cache_clear()

    await handle_webhook(context, sint, _signed({"my_id": "2", "at": "2024-01-01T00:00:00Z"}))

    assert len(store.rows("public", sint.table_name)) == 1


@pytest.mark.asyncio
async def test_rejected_webhook_is_never_applied(store, publisher) -> None:
    context, sint = await _fake_integration(store, publisher)

    response = await handle_webhook(
        context, sint, _signed({"my_id": "1"}, secret="wrong"), execution_mode="inline"
    )

    assert response.status == 401
    assert response.body == '{"message":"invalid hmac"}'
    assert store.rows("public", sint.table_name) == []
    assert publisher.jobs == []
    assert counters_snapshot()["webhook_rejected_total"] == 1


@pytest.mark.asyncio
async def test_malformed_payload_is_dropped_with_a_warning(store, publisher, caplog) -> None:
    context, sint = await _fake_integration(store, publisher)

    result = await apply_webhook(context, sint, WebhookRequest.from_json({"at": "2024-01-01T00:00:00Z"}))

    assert result.action == "skipped"
    assert store.rows("public", sint.table_name) == []
    assert counters_snapshot()["webhook_malformed_total"] == 1
    assert "webhook_payload_malformed" in caplog.messages


@pytest.mark.asyncio
async def test_replayed_delivery_is_counted_as_unchanged(store, publisher) -> None:
    context, sint = await _fake_integration(store, publisher)
    request = WebhookRequest.from_json({"my_id": "1", "at": "2024-01-01T00:00:00Z"})

    first = await apply_webhook(context, sint, request)
    second = await apply_webhook(context, sint, request)

    assert (first.action, second.action) == ("inserted", "unchanged")
    counters = counters_snapshot()
    assert (counters["webhook_inserted_total"], counters["webhook_unchanged_total"]) == (1, 1)
