from __future__ import annotations

from dataclasses import replace

import httpx
import pytest

from syncbridge.core.errors import MalformedPayload
from syncbridge.integrations.registry import Descriptor
from syncbridge.integrations.services.fake import FakeV1
from syncbridge.integrations.webhook import WebhookRequest
from syncbridge.tests.utils.factories import create_with_table, make_context, make_organization


class OverwritingFakeV1(FakeV1):
    supports_row_diff = False

    @classmethod
    def descriptor(cls) -> Descriptor:
        return replace(FakeV1.descriptor(), name="fake_overwriting_v1", integration_class=cls)


@pytest.mark.asyncio
async def test_insert_then_identical_replay_is_unchanged(store, publisher) -> None:
    context = make_context(store=store, publisher=publisher)
    sint = await create_with_table(context, make_organization(), "fake_v1")
    integration = context.integration_for(sint)

    first = await integration.upsert_webhook_body({"my_id": "abc", "at": "2024-01-01T00:00:00Z", "n": 1})
    replay = await integration.upsert_webhook_body({"my_id": "abc", "at": "2024-01-01T00:00:00Z", "n": 1})

    assert first.action == "inserted"
    assert replay.action == "unchanged"
    assert len(store.rows("public", sint.table_name)) == 1
    # Only real changes fan out.
    assert len(publisher.of("record_row_change")) == 1


@pytest.mark.asyncio
async def test_newer_payload_wins_and_older_is_ignored(store) -> None:
    context = make_context(store=store)
    sint = await create_with_table(context, make_organization(), "fake_v1")
    integration = context.integration_for(sint)

    await integration.upsert_webhook_body({"my_id": "abc", "at": "2024-01-02T00:00:00Z", "v": "middle"})
    newer = await integration.upsert_webhook_body({"my_id": "abc", "at": "2024-01-03T00:00:00Z", "v": "new"})
    stale = await integration.upsert_webhook_body({"my_id": "abc", "at": "2024-01-01T00:00:00Z", "v": "old"})

    assert newer.action == "updated"
    assert stale.action == "unchanged"
    [row] = store.rows("public", sint.table_name)
    assert row["data"]["v"] == "new"
    assert row["at"].isoformat() == "2024-01-03T00:00:00+00:00"


@pytest.mark.asyncio
async def test_without_row_diff_an_older_payload_still_overwrites(store) -> None:
    context = make_context(store=store)
    context.registry.register(OverwritingFakeV1.descriptor())
    sint = await create_with_table(context, make_organization(), "fake_overwriting_v1")
    integration = context.integration_for(sint)
    assert integration.recency_column_name() is None

    await integration.upsert_webhook_body({"my_id": "abc", "at": "2024-01-03T00:00:00Z", "v": "new"})
    older = await integration.upsert_webhook_body({"my_id": "abc", "at": "2024-01-01T00:00:00Z", "v": "old"})

    assert older.action == "updated"
    [row] = store.rows("public", sint.table_name)
    assert row["data"]["v"] == "old"
    assert row["at"].isoformat() == "2024-01-01T00:00:00+00:00"


@pytest.mark.asyncio
async def test_payload_without_timestamp_never_overwrites_a_dated_row(store) -> None:
    context = make_context(store=store)
    sint = await create_with_table(context, make_organization(), "fake_v1")
    integration = context.integration_for(sint)

    await integration.upsert_webhook_body({"my_id": "abc", "at": "2024-01-02T00:00:00Z", "v": 1})
    undated = await integration.upsert_webhook_body({"my_id": "abc", "v": 2})

    assert undated.action == "unchanged"


@pytest.mark.asyncio
async def test_merge_patch_preserves_fields_absent_from_partial_update(store) -> None:
    context = make_context(store=store)
    sint = await create_with_table(context, make_organization(), "bookingpal_listing_v1", webhook_secret="s")
    integration = context.integration_for(sint)

    created = await integration.upsert_webhook(
        WebhookRequest.from_json({"name": "Casa Armadillo", "apt": "S123"}, path="/v2/listings", method="POST")
    )
    listing_id = created.remote_key
    await integration.upsert_webhook(
        WebhookRequest.from_json({"apt": "X555"}, path=f"/v2/listings/{listing_id}", method="PUT")
    )

    [row] = store.rows("public", sint.table_name)
    assert listing_id == 1
    assert row["name"] == "Casa Armadillo"
    assert row["apt"] == "X555"
    assert row["data"] == {"listing_id": 1, "name": "Casa Armadillo", "apt": "X555"}


@pytest.mark.asyncio
async def test_delete_of_unknown_key_is_absent(store) -> None:
    context = make_context(store=store)
    sint = await create_with_table(context, make_organization(), "fake_v1")
    result = await context.integration_for(sint).upsert_webhook(
        WebhookRequest.from_json({"my_id": "nope"}, method="DELETE")
    )
    assert result.action == "absent"
    assert result.previous is None
    assert not result.changed


@pytest.mark.asyncio
async def test_missing_remote_key_is_malformed(store) -> None:
    context = make_context(store=store)
    sint = await create_with_table(context, make_organization(), "fake_v1")
    with pytest.raises(MalformedPayload):
        await context.integration_for(sint).upsert_webhook_body({"at": "2024-01-01T00:00:00Z"})
    assert store.rows("public", sint.table_name) == []


@pytest.mark.asyncio
async def test_enrichment_is_fetched_and_stored_with_the_row(store) -> None:
    calls: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(200, json={"extra": "from-api"})

    context = make_context(store=store, handler=handler)
    sint = await create_with_table(context, make_organization(), "fake_with_enrichments_v1")
    await context.integration_for(sint).upsert_webhook_body({"my_id": "abc", "at": "2024-01-01T00:00:00Z"})

    [row] = store.rows("public", sint.table_name)
    assert calls == ["/enrichment/abc"]
    assert row["extra"] == "from-api"
    assert row["enrichment"] == {"extra": "from-api"}
