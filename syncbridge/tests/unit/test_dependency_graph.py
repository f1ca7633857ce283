from __future__ import annotations

import pytest

from syncbridge.core.errors import InvalidPostcondition, InvalidPrecondition
from syncbridge.integrations.graph import find_ancestor_of_type, topological_order, validate_dependency
from syncbridge.integrations.services.fake import FakeDependentV1
from syncbridge.integrations.webhook import WebhookRequest
from syncbridge.tests.utils.factories import create_with_table, make_context, make_organization, make_sint


def test_dependent_without_parent_reports_requirement() -> None:
    context = make_context()
    org = make_organization()
    child = make_sint(org, "fake_dependent_v1")

    step = context.integration_for(child).calculate_create_state_machine()

    assert step.output.startswith("This integration requires Fakes to sync.")
    assert step.error_code == "no_candidate_dependency"
    assert not step.complete
    assert not step.needs_input


def test_dependency_choice_lists_candidates() -> None:
    context = make_context()
    org = make_organization()
    first = make_sint(org, "fake_v1", table_name="fakes_a")
    make_sint(org, "fake_v1", table_name="fakes_b")
    child = make_sint(org, "fake_dependent_v1")

    step = context.integration_for(child).calculate_create_state_machine()

    assert step.needs_input
    assert f"1. fakes_a ({first.opaque_id})" in step.output
    assert "2. fakes_b" in step.output
    assert step.post_to_url.endswith("/transition/dependency_choice")


@pytest.mark.asyncio
async def test_dependency_choice_blank_picks_first_and_bad_choice_errors() -> None:
    context = make_context()
    org = make_organization()
    first = make_sint(org, "fake_v1")
    make_sint(org, "fake_v1")
    child = make_sint(org, "fake_dependent_v1")
    integration = context.integration_for(child)

    bad = await integration.process_state_change("dependency_choice", "7")
    assert bad.error_code == "invalid_dependency_choice"
    assert child.depends_on is None

    chosen = await integration.process_state_change("dependency_choice", "")
    assert child.depends_on is first
    assert chosen.complete


def test_validate_dependency_rejects_wrong_type_self_and_cycles() -> None:
    org = make_organization()
    parent = make_sint(org, "fake_v1")
    child = make_sint(org, "fake_dependent_v1", depends_on=parent)
    grandchild = make_sint(org, "fake_dependent_dependent_v1", depends_on=child)

    with pytest.raises(InvalidPrecondition):
        validate_dependency(grandchild, parent, required_service="fake_dependent_v1")
    with pytest.raises(InvalidPrecondition):
        validate_dependency(child, child, required_service="fake_dependent_v1")
    with pytest.raises(InvalidPrecondition):
        # child -> grandchild would close the loop grandchild -> child -> grandchild.
        validate_dependency(child, grandchild, required_service="fake_dependent_dependent_v1")


def test_find_ancestor_walks_upward_and_fails_loudly() -> None:
    org = make_organization()
    auth = make_sint(org, "theranest_auth_v1")
    client = make_sint(org, "theranest_client_v1", depends_on=auth)
    orphan = make_sint(org, "theranest_client_v1")

    assert find_ancestor_of_type(client, "theranest_auth_v1") is auth
    with pytest.raises(InvalidPostcondition, match="could not find a theranest_auth_v1 ancestor"):
        find_ancestor_of_type(orphan, "theranest_auth_v1")


def test_find_ancestor_bounds_depth() -> None:
    org = make_organization()
    parent = make_sint(org, "fake_v1")
    child = make_sint(org, "fake_dependent_v1", depends_on=parent)
    grandchild = make_sint(org, "fake_dependent_dependent_v1", depends_on=child)

    with pytest.raises(InvalidPostcondition):
        find_ancestor_of_type(grandchild, "fake_v1", max_depth=1)
    assert find_ancestor_of_type(grandchild, "fake_v1", max_depth=2) is parent


def test_topological_order_puts_parents_first() -> None:
    org = make_organization()
    parent = make_sint(org, "fake_v1")
    child = make_sint(org, "fake_dependent_v1", depends_on=parent)
    grandchild = make_sint(org, "fake_dependent_dependent_v1", depends_on=child)
    unrelated = make_sint(org, "shopify_order_v1")

    assert topological_order([grandchild, child, unrelated, parent]) == [unrelated, parent, child, grandchild]


@pytest.mark.asyncio
async def test_parent_upsert_cascades_through_the_chain(store, publisher) -> None:
    context = make_context(store=store, publisher=publisher)
    org = make_organization()
    parent = await create_with_table(context, org, "fake_v1")
    child = await create_with_table(context, org, "fake_dependent_v1", depends_on=parent)
    grandchild = await create_with_table(context, org, "fake_dependent_dependent_v1", depends_on=child)

    await context.integration_for(parent).upsert_webhook_body(
        {"my_id": "p1", "at": "2024-01-01T00:00:00Z", "name": "x"}
    )

    [child_row] = store.rows("public", child.table_name)
    [grandchild_row] = store.rows("public", grandchild.table_name)
    assert child_row["my_id"] == "p1"
    assert child_row["data"]["parent"]["name"] == "x"
    assert grandchild_row["data"]["parent"]["parent"]["name"] == "x"
    fanned_out = [job["opaque_id"] for job in publisher.of("record_row_change")]
    assert fanned_out == [parent.opaque_id, child.opaque_id, grandchild.opaque_id]


@pytest.mark.asyncio
async def test_parent_delete_cascades(store) -> None:
    context = make_context(store=store)
    org = make_organization()
    parent = await create_with_table(context, org, "fake_v1")
    child = await create_with_table(context, org, "fake_dependent_v1", depends_on=parent)
    parent_integration = context.integration_for(parent)

    await parent_integration.upsert_webhook_body({"my_id": "p1", "at": "2024-01-01T00:00:00Z"})
    await parent_integration.upsert_webhook(WebhookRequest.from_json({"my_id": "p1"}, method="DELETE"))

    assert store.rows("public", parent.table_name) == []
    assert store.rows("public", child.table_name) == []


@pytest.mark.asyncio
async def test_redelivered_event_reaches_a_dependent_that_failed(store, publisher, monkeypatch) -> None:
    context = make_context(store=store, publisher=publisher)
    org = make_organization()
    parent = await create_with_table(context, org, "fake_v1")
    child = await create_with_table(context, org, "fake_dependent_v1", depends_on=parent)
    mirror = FakeDependentV1.on_dependency_webhook_upsert
    calls = {"count": 0}

    async def fails_once(self, parent_integration, change) -> None:
        calls["count"] += 1
        if calls["count"] == 1:
            raise RuntimeError("dependent unavailable")
        await mirror(self, parent_integration, change)

    monkeypatch.setattr(FakeDependentV1, "on_dependency_webhook_upsert", fails_once)
    parent_integration = context.integration_for(parent)
    body = {"my_id": "p1", "at": "2024-01-01T00:00:00Z", "name": "x"}

    with pytest.raises(RuntimeError):
        await parent_integration.upsert_webhook_body(body)
    assert store.rows("public", child.table_name) == []

    replay = await parent_integration.upsert_webhook_body(body)

    assert replay.action == "unchanged"
    assert calls["count"] == 2
    [child_row] = store.rows("public", child.table_name)
    assert child_row["data"]["parent"]["name"] == "x"
    # Subscribers only heard the parent's real change and the child's insert.
    fanned_out = [job["opaque_id"] for job in publisher.of("record_row_change")]
    assert fanned_out == [parent.opaque_id, child.opaque_id]


@pytest.mark.asyncio
async def test_unchanged_parent_event_still_reaches_dependents(store, monkeypatch) -> None:
    context = make_context(store=store)
    org = make_organization()
    parent = await create_with_table(context, org, "fake_v1")
    child = await create_with_table(context, org, "fake_dependent_v1", depends_on=parent)
    seen: list[tuple[str, bool]] = []
    mirror = FakeDependentV1.on_dependency_webhook_upsert

    async def watching(self, parent_integration, change) -> None:
        seen.append((change.action, change.changed))
        await mirror(self, parent_integration, change)

    monkeypatch.setattr(FakeDependentV1, "on_dependency_webhook_upsert", watching)
    body = {"my_id": "p1", "at": "2024-01-01T00:00:00Z"}
    await context.integration_for(parent).upsert_webhook_body(body)
    await context.integration_for(parent).upsert_webhook_body(body)

    assert seen == [("inserted", True), ("unchanged", False)]
    assert len(store.rows("public", child.table_name)) == 1
