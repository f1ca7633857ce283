from __future__ import annotations

from datetime import date

import httpx
import pytest

from syncbridge.core.errors import InvalidPostcondition
from syncbridge.tests.utils.factories import create_with_table, make_context, make_organization, make_sint

SITE = "https://acme.theranest.com"


def _client(number: int) -> dict:
    return {
        "Id": f"c{number}",
        "FullName": f"Client {number}",
        "Email": f"client{number}@example.test",
        "IsArchived": False,
        "DateOfBirthYMD": "1990/02/03",
        "LocationId": "7",
    }


class TheranestStub:
    """Answers sign-in with a session cookie and serves a fixed client list."""

    def __init__(self, clients: list[dict], *, signin_status: int = 200) -> None:
        self.clients = clients
        self.signin_status = signin_status
        self.signins = 0
        self.listings: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/home/signin":
            self.signins += 1
            if self.signin_status != 200:
                return httpx.Response(self.signin_status)
            return httpx.Response(200, headers={"set-cookie": "session=abc"})
        if request.url.path == "/api/clients/listing":
            self.listings.append(request)
            skip = int(request.url.params["skip"])
            take = int(request.url.params["take"])
            return httpx.Response(200, json={"Data": self.clients[skip:skip + take]})
        return httpx.Response(404)


async def _auth_and_client(context, **auth_fields):
    org = make_organization()
    fields = {"api_url": SITE, "backfill_key": "me@example.test", "backfill_secret": "pw", **auth_fields}
    auth = await create_with_table(context, org, "theranest_auth_v1", **fields)
    client = await create_with_table(context, org, "theranest_client_v1", depends_on=auth)
    return auth, client


@pytest.mark.asyncio
async def test_client_backfill_signs_in_once_and_sends_the_cookie(store) -> None:
    stub = TheranestStub([_client(1), _client(2)])
    context = make_context(store=store, handler=stub)
    auth, client = await _auth_and_client(context)

    [run] = await context.integration_for(client).backfill()

    assert run.items == 2
    assert stub.signins == 1
    assert stub.listings[0].headers["cookie"] == "session=abc"
    assert auth.webhook_secret == "session=abc"
    rows = sorted(store.rows("public", client.table_name), key=lambda row: row["theranest_id"])
    assert [row["full_name"] for row in rows] == ["Client 1", "Client 2"]
    assert rows[0]["birth_date"] == date(1990, 2, 3)
    assert rows[0]["external_location_id"] == 7


@pytest.mark.asyncio
async def test_fresh_cookie_is_reused(store) -> None:
    stub = TheranestStub([_client(1)])
    context = make_context(store=store, handler=stub)
    _, client = await _auth_and_client(context)
    integration = context.integration_for(client)

    await integration.backfill()
    await integration.backfill()

    assert stub.signins == 1
    assert len(stub.listings) == 2


@pytest.mark.asyncio
async def test_client_listing_pages_by_offset(store) -> None:
    stub = TheranestStub([_client(n) for n in range(51)])
    context = make_context(store=store, handler=stub)
    _, client = await _auth_and_client(context)

    [run] = await context.integration_for(client).backfill()

    assert (run.pages, run.items) == (2, 51)
    assert [request.url.params["skip"] for request in stub.listings] == ["0", "50"]


@pytest.mark.asyncio
async def test_client_without_auth_ancestor_is_misconfigured(store) -> None:
    context = make_context(store=store)
    orphan = make_sint(make_organization(), "theranest_client_v1")

    with pytest.raises(InvalidPostcondition, match="theranest_auth_v1"):
        await context.integration_for(orphan).backfill()


@pytest.mark.asyncio
async def test_rejected_login_clears_the_auth_credentials() -> None:
    stub = TheranestStub([], signin_status=401)
    context = make_context(handler=stub)
    auth = make_sint(make_organization(), "theranest_auth_v1", api_url=SITE, backfill_key="me@example.test")

    step = await context.integration_for(auth).process_state_change("backfill_secret", "wrong")

    assert step.error_code == "invalid_credentials"
    assert step.output.startswith("Those Theranest credentials were rejected.")
    assert step.needs_input
    assert (auth.api_url, auth.backfill_key, auth.backfill_secret) == ("", "", "")


@pytest.mark.asyncio
async def test_auth_onboarding_completes_after_a_good_login() -> None:
    stub = TheranestStub([])
    context = make_context(handler=stub)
    auth = make_sint(make_organization(), "theranest_auth_v1", api_url=SITE, backfill_key="me@example.test")
    integration = context.integration_for(auth)

    step = await integration.process_state_change("backfill_secret", "pw")

    assert step.complete
    assert step.error_code is None
    assert stub.signins == 1
    assert integration.calculate_create_state_machine().complete
