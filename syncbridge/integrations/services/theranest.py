from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import TYPE_CHECKING, Any

from syncbridge.core.errors import CredentialsMissing, FatalTransportError, InvalidPostcondition
from syncbridge.integrations.base import Integration
from syncbridge.integrations.backfill import CredentialVerification, Page, verify_with_request
from syncbridge.integrations.columns import Column, ColumnType, ExtractionSource, to_date, to_int
from syncbridge.integrations.graph import find_ancestor_of_type
from syncbridge.integrations.http import response_json, send
from syncbridge.integrations.registry import Descriptor
from syncbridge.integrations.state_machine import Requirement, StateMachineStep
from syncbridge.integrations.webhook import AlwaysAccept, WebhookAuthenticator

if TYPE_CHECKING:
    from syncbridge.domain.models import ServiceIntegration


COOKIE_TTL = timedelta(minutes=15)
PAGE_SIZE = 50


def parse_ymd_slash(value: Any, source: ExtractionSource | None = None) -> date | None:
    if not value:
        return None
    return to_date(str(value).replace("/", "-"))


class TheranestAuthV1(Integration):
    """Holds Theranest login credentials; dependents borrow its session cookie."""

    verify_messages = {
        401: "Those Theranest credentials were rejected. Please check your username and password.",
    }

    @classmethod
    def descriptor(cls) -> Descriptor:
        return Descriptor(
            name="theranest_auth_v1",
            integration_class=cls,
            resource_name_singular="Theranest Auth",
            resource_name_plural="Theranest Auth",
            supports_webhooks=False,
            supports_backfill=True,
            feature_roles=("theranest",),
        )

    def remote_key_column(self) -> Column:
        return Column("theranest_id", ColumnType.TEXT, data_key="Id")

    def authenticator(self) -> WebhookAuthenticator:
        return AlwaysAccept()

    def create_requirements(self) -> list[Requirement]:
        return []

    def backfill_requirements(self) -> list[Requirement]:
        return [
            Requirement(
                field="api_url",
                prompt="Enter your Theranest site URL (https://<practice>.theranest.com):",
                output="We need your Theranest site URL to sign in on your behalf.",
            ),
            Requirement(
                field="backfill_key",
                prompt="Paste or type your Theranest username here:",
                output="We sign in with a Theranest user; a dedicated read-only user works best.",
            ),
            Requirement(
                field="backfill_secret",
                prompt="Paste or type your Theranest password here:",
                secret=True,
                output="And the password for that user.",
            ),
        ]

    def calculate_create_state_machine(self) -> StateMachineStep:
        return self.calculate_backfill_state_machine()

    def backfill_completion_output(self) -> str:
        return (
            "We will create a new auth cookie whenever one of this integration's dependents "
            "needs to talk to Theranest. Add Theranest client integrations to start syncing."
        )

    def clear_backfill_information(self) -> None:
        super().clear_backfill_information()
        self.clear_create_information()

    async def get_auth_cookie(self, *, force: bool = False) -> str:
        sint = self.service_integration
        if not (sint.backfill_key and sint.backfill_secret):
            raise CredentialsMissing("This integration requires Theranest Username and Password")
        now = self.context.clock()
        fresh = sint.last_backfilled_at is not None and sint.last_backfilled_at > now - COOKIE_TTL
        if not force and fresh and sint.webhook_secret:
            return sint.webhook_secret
        response = await send(
            self.context.http,
            "POST",
            f"{sint.api_url.rstrip('/')}/home/signin",
            integration=self.service_name,
            data={"Email": sint.backfill_key, "Password": sint.backfill_secret},
        )
        cookie = response.headers.get("set-cookie")
        if not cookie:
            raise FatalTransportError("Theranest sign-in returned no session cookie", status=401, url=str(response.url))
        # The cookie lives in webhook_secret; this type never receives webhooks.
        sint.webhook_secret = cookie
        sint.last_backfilled_at = now
        return cookie

    async def fetch_backfill_page(self, cursor: Any, *, last_backfilled_at: datetime | None) -> Page:
        # Backfilling the auth integration only refreshes the session; dependents carry the data.
        await self.get_auth_cookie()
        return Page(items=[])

    async def verify_backfill_credentials(self) -> CredentialVerification:
        return await verify_with_request(lambda: self.get_auth_cookie(force=True), messages=self.verify_messages)


class TheranestClientV1(Integration):
    supports_row_diff = False
    verify_messages = {401: "Looks like your auth cookie has expired."}

    @classmethod
    def descriptor(cls) -> Descriptor:
        return Descriptor(
            name="theranest_client_v1",
            integration_class=cls,
            resource_name_singular="Theranest Client",
            resource_name_plural="Theranest Clients",
            dependency_descriptor=TheranestAuthV1.descriptor(),
            supports_backfill=True,
            feature_roles=("theranest",),
        )

    def remote_key_column(self) -> Column:
        return Column("theranest_id", ColumnType.TEXT, data_key="Id")

    def denormalized_columns(self) -> tuple[Column, ...]:
        return (
            Column("archived_in_theranest", ColumnType.BOOLEAN, data_key="IsArchived"),
            Column("birth_date", ColumnType.DATE, data_key="DateOfBirthYMD", converter=parse_ymd_slash),
            Column(
                "created_in_theranest_at",
                ColumnType.DATE,
                data_key="RegistrationDateTimeYMD",
                converter=parse_ymd_slash,
            ),
            Column("email", ColumnType.TEXT, data_key="Email"),
            Column("external_client_id", ColumnType.TEXT, data_key="ClientIdNumber"),
            Column("external_location_id", ColumnType.INTEGER, data_key="LocationId", converter=to_int),
            Column("full_name", ColumnType.TEXT, data_key="FullName"),
            Column("preferred_name", ColumnType.TEXT, data_key="PreferredName"),
        )

    def authenticator(self) -> WebhookAuthenticator:
        # Backfill-only; anything posted here is acknowledged.
        return AlwaysAccept()

    def create_requirements(self) -> list[Requirement]:
        return []

    def find_auth_integration(self) -> ServiceIntegration:
        return find_ancestor_of_type(
            self.service_integration,
            TheranestAuthV1.descriptor().name,
            max_depth=self.context.max_dependency_depth,
        )

    def auth_integration(self) -> TheranestAuthV1:
        integration = self.context.integration_for(self.find_auth_integration())
        if not isinstance(integration, TheranestAuthV1):
            raise InvalidPostcondition(f"{self.service_integration.opaque_id} resolved a non-auth ancestor")
        return integration

    def backfill_credentials_present(self) -> bool:
        auth = self.auth_integration()
        return auth.backfill_credentials_present()

    async def fetch_backfill_page(self, cursor: Any, *, last_backfilled_at: datetime | None) -> Page:
        auth = self.auth_integration()
        offset = int(cursor or 0)
        cookie = await auth.get_auth_cookie()
        response = await send(
            self.context.http,
            "GET",
            f"{auth.service_integration.api_url.rstrip('/')}/api/clients/listing",
            integration=self.service_name,
            params={"take": PAGE_SIZE, "skip": offset, "fullNameSort": "asc"},
            headers={"cookie": cookie},
        )
        data = list(response_json(response).get("Data") or [])
        if len(data) < PAGE_SIZE:
            return Page(items=data, next_cursor=None)
        return Page(items=data, next_cursor=offset + PAGE_SIZE)
