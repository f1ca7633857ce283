from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime
from typing import TYPE_CHECKING, Any, ClassVar, Mapping

from syncbridge.core.errors import (
    CredentialsMissing,
    InvalidPrecondition,
    InvalidStateChange,
    MalformedPayload,
)
from syncbridge.integrations.backfill import (
    DEFAULT_VERIFY_MESSAGES,
    Backfiller,
    BackfillRun,
    CallbackBackfiller,
    CredentialVerification,
    Page,
    verify_with_request,
)
from syncbridge.integrations.columns import Column, ColumnType, TableDescriptor
from syncbridge.integrations.ddl import create_schema_sql, join_statements, qualified_table, replication_ddl
from syncbridge.integrations.documents import Document
from syncbridge.integrations.graph import find_ancestor, validate_dependency
from syncbridge.integrations.resolver import SKIPPED, ConflictResolver, RowChange, UpsertResult
from syncbridge.integrations.state_machine import (
    Requirement,
    StateMachineStep,
    evaluate_requirements,
    field_is_set,
)
from syncbridge.integrations.webhook import (
    AlwaysAccept,
    WebhookAuthenticator,
    WebhookRequest,
    WebhookResponse,
)
from syncbridge.services.resilience import MinIntervalGate
from syncbridge.services.telemetry import increment_counter

if TYPE_CHECKING:
    from syncbridge.domain.models import ServiceIntegration
    from syncbridge.integrations.context import IntegrationContext
    from syncbridge.integrations.registry import Descriptor


logger = logging.getLogger(__name__)

WEBHOOK_PATH_PREFIX = "/v1/service_integrations"
CREDENTIAL_FIELDS = ("webhook_secret", "backfill_key", "backfill_secret", "api_url")
STATE_CHANGE_FIELDS = frozenset({*CREDENTIAL_FIELDS, "dependency_choice"})


class Integration(ABC):
    """Contract every integration type implements.

    Subclasses declare their table shape (``remote_key_column``,
    ``denormalized_columns``, ``enrichment_tables_descriptors``), how webhooks
    are authenticated (``authenticator``) and unwrapped (``resource_and_event``),
    how backfill pages are fetched (``fetch_backfill_page``) and which onboarding
    fields they need (``create_requirements``, ``backfill_requirements``).
    Everything else (conflict resolution, cascades, state machine evaluation,
    backfill retry) is shared.
    """

    # Callers expect a body derived from the upserted row, not a bare 202.
    process_webhooks_synchronously: ClassVar[bool] = False
    # Recency-guarded merge; types without a timestamp column always overwrite.
    supports_row_diff: ClassVar[bool] = True
    # Keep the raw enrichment response in an "enrichment" column.
    store_enrichment_body: ClassVar[bool] = False
    # Remote keys may be allocated from "<table>_seq".
    requires_sequence: ClassVar[bool] = False
    # None uses the process-wide enrichment interval.
    enrichment_min_interval_s: ClassVar[float | None] = None
    verify_messages: ClassVar[Mapping[int, str]] = DEFAULT_VERIFY_MESSAGES

    def __init__(self, service_integration: ServiceIntegration, context: IntegrationContext) -> None:
        self.service_integration = service_integration
        self.context = context

    @classmethod
    @abstractmethod
    def descriptor(cls) -> Descriptor:
        raise NotImplementedError

    @property
    def service_name(self) -> str:
        return self.service_integration.service_name

    # Schema

    @abstractmethod
    def remote_key_column(self) -> Column:
        raise NotImplementedError

    def denormalized_columns(self) -> tuple[Column, ...]:
        return ()

    def enrichment_tables_descriptors(self) -> tuple[TableDescriptor, ...]:
        return ()

    def timestamp_column(self) -> Column | None:
        return None

    def key_column(self) -> Column:
        return replace(self.remote_key_column(), unique=True, optional=False, skip_nil=False)

    def recency_column_name(self) -> str | None:
        if not self.supports_row_diff:
            return None
        column = self.timestamp_column()
        return column.name if column is not None else None

    @property
    def schema(self) -> str:
        organization = self.service_integration.organization
        if organization is None or not organization.replication_schema:
            return "public"
        return organization.replication_schema

    @property
    def table_name(self) -> str:
        return self.service_integration.table_name

    @property
    def qualified_table_name(self) -> str:
        return qualified_table(self.schema, self.table_name)

    @property
    def sequence_name(self) -> str:
        return f"{self.table_name}_seq"

    def table_descriptor(self) -> TableDescriptor:
        columns = [
            Column("pk", ColumnType.BIGINT, primary_key=True, optional=False),
            self.key_column(),
            *self.denormalized_columns(),
        ]
        if self.store_enrichment_body:
            columns.append(Column("enrichment", ColumnType.OBJECT))
        columns.append(Column("data", ColumnType.OBJECT, optional=False))
        return TableDescriptor(name=self.table_name, columns=tuple(columns))

    def create_table_statements(self) -> list[str]:
        statements = replication_ddl(
            self.schema,
            self.service_integration.opaque_id,
            self.table_descriptor(),
            self.enrichment_tables_descriptors(),
        )
        if self.requires_sequence:
            statements.append(f"CREATE SEQUENCE IF NOT EXISTS {qualified_table(self.schema, self.sequence_name)};")
        return statements

    def create_table_sql(self) -> str:
        return join_statements(self.create_table_statements())

    async def create_table(self) -> None:
        statements = self.create_table_statements()
        if self.schema != "public":
            statements.insert(0, create_schema_sql(self.schema))
        await self.context.store.create_tables(
            self.schema,
            [self.table_descriptor(), *self.enrichment_tables_descriptors()],
            statements,
        )
        logger.info("replication_table_created", extra={"table": self.qualified_table_name})

    # Webhooks

    def authenticator(self) -> WebhookAuthenticator:
        return AlwaysAccept()

    def webhook_auth_secret(self) -> str:
        return self.service_integration.webhook_secret or ""

    def webhook_response(self, request: WebhookRequest) -> WebhookResponse:
        response = self.authenticator().authenticate(request, self.webhook_auth_secret())
        if not response.accepted:
            increment_counter("webhook_rejected_total")
            logger.info(
                "webhook_rejected",
                extra={"opaque_id": self.service_integration.opaque_id, "status": response.status},
            )
        return response

    def resource_and_event(self, request: WebhookRequest) -> tuple[Document | None, Document | None]:
        return request.json(), None

    def is_delete(self, request: WebhookRequest | None, resource: Document, event: Document | None) -> bool:
        return request is not None and request.method == "DELETE"

    async def fetch_enrichment(
        self, resource: Document, event: Document | None, request: WebhookRequest | None
    ) -> Document | None:
        return None

    def needs_enrichment(self) -> bool:
        return type(self).fetch_enrichment is not Integration.fetch_enrichment

    def prepare_document(
        self,
        resource: Document,
        *,
        event: Document | None = None,
        enrichment: Document | None = None,
        remote_key: Any = None,
    ) -> Document:
        return dict(resource)

    def synchronous_processing_response_body(self, upserted: UpsertResult, request: WebhookRequest) -> str:
        raise NotImplementedError(f"{self.service_name} does not process webhooks synchronously")

    async def after_upsert(self, result: UpsertResult, resource: Document, enrichment: Document | None) -> None:
        return None

    async def upsert_webhook(self, request_or_body: WebhookRequest | Mapping[str, Any]) -> UpsertResult:
        if isinstance(request_or_body, WebhookRequest):
            request: WebhookRequest | None = request_or_body
            resource, event = self.resource_and_event(request_or_body)
        else:
            request = None
            resource, event = dict(request_or_body), None
        return await self._apply(resource, event, request, gate=None)

    async def upsert_webhook_body(self, body: Mapping[str, Any]) -> UpsertResult:
        return await self.upsert_webhook(body)

    async def _apply(
        self,
        resource: Document | None,
        event: Document | None,
        request: WebhookRequest | None,
        *,
        gate: MinIntervalGate | None,
    ) -> UpsertResult:
        if resource is None:
            return SKIPPED
        enrichment = None
        if self.needs_enrichment():
            if gate is not None:
                await gate.wait()
            enrichment = await self.fetch_enrichment(resource, event, request)
        result = await ConflictResolver(self.context.store).resolve(
            self,
            resource=resource,
            event=event,
            enrichment=enrichment,
            request=request,
            delete=self.is_delete(request, resource, event),
        )
        await self.after_upsert(result, resource, enrichment)
        if result.action != "skipped":
            await self.notify_row_change(result.to_change())
        return result

    # Dependency graph

    async def notify_row_change(self, change: RowChange) -> None:
        # Subscribers hear real changes only. Dependents hear every applied event, so a
        # redelivered webhook reaches a dependent whose earlier cascade raised.
        if change.changed:
            await self.context.publisher.publish_row_change(self.service_integration.opaque_id, change.summary())
        for dependent in list(self.service_integration.dependents):
            integration = self.context.integration_for(dependent)
            await integration.on_dependency_webhook_upsert(self, change)
            increment_counter("dependency_cascades_total")

    async def on_dependency_webhook_upsert(self, parent: Integration, change: RowChange) -> None:
        return None

    def find_ancestor_with(self, field: str) -> ServiceIntegration:
        return find_ancestor(
            self.service_integration,
            lambda candidate: field_is_set(getattr(candidate, field, None)),
            description=f"an ancestor with {field}",
            max_depth=self.context.max_dependency_depth,
        )

    def dependency_candidates(self) -> list[ServiceIntegration]:
        dependency = self.descriptor().dependency_descriptor
        organization = self.service_integration.organization
        if dependency is None or organization is None:
            return []
        return [
            candidate
            for candidate in organization.service_integrations
            if candidate.service_name == dependency.name and candidate is not self.service_integration
        ]

    def set_dependency(self, parent: ServiceIntegration | None) -> None:
        dependency = self.descriptor().dependency_descriptor
        validate_dependency(
            self.service_integration,
            parent,
            required_service=dependency.name if dependency is not None else None,
        )
        self.service_integration.depends_on = parent

    # Onboarding

    @property
    def webhook_endpoint(self) -> str:
        return f"{self.context.api_base_url}{WEBHOOK_PATH_PREFIX}/{self.service_integration.opaque_id}"

    def transition_url(self, field: str) -> str:
        return f"{WEBHOOK_PATH_PREFIX}/{self.service_integration.opaque_id}/transition/{field}"

    def dependency_step(self) -> StateMachineStep | None:
        dependency = self.descriptor().dependency_descriptor
        if dependency is None or self.service_integration.depends_on is not None:
            return None
        step = StateMachineStep(output=f"This integration requires {dependency.resource_name_plural} to sync.")
        candidates = self.dependency_candidates()
        if not candidates:
            step.output += (
                f"\n\nYou don't have any {dependency.resource_name_singular} integrations yet. "
                f"Create a {dependency.name} integration first, then come back and try again."
            )
            step.error_code = "no_candidate_dependency"
            return step
        choices = "\n".join(
            f"{number}. {candidate.table_name} ({candidate.opaque_id})"
            for number, candidate in enumerate(candidates, start=1)
        )
        step.output += f"\n\n{choices}"
        return step.prompting(
            f"Enter the number for the {dependency.resource_name_singular} integration you want to use, "
            "or leave blank to choose the first option.",
            post_to_url=self.transition_url("dependency_choice"),
        )

    def create_requirements(self) -> list[Requirement]:
        return [
            Requirement(
                field="webhook_secret",
                prompt="Paste or type your secret here:",
                secret=True,
                output=(
                    f"You are about to start replicating {self.descriptor().resource_name_plural}.\n"
                    f"Point the source's webhooks at:\n\n{self.webhook_endpoint}\n\n"
                    "and use a strong shared secret."
                ),
            )
        ]

    def backfill_requirements(self) -> list[Requirement]:
        return []

    def create_completion_output(self) -> str:
        return (
            f"Great! We are now listening for {self.descriptor().resource_name_plural} webhooks.\n"
            f"Rows are replicated into {self.qualified_table_name}."
        )

    def backfill_completion_output(self) -> str:
        return (
            f"Great! We are going to start backfilling your {self.descriptor().resource_name_plural}.\n"
            f"Rows are replicated into {self.qualified_table_name}."
        )

    def calculate_create_state_machine(self) -> StateMachineStep:
        blocked = self.dependency_step()
        if blocked is not None:
            return blocked
        return evaluate_requirements(
            self.service_integration,
            self.create_requirements(),
            transition_url=self.transition_url,
            completion_output=self.create_completion_output(),
        )

    def calculate_backfill_state_machine(self) -> StateMachineStep:
        blocked = self.dependency_step()
        if blocked is not None:
            return blocked
        if not self.descriptor().supports_backfill:
            step = StateMachineStep(output=f"{self.descriptor().resource_name_plural} do not support backfill.")
            step.error_code = "backfill_not_supported"
            return step.completed()
        return evaluate_requirements(
            self.service_integration,
            self.backfill_requirements(),
            transition_url=self.transition_url,
            completion_output=self.backfill_completion_output(),
        )

    async def process_state_change(self, field: str, value: Any) -> StateMachineStep:
        if field not in STATE_CHANGE_FIELDS:
            raise InvalidStateChange(f"{self.service_name} does not accept {field!r}")
        if field == "dependency_choice":
            return self._choose_dependency(value)
        setattr(self.service_integration, field, "" if value is None else str(value).strip())
        if any(requirement.field == field for requirement in self.create_requirements()):
            return self.calculate_create_state_machine()
        step = self.calculate_backfill_state_machine()
        if step.complete and step.error_code is None and self.descriptor().supports_backfill:
            verification = await self.verify_backfill_credentials()
            if not verification.verified:
                self.clear_backfill_information()
                step = self.calculate_backfill_state_machine()
                step.output = f"{verification.message}\n\n{step.output}"
                step.error_code = "invalid_credentials"
        return step

    def _choose_dependency(self, value: Any) -> StateMachineStep:
        candidates = self.dependency_candidates()
        if not candidates:
            return self.dependency_step() or self.calculate_create_state_machine()
        text = "" if value is None else str(value).strip()
        index = 0
        if text:
            try:
                index = int(text) - 1
            except ValueError:
                index = -1
        if not 0 <= index < len(candidates):
            step = self.dependency_step() or StateMachineStep()
            step.output = f"{text!r} is not one of the listed options.\n\n{step.output}"
            step.error_code = "invalid_dependency_choice"
            return step
        try:
            self.set_dependency(candidates[index])
        except InvalidPrecondition as exc:
            step = self.dependency_step() or StateMachineStep()
            step.output = f"{exc}\n\n{step.output}"
            step.error_code = "invalid_dependency_choice"
            return step
        return self.calculate_create_state_machine()

    def clear_create_information(self) -> None:
        self.service_integration.webhook_secret = ""

    def clear_backfill_information(self) -> None:
        self.service_integration.api_url = ""
        self.service_integration.backfill_key = ""
        self.service_integration.backfill_secret = ""

    # Backfill

    def backfill_credentials_present(self) -> bool:
        return all(requirement.satisfied_by(self.service_integration) for requirement in self.backfill_requirements())

    async def fetch_backfill_page(self, cursor: Any, *, last_backfilled_at: datetime | None) -> Page:
        raise NotImplementedError(f"{self.service_name} does not support backfill")

    async def upsert_backfill_item(self, item: Document, *, gate: MinIntervalGate | None = None) -> UpsertResult:
        try:
            return await self._apply(item, None, None, gate=gate)
        except MalformedPayload as exc:
            increment_counter("backfill_items_malformed_total")
            logger.warning("backfill_item_malformed", extra={"service": self.service_name, "reason": str(exc)})
            return SKIPPED

    def enrichment_gate(self) -> MinIntervalGate:
        # One gate per run so a paused backfill never holds up another integration.
        interval = self.enrichment_min_interval_s
        if interval is None:
            interval = self.context.enrichment_gate.interval_s
        return self.context.enrichment_gate.with_interval(interval)

    def backfillers(self, *, incremental: bool) -> list[Backfiller]:
        last = self.service_integration.last_backfilled_at if incremental else None
        gate = self.enrichment_gate()

        async def fetch(cursor: Any) -> Page:
            return await self.fetch_backfill_page(cursor, last_backfilled_at=last)

        async def handle(item: Document) -> None:
            await self.upsert_backfill_item(item, gate=gate)

        return [CallbackBackfiller(fetch, handle, policy=self.context.retry_policy, sleep=self.context.sleep)]

    async def backfill(
        self, *, incremental: bool = False, cascade: bool = False, cancel: asyncio.Event | None = None
    ) -> list[BackfillRun]:
        if not self.descriptor().supports_backfill:
            raise NotImplementedError(f"{self.service_name} does not support backfill")
        if not self.backfill_credentials_present():
            raise CredentialsMissing(f"{self.service_integration.opaque_id} is missing backfill credentials")
        started_at = self.context.clock()
        runs = []
        for backfiller in self.backfillers(incremental=incremental):
            run = await backfiller.run(cancel=cancel)
            runs.append(run)
            if run.cancelled:
                return runs
        self.service_integration.last_backfilled_at = started_at
        logger.info(
            "backfill_completed",
            extra={
                "opaque_id": self.service_integration.opaque_id,
                "items": sum(run.items for run in runs),
                "pages": sum(run.pages for run in runs),
            },
        )
        if cascade:
            for dependent in list(self.service_integration.dependents):
                await self.context.publisher.publish_backfill(
                    dependent.opaque_id, incremental=incremental, cascade=True
                )
        return runs

    async def verify_backfill_credentials(self) -> CredentialVerification:
        return await verify_with_request(
            lambda: self.fetch_backfill_page(None, last_backfilled_at=None),
            messages=self.verify_messages,
        )
