from __future__ import annotations

import itertools
from datetime import datetime, timezone
from typing import Any, Callable

import httpx

from syncbridge.domain.models import Organization, ServiceIntegration
from syncbridge.integrations.context import IntegrationContext
from syncbridge.integrations.registry import build_default_registry
from syncbridge.integrations.store import InMemoryRowStore
from syncbridge.services.jobs import RecordingJobPublisher
from syncbridge.services.resilience import MinIntervalGate, RetryPolicy

FROZEN_NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

_table_counter = itertools.count(1)


class RecordingSleep:
    """Stands in for asyncio.sleep; remembers every requested delay."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def unrouted(request: httpx.Request) -> httpx.Response:
    raise AssertionError(f"unexpected outbound request {request.method} {request.url}")


def make_context(
    *,
    store: InMemoryRowStore | None = None,
    publisher: RecordingJobPublisher | None = None,
    handler: Callable[[httpx.Request], httpx.Response] | None = None,
    max_attempts: int = 3,
    sleep: RecordingSleep | None = None,
    **overrides: Any,
) -> IntegrationContext:
    sleep = sleep or RecordingSleep()
    return IntegrationContext(
        registry=build_default_registry(),
        store=store or InMemoryRowStore(),
        http=httpx.AsyncClient(transport=httpx.MockTransport(handler or unrouted)),
        publisher=publisher or RecordingJobPublisher(),
        retry_policy=RetryPolicy(max_attempts=max_attempts, backoff_ms=10, jitter=False),
        enrichment_gate=MinIntervalGate(0.0, sleep=sleep),
        api_base_url="https://sync.example.test",
        sleep=sleep,
        clock=lambda: FROZEN_NOW,
        **overrides,
    )


def make_organization(key: str = "acme", *, schema: str = "public") -> Organization:
    return Organization(key=key, name=key.title(), replication_schema=schema)


def make_sint(
    organization: Organization,
    service_name: str,
    *,
    depends_on: ServiceIntegration | None = None,
    **fields: Any,
) -> ServiceIntegration:
    fields.setdefault("table_name", f"{service_name}_{next(_table_counter)}")
    return ServiceIntegration(
        organization=organization,
        service_name=service_name,
        depends_on=depends_on,
        **fields,
    )


async def create_with_table(
    context: IntegrationContext,
    organization: Organization,
    service_name: str,
    **kwargs: Any,
) -> ServiceIntegration:
    sint = make_sint(organization, service_name, **kwargs)
    await context.integration_for(sint).create_table()
    return sint


class InMemoryIntegrationDirectory:
    """API directory backed by plain objects so route tests run without Postgres."""

    def __init__(self, organizations: list[Organization] | None = None) -> None:
        self.organizations = {org.key: org for org in organizations or []}
        self.saves = 0

    async def get_organization(self, key: str) -> Organization | None:
        return self.organizations.get(key)

    async def get(self, opaque_id: str) -> ServiceIntegration | None:
        for organization in self.organizations.values():
            for sint in organization.service_integrations:
                if sint.opaque_id == opaque_id:
                    return sint
        return None

    async def list_for_organization(self, organization: Organization) -> list[ServiceIntegration]:
        return list(organization.service_integrations)

    async def create(
        self, organization: Organization, *, service_name: str, table_name: str | None = None
    ) -> ServiceIntegration:
        if table_name is None:
            return make_sint(organization, service_name)
        return make_sint(organization, service_name, table_name=table_name)

    async def delete_organization(self, organization: Organization) -> None:
        self.organizations.pop(organization.key, None)

    async def save(self) -> None:
        self.saves += 1
