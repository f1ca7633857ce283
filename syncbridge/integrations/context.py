from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable

import httpx

from syncbridge.core.config import Settings, get_settings
from syncbridge.integrations.http import build_http_client
from syncbridge.integrations.registry import IntegrationRegistry, build_default_registry
from syncbridge.integrations.store import RowStore
from syncbridge.services.jobs import JobPublisher, build_publisher
from syncbridge.services.resilience import MinIntervalGate, RetryPolicy, Sleep

if TYPE_CHECKING:
    from syncbridge.domain.models import ServiceIntegration
    from syncbridge.integrations.base import Integration


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class IntegrationContext:
    """Everything an integration needs at runtime, constructed once per process."""

    registry: IntegrationRegistry
    store: RowStore
    http: httpx.AsyncClient
    publisher: JobPublisher
    retry_policy: RetryPolicy
    enrichment_gate: MinIntervalGate = field(default_factory=lambda: MinIntervalGate(0.0))
    api_base_url: str = "http://localhost:8000"
    sleep: Sleep = asyncio.sleep
    clock: Callable[[], datetime] = _utc_now
    max_dependency_depth: int = 10

    def integration_for(self, service_integration: ServiceIntegration) -> Integration:
        return self.registry.create(service_integration, self)


def build_context(
    store: RowStore,
    *,
    registry: IntegrationRegistry | None = None,
    http: httpx.AsyncClient | None = None,
    publisher: JobPublisher | None = None,
    settings: Settings | None = None,
) -> IntegrationContext:
    settings = settings or get_settings()
    return IntegrationContext(
        registry=registry or build_default_registry(),
        store=store,
        http=http or build_http_client(),
        publisher=publisher or build_publisher(),
        retry_policy=RetryPolicy(
            max_attempts=settings.backfill_page_max_attempts,
            backoff_ms=settings.backfill_retry_backoff_ms,
            jitter=settings.backfill_retry_jitter,
        ),
        enrichment_gate=MinIntervalGate(settings.enrichment_min_interval_ms / 1000.0),
        api_base_url=settings.api_base_url.rstrip("/"),
        max_dependency_depth=settings.cascade_max_depth,
    )
