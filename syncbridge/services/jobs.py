from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol
from uuid import uuid4

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel, Field

from syncbridge.core.config import get_settings


logger = logging.getLogger(__name__)

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()


class BackfillJobPayload(BaseModel):
    # Integrations are addressed by opaque id across the API/worker boundary.
    opaque_id: str
    incremental: bool = False
    cascade: bool = False
    request_id: str = Field(default_factory=lambda: uuid4().hex)


class OrganizationBackfillJobPayload(BaseModel):
    organization_id: int
    incremental: bool = False
    request_id: str = Field(default_factory=lambda: uuid4().hex)


class RowChangeJobPayload(BaseModel):
    opaque_id: str
    # {"action", "row", "external_id_column", "external_id"}
    summary: dict[str, Any]
    request_id: str = Field(default_factory=lambda: uuid4().hex)


class WebhookJobPayload(BaseModel):
    opaque_id: str
    request: dict[str, Any]
    request_id: str = Field(default_factory=lambda: uuid4().hex)


class JobPublisher(Protocol):
    async def publish_backfill(self, opaque_id: str, *, incremental: bool, cascade: bool) -> str: ...

    async def publish_row_change(self, opaque_id: str, summary: dict[str, Any]) -> str: ...

    async def publish_webhook(self, opaque_id: str, request: dict[str, Any]) -> str: ...

    async def publish_organization_backfill(self, organization_id: int, *, incremental: bool) -> str: ...


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.integration_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


class ArqJobPublisher:
    async def _enqueue(self, function: str, payload: BaseModel, job_id: str) -> str:
        settings = get_settings()
        redis = await get_redis_pool()
        job = await redis.enqueue_job(
            function,
            payload.model_dump(mode="json"),
            _job_id=job_id,
            _queue_name=settings.integration_queue_name,
        )
        # When a job id already exists, arq returns None; keep tracing with the same id.
        return job.job_id if job else job_id

    async def publish_backfill(self, opaque_id: str, *, incremental: bool, cascade: bool) -> str:
        payload = BackfillJobPayload(opaque_id=opaque_id, incremental=incremental, cascade=cascade)
        return await self._enqueue("backfill_service_integration", payload, payload.request_id)

    async def publish_row_change(self, opaque_id: str, summary: dict[str, Any]) -> str:
        payload = RowChangeJobPayload(opaque_id=opaque_id, summary=summary)
        return await self._enqueue("record_row_change", payload, payload.request_id)

    async def publish_webhook(self, opaque_id: str, request: dict[str, Any]) -> str:
        payload = WebhookJobPayload(opaque_id=opaque_id, request=request)
        return await self._enqueue("process_webhook", payload, payload.request_id)

    async def publish_organization_backfill(self, organization_id: int, *, incremental: bool) -> str:
        payload = OrganizationBackfillJobPayload(organization_id=organization_id, incremental=incremental)
        return await self._enqueue("backfill_organization", payload, payload.request_id)


@dataclass
class PublishedJob:
    function: str
    payload: dict[str, Any]


@dataclass
class RecordingJobPublisher:
    """Keeps published jobs in memory; inline execution mode and tests read ``jobs``."""

    jobs: list[PublishedJob] = field(default_factory=list)

    def _record(self, function: str, payload: BaseModel) -> str:
        self.jobs.append(PublishedJob(function=function, payload=payload.model_dump(mode="json")))
        return str(payload.request_id)

    def of(self, function: str) -> list[dict[str, Any]]:
        return [job.payload for job in self.jobs if job.function == function]

    async def publish_backfill(self, opaque_id: str, *, incremental: bool, cascade: bool) -> str:
        return self._record(
            "backfill_service_integration",
            BackfillJobPayload(opaque_id=opaque_id, incremental=incremental, cascade=cascade),
        )

    async def publish_row_change(self, opaque_id: str, summary: dict[str, Any]) -> str:
        return self._record("record_row_change", RowChangeJobPayload(opaque_id=opaque_id, summary=summary))

    async def publish_webhook(self, opaque_id: str, request: dict[str, Any]) -> str:
        return self._record("process_webhook", WebhookJobPayload(opaque_id=opaque_id, request=request))

    async def publish_organization_backfill(self, organization_id: int, *, incremental: bool) -> str:
        return self._record(
            "backfill_organization",
            OrganizationBackfillJobPayload(organization_id=organization_id, incremental=incremental),
        )


def build_publisher() -> JobPublisher:
    settings = get_settings()
    if settings.webhook_execution_mode.lower() == "inline":
        return RecordingJobPublisher()
    return ArqJobPublisher()
