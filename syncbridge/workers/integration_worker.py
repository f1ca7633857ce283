from __future__ import annotations

import logging

from arq.connections import RedisSettings

from syncbridge.core.config import get_settings
from syncbridge.core.logging import configure_logging
from syncbridge.integrations.context import build_context
from syncbridge.persistence.db import dispose_engine, get_engine, get_session
from syncbridge.persistence.replication import PostgresRowStore
from syncbridge.services.integration_jobs import (
    process_backfill_job,
    process_organization_backfill_job,
    process_row_change_job,
    process_webhook_job,
)
from syncbridge.services.jobs import (
    ArqJobPublisher,
    BackfillJobPayload,
    OrganizationBackfillJobPayload,
    RowChangeJobPayload,
    WebhookJobPayload,
)


logger = logging.getLogger(__name__)


async def backfill_service_integration(ctx, payload: dict) -> int:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = BackfillJobPayload.model_validate(payload)
    settings = get_settings()
    async with get_session() as session:
        return await process_backfill_job(
            ctx["integration_context"],
            job_payload,
            session=session,
            attempt=ctx.get("job_try", 1),
            max_tries=settings.worker_max_tries,
        )


async def backfill_organization(ctx, payload: dict) -> int:
    job_payload = OrganizationBackfillJobPayload.model_validate(payload)
    async with get_session() as session:
        return await process_organization_backfill_job(ctx["integration_context"], job_payload, session=session)


async def process_webhook(ctx, payload: dict) -> str:
    job_payload = WebhookJobPayload.model_validate(payload)
    async with get_session() as session:
        return await process_webhook_job(ctx["integration_context"], job_payload, session=session)


async def record_row_change(ctx, payload: dict) -> str:
    job_payload = RowChangeJobPayload.model_validate(payload)
    return await process_row_change_job(ctx["integration_context"], job_payload)


async def _startup(ctx) -> None:
    # One integration context per worker process; the HTTP client is shared across jobs.
    configure_logging()
    ctx["integration_context"] = build_context(PostgresRowStore(get_engine()), publisher=ArqJobPublisher())
    logger.info("integration_worker_started")


async def _shutdown(ctx) -> None:
    context = ctx.get("integration_context")
    if context is not None:
        await context.http.aclose()
    await dispose_engine()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.integration_queue_name
    max_tries = settings.worker_max_tries
    functions = [backfill_service_integration, backfill_organization, process_webhook, record_row_change]
    on_startup = _startup
    on_shutdown = _shutdown
