from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Iterable

from arq import Retry
from sqlalchemy.ext.asyncio import AsyncSession

from syncbridge.core.errors import CredentialsMissing, FatalTransportError, InvalidPostcondition, RetryableTransportError
from syncbridge.integrations.backfill import BackfillRun
from syncbridge.integrations.graph import topological_order
from syncbridge.integrations.webhook import WebhookRequest
from syncbridge.persistence.repos.service_integrations import get_by_opaque_id, list_for_organization
from syncbridge.services.jobs import (
    BackfillJobPayload,
    OrganizationBackfillJobPayload,
    RowChangeJobPayload,
    WebhookJobPayload,
)
from syncbridge.services.telemetry import increment_counter
from syncbridge.services.webhook_pipeline import apply_webhook

if TYPE_CHECKING:
    from syncbridge.domain.models import ServiceIntegration
    from syncbridge.integrations.context import IntegrationContext


logger = logging.getLogger(__name__)


async def run_backfill(
    context: IntegrationContext,
    service_integration: ServiceIntegration,
    *,
    incremental: bool = False,
    cascade: bool = False,
    cancel: asyncio.Event | None = None,
) -> list[BackfillRun]:
    integration = context.integration_for(service_integration)
    increment_counter("backfill_started_total")
    try:
        runs = await integration.backfill(incremental=incremental, cascade=cascade, cancel=cancel)
    except Exception:
        increment_counter("backfill_failed_total")
        raise
    increment_counter("backfill_cancelled_total" if any(run.cancelled for run in runs) else "backfill_completed_total")
    return runs


async def backfill_organization(
    context: IntegrationContext,
    integrations: Iterable[ServiceIntegration],
    *,
    incremental: bool = False,
    cancel: asyncio.Event | None = None,
) -> dict[str, list[BackfillRun]]:
    """Backfill every backfillable integration of one organization, parents first.

    Integrations without credentials (or without a resolvable auth ancestor) are
    skipped so one half-configured integration never blocks the rest.
    """
    results: dict[str, list[BackfillRun]] = {}
    for sint in topological_order(integrations):
        if cancel is not None and cancel.is_set():
            break
        integration = context.integration_for(sint)
        if not integration.descriptor().supports_backfill:
            continue
        try:
            ready = integration.backfill_credentials_present()
        except InvalidPostcondition as exc:
            logger.warning("backfill_skipped", extra={"opaque_id": sint.opaque_id, "reason": str(exc)})
            continue
        if not ready:
            logger.info("backfill_skipped", extra={"opaque_id": sint.opaque_id, "reason": "credentials missing"})
            continue
        results[sint.opaque_id] = await run_backfill(context, sint, incremental=incremental, cancel=cancel)
    return results


async def process_backfill_job(
    context: IntegrationContext,
    payload: BackfillJobPayload,
    *,
    session: AsyncSession,
    attempt: int,
    max_tries: int,
) -> int:
    # Worker and inline callers share this; transient failures are retried by arq.
    sint = await get_by_opaque_id(session, payload.opaque_id)
    if sint is None:
        logger.warning("backfill_integration_missing", extra={"opaque_id": payload.opaque_id})
        return 0
    try:
        runs = await run_backfill(context, sint, incremental=payload.incremental, cascade=payload.cascade)
    except RetryableTransportError as exc:
        if attempt < max_tries:
            raise Retry(defer=context.retry_policy.delay_s(attempt)) from exc
        logger.exception("backfill_failed", extra={"opaque_id": payload.opaque_id})
        return 0
    except (CredentialsMissing, FatalTransportError, InvalidPostcondition) as exc:
        # Configuration problems need a human; retrying cannot fix them.
        logger.error("backfill_rejected", extra={"opaque_id": payload.opaque_id, "reason": str(exc)})
        return 0
    finally:
        # Partial progress (refreshed cookies, last_backfilled_at) is kept even on failure.
        await session.commit()
    return sum(run.items for run in runs)


async def process_organization_backfill_job(
    context: IntegrationContext,
    payload: OrganizationBackfillJobPayload,
    *,
    session: AsyncSession,
) -> int:
    integrations = await list_for_organization(session, payload.organization_id)
    try:
        results = await backfill_organization(context, integrations, incremental=payload.incremental)
    finally:
        await session.commit()
    return sum(run.items for runs in results.values() for run in runs)


async def process_webhook_job(
    context: IntegrationContext,
    payload: WebhookJobPayload,
    *,
    session: AsyncSession,
) -> str:
    sint = await get_by_opaque_id(session, payload.opaque_id)
    if sint is None:
        logger.warning("webhook_integration_missing", extra={"opaque_id": payload.opaque_id})
        return "skipped"
    result = await apply_webhook(context, sint, WebhookRequest.from_payload(payload.request))
    return result.action


async def process_row_change_job(context: IntegrationContext, payload: RowChangeJobPayload) -> str:
    # Records the fan-out; no subscriber transport is attached to the core.
    increment_counter("row_changes_recorded_total")
    logger.info(
        "row_change_recorded",
        extra={
            "opaque_id": payload.opaque_id,
            "action": payload.summary.get("action"),
            "external_id": payload.summary.get("external_id"),
        },
    )
    return str(payload.summary.get("action", ""))
