from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from syncbridge.core.config import get_settings
from syncbridge.core.errors import MalformedPayload
from syncbridge.integrations.resolver import SKIPPED, UpsertResult
from syncbridge.integrations.webhook import WebhookRequest, WebhookResponse
from syncbridge.services.telemetry import increment_counter

if TYPE_CHECKING:
    from syncbridge.domain.models import ServiceIntegration
    from syncbridge.integrations.context import IntegrationContext


logger = logging.getLogger(__name__)


async def apply_webhook(
    context: IntegrationContext, service_integration: ServiceIntegration, request: WebhookRequest
) -> UpsertResult:
    # Malformed bodies were already acknowledged; drop them with a warning instead of retrying forever.
    integration = context.integration_for(service_integration)
    try:
        result = await integration.upsert_webhook(request)
    except MalformedPayload as exc:
        increment_counter("webhook_malformed_total")
        logger.warning(
            "webhook_payload_malformed",
            extra={"opaque_id": service_integration.opaque_id, "reason": str(exc)},
        )
        return SKIPPED
    increment_counter(f"webhook_{result.action}_total")
    return result


async def handle_webhook(
    context: IntegrationContext,
    service_integration: ServiceIntegration,
    request: WebhookRequest,
    *,
    execution_mode: str | None = None,
) -> WebhookResponse:
    """Authenticate and dispatch one inbound webhook.

    Rejected requests are answered with the authenticator's response and never
    touch the row store. Synchronous integrations upsert in the request and
    answer with a body derived from the written row; all others are
    acknowledged and applied inline or through the job queue.
    """
    integration = context.integration_for(service_integration)
    response = integration.webhook_response(request)
    if not response.accepted:
        return response

    if integration.process_webhooks_synchronously:
        # Callers of synchronous integrations need the generated key, so errors surface to them.
        result = await integration.upsert_webhook(request)
        body = integration.synchronous_processing_response_body(result, request)
        increment_counter(f"webhook_{result.action}_total")
        return WebhookResponse(status=response.status, headers=dict(response.headers), body=body)

    mode = (execution_mode or get_settings().webhook_execution_mode).lower()
    if mode == "inline":
        await apply_webhook(context, service_integration, request)
    else:
        job_id = await context.publisher.publish_webhook(service_integration.opaque_id, request.to_payload())
        logger.info("webhook_enqueued", extra={"opaque_id": service_integration.opaque_id, "job_id": job_id})
    return response
