from __future__ import annotations

import logging
from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from pydantic import BaseModel, Field

from syncbridge.apps.api.deps import IntegrationDirectory, get_integration_context, get_integration_directory
from syncbridge.domain.models import Organization, ServiceIntegration
from syncbridge.integrations.context import IntegrationContext
from syncbridge.integrations.webhook import WebhookRequest, WebhookResponse
from syncbridge.services.webhook_pipeline import handle_webhook


logger = logging.getLogger(__name__)

router = APIRouter(tags=["service_integrations"])

WEBHOOK_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


class ServiceIntegrationCreateRequest(BaseModel):
    service_name: str
    table_name: str | None = Field(default=None, pattern=r"^[A-Za-z_][A-Za-z0-9_]*$")

    model_config = {"extra": "forbid"}


class ServiceIntegrationResponse(BaseModel):
    opaque_id: str
    service_name: str
    table_name: str
    depends_on: str | None = None
    last_backfilled_at: str | None = None


class TransitionRequest(BaseModel):
    value: Any = None


class BackfillRequest(BaseModel):
    incremental: bool = False
    cascade: bool = False


class BackfillAcceptedResponse(BaseModel):
    job_id: str
    status: str = "queued"


def _to_response(sint: ServiceIntegration) -> ServiceIntegrationResponse:
    last = sint.last_backfilled_at
    return ServiceIntegrationResponse(
        opaque_id=sint.opaque_id,
        service_name=sint.service_name,
        table_name=sint.table_name,
        depends_on=sint.depends_on.opaque_id if sint.depends_on is not None else None,
        last_backfilled_at=last.isoformat() if last is not None else None,
    )


async def _require_organization(directory: IntegrationDirectory, key: str) -> Organization:
    organization = await directory.get_organization(key)
    if organization is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "organization not found"})
    return organization


async def _require_integration(directory: IntegrationDirectory, opaque_id: str) -> ServiceIntegration:
    sint = await directory.get(opaque_id)
    if sint is None:
        raise HTTPException(status_code=404, detail={"code": "NOT_FOUND", "message": "no integration found"})
    return sint


def _webhook_response(response: WebhookResponse) -> Response:
    headers = {k: v for k, v in response.headers.items() if k.lower() != "content-type"}
    media_type = response.headers.get("Content-Type") or response.headers.get("content-type")
    return Response(content=response.body, status_code=response.status, headers=headers, media_type=media_type)


@router.get("/v1/organizations/{organization_key}/service_integrations")
async def list_service_integrations(
    organization_key: str,
    directory: IntegrationDirectory = Depends(get_integration_directory),
) -> list[ServiceIntegrationResponse]:
    organization = await _require_organization(directory, organization_key)
    return [_to_response(sint) for sint in await directory.list_for_organization(organization)]


@router.post("/v1/organizations/{organization_key}/service_integrations", status_code=201)
async def create_service_integration(
    organization_key: str,
    payload: ServiceIntegrationCreateRequest,
    directory: IntegrationDirectory = Depends(get_integration_directory),
    context: IntegrationContext = Depends(get_integration_context),
) -> dict[str, Any]:
    # The replication table is created up front; onboarding continues through the state machine.
    descriptor = context.registry.require(payload.service_name)
    organization = await _require_organization(directory, organization_key)
    sint = await directory.create(organization, service_name=descriptor.name, table_name=payload.table_name)
    integration = context.integration_for(sint)
    await integration.create_table()
    await directory.save()
    logger.info("service_integration_created", extra={"opaque_id": sint.opaque_id, "service": descriptor.name})
    return {
        "service_integration": _to_response(sint).model_dump(),
        "state_machine": integration.calculate_create_state_machine().to_dict(),
    }


@router.post("/v1/organizations/{organization_key}/backfill", status_code=202)
async def backfill_organization(
    organization_key: str,
    payload: BackfillRequest | None = None,
    directory: IntegrationDirectory = Depends(get_integration_directory),
    context: IntegrationContext = Depends(get_integration_context),
) -> BackfillAcceptedResponse:
    organization = await _require_organization(directory, organization_key)
    request = payload or BackfillRequest()
    job_id = await context.publisher.publish_organization_backfill(organization.id, incremental=request.incremental)
    return BackfillAcceptedResponse(job_id=job_id)


@router.delete("/v1/organizations/{organization_key}", status_code=204)
async def offboard_organization(
    organization_key: str,
    directory: IntegrationDirectory = Depends(get_integration_directory),
    context: IntegrationContext = Depends(get_integration_context),
) -> Response:
    # Tenants on the shared public schema keep their tables; only dedicated schemas are dropped.
    organization = await _require_organization(directory, organization_key)
    schema = organization.replication_schema or "public"
    if schema != "public":
        await context.store.drop_schema(schema)
    await directory.delete_organization(organization)
    logger.info("organization_offboarded", extra={"organization": organization_key, "schema": schema})
    return Response(status_code=204)


@router.get("/v1/service_integrations/{opaque_id}/state/{machine}")
async def get_state_machine(
    opaque_id: str,
    machine: Literal["create", "backfill"],
    directory: IntegrationDirectory = Depends(get_integration_directory),
    context: IntegrationContext = Depends(get_integration_context),
) -> dict[str, Any]:
    integration = context.integration_for(await _require_integration(directory, opaque_id))
    if machine == "create":
        return integration.calculate_create_state_machine().to_dict()
    return integration.calculate_backfill_state_machine().to_dict()


@router.post("/v1/service_integrations/{opaque_id}/transition/{field}")
async def transition_field(
    opaque_id: str,
    field: str,
    payload: TransitionRequest,
    directory: IntegrationDirectory = Depends(get_integration_directory),
    context: IntegrationContext = Depends(get_integration_context),
) -> dict[str, Any]:
    integration = context.integration_for(await _require_integration(directory, opaque_id))
    step = await integration.process_state_change(field, payload.value)
    await directory.save()
    return step.to_dict()


@router.post("/v1/service_integrations/{opaque_id}/backfill", status_code=202)
async def backfill_service_integration(
    opaque_id: str,
    payload: BackfillRequest | None = None,
    directory: IntegrationDirectory = Depends(get_integration_directory),
    context: IntegrationContext = Depends(get_integration_context),
) -> BackfillAcceptedResponse:
    integration = context.integration_for(await _require_integration(directory, opaque_id))
    step = integration.calculate_backfill_state_machine()
    if not step.complete or step.error_code is not None:
        # Hand the pending onboarding step back so the caller can finish it.
        raise HTTPException(
            status_code=409,
            detail={"code": "BACKFILL_NOT_READY", "message": step.output, "state_machine": step.to_dict()},
        )
    request = payload or BackfillRequest()
    job_id = await context.publisher.publish_backfill(
        opaque_id, incremental=request.incremental, cascade=request.cascade
    )
    return BackfillAcceptedResponse(job_id=job_id)


@router.api_route("/v1/service_integrations/{opaque_id}", methods=WEBHOOK_METHODS)
@router.api_route("/v1/service_integrations/{opaque_id}/{subpath:path}", methods=WEBHOOK_METHODS)
async def receive_webhook(
    opaque_id: str,
    request: Request,
    directory: IntegrationDirectory = Depends(get_integration_directory),
    context: IntegrationContext = Depends(get_integration_context),
) -> Response:
    sint = await directory.get(opaque_id)
    if sint is None:
        return _webhook_response(WebhookResponse.error("no integration found", status=400))
    webhook = WebhookRequest(
        body=await request.body(),
        headers=dict(request.headers),
        path=request.url.path,
        method=request.method,
    )
    return _webhook_response(await handle_webhook(context, sint, webhook))
