from __future__ import annotations

from typing import TYPE_CHECKING, AsyncGenerator, Protocol

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from syncbridge.integrations.context import IntegrationContext, build_context
from syncbridge.persistence.db import get_engine, get_session
from syncbridge.persistence.replication import PostgresRowStore
from syncbridge.persistence.repos.service_integrations import SqlIntegrationDirectory

if TYPE_CHECKING:
    from syncbridge.domain.models import Organization, ServiceIntegration


class IntegrationDirectory(Protocol):
    async def get_organization(self, key: str) -> Organization | None: ...

    async def get(self, opaque_id: str) -> ServiceIntegration | None: ...

    async def list_for_organization(self, organization: Organization) -> list[ServiceIntegration]: ...

    async def create(
        self, organization: Organization, *, service_name: str, table_name: str | None = None
    ) -> ServiceIntegration: ...

    async def delete_organization(self, organization: Organization) -> None: ...

    async def save(self) -> None: ...


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request; context manager ensures close on success/error.
    async with get_session() as session:
        yield session


def get_integration_directory(session: AsyncSession = Depends(get_db)) -> IntegrationDirectory:
    return SqlIntegrationDirectory(session)


def get_integration_context(request: Request) -> IntegrationContext:
    # Built on first use and shared by every request of this app instance.
    context = getattr(request.app.state, "integration_context", None)
    if context is None:
        context = build_context(PostgresRowStore(get_engine()))
        request.app.state.integration_context = context
    return context
