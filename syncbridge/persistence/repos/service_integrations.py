from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from syncbridge.domain.models import Organization, ServiceIntegration, new_opaque_id


async def get_organization(session: AsyncSession, organization_id: int) -> Organization | None:
    result = await session.execute(select(Organization).where(Organization.id == organization_id))
    return result.scalar_one_or_none()


async def get_organization_by_key(session: AsyncSession, key: str) -> Organization | None:
    result = await session.execute(select(Organization).where(Organization.key == key))
    return result.scalar_one_or_none()


async def get_by_opaque_id(session: AsyncSession, opaque_id: str) -> ServiceIntegration | None:
    result = await session.execute(select(ServiceIntegration).where(ServiceIntegration.opaque_id == opaque_id))
    return result.unique().scalar_one_or_none()


async def list_for_organization(session: AsyncSession, organization_id: int) -> list[ServiceIntegration]:
    # Creation order keeps dependency choice numbering stable between prompts.
    result = await session.execute(
        select(ServiceIntegration)
        .where(ServiceIntegration.organization_id == organization_id)
        .order_by(ServiceIntegration.created_at, ServiceIntegration.id)
    )
    return list(result.unique().scalars().all())


def default_table_name(service_name: str, opaque_id: str) -> str:
    suffix = opaque_id.rsplit("_", 1)[-1][:8]
    return f"{service_name}_{suffix}".lower()


async def create_service_integration(
    session: AsyncSession,
    organization: Organization,
    *,
    service_name: str,
    table_name: str | None = None,
    depends_on: ServiceIntegration | None = None,
) -> ServiceIntegration:
    # Caller validates service_name against the registry and commits.
    opaque_id = new_opaque_id("svi")
    sint = ServiceIntegration(
        opaque_id=opaque_id,
        organization=organization,
        service_name=service_name,
        table_name=table_name or default_table_name(service_name, opaque_id),
        depends_on=depends_on,
    )
    session.add(sint)
    return sint


class SqlIntegrationDirectory:
    """Session-bound lookup used by the API; one instance per request."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_organization(self, key: str) -> Organization | None:
        return await get_organization_by_key(self.session, key)

    async def get(self, opaque_id: str) -> ServiceIntegration | None:
        return await get_by_opaque_id(self.session, opaque_id)

    async def list_for_organization(self, organization: Organization) -> list[ServiceIntegration]:
        return await list_for_organization(self.session, organization.id)

    async def create(
        self, organization: Organization, *, service_name: str, table_name: str | None = None
    ) -> ServiceIntegration:
        sint = await create_service_integration(
            self.session, organization, service_name=service_name, table_name=table_name
        )
        await self.session.flush()
        return sint

    async def delete_organization(self, organization: Organization) -> None:
        # Integrations go with the organization (delete-orphan); the caller drops the schema.
        await self.session.delete(organization)
        await self.session.commit()

    async def save(self) -> None:
        await self.session.commit()
