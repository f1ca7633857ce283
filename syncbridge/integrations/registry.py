from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Iterator

from syncbridge.core.errors import UnknownServiceError

if TYPE_CHECKING:
    from syncbridge.domain.models import ServiceIntegration
    from syncbridge.integrations.base import Integration
    from syncbridge.integrations.context import IntegrationContext


@dataclass(frozen=True)
class Descriptor:
    name: str
    integration_class: type[Integration]
    resource_name_singular: str
    resource_name_plural: str
    dependency_descriptor: "Descriptor | None" = None
    supports_webhooks: bool = True
    supports_backfill: bool = False
    # "internal" types are test fixtures hidden from tenant-facing listings.
    feature_roles: tuple[str, ...] = ()
    description: str = ""


class IntegrationRegistry:
    """Service-name to Descriptor lookup, built once per process and passed to entry points."""

    def __init__(self, descriptors: Iterable[Descriptor] = ()) -> None:
        self._descriptors: dict[str, Descriptor] = {}
        for descriptor in descriptors:
            self.register(descriptor)

    def register(self, descriptor: Descriptor) -> Descriptor:
        if descriptor.name in self._descriptors:
            raise ValueError(f"integration {descriptor.name} is already registered")
        self._descriptors[descriptor.name] = descriptor
        return descriptor

    def get(self, name: str) -> Descriptor | None:
        return self._descriptors.get(name)

    def require(self, name: str) -> Descriptor:
        descriptor = self._descriptors.get(name)
        if descriptor is None:
            raise UnknownServiceError(f"no integration registered for {name!r}")
        return descriptor

    def names(self) -> list[str]:
        return sorted(self._descriptors)

    def available(self, *, include_roles: Iterable[str] = ()) -> list[Descriptor]:
        # Role-gated types are hidden unless the caller holds the role.
        allowed = set(include_roles)
        return [
            descriptor
            for name, descriptor in sorted(self._descriptors.items())
            if all(role in allowed for role in descriptor.feature_roles)
        ]

    def create(self, service_integration: ServiceIntegration, context: IntegrationContext) -> Integration:
        descriptor = self.require(service_integration.service_name)
        return descriptor.integration_class(service_integration, context)

    def __contains__(self, name: object) -> bool:
        return name in self._descriptors

    def __iter__(self) -> Iterator[Descriptor]:
        return iter(self._descriptors.values())

    def __len__(self) -> int:
        return len(self._descriptors)


def build_default_registry(*, include_internal: bool = True) -> IntegrationRegistry:
    # Import here so the registry module stays free of concrete integrations.
    from syncbridge.integrations.services import ALL_INTEGRATIONS

    registry = IntegrationRegistry()
    for integration_class in ALL_INTEGRATIONS:
        descriptor = integration_class.descriptor()
        if not include_internal and "internal" in descriptor.feature_roles:
            continue
        registry.register(descriptor)
    return registry
