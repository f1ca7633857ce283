from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Callable, Iterable, Iterator

from syncbridge.core.errors import InvalidPostcondition, InvalidPrecondition

if TYPE_CHECKING:
    from syncbridge.domain.models import ServiceIntegration


logger = logging.getLogger(__name__)

DEFAULT_MAX_DEPTH = 10


def iter_ancestors(
    service_integration: ServiceIntegration, *, max_depth: int = DEFAULT_MAX_DEPTH
) -> Iterator[ServiceIntegration]:
    # Walk depends_on upward, nearest parent first.
    seen = {id(service_integration)}
    current = service_integration.depends_on
    depth = 0
    while current is not None:
        depth += 1
        if depth > max_depth:
            raise InvalidPostcondition(
                f"{service_integration.opaque_id} has a dependency chain deeper than {max_depth}"
            )
        if id(current) in seen:
            raise InvalidPostcondition(f"{service_integration.opaque_id} has a dependency cycle")
        seen.add(id(current))
        yield current
        current = current.depends_on


def find_ancestor(
    service_integration: ServiceIntegration,
    predicate: Callable[[ServiceIntegration], bool],
    *,
    description: str = "a matching ancestor",
    max_depth: int = DEFAULT_MAX_DEPTH,
) -> ServiceIntegration:
    for ancestor in iter_ancestors(service_integration, max_depth=max_depth):
        if predicate(ancestor):
            return ancestor
    raise InvalidPostcondition(
        f"could not find {description} for {service_integration.service_name} "
        f"integration {service_integration.opaque_id}"
    )


def find_ancestor_of_type(
    service_integration: ServiceIntegration, service_name: str, *, max_depth: int = DEFAULT_MAX_DEPTH
) -> ServiceIntegration:
    return find_ancestor(
        service_integration,
        lambda candidate: candidate.service_name == service_name,
        description=f"a {service_name} ancestor",
        max_depth=max_depth,
    )


def validate_dependency(
    service_integration: ServiceIntegration,
    parent: ServiceIntegration | None,
    *,
    required_service: str | None,
) -> None:
    if parent is None:
        return
    if required_service is None:
        raise InvalidPrecondition(f"{service_integration.service_name} does not accept a dependency")
    if parent.service_name != required_service:
        raise InvalidPrecondition(
            f"{service_integration.service_name} must depend on {required_service}, not {parent.service_name}"
        )
    if parent is service_integration:
        raise InvalidPrecondition("an integration cannot depend on itself")
    current: ServiceIntegration | None = parent
    for _ in range(DEFAULT_MAX_DEPTH + 1):
        if current is None:
            return
        if current is service_integration:
            raise InvalidPrecondition(
                f"depending on {parent.opaque_id} would create a cycle through {service_integration.opaque_id}"
            )
        current = current.depends_on
    raise InvalidPrecondition(f"dependency chain above {parent.opaque_id} is too deep")


def topological_order(integrations: Iterable[ServiceIntegration]) -> list[ServiceIntegration]:
    # Parents before dependents; ties keep the input order so runs are reproducible.
    nodes = list(integrations)
    members = {id(node) for node in nodes}
    remaining_parents = {
        id(node): 1 if node.depends_on is not None and id(node.depends_on) in members else 0 for node in nodes
    }
    ordered: list[ServiceIntegration] = []
    placed: set[int] = set()
    while len(ordered) < len(nodes):
        progressed = False
        for node in nodes:
            if id(node) in placed or remaining_parents[id(node)]:
                continue
            ordered.append(node)
            placed.add(id(node))
            progressed = True
            for other in nodes:
                if other.depends_on is node:
                    remaining_parents[id(other)] = 0
        if not progressed:
            raise InvalidPrecondition("integrations contain a dependency cycle")
    return ordered
