"""
Dependency order resolution.

Components declare the capabilities they require and provide. The order
is a stable topological sort: at every step the first component in
declaration order whose requirements are all satisfied is scheduled next.
Requirements are satisfied by capabilities of already scheduled components
or by capabilities supplied from outside the stack (platform, environment).
"""

import logging
from typing import Iterable, Sequence

from stackctl.errors import ManifestError
from stackctl.schemas import Component

logger = logging.getLogger("stackctl")


def _unsatisfied(component: Component, provided: set[str]) -> list[str]:
    return [capability for capability in component.requires if capability not in provided]


def order_components(
    components: Sequence[Component],
    platform_provides: Iterable[str] = (),
) -> list[str]:
    """
    Resolve the execution order of components.

    Args:
        components: Components in manifest declaration order
        platform_provides: Capabilities satisfied outside the stack

    Returns:
        Component qualified names in execution order

    Raises:
        ManifestError: If a requirement can never be satisfied (missing provider or cycle)
    """
    provided = set(platform_provides)
    pending = list(components)
    order: list[str] = []

    while pending:
        for index, component in enumerate(pending):
            if not _unsatisfied(component, provided):
                order.append(component.qualified_name)
                provided.update(component.provides)
                del pending[index]
                break
        else:
            raise _unsatisfiable(pending, components, provided)

    logger.debug(f"Component order: {', '.join(order)}")
    return order


def _unsatisfiable(
    pending: Sequence[Component],
    components: Sequence[Component],
    provided: set[str],
) -> ManifestError:
    component = pending[0]
    capability = _unsatisfied(component, provided)[0]
    providers = [c.name for c in components if capability in c.provides]
    if not providers:
        return ManifestError(
            f"Component `{component.name}` requires `{capability}` but no component provides it"
        )
    return ManifestError(
        f"Component `{component.name}` requires `{capability}` provided by "
        f"{', '.join(f'`{p}`' for p in providers)}, which cannot be scheduled before it (dependency cycle)"
    )


def verify_order(
    order: Sequence[str],
    components: Sequence[Component],
    platform_provides: Iterable[str] = (),
) -> None:
    """
    Check an explicit order against the components' requirements.

    Every component must appear exactly once, and each of its requirements
    must be provided by a component strictly before it or by the platform.

    Raises:
        ManifestError: If the order is incomplete or violates a requirement
    """
    by_name = {}
    for component in components:
        by_name[component.name] = component
        by_name[component.qualified_name] = component

    seen: set[str] = set()
    provided = set(platform_provides)
    for name in order:
        component = by_name.get(name)
        if component is None:
            raise ManifestError(f"Lifecycle order refers to unknown component `{name}`")
        if component.name in seen:
            raise ManifestError(f"Lifecycle order lists component `{component.name}` twice")
        missing = _unsatisfied(component, provided)
        if missing:
            raise ManifestError(
                f"Component `{component.name}` requires `{missing[0]}` which is not provided "
                f"by any component before it in the lifecycle order"
            )
        seen.add(component.name)
        provided.update(component.provides)

    absent = [c.name for c in components if c.name not in seen]
    if absent:
        raise ManifestError(f"Lifecycle order does not list component(s): {', '.join(absent)}")
