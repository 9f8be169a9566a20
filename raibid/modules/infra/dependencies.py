"""Install and teardown ordering between components."""

from typing import Dict, Iterable, List, Tuple

from .errors import DependencyConflictError, PrerequisiteMissingError
from .models import Component

DEPENDENCIES: Dict[Component, Tuple[Component, ...]] = {
    Component.K3S: (),
    Component.REDIS: (Component.K3S,),
    Component.GITEA: (Component.K3S,),
    Component.KEDA: (Component.K3S, Component.REDIS),
    Component.FLUX: (Component.K3S, Component.GITEA),
}

# Tie-break between components that are ready at the same time
PRIORITY: Tuple[Component, ...] = (
    Component.K3S,
    Component.REDIS,
    Component.GITEA,
    Component.KEDA,
    Component.FLUX,
)


def _rank(component: Component) -> int:
    return PRIORITY.index(component)


def dependents_of(component: Component) -> List[Component]:
    return [c for c, deps in DEPENDENCIES.items() if component in deps]


def missing_dependencies(component: Component, installed: Iterable[Component]) -> List[Component]:
    installed = set(installed)
    return [d for d in DEPENDENCIES[component] if d not in installed]


def order(requested: Iterable[Component], installed: Iterable[Component] = ()) -> List[Component]:
    """Install order for ``requested``.

    Only requested components are returned; prerequisites are never added
    implicitly.

    Raises:
        FatalError: wrapping :class:`PrerequisiteMissingError` when a
            prerequisite is neither installed nor requested
    """
    requested = list(dict.fromkeys(requested))
    wanted = set(requested)
    installed = set(installed)

    for component in sorted(wanted, key=_rank):
        missing = [d for d in DEPENDENCIES[component] if d not in wanted and d not in installed]
        if missing:
            raise PrerequisiteMissingError(
                component.value,
                [m.value for m in missing],
                suggestion=(
                    f"Install {', '.join(m.value for m in missing)} first or request it together: "
                    f"'raibid setup {' '.join(m.value for m in missing)} {component.value}'"
                ),
            ).fatal()

    # Kahn's algorithm restricted to the requested set
    pending = {c: {d for d in DEPENDENCIES[c] if d in wanted} for c in wanted}
    result: List[Component] = []
    while pending:
        ready = sorted((c for c, deps in pending.items() if not deps), key=_rank)
        component = ready[0]
        result.append(component)
        del pending[component]
        for deps in pending.values():
            deps.discard(component)
    return result


def teardown_order(requested: Iterable[Component], installed: Iterable[Component] = ()) -> List[Component]:
    """Reverse dependency order for removing ``requested``.

    Raises:
        FatalError: wrapping :class:`DependencyConflictError` when an installed
            component that is not being removed depends on a requested one
    """
    requested = list(dict.fromkeys(requested))
    wanted = set(requested)
    installed = set(installed)

    for component in sorted(wanted, key=_rank):
        blocking = [d for d in dependents_of(component) if d in installed and d not in wanted]
        if blocking:
            raise DependencyConflictError(component.value, [b.value for b in blocking]).fatal()

    return list(reversed(order(requested, installed=set(PRIORITY))))
