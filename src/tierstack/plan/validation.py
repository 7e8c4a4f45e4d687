"""Plan validation that reports every violation before any provider call."""

import re
from collections import Counter
from typing import Dict, List, Sequence

from tierstack.plan.dependency_graph import DependencyGraph
from tierstack.plan.kinds import get_kind_spec
from tierstack.plan.models import ResourceDescriptor
from tierstack.utils.errors import PlanViolation
from tierstack.utils.logging import get_logger

logger = get_logger(__name__)

_PATH_ROOT = re.compile(r"^([^.\[]+)")


def _root(path: str) -> str:
    match = _PATH_ROOT.match(path)
    return match.group(1) if match else path


def validate_plan(descriptors: Sequence[ResourceDescriptor]) -> List[PlanViolation]:
    """Validate descriptors as a plan.

    Args:
        descriptors: Descriptors in authoring order

    Returns:
        Every violation found, grouped by check, in authoring order
    """
    violations: List[PlanViolation] = []
    by_name: Dict[str, ResourceDescriptor] = {}

    counts = Counter(descriptor.name for descriptor in descriptors)
    for name, count in counts.items():
        if count > 1:
            violations.append(PlanViolation(
                code='duplicate_name',
                message=f"Logical name '{name}' is declared {count} times",
                names=(name,),
            ))
    for descriptor in descriptors:
        by_name.setdefault(descriptor.name, descriptor)

    for descriptor in descriptors:
        violations.extend(_validate_descriptor(descriptor, by_name))

    # Self-dependencies are reported on their own, not as one-node cycles
    graph = DependencyGraph.from_descriptors(
        descriptor.model_copy(update={
            'depends_on': tuple(d for d in descriptor.depends_on if d != descriptor.name)
        })
        for descriptor in by_name.values()
    )
    for dependent, dependency in graph.find_unknown_dependencies():
        violations.append(PlanViolation(
            code='unknown_dependency',
            message=f"Resource '{dependent}' depends on '{dependency}' which does not exist",
            names=(dependent, dependency),
        ))
    for cycle in graph.detect_circular_dependencies():
        violations.append(PlanViolation(
            code='cycle',
            message=f"Circular dependency between: {', '.join(cycle)}",
            names=tuple(cycle),
        ))

    if violations:
        logger.debug(f"Plan validation found {len(violations)} violation(s)")
    return violations


def _validate_descriptor(
    descriptor: ResourceDescriptor,
    by_name: Dict[str, ResourceDescriptor],
) -> List[PlanViolation]:
    spec = get_kind_spec(descriptor.kind)
    name = descriptor.name
    parameters = descriptor.parameters
    violations: List[PlanViolation] = []

    if name in descriptor.depends_on:
        violations.append(PlanViolation(
            code='self_dependency',
            message=f"Resource '{name}' depends on itself",
            names=(name,),
        ))

    for parameter in spec.required:
        if parameter not in parameters or parameters[parameter] in (None, '', []):
            violations.append(PlanViolation(
                code='missing_parameter',
                message=f"{descriptor.kind.value} '{name}' is missing required parameter '{parameter}'",
                names=(name,),
            ))

    if spec.check is not None:
        for problem in spec.check(parameters):
            violations.append(PlanViolation(
                code='invalid_parameter',
                message=f"{descriptor.kind.value} '{name}': {problem}",
                names=(name,),
            ))

    for path, target in descriptor.references():
        if target not in descriptor.depends_on:
            violations.append(PlanViolation(
                code='undeclared_reference',
                message=f"Parameter '{path}' of '{name}' references '{target}' "
                        f"which is not listed in depends_on",
                names=(name, target),
            ))
            continue

        allowed = spec.references.get(_root(path))
        referenced = by_name.get(target)
        if allowed and referenced is not None and referenced.kind not in allowed:
            expected = ' or '.join(kind.value for kind in allowed)
            violations.append(PlanViolation(
                code='incompatible_reference',
                message=f"Parameter '{path}' of '{name}' must reference a {expected}, "
                        f"but '{target}' is a {referenced.kind.value}",
                names=(name, target),
            ))

    dependency_kinds = {
        by_name[dep].kind for dep in descriptor.depends_on if dep in by_name
    }
    for group in spec.dependency_groups(parameters):
        if not dependency_kinds.intersection(group):
            expected = ' or '.join(kind.value for kind in group)
            violations.append(PlanViolation(
                code='missing_dependency_kind',
                message=f"{descriptor.kind.value} '{name}' must depend on a {expected}",
                names=(name,),
            ))

    return violations
