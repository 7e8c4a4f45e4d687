"""Load descriptors into an immutable, validated plan."""

from pathlib import Path
from typing import Any, Iterable, List, Mapping, Optional, Union

import yaml
from pydantic import ValidationError

from tierstack.plan.dependency_graph import DependencyGraph
from tierstack.plan.models import Plan, ResourceDescriptor
from tierstack.plan.validation import validate_plan
from tierstack.utils.errors import (
    ConfigurationError,
    CycleDetected,
    InvalidPlan,
    PlanViolation,
    UnknownDependency,
)
from tierstack.utils.logging import get_logger

logger = get_logger(__name__)

DescriptorLike = Union[ResourceDescriptor, Mapping[str, Any]]


def _coerce(
    descriptors: Iterable[DescriptorLike],
    violations: List[PlanViolation],
) -> List[ResourceDescriptor]:
    coerced: List[ResourceDescriptor] = []
    for index, item in enumerate(descriptors):
        if isinstance(item, ResourceDescriptor):
            coerced.append(item)
            continue
        try:
            coerced.append(ResourceDescriptor.model_validate(item))
        except ValidationError as e:
            label = item.get('name', f'#{index}') if isinstance(item, Mapping) else f'#{index}'
            for error in e.errors():
                field_path = '.'.join(str(part) for part in error['loc']) or 'descriptor'
                violations.append(PlanViolation(
                    code='invalid_descriptor',
                    message=f"Descriptor {label}: {field_path}: {error['msg']}",
                    names=(str(label),),
                ))
    return coerced


def load_plan(descriptors: Iterable[DescriptorLike], name: str = 'plan') -> Plan:
    """Validate descriptors and compute their execution order.

    No provider is contacted. Every violation is reported at once.

    Args:
        descriptors: Descriptor models or plain mappings in authoring order
        name: Plan name used in logs and state files

    Returns:
        Frozen plan with its deterministic topological order

    Raises:
        CycleDetected: If the only problems are dependency cycles
        UnknownDependency: If the only problems are dependencies on undeclared names
        InvalidPlan: For any other combination of violations
    """
    violations: List[PlanViolation] = []
    coerced = _coerce(descriptors, violations)
    violations.extend(validate_plan(coerced))

    if violations:
        codes = {violation.code for violation in violations}
        if codes == {'cycle'}:
            raise CycleDetected([violation.names for violation in violations])
        if codes == {'unknown_dependency'}:
            raise UnknownDependency([tuple(violation.names) for violation in violations])
        raise InvalidPlan(violations)

    graph = DependencyGraph.from_descriptors(coerced)
    order = graph.topological_sort()
    logger.info(f"Loaded plan '{name}' with {len(coerced)} resource(s)")
    logger.debug(f"Execution order: {' -> '.join(order)}")

    return Plan(name=name, descriptors=tuple(coerced), order=tuple(order))


def load_plan_file(path: Union[str, Path], name: Optional[str] = None) -> Plan:
    """Load a plan from a YAML file.

    The file holds either a list of descriptors or a mapping with a
    ``resources`` list and an optional ``name``.

    Args:
        path: Path to the YAML file
        name: Plan name, defaulting to the file's ``name`` key or stem

    Returns:
        Validated plan

    Raises:
        ConfigurationError: If the file cannot be read or has the wrong shape
        InvalidPlan: If the descriptors do not form a valid plan
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Plan file not found: {path}")

    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}", cause=e)

    if isinstance(data, dict):
        resources = data.get('resources')
        name = name or data.get('name')
    else:
        resources = data

    if not isinstance(resources, list):
        raise ConfigurationError(
            f"Plan file {path} must contain a list of resources",
            suggestions=["Put descriptors under a top-level 'resources:' key"],
        )

    return load_plan(resources, name=name or path.stem)
