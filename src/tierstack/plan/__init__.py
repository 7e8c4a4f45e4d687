"""Plan models, validation and loading."""

from tierstack.plan.models import (
    ResourceKind,
    ResourceDescriptor,
    Plan,
    parse_ref,
    iter_refs,
)
from tierstack.plan.kinds import KindSpec, KIND_SPECS, get_kind_spec
from tierstack.plan.dependency_graph import DependencyGraph, DependencyNode
from tierstack.plan.validation import validate_plan
from tierstack.plan.loader import load_plan, load_plan_file

__all__ = [
    'ResourceKind',
    'ResourceDescriptor',
    'Plan',
    'parse_ref',
    'iter_refs',
    'KindSpec',
    'KIND_SPECS',
    'get_kind_spec',
    'DependencyGraph',
    'DependencyNode',
    'validate_plan',
    'load_plan',
    'load_plan_file',
]
