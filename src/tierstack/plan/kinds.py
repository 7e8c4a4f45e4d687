"""Per-kind parameter and dependency rules."""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from tierstack.plan.models import ResourceKind

K = ResourceKind


@dataclass(frozen=True)
class KindSpec:
    """Validation rules for one resource kind.

    Attributes:
        kind: Resource kind the rules apply to
        required: Parameters that must be present
        references: Top-level parameter -> kinds its ``ref(...)`` values may point at
        required_dependencies: Groups of kinds; for each group at least one
            dependency must be of a kind in the group
        check: Optional extra check returning messages for invalid parameters
    """
    kind: ResourceKind
    required: Tuple[str, ...] = ()
    references: Mapping[str, Tuple[ResourceKind, ...]] = field(default_factory=dict)
    required_dependencies: Tuple[Tuple[ResourceKind, ...], ...] = ()
    check: Optional[Callable[[Dict[str, Any]], List[str]]] = None

    def dependency_groups(self, parameters: Dict[str, Any]) -> Tuple[Tuple[ResourceKind, ...], ...]:
        """Dependency kind groups required for these parameters."""
        if self.kind == K.GATEWAY:
            if parameters.get('type') == 'nat':
                return ((K.SUBNET,),)
            return ((K.NETWORK,),)
        if self.kind == K.ROUTE_TABLE and parameters.get('routes'):
            return self.required_dependencies + ((K.GATEWAY,),)
        return self.required_dependencies


def _int_at_least(parameters: Dict[str, Any], minimum: int, *names: str) -> List[str]:
    problems = []
    for name in names:
        value = parameters.get(name)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, int) or value < minimum:
            problems.append(f"'{name}' must be an integer of at least {minimum}, got {value!r}")
    return problems


def _check_port(parameters: Dict[str, Any]) -> List[str]:
    port = parameters.get('port')
    if port is None:
        return []
    if isinstance(port, bool) or not isinstance(port, int) or not 1 <= port <= 65535:
        return [f"'port' must be an integer between 1 and 65535, got {port!r}"]
    return []


def _check_gateway(parameters: Dict[str, Any]) -> List[str]:
    gateway_type = parameters.get('type')
    if gateway_type is None:
        return []
    if gateway_type not in ('internet', 'nat'):
        return [f"'type' must be 'internet' or 'nat', got {gateway_type!r}"]
    needed = 'network' if gateway_type == 'internet' else 'subnet'
    if needed not in parameters:
        return [f"{gateway_type} gateway requires parameter '{needed}'"]
    return []


def _check_route_table(parameters: Dict[str, Any]) -> List[str]:
    problems = []
    routes = parameters.get('routes', [])
    if not isinstance(routes, list):
        return ["'routes' must be a list"]
    for index, route in enumerate(routes):
        if not isinstance(route, dict) or 'target' not in route:
            problems.append(f"routes[{index}] must be a mapping with a 'target'")
    subnets = parameters.get('subnets', [])
    if not isinstance(subnets, list):
        problems.append("'subnets' must be a list")
    return problems


def _check_rules(parameters: Dict[str, Any]) -> List[str]:
    problems = []
    for direction in ('ingress', 'egress'):
        rules = parameters.get(direction, [])
        if not isinstance(rules, list):
            problems.append(f"'{direction}' must be a list")
            continue
        for index, rule in enumerate(rules):
            if not isinstance(rule, dict):
                problems.append(f"{direction}[{index}] must be a mapping")
            elif 'cidr' not in rule and 'source_group' not in rule:
                problems.append(f"{direction}[{index}] needs 'cidr' or 'source_group'")
    return problems


def _check_scaling_group(parameters: Dict[str, Any]) -> List[str]:
    problems = _int_at_least(parameters, 0, 'min_size', 'max_size', 'desired_capacity')
    if problems:
        return problems
    min_size = parameters.get('min_size')
    max_size = parameters.get('max_size')
    desired = parameters.get('desired_capacity')
    if min_size is not None and max_size is not None and min_size > max_size:
        problems.append("'min_size' must not exceed 'max_size'")
    if desired is not None and min_size is not None and max_size is not None:
        if not min_size <= desired <= max_size:
            problems.append("'desired_capacity' must be between 'min_size' and 'max_size'")
    return problems


def _check_listener(parameters: Dict[str, Any]) -> List[str]:
    return _check_port(parameters)


def _check_target_group(parameters: Dict[str, Any]) -> List[str]:
    return _check_port(parameters)


def _check_database(parameters: Dict[str, Any]) -> List[str]:
    return _int_at_least(parameters, 1, 'allocated_storage')


KIND_SPECS: Dict[ResourceKind, KindSpec] = {
    spec.kind: spec for spec in (
        KindSpec(K.NETWORK, required=('cidr_block',)),
        KindSpec(
            K.SUBNET,
            required=('network', 'cidr_block', 'availability_zone'),
            references={'network': (K.NETWORK,)},
            required_dependencies=((K.NETWORK,),),
        ),
        KindSpec(
            K.GATEWAY,
            required=('type',),
            references={'network': (K.NETWORK,), 'subnet': (K.SUBNET,)},
            check=_check_gateway,
        ),
        KindSpec(
            K.ROUTE_TABLE,
            required=('network',),
            references={'network': (K.NETWORK,), 'routes': (K.GATEWAY,), 'subnets': (K.SUBNET,)},
            required_dependencies=((K.NETWORK,),),
            check=_check_route_table,
        ),
        KindSpec(
            K.SECURITY_GROUP,
            required=('network', 'description'),
            references={
                'network': (K.NETWORK,),
                'ingress': (K.SECURITY_GROUP,),
                'egress': (K.SECURITY_GROUP,),
            },
            required_dependencies=((K.NETWORK,),),
            check=_check_rules,
        ),
        KindSpec(
            K.TARGET_GROUP,
            required=('network', 'port', 'protocol'),
            references={'network': (K.NETWORK,)},
            required_dependencies=((K.NETWORK,),),
            check=_check_target_group,
        ),
        KindSpec(
            K.LOAD_BALANCER,
            required=('subnets', 'security_groups'),
            references={'subnets': (K.SUBNET,), 'security_groups': (K.SECURITY_GROUP,)},
            required_dependencies=((K.SUBNET,), (K.SECURITY_GROUP,)),
        ),
        KindSpec(
            K.LISTENER,
            required=('load_balancer', 'target_group', 'port', 'protocol'),
            references={'load_balancer': (K.LOAD_BALANCER,), 'target_group': (K.TARGET_GROUP,)},
            required_dependencies=((K.LOAD_BALANCER,), (K.TARGET_GROUP,)),
            check=_check_listener,
        ),
        KindSpec(
            K.LAUNCH_TEMPLATE,
            required=('image_id', 'instance_type'),
            references={'security_groups': (K.SECURITY_GROUP,)},
        ),
        KindSpec(
            K.SCALING_GROUP,
            required=('launch_template', 'subnets', 'min_size', 'max_size'),
            references={
                'launch_template': (K.LAUNCH_TEMPLATE,),
                'subnets': (K.SUBNET,),
                'target_groups': (K.TARGET_GROUP,),
            },
            required_dependencies=((K.LAUNCH_TEMPLATE,), (K.SUBNET,)),
            check=_check_scaling_group,
        ),
        KindSpec(
            K.SCALING_POLICY,
            required=('scaling_group', 'target_value'),
            references={'scaling_group': (K.SCALING_GROUP,)},
            required_dependencies=((K.SCALING_GROUP,),),
        ),
        KindSpec(
            K.DATABASE_SUBNET_GROUP,
            required=('subnets',),
            references={'subnets': (K.SUBNET,)},
            required_dependencies=((K.SUBNET,),),
        ),
        KindSpec(
            K.DATABASE_INSTANCE,
            required=('subnet_group', 'engine', 'instance_class', 'allocated_storage', 'master_username'),
            references={
                'subnet_group': (K.DATABASE_SUBNET_GROUP,),
                'security_groups': (K.SECURITY_GROUP,),
            },
            required_dependencies=((K.DATABASE_SUBNET_GROUP,),),
            check=_check_database,
        ),
    )
}


def get_kind_spec(kind: ResourceKind) -> KindSpec:
    """Rules for a kind."""
    return KIND_SPECS[kind]
