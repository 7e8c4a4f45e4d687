"""Shared fixtures: simulated cloud, tag manager and plan builders."""

from typing import Any, Dict, List, Optional

import pytest

from tierstack.orchestrator.engine import ProvisioningEngine
from tierstack.orchestrator.reconciler import ExecutionMode
from tierstack.plan.loader import load_plan
from tierstack.plan.models import ResourceKind
from tierstack.provisioners.memory import InMemoryCloud, build_memory_provisioners
from tierstack.tagging.manager import TagManager


def descriptor(
    name: str,
    kind: ResourceKind,
    depends_on: Optional[List[str]] = None,
    **parameters: Any,
) -> Dict[str, Any]:
    """Plain-mapping descriptor, as read from YAML."""
    return {
        'name': name,
        'kind': kind.value,
        'depends_on': list(depends_on or []),
        'parameters': parameters,
    }


def network(name: str = 'v1', cidr_block: str = '10.0.0.0/16') -> Dict[str, Any]:
    return descriptor(name, ResourceKind.NETWORK, cidr_block=cidr_block)


def subnet(name: str, vpc: str = 'v1', cidr_block: str = '10.0.1.0/24') -> Dict[str, Any]:
    return descriptor(
        name, ResourceKind.SUBNET, [vpc],
        network=f'ref({vpc})', cidr_block=cidr_block, availability_zone='us-east-1a',
    )


def security_group(name: str, vpc: str = 'v1', depends_on: Optional[List[str]] = None,
                   **parameters: Any) -> Dict[str, Any]:
    parameters.setdefault('description', f'{name} group')
    return descriptor(
        name, ResourceKind.SECURITY_GROUP, [vpc] + list(depends_on or []),
        network=f'ref({vpc})', **parameters,
    )


def three_tier_descriptors() -> List[Dict[str, Any]]:
    """Small but complete three-tier topology."""
    return [
        network('vpc'),
        subnet('web-a', 'vpc', '10.0.0.0/24'),
        subnet('app-a', 'vpc', '10.0.10.0/24'),
        subnet('data-a', 'vpc', '10.0.20.0/24'),
        subnet('data-b', 'vpc', '10.0.21.0/24'),
        descriptor('igw', ResourceKind.GATEWAY, ['vpc'], type='internet', network='ref(vpc)'),
        descriptor(
            'public-routes', ResourceKind.ROUTE_TABLE, ['vpc', 'igw', 'web-a'],
            network='ref(vpc)',
            routes=[{'destination': '0.0.0.0/0', 'target': 'ref(igw)'}],
            subnets=['ref(web-a)'],
        ),
        security_group('web-sg', 'vpc', ingress=[{'protocol': 'tcp', 'port': 80, 'cidr': '0.0.0.0/0'}]),
        security_group(
            'app-sg', 'vpc', ['web-sg'],
            ingress=[{'protocol': 'tcp', 'port': 8080, 'source_group': 'ref(web-sg)'}],
        ),
        descriptor(
            'app-tg', ResourceKind.TARGET_GROUP, ['vpc'],
            network='ref(vpc)', port=8080, protocol='HTTP',
        ),
        descriptor(
            'web-lb', ResourceKind.LOAD_BALANCER, ['web-a', 'web-sg'],
            subnets=['ref(web-a)'], security_groups=['ref(web-sg)'],
        ),
        descriptor(
            'http', ResourceKind.LISTENER, ['web-lb', 'app-tg'],
            load_balancer='ref(web-lb)', target_group='ref(app-tg)', port=80, protocol='HTTP',
        ),
        descriptor(
            'app-lt', ResourceKind.LAUNCH_TEMPLATE, ['app-sg'],
            image_id='ami-12345678', instance_type='t3.small', security_groups=['ref(app-sg)'],
        ),
        descriptor(
            'app-asg', ResourceKind.SCALING_GROUP, ['app-lt', 'app-a', 'app-tg'],
            launch_template='ref(app-lt)', subnets=['ref(app-a)'], target_groups=['ref(app-tg)'],
            min_size=1, max_size=3,
        ),
        descriptor(
            'db-subnets', ResourceKind.DATABASE_SUBNET_GROUP, ['data-a', 'data-b'],
            subnets=['ref(data-a)', 'ref(data-b)'],
        ),
        descriptor(
            'db', ResourceKind.DATABASE_INSTANCE, ['db-subnets'],
            subnet_group='ref(db-subnets)', engine='postgres', instance_class='db.t3.micro',
            allocated_storage=20, master_username='admin',
        ),
    ]


@pytest.fixture
def cloud():
    """Fresh simulated cloud."""
    return InMemoryCloud()


@pytest.fixture
def tag_manager():
    return TagManager('shop', 'test', {'owner': 'platform'})


@pytest.fixture
def provisioners(cloud):
    return build_memory_provisioners(cloud)


@pytest.fixture
def make_engine(provisioners, tag_manager):
    """Factory for engines over the shared simulated cloud."""
    def _make(mode=ExecutionMode.SEQUENTIAL, max_workers=4, **kwargs):
        return ProvisioningEngine(
            provisioners=provisioners,
            tag_manager=tag_manager,
            mode=mode,
            max_workers=max_workers,
            **kwargs
        )
    return _make


@pytest.fixture
def vpc_plan():
    """v1 <- s1, v1 <- sg1; the plan from the basic failure scenario."""
    return load_plan([network('v1'), subnet('s1'), security_group('sg1')], name='vpc')


@pytest.fixture
def three_tier_plan():
    return load_plan(three_tier_descriptors(), name='three-tier')
