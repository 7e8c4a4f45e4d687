"""Provisioners module for AWS resource management."""

from typing import Dict, Optional

from tierstack.plan.models import ResourceKind
from tierstack.tagging.manager import TagManager
from tierstack.utils.retry import RetryStrategy

from .base import BaseProvisioner, AWSProvisioner
from .network import (
    NetworkProvisioner,
    SubnetProvisioner,
    GatewayProvisioner,
    RouteTableProvisioner,
)
from .security_group import SecurityGroupProvisioner
from .load_balancing import (
    TargetGroupProvisioner,
    LoadBalancerProvisioner,
    ListenerProvisioner,
)
from .compute import (
    LaunchTemplateProvisioner,
    ScalingGroupProvisioner,
    ScalingPolicyProvisioner,
)
from .database import DatabaseSubnetGroupProvisioner, DatabaseInstanceProvisioner
from .memory import (
    InMemoryCloud,
    InMemoryProvisioner,
    CloudCall,
    CloudResource,
    SimulatedFailure,
    build_memory_provisioners,
)

AWS_PROVISIONERS = (
    NetworkProvisioner,
    SubnetProvisioner,
    GatewayProvisioner,
    RouteTableProvisioner,
    SecurityGroupProvisioner,
    TargetGroupProvisioner,
    LoadBalancerProvisioner,
    ListenerProvisioner,
    LaunchTemplateProvisioner,
    ScalingGroupProvisioner,
    ScalingPolicyProvisioner,
    DatabaseSubnetGroupProvisioner,
    DatabaseInstanceProvisioner,
)


def build_aws_provisioners(
    client_manager,
    tag_manager: TagManager,
    retry: Optional[RetryStrategy] = None,
    wait_timeout: int = 900,
) -> Dict[ResourceKind, BaseProvisioner]:
    """Create one AWS provisioner per resource kind.

    Args:
        client_manager: AWSClientManager supplying boto3 clients
        tag_manager: Tag manager of the project environment
        retry: Retry strategy shared by all provisioners
        wait_timeout: Waiter bound in seconds for slow resources

    Returns:
        Mapping of kind to provisioner
    """
    retry = retry or RetryStrategy()
    return {
        provisioner_class.kind: provisioner_class(
            client_manager,
            tag_manager,
            retry=retry,
            wait_timeout=wait_timeout,
        )
        for provisioner_class in AWS_PROVISIONERS
    }


__all__ = [
    'BaseProvisioner',
    'AWSProvisioner',
    'NetworkProvisioner',
    'SubnetProvisioner',
    'GatewayProvisioner',
    'RouteTableProvisioner',
    'SecurityGroupProvisioner',
    'TargetGroupProvisioner',
    'LoadBalancerProvisioner',
    'ListenerProvisioner',
    'LaunchTemplateProvisioner',
    'ScalingGroupProvisioner',
    'ScalingPolicyProvisioner',
    'DatabaseSubnetGroupProvisioner',
    'DatabaseInstanceProvisioner',
    'InMemoryCloud',
    'InMemoryProvisioner',
    'CloudCall',
    'CloudResource',
    'SimulatedFailure',
    'AWS_PROVISIONERS',
    'build_aws_provisioners',
    'build_memory_provisioners',
]
