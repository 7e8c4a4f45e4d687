"""Elastic Load Balancing provisioners: target groups, load balancers and listeners."""

from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from tierstack.plan.models import ResourceKind
from tierstack.tagging.manager import NaturalKey

from .base import AWSProvisioner

# ELBv2 names are limited to 32 characters
ELB_NAME_LIMIT = 32

# describe_tags accepts at most 20 ARNs per call
DESCRIBE_TAGS_BATCH = 20


class TargetGroupProvisioner(AWSProvisioner):
    """Provisioner for ELBv2 target groups, found by physical name."""

    kind = ResourceKind.TARGET_GROUP
    service = 'elbv2'
    absent_codes = ('TargetGroupNotFound',)

    def find(self, key: NaturalKey, parameters: Dict[str, Any]) -> Optional[str]:
        name = self.tag_manager.physical_name(key, max_length=ELB_NAME_LIMIT)
        try:
            response = self._call('describe_target_groups', Names=[name])
        except ClientError as e:
            if self._is_absent(e):
                return None
            raise
        groups = response.get('TargetGroups', [])
        return groups[0]['TargetGroupArn'] if groups else None

    def create(self, key: NaturalKey, parameters: Dict[str, Any]) -> str:
        protocol = str(parameters['protocol']).upper()
        request = {
            'Name': self.tag_manager.physical_name(key, max_length=ELB_NAME_LIMIT),
            'Protocol': protocol,
            'Port': int(parameters['port']),
            'VpcId': parameters['network'],
            'TargetType': parameters.get('target_type', 'instance'),
            'Tags': self._tag_list(key, parameters),
        }
        if protocol in ('HTTP', 'HTTPS'):
            request['HealthCheckPath'] = parameters.get('health_check_path', '/')

        response = self._call('create_target_group', **request)
        arn = response['TargetGroups'][0]['TargetGroupArn']
        self.logger.info(f"Created target group {request['Name']}", extra={'logical_name': key.name})
        return arn

    def delete(self, identifier: str) -> None:
        self._ignore_absent('delete_target_group', TargetGroupArn=identifier)


class LoadBalancerProvisioner(AWSProvisioner):
    """Provisioner for application load balancers.

    ``scheme`` defaults to ``internet-facing``; the application tier uses
    ``internal``.
    """

    kind = ResourceKind.LOAD_BALANCER
    service = 'elbv2'
    absent_codes = ('LoadBalancerNotFound',)

    def find(self, key: NaturalKey, parameters: Dict[str, Any]) -> Optional[str]:
        name = self.tag_manager.physical_name(key, max_length=ELB_NAME_LIMIT)
        try:
            response = self._call('describe_load_balancers', Names=[name])
        except ClientError as e:
            if self._is_absent(e):
                return None
            raise
        balancers = response.get('LoadBalancers', [])
        return balancers[0]['LoadBalancerArn'] if balancers else None

    def create(self, key: NaturalKey, parameters: Dict[str, Any]) -> str:
        name = self.tag_manager.physical_name(key, max_length=ELB_NAME_LIMIT)
        response = self._call(
            'create_load_balancer',
            Name=name,
            Subnets=list(parameters['subnets']),
            SecurityGroups=list(parameters['security_groups']),
            Scheme=parameters.get('scheme', 'internet-facing'),
            Type='application',
            IpAddressType='ipv4',
            Tags=self._tag_list(key, parameters),
        )
        arn = response['LoadBalancers'][0]['LoadBalancerArn']

        try:
            self._wait('load_balancer_available', LoadBalancerArns=[arn])
        except Exception as e:
            self._discard_partial(arn, e)

        self.logger.info(f"Created load balancer {name}", extra={'logical_name': key.name})
        return arn

    def delete(self, identifier: str) -> None:
        if self._ignore_absent('delete_load_balancer', LoadBalancerArn=identifier) is None:
            return
        # Subnets and security groups stay in use until the balancer is gone
        self._wait('load_balancers_deleted', LoadBalancerArns=[identifier])


class ListenerProvisioner(AWSProvisioner):
    """Provisioner for load balancer listeners forwarding to a target group.

    Listeners have no name, so ``find`` lists the listeners of the parent
    load balancer and matches them on identity tags.
    """

    kind = ResourceKind.LISTENER
    service = 'elbv2'
    absent_codes = ('ListenerNotFound', 'LoadBalancerNotFound')

    def find(self, key: NaturalKey, parameters: Dict[str, Any]) -> Optional[str]:
        try:
            response = self._call('describe_listeners', LoadBalancerArn=parameters['load_balancer'])
        except ClientError as e:
            if self._is_absent(e):
                return None
            raise

        arns = [listener['ListenerArn'] for listener in response.get('Listeners', [])]
        for start in range(0, len(arns), DESCRIBE_TAGS_BATCH):
            tags_response = self._call(
                'describe_tags',
                ResourceArns=arns[start:start + DESCRIBE_TAGS_BATCH],
            )
            for description in tags_response.get('TagDescriptions', []):
                tags = self.tag_manager.from_aws_tags(description.get('Tags'))
                if self.tag_manager.matches(key, tags):
                    return description['ResourceArn']
        return None

    def create(self, key: NaturalKey, parameters: Dict[str, Any]) -> str:
        request: Dict[str, Any] = {
            'LoadBalancerArn': parameters['load_balancer'],
            'Protocol': str(parameters['protocol']).upper(),
            'Port': int(parameters['port']),
            'DefaultActions': [{'Type': 'forward', 'TargetGroupArn': parameters['target_group']}],
            'Tags': self._tag_list(key, parameters),
        }
        if parameters.get('certificate_arn'):
            request['Certificates'] = [{'CertificateArn': parameters['certificate_arn']}]
            request['SslPolicy'] = parameters.get('ssl_policy', 'ELBSecurityPolicy-TLS13-1-2-2021-06')

        response = self._call('create_listener', **request)
        arn = response['Listeners'][0]['ListenerArn']
        self.logger.info(
            f"Created {request['Protocol']} listener on port {request['Port']}",
            extra={'logical_name': key.name},
        )
        return arn

    def delete(self, identifier: str) -> None:
        self._ignore_absent('delete_listener', ListenerArn=identifier)
