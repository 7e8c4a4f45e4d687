"""Compute provisioners: launch templates, auto scaling groups and scaling policies."""

import base64
from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from tierstack.plan.models import ResourceKind
from tierstack.tagging.manager import NaturalKey
from tierstack.utils.retry import error_code

from .base import AWSProvisioner


class LaunchTemplateProvisioner(AWSProvisioner):
    """Provisioner for EC2 launch templates used by the web and app tiers."""

    kind = ResourceKind.LAUNCH_TEMPLATE
    absent_codes = ('InvalidLaunchTemplateId.NotFound', 'InvalidLaunchTemplateName.NotFoundException')

    def find(self, key: NaturalKey, parameters: Dict[str, Any]) -> Optional[str]:
        response = self._call(
            'describe_launch_templates',
            Filters=self.tag_manager.tag_filters(key),
        )
        templates = response.get('LaunchTemplates', [])
        return templates[0]['LaunchTemplateId'] if templates else None

    def create(self, key: NaturalKey, parameters: Dict[str, Any]) -> str:
        """Create a launch template.

        Args:
            key: Natural key of the template
            parameters: ``image_id``, ``instance_type``, optional
                ``security_groups``, ``user_data``, ``key_name`` and
                ``instance_profile``

        Returns:
            Launch template ID
        """
        data: Dict[str, Any] = {
            'ImageId': parameters['image_id'],
            'InstanceType': parameters['instance_type'],
            'TagSpecifications': self._tag_specifications('instance', key, parameters),
        }
        if parameters.get('security_groups'):
            data['SecurityGroupIds'] = list(parameters['security_groups'])
        if parameters.get('user_data'):
            data['UserData'] = base64.b64encode(parameters['user_data'].encode('utf-8')).decode('ascii')
        if parameters.get('key_name'):
            data['KeyName'] = parameters['key_name']
        if parameters.get('instance_profile'):
            data['IamInstanceProfile'] = {'Name': parameters['instance_profile']}

        response = self._call(
            'create_launch_template',
            LaunchTemplateName=self.tag_manager.physical_name(key, max_length=128, lowercase=False),
            LaunchTemplateData=data,
            TagSpecifications=self._tag_specifications('launch-template', key, parameters),
        )
        template_id = response['LaunchTemplate']['LaunchTemplateId']
        self.logger.info(f"Created launch template {template_id}", extra={'logical_name': key.name})
        return template_id

    def delete(self, identifier: str) -> None:
        self._ignore_absent('delete_launch_template', LaunchTemplateId=identifier)


class _AutoScalingProvisioner(AWSProvisioner):
    """Auto Scaling reports missing groups and policies as ``ValidationError``."""

    service = 'autoscaling'

    def _is_absent(self, error: Exception) -> bool:
        if not isinstance(error, ClientError):
            return False
        message = error.response.get('Error', {}).get('Message', '').lower()
        return error_code(error) == 'ValidationError' and 'not found' in message


class ScalingGroupProvisioner(_AutoScalingProvisioner):
    """Provisioner for auto scaling groups, identified by group name."""

    kind = ResourceKind.SCALING_GROUP

    def find(self, key: NaturalKey, parameters: Dict[str, Any]) -> Optional[str]:
        name = self.tag_manager.physical_name(key, max_length=255, lowercase=False)
        response = self._call('describe_auto_scaling_groups', AutoScalingGroupNames=[name])
        for group in response.get('AutoScalingGroups', []):
            if group.get('Status') != 'Delete in progress':
                return group['AutoScalingGroupName']
        return None

    def create(self, key: NaturalKey, parameters: Dict[str, Any]) -> str:
        name = self.tag_manager.physical_name(key, max_length=255, lowercase=False)
        target_groups = list(parameters.get('target_groups', []))
        tags = [
            {
                'ResourceId': name,
                'ResourceType': 'auto-scaling-group',
                'Key': tag['Key'],
                'Value': tag['Value'],
                'PropagateAtLaunch': True,
            }
            for tag in self._tag_list(key, parameters)
        ]

        request: Dict[str, Any] = {
            'AutoScalingGroupName': name,
            'LaunchTemplate': {
                'LaunchTemplateId': parameters['launch_template'],
                'Version': str(parameters.get('launch_template_version', '$Latest')),
            },
            'MinSize': int(parameters['min_size']),
            'MaxSize': int(parameters['max_size']),
            'DesiredCapacity': int(parameters.get('desired_capacity', parameters['min_size'])),
            'VPCZoneIdentifier': ','.join(parameters['subnets']),
            'HealthCheckType': 'ELB' if target_groups else 'EC2',
            'HealthCheckGracePeriod': int(parameters.get('health_check_grace_period', 300)),
            'Tags': tags,
        }
        if target_groups:
            request['TargetGroupARNs'] = target_groups

        self._call('create_auto_scaling_group', **request)
        self.logger.info(
            f"Created auto scaling group {name} "
            f"({request['MinSize']}-{request['MaxSize']}, desired {request['DesiredCapacity']})",
            extra={'logical_name': key.name},
        )
        return name

    def delete(self, identifier: str) -> None:
        if self._ignore_absent(
            'delete_auto_scaling_group',
            AutoScalingGroupName=identifier,
            ForceDelete=True,
        ) is None:
            return
        # Instances must terminate before the subnets and template can go
        self._wait('group_not_exists', AutoScalingGroupNames=[identifier])


class ScalingPolicyProvisioner(_AutoScalingProvisioner):
    """Provisioner for target tracking scaling policies.

    ``metric`` defaults to ``ASGAverageCPUUtilization``.
    """

    kind = ResourceKind.SCALING_POLICY

    def find(self, key: NaturalKey, parameters: Dict[str, Any]) -> Optional[str]:
        name = self.tag_manager.physical_name(key, max_length=255, lowercase=False)
        try:
            response = self._call(
                'describe_policies',
                AutoScalingGroupName=parameters['scaling_group'],
                PolicyNames=[name],
            )
        except ClientError as e:
            if self._is_absent(e):
                return None
            raise
        policies = response.get('ScalingPolicies', [])
        return policies[0]['PolicyARN'] if policies else None

    def create(self, key: NaturalKey, parameters: Dict[str, Any]) -> str:
        name = self.tag_manager.physical_name(key, max_length=255, lowercase=False)
        response = self._call(
            'put_scaling_policy',
            AutoScalingGroupName=parameters['scaling_group'],
            PolicyName=name,
            PolicyType='TargetTrackingScaling',
            TargetTrackingConfiguration={
                'PredefinedMetricSpecification': {
                    'PredefinedMetricType': parameters.get('metric', 'ASGAverageCPUUtilization'),
                },
                'TargetValue': float(parameters['target_value']),
            },
        )
        self.logger.info(f"Created scaling policy {name}", extra={'logical_name': key.name})
        return response['PolicyARN']

    def delete(self, identifier: str) -> None:
        # PolicyName accepts the policy ARN
        self._ignore_absent('delete_policy', PolicyName=identifier)
