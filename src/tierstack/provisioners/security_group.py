"""Security group provisioner with tier-to-tier ingress rules."""

from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from tierstack.plan.models import ResourceKind
from tierstack.tagging.manager import NaturalKey
from tierstack.utils.retry import error_code

from .base import AWSProvisioner


class SecurityGroupProvisioner(AWSProvisioner):
    """Provisioner for VPC security groups.

    Rules in ``ingress`` and ``egress`` look like::

        {protocol: tcp, port: 443, cidr: 0.0.0.0/0}
        {protocol: tcp, from_port: 8000, to_port: 8100, source_group: ref(web-sg)}
        {protocol: tcp, port: 5432, source_group: self}

    When ``egress`` is given, the default allow-all egress rule is replaced.
    """

    kind = ResourceKind.SECURITY_GROUP
    absent_codes = ('InvalidGroup.NotFound', 'InvalidGroupId.NotFound')

    def find(self, key: NaturalKey, parameters: Dict[str, Any]) -> Optional[str]:
        response = self._call(
            'describe_security_groups',
            Filters=self.tag_manager.tag_filters(key),
        )
        groups = response.get('SecurityGroups', [])
        return groups[0]['GroupId'] if groups else None

    def create(self, key: NaturalKey, parameters: Dict[str, Any]) -> str:
        """Create a security group and authorize its rules.

        Args:
            key: Natural key of the group
            parameters: ``network``, ``description``, optional ``ingress``
                and ``egress`` rule lists

        Returns:
            Security group ID
        """
        response = self._call(
            'create_security_group',
            GroupName=self.tag_manager.physical_name(key, max_length=255, lowercase=False),
            Description=parameters['description'],
            VpcId=parameters['network'],
            TagSpecifications=self._tag_specifications('security-group', key, parameters),
        )
        sg_id = response['GroupId']

        try:
            ingress = self.ip_permissions(parameters.get('ingress', []), sg_id)
            if ingress:
                self._follow_up('authorize_security_group_ingress', GroupId=sg_id, IpPermissions=ingress)

            if 'egress' in parameters:
                self._revoke_default_egress(sg_id)
                egress = self.ip_permissions(parameters['egress'], sg_id)
                if egress:
                    self._follow_up('authorize_security_group_egress', GroupId=sg_id, IpPermissions=egress)
        except Exception as e:
            self._discard_partial(sg_id, e)

        self.logger.info(
            f"Created security group {sg_id} with {len(parameters.get('ingress', []))} ingress rule(s)",
            extra={'logical_name': key.name},
        )
        return sg_id

    def delete(self, identifier: str) -> None:
        self._ignore_absent('delete_security_group', GroupId=identifier)

    def _revoke_default_egress(self, sg_id: str) -> None:
        try:
            self._follow_up(
                'revoke_security_group_egress',
                GroupId=sg_id,
                IpPermissions=[{'IpProtocol': '-1', 'IpRanges': [{'CidrIp': '0.0.0.0/0'}]}],
            )
        except ClientError as e:
            # Already absent when the account has no default egress rule
            if error_code(e) != 'InvalidPermission.NotFound':
                raise

    @staticmethod
    def ip_permissions(rules: List[Dict[str, Any]], group_id: str) -> List[Dict[str, Any]]:
        """Translate rule mappings into EC2 ``IpPermissions``.

        Args:
            rules: Rule mappings with substituted references
            group_id: ID of the group being created, used for ``source_group: self``

        Returns:
            IpPermissions list
        """
        permissions = []
        for rule in rules:
            protocol = str(rule.get('protocol', 'tcp')).lower()
            if protocol in ('all', '-1'):
                protocol = '-1'

            permission: Dict[str, Any] = {'IpProtocol': protocol}
            if protocol != '-1':
                from_port = rule.get('from_port', rule.get('port'))
                to_port = rule.get('to_port', from_port)
                if from_port is not None:
                    permission['FromPort'] = int(from_port)
                    permission['ToPort'] = int(to_port)

            description = rule.get('description')
            if 'cidr' in rule:
                ip_range = {'CidrIp': rule['cidr']}
                if description:
                    ip_range['Description'] = description
                permission['IpRanges'] = [ip_range]
            if 'source_group' in rule:
                source = rule['source_group']
                pair = {'GroupId': group_id if source == 'self' else source}
                if description:
                    pair['Description'] = description
                permission['UserIdGroupPairs'] = [pair]

            permissions.append(permission)
        return permissions
