"""VPC networking provisioners: networks, subnets, gateways and route tables."""

from typing import Any, Dict, List, Optional

from tierstack.plan.models import ResourceKind
from tierstack.tagging.manager import NaturalKey

from .base import AWSProvisioner


class NetworkProvisioner(AWSProvisioner):
    """Provisioner for VPCs."""

    kind = ResourceKind.NETWORK
    absent_codes = ('InvalidVpcID.NotFound',)

    def find(self, key: NaturalKey, parameters: Dict[str, Any]) -> Optional[str]:
        response = self._call('describe_vpcs', Filters=self.tag_manager.tag_filters(key))
        vpcs = response.get('Vpcs', [])
        return vpcs[0]['VpcId'] if vpcs else None

    def create(self, key: NaturalKey, parameters: Dict[str, Any]) -> str:
        """Create a VPC and enable DNS support and hostnames.

        Args:
            key: Natural key of the network
            parameters: ``cidr_block``, optional ``enable_dns_support`` and
                ``enable_dns_hostnames`` (both default true)

        Returns:
            VPC ID
        """
        response = self._call(
            'create_vpc',
            CidrBlock=parameters['cidr_block'],
            TagSpecifications=self._tag_specifications('vpc', key, parameters),
        )
        vpc_id = response['Vpc']['VpcId']

        try:
            self._wait('vpc_available', VpcIds=[vpc_id])
            # One attribute per call is an EC2 API constraint
            for attribute, name in (
                ('EnableDnsSupport', 'enable_dns_support'),
                ('EnableDnsHostnames', 'enable_dns_hostnames'),
            ):
                self._follow_up(
                    'modify_vpc_attribute',
                    VpcId=vpc_id,
                    **{attribute: {'Value': bool(parameters.get(name, True))}}
                )
        except Exception as e:
            self._discard_partial(vpc_id, e)

        self.logger.info(f"Created VPC {vpc_id}", extra={'logical_name': key.name})
        return vpc_id

    def delete(self, identifier: str) -> None:
        self._ignore_absent('delete_vpc', VpcId=identifier)


class SubnetProvisioner(AWSProvisioner):
    """Provisioner for subnets."""

    kind = ResourceKind.SUBNET
    absent_codes = ('InvalidSubnetID.NotFound',)

    def find(self, key: NaturalKey, parameters: Dict[str, Any]) -> Optional[str]:
        response = self._call('describe_subnets', Filters=self.tag_manager.tag_filters(key))
        subnets = response.get('Subnets', [])
        return subnets[0]['SubnetId'] if subnets else None

    def create(self, key: NaturalKey, parameters: Dict[str, Any]) -> str:
        response = self._call(
            'create_subnet',
            VpcId=parameters['network'],
            CidrBlock=parameters['cidr_block'],
            AvailabilityZone=parameters['availability_zone'],
            TagSpecifications=self._tag_specifications('subnet', key, parameters),
        )
        subnet_id = response['Subnet']['SubnetId']

        if parameters.get('map_public_ip'):
            try:
                self._follow_up(
                    'modify_subnet_attribute',
                    SubnetId=subnet_id,
                    MapPublicIpOnLaunch={'Value': True},
                )
            except Exception as e:
                self._discard_partial(subnet_id, e)

        self.logger.info(f"Created subnet {subnet_id}", extra={'logical_name': key.name})
        return subnet_id

    def delete(self, identifier: str) -> None:
        self._ignore_absent('delete_subnet', SubnetId=identifier)


class GatewayProvisioner(AWSProvisioner):
    """Provisioner for internet gateways and NAT gateways.

    ``type: internet`` creates an internet gateway attached to ``network``;
    ``type: nat`` allocates an Elastic IP and creates a NAT gateway in
    ``subnet``. Identifiers tell the two apart on delete (``igw-``/``nat-``);
    an ``eipalloc-`` identifier is an Elastic IP orphaned by a failed NAT create.
    """

    kind = ResourceKind.GATEWAY
    absent_codes = (
        'InvalidInternetGatewayID.NotFound',
        'NatGatewayNotFound',
        'InvalidNatGatewayID.NotFound',
        'InvalidAllocationID.NotFound',
        'Gateway.NotAttached',
    )

    def find(self, key: NaturalKey, parameters: Dict[str, Any]) -> Optional[str]:
        filters = self.tag_manager.tag_filters(key)
        if parameters.get('type') == 'nat':
            response = self._call(
                'describe_nat_gateways',
                Filters=filters + [{'Name': 'state', 'Values': ['pending', 'available']}],
            )
            gateways = response.get('NatGateways', [])
            return gateways[0]['NatGatewayId'] if gateways else None

        response = self._call('describe_internet_gateways', Filters=filters)
        gateways = response.get('InternetGateways', [])
        return gateways[0]['InternetGatewayId'] if gateways else None

    def create(self, key: NaturalKey, parameters: Dict[str, Any]) -> str:
        if parameters.get('type') == 'nat':
            return self._create_nat_gateway(key, parameters)
        return self._create_internet_gateway(key, parameters)

    def _create_internet_gateway(self, key: NaturalKey, parameters: Dict[str, Any]) -> str:
        response = self._call(
            'create_internet_gateway',
            TagSpecifications=self._tag_specifications('internet-gateway', key, parameters),
        )
        igw_id = response['InternetGateway']['InternetGatewayId']

        try:
            self._follow_up(
                'attach_internet_gateway',
                InternetGatewayId=igw_id,
                VpcId=parameters['network'],
            )
        except Exception as e:
            self._discard_partial(igw_id, e)

        self.logger.info(
            f"Created internet gateway {igw_id} attached to {parameters['network']}",
            extra={'logical_name': key.name},
        )
        return igw_id

    def _create_nat_gateway(self, key: NaturalKey, parameters: Dict[str, Any]) -> str:
        address = self._call(
            'allocate_address',
            Domain='vpc',
            TagSpecifications=self._tag_specifications('elastic-ip', key, parameters),
        )
        allocation_id = address['AllocationId']

        try:
            response = self._call(
                'create_nat_gateway',
                SubnetId=parameters['subnet'],
                AllocationId=allocation_id,
                TagSpecifications=self._tag_specifications('natgateway', key, parameters),
            )
        except Exception as e:
            self._discard_partial(allocation_id, e)

        nat_id = response['NatGateway']['NatGatewayId']
        try:
            self._wait('nat_gateway_available', NatGatewayIds=[nat_id])
        except Exception as e:
            self._discard_partial(nat_id, e)

        self.logger.info(
            f"Created NAT gateway {nat_id} in {parameters['subnet']}",
            extra={'logical_name': key.name},
        )
        return nat_id

    def delete(self, identifier: str) -> None:
        if identifier.startswith('nat-'):
            self._delete_nat_gateway(identifier)
        elif identifier.startswith('eipalloc-'):
            self._ignore_absent('release_address', AllocationId=identifier)
        else:
            self._delete_internet_gateway(identifier)

    def _delete_internet_gateway(self, igw_id: str) -> None:
        response = self._ignore_absent('describe_internet_gateways', InternetGatewayIds=[igw_id])
        if response is None:
            return

        for gateway in response.get('InternetGateways', []):
            for attachment in gateway.get('Attachments', []):
                self._ignore_absent(
                    'detach_internet_gateway',
                    InternetGatewayId=igw_id,
                    VpcId=attachment['VpcId'],
                )
        self._ignore_absent('delete_internet_gateway', InternetGatewayId=igw_id)

    def _delete_nat_gateway(self, nat_id: str) -> None:
        response = self._ignore_absent('describe_nat_gateways', NatGatewayIds=[nat_id])
        if response is None:
            return

        allocation_ids: List[str] = []
        for gateway in response.get('NatGateways', []):
            for address in gateway.get('NatGatewayAddresses', []):
                if address.get('AllocationId'):
                    allocation_ids.append(address['AllocationId'])

        self._ignore_absent('delete_nat_gateway', NatGatewayId=nat_id)
        # The Elastic IP stays associated until the gateway is fully deleted
        self._wait('nat_gateway_deleted', NatGatewayIds=[nat_id])

        for allocation_id in allocation_ids:
            self._ignore_absent('release_address', AllocationId=allocation_id)


class RouteTableProvisioner(AWSProvisioner):
    """Provisioner for route tables with their routes and subnet associations.

    Each entry of ``routes`` is ``{destination, target}``; ``destination``
    defaults to ``0.0.0.0/0`` and ``target`` references a Gateway.
    """

    kind = ResourceKind.ROUTE_TABLE
    absent_codes = ('InvalidRouteTableID.NotFound', 'InvalidAssociationID.NotFound')

    def find(self, key: NaturalKey, parameters: Dict[str, Any]) -> Optional[str]:
        response = self._call('describe_route_tables', Filters=self.tag_manager.tag_filters(key))
        tables = response.get('RouteTables', [])
        return tables[0]['RouteTableId'] if tables else None

    def create(self, key: NaturalKey, parameters: Dict[str, Any]) -> str:
        response = self._call(
            'create_route_table',
            VpcId=parameters['network'],
            TagSpecifications=self._tag_specifications('route-table', key, parameters),
        )
        table_id = response['RouteTable']['RouteTableId']

        try:
            for route in parameters.get('routes', []):
                target = route['target']
                target_arg = 'NatGatewayId' if target.startswith('nat-') else 'GatewayId'
                self._follow_up(
                    'create_route',
                    RouteTableId=table_id,
                    DestinationCidrBlock=route.get('destination', '0.0.0.0/0'),
                    **{target_arg: target}
                )
            for subnet_id in parameters.get('subnets', []):
                self._follow_up('associate_route_table', RouteTableId=table_id, SubnetId=subnet_id)
        except Exception as e:
            self._discard_partial(table_id, e)

        self.logger.info(f"Created route table {table_id}", extra={'logical_name': key.name})
        return table_id

    def delete(self, identifier: str) -> None:
        response = self._ignore_absent('describe_route_tables', RouteTableIds=[identifier])
        if response is None:
            return

        for table in response.get('RouteTables', []):
            for association in table.get('Associations', []):
                if not association.get('Main'):
                    self._ignore_absent(
                        'disassociate_route_table',
                        AssociationId=association['RouteTableAssociationId'],
                    )
        self._ignore_absent('delete_route_table', RouteTableId=identifier)
