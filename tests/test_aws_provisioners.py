"""Tests for the boto3-backed provisioners, using mocked clients."""

from unittest.mock import MagicMock, patch

import pytest
from botocore.exceptions import ClientError, WaiterError

from tierstack.plan.models import ResourceKind
from tierstack.provisioners import AWS_PROVISIONERS, build_aws_provisioners
from tierstack.provisioners.compute import (
    LaunchTemplateProvisioner,
    ScalingGroupProvisioner,
)
from tierstack.provisioners.database import DatabaseInstanceProvisioner
from tierstack.provisioners.load_balancing import ListenerProvisioner, TargetGroupProvisioner
from tierstack.provisioners.network import (
    GatewayProvisioner,
    NetworkProvisioner,
    RouteTableProvisioner,
)
from tierstack.provisioners.security_group import SecurityGroupProvisioner
from tierstack.tagging.manager import LOGICAL_NAME_TAG, NaturalKey
from tierstack.utils.errors import OrphanedResource
from tierstack.utils.retry import NO_RETRY, RetryStrategy


def client_error(code, message='error', operation='Operation'):
    return ClientError({'Error': {'Code': code, 'Message': message}}, operation)


@pytest.fixture
def client():
    return MagicMock()


@pytest.fixture
def client_manager(client):
    manager = MagicMock()
    manager.get_client.return_value = client
    return manager


def make(provisioner_class, client_manager, tag_manager):
    return provisioner_class(client_manager, tag_manager, retry=NO_RETRY, wait_timeout=60)


def key(kind, name):
    return NaturalKey(kind=kind, name=name, project='shop', environment='test')


class TestBuildAwsProvisioners:

    def test_one_provisioner_per_kind(self, client_manager, tag_manager):
        provisioners = build_aws_provisioners(client_manager, tag_manager, retry=NO_RETRY)

        assert set(provisioners) == set(ResourceKind)
        assert len(AWS_PROVISIONERS) == len(ResourceKind)
        services = {call.args[0] for call in client_manager.get_client.call_args_list}
        assert services == {'ec2', 'elbv2', 'autoscaling', 'rds'}


class TestNetworkProvisioner:

    def test_find_uses_identity_tag_filters(self, client, client_manager, tag_manager):
        client.describe_vpcs.return_value = {'Vpcs': [{'VpcId': 'vpc-123'}]}
        provisioner = make(NetworkProvisioner, client_manager, tag_manager)

        found = provisioner.find(key(ResourceKind.NETWORK, 'vpc'), {})

        assert found == 'vpc-123'
        filters = client.describe_vpcs.call_args.kwargs['Filters']
        assert {'Name': f'tag:{LOGICAL_NAME_TAG}', 'Values': ['vpc']} in filters

    def test_find_returns_none_when_absent(self, client, client_manager, tag_manager):
        client.describe_vpcs.return_value = {'Vpcs': []}
        provisioner = make(NetworkProvisioner, client_manager, tag_manager)

        assert provisioner.find(key(ResourceKind.NETWORK, 'vpc'), {}) is None

    def test_create_tags_waits_and_enables_dns(self, client, client_manager, tag_manager):
        client.create_vpc.return_value = {'Vpc': {'VpcId': 'vpc-123'}}
        provisioner = make(NetworkProvisioner, client_manager, tag_manager)

        vpc_id = provisioner.create(key(ResourceKind.NETWORK, 'vpc'), {'cidr_block': '10.0.0.0/16'})

        assert vpc_id == 'vpc-123'
        request = client.create_vpc.call_args.kwargs
        assert request['CidrBlock'] == '10.0.0.0/16'
        tags = {tag['Key']: tag['Value'] for tag in request['TagSpecifications'][0]['Tags']}
        assert tags[LOGICAL_NAME_TAG] == 'vpc'
        assert tags['Name'] == 'shop-test-vpc'
        client.get_waiter.assert_called_once_with('vpc_available')
        assert client.modify_vpc_attribute.call_count == 2

    def test_waiter_bounded_by_wait_timeout(self, client, client_manager, tag_manager):
        client.create_vpc.return_value = {'Vpc': {'VpcId': 'vpc-123'}}
        provisioner = make(NetworkProvisioner, client_manager, tag_manager)

        provisioner.create(key(ResourceKind.NETWORK, 'vpc'), {'cidr_block': '10.0.0.0/16'})

        config = client.get_waiter.return_value.wait.call_args.kwargs['WaiterConfig']
        assert config == {'Delay': 15, 'MaxAttempts': 4}

    def test_failed_follow_up_discards_partial_vpc(self, client, client_manager, tag_manager):
        client.create_vpc.return_value = {'Vpc': {'VpcId': 'vpc-123'}}
        client.modify_vpc_attribute.side_effect = client_error('UnauthorizedOperation')
        provisioner = make(NetworkProvisioner, client_manager, tag_manager)

        with pytest.raises(ClientError):
            provisioner.create(key(ResourceKind.NETWORK, 'vpc'), {'cidr_block': '10.0.0.0/16'})

        client.delete_vpc.assert_called_once_with(VpcId='vpc-123')

    def test_delete_of_absent_vpc_succeeds(self, client, client_manager, tag_manager):
        client.delete_vpc.side_effect = client_error('InvalidVpcID.NotFound')
        provisioner = make(NetworkProvisioner, client_manager, tag_manager)

        provisioner.delete('vpc-123')

    def test_delete_propagates_other_errors(self, client, client_manager, tag_manager):
        client.delete_vpc.side_effect = client_error('DependencyViolation')
        provisioner = make(NetworkProvisioner, client_manager, tag_manager)

        with pytest.raises(ClientError):
            provisioner.delete('vpc-123')

    @patch('tierstack.utils.retry.time.sleep')
    def test_follow_up_retries_fresh_id_not_found(self, mock_sleep, client, client_manager, tag_manager):
        client.create_vpc.return_value = {'Vpc': {'VpcId': 'vpc-123'}}
        client.modify_vpc_attribute.side_effect = [client_error('InvalidVpcID.NotFound'), {}, {}]
        provisioner = NetworkProvisioner(client_manager, tag_manager, retry=RetryStrategy(max_retries=2, jitter=False))

        assert provisioner.create(key(ResourceKind.NETWORK, 'vpc'), {'cidr_block': '10.0.0.0/16'}) == 'vpc-123'

        assert client.modify_vpc_attribute.call_count == 3
        client.delete_vpc.assert_not_called()

    @patch('tierstack.utils.retry.time.sleep')
    def test_delete_retries_dependency_violation(self, mock_sleep, client, client_manager, tag_manager):
        client.delete_vpc.side_effect = [client_error('DependencyViolation'), {}]
        provisioner = NetworkProvisioner(client_manager, tag_manager, retry=RetryStrategy(max_retries=2, jitter=False))

        provisioner.delete('vpc-123')

        assert client.delete_vpc.call_count == 2
        mock_sleep.assert_called_once_with(1.0)


class TestGatewayProvisioner:

    def test_internet_gateway_is_attached(self, client, client_manager, tag_manager):
        client.create_internet_gateway.return_value = {'InternetGateway': {'InternetGatewayId': 'igw-1'}}
        provisioner = make(GatewayProvisioner, client_manager, tag_manager)

        igw_id = provisioner.create(
            key(ResourceKind.GATEWAY, 'igw'), {'type': 'internet', 'network': 'vpc-1'},
        )

        assert igw_id == 'igw-1'
        client.attach_internet_gateway.assert_called_once_with(InternetGatewayId='igw-1', VpcId='vpc-1')

    def test_nat_gateway_releases_address_when_create_fails(self, client, client_manager, tag_manager):
        client.allocate_address.return_value = {'AllocationId': 'eipalloc-1'}
        client.create_nat_gateway.side_effect = client_error('InvalidSubnet')
        provisioner = make(GatewayProvisioner, client_manager, tag_manager)

        with pytest.raises(ClientError):
            provisioner.create(key(ResourceKind.GATEWAY, 'nat'), {'type': 'nat', 'subnet': 'subnet-1'})

        client.release_address.assert_called_once_with(AllocationId='eipalloc-1')

    def test_nat_gateway_reports_address_it_could_not_release(self, client, client_manager, tag_manager):
        client.allocate_address.return_value = {'AllocationId': 'eipalloc-1'}
        client.create_nat_gateway.side_effect = client_error('InvalidSubnet')
        client.release_address.side_effect = client_error('AuthFailure')
        provisioner = make(GatewayProvisioner, client_manager, tag_manager)

        with pytest.raises(OrphanedResource) as exc_info:
            provisioner.create(key(ResourceKind.GATEWAY, 'nat'), {'type': 'nat', 'subnet': 'subnet-1'})

        assert exc_info.value.identifier == 'eipalloc-1'
        assert isinstance(exc_info.value.cause, ClientError)

    def test_nat_wait_timeout_with_failed_cleanup_reports_orphan(self, client, client_manager, tag_manager):
        client.allocate_address.return_value = {'AllocationId': 'eipalloc-1'}
        client.create_nat_gateway.return_value = {'NatGateway': {'NatGatewayId': 'nat-1'}}
        client.get_waiter.return_value.wait.side_effect = WaiterError(
            'NatGatewayAvailable', 'Max attempts exceeded', {},
        )
        client.describe_nat_gateways.side_effect = client_error('UnauthorizedOperation')
        provisioner = make(GatewayProvisioner, client_manager, tag_manager)

        with pytest.raises(OrphanedResource) as exc_info:
            provisioner.create(key(ResourceKind.GATEWAY, 'nat'), {'type': 'nat', 'subnet': 'subnet-1'})

        assert exc_info.value.identifier == 'nat-1'
        assert isinstance(exc_info.value.cause, WaiterError)
        assert 'partially created nat-1 could not be removed' in exc_info.value.message
        client.delete_nat_gateway.assert_not_called()

    def test_delete_orphaned_address(self, client, client_manager, tag_manager):
        provisioner = make(GatewayProvisioner, client_manager, tag_manager)

        provisioner.delete('eipalloc-1')

        client.release_address.assert_called_once_with(AllocationId='eipalloc-1')
        client.describe_nat_gateways.assert_not_called()
        client.describe_internet_gateways.assert_not_called()

    def test_delete_detaches_internet_gateway(self, client, client_manager, tag_manager):
        client.describe_internet_gateways.return_value = {
            'InternetGateways': [{'Attachments': [{'VpcId': 'vpc-1'}]}],
        }
        provisioner = make(GatewayProvisioner, client_manager, tag_manager)

        provisioner.delete('igw-1')

        client.detach_internet_gateway.assert_called_once_with(InternetGatewayId='igw-1', VpcId='vpc-1')
        client.delete_internet_gateway.assert_called_once_with(InternetGatewayId='igw-1')

    def test_delete_nat_gateway_releases_addresses(self, client, client_manager, tag_manager):
        client.describe_nat_gateways.return_value = {
            'NatGateways': [{'NatGatewayAddresses': [{'AllocationId': 'eipalloc-1'}]}],
        }
        provisioner = make(GatewayProvisioner, client_manager, tag_manager)

        provisioner.delete('nat-1')

        client.delete_nat_gateway.assert_called_once_with(NatGatewayId='nat-1')
        client.get_waiter.assert_called_once_with('nat_gateway_deleted')
        client.release_address.assert_called_once_with(AllocationId='eipalloc-1')


class TestRouteTableProvisioner:

    def test_routes_and_associations(self, client, client_manager, tag_manager):
        client.create_route_table.return_value = {'RouteTable': {'RouteTableId': 'rtb-1'}}
        provisioner = make(RouteTableProvisioner, client_manager, tag_manager)

        provisioner.create(key(ResourceKind.ROUTE_TABLE, 'routes'), {
            'network': 'vpc-1',
            'routes': [{'target': 'igw-1'}, {'destination': '10.1.0.0/16', 'target': 'nat-1'}],
            'subnets': ['subnet-1', 'subnet-2'],
        })

        assert client.create_route.call_args_list[0].kwargs == {
            'RouteTableId': 'rtb-1', 'DestinationCidrBlock': '0.0.0.0/0', 'GatewayId': 'igw-1',
        }
        assert client.create_route.call_args_list[1].kwargs['NatGatewayId'] == 'nat-1'
        assert client.associate_route_table.call_count == 2

    def test_delete_disassociates_non_main(self, client, client_manager, tag_manager):
        client.describe_route_tables.return_value = {'RouteTables': [{'Associations': [
            {'RouteTableAssociationId': 'rtbassoc-1', 'Main': False},
            {'RouteTableAssociationId': 'rtbassoc-main', 'Main': True},
        ]}]}
        provisioner = make(RouteTableProvisioner, client_manager, tag_manager)

        provisioner.delete('rtb-1')

        client.disassociate_route_table.assert_called_once_with(AssociationId='rtbassoc-1')
        client.delete_route_table.assert_called_once_with(RouteTableId='rtb-1')


class TestSecurityGroupProvisioner:

    def test_ip_permissions(self):
        permissions = SecurityGroupProvisioner.ip_permissions([
            {'protocol': 'tcp', 'port': 80, 'cidr': '0.0.0.0/0'},
            {'protocol': 'tcp', 'from_port': 8000, 'to_port': 8100, 'source_group': 'sg-web'},
            {'protocol': 'tcp', 'port': 5432, 'source_group': 'self', 'description': 'peers'},
            {'protocol': 'all', 'cidr': '10.0.0.0/8'},
        ], 'sg-new')

        assert permissions == [
            {'IpProtocol': 'tcp', 'FromPort': 80, 'ToPort': 80, 'IpRanges': [{'CidrIp': '0.0.0.0/0'}]},
            {'IpProtocol': 'tcp', 'FromPort': 8000, 'ToPort': 8100, 'UserIdGroupPairs': [{'GroupId': 'sg-web'}]},
            {
                'IpProtocol': 'tcp', 'FromPort': 5432, 'ToPort': 5432,
                'UserIdGroupPairs': [{'GroupId': 'sg-new', 'Description': 'peers'}],
            },
            {'IpProtocol': '-1', 'IpRanges': [{'CidrIp': '10.0.0.0/8'}]},
        ]

    def test_create_authorizes_ingress(self, client, client_manager, tag_manager):
        client.create_security_group.return_value = {'GroupId': 'sg-1'}
        provisioner = make(SecurityGroupProvisioner, client_manager, tag_manager)

        provisioner.create(key(ResourceKind.SECURITY_GROUP, 'web-sg'), {
            'network': 'vpc-1',
            'description': 'web tier',
            'ingress': [{'protocol': 'tcp', 'port': 443, 'cidr': '0.0.0.0/0'}],
        })

        assert client.create_security_group.call_args.kwargs['GroupName'] == 'shop-test-web-sg'
        client.authorize_security_group_ingress.assert_called_once()
        client.revoke_security_group_egress.assert_not_called()

    def test_explicit_egress_replaces_default(self, client, client_manager, tag_manager):
        client.create_security_group.return_value = {'GroupId': 'sg-1'}
        client.revoke_security_group_egress.side_effect = client_error('InvalidPermission.NotFound')
        provisioner = make(SecurityGroupProvisioner, client_manager, tag_manager)

        provisioner.create(key(ResourceKind.SECURITY_GROUP, 'db-sg'), {
            'network': 'vpc-1',
            'description': 'data tier',
            'egress': [{'protocol': 'tcp', 'port': 443, 'cidr': '10.0.0.0/16'}],
        })

        client.authorize_security_group_egress.assert_called_once()

    def test_failed_ingress_discards_group(self, client, client_manager, tag_manager):
        client.create_security_group.return_value = {'GroupId': 'sg-1'}
        client.authorize_security_group_ingress.side_effect = client_error('InvalidPermission.Malformed')
        provisioner = make(SecurityGroupProvisioner, client_manager, tag_manager)

        with pytest.raises(ClientError):
            provisioner.create(key(ResourceKind.SECURITY_GROUP, 'web-sg'), {
                'network': 'vpc-1',
                'description': 'web tier',
                'ingress': [{'protocol': 'tcp', 'port': 443, 'cidr': 'bad'}],
            })

        client.delete_security_group.assert_called_once_with(GroupId='sg-1')


class TestLoadBalancingProvisioners:

    def test_target_group_not_found_is_absent(self, client, client_manager, tag_manager):
        client.describe_target_groups.side_effect = client_error('TargetGroupNotFound')
        provisioner = make(TargetGroupProvisioner, client_manager, tag_manager)

        assert provisioner.find(key(ResourceKind.TARGET_GROUP, 'app-tg'), {}) is None

    def test_target_group_name_fits_limit(self, client, client_manager, tag_manager):
        client.create_target_group.return_value = {'TargetGroups': [{'TargetGroupArn': 'arn:tg'}]}
        provisioner = make(TargetGroupProvisioner, client_manager, tag_manager)

        arn = provisioner.create(
            key(ResourceKind.TARGET_GROUP, 'application-tier-target-group'),
            {'network': 'vpc-1', 'port': 8080, 'protocol': 'http'},
        )

        assert arn == 'arn:tg'
        request = client.create_target_group.call_args.kwargs
        assert len(request['Name']) <= 32
        assert request['Protocol'] == 'HTTP'
        assert request['HealthCheckPath'] == '/'

    def test_listener_found_by_tags(self, client, client_manager, tag_manager):
        listener_key = key(ResourceKind.LISTENER, 'http')
        client.describe_listeners.return_value = {
            'Listeners': [{'ListenerArn': 'arn:other'}, {'ListenerArn': 'arn:http'}],
        }
        client.describe_tags.return_value = {'TagDescriptions': [
            {'ResourceArn': 'arn:other', 'Tags': []},
            {
                'ResourceArn': 'arn:http',
                'Tags': tag_manager.to_aws_tags(tag_manager.identity_tags(listener_key)),
            },
        ]}
        provisioner = make(ListenerProvisioner, client_manager, tag_manager)

        assert provisioner.find(listener_key, {'load_balancer': 'arn:lb'}) == 'arn:http'

    def test_listener_forwards_to_target_group(self, client, client_manager, tag_manager):
        client.create_listener.return_value = {'Listeners': [{'ListenerArn': 'arn:http'}]}
        provisioner = make(ListenerProvisioner, client_manager, tag_manager)

        provisioner.create(key(ResourceKind.LISTENER, 'http'), {
            'load_balancer': 'arn:lb', 'target_group': 'arn:tg', 'port': 80, 'protocol': 'http',
        })

        request = client.create_listener.call_args.kwargs
        assert request['DefaultActions'] == [{'Type': 'forward', 'TargetGroupArn': 'arn:tg'}]
        assert 'Certificates' not in request


class TestComputeProvisioners:

    def test_launch_template_encodes_user_data(self, client, client_manager, tag_manager):
        client.create_launch_template.return_value = {'LaunchTemplate': {'LaunchTemplateId': 'lt-1'}}
        provisioner = make(LaunchTemplateProvisioner, client_manager, tag_manager)

        provisioner.create(key(ResourceKind.LAUNCH_TEMPLATE, 'app-lt'), {
            'image_id': 'ami-1', 'instance_type': 't3.small', 'user_data': '#!/bin/sh\n',
        })

        data = client.create_launch_template.call_args.kwargs['LaunchTemplateData']
        assert data['UserData'] == 'IyEvYmluL3NoCg=='

    def test_scaling_group_request(self, client, client_manager, tag_manager):
        provisioner = make(ScalingGroupProvisioner, client_manager, tag_manager)

        name = provisioner.create(key(ResourceKind.SCALING_GROUP, 'app-asg'), {
            'launch_template': 'lt-1',
            'subnets': ['subnet-1', 'subnet-2'],
            'target_groups': ['arn:tg'],
            'min_size': 2,
            'max_size': 4,
        })

        assert name == 'shop-test-app-asg'
        request = client.create_auto_scaling_group.call_args.kwargs
        assert request['VPCZoneIdentifier'] == 'subnet-1,subnet-2'
        assert request['DesiredCapacity'] == 2
        assert request['HealthCheckType'] == 'ELB'
        assert all(tag['PropagateAtLaunch'] for tag in request['Tags'])

    def test_scaling_group_being_deleted_is_not_found(self, client, client_manager, tag_manager):
        client.describe_auto_scaling_groups.return_value = {'AutoScalingGroups': [
            {'AutoScalingGroupName': 'shop-test-app-asg', 'Status': 'Delete in progress'},
        ]}
        provisioner = make(ScalingGroupProvisioner, client_manager, tag_manager)

        assert provisioner.find(key(ResourceKind.SCALING_GROUP, 'app-asg'), {}) is None

    def test_delete_of_missing_group_succeeds(self, client, client_manager, tag_manager):
        client.delete_auto_scaling_group.side_effect = client_error(
            'ValidationError', 'AutoScalingGroup name not found',
        )
        provisioner = make(ScalingGroupProvisioner, client_manager, tag_manager)

        provisioner.delete('shop-test-app-asg')

        client.get_waiter.assert_not_called()


class TestDatabaseProvisioners:

    def test_instance_waits_until_available(self, client, client_manager, tag_manager):
        provisioner = make(DatabaseInstanceProvisioner, client_manager, tag_manager)

        identifier = provisioner.create(key(ResourceKind.DATABASE_INSTANCE, 'db'), {
            'subnet_group': 'shop-test-db-subnets',
            'engine': 'postgres',
            'instance_class': 'db.t3.micro',
            'allocated_storage': 20,
            'master_username': 'admin',
        })

        assert identifier == 'shop-test-db'
        request = client.create_db_instance.call_args.kwargs
        assert request['ManageMasterUserPassword'] is True
        assert request['PubliclyAccessible'] is False
        client.get_waiter.assert_called_once_with('db_instance_available')
        config = client.get_waiter.return_value.wait.call_args.kwargs['WaiterConfig']
        assert config == {'Delay': 30, 'MaxAttempts': 2}

    def test_wait_failure_discards_instance(self, client, client_manager, tag_manager):
        client.get_waiter.return_value.wait.side_effect = WaiterError(
            'DBInstanceAvailable', 'Max attempts exceeded', {},
        )
        provisioner = make(DatabaseInstanceProvisioner, client_manager, tag_manager)

        with pytest.raises(WaiterError):
            provisioner.create(key(ResourceKind.DATABASE_INSTANCE, 'db'), {
                'subnet_group': 'g', 'engine': 'postgres', 'instance_class': 'db.t3.micro',
                'allocated_storage': 20, 'master_username': 'admin',
            })

        client.delete_db_instance.assert_called_once()

    def test_missing_instance_is_absent(self, client, client_manager, tag_manager):
        client.describe_db_instances.side_effect = client_error('DBInstanceNotFound')
        provisioner = make(DatabaseInstanceProvisioner, client_manager, tag_manager)

        assert provisioner.find(key(ResourceKind.DATABASE_INSTANCE, 'db'), {}) is None
