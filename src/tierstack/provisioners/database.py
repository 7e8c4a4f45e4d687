"""RDS provisioners for the database tier."""

from typing import Any, Dict, Optional

from botocore.exceptions import ClientError

from tierstack.plan.models import ResourceKind
from tierstack.tagging.manager import NaturalKey

from .base import AWSProvisioner

# RDS instance identifiers are limited to 63 characters
DB_IDENTIFIER_LIMIT = 63


class DatabaseSubnetGroupProvisioner(AWSProvisioner):
    """Provisioner for DB subnet groups, identified by group name."""

    kind = ResourceKind.DATABASE_SUBNET_GROUP
    service = 'rds'
    absent_codes = ('DBSubnetGroupNotFoundFault',)

    def find(self, key: NaturalKey, parameters: Dict[str, Any]) -> Optional[str]:
        name = self.tag_manager.physical_name(key, max_length=255)
        try:
            response = self._call('describe_db_subnet_groups', DBSubnetGroupName=name)
        except ClientError as e:
            if self._is_absent(e):
                return None
            raise
        groups = response.get('DBSubnetGroups', [])
        return groups[0]['DBSubnetGroupName'] if groups else None

    def create(self, key: NaturalKey, parameters: Dict[str, Any]) -> str:
        name = self.tag_manager.physical_name(key, max_length=255)
        self._call(
            'create_db_subnet_group',
            DBSubnetGroupName=name,
            DBSubnetGroupDescription=parameters.get('description', f"Database subnets for {key.name}"),
            SubnetIds=list(parameters['subnets']),
            Tags=self._tag_list(key, parameters),
        )
        self.logger.info(f"Created DB subnet group {name}", extra={'logical_name': key.name})
        return name

    def delete(self, identifier: str) -> None:
        self._ignore_absent('delete_db_subnet_group', DBSubnetGroupName=identifier)


class DatabaseInstanceProvisioner(AWSProvisioner):
    """Provisioner for RDS database instances.

    Without ``master_password`` the master password is generated and kept in
    Secrets Manager by RDS (``ManageMasterUserPassword``).
    """

    kind = ResourceKind.DATABASE_INSTANCE
    service = 'rds'
    absent_codes = ('DBInstanceNotFound', 'DBInstanceNotFoundFault')

    # Instances take several minutes per status change
    wait_delay = 30

    def find(self, key: NaturalKey, parameters: Dict[str, Any]) -> Optional[str]:
        identifier = self.tag_manager.physical_name(key, max_length=DB_IDENTIFIER_LIMIT)
        try:
            response = self._call('describe_db_instances', DBInstanceIdentifier=identifier)
        except ClientError as e:
            if self._is_absent(e):
                return None
            raise
        instances = response.get('DBInstances', [])
        return instances[0]['DBInstanceIdentifier'] if instances else None

    def create(self, key: NaturalKey, parameters: Dict[str, Any]) -> str:
        """Create a database instance and wait until it is available.

        Args:
            key: Natural key of the instance
            parameters: ``subnet_group``, ``engine``, ``instance_class``,
                ``allocated_storage``, ``master_username`` and optional
                ``engine_version``, ``master_password``, ``db_name``,
                ``security_groups``, ``multi_az``, ``backup_retention_days``

        Returns:
            DB instance identifier
        """
        identifier = self.tag_manager.physical_name(key, max_length=DB_IDENTIFIER_LIMIT)
        request: Dict[str, Any] = {
            'DBInstanceIdentifier': identifier,
            'Engine': parameters['engine'],
            'DBInstanceClass': parameters['instance_class'],
            'AllocatedStorage': int(parameters['allocated_storage']),
            'MasterUsername': parameters['master_username'],
            'DBSubnetGroupName': parameters['subnet_group'],
            'MultiAZ': bool(parameters.get('multi_az', False)),
            'PubliclyAccessible': False,
            'StorageEncrypted': bool(parameters.get('storage_encrypted', True)),
            'BackupRetentionPeriod': int(parameters.get('backup_retention_days', 7)),
            'Tags': self._tag_list(key, parameters),
        }
        if parameters.get('engine_version'):
            request['EngineVersion'] = str(parameters['engine_version'])
        if parameters.get('db_name'):
            request['DBName'] = parameters['db_name']
        if parameters.get('security_groups'):
            request['VpcSecurityGroupIds'] = list(parameters['security_groups'])
        if parameters.get('master_password'):
            request['MasterUserPassword'] = parameters['master_password']
        else:
            request['ManageMasterUserPassword'] = True

        self._call('create_db_instance', **request)
        try:
            self._wait('db_instance_available', DBInstanceIdentifier=identifier)
        except Exception as e:
            self._discard_partial(identifier, e)

        self.logger.info(
            f"Created {parameters['engine']} instance {identifier}",
            extra={'logical_name': key.name},
        )
        return identifier

    def delete(self, identifier: str) -> None:
        if self._ignore_absent(
            'delete_db_instance',
            DBInstanceIdentifier=identifier,
            SkipFinalSnapshot=True,
            DeleteAutomatedBackups=True,
        ) is None:
            return
        # The subnet group cannot be deleted while the instance exists
        self._wait('db_instance_deleted', DBInstanceIdentifier=identifier)
