"""AWS session and client management shared by all provisioners."""

import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError, NoCredentialsError, PartialCredentialsError

from tierstack.utils.errors import ConfigurationError
from tierstack.utils.logging import get_logger

logger = get_logger(__name__)

# Services the three-tier topology is provisioned through
PROVISIONING_SERVICES = ('ec2', 'elbv2', 'autoscaling', 'rds')


@dataclass
class AWSCredentials:
    """Identity the run is acting as."""
    account_id: str
    user_arn: str
    user_id: str
    region: str
    profile: Optional[str] = None


class AWSClientManager:
    """Owns one boto3 session and hands out cached, thread-safe clients.

    boto3 sessions must not create clients from several threads at once, so
    client creation is serialized. Clients themselves are safe to share
    between reconciliation workers.
    """

    def __init__(
        self,
        profile: Optional[str] = None,
        region: Optional[str] = None,
        max_workers: int = 4,
    ):
        """Initialize AWS client manager.

        Args:
            profile: AWS profile name to use
            region: AWS region to use
            max_workers: Concurrent workers that will share each client
        """
        self.profile = profile
        self.region = region
        self._session: Optional[boto3.Session] = None
        self._clients: Dict[str, Any] = {}
        self._credentials: Optional[AWSCredentials] = None
        self._lock = threading.Lock()

        # Waiters poll while other workers call, so leave headroom per worker.
        # Throttling retries happen in RetryStrategy; botocore only covers
        # connection-level errors.
        self.boto_config = Config(
            max_pool_connections=max(10, max_workers * 2),
            retries={'mode': 'standard', 'max_attempts': 3},
            connect_timeout=10,
            read_timeout=60,
        )

    @property
    def session(self) -> boto3.Session:
        """Get or create the boto3 session."""
        with self._lock:
            if self._session is None:
                kwargs = {}
                if self.profile:
                    kwargs['profile_name'] = self.profile
                if self.region:
                    kwargs['region_name'] = self.region

                self._session = boto3.Session(**kwargs)
                logger.info(f"Created AWS session - Region: {self._session.region_name}, "
                            f"Profile: {self.profile or 'default'}")

        return self._session

    def get_client(self, service_name: str):
        """Get the cached client for a service, creating it on first use.

        Args:
            service_name: AWS service name (e.g., 'ec2', 'elbv2')

        Returns:
            Boto3 client for the service
        """
        session = self.session
        with self._lock:
            client = self._clients.get(service_name)
            if client is None:
                client = session.client(service_name, config=self.boto_config)
                self._clients[service_name] = client
                logger.debug(f"Created {service_name} client")
        return client

    def ensure_region(self) -> str:
        """Region resources will be created in.

        Raises:
            ConfigurationError: If neither the configuration nor the profile sets one
        """
        region = self.session.region_name
        if not region:
            raise ConfigurationError(
                "No AWS region configured",
                suggestions=[
                    "Set project.region in tierstack.yaml",
                    "Pass --region or set a region on the AWS profile",
                ],
            )
        return region

    def validate_credentials(self) -> AWSCredentials:
        """Check the credentials with STS and warm up the provisioning clients.

        Returns:
            AWSCredentials with account and user information

        Raises:
            ConfigurationError: If no region is configured
            NoCredentialsError: If no credentials are found
            PartialCredentialsError: If credentials are incomplete
            ClientError: If credentials are invalid
        """
        if self._credentials is not None:
            return self._credentials

        region = self.ensure_region()
        try:
            identity = self.get_client('sts').get_caller_identity()
        except NoCredentialsError:
            logger.error("No AWS credentials found. Configure them with the AWS CLI, "
                         "environment variables or an instance role.")
            raise
        except PartialCredentialsError as e:
            logger.error(f"Incomplete AWS credentials: {e}")
            raise
        except ClientError as e:
            logger.error(f"Failed to validate AWS credentials: {e}")
            raise

        self._credentials = AWSCredentials(
            account_id=identity['Account'],
            user_arn=identity['Arn'],
            user_id=identity['UserId'],
            region=region,
            profile=self.profile,
        )
        for service_name in PROVISIONING_SERVICES:
            self.get_client(service_name)

        logger.info(f"AWS credentials validated - Account: {self._credentials.account_id}, "
                    f"User: {self._credentials.user_arn}, Region: {region}")
        return self._credentials
