"""Base provisioner interface and the shared AWS provisioner plumbing."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from botocore.exceptions import ClientError

from tierstack.plan.models import ResourceKind
from tierstack.tagging.manager import NaturalKey, TagManager
from tierstack.utils.errors import OrphanedResource
from tierstack.utils.logging import get_logger
from tierstack.utils.retry import RetryStrategy, error_code


class BaseProvisioner(ABC):
    """Cloud provider collaborator for one resource kind.

    ``find`` and ``create`` receive parameters whose ``ref(...)`` values have
    already been replaced by the identifiers of the referenced resources.
    """

    kind: ResourceKind

    @abstractmethod
    def find(self, key: NaturalKey, parameters: Dict[str, Any]) -> Optional[str]:
        """Look up an existing resource by natural key.

        Args:
            key: Natural key of the resource
            parameters: Substituted parameters

        Returns:
            Identifier of the existing resource, or None if absent
        """
        pass

    @abstractmethod
    def create(self, key: NaturalKey, parameters: Dict[str, Any]) -> str:
        """Create the resource.

        Args:
            key: Natural key of the resource
            parameters: Substituted parameters

        Returns:
            Identifier assigned by the provider
        """
        pass

    @abstractmethod
    def delete(self, identifier: str) -> None:
        """Delete the resource.

        Deleting a resource that no longer exists succeeds.

        Args:
            identifier: Identifier returned by ``find`` or ``create``
        """
        pass


class AWSProvisioner(BaseProvisioner):
    """Base class for provisioners backed by a boto3 client."""

    service: str = 'ec2'

    # Error codes meaning the resource is already gone
    absent_codes: Tuple[str, ...] = ()

    # Error codes a delete may hit while a dependent is still being torn down
    busy_codes: Tuple[str, ...] = ('DependencyViolation',)

    # Seconds between waiter polls
    wait_delay: int = 15

    def __init__(
        self,
        client_manager,
        tag_manager: TagManager,
        retry: Optional[RetryStrategy] = None,
        wait_timeout: int = 900,
    ):
        """Initialize provisioner.

        Args:
            client_manager: AWSClientManager (or anything with ``get_client``)
            tag_manager: Tag manager of the project environment
            retry: Retry strategy for transient AWS errors
            wait_timeout: Upper bound in seconds for waiting on slow resources
        """
        self.client = client_manager.get_client(self.service)
        self.tag_manager = tag_manager
        self.retry = retry or RetryStrategy()
        self.wait_timeout = wait_timeout
        self.logger = get_logger(f"{__name__}.{type(self).__name__}")

    def _call(self, operation: str, retry_on: Tuple[str, ...] = (), **kwargs) -> Dict[str, Any]:
        """Call a client operation with retries."""
        return self.retry.execute_with_retry(getattr(self.client, operation), retry_on=retry_on, **kwargs)

    def _follow_up(self, operation: str, **kwargs) -> Dict[str, Any]:
        """Call an operation on a resource created moments ago.

        EC2 can report a fresh id as NotFound for a short while, so those
        codes are retried here instead of meaning "absent".
        """
        return self._call(operation, retry_on=self.absent_codes, **kwargs)

    def _wait(self, waiter_name: str, **kwargs) -> None:
        """Block on a boto3 waiter bounded by ``wait_timeout``."""
        waiter = self.client.get_waiter(waiter_name)
        max_attempts = max(1, self.wait_timeout // self.wait_delay)
        self.logger.debug(f"Waiting on {waiter_name} (up to {self.wait_timeout}s)")
        waiter.wait(
            WaiterConfig={'Delay': self.wait_delay, 'MaxAttempts': max_attempts},
            **kwargs
        )

    def _tags(self, key: NaturalKey, parameters: Dict[str, Any]) -> Dict[str, str]:
        return self.tag_manager.generate_tags(key, parameters.get('tags'))

    def _tag_list(self, key: NaturalKey, parameters: Dict[str, Any]) -> List[Dict[str, str]]:
        return self.tag_manager.to_aws_tags(self._tags(key, parameters))

    def _tag_specifications(
        self,
        resource_type: str,
        key: NaturalKey,
        parameters: Dict[str, Any],
    ) -> List[Dict[str, Any]]:
        """EC2-style ``TagSpecifications`` for a create call."""
        return [{'ResourceType': resource_type, 'Tags': self._tag_list(key, parameters)}]

    def _is_absent(self, error: Exception) -> bool:
        return isinstance(error, ClientError) and error_code(error) in self.absent_codes

    def _ignore_absent(self, operation: str, **kwargs) -> Optional[Dict[str, Any]]:
        """Call an operation, treating "not found" errors as success.

        Used for teardown, so dependency races are retried as well.
        """
        try:
            return self._call(operation, retry_on=self.busy_codes, **kwargs)
        except ClientError as e:
            if self._is_absent(e):
                self.logger.debug(f"{operation}: resource already absent ({error_code(e)})")
                return None
            raise

    def _discard_partial(self, identifier: str, error: Exception) -> None:
        """Delete a resource whose post-create steps failed, then re-raise.

        The caller never learns the identifier of a resource whose create
        raised, so it is removed here instead of leaking.

        Raises:
            OrphanedResource: If the delete fails too, carrying ``identifier``
        """
        self.logger.warning(f"Create of {identifier} failed after the resource was made: {error}")
        try:
            self.delete(identifier)
        except Exception as cleanup_error:
            self.logger.error(f"Could not remove partially created {identifier}: {cleanup_error}")
            raise OrphanedResource(identifier, error, cleanup_error) from error
        raise error
