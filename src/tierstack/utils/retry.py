"""Backoff and retry of transient AWS errors."""

import random
import time
from typing import Callable, FrozenSet, Iterable, TypeVar

from botocore.exceptions import ClientError, EndpointConnectionError

from tierstack.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar('T')

# Error codes AWS returns when a call may succeed unchanged a moment later
TRANSIENT_ERROR_CODES = frozenset({
    'RequestTimeout',
    'ServiceUnavailable',
    'Unavailable',
    'ThrottlingException',
    'Throttling',
    'RequestLimitExceeded',
    'RequestThrottled',
    'TooManyRequestsException',
    'InternalError',
    'InternalFailure',
})

TRANSIENT_EXCEPTIONS = (
    ConnectionError,
    TimeoutError,
    EndpointConnectionError,
)


def error_code(error: Exception) -> str:
    """AWS error code of a ClientError, or '' for anything else."""
    if isinstance(error, ClientError):
        return error.response.get('Error', {}).get('Code', '')
    return ''


def describe_error(error: Exception) -> str:
    if isinstance(error, ClientError):
        details = error.response.get('Error', {})
        return f"{details.get('Code', 'Unknown')}: {details.get('Message', str(error))}"
    return f"{type(error).__name__}: {error}"


class RetryStrategy:
    """Exponential backoff for calls that fail transiently.

    Besides throttling and service hiccups, callers may name extra error
    codes per call. Provisioners use this for EC2 eventual consistency
    (a just-created id reported as NotFound) and for deletes that race the
    teardown of a dependent (DependencyViolation).
    """

    def __init__(
        self,
        max_retries: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        jitter: bool = True,
        retryable_codes: Iterable[str] = (),
    ):
        """Initialize retry strategy.

        Args:
            max_retries: Retries after the first attempt
            base_delay: Delay in seconds before the first retry, doubled per retry
            max_delay: Upper bound in seconds for a single delay
            jitter: Whether to add up to 10% random jitter to each delay
            retryable_codes: Error codes retried on every call in addition to the transient ones
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.jitter = jitter
        self.retryable_codes: FrozenSet[str] = TRANSIENT_ERROR_CODES | frozenset(retryable_codes)

    def should_retry(self, error: Exception, attempt: int, extra_codes: Iterable[str] = ()) -> bool:
        """Whether a failed attempt is worth repeating.

        Args:
            error: Exception raised by the attempt
            attempt: Number of the failed attempt (0-indexed)
            extra_codes: Error codes retryable for this call only
        """
        if attempt >= self.max_retries:
            return False
        if isinstance(error, TRANSIENT_EXCEPTIONS):
            return True
        code = error_code(error)
        return bool(code) and (code in self.retryable_codes or code in extra_codes)

    def get_delay(self, attempt: int) -> float:
        """Seconds to sleep after failed attempt number ``attempt``."""
        delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        if self.jitter:
            delay += random.uniform(0, delay * 0.1)
        return delay

    def execute_with_retry(
        self,
        func: Callable[..., T],
        *args,
        retry_on: Iterable[str] = (),
        **kwargs
    ) -> T:
        """Call ``func`` until it succeeds or fails for good.

        Args:
            func: Callable to invoke
            *args: Positional arguments for ``func``
            retry_on: Error codes retryable for this call only
            **kwargs: Keyword arguments for ``func``

        Returns:
            What ``func`` returns

        Raises:
            The last exception once it is not retryable or retries are exhausted
        """
        extra_codes = frozenset(retry_on)
        name = getattr(func, '__name__', 'operation')

        for attempt in range(self.max_retries + 1):
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                if not self.should_retry(e, attempt, extra_codes):
                    if attempt:
                        logger.debug(f"{name} gave up after {attempt + 1} attempts: {describe_error(e)}")
                    raise
                delay = self.get_delay(attempt)
                logger.warning(
                    f"{name} attempt {attempt + 1}/{self.max_retries + 1} failed "
                    f"({describe_error(e)}), retrying in {delay:.2f}s"
                )
                time.sleep(delay)
                continue

            if attempt:
                logger.info(f"{name} succeeded after {attempt} retries")
            return result


# Strategy that never retries, for tests and simulations
NO_RETRY = RetryStrategy(max_retries=0)
