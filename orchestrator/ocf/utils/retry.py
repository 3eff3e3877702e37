"""
Retry Strategy for Cluster, Registry and Runtime Calls

Implements bounded retry logic using the tenacity library so transient
failures (network timeouts, rate limits, a containerd socket that is not
up yet, an API server rolling over) never reach the caller directly.

Conflicts and permanent rejections are never retried.
"""

from tenacity import (
    AsyncRetrying,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception,
    before_sleep_log,
)
import asyncio
import logging

import httpx
from botocore.exceptions import ConnectionError as BotoConnectionError
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from ..errors import OcfError, TransientError, classify_api_exception

logger = logging.getLogger(__name__)


# Transient errors raised by libraries underneath us
_RETRYABLE_EXCEPTION_TYPES = (
    ConnectionError,       # Network issues
    TimeoutError,          # Request timeouts
    asyncio.TimeoutError,
    httpx.TransportError,  # Registry unreachable
    Urllib3HTTPError,      # Kubernetes client transport
    BotoConnectionError,   # ECR endpoint unreachable
)

# Non-retryable errors even if they're subclasses of retryable ones
_NON_RETRYABLE_EXCEPTION_TYPES = (
    FileNotFoundError,
    PermissionError,
)


def is_retryable_error(exception: BaseException) -> bool:
    """
    Check if an exception should trigger a retry.

    Args:
        exception: The exception to check

    Returns:
        True if the exception is retryable, False otherwise

    Example:
        >>> is_retryable_error(ConnectionError())
        True
        >>> is_retryable_error(ValueError("bad param"))
        False
        >>> is_retryable_error(ApiException(status=503))
        True
        >>> is_retryable_error(ApiException(status=409))
        False
    """
    if isinstance(exception, _NON_RETRYABLE_EXCEPTION_TYPES):
        return False
    if isinstance(exception, OcfError):
        return isinstance(exception, TransientError)
    if isinstance(exception, ApiException):
        return isinstance(classify_api_exception(exception), TransientError)
    return isinstance(exception, _RETRYABLE_EXCEPTION_TYPES)


def retrying(
    max_attempts: int = 3,
    min_wait: float = 1.0,
    max_wait: float = 10.0,
) -> AsyncRetrying:
    """
    Build the retry policy as an async iterator; attempt counts and waits
    come from settings at call time.

        async for attempt in retrying(settings.api_retry_attempts):
            with attempt:
                await do_call()
    """
    return AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        retry=retry_if_exception(is_retryable_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )
