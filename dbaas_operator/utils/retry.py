"""
Retry utilities for Kubernetes API calls.

Wraps object-store calls so that throttling and server-side hiccups are
retried in place with exponential backoff before they surface to the
reconciler as a transient error.
"""
import asyncio
import functools
from typing import Callable, Optional, Tuple, Type, TypeVar

from kubernetes_asyncio.client import ApiException

from dbaas_operator.config.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

# HTTP status codes worth retrying in place
RETRYABLE_STATUS_CODES = {
    408,  # Request Timeout
    429,  # Too Many Requests
    500,  # Internal Server Error
    502,  # Bad Gateway
    503,  # Service Unavailable
    504,  # Gateway Timeout
}


def is_retryable_k8s_error(exception: Exception) -> bool:
    """
    Determine if a Kubernetes API exception should trigger a retry.

    Args:
        exception: The exception to check

    Returns:
        True if the exception is retryable, False otherwise
    """
    if not isinstance(exception, ApiException):
        return False
    return exception.status in RETRYABLE_STATUS_CODES


def retry_on_k8s_error(
    max_retries: int = 3,
    initial_delay: float = 0.5,
    max_delay: float = 10.0,
    exponential_base: float = 2.0,
    retry_on: Optional[Tuple[Type[Exception], ...]] = None,
) -> Callable:
    """
    Decorator to retry Kubernetes API calls with exponential backoff.

    Args:
        max_retries: Maximum number of retry attempts
        initial_delay: Initial delay between retries in seconds
        max_delay: Maximum delay between retries in seconds
        exponential_base: Base for exponential backoff calculation
        retry_on: Additional exception types to retry on

    Example:
        @retry_on_k8s_error(max_retries=5, initial_delay=1.0)
        async def read_statefulset(name: str, namespace: str):
            ...
    """
    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @functools.wraps(func)
        async def wrapper(*args, **kwargs) -> T:
            for attempt in range(max_retries + 1):
                try:
                    result = await func(*args, **kwargs)
                    if attempt > 0:
                        logger.info(
                            "k8s_api_call_succeeded_after_retry",
                            function=func.__name__,
                            attempt=attempt + 1,
                        )
                    return result

                except Exception as e:
                    should_retry = is_retryable_k8s_error(e)
                    if retry_on and isinstance(e, retry_on):
                        should_retry = True

                    if attempt >= max_retries or not should_retry:
                        if should_retry:
                            logger.error(
                                "k8s_api_call_failed_max_retries",
                                function=func.__name__,
                                attempt=attempt + 1,
                                max_retries=max_retries,
                                error_type=type(e).__name__,
                                error=str(e),
                            )
                        raise

                    delay = min(initial_delay * (exponential_base ** attempt), max_delay)
                    logger.warning(
                        "k8s_api_call_failed_retrying",
                        function=func.__name__,
                        attempt=attempt + 1,
                        max_retries=max_retries,
                        delay_seconds=delay,
                        status_code=getattr(e, "status", None),
                        error=str(e),
                    )
                    await asyncio.sleep(delay)

            raise RuntimeError("unreachable")

        return wrapper
    return decorator
