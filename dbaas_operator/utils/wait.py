"""
Bounded, cancellable polling.

Replaces ad hoc sleep loops at call sites that wait for workloads to become
ready or for pods to go away.
"""
from typing import Awaitable, Callable

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_result,
    stop_after_delay,
    wait_fixed,
)

from dbaas_operator.config.logging import get_logger
from dbaas_operator.exceptions import ReadinessTimeout

logger = get_logger(__name__)


async def poll_until(
    predicate: Callable[[], Awaitable[bool]],
    interval: float,
    timeout: float,
    description: str = "condition",
) -> None:
    """
    Await ``predicate`` every ``interval`` seconds until it returns True.

    Exceptions raised by the predicate propagate immediately. Cancelling the
    calling task cancels the wait.

    Raises:
        ReadinessTimeout: if the predicate is still False after ``timeout`` seconds
    """
    retrying = AsyncRetrying(
        retry=retry_if_result(lambda ok: not ok),
        wait=wait_fixed(interval),
        stop=stop_after_delay(timeout),
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                ok = await predicate()
            if not attempt.retry_state.outcome.failed:
                attempt.retry_state.set_result(ok)
    except RetryError:
        logger.warning("poll_timed_out", condition=description, timeout_seconds=timeout)
        raise ReadinessTimeout(
            f"timed out after {timeout}s waiting for {description}",
            details={"condition": description, "timeout": timeout},
        )
