from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_exception_type,
    retry_if_result,
    stop_after_attempt,
    stop_after_delay,
    stop_never,
    wait_fixed,
)
from typing import Any, Awaitable, Callable, Optional, Tuple, Type, TypeVar
from urllib.parse import urlparse
from loguru import logger
import anyio
import httpx

from agentrelay.const import LOOPBACK_HOSTS
from agentrelay.models import StartupTimeoutError

T = TypeVar("T")

def find_exception(exc :Optional[BaseException], exc_type :Type[BaseException])->Optional[BaseException]:
    """Return the first ``exc_type`` instance in ``exc``, its exception groups or its cause chain."""
    if exc is None:
        return None
    if isinstance(exc, exc_type):
        return exc
    if isinstance(exc, BaseExceptionGroup):
        for inner in exc.exceptions:
            found = find_exception(inner, exc_type)
            if found is not None:
                return found
    return find_exception(exc.__cause__, exc_type)

def find_http_status(exc :BaseException)->Optional[int]:
    """Return the upstream HTTP status code buried inside ``exc``, if any."""
    status_error = find_exception(exc, httpx.HTTPStatusError)
    if status_error is None:
        return None
    return status_error.response.status_code

def is_loopback_url(url :Optional[str])->bool:
    if not url:
        return False
    try:
        hostname = urlparse(url).hostname
    except ValueError:
        return False
    return hostname in LOOPBACK_HOSTS

def _is_pending(result :Any)->bool:
    return result is None

def log_poll_attempt(description :str):
    """Build a ``before_sleep`` hook that logs polling progress."""
    def before_sleep(retry_state):
        attempt_number = retry_state.attempt_number
        outcome = retry_state.outcome
        reason = "not ready"
        if outcome is not None and outcome.failed:
            reason = str(outcome.exception()) or type(outcome.exception()).__name__

        if attempt_number % 5 == 0:
            logger.info(f"Still waiting for {description}... (attempt {attempt_number}: {reason})")
        else:
            logger.debug(f"Waiting for {description} (attempt {attempt_number}: {reason})")
    return before_sleep

async def poll_until(
        attempt :Callable[[], Awaitable[Optional[T]]],
        *,
        description :str,
        interval :float,
        max_attempts :Optional[int]=None,
        initial_delay :float=0,
        timeout :Optional[float]=None,
        retry_on :Tuple[Type[BaseException], ...]=(httpx.HTTPError, OSError),
    )->T:
    """
    Bounded retry loop shared by every readiness check.

    Calls ``attempt`` until it returns something other than ``None``. A ``None``
    result or an exception listed in ``retry_on`` schedules another attempt
    ``interval`` seconds later; any other exception propagates at once.

    :param max_attempts: give up after this many calls to ``attempt``.
    :param initial_delay: grace period before the first call.
    :param timeout: hard ceiling in seconds, grace period included.
    :raises StartupTimeoutError: when the attempt or time budget is exhausted.
    """
    assert max_attempts is not None or timeout is not None, "poll_until needs a bound"

    stop = stop_after_attempt(max_attempts) if max_attempts is not None else stop_never
    if timeout is not None:
        stop = stop | stop_after_delay(timeout)

    retrying = AsyncRetrying(
        stop=stop,
        wait=wait_fixed(interval),
        retry=retry_if_exception_type(retry_on) | retry_if_result(_is_pending),
        before_sleep=log_poll_attempt(description),
        sleep=anyio.sleep,
    )

    async def run()->T:
        if initial_delay:
            await anyio.sleep(initial_delay)
        return await retrying(attempt)

    try:
        if timeout is None:
            return await run()
        with anyio.fail_after(timeout):
            return await run()
    except RetryError as exc:
        attempts = exc.last_attempt.attempt_number
        raise StartupTimeoutError(f"Timed out waiting for {description} after {attempts} attempts") from exc
    except TimeoutError as exc:
        raise StartupTimeoutError(f"Timed out waiting for {description} after {timeout} seconds") from exc
