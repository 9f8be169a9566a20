"""Retry with exponential backoff, and cancellation-aware waiting."""

import asyncio
import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import FatalError, InfraError, InfraTimeoutError, TransientError, cancelled

logger = logging.getLogger("raibid.retry")

T = TypeVar('T')


@dataclass(frozen=True)
class RetryConfig:
    """Backoff parameters for :func:`retry`.

    Delays are in seconds.
    """
    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    use_jitter: bool = True

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

    @classmethod
    def quick(cls) -> 'RetryConfig':
        """Network requests."""
        return cls(max_attempts=5, initial_delay=0.5, max_delay=5.0, backoff_multiplier=1.5)

    @classmethod
    def slow(cls) -> 'RetryConfig':
        """Cluster operations and service readiness."""
        return cls(max_attempts=10, initial_delay=2.0, max_delay=60.0, backoff_multiplier=2.0)

    @classmethod
    def none(cls) -> 'RetryConfig':
        return cls(max_attempts=1, initial_delay=0.0, max_delay=0.0, backoff_multiplier=1.0, use_jitter=False)

    def delay_for_attempt(self, attempt: int) -> float:
        """Seconds to wait before ``attempt`` (1-based); the first attempt never waits."""
        if attempt <= 1:
            return 0.0
        delay = min(self.initial_delay * self.backoff_multiplier ** (attempt - 2), self.max_delay)
        if self.use_jitter:
            delay *= random.uniform(0.5, 1.5)
        return delay


class CancelToken:
    """Cooperative cancellation signal shared by every wait in one invocation."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def check(self, component: str) -> None:
        if self._event.is_set():
            raise cancelled(component)

    def sleep(self, seconds: float) -> bool:
        """Sleep up to ``seconds``; returns True if woken by cancellation."""
        if seconds <= 0:
            return self._event.is_set()
        return self._event.wait(seconds)


def _classify(err: InfraError, operation_name: str) -> InfraError:
    if not err.is_classified:
        logger.error("Unclassified error from '%s' treated as fatal: %s", operation_name, err.reason)
        return err.fatal()
    return err


def _log_attempt(config: RetryConfig, operation_name: str, attempt: int, delay: float, err: InfraError) -> None:
    if attempt == 1:
        logger.debug("Attempting '%s' (attempt 1/%d)", operation_name, config.max_attempts)
        return
    msg = "Retry %d/%d for '%s' in %.1fs after: %s"
    args = (attempt, config.max_attempts, operation_name, delay, err.reason)
    # Escalate once half of the attempt budget is spent
    if attempt > max(2, config.max_attempts // 2):
        logger.warning(msg, *args)
    else:
        logger.info(msg, *args)


def _exhausted(last: TransientError, attempts: int, started: float) -> FatalError:
    return FatalError(last.cause, attempts=attempts, elapsed=time.monotonic() - started)


def retry(
    config: RetryConfig,
    operation_name: str,
    fn: Callable[[], T],
    cancel: Optional[CancelToken] = None,
    component: Optional[str] = None,
) -> T:
    """Call ``fn`` until it succeeds, a fatal error occurs, or attempts run out.

    Args:
        config: Backoff parameters
        operation_name: Used in log messages
        fn: Callable raising :class:`InfraError` on failure
        cancel: Optional cancellation token checked before every attempt

    Returns:
        Whatever ``fn`` returns

    Raises:
        FatalError: On a fatal error, or wrapping the last transient error
            once ``config.max_attempts`` is reached.
    """
    started = time.monotonic()
    last: Optional[TransientError] = None

    for attempt in range(1, config.max_attempts + 1):
        if cancel:
            cancel.check(component or operation_name)
        if attempt == 1:
            _log_attempt(config, operation_name, attempt, 0.0, None)
        else:
            delay = config.delay_for_attempt(attempt)
            if last.retry_after:
                delay = max(delay, last.retry_after)
            _log_attempt(config, operation_name, attempt, delay, last)
            if cancel:
                if cancel.sleep(delay):
                    cancel.check(component or operation_name)
            else:
                time.sleep(delay)

        try:
            result = fn()
        except InfraError as err:
            err = _classify(err, operation_name)
            if err.is_fatal:
                logger.debug("Fatal error in '%s', not retrying: %s", operation_name, err.reason)
                raise err
            last = err
            continue

        if attempt > 1:
            logger.info("'%s' succeeded after %d attempts", operation_name, attempt)
        return result

    raise _exhausted(last, config.max_attempts, started)


async def retry_async(
    config: RetryConfig,
    operation_name: str,
    fn: Callable[[], Awaitable[T]],
    cancel: Optional[CancelToken] = None,
    component: Optional[str] = None,
) -> T:
    """Async version of :func:`retry`; backoff sleeps do not block the loop."""
    started = time.monotonic()
    last: Optional[TransientError] = None

    for attempt in range(1, config.max_attempts + 1):
        if cancel:
            cancel.check(component or operation_name)
        if attempt == 1:
            _log_attempt(config, operation_name, attempt, 0.0, None)
        else:
            delay = config.delay_for_attempt(attempt)
            if last.retry_after:
                delay = max(delay, last.retry_after)
            _log_attempt(config, operation_name, attempt, delay, last)
            await asyncio.sleep(delay)
            if cancel:
                cancel.check(component or operation_name)

        try:
            result = await fn()
        except InfraError as err:
            err = _classify(err, operation_name)
            if err.is_fatal:
                raise err
            last = err
            continue

        if attempt > 1:
            logger.info("'%s' succeeded after %d attempts", operation_name, attempt)
        return result

    raise _exhausted(last, config.max_attempts, started)


def poll_until(
    component: str,
    operation_name: str,
    condition: Callable[[], bool],
    timeout: float,
    interval: float = 2.0,
    cancel: Optional[CancelToken] = None,
) -> None:
    """Poll ``condition`` until it returns True or ``timeout`` elapses.

    Transient errors raised by ``condition`` count as "not yet"; fatal ones
    propagate.
    """
    deadline = time.monotonic() + timeout
    token = cancel or CancelToken()

    while True:
        token.check(component)
        try:
            if condition():
                return
        except InfraError as err:
            err = _classify(err, operation_name)
            if err.is_fatal:
                raise err
            logger.debug("Transient error while waiting for '%s': %s", operation_name, err.reason)

        if time.monotonic() + interval > deadline:
            raise InfraTimeoutError(component, operation_name, timeout).fatal()
        if token.sleep(interval):
            token.check(component)
