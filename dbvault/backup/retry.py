"""
Bounded retry with deterministic exponential backoff.

Each external dependency class (database, object store, mail transport)
fails differently, so each gets its own retry profile: attempt count, delay
bounds and a predicate deciding which errors are worth another attempt.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from .errors import error_code, error_message, error_status


logger = logging.getLogger(__name__)


class OperationTimeoutError(TimeoutError):
    """Raised by with_timeout when the operation outlives its deadline."""

    code = 'ETIMEDOUT'

    def __init__(self, label: str, timeout_ms: int):
        self.label = label
        self.timeout_ms = timeout_ms
        super().__init__(f"{label} timed out after {timeout_ms}ms")


class RetryExhaustedError(Exception):
    """Raised when an operation failed on its last allowed attempt."""

    def __init__(self, label: str, attempts: int, last_error: BaseException):
        self.label = label
        self.attempts = attempts
        self.last_error = last_error
        self.status = error_status(last_error)
        self.code = error_code(last_error)
        super().__init__(f"{label} failed after {attempts} attempts: {error_message(last_error)}")


DEFAULT_RETRYABLE_MARKERS = (
    'ECONNRESET', 'ENOTFOUND', 'ECONNREFUSED', 'ETIMEDOUT',
    'Network request failed', 'timeout', 'Too Many Requests',
    'Service Temporarily Unavailable', 'Internal Server Error',
)

DATABASE_RETRYABLE_KEYWORDS = (
    'connection', 'timeout', 'network', 'unavailable', 'too many',
    'rate limit', 'temporary', 'socket', 'reset',
)

OBJECT_STORE_RETRYABLE_KEYWORDS = (
    'rate limit', 'quota exceeded', 'backend error', 'internal error',
    'unavailable', 'timeout', 'network', 'slow down', 'slowdown', 'throttl',
)
OBJECT_STORE_RETRYABLE_STATUSES = (429, 500, 502, 503, 504)

NOTIFICATION_RETRYABLE_KEYWORDS = (
    'connection', 'timeout', 'network', 'temporarily', 'rate limit',
    'server busy', 'try again',
)
NOTIFICATION_FATAL_KEYWORDS = (
    'authentication', 'invalid credentials', 'unauthorized', 'forbidden',
)


def is_transient_error(error: BaseException) -> bool:
    """Default predicate: network errors, timeouts and temporary failures."""
    message = error_message(error)
    code = error_code(error)
    return any(marker in message or marker in code for marker in DEFAULT_RETRYABLE_MARKERS)


def _timed_out(error: BaseException) -> bool:
    return error_code(error) == 'ETIMEDOUT'


def is_retryable_database_error(error: BaseException) -> bool:
    message = error_message(error).lower()
    return any(keyword in message for keyword in DATABASE_RETRYABLE_KEYWORDS) or _timed_out(error)


def is_retryable_object_store_error(error: BaseException) -> bool:
    message = error_message(error).lower()
    if any(keyword in message for keyword in OBJECT_STORE_RETRYABLE_KEYWORDS) or _timed_out(error):
        return True
    return error_status(error) in OBJECT_STORE_RETRYABLE_STATUSES


def is_retryable_notification_error(error: BaseException) -> bool:
    message = error_message(error).lower()
    # auth failures never fix themselves
    if any(keyword in message for keyword in NOTIFICATION_FATAL_KEYWORDS):
        return False
    return any(keyword in message for keyword in NOTIFICATION_RETRYABLE_KEYWORDS) or _timed_out(error)


@dataclass(frozen=True)
class RetryConfig:
    """
    Retry profile for one class of operations.

    Attributes:
        max_attempts: Total attempts including the first one
        base_delay_ms: Delay before the second attempt
        max_delay_ms: Upper bound for any single delay
        backoff_base: Multiplier applied per attempt
        retryable: Predicate deciding whether an error deserves another attempt
    """

    max_attempts: int = 3
    base_delay_ms: int = 1000
    max_delay_ms: int = 30000
    backoff_base: float = 2
    retryable: Callable[[BaseException], bool] = field(default=is_transient_error, compare=False)

    def delay_ms(self, attempt: int) -> float:
        """Delay to wait after the given (1-based) failed attempt."""
        return min(self.base_delay_ms * self.backoff_base ** (attempt - 1), self.max_delay_ms)


DEFAULT_PROFILE = RetryConfig()

DATABASE_PROFILE = RetryConfig(
    max_attempts=3,
    base_delay_ms=2000,
    max_delay_ms=15000,
    retryable=is_retryable_database_error,
)

OBJECT_STORE_PROFILE = RetryConfig(
    max_attempts=4,
    base_delay_ms=1000,
    max_delay_ms=20000,
    retryable=is_retryable_object_store_error,
)

NOTIFICATION_PROFILE = RetryConfig(
    max_attempts=3,
    base_delay_ms=3000,
    max_delay_ms=10000,
    retryable=is_retryable_notification_error,
)


@dataclass(frozen=True)
class RetryProfiles:
    """The three retry profiles used by a backup run."""

    database: RetryConfig = DATABASE_PROFILE
    object_store: RetryConfig = OBJECT_STORE_PROFILE
    notification: RetryConfig = NOTIFICATION_PROFILE

    @classmethod
    def immediate(cls) -> 'RetryProfiles':
        """Same attempt counts and predicates, zero delays."""
        return cls(
            database=replace(DATABASE_PROFILE, base_delay_ms=0, max_delay_ms=0),
            object_store=replace(OBJECT_STORE_PROFILE, base_delay_ms=0, max_delay_ms=0),
            notification=replace(NOTIFICATION_PROFILE, base_delay_ms=0, max_delay_ms=0),
        )

    def with_attempts(
        self,
        database: Optional[int] = None,
        object_store: Optional[int] = None,
        notification: Optional[int] = None,
    ) -> 'RetryProfiles':
        """
        Return a copy with attempt counts overridden where given.

        Raises:
            ValueError: If a given attempt count is below 1
        """
        def override(config: RetryConfig, attempts: Optional[int]) -> RetryConfig:
            if attempts is None:
                return config
            if attempts < 1:
                raise ValueError(f"Retry attempts must be at least 1, got {attempts}")
            return replace(config, max_attempts=attempts)

        return RetryProfiles(
            database=override(self.database, database),
            object_store=override(self.object_store, object_store),
            notification=override(self.notification, notification),
        )


@dataclass
class RetryResult:
    success: bool
    attempts: int
    total_time_ms: int
    result: Any = None
    error: Optional[BaseException] = None


class RetryPolicy:
    """
    Executes operations with bounded, sequential retries.

    The sleep function is injectable so tests never wait.
    """

    def __init__(self, sleep: Callable[[float], None] = time.sleep):
        self._sleep = sleep

    def execute(
        self,
        operation: Callable[[], Any],
        config: RetryConfig = DEFAULT_PROFILE,
        label: str = 'Operation',
    ) -> RetryResult:
        """
        Run an operation until it succeeds or retries are exhausted.

        Args:
            operation: Zero-argument callable
            config: Retry profile to apply
            label: Operation name used in logs and errors

        Returns:
            RetryResult describing the outcome; never raises for operation failures
        """
        start = time.monotonic()
        attempts = 0

        def attempt():
            nonlocal attempts
            attempts += 1
            try:
                return operation()
            except Exception as e:
                logger.info(f"{label}: attempt {attempts}/{config.max_attempts} failed: {error_message(e)}")
                raise

        def before_sleep(retry_state):
            logger.info(f"{label}: waiting {retry_state.next_action.sleep * 1000:.0f}ms before retry")

        retrying = Retrying(
            stop=stop_after_attempt(config.max_attempts),
            wait=wait_exponential(
                multiplier=config.base_delay_ms / 1000.0,
                exp_base=config.backoff_base,
                max=config.max_delay_ms / 1000.0,
            ),
            retry=retry_if_exception(lambda e: isinstance(e, Exception) and config.retryable(e)),
            sleep=self._sleep,
            before_sleep=before_sleep,
            reraise=True,
        )

        logger.debug(f"Starting {label} with retry logic (max {config.max_attempts} attempts)")

        try:
            result = retrying(attempt)
        except Exception as e:
            total_ms = _elapsed_ms(start)
            logger.warning(f"{label} failed after {attempts} attempts ({total_ms}ms)")
            return RetryResult(success=False, attempts=attempts, total_time_ms=total_ms, error=e)

        total_ms = _elapsed_ms(start)
        logger.debug(f"{label} succeeded on attempt {attempts} ({total_ms}ms)")
        return RetryResult(success=True, attempts=attempts, total_time_ms=total_ms, result=result)

    def run(
        self,
        operation: Callable[[], Any],
        config: RetryConfig = DEFAULT_PROFILE,
        label: str = 'Operation',
    ) -> Any:
        """
        Run an operation with retries and return its result.

        Raises:
            RetryExhaustedError: If the operation never succeeded
        """
        outcome = self.execute(operation, config, label)
        if not outcome.success:
            raise RetryExhaustedError(label, outcome.attempts, outcome.error)
        return outcome.result


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def with_timeout(operation: Callable[[], Any], timeout_ms: int, label: str = 'Operation') -> Any:
    """
    Run an operation, failing if it takes longer than timeout_ms.

    The operation runs on a worker thread. When the timer wins the worker
    is left to finish on its own; its result is discarded.

    Raises:
        OperationTimeoutError: If the deadline passes first
    """
    pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix='dbvault-timeout')
    try:
        future = pool.submit(operation)
        done, _ = wait([future], timeout=timeout_ms / 1000.0)
        if not done:
            raise OperationTimeoutError(label, timeout_ms)
        return future.result()
    finally:
        pool.shutdown(wait=False)


_default_policy = RetryPolicy()


def execute_with_retry(
    operation: Callable[[], Any],
    config: RetryConfig = DEFAULT_PROFILE,
    label: str = 'Operation',
) -> RetryResult:
    """Module-level convenience for RetryPolicy().execute."""
    return _default_policy.execute(operation, config, label)


def execute_with_retry_and_timeout(
    operation: Callable[[], Any],
    timeout_ms: int,
    config: RetryConfig = DEFAULT_PROFILE,
    label: str = 'Operation',
    policy: Optional[RetryPolicy] = None,
) -> Any:
    """
    Combine with_timeout and retries; timeouts count as ordinary failures.

    Raises:
        RetryExhaustedError: If no attempt finished in time and successfully
    """
    policy = policy or _default_policy
    return policy.run(lambda: with_timeout(operation, timeout_ms, label), config, label)
