"""
Unit tests for retry logic (dbvault/backup/retry.py).

Tests backoff timing, retry profiles, exhaustion errors and timeouts.
"""

import threading
from unittest.mock import MagicMock

import pytest

from dbvault.backup.retry import (
    DATABASE_PROFILE,
    NOTIFICATION_PROFILE,
    OBJECT_STORE_PROFILE,
    OperationTimeoutError,
    RetryConfig,
    RetryExhaustedError,
    RetryPolicy,
    RetryProfiles,
    execute_with_retry_and_timeout,
    is_retryable_database_error,
    is_retryable_notification_error,
    is_retryable_object_store_error,
    is_transient_error,
    with_timeout,
)
from dbvault.backup.storage import StorageError


def always_retry(error):
    return True


class FlakyOperation:
    """Fails a fixed number of times, then returns 'ok'."""

    def __init__(self, failures, error=None):
        self.failures = failures
        self.error = error or ConnectionError('connection reset by peer')
        self.calls = 0

    def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return 'ok'


class TestRetryConfig:
    """Test backoff delay computation."""

    def test_delay_doubles_per_attempt(self):
        """Test delays grow exponentially from the base delay."""
        config = RetryConfig(base_delay_ms=1000, max_delay_ms=30000)

        assert config.delay_ms(1) == 1000
        assert config.delay_ms(2) == 2000
        assert config.delay_ms(3) == 4000

    def test_delay_is_capped(self):
        """Test delay never exceeds max_delay_ms."""
        config = RetryConfig(base_delay_ms=2000, max_delay_ms=15000)

        assert config.delay_ms(4) == 15000
        assert config.delay_ms(10) == 15000

    def test_profiles(self):
        """Test the per-dependency profiles."""
        assert (DATABASE_PROFILE.max_attempts, DATABASE_PROFILE.base_delay_ms, DATABASE_PROFILE.max_delay_ms) == (3, 2000, 15000)
        assert (OBJECT_STORE_PROFILE.max_attempts, OBJECT_STORE_PROFILE.base_delay_ms, OBJECT_STORE_PROFILE.max_delay_ms) == (4, 1000, 20000)
        assert (NOTIFICATION_PROFILE.max_attempts, NOTIFICATION_PROFILE.base_delay_ms, NOTIFICATION_PROFILE.max_delay_ms) == (3, 3000, 10000)

    def test_immediate_profiles_keep_attempts(self):
        """Test immediate() zeroes delays but keeps attempts and predicates."""
        profiles = RetryProfiles.immediate()

        assert profiles.object_store.max_attempts == 4
        assert profiles.object_store.delay_ms(3) == 0
        assert profiles.object_store.retryable is is_retryable_object_store_error

    def test_with_attempts_overrides(self):
        """Test attempt counts can be overridden per profile."""
        profiles = RetryProfiles().with_attempts(database=5, object_store=None, notification=1)

        assert profiles.database.max_attempts == 5
        assert profiles.object_store.max_attempts == 4
        assert profiles.notification.max_attempts == 1

    def test_with_attempts_rejects_zero(self):
        """Test an explicit zero is not silently ignored."""
        with pytest.raises(ValueError, match='at least 1'):
            RetryProfiles().with_attempts(object_store=0)

    def test_with_attempts_none_keeps_profile(self):
        profiles = RetryProfiles.immediate()

        assert profiles.with_attempts() == profiles


class TestRetryPolicy:
    """Test RetryPolicy execution."""

    def test_success_first_attempt(self):
        """Test successful operation does not sleep."""
        sleep = MagicMock()
        policy = RetryPolicy(sleep=sleep)

        result = policy.execute(lambda: 42, RetryConfig(retryable=always_retry), 'answer')

        assert result.success is True
        assert result.result == 42
        assert result.attempts == 1
        sleep.assert_not_called()

    def test_retries_until_success(self):
        """Test transient failures are retried with backoff sleeps."""
        sleep = MagicMock()
        policy = RetryPolicy(sleep=sleep)
        operation = FlakyOperation(failures=2)

        result = policy.execute(
            operation,
            RetryConfig(max_attempts=3, base_delay_ms=1000, max_delay_ms=30000, retryable=always_retry),
            'flaky'
        )

        assert result.success is True
        assert result.attempts == 3
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 2.0]

    def test_exhaustion_makes_exactly_max_attempts(self):
        """Test an always-failing retryable operation runs max_attempts times."""
        sleep = MagicMock()
        policy = RetryPolicy(sleep=sleep)
        operation = FlakyOperation(failures=100)

        result = policy.execute(operation, RetryConfig(max_attempts=3, retryable=always_retry), 'doomed')

        assert result.success is False
        assert result.attempts == 3
        assert operation.calls == 3
        # no wait after the last attempt
        assert sleep.call_count == 2
        assert isinstance(result.error, ConnectionError)

    def test_non_retryable_stops_immediately(self):
        """Test a non-retryable error is attempted exactly once."""
        sleep = MagicMock()
        policy = RetryPolicy(sleep=sleep)
        operation = FlakyOperation(failures=100, error=ValueError('bad input'))

        result = policy.execute(
            operation,
            RetryConfig(max_attempts=5, retryable=lambda e: False),
            'strict'
        )

        assert result.success is False
        assert result.attempts == 1
        assert operation.calls == 1
        sleep.assert_not_called()

    def test_run_raises_retry_exhausted(self):
        """Test run() surfaces label and attempt count."""
        policy = RetryPolicy(sleep=lambda s: None)
        error = StorageError('Service unavailable', status=503, code='ServiceUnavailable')

        with pytest.raises(RetryExhaustedError) as exc_info:
            policy.run(FlakyOperation(failures=10, error=error), OBJECT_STORE_PROFILE, 'Upload backup.sql.gz')

        exc = exc_info.value
        assert exc.attempts == 4
        assert exc.label == 'Upload backup.sql.gz'
        assert exc.last_error is error
        assert exc.status == 503
        assert exc.code == 'ServiceUnavailable'
        assert 'Upload backup.sql.gz failed after 4 attempts' in str(exc)

    def test_run_returns_result(self):
        """Test run() returns the operation result."""
        policy = RetryPolicy(sleep=lambda s: None)

        assert policy.run(FlakyOperation(failures=1), RetryConfig(retryable=always_retry), 'x') == 'ok'

    def test_backoff_is_capped_and_uses_base(self):
        """Test sleeps follow min(base * backoff_base ** (n - 1), max)."""
        sleep = MagicMock()
        policy = RetryPolicy(sleep=sleep)

        result = policy.execute(
            FlakyOperation(failures=10),
            RetryConfig(max_attempts=4, base_delay_ms=1000, max_delay_ms=5000, backoff_base=3, retryable=always_retry),
            'capped'
        )

        assert result.attempts == 4
        assert [c.args[0] for c in sleep.call_args_list] == [1.0, 3.0, 5.0]

    def test_retryable_predicate_sees_each_error(self):
        """Test retries stop as soon as the predicate rejects an error."""
        errors = [ConnectionError('connection reset'), ValueError('bad input'), ConnectionError('reset')]
        seen = []

        def operation():
            raise errors[len(seen)]

        def retryable(error):
            seen.append(error)
            return isinstance(error, ConnectionError)

        result = RetryPolicy(sleep=lambda s: None).execute(
            operation, RetryConfig(max_attempts=5, retryable=retryable), 'mixed'
        )

        assert result.attempts == 2
        assert result.error is errors[1]


class TestRetryPredicates:
    """Test per-dependency retryability predicates."""

    def test_transient_default(self):
        assert is_transient_error(Exception('Request timeout')) is True
        assert is_transient_error(Exception('ECONNRESET')) is True
        assert is_transient_error(Exception('syntax error')) is False

    @pytest.mark.parametrize('message,expected', [
        ('could not connect: connection refused', True),
        ('server unavailable', True),
        ('too many connections', True),
        ('socket closed', True),
        ('permission denied for table members', False),
        ('syntax error at or near SELECT', False),
    ])
    def test_database_predicate(self, message, expected):
        assert is_retryable_database_error(Exception(message)) is expected

    def test_object_store_keywords(self):
        assert is_retryable_object_store_error(Exception('Rate limit exceeded')) is True
        assert is_retryable_object_store_error(Exception('SlowDown: please reduce your request rate')) is True
        assert is_retryable_object_store_error(Exception('Access Denied')) is False

    @pytest.mark.parametrize('status', [429, 500, 502, 503, 504])
    def test_object_store_retryable_statuses(self, status):
        assert is_retryable_object_store_error(StorageError('S3 upload failed', status=status)) is True

    def test_object_store_client_errors_not_retryable(self):
        assert is_retryable_object_store_error(StorageError('S3 upload failed', status=403)) is False
        assert is_retryable_object_store_error(StorageError('S3 upload failed', status=404)) is False

    def test_notification_predicate(self):
        assert is_retryable_notification_error(ConnectionError('Connection unexpectedly closed')) is True
        assert is_retryable_notification_error(Exception('Server busy, try again later')) is True
        assert is_retryable_notification_error(Exception('SMTP authentication failed: 535')) is False
        # auth keywords win over retryable keywords
        assert is_retryable_notification_error(Exception('connection rejected: unauthorized')) is False

    def test_timeouts_retryable_everywhere(self):
        """Test OperationTimeoutError re-enters every retry loop."""
        error = OperationTimeoutError('Upload', 500)

        assert is_retryable_database_error(error) is True
        assert is_retryable_object_store_error(error) is True
        assert is_retryable_notification_error(error) is True


class TestWithTimeout:
    """Test with_timeout wrapper."""

    def test_returns_result_in_time(self):
        assert with_timeout(lambda: 'done', 1000, 'fast') == 'done'

    def test_raises_timeout(self):
        """Test slow operation fails with a distinguishable timeout error."""
        release = threading.Event()

        with pytest.raises(OperationTimeoutError) as exc_info:
            with_timeout(lambda: release.wait(5), 50, 'Slow export')

        release.set()
        assert isinstance(exc_info.value, TimeoutError)
        assert exc_info.value.code == 'ETIMEDOUT'
        assert str(exc_info.value) == 'Slow export timed out after 50ms'

    def test_propagates_operation_error(self):
        def boom():
            raise ValueError('broken')

        with pytest.raises(ValueError, match='broken'):
            with_timeout(boom, 1000, 'boom')

    def test_timeout_composes_with_retry(self):
        """Test timeouts count as retryable failures."""
        release = threading.Event()
        calls = []

        def slow():
            calls.append(1)
            release.wait(5)

        policy = RetryPolicy(sleep=lambda s: None)

        with pytest.raises(RetryExhaustedError) as exc_info:
            execute_with_retry_and_timeout(
                slow, 20, RetryConfig(max_attempts=2, base_delay_ms=0), 'Slow upload', policy
            )

        release.set()
        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.last_error, OperationTimeoutError)
        assert len(calls) == 2
