"""
Error classification for backup operations.

Maps arbitrary exceptions into a fixed taxonomy (connection, authentication,
permission, timeout, rate limit, data, validation, storage, unknown) with a
severity and a retry eligibility flag, and keeps a bounded history of what
was classified during a run.
"""

import errno
import logging
from collections import Counter, deque
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Tuple

from .types import ClassifiedError, ErrorKind, Severity


logger = logging.getLogger(__name__)

HISTORY_CAPACITY = 100


CONNECTION_KEYWORDS = (
    'connection', 'connect', 'network', 'dns', 'host', 'unreachable',
    'refused', 'reset', 'closed', 'disconnected', 'offline',
)
CONNECTION_CODES = ('ECONNRESET', 'ENOTFOUND', 'ECONNREFUSED', 'ENETUNREACH')

AUTHENTICATION_KEYWORDS = (
    'authentication', 'unauthorized', 'invalid credentials', 'api key',
    'token', 'expired', 'invalid jwt', 'authentication failed',
)
AUTHENTICATION_STATUSES = (401, 403)

PERMISSION_KEYWORDS = (
    'permission denied', 'forbidden', 'access denied', 'insufficient privileges',
    'not authorized', 'rls', 'row level security', 'policy',
)

TIMEOUT_KEYWORDS = ('timeout', 'timed out', 'time limit', 'deadline')
TIMEOUT_CODES = ('ETIMEDOUT',)

RATE_LIMIT_KEYWORDS = ('rate limit', 'too many requests', 'quota exceeded', 'limit exceeded')

DATA_KEYWORDS = (
    'invalid data', 'constraint', 'foreign key', 'unique', 'null value',
    'data type', 'invalid input', 'syntax error', 'relation does not exist',
    'no such table',
)

VALIDATION_KEYWORDS = (
    'validation', 'checksum', 'size mismatch', 'corrupt', 'unsupported format',
)

STORAGE_KEYWORDS = (
    'no space left', 'disk full', 'nosuchbucket', 'bucket does not exist',
    'read-only file system', 'storage',
)


# kind -> (severity, retryable, suggested actions)
KIND_PROFILES: Dict[ErrorKind, Tuple[Severity, bool, Tuple[str, ...]]] = {
    ErrorKind.CONNECTION: (Severity.HIGH, True, (
        'Check network connectivity',
        'Verify the database and storage services are reachable',
        'Check the configured connection URLs',
        'Retry operation after a delay',
    )),
    ErrorKind.AUTHENTICATION: (Severity.CRITICAL, False, (
        'Verify the configured credentials',
        'Check if the key or token has expired',
        'Ensure proper authentication configuration',
        'Contact administrator for key rotation',
    )),
    ErrorKind.PERMISSION: (Severity.HIGH, False, (
        'Check permissions for the service account',
        'Verify row level security policies allow access',
        'Ensure the table or bucket exists and is accessible',
        'Contact database administrator',
    )),
    ErrorKind.TIMEOUT: (Severity.MEDIUM, True, (
        'Increase timeout duration',
        'Check network stability',
        'Consider breaking operation into smaller chunks',
        'Retry during off-peak hours',
    )),
    ErrorKind.RATE_LIMIT: (Severity.MEDIUM, True, (
        'Wait before retrying',
        'Reduce request frequency',
        'Consider upgrading service plan',
    )),
    ErrorKind.DATA: (Severity.LOW, False, (
        'Check data integrity',
        'Validate table schema',
        'Review data types and constraints',
        'Skip corrupted records and continue',
    )),
    ErrorKind.VALIDATION: (Severity.LOW, False, (
        'Re-package the artifact',
        'Check local disk health',
    )),
    ErrorKind.STORAGE: (Severity.HIGH, False, (
        'Check free space in the output directory',
        'Verify the storage bucket exists',
    )),
    ErrorKind.UNKNOWN: (Severity.MEDIUM, False, ()),
}


def error_message(error: Any) -> str:
    """Return a printable message for any error value, never empty."""
    if error is None:
        return 'Unknown error'
    message = str(error).strip()
    if not message and isinstance(error, BaseException):
        message = type(error).__name__
    return message or 'Unknown error'


def error_code(error: Any) -> str:
    """
    Extract a symbolic error code.

    Uses an explicit ``code`` attribute if present, otherwise the errno name
    of an OSError, otherwise ETIMEDOUT for timeouts.
    """
    code = getattr(error, 'code', None)
    if isinstance(code, str) and code:
        return code

    if isinstance(error, OSError) and error.errno in errno.errorcode:
        return errno.errorcode[error.errno]

    if isinstance(error, TimeoutError):
        return 'ETIMEDOUT'

    return ''


def error_status(error: Any) -> int:
    """
    Extract an HTTP status code from an error, 0 if there is none.

    Understands ``status``/``status_code`` attributes, response objects
    and botocore-style response dicts.
    """
    for attribute in ('status', 'status_code'):
        value = getattr(error, attribute, None)
        if isinstance(value, int):
            return value

    response = getattr(error, 'response', None)
    if isinstance(response, dict):
        status = response.get('ResponseMetadata', {}).get('HTTPStatusCode')
        if isinstance(status, int):
            return status
    elif response is not None:
        for attribute in ('status_code', 'status'):
            value = getattr(response, attribute, None)
            if isinstance(value, int):
                return value

    return 0


def _contains_any(text: str, keywords: Tuple[str, ...]) -> bool:
    return any(keyword in text for keyword in keywords)


def classify_kind(message: str, code: str, status: int) -> ErrorKind:
    """Apply the classification precedence; first match wins."""
    text = message.lower()

    if _contains_any(text, CONNECTION_KEYWORDS) or code in CONNECTION_CODES:
        return ErrorKind.CONNECTION
    if _contains_any(text, AUTHENTICATION_KEYWORDS) or status in AUTHENTICATION_STATUSES:
        return ErrorKind.AUTHENTICATION
    if _contains_any(text, PERMISSION_KEYWORDS) or status == 403:
        return ErrorKind.PERMISSION
    if _contains_any(text, TIMEOUT_KEYWORDS) or code in TIMEOUT_CODES:
        return ErrorKind.TIMEOUT
    if _contains_any(text, RATE_LIMIT_KEYWORDS) or status == 429:
        return ErrorKind.RATE_LIMIT
    if _contains_any(text, DATA_KEYWORDS):
        return ErrorKind.DATA
    if _contains_any(text, VALIDATION_KEYWORDS):
        return ErrorKind.VALIDATION
    if _contains_any(text, STORAGE_KEYWORDS):
        return ErrorKind.STORAGE
    return ErrorKind.UNKNOWN


def should_continue_operation(classified: ClassifiedError) -> bool:
    """
    Decide whether the surrounding stage may skip this failure and go on.

    Critical failures and authentication/permission failures stop the stage.
    """
    if classified.severity is Severity.CRITICAL:
        return False
    if classified.kind in (ErrorKind.AUTHENTICATION, ErrorKind.PERMISSION):
        return False
    return True


class ErrorHistory:
    """
    Bounded, append-only log of classified errors.

    Holds at most ``capacity`` entries; the oldest entry is evicted first.
    """

    def __init__(self, capacity: int = HISTORY_CAPACITY):
        self._entries = deque(maxlen=capacity)

    @property
    def capacity(self) -> int:
        return self._entries.maxlen

    def append(self, classified: ClassifiedError):
        self._entries.append(classified)

    def clear(self):
        self._entries.clear()

    def entries(self) -> List[ClassifiedError]:
        return list(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[ClassifiedError]:
        return iter(list(self._entries))

    def summary(self) -> Dict[str, Any]:
        """
        Summarize the history for reporting.

        Returns:
            Dict with 'total_errors', 'by_kind', 'by_severity',
            'critical_errors' and 'recent_errors' (last 10)
        """
        entries = self.entries()
        by_kind = Counter(entry.kind for entry in entries)
        by_severity = Counter(entry.severity for entry in entries)

        return {
            'total_errors': len(entries),
            'by_kind': {kind.value: by_kind.get(kind, 0) for kind in ErrorKind},
            'by_severity': {severity.value: by_severity.get(severity, 0) for severity in Severity},
            'critical_errors': [entry for entry in entries if entry.severity is Severity.CRITICAL],
            'recent_errors': entries[-10:],
        }

    def report(self) -> str:
        """Render a plain-text error report."""
        summary = self.summary()

        if summary['total_errors'] == 0:
            return 'No errors encountered during backup operation.'

        lines = ['Backup Error Report', '', f"Total Errors: {summary['total_errors']}", '']

        lines.append('Errors by Severity:')
        for severity, count in summary['by_severity'].items():
            if count > 0:
                lines.append(f"  {severity.upper()}: {count}")

        if summary['critical_errors']:
            lines.append('')
            lines.append('Critical Errors:')
            for entry in summary['critical_errors']:
                lines.append(f"  - {entry.operation}: {entry.message}")

        lines.append('')
        lines.append('Recent Errors:')
        for entry in summary['recent_errors'][-5:]:
            lines.append(f"  [{entry.severity.value.upper()}] {entry.operation}: {entry.message[:100]}")

        return '\n'.join(lines)


class ErrorClassifier:
    """
    Classifies failures and records them in an error history.

    The history is owned by the caller (normally the orchestrator) so that
    independent runs never share entries.
    """

    def __init__(self, history: Optional[ErrorHistory] = None):
        self.history = history if history is not None else ErrorHistory()

    def classify(self, error: Any, operation: str) -> ClassifiedError:
        """
        Classify an error and record it.

        Args:
            error: Any failure value, including None
            operation: Free-text description of what was being done

        Returns:
            ClassifiedError with exactly one kind
        """
        message = error_message(error)
        kind = classify_kind(message, error_code(error), error_status(error))
        severity, retryable, actions = KIND_PROFILES[kind]

        classified = ClassifiedError(
            kind=kind,
            severity=severity,
            retryable=retryable,
            message=message,
            operation=operation,
            timestamp=datetime.now(timezone.utc),
            suggested_actions=actions,
            original_error=error,
        )

        self.history.append(classified)
        self._log(classified)
        return classified

    def should_continue(self, classified: ClassifiedError) -> bool:
        return should_continue_operation(classified)

    def _log(self, classified: ClassifiedError):
        level = logging.ERROR if classified.severity in (Severity.HIGH, Severity.CRITICAL) else logging.WARNING
        actions = '; '.join(classified.suggested_actions) or 'none'
        logger.log(
            level,
            f"{classified.operation} failed [{classified.kind.value}/{classified.severity.value}] "
            f"retryable={classified.retryable}: {classified.message} (suggested actions: {actions})",
            extra={
                'error_kind': classified.kind.value,
                'error_severity': classified.severity.value,
                'error_retryable': classified.retryable,
                'suggested_actions': list(classified.suggested_actions),
            },
        )
