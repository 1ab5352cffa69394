"""
Backup pipeline for dbvault.

This module handles the core backup functionality including:
- Database export (SQL, JSON, XLSX)
- Packaging (compression, checksum, naming)
- Storage (S3 and local working directory)
- Retry profiles and error classification
- Run orchestration and notifications

The Flask-bound run executor lives in dbvault.backup.executor.
"""

from .errors import ErrorClassifier, ErrorHistory
from .exporter import DatabaseExporter, ExportError
from .notifier import EmailNotifier, NotificationError, dispatch_notification
from .orchestrator import BackupOrchestrator
from .packaging import PackagingError, package, validate
from .retry import RetryExhaustedError, RetryPolicy, RetryProfiles, OperationTimeoutError
from .storage import LocalStorage, S3Storage, StorageError
from .types import BackupSettings, ExportFormat, RunStatus, RunSummary

__all__ = [
    'BackupOrchestrator',
    'BackupSettings',
    'DatabaseExporter',
    'EmailNotifier',
    'ErrorClassifier',
    'ErrorHistory',
    'ExportError',
    'ExportFormat',
    'LocalStorage',
    'NotificationError',
    'OperationTimeoutError',
    'PackagingError',
    'RetryExhaustedError',
    'RetryPolicy',
    'RetryProfiles',
    'RunStatus',
    'RunSummary',
    'S3Storage',
    'StorageError',
    'dispatch_notification',
    'package',
    'validate',
]
