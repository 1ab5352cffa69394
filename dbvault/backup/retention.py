"""
Retention policy enforcement for remote backups.

Deletes backup objects older than the configured number of days from the
bucket. The newest few objects are always kept, whatever their age.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from flask import current_app

from .errors import error_message
from .executor import build_store
from .retry import OBJECT_STORE_PROFILE, RetryConfig, RetryPolicy, RetryProfiles
from .storage import S3Storage


logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 365
DEFAULT_KEEP_COUNT = 10


@dataclass
class RetentionResult:
    """Outcome of one retention pass."""

    listed: int = 0
    deleted: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'listed': self.listed,
            'deleted': list(self.deleted),
            'errors': list(self.errors),
        }


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class RetentionManager:
    """
    Prunes old backups from the object store.

    Objects are ranked by LastModified; the keep_count newest are never
    deleted, and of the rest only those older than retention_days go.
    """

    def __init__(
        self,
        store: S3Storage,
        retention_days: int = DEFAULT_RETENTION_DAYS,
        keep_count: int = DEFAULT_KEEP_COUNT,
        retry_policy: Optional[RetryPolicy] = None,
        retry_config: RetryConfig = OBJECT_STORE_PROFILE,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize retention manager.

        Args:
            store: Object store holding the backups
            retention_days: Age in days after which a backup may be deleted
            keep_count: Number of newest backups always kept
            retry_policy: Policy used to retry listing and deletes
            retry_config: Retry profile for object store calls
            clock: Returns the current (aware) time

        Raises:
            ValueError: If retention_days is below 1 or keep_count is negative
        """
        if retention_days < 1:
            raise ValueError(f"Retention days must be at least 1, got {retention_days}")
        if keep_count < 0:
            raise ValueError(f"Keep count cannot be negative, got {keep_count}")

        self.store = store
        self.retention_days = retention_days
        self.keep_count = keep_count
        self.retry_policy = retry_policy or RetryPolicy()
        self.retry_config = retry_config
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.logs: List[str] = []

    def select_expired(self, objects: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """
        Pick the objects due for deletion.

        Args:
            objects: Dicts with 'Key' and 'LastModified', as listed by the store

        Returns:
            Expired objects, newest first
        """
        cutoff = _as_utc(self._clock()) - timedelta(days=self.retention_days)
        newest_first = sorted(objects, key=lambda obj: _as_utc(obj['LastModified']), reverse=True)
        return [
            obj for obj in newest_first[self.keep_count:]
            if _as_utc(obj['LastModified']) < cutoff
        ]

    def enforce(self) -> RetentionResult:
        """
        Delete expired backups.

        A failed delete is recorded and the pass continues with the next
        object.

        Returns:
            RetentionResult with the deleted keys and any errors

        Raises:
            RetryExhaustedError: If the backups cannot be listed
        """
        self._log(
            f"Enforcing retention policy: {self.retention_days} days, "
            f"keeping newest {self.keep_count}"
        )

        objects = self.retry_policy.run(self.store.list_objects, self.retry_config, 'List backups')
        result = RetentionResult(listed=len(objects))

        for obj in self.select_expired(objects):
            key = obj['Key']
            try:
                self.retry_policy.run(lambda: self.store.delete(key), self.retry_config, f"Delete {key}")
            except Exception as e:
                message = f"Failed to delete S3 object {key}: {error_message(e)}"
                self._log(message, logging.ERROR)
                result.errors.append(message)
                continue

            result.deleted.append(key)
            self._log(f"Deleted S3 object: {key}")

        self._log(
            f"Retention enforcement complete. Listed: {result.listed}, "
            f"deleted: {len(result.deleted)}, errors: {len(result.errors)}"
        )
        return result

    def _log(self, message: str, level: int = logging.INFO):
        timestamp = _as_utc(self._clock()).strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)


def enforce_retention_policy(config: Optional[Mapping[str, Any]] = None) -> Optional[RetentionResult]:
    """
    Enforce the configured retention policy on the backup bucket.

    Called daily by the scheduler and by `flask prune`.

    Args:
        config: Config mapping (defaults to the current app's config)

    Returns:
        RetentionResult, or None if retention is disabled

    Raises:
        ValueError: If the bucket is not configured
        RetryExhaustedError: If the backups cannot be listed
    """
    if config is None:
        config = current_app.config

    retention_days = int(config.get('BACKUP_RETENTION_DAYS') or 0)
    if retention_days <= 0:
        logger.info('Remote retention disabled (BACKUP_RETENTION_DAYS=0), skipping cleanup')
        return None

    profiles = RetryProfiles().with_attempts(
        object_store=int(config.get('UPLOAD_RETRY_ATTEMPTS', OBJECT_STORE_PROFILE.max_attempts))
    )
    manager = RetentionManager(
        build_store(config),
        retention_days=retention_days,
        keep_count=int(config.get('BACKUP_RETENTION_KEEP', DEFAULT_KEEP_COUNT)),
        retry_config=profiles.object_store,
    )
    return manager.enforce()
