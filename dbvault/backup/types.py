"""
Shared types for the backup pipeline.

Enumerations for export formats, run status and error taxonomy, the records
passed between pipeline stages, and the collaborator interfaces the
orchestrator depends on.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple


class ExportFormat(Enum):
    """Supported export formats."""

    SQL = 'sql'
    JSON = 'json'
    XLSX = 'xlsx'

    @property
    def extension(self) -> str:
        return self.value

    @property
    def compressible(self) -> bool:
        # xlsx is already a zip container
        return self is not ExportFormat.XLSX

    @property
    def mime_type(self) -> str:
        return _MIME_TYPES[self]

    @classmethod
    def parse(cls, value: str) -> 'ExportFormat':
        """
        Parse a format name case-insensitively.

        Raises:
            ValueError: If the format is not supported
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise ValueError(
                f"Unsupported format: {value}. "
                f"Valid options: {[f.value for f in cls]}"
            )


_MIME_TYPES = {
    ExportFormat.SQL: 'application/sql',
    ExportFormat.JSON: 'application/json',
    ExportFormat.XLSX: 'application/vnd.openxmlformats-officedocument.spreadsheetml.sheet',
}


class RunStatus(Enum):
    SUCCESS = 'success'
    PARTIAL = 'partial'
    FAILURE = 'failure'


class RunState(Enum):
    """States of a single orchestrator run."""

    IDLE = 'idle'
    INITIALIZING = 'initializing'
    EXPORTING = 'exporting'
    UPLOADING = 'uploading'
    AGGREGATING = 'aggregating'
    NOTIFYING = 'notifying'
    CLEANING_UP = 'cleaning_up'
    DONE = 'done'
    ABORTED = 'aborted'


class ErrorKind(Enum):
    CONNECTION = 'connection'
    AUTHENTICATION = 'authentication'
    PERMISSION = 'permission'
    DATA = 'data'
    TIMEOUT = 'timeout'
    RATE_LIMIT = 'rate_limit'
    STORAGE = 'storage'
    VALIDATION = 'validation'
    UNKNOWN = 'unknown'


class Severity(Enum):
    LOW = 'low'
    MEDIUM = 'medium'
    HIGH = 'high'
    CRITICAL = 'critical'


@dataclass(frozen=True)
class CompressionOptions:
    enabled: bool = True
    level: int = 6
    algorithm: str = 'gzip'


@dataclass(frozen=True)
class NamingOptions:
    include_timestamp: bool = True
    include_format: bool = True
    include_compression: bool = True
    timestamp_format: str = '%Y-%m-%d_%H-%M-%S'
    separator: str = '_'


@dataclass(frozen=True)
class NotificationOptions:
    send_on_success: bool = True
    send_on_failure: bool = True
    send_on_partial: bool = True
    recipients: Tuple[str, ...] = ()
    include_details: bool = True

    def enabled_for(self, status: RunStatus) -> bool:
        """Return the on/off switch for a run status."""
        return {
            RunStatus.SUCCESS: self.send_on_success,
            RunStatus.PARTIAL: self.send_on_partial,
            RunStatus.FAILURE: self.send_on_failure,
        }[status]


@dataclass(frozen=True)
class UploadOptions:
    create_date_folders: bool = True
    verify_upload: bool = True


@dataclass
class Artifact:
    """One exported, packaged file."""

    name: str
    format: ExportFormat
    raw_size: int
    checksum: str
    compressed: bool
    created_at: datetime
    packaged_size: Optional[int] = None
    compression_ratio: Optional[float] = None
    local_path: Optional[str] = None
    algorithm: Optional[str] = None  # compression algorithm, None when uncompressed

    @property
    def stored_size(self) -> int:
        """Size of the bytes actually shipped."""
        return self.packaged_size if self.packaged_size is not None else self.raw_size

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'format': self.format.value,
            'raw_size': self.raw_size,
            'packaged_size': self.packaged_size,
            'compression_ratio': self.compression_ratio,
            'checksum': self.checksum,
            'compressed': self.compressed,
            'algorithm': self.algorithm,
            'created_at': self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class UploadResult:
    remote_id: str
    remote_url: str
    size: int


@dataclass(frozen=True)
class UploadOutcome:
    """Result of shipping one artifact."""

    artifact: Artifact = field(compare=False)
    success: bool
    remote_location: Optional[str] = None
    remote_id: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = self.artifact.to_dict()
        data.update({
            'success': self.success,
            'remote_location': self.remote_location,
            'remote_id': self.remote_id,
            'error': self.error,
            'attempts': self.attempts,
        })
        return data


@dataclass(frozen=True)
class ClassifiedError:
    """Normalized description of a failure."""

    kind: ErrorKind
    severity: Severity
    retryable: bool
    message: str
    operation: str
    timestamp: datetime
    suggested_actions: Tuple[str, ...] = ()
    original_error: Any = field(default=None, repr=False, compare=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'severity': self.severity.value,
            'retryable': self.retryable,
            'message': self.message,
            'operation': self.operation,
            'timestamp': self.timestamp.isoformat(),
            'suggested_actions': list(self.suggested_actions),
        }


def derive_status(succeeded: int, failed: int, aborted: bool = False) -> RunStatus:
    """
    Derive the overall run status from upload counts.

    Args:
        succeeded: Number of artifacts uploaded successfully
        failed: Number of artifacts that failed to upload
        aborted: Whether the run aborted before producing artifacts

    Returns:
        RunStatus for the run
    """
    if aborted:
        return RunStatus.FAILURE
    if failed == 0:
        return RunStatus.SUCCESS
    if succeeded == 0:
        return RunStatus.FAILURE
    return RunStatus.PARTIAL


@dataclass(frozen=True)
class RunSummary:
    """Aggregate record of one backup run."""

    status: RunStatus
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    total_artifacts: int
    succeeded: int
    failed: int
    total_raw_bytes: int
    total_packaged_bytes: int
    compression_ratio: float
    outcomes: Tuple[UploadOutcome, ...] = ()
    errors: Tuple[str, ...] = ()
    classified_errors: Tuple[ClassifiedError, ...] = ()
    aborted: bool = False

    @classmethod
    def from_outcomes(
        cls,
        outcomes: List[UploadOutcome],
        started_at: datetime,
        finished_at: datetime,
        errors: List[str],
        classified_errors: List[ClassifiedError] = None,
    ) -> 'RunSummary':
        """Aggregate per-artifact outcomes into a summary."""
        succeeded = sum(1 for outcome in outcomes if outcome.success)
        failed = len(outcomes) - succeeded
        total_raw = sum(outcome.artifact.raw_size for outcome in outcomes)
        total_packaged = sum(outcome.artifact.stored_size for outcome in outcomes)
        ratio = total_raw / total_packaged if total_packaged > 0 else 1.0

        return cls(
            status=derive_status(succeeded, failed),
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=_duration_ms(started_at, finished_at),
            total_artifacts=len(outcomes),
            succeeded=succeeded,
            failed=failed,
            total_raw_bytes=total_raw,
            total_packaged_bytes=total_packaged,
            compression_ratio=ratio,
            outcomes=tuple(outcomes),
            errors=tuple(errors),
            classified_errors=tuple(classified_errors or ()),
        )

    @classmethod
    def aborted_run(
        cls,
        started_at: datetime,
        finished_at: datetime,
        errors: List[str],
        classified_errors: List[ClassifiedError] = None,
    ) -> 'RunSummary':
        """Summary for a run that aborted before any artifact was shipped."""
        return cls(
            status=derive_status(0, 0, aborted=True),
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=_duration_ms(started_at, finished_at),
            total_artifacts=0,
            succeeded=0,
            failed=0,
            total_raw_bytes=0,
            total_packaged_bytes=0,
            compression_ratio=1.0,
            errors=tuple(errors),
            classified_errors=tuple(classified_errors or ()),
            aborted=True,
        )

    @property
    def ok(self) -> bool:
        """Process exit signal: anything but a failed run counts as ok."""
        return self.status is not RunStatus.FAILURE

    def to_dict(self) -> Dict[str, Any]:
        return {
            'status': self.status.value,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat(),
            'duration_ms': self.duration_ms,
            'total_artifacts': self.total_artifacts,
            'succeeded': self.succeeded,
            'failed': self.failed,
            'total_raw_bytes': self.total_raw_bytes,
            'total_packaged_bytes': self.total_packaged_bytes,
            'compression_ratio': round(self.compression_ratio, 4),
            'outcomes': [outcome.to_dict() for outcome in self.outcomes],
            'errors': list(self.errors),
            'classified_errors': [error.to_dict() for error in self.classified_errors],
            'aborted': self.aborted,
        }


def _duration_ms(started_at: datetime, finished_at: datetime) -> int:
    return int((finished_at - started_at).total_seconds() * 1000)


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    data_type: str
    nullable: bool
    default: Optional[str] = None
    primary_key: bool = False
    foreign_key: bool = False


@dataclass(frozen=True)
class TableSchema:
    name: str
    columns: Tuple[ColumnInfo, ...]
    row_count: int
    analyzed: bool = True


@dataclass(frozen=True)
class DatabaseMetadata:
    database_name: str
    exported_at: datetime
    tables: Tuple[TableSchema, ...]

    @property
    def total_tables(self) -> int:
        return len(self.tables)

    @property
    def total_rows(self) -> int:
        return sum(table.row_count for table in self.tables)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'database_name': self.database_name,
            'exported_at': self.exported_at.isoformat(),
            'total_tables': self.total_tables,
            'total_rows': self.total_rows,
            'tables': [
                {
                    'name': table.name,
                    'row_count': table.row_count,
                    'analyzed': table.analyzed,
                    'columns': [
                        {
                            'name': column.name,
                            'data_type': column.data_type,
                            'nullable': column.nullable,
                            'default': column.default,
                            'primary_key': column.primary_key,
                            'foreign_key': column.foreign_key,
                        }
                        for column in table.columns
                    ],
                }
                for table in self.tables
            ],
        }


@dataclass(frozen=True)
class BackupSettings:
    """Typed configuration consumed by the orchestrator."""

    formats: Tuple[ExportFormat, ...] = (ExportFormat.SQL, ExportFormat.JSON)
    base_name: str = 'database_backup'
    compression: CompressionOptions = CompressionOptions()
    naming: NamingOptions = NamingOptions()
    notifications: NotificationOptions = NotificationOptions()
    upload: UploadOptions = UploadOptions()
    database_retry_attempts: int = 3
    upload_retry_attempts: int = 4
    notification_retry_attempts: int = 3
    output_directory: str = './backup-files'
    upload_fail_fast: bool = False

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> 'BackupSettings':
        """
        Build settings from a Flask config mapping.

        Args:
            config: Mapping with the BACKUP_*, NOTIFICATION_* and *_RETRY_ATTEMPTS keys

        Returns:
            BackupSettings instance

        Raises:
            ValueError: If a format name is not supported
        """
        formats = config.get('BACKUP_FORMATS') or 'sql,json'
        if isinstance(formats, str):
            formats = [name for name in formats.split(',') if name.strip()]

        recipients = config.get('EMAIL_TO') or ()
        if isinstance(recipients, str):
            recipients = [address.strip() for address in recipients.split(',') if address.strip()]

        compression_enabled = _as_bool(config.get('BACKUP_COMPRESSION', True))

        return cls(
            formats=tuple(ExportFormat.parse(name) for name in formats),
            base_name=config.get('BACKUP_BASE_NAME') or 'database_backup',
            compression=CompressionOptions(
                enabled=compression_enabled,
                level=int(config.get('BACKUP_COMPRESSION_LEVEL', 6)),
                algorithm=config.get('BACKUP_COMPRESSION_ALGORITHM') or 'gzip',
            ),
            notifications=NotificationOptions(
                send_on_success=_as_bool(config.get('NOTIFICATION_ON_SUCCESS', True)),
                send_on_failure=_as_bool(config.get('NOTIFICATION_ON_FAILURE', True)),
                send_on_partial=_as_bool(config.get('NOTIFICATION_ON_PARTIAL', True)),
                recipients=tuple(recipients),
                include_details=_as_bool(config.get('NOTIFICATION_INCLUDE_DETAILS', True)),
            ),
            database_retry_attempts=int(config.get('DATABASE_RETRY_ATTEMPTS', 3)),
            upload_retry_attempts=int(config.get('UPLOAD_RETRY_ATTEMPTS', 4)),
            notification_retry_attempts=int(config.get('NOTIFICATION_RETRY_ATTEMPTS', 3)),
            output_directory=config.get('BACKUP_OUTPUT_DIR') or './backup-files',
            upload_fail_fast=_as_bool(config.get('UPLOAD_FAIL_FAST', False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'formats': [fmt.value for fmt in self.formats],
            'base_name': self.base_name,
            'compression': self.compression.enabled,
            'compression_level': self.compression.level,
            'recipients': list(self.notifications.recipients),
            'send_on_success': self.notifications.send_on_success,
            'send_on_partial': self.notifications.send_on_partial,
            'send_on_failure': self.notifications.send_on_failure,
            'database_retry_attempts': self.database_retry_attempts,
            'upload_retry_attempts': self.upload_retry_attempts,
            'notification_retry_attempts': self.notification_retry_attempts,
            'output_directory': self.output_directory,
            'upload_fail_fast': self.upload_fail_fast,
        }


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() not in ('false', '0', 'no', 'off', '')


class Exporter(Protocol):
    def check_connection(self) -> None: ...

    def discover(self) -> DatabaseMetadata: ...

    def export_format(self, fmt: ExportFormat, metadata: DatabaseMetadata) -> bytes: ...


class RemoteStore(Protocol):
    def test_connection(self) -> bool: ...

    def upload(self, content: bytes, metadata: Artifact, options: UploadOptions) -> UploadResult: ...


class Notifier(Protocol):
    def verify_connection(self) -> None: ...

    def notify_success(self, summary: RunSummary, options: NotificationOptions) -> None: ...

    def notify_partial(self, summary: RunSummary, options: NotificationOptions) -> None: ...

    def notify_failure(self, summary: RunSummary, options: NotificationOptions) -> None: ...


class LocalFS(Protocol):
    def write(self, filename: str, content: bytes) -> str: ...

    def read(self, path: str) -> bytes: ...

    def delete(self, path: str) -> None: ...
