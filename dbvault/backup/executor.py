"""
Backup executor - runs the orchestrator and records the run.

Workflow:
1. Create BackupRun record (status: running)
2. Run the backup orchestrator
3. Store the summary, one BackupArtifact per artifact and the run log
4. Update BackupRun (status: success/partial/failure)
"""

import json
import logging
from datetime import datetime
from typing import Mapping, Any, Optional

from flask import current_app
from sqlalchemy import create_engine

from dbvault import db
from dbvault.models import BackupArtifact, BackupRun
from .errors import ErrorClassifier, ErrorHistory
from .exporter import DatabaseExporter
from .notifier import EmailNotifier
from .orchestrator import BackupOrchestrator
from .retry import RetryProfiles
from .storage import LocalStorage, S3Storage
from .types import BackupSettings, RunSummary


logger = logging.getLogger(__name__)


def build_store(config: Mapping[str, Any]) -> S3Storage:
    """
    Build the S3 store for the configured bucket.

    Raises:
        ValueError: If the bucket is not configured
    """
    if not config.get('S3_BUCKET'):
        raise ValueError('S3_BUCKET is not configured')

    return S3Storage(
        access_key=config.get('AWS_ACCESS_KEY_ID'),
        secret_key=config.get('AWS_SECRET_ACCESS_KEY'),
        bucket_name=config['S3_BUCKET'],
        region=config.get('S3_REGION') or 'us-east-1',
        prefix=config.get('S3_PREFIX') or 'backups',
        endpoint_url=config.get('S3_ENDPOINT_URL'),
    )


def build_orchestrator(config: Mapping[str, Any]) -> BackupOrchestrator:
    """
    Build an orchestrator wired to the configured database, bucket and SMTP server.

    Args:
        config: Flask config mapping

    Returns:
        BackupOrchestrator ready to run

    Raises:
        ValueError: If the source database or bucket is not configured
    """
    if not config.get('SOURCE_DATABASE_URL'):
        raise ValueError('SOURCE_DATABASE_URL is not configured')
    if not config.get('S3_BUCKET'):
        raise ValueError('S3_BUCKET is not configured')

    settings = BackupSettings.from_config(config)
    profiles = RetryProfiles().with_attempts(database=settings.database_retry_attempts)

    history = ErrorHistory()
    exporter = DatabaseExporter(
        create_engine(config['SOURCE_DATABASE_URL']),
        classifier=ErrorClassifier(history),
        retry_config=profiles.database,
        timeout_ms=int(config.get('DATABASE_TIMEOUT_MS', 30000)) or None,
    )

    store = build_store(config)

    notifier = EmailNotifier(
        host=config.get('SMTP_HOST'),
        port=int(config.get('SMTP_PORT') or 587),
        use_tls=bool(config.get('SMTP_USE_TLS', True)),
        username=config.get('SMTP_USERNAME'),
        password=config.get('SMTP_PASSWORD'),
        sender=config.get('EMAIL_FROM'),
    )

    return BackupOrchestrator(
        exporter=exporter,
        store=store,
        notifier=notifier,
        local_storage=LocalStorage(settings.output_directory),
        settings=settings,
        error_history=history,
    )


class RunExecutor:
    """
    Executes one orchestrator run and persists it as a BackupRun.
    """

    def __init__(self, orchestrator: BackupOrchestrator, trigger: str = 'manual'):
        """
        Initialize run executor.

        Args:
            orchestrator: Orchestrator to run
            trigger: What started the run (manual, scheduled, cli, api)
        """
        self.orchestrator = orchestrator
        self.trigger = trigger
        self.run_record = None
        self.summary: Optional[RunSummary] = None

    def execute(self) -> BackupRun:
        """
        Execute the backup run.

        Returns:
            BackupRun record with execution results
        """
        self.run_record = BackupRun(
            trigger=self.trigger,
            status='running',
            started_at=datetime.now()
        )
        db.session.add(self.run_record)
        db.session.commit()

        logger.info(f"Backup run {self.run_record.id} started (trigger: {self.trigger})")

        try:
            self.summary = self.orchestrator.run()
            self._record_summary(self.summary)
        except Exception as e:
            # orchestrator reports pipeline failures in the summary; this is anything else
            logger.exception(f"Backup run {self.run_record.id} crashed")
            self.run_record.status = 'failure'
            self.run_record.aborted = True
            self.run_record.completed_at = datetime.now()
            self.run_record.errors = json.dumps([f"Backup process failed: {e}"])

        finally:
            self.run_record.logs = '\n'.join(self.orchestrator.logs)
            db.session.commit()

        logger.info(f"Backup run {self.run_record.id} finished with status: {self.run_record.status}")
        return self.run_record

    def _record_summary(self, summary: RunSummary):
        record = self.run_record
        record.status = summary.status.value
        record.started_at = summary.started_at
        record.completed_at = summary.finished_at
        record.duration_ms = summary.duration_ms
        record.total_artifacts = summary.total_artifacts
        record.succeeded = summary.succeeded
        record.failed = summary.failed
        record.total_raw_bytes = summary.total_raw_bytes
        record.total_packaged_bytes = summary.total_packaged_bytes
        record.compression_ratio = summary.compression_ratio
        record.aborted = summary.aborted
        record.errors = json.dumps(list(summary.errors))

        if self.orchestrator.notification_error:
            record.notification = 'error'
            record.notification_error = self.orchestrator.notification_error
        elif self.orchestrator.notification_path is not None:
            record.notification = self.orchestrator.notification_path.value
        else:
            record.notification = 'skipped'

        for position, outcome in enumerate(summary.outcomes):
            artifact = outcome.artifact
            record.artifacts.append(BackupArtifact(
                position=position,
                name=artifact.name,
                format=artifact.format.value,
                raw_size=artifact.raw_size,
                packaged_size=artifact.packaged_size,
                compressed=artifact.compressed,
                checksum=artifact.checksum,
                upload_status='success' if outcome.success else 'failed',
                remote_location=outcome.remote_location,
                remote_id=outcome.remote_id,
                attempts=outcome.attempts,
                error=outcome.error,
            ))


def execute_backup_run(trigger: str = 'manual', orchestrator: Optional[BackupOrchestrator] = None) -> BackupRun:
    """
    Execute a backup run with the current app's configuration.

    Args:
        trigger: What started the run
        orchestrator: Pre-built orchestrator (built from app config if None)

    Returns:
        BackupRun record with execution results

    Raises:
        ValueError: If the backup is not configured
    """
    if orchestrator is None:
        orchestrator = build_orchestrator(current_app.config)

    executor = RunExecutor(orchestrator, trigger)
    return executor.execute()
