"""
Backup orchestrator - runs one backup from connectivity checks to cleanup.

Workflow:
1. Initializing: verify database, object store and mail transport
2. Exporting: discover the database, export and package every format,
   persist each artifact locally
3. Uploading: ship every artifact; one failed upload never stops the others
4. Aggregating: derive the run status from upload outcomes
5. Notifying: send the notification matching the status
6. Cleaning up: delete local artifact files

A failure while initializing or exporting aborts the run. The failure
summary is still sent as a notification and local files are still removed.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional

from .errors import ErrorClassifier, ErrorHistory, error_message
from .notifier import dispatch_notification
from .packaging import package
from .retry import RetryExhaustedError, RetryPolicy, RetryProfiles
from .types import (
    Artifact,
    BackupSettings,
    ClassifiedError,
    Exporter,
    LocalFS,
    Notifier,
    RemoteStore,
    RunState,
    RunStatus,
    RunSummary,
    UploadOutcome,
)


logger = logging.getLogger(__name__)


TRANSITIONS = {
    RunState.IDLE: (RunState.INITIALIZING,),
    RunState.INITIALIZING: (RunState.EXPORTING, RunState.ABORTED),
    RunState.EXPORTING: (RunState.UPLOADING, RunState.ABORTED),
    # ABORTED from the later stages only when the run is interrupted by an
    # unexpected exception
    RunState.UPLOADING: (RunState.AGGREGATING, RunState.ABORTED),
    RunState.AGGREGATING: (RunState.NOTIFYING, RunState.ABORTED),
    RunState.NOTIFYING: (RunState.CLEANING_UP, RunState.ABORTED),
    RunState.CLEANING_UP: (RunState.DONE, RunState.ABORTED),
    RunState.DONE: (),
    RunState.ABORTED: (),
}

TERMINAL_STATES = (RunState.DONE, RunState.ABORTED)


class RunAborted(Exception):
    """Raised inside a run when a stage fails and the run cannot continue."""

    def __init__(self, message: str, cause: BaseException):
        super().__init__(message)
        self.cause = cause


class BackupOrchestrator:
    """
    Sequences export, packaging, upload, notification and cleanup for one run.
    """

    def __init__(
        self,
        exporter: Exporter,
        store: RemoteStore,
        notifier: Notifier,
        local_storage: LocalFS,
        settings: BackupSettings = BackupSettings(),
        retry_policy: Optional[RetryPolicy] = None,
        profiles: Optional[RetryProfiles] = None,
        error_history: Optional[ErrorHistory] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize orchestrator.

        Args:
            exporter: Source database exporter
            store: Remote object store
            notifier: Notification transport
            local_storage: Working directory for artifact files
            settings: Backup settings
            retry_policy: Policy used for every retried call
            profiles: Retry profiles; attempt counts are taken from settings
            error_history: History shared with the exporter's classifier
            clock: Returns the current time (defaults to datetime.now)
        """
        self.exporter = exporter
        self.store = store
        self.notifier = notifier
        self.local_storage = local_storage
        self.settings = settings
        self.retry_policy = retry_policy or RetryPolicy()
        self.profiles = (profiles or RetryProfiles()).with_attempts(
            database=settings.database_retry_attempts,
            object_store=settings.upload_retry_attempts,
            notification=settings.notification_retry_attempts,
        )
        self.error_history = error_history if error_history is not None else ErrorHistory()
        self.classifier = ErrorClassifier(self.error_history)
        self._clock = clock or datetime.now

        self.state = RunState.IDLE
        self.logs: List[str] = []
        self.artifacts: List[Artifact] = []
        self.errors: List[str] = []
        self.notification_path: Optional[RunStatus] = None
        self.notification_error: Optional[str] = None

    def _transition(self, new_state: RunState):
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal state transition: {self.state.value} -> {new_state.value}")
        logger.debug(f"Backup run state: {self.state.value} -> {new_state.value}")
        self.state = new_state

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: Level for the module logger
        """
        timestamp = self._clock().strftime('%Y-%m-%d %H:%M:%S')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, message)

    def _classify(self, error: BaseException, operation: str) -> ClassifiedError:
        # classify the underlying failure, not the retry wrapper
        if isinstance(error, RetryExhaustedError):
            error = error.last_error
        return self.classifier.classify(error, operation)

    def _reset(self):
        if self.state not in (RunState.IDLE,) + TERMINAL_STATES:
            raise RuntimeError(f"Backup run already in progress (state: {self.state.value})")
        self.state = RunState.IDLE
        self.logs = []
        self.artifacts = []
        self.errors = []
        self.notification_path = None
        self.notification_error = None
        self.error_history.clear()

    def run(self) -> RunSummary:
        """
        Execute one backup run.

        Returns:
            RunSummary for the run. Failures are reported in the summary,
            never raised.

        Raises:
            RuntimeError: If a run is already in progress on this instance
            Exception: An unexpected failure, re-raised after local files are
                cleaned up and the run is marked aborted
        """
        self._reset()
        started_at = self._clock()

        formats = ', '.join(fmt.value for fmt in self.settings.formats)
        self._log(f"Starting database backup (formats: {formats})")
        self._log(f"Compression: {'enabled' if self.settings.compression.enabled else 'disabled'}")

        try:
            return self._execute(started_at)
        finally:
            # an unexpected exception must not leave files behind or the
            # orchestrator stuck in a non-terminal state
            if self.state not in TERMINAL_STATES:
                self._log(f"Backup run interrupted during {self.state.value}", logging.ERROR)
                self._cleanup()
                self._transition(RunState.ABORTED)

    def _execute(self, started_at: datetime) -> RunSummary:
        try:
            self._transition(RunState.INITIALIZING)
            self._initialize()

            self._transition(RunState.EXPORTING)
            self._export(started_at)
        except RunAborted as e:
            return self._abort(started_at, e)

        self._transition(RunState.UPLOADING)
        outcomes = self._upload()

        self._transition(RunState.AGGREGATING)
        summary = RunSummary.from_outcomes(
            outcomes,
            started_at=started_at,
            finished_at=self._clock(),
            errors=self.errors,
            classified_errors=self.error_history.entries(),
        )
        self._log(
            f"Backup {summary.status.value}: {summary.succeeded}/{summary.total_artifacts} files uploaded "
            f"in {summary.duration_ms / 1000:.1f}s"
        )

        self._transition(RunState.NOTIFYING)
        self._notify(summary)

        self._transition(RunState.CLEANING_UP)
        self._cleanup()

        self._transition(RunState.DONE)
        return summary

    def _initialize(self):
        """Verify every external dependency before producing artifacts."""
        self._log('Initializing services')
        profiles = self.profiles

        checks = [
            ('Database connection check', self.exporter.check_connection, profiles.database),
            ('Object store connection check', self.store.test_connection, profiles.object_store),
        ]
        if self.settings.notifications.recipients:
            checks.append(('Mail transport check', self.notifier.verify_connection, profiles.notification))
        else:
            self._log('No notification recipients configured, skipping mail transport check')

        for label, check, config in checks:
            try:
                self.retry_policy.run(check, config, label)
            except Exception as e:
                self._classify(e, label)
                raise RunAborted(f"Service initialization failed: {error_message(e)}", e)
            self._log(f"{label} passed")

    def _export(self, started_at: datetime):
        """Export, package and persist every requested format in order."""
        self._log('Discovering database')

        try:
            metadata = self.exporter.discover()
        except Exception as e:
            self._classify(e, 'Database discovery')
            raise RunAborted(f"Database discovery failed: {error_message(e)}", e)

        self._log(f"Found {metadata.total_tables} tables with {metadata.total_rows} rows")

        for fmt in self.settings.formats:
            label = fmt.value.upper()
            self._log(f"Exporting {label} format")

            try:
                raw = self.exporter.export_format(fmt, metadata)
                packaged = package(
                    raw,
                    self.settings.base_name,
                    fmt,
                    self.settings.compression,
                    self.settings.naming,
                    now=started_at,
                )
                artifact = packaged.metadata
                artifact.local_path = self.local_storage.write(artifact.name, packaged.content)
            except Exception as e:
                self._classify(e, f"{label} export")
                raise RunAborted(f"{label} export failed: {error_message(e)}", e)

            self.artifacts.append(artifact)
            self._log(f"{label} export completed: {artifact.name} ({artifact.stored_size} bytes)")

    def _upload(self) -> List[UploadOutcome]:
        """
        Upload every artifact in order.

        Returns:
            One UploadOutcome per artifact, in artifact order
        """
        outcomes = []
        skip_rest = False

        for artifact in self.artifacts:
            if skip_rest:
                message = 'skipped after an earlier upload failure'
                self.errors.append(f"Upload failed for {artifact.name}: {message}")
                outcomes.append(UploadOutcome(artifact=artifact, success=False, error=message))
                self._log(f"Skipping upload of {artifact.name}", logging.WARNING)
                continue

            outcome = self._upload_one(artifact)
            outcomes.append(outcome)

            if not outcome.success and self.settings.upload_fail_fast:
                skip_rest = True

        return outcomes

    def _upload_one(self, artifact: Artifact) -> UploadOutcome:
        label = f"Upload {artifact.name}"
        self._log(f"Uploading {artifact.name}")

        try:
            content = self.local_storage.read(artifact.local_path)
            outcome = self.retry_policy.execute(
                lambda: self.store.upload(content, artifact, self.settings.upload),
                self.profiles.object_store,
                label,
            )
            if not outcome.success:
                raise RetryExhaustedError(label, outcome.attempts, outcome.error)
        except Exception as e:
            self._classify(e, label)
            message = error_message(e)
            self.errors.append(f"Upload failed for {artifact.name}: {message}")
            self._log(f"Upload failed for {artifact.name}: {message}", logging.ERROR)
            return UploadOutcome(
                artifact=artifact,
                success=False,
                error=message,
                attempts=getattr(e, 'attempts', 0),
            )

        result = outcome.result
        self._log(f"Uploaded {artifact.name} to {result.remote_url}")
        return UploadOutcome(
            artifact=artifact,
            success=True,
            remote_location=result.remote_url,
            remote_id=result.remote_id,
            attempts=outcome.attempts,
        )

    def _notify(self, summary: RunSummary):
        """Send the notification for a summary; failures are logged, never raised."""
        try:
            self.notification_path = dispatch_notification(
                summary,
                self.notifier,
                self.settings.notifications,
                self.retry_policy,
                self.profiles.notification,
            )
        except Exception as e:
            self.notification_error = error_message(e)
            self._log(f"Failed to send {summary.status.value} notification: {e}", logging.ERROR)
            return

        if self.notification_path is not None:
            self._log(f"Sent {self.notification_path.value} notification")

    def _cleanup(self):
        """Delete local artifact files; failures are logged, never raised."""
        for artifact in self.artifacts:
            if not artifact.local_path:
                continue
            try:
                self.local_storage.delete(artifact.local_path)
                self._log(f"Cleaned up {artifact.name}")
            except Exception as e:
                self._log(f"Warning: Failed to clean up {artifact.local_path}: {e}", logging.WARNING)

    def _abort(self, started_at: datetime, error: RunAborted) -> RunSummary:
        self._transition(RunState.ABORTED)
        self.errors.append(f"Backup process failed: {error}")
        self._log(f"Backup process failed: {error}", logging.ERROR)

        summary = RunSummary.aborted_run(
            started_at=started_at,
            finished_at=self._clock(),
            errors=self.errors,
            classified_errors=self.error_history.entries(),
        )

        self._notify(summary)
        self._cleanup()
        return summary
