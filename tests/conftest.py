"""
Shared pytest fixtures for dbvault tests.

This module provides fixtures for:
- Flask app, test client and CLI runner
- Database setup with in-memory SQLite
- A small source database to export
- Fake exporter, object store and notifier for orchestrator tests
- Mock fixtures for external services (S3, scheduler)
"""

import json
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws
from sqlalchemy import create_engine, text

from dbvault import create_app, db as _db
from dbvault.backup.orchestrator import BackupOrchestrator
from dbvault.backup.retry import RetryPolicy, RetryProfiles
from dbvault.backup.storage import LocalStorage
from dbvault.backup.types import (
    BackupSettings,
    ColumnInfo,
    DatabaseMetadata,
    ExportFormat,
    NotificationOptions,
    TableSchema,
    UploadResult,
)
from dbvault.models import BackupArtifact, BackupRun


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    app = create_app('testing')

    app.config.update({
        'BACKUP_OUTPUT_DIR': str(tmp_path / 'backup-files'),
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def source_engine(tmp_path):
    """
    SQLite source database with two tables.

    - members: 10 rows
    - visits: 0 rows (references members)
    """
    engine = create_engine(f"sqlite:///{tmp_path / 'source.db'}")

    with engine.begin() as conn:
        conn.execute(text(
            "CREATE TABLE members ("
            "id INTEGER PRIMARY KEY, "
            "name VARCHAR(100) NOT NULL, "
            "email VARCHAR(255), "
            "joined_at DATE)"
        ))
        conn.execute(text(
            "CREATE TABLE visits ("
            "id INTEGER PRIMARY KEY, "
            "member_id INTEGER NOT NULL REFERENCES members(id), "
            "visited_at TIMESTAMP)"
        ))
        for i in range(1, 11):
            conn.execute(
                text("INSERT INTO members (id, name, email, joined_at) VALUES (:id, :name, :email, :joined)"),
                {'id': i, 'name': f"Member {i}", 'email': f"member{i}@example.com", 'joined': '2024-01-15'}
            )

    yield engine

    engine.dispose()


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('dbvault.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance


class FakeExporter:
    """Exporter returning canned, compressible content for two tables."""

    def __init__(self, connection_error=None, discover_error=None, format_errors=None):
        self.connection_error = connection_error
        self.discover_error = discover_error
        self.format_errors = format_errors or {}
        self.connection_checks = 0
        self.exported = []

    def check_connection(self):
        self.connection_checks += 1
        if self.connection_error is not None:
            raise self.connection_error

    def discover(self):
        if self.discover_error is not None:
            raise self.discover_error
        columns = (ColumnInfo(name='id', data_type='INTEGER', nullable=False, primary_key=True),)
        return DatabaseMetadata(
            database_name='gym',
            exported_at=datetime(2024, 1, 15, 12, 0, 0),
            tables=(
                TableSchema(name='members', columns=columns, row_count=10),
                TableSchema(name='visits', columns=columns, row_count=0),
            ),
        )

    def export_format(self, fmt, metadata):
        if fmt in self.format_errors:
            raise self.format_errors[fmt]
        self.exported.append(fmt)
        if fmt is ExportFormat.JSON:
            rows = [{'id': i, 'name': f"Member {i}"} for i in range(1, 11)]
            return json.dumps({'data': {'members': rows, 'visits': []}}, indent=2).encode('utf-8') * 20
        if fmt is ExportFormat.XLSX:
            return b'PK\x03\x04' + bytes(range(256)) * 4
        return b''.join(
            f"INSERT INTO members (id, name) VALUES ({i}, 'Member {i}');\n".encode('utf-8')
            for i in range(1, 11)
        ) * 20


class FakeStore:
    """Object store recording uploads; fails for names containing a key of `failures`."""

    def __init__(self, connection_error=None, failures=None):
        self.connection_error = connection_error
        self.failures = failures or {}
        self.uploads = []
        self.attempts = {}

    def test_connection(self):
        if self.connection_error is not None:
            raise self.connection_error
        return True

    def upload(self, content, metadata, options):
        self.attempts[metadata.name] = self.attempts.get(metadata.name, 0) + 1
        for marker, error in self.failures.items():
            if marker in metadata.name:
                raise error
        self.uploads.append((metadata.name, content))
        key = f"backups/{metadata.name}"
        return UploadResult(remote_id=key, remote_url=f"s3://test-bucket/{key}", size=len(content))


class FakeNotifier:
    """Notifier recording which path was invoked."""

    def __init__(self, verify_error=None, send_error=None):
        self.verify_error = verify_error
        self.send_error = send_error
        self.sent = []
        self.send_attempts = 0

    def verify_connection(self):
        if self.verify_error is not None:
            raise self.verify_error

    def _send(self, path, summary, options):
        self.send_attempts += 1
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((path, summary))

    def notify_success(self, summary, options):
        self._send('success', summary, options)

    def notify_partial(self, summary, options):
        self._send('partial', summary, options)

    def notify_failure(self, summary, options):
        self._send('failure', summary, options)


@pytest.fixture
def fake_exporter():
    return FakeExporter()


@pytest.fixture
def fake_store():
    return FakeStore()


@pytest.fixture
def fake_notifier():
    return FakeNotifier()


@pytest.fixture
def backup_settings(tmp_path):
    """Settings for sql+json with compression and one recipient."""
    return BackupSettings(
        formats=(ExportFormat.SQL, ExportFormat.JSON),
        base_name='gym_database_backup',
        notifications=NotificationOptions(recipients=('ops@example.com',)),
        output_directory=str(tmp_path / 'backup-files'),
    )


@pytest.fixture
def make_orchestrator(tmp_path, fake_exporter, fake_store, fake_notifier, backup_settings):
    """
    Factory for orchestrators wired to fakes with zero-delay retries.

    Keyword arguments override the default collaborators and settings.
    """
    def _make(**overrides):
        settings = overrides.pop('settings', backup_settings)
        return BackupOrchestrator(
            exporter=overrides.pop('exporter', fake_exporter),
            store=overrides.pop('store', fake_store),
            notifier=overrides.pop('notifier', fake_notifier),
            local_storage=overrides.pop('local_storage', LocalStorage(settings.output_directory)),
            settings=settings,
            retry_policy=RetryPolicy(sleep=lambda seconds: None),
            profiles=RetryProfiles.immediate(),
            **overrides
        )

    return _make


@pytest.fixture(scope='function')
def backup_run(db):
    """
    Create a partial backup run with one uploaded and one failed artifact.
    """
    run = BackupRun(
        trigger='scheduled',
        status='partial',
        started_at=datetime.now(),
        completed_at=datetime.now(),
        duration_ms=4200,
        total_artifacts=2,
        succeeded=1,
        failed=1,
        total_raw_bytes=20480,
        total_packaged_bytes=4096,
        compression_ratio=5.0,
        errors=json.dumps(['Upload failed for gym_json.json.gz: rate limit exceeded']),
        notification='partial',
        logs='[2024-01-15 12:00:00] Starting database backup\n[2024-01-15 12:00:04] Backup partial'
    )
    run.artifacts.append(BackupArtifact(
        position=0,
        name='gym_sql.sql.gz',
        format='sql',
        raw_size=10240,
        packaged_size=2048,
        compressed=True,
        checksum='a' * 64,
        upload_status='success',
        remote_location='s3://test-bucket/backups/gym_sql.sql.gz',
        remote_id='backups/gym_sql.sql.gz',
        attempts=1,
    ))
    run.artifacts.append(BackupArtifact(
        position=1,
        name='gym_json.json.gz',
        format='json',
        raw_size=10240,
        packaged_size=2048,
        compressed=True,
        checksum='b' * 64,
        upload_status='failed',
        attempts=4,
        error='rate limit exceeded',
    ))
    db.session.add(run)
    db.session.commit()
    return run
