"""
Unit tests for CLI commands (dbvault/cli.py).
"""

from unittest.mock import patch

from dbvault.backup.retention import RetentionResult
from dbvault.backup.storage import StorageError
from dbvault.models import BackupRun

from conftest import FakeExporter, FakeStore


class TestBackupCommand:
    """Test `flask backup`."""

    def test_successful_run(self, runner, db, make_orchestrator):
        with patch('dbvault.cli.build_orchestrator', return_value=make_orchestrator()):
            result = runner.invoke(args=['backup'])

        assert result.exit_code == 0
        assert 'success' in result.output
        assert 'Files uploaded: 2/2' in result.output
        assert BackupRun.query.one().trigger == 'cli'

    def test_partial_run_exits_zero(self, runner, db, make_orchestrator):
        store = FakeStore(failures={'_json': StorageError('rate limit exceeded', status=429)})

        with patch('dbvault.cli.build_orchestrator', return_value=make_orchestrator(store=store)):
            result = runner.invoke(args=['backup'])

        assert result.exit_code == 0
        assert 'partial' in result.output
        assert 'Files uploaded: 1/2' in result.output

    def test_failed_run_exits_non_zero(self, runner, db, make_orchestrator):
        exporter = FakeExporter(connection_error=Exception('authentication failed'))

        with patch('dbvault.cli.build_orchestrator', return_value=make_orchestrator(exporter=exporter)):
            result = runner.invoke(args=['backup'])

        assert result.exit_code == 1
        assert 'failure' in result.output

    def test_format_option_overrides_config(self, runner, db, make_orchestrator):
        with patch('dbvault.cli.build_orchestrator', return_value=make_orchestrator()) as mock_build:
            runner.invoke(args=['backup', '--format', 'xlsx', '--format', 'sql'])

        config = mock_build.call_args[0][0]
        assert config['BACKUP_FORMATS'] == 'xlsx,sql'

    def test_unknown_format(self, runner, app, db):
        app.config.update({'SOURCE_DATABASE_URL': 'sqlite://', 'S3_BUCKET': 'test-bucket'})

        result = runner.invoke(args=['backup', '--format', 'csv'])

        assert result.exit_code != 0
        assert BackupRun.query.count() == 0

    def test_not_configured(self, runner, app, db):
        app.config['SOURCE_DATABASE_URL'] = None

        result = runner.invoke(args=['backup'])

        assert result.exit_code == 1
        assert 'SOURCE_DATABASE_URL is not configured' in result.output


class TestPruneCommand:
    """Test `flask prune`."""

    def test_prune(self, runner, app):
        result_obj = RetentionResult(listed=3, deleted=['backups/2023/01/01/db.sql.gz'])

        with patch('dbvault.cli.enforce_retention_policy', return_value=result_obj) as mock_enforce:
            result = runner.invoke(args=['prune', '--days', '30', '--keep', '2'])

        assert result.exit_code == 0
        assert 'Deleted 1 of 3 backups' in result.output
        assert 'backups/2023/01/01/db.sql.gz' in result.output
        config = mock_enforce.call_args[0][0]
        assert config['BACKUP_RETENTION_DAYS'] == 30
        assert config['BACKUP_RETENTION_KEEP'] == 2

    def test_failed_delete_exits_non_zero(self, runner, app):
        result_obj = RetentionResult(listed=1, errors=['Failed to delete S3 object backups/db.sql.gz: denied'])

        with patch('dbvault.cli.enforce_retention_policy', return_value=result_obj):
            result = runner.invoke(args=['prune'])

        assert result.exit_code == 1

    def test_disabled(self, runner, app):
        result = runner.invoke(args=['prune', '--days', '0'])

        assert result.exit_code == 0
        assert 'Retention disabled' in result.output

    def test_not_configured(self, runner, app):
        app.config['S3_BUCKET'] = None

        result = runner.invoke(args=['prune'])

        assert result.exit_code == 1
        assert 'S3_BUCKET is not configured' in result.output


class TestShowConfigCommand:
    """Test `flask show-config`."""

    def test_masks_secrets(self, runner, app):
        app.config.update({
            'AWS_SECRET_ACCESS_KEY': 'super-secret',
            'SMTP_PASSWORD': 'hunter2',
            'S3_BUCKET': 'test-bucket',
        })

        result = runner.invoke(args=['show-config'])

        assert result.exit_code == 0
        assert 'super-secret' not in result.output
        assert 'hunter2' not in result.output
        assert 'AWS_SECRET_ACCESS_KEY=********' in result.output
        assert 'S3_BUCKET=test-bucket' in result.output

    def test_unset_values_are_blank(self, runner, app):
        app.config['SMTP_PASSWORD'] = None

        result = runner.invoke(args=['show-config'])

        assert 'SMTP_PASSWORD=\n' in result.output
        assert f'BACKUP_FORMATS={app.config["BACKUP_FORMATS"]}' in result.output
