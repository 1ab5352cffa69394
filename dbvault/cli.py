"""
Flask CLI commands.

    flask --app dbvault backup [--format sql --format json]
    flask --app dbvault prune [--days 30]
    flask --app dbvault show-config
"""

import click
from flask import current_app
from flask.cli import with_appcontext

from dbvault.backup.executor import build_orchestrator, execute_backup_run
from dbvault.backup.retention import enforce_retention_policy
from dbvault.backup.retry import RetryExhaustedError
from dbvault.config import DISPLAY_KEYS, SECRET_KEYS


@click.command('backup')
@click.option('--format', 'formats', multiple=True, help='Export format (repeatable); overrides BACKUP_FORMATS')
@with_appcontext
@click.pass_context
def backup_command(ctx, formats):
    """Run one backup now. Exits non-zero only if the run failed."""
    config = dict(current_app.config)
    if formats:
        config['BACKUP_FORMATS'] = ','.join(formats)

    try:
        orchestrator = build_orchestrator(config)
    except ValueError as e:
        raise click.ClickException(str(e))

    run = execute_backup_run('cli', orchestrator)

    click.echo(f"Backup run {run.id}: {run.status}")
    click.echo(f"Files uploaded: {run.succeeded}/{run.total_artifacts}")
    for artifact in run.artifacts:
        location = artifact.remote_location or artifact.error
        click.echo(f"  [{artifact.upload_status}] {artifact.name} {location}")
    for error in run.error_list:
        click.echo(f"Error: {error}", err=True)

    ctx.exit(0 if run.status != 'failure' else 1)


@click.command('prune')
@click.option('--days', type=int, help='Retention in days; overrides BACKUP_RETENTION_DAYS')
@click.option('--keep', type=int, help='Newest backups always kept; overrides BACKUP_RETENTION_KEEP')
@with_appcontext
@click.pass_context
def prune_command(ctx, days, keep):
    """Delete expired backups from the bucket. Exits non-zero if any delete failed."""
    config = dict(current_app.config)
    if days is not None:
        config['BACKUP_RETENTION_DAYS'] = days
    if keep is not None:
        config['BACKUP_RETENTION_KEEP'] = keep

    try:
        result = enforce_retention_policy(config)
    except (ValueError, RetryExhaustedError) as e:
        raise click.ClickException(str(e))

    if result is None:
        click.echo('Retention disabled (BACKUP_RETENTION_DAYS=0), nothing to do')
        return

    click.echo(f"Deleted {len(result.deleted)} of {result.listed} backups")
    for key in result.deleted:
        click.echo(f"  {key}")
    for error in result.errors:
        click.echo(f"Error: {error}", err=True)

    ctx.exit(1 if result.errors else 0)


@click.command('show-config')
@with_appcontext
def show_config_command():
    """Print the effective backup configuration with secrets masked."""
    for key in DISPLAY_KEYS:
        value = current_app.config.get(key)
        if key in SECRET_KEYS and value:
            value = '********'
        click.echo(f"{key}={value if value is not None else ''}")


def register_commands(app):
    app.cli.add_command(backup_command)
    app.cli.add_command(prune_command)
    app.cli.add_command(show_config_command)
