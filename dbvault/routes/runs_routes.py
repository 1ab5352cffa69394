"""
Backup run routes - view run history and trigger backups.
"""

from datetime import datetime, timedelta

from flask import Blueprint, jsonify, request

from dbvault.backup.executor import execute_backup_run
from dbvault.models import BackupRun
from dbvault.scheduler import get_scheduled_jobs, is_scheduler_running, trigger_backup_now


bp = Blueprint('runs', __name__, url_prefix='/api/runs')

VALID_STATUSES = ['running', 'success', 'partial', 'failure']


@bp.route('/', methods=['GET'])
def list_runs():
    """
    Get backup runs with filtering and pagination.

    Query params:
        - status: Filter by status (running/success/partial/failure)
        - trigger: Filter by trigger (manual/scheduled/cli/api)
        - days: Only show runs from last N days
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with run records and metadata
    """
    status_filter = request.args.get('status')
    trigger_filter = request.args.get('trigger')
    days_filter = request.args.get('days', type=int)
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    limit = max(1, min(limit, 200))
    offset = max(0, offset)

    query = BackupRun.query

    if status_filter:
        if status_filter not in VALID_STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    if trigger_filter:
        query = query.filter(BackupRun.trigger == trigger_filter)

    if days_filter and days_filter > 0:
        cutoff_date = datetime.now() - timedelta(days=days_filter)
        query = query.filter(BackupRun.started_at >= cutoff_date)

    total_count = query.count()

    runs = query.order_by(
        BackupRun.started_at.desc(), BackupRun.id.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [run.to_dict() for run in runs],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/<int:run_id>', methods=['GET'])
def get_run(run_id):
    """
    Get one run with its artifacts and logs.

    Args:
        run_id: BackupRun ID

    Returns:
        JSON with the full run record
    """
    run = BackupRun.query.get_or_404(run_id)

    data = run.to_dict(include_logs=True)
    data['artifacts'] = [artifact.to_dict() for artifact in run.artifacts]
    return jsonify(data)


@bp.route('/<int:run_id>/logs', methods=['GET'])
def get_run_logs(run_id):
    run = BackupRun.query.get_or_404(run_id)

    return jsonify({
        'id': run.id,
        'status': run.status,
        'logs': run.logs or 'No logs available'
    })


@bp.route('/trigger', methods=['POST'])
def trigger_run():
    """
    Start a backup.

    Queued on the scheduler when it runs in this process, otherwise run
    synchronously and the finished run is returned.

    Returns:
        202 with the queued job ID, or 201 with the run record
    """
    try:
        if is_scheduler_running():
            job_id = trigger_backup_now()
            return jsonify({'message': 'Backup queued', 'job_id': job_id}), 202

        run = execute_backup_run('api')
        return jsonify(run.to_dict()), 201

    except ValueError as e:
        return jsonify({'error': str(e)}), 400
    except Exception as e:
        return jsonify({'error': str(e)}), 500


@bp.route('/schedule', methods=['GET'])
def get_schedule():
    return jsonify({
        'running': is_scheduler_running(),
        'jobs': get_scheduled_jobs()
    })
