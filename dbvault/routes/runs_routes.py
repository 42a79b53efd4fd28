"""
Backup run routes - trigger backups, inspect runs, cancel and download.
"""

import logging
import os

from flask import Blueprint, current_app, jsonify, redirect, request, send_file

from dbvault import db
from dbvault.backup.destinations import get_registry
from dbvault.backup.errors import DestinationError, RunStateError
from dbvault.backup.executor import BackupExecutor, request_backup
from dbvault.backup.runs import RunRepository
from dbvault.models import BackupFile, BackupRun, RunStatus


logger = logging.getLogger(__name__)

bp = Blueprint('runs', __name__, url_prefix='/api')


def _isoformat(value):
    return value.isoformat() if value else None


def serialize_run(run: BackupRun, include_timeline: bool = False) -> dict:
    data = {
        'id': run.id,
        'data_source_id': run.data_source_id,
        'data_source_name': run.data_source.name if run.data_source else None,
        'status': run.status,
        'run_type': run.run_type,
        'created_at': _isoformat(run.created_at),
        'started_at': _isoformat(run.started_at),
        'completed_at': _isoformat(run.completed_at),
        'duration_seconds': run.duration_seconds(),
        'file_size_bytes': run.file_size_bytes,
        'destinations': run.destination_outcomes or {},
        'destination_counts': run.destination_counts(),
        'metadata': run.run_metadata or {},
        'warnings': run.warnings or [],
        'errors': run.errors or [],
        'cancellation_requested': run.cancellation_requested,
        'locked': run.locked,
        'files': [
            {
                'id': f.id,
                'destination_id': f.destination_id,
                'filename': f.filename,
                'path': f.path,
                'size_bytes': f.size_bytes,
                'checksum': f.checksum,
                'deleted': f.deleted_at is not None,
            }
            for f in run.files.order_by(BackupFile.id)
        ],
    }

    if include_timeline:
        data['timeline'] = [
            {
                'status': entry.status,
                'event': entry.event,
                'destination_id': entry.destination_id,
                'metadata': entry.entry_metadata or {},
                'created_at': _isoformat(entry.created_at),
            }
            for entry in run.timelines
        ]

    return data


@bp.route('/data-sources/<int:data_source_id>/backups', methods=['POST'])
def create_backup(data_source_id):
    """
    Trigger a manual backup for a data source.

    Runs through the scheduler when it is running (202 with the pending run),
    otherwise executes synchronously (200 with the finished run).
    """
    from dbvault import scheduler as backup_scheduler

    try:
        if backup_scheduler.is_scheduler_running():
            run = backup_scheduler.trigger_backup_now(data_source_id)
            return jsonify({'success': True, 'run': serialize_run(run)}), 202

        run = request_backup(data_source_id, run_type='manual', allow_inactive=True)
        run = BackupExecutor(run).execute()
        return jsonify({'success': run.status != RunStatus.FAILED.value, 'run': serialize_run(run)}), 200

    except ValueError as e:
        return jsonify({'error': str(e)}), 404
    except RunStateError as e:
        return jsonify({'error': e.message}), 409


@bp.route('/runs', methods=['GET'])
def list_runs():
    """
    List runs, newest first.

    Query params:
        - status: Filter by status
        - data_source_id: Filter by data source
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)
    """
    status_filter = request.args.get('status')
    data_source_filter = request.args.get('data_source_id', type=int)
    limit = min(request.args.get('limit', 50, type=int), 200)
    offset = max(request.args.get('offset', 0, type=int), 0)

    query = BackupRun.query

    if status_filter:
        if status_filter not in [s.value for s in RunStatus]:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupRun.status == status_filter)

    if data_source_filter:
        query = query.filter(BackupRun.data_source_id == data_source_filter)

    total_count = query.count()
    runs = query.order_by(BackupRun.created_at.desc()).limit(limit).offset(offset).all()

    return jsonify({
        'runs': [serialize_run(run) for run in runs],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/runs/<run_id>', methods=['GET'])
def get_run(run_id):
    """Run details with per-destination outcomes and timeline."""
    run = db.session.get(BackupRun, run_id)
    if not run:
        return jsonify({'error': 'Backup run not found'}), 404

    return jsonify(serialize_run(run, include_timeline=True))


@bp.route('/runs/<run_id>/cancel', methods=['POST'])
def cancel_run(run_id):
    """
    Request cancellation of an active run.

    Destinations that have not finished are recorded as cancelled; the run
    still reaches a terminal state and its workspace is released.
    """
    run = db.session.get(BackupRun, run_id)
    if not run:
        return jsonify({'error': 'Backup run not found'}), 404

    if not RunRepository().request_cancellation(run_id):
        return jsonify({'error': f'Cannot cancel a run with status {run.status}'}), 409

    return jsonify({'success': True, 'message': 'Cancellation requested'})


@bp.route('/runs/<run_id>/lock', methods=['POST'])
def lock_run(run_id):
    """Keep a run's stored copies out of retention cleanup."""
    return _set_locked(run_id, True)


@bp.route('/runs/<run_id>/unlock', methods=['POST'])
def unlock_run(run_id):
    return _set_locked(run_id, False)


def _set_locked(run_id, locked):
    run = db.session.get(BackupRun, run_id)
    if not run:
        return jsonify({'error': 'Backup run not found'}), 404

    run.locked = locked
    db.session.commit()
    current_app.logger.info(f"Run {run_id} {'locked' if locked else 'unlocked'}")

    return jsonify({'success': True, 'run': serialize_run(run)})


@bp.route('/files/<int:file_id>/download', methods=['GET'])
def download_file(file_id):
    """Send a local copy or redirect to a presigned URL."""
    record = db.session.get(BackupFile, file_id)
    if not record or record.deleted_at is not None:
        return jsonify({'error': 'Backup file not found'}), 404

    destination = get_registry().get_destination_for_file(record)
    if destination is None:
        return jsonify({'error': f'Destination {record.destination_id} is not configured'}), 404

    try:
        location = destination.download(record)
    except FileNotFoundError as e:
        current_app.logger.warning(f"Download of file {file_id} failed: {e}")
        return jsonify({'error': 'Stored copy no longer exists'}), 404
    except DestinationError as e:
        current_app.logger.error(f"Download of file {file_id} failed: {e}")
        return jsonify({'error': e.message}), 502

    if location.startswith(('http://', 'https://')):
        return redirect(location)

    if destination.download_is_temporary:
        return _send_temporary(location, record.filename)
    return send_file(os.path.abspath(location), as_attachment=True, download_name=record.filename)


def _send_temporary(path, filename):
    """Send a temporary copy. It is unlinked once opened, so the response holds the last reference."""
    handle = open(path, 'rb')
    _remove_download(path)
    return send_file(handle, as_attachment=True, download_name=filename)


def _remove_download(path):
    try:
        os.remove(path)
    except OSError as e:
        logger.warning(f"Could not remove temporary download {path}: {e}")
