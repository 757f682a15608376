"""
Status routes - read-only view of the backup loop and the retention store.
"""

from flask import Blueprint, jsonify, request

from merdeglace import scheduler as scheduler_module
from merdeglace.models import ArchiveStatus


bp = Blueprint('status', __name__, url_prefix='/api')


@bp.route('/status', methods=['GET'])
def get_status():
    """
    Get backup loop status.

    Returns:
        JSON with scheduler phase, schedule state, active alerts, next due
        time and the last cycle report
    """
    return jsonify(scheduler_module.get_scheduler_diagnostics())


@bp.route('/archives', methods=['GET'])
def list_archives():
    """
    List archives known to the retention store.

    Query params:
        status: Optional status filter (local, uploaded, local_and_uploaded)

    Returns:
        JSON with archives (oldest first) and per-status counts
    """
    engine = scheduler_module.backup_scheduler
    if engine is None:
        return jsonify({'error': 'Backup scheduler not available in this process'}), 503

    archives = engine.store.list()

    status_filter = request.args.get('status')
    if status_filter:
        try:
            wanted = ArchiveStatus(status_filter)
        except ValueError:
            return jsonify({'error': f'Invalid status: {status_filter}'}), 400
        archives = [a for a in archives if a.status == wanted]

    counts = {}
    for archive in engine.store.list():
        counts[archive.status.value] = counts.get(archive.status.value, 0) + 1

    return jsonify({
        'archives': [a.to_dict() for a in archives],
        'counts': counts
    })
