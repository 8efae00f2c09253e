"""HTTP API of the storage pool daemon."""

from __future__ import annotations

import logging
from typing import Any, Dict

from flask import Blueprint, Flask, current_app, jsonify, request

from .exceptions import DriveNotFoundError, InvalidTaskError, ShareNotFoundError
from .logging_config import init_request_logging
from .models import Task, TaskOption, TaskOptions, TaskStatus, TaskType

logger = logging.getLogger(__name__)

pool_api = Blueprint('pool_api', __name__)


def _service():
    return current_app.extensions['greypool']


def _report_to_dict(report) -> Dict[str, Any]:
    return {
        "title": report.title,
        "started_at": report.started_at.isoformat(),
        "finished_at": report.finished_at.isoformat() if report.finished_at else None,
        "cancelled": report.cancelled,
        "files_checked": report.files_checked,
        "dirs_checked": report.dirs_checked,
        "copies_created": report.copies_created,
        "copies_removed": report.copies_removed,
        "files_adopted": report.files_adopted,
        "usage": report.usage,
        "problems": {
            kind.value: [{"path": p.path, "detail": p.detail} for p in problems]
            for kind, problems in report.problems.items()
        },
    }


def _enqueue(task: Task):
    service = _service()
    stored = service.queue.enqueue(task)
    service.dispatcher.notify_new_task()
    return jsonify({"status": "success", "task": stored.to_dict()}), 201


@pool_api.route('/api/tasks', methods=['POST'])
def api_create_task():
    """Queue a file operation reported by the interception layer."""
    data = request.get_json(silent=True) or {}
    try:
        task = Task(
            type=TaskType(data.get('type')),
            share=data.get('share'),
            path=data.get('path') or "",
            target_share=data.get('target_share'),
            target_path=data.get('target_path'),
            options=TaskOptions.from_names(data.get('options') or []),
        )
        return _enqueue(task)
    except (ValueError, InvalidTaskError, ShareNotFoundError) as e:
        return jsonify({"status": "error", "message": str(e)}), 400
    except Exception as e:
        logger.exception("Failed to queue task")
        return jsonify({"status": "error", "message": f"Failed to queue task: {str(e)}"}), 500


@pool_api.route('/api/tasks', methods=['GET'])
def api_list_tasks():
    try:
        status = request.args.get('status')
        limit = int(request.args.get('limit', 100))
        tasks = _service().queue.list_tasks(TaskStatus(status) if status else None, limit)
        return jsonify({"status": "success", "tasks": [t.to_dict() for t in tasks]})
    except ValueError as e:
        return jsonify({"status": "error", "message": str(e)}), 400
    except Exception as e:
        return jsonify({"status": "error", "message": f"Failed to list tasks: {str(e)}"}), 500


@pool_api.route('/api/tasks/<int:task_id>', methods=['GET'])
def api_get_task(task_id):
    task = _service().queue.get(task_id)
    if task is None:
        return jsonify({"status": "error", "message": f"Task {task_id} not found"}), 404
    return jsonify({"status": "success", "task": task.to_dict()})


@pool_api.route('/api/drives', methods=['GET'])
def api_list_drives():
    try:
        pool = _service().pool
        drives = [pool.to_dict(d) for d in pool.list_drives(include_gone=True)]
        return jsonify({"status": "success", "drives": drives, "total_drives": len(drives)})
    except Exception as e:
        return jsonify({"status": "error", "message": f"Failed to list drives: {str(e)}", "drives": []}), 500


@pool_api.route('/api/drives/remove', methods=['POST'])
def api_remove_drive():
    """Queue the removal of a drive; 'gone': true when it is already unreadable."""
    data = request.get_json(silent=True) or {}
    drive_path = data.get('drive')
    if not drive_path:
        return jsonify({"status": "error", "message": "Missing 'drive'"}), 400
    try:
        _service().pool.get_drive(drive_path)
        flags = frozenset() if data.get('gone') else frozenset({TaskOption.DRIVE_IS_AVAILABLE})
        return _enqueue(Task(type=TaskType.REMOVE_DRIVE, path=drive_path, options=TaskOptions(flags)))
    except DriveNotFoundError as e:
        return jsonify({"status": "error", "message": str(e)}), 404
    except InvalidTaskError as e:
        return jsonify({"status": "error", "message": str(e)}), 400


@pool_api.route('/api/fsck', methods=['POST'])
def api_start_fsck():
    data = request.get_json(silent=True) or {}
    try:
        task = Task(
            type=TaskType.FSCK,
            share=data.get('share'),
            options=TaskOptions.from_names(data.get('options') or []),
        )
        return _enqueue(task)
    except (ValueError, InvalidTaskError, ShareNotFoundError) as e:
        return jsonify({"status": "error", "message": str(e)}), 400


@pool_api.route('/api/fsck/cancel', methods=['POST'])
def api_cancel_fsck():
    _service().checker.cancel()
    return jsonify({"status": "success", "message": "Cancellation requested"})


@pool_api.route('/api/fsck/last-report', methods=['GET'])
def api_last_fsck_report():
    report = _service().checker.last_report
    if report is None:
        return jsonify({"status": "success", "report": None, "message": "No fsck has run yet"})
    return jsonify({"status": "success", "report": _report_to_dict(report), "text": report.render()})


def create_app(service) -> Flask:
    """Build the Flask app serving the API of a PoolService."""
    app = Flask(__name__)
    init_request_logging(app)
    app.extensions['greypool'] = service
    app.register_blueprint(pool_api)
    return app
