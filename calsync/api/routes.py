"""
Task-facing API routes.
"""
from flask import jsonify

from calsync.api import api_bp
from calsync.services.outbox_service import OutboxService
from calsync.services.task_service import TaskService


@api_bp.route("/tasks/<int:task_id>/calendar-sync", methods=["GET"])
def get_calendar_sync_status(task_id):
    """Calendar sync state for one task: settings, event id and the latest outbox outcome."""
    task = TaskService.get_task(task_id)
    return jsonify({"success": True, "data": OutboxService.get_sync_status(task)}), 200
