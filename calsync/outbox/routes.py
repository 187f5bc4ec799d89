"""
Admin routes for inspecting the calendar outbox and nudging the worker.
"""
from flask import current_app, jsonify, request

from calsync.models import OutboxStatus
from calsync.outbox import outbox_bp
from calsync.services.outbox_service import OutboxService
from calsync.logging_config import get_logger

logger = get_logger(__name__)


def _success(data, status_code=200):
    return jsonify({"success": True, "data": data}), status_code


@outbox_bp.route("", methods=["GET"])
@outbox_bp.route("/", methods=["GET"])
def list_outboxes():
    """
    List outbox entries, newest first.

    Query params:
        status: PENDING | PROCESSING | SUCCESS | FAILED
        taskId: restrict to one task
    """
    status_param = request.args.get("status")
    task_id = request.args.get("taskId", type=int)

    status = None
    if status_param:
        try:
            status = OutboxStatus(status_param.strip().upper())
        except ValueError:
            return jsonify({"success": False, "error": f"Invalid status: {status_param}"}), 400

    outboxes = OutboxService.list_outboxes(status=status, task_id=task_id)
    return _success([outbox.to_dict() for outbox in outboxes])


@outbox_bp.route("/<int:outbox_id>", methods=["GET"])
def get_outbox(outbox_id):
    # OutboxNotFoundError maps to 404 in the app error handler
    outbox = OutboxService.get_outbox(outbox_id)
    return _success(outbox.to_dict())


@outbox_bp.route("/trigger-worker", methods=["GET", "POST"])
def trigger_worker():
    """Run one polling cycle synchronously. Diagnostic use only."""
    worker = current_app.extensions["calsync"]["worker"]
    logger.info("Manual outbox worker trigger")

    result = worker.poll_and_process()
    return _success({"message": "Worker triggered", **result.to_dict()})
