"""
Task mutations that feed the calendar outbox.

Every public method commits exactly once, so the task change and the outbox
row it produces land in the same transaction.
"""
from datetime import datetime
from typing import Optional

from calsync.logging_config import get_logger
from calsync.models import Task, TaskStatus, db
from calsync.services.outbox_service import OutboxService

logger = get_logger(__name__)

# Allowed status moves; DONE is terminal
ALLOWED_STATUS_TRANSITIONS = {
    TaskStatus.REQUESTED: {TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED},
    TaskStatus.IN_PROGRESS: {TaskStatus.DONE, TaskStatus.BLOCKED},
    TaskStatus.BLOCKED: {TaskStatus.IN_PROGRESS},
    TaskStatus.DONE: set(),
}


class TaskNotFoundError(LookupError):
    def __init__(self, task_id):
        self.task_id = task_id
        super().__init__(f"Task not found: {task_id}")


class TaskStatusTransitionError(ValueError):
    def __init__(self, from_status: TaskStatus, to_status: TaskStatus):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(f"Task status transition not allowed: {from_status.value} -> {to_status.value}")


def validate_status_transition(from_status: TaskStatus, to_status: TaskStatus):
    if to_status not in ALLOWED_STATUS_TRANSITIONS.get(from_status, set()):
        raise TaskStatusTransitionError(from_status, to_status)


def _validate_schedule(start_at: Optional[datetime], due_at: Optional[datetime]):
    if start_at is not None and due_at is not None and start_at > due_at:
        raise ValueError("startAt must not be after dueAt")


def _validate_calendar_sync(calendar_sync_enabled: Optional[bool], due_at: Optional[datetime]):
    if calendar_sync_enabled and due_at is None:
        raise ValueError("Calendar sync requires dueAt")


class TaskService:
    """Domain mutations on tasks. The requesting principal is always passed in."""

    @staticmethod
    def get_task(task_id: int) -> Task:
        task = Task.get_active(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    @staticmethod
    def create_task(title: str, requested_by_user_id: int, description: Optional[str] = None,
                    start_at: Optional[datetime] = None, due_at: Optional[datetime] = None,
                    calendar_sync_enabled: bool = False) -> Task:
        if not title or not title.strip():
            raise ValueError("title is required")
        _validate_schedule(start_at, due_at)
        _validate_calendar_sync(calendar_sync_enabled, due_at)

        task = Task(
            title=title,
            description=description,
            status=TaskStatus.REQUESTED,
            start_at=start_at,
            due_at=due_at,
            calendar_sync_enabled=bool(calendar_sync_enabled),
            deleted=False,
        )
        db.session.add(task)
        db.session.flush()

        if task.is_calendar_sync_active():
            OutboxService.enqueue_upsert(task, requested_by_user_id)

        db.session.commit()
        logger.info("Task created", task_id=task.id, calendar_sync=task.calendar_sync_enabled)
        return task

    @staticmethod
    def update_task(task_id: int, requested_by_user_id: int, title: Optional[str] = None,
                    description: Optional[str] = None, start_at: Optional[datetime] = None,
                    due_at: Optional[datetime] = None, calendar_sync_enabled: Optional[bool] = None) -> Task:
        """
        Apply a partial update; None leaves a field unchanged.

        A task that is still synced gets its event upserted. A task whose
        sync was switched off but that still owns an event gets it deleted.
        """
        task = TaskService.get_task(task_id)

        new_start = start_at if start_at is not None else task.start_at
        new_due = due_at if due_at is not None else task.due_at
        new_sync = calendar_sync_enabled if calendar_sync_enabled is not None else task.calendar_sync_enabled
        _validate_schedule(new_start, new_due)
        _validate_calendar_sync(new_sync, new_due)

        if title is not None:
            task.title = title
        if description is not None:
            task.description = description
        task.start_at = new_start
        task.due_at = new_due
        task.calendar_sync_enabled = bool(new_sync)

        if task.is_calendar_sync_active():
            OutboxService.enqueue_upsert(task, requested_by_user_id)
        elif task.calendar_event_id is not None:
            OutboxService.enqueue_delete(task, requested_by_user_id)

        db.session.commit()
        logger.info("Task updated", task_id=task.id)
        return task

    @staticmethod
    def change_status(task_id: int, to_status: TaskStatus, requested_by_user_id: int) -> Task:
        task = TaskService.get_task(task_id)
        from_status = task.status
        validate_status_transition(from_status, to_status)

        task.status = to_status

        # DONE shows up as a title prefix on the event
        if task.is_calendar_sync_active():
            OutboxService.enqueue_upsert(task, requested_by_user_id)

        db.session.commit()
        logger.info("Task status changed", task_id=task.id,
                    from_status=from_status.value, to_status=to_status.value)
        return task

    @staticmethod
    def delete_task(task_id: int, requested_by_user_id: int) -> Task:
        """Soft delete the task and queue removal of its calendar event."""
        task = TaskService.get_task(task_id)
        task.mark_as_deleted()

        OutboxService.enqueue_delete(task, requested_by_user_id)

        db.session.commit()
        logger.info("Task deleted", task_id=task.id, event_id=task.calendar_event_id)
        return task
