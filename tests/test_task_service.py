"""
Tests for TaskService: which task mutations enqueue which outbox operations.
"""
from datetime import datetime

import pytest

from calsync.models import CalendarOutbox, OutboxOpType, OutboxStatus, Task, TaskStatus, db
from calsync.services.task_service import (
    TaskNotFoundError,
    TaskService,
    TaskStatusTransitionError,
    validate_status_transition,
)

DUE = datetime(2030, 5, 1, 12, 0)


def _ops(task_id):
    return [o.op_type for o in CalendarOutbox.query.filter_by(task_id=task_id).order_by(CalendarOutbox.id)]


class TestCreateTask:
    """Creating a task."""

    def test_synced_task_enqueues_upsert(self, app):
        task = TaskService.create_task("Plan sprint", 7, due_at=DUE, calendar_sync_enabled=True)

        assert _ops(task.id) == [OutboxOpType.UPSERT]

    def test_unsynced_task_enqueues_nothing(self, app):
        task = TaskService.create_task("Plan sprint", 7, due_at=DUE, calendar_sync_enabled=False)

        assert _ops(task.id) == []

    def test_sync_requires_due_date(self, app):
        with pytest.raises(ValueError):
            TaskService.create_task("Plan sprint", 7, calendar_sync_enabled=True)

    def test_start_after_due_is_rejected(self, app):
        with pytest.raises(ValueError):
            TaskService.create_task("Plan sprint", 7, start_at=datetime(2030, 6, 1), due_at=DUE)


class TestUpdateTask:
    """Updating a task."""

    def test_update_of_synced_task_coalesces(self, make_task):
        task = make_task()

        TaskService.update_task(task.id, 7, title="One")
        TaskService.update_task(task.id, 7, title="Two")

        pending = CalendarOutbox.query.filter_by(task_id=task.id, status=OutboxStatus.PENDING).all()
        assert len(pending) == 1

    def test_disabling_sync_with_event_enqueues_delete(self, make_task):
        task = make_task(calendar_event_id="evt-1")

        TaskService.update_task(task.id, 7, calendar_sync_enabled=False)

        assert _ops(task.id) == [OutboxOpType.DELETE]

    def test_disabling_sync_without_event_enqueues_nothing(self, make_task):
        task = make_task(calendar_event_id=None)

        TaskService.update_task(task.id, 7, calendar_sync_enabled=False)

        assert _ops(task.id) == []

    def test_unknown_task(self, app):
        with pytest.raises(TaskNotFoundError):
            TaskService.update_task(999, 7, title="x")


class TestChangeStatus:
    """Status transitions."""

    def test_done_enqueues_upsert(self, make_task):
        task = make_task(status=TaskStatus.IN_PROGRESS)

        TaskService.change_status(task.id, TaskStatus.DONE, 7)

        assert db.session.get(Task, task.id).status == TaskStatus.DONE
        assert _ops(task.id) == [OutboxOpType.UPSERT]

    def test_disallowed_transition_changes_nothing(self, make_task):
        task = make_task(status=TaskStatus.REQUESTED)

        with pytest.raises(TaskStatusTransitionError):
            TaskService.change_status(task.id, TaskStatus.DONE, 7)

        assert _ops(task.id) == []

    @pytest.mark.parametrize("from_status,to_status", [
        (TaskStatus.REQUESTED, TaskStatus.IN_PROGRESS),
        (TaskStatus.REQUESTED, TaskStatus.BLOCKED),
        (TaskStatus.IN_PROGRESS, TaskStatus.DONE),
        (TaskStatus.IN_PROGRESS, TaskStatus.BLOCKED),
        (TaskStatus.BLOCKED, TaskStatus.IN_PROGRESS),
    ])
    def test_allowed_transitions(self, from_status, to_status):
        validate_status_transition(from_status, to_status)

    @pytest.mark.parametrize("to_status", list(TaskStatus))
    def test_done_is_terminal(self, to_status):
        with pytest.raises(TaskStatusTransitionError):
            validate_status_transition(TaskStatus.DONE, to_status)


class TestDeleteTask:
    """Soft delete."""

    def test_delete_soft_deletes_and_enqueues_delete(self, make_task):
        task = make_task(calendar_event_id="evt-1")
        TaskService.update_task(task.id, 7, title="pending upsert")

        TaskService.delete_task(task.id, 7)

        stored = db.session.get(Task, task.id)
        assert stored.deleted is True
        assert stored.deleted_at is not None
        assert _ops(task.id) == [OutboxOpType.DELETE]
        with pytest.raises(TaskNotFoundError):
            TaskService.get_task(task.id)
