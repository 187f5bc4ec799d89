"""
Calendar adapters applied to outbox entries by the worker.

The task row is the source of truth for UPSERTs: the adapter loads its live
state instead of replaying the payload snapshot, so a late retry never
resurrects stale data. DELETEs only need the event id recorded in the payload
because the task itself is already soft-deleted.
"""
import uuid
from abc import ABC, abstractmethod
from typing import Dict, Optional

from calsync.google.client import CalendarEvent, GoogleCalendarClient
from calsync.google.errors import IntegrationError, RetryableIntegrationError
from calsync.logging_config import get_logger
from calsync.models import CalendarOutbox, OutboxOpType, Task, db
from calsync.services.outbox_service import OutboxService

logger = get_logger(__name__)

def build_event_from_task(task: Task) -> CalendarEvent:
    """Event for a task: the hour leading up to its due time."""
    start_at, end_at = task.calendar_event_window()
    return CalendarEvent(
        title=task.calendar_event_title(),
        description=task.description,
        start_at=start_at,
        end_at=end_at,
    )


class CalendarAdapter(ABC):
    """Applies one outbox entry to an external calendar."""

    def handle(self, outbox: CalendarOutbox) -> None:
        """
        Dispatch on the entry's operation.

        Raises:
            RetryableIntegrationError: Transient failure, or anything unexpected
            NonRetryableIntegrationError: Permanent failure (401 included)
        """
        logger.info("Handling outbox entry", outbox_id=outbox.id,
                    op_type=outbox.op_type.value, task_id=outbox.task_id)
        try:
            payload = OutboxService.parse_payload(outbox)
            user_id = OutboxService.extract_user_id_from_payload(outbox, payload)

            if outbox.op_type == OutboxOpType.DELETE:
                self._handle_delete(user_id, payload)
            else:
                self._handle_upsert(user_id, outbox.task_id)

        except IntegrationError:
            raise
        except Exception as e:
            logger.error("Unexpected error handling outbox entry", outbox_id=outbox.id,
                         error=str(e), exc_info=True)
            raise RetryableIntegrationError(f"Unexpected error: {e}") from e

    def _handle_upsert(self, user_id: int, task_id: int) -> None:
        task = Task.get_active(task_id)
        if task is None or not task.is_calendar_sync_active():
            logger.info("Upsert skipped, task deleted or sync disabled", task_id=task_id)
            return

        event = build_event_from_task(task)
        if task.calendar_event_id:
            self.update_event(user_id, task.calendar_event_id, event)
            return

        event_id = self.create_event(user_id, event)
        task.calendar_event_id = event_id
        db.session.commit()
        logger.info("Calendar event created", task_id=task_id, event_id=event_id)

    def _handle_delete(self, user_id: int, payload: Dict) -> None:
        event = payload.get("event") or {}
        event_id = event.get("eventId")
        if not event_id:
            logger.info("Delete is a no-op, task was never synced", task_id=payload.get("taskId"))
            return
        self.delete_event(user_id, event_id)

    @abstractmethod
    def create_event(self, user_id: int, event: CalendarEvent) -> str:
        ...

    @abstractmethod
    def update_event(self, user_id: int, event_id: str, event: CalendarEvent) -> None:
        ...

    @abstractmethod
    def delete_event(self, user_id: int, event_id: str) -> None:
        ...


class GoogleCalendarService(CalendarAdapter):
    """Production adapter backed by the Google Calendar API."""

    def __init__(self, client: GoogleCalendarClient):
        self.client = client

    def create_event(self, user_id, event):
        return self.client.create_event(user_id, event)

    def update_event(self, user_id, event_id, event):
        self.client.update_event(user_id, event_id, event)

    def delete_event(self, user_id, event_id):
        self.client.delete_event(user_id, event_id)


class MockCalendarService(CalendarAdapter):
    """In-memory adapter for local development; never touches the network."""

    def __init__(self):
        self.events: Dict[str, Dict] = {}

    def create_event(self, user_id, event):
        event_id = f"mock-{uuid.uuid4().hex[:12]}"
        self.events[event_id] = {"userId": user_id, "event": event}
        logger.info("Mock event created", event_id=event_id, title=event.title)
        return event_id

    def update_event(self, user_id, event_id, event):
        self.events[event_id] = {"userId": user_id, "event": event}
        logger.info("Mock event updated", event_id=event_id, title=event.title)

    def delete_event(self, user_id, event_id):
        self.events.pop(event_id, None)
        logger.info("Mock event deleted", event_id=event_id)

    def get_event(self, event_id: str) -> Optional[CalendarEvent]:
        entry = self.events.get(event_id)
        return entry["event"] if entry else None
