import json
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from calsync.datetime_utils import utcnow, isoformat_or_none
from calsync.logging_config import get_logger
from calsync.models import CalendarOutbox, OutboxOpType, OutboxStatus, Task, db
from calsync.services.outbox_store import OutboxStore

logger = get_logger(__name__)

PAYLOAD_VERSION = 1

# Principal whose Google credential applies the entry
PRINCIPAL_KEY = "requestedByPrincipalId"

# Indexed by retry_count before the increment
BACKOFF_SCHEDULE = (
    timedelta(minutes=1),
    timedelta(minutes=5),
    timedelta(minutes=15),
    timedelta(hours=1),
    timedelta(hours=6),
    timedelta(hours=24),
)


class OutboxNotFoundError(LookupError):
    """Raised when an outbox id does not exist."""

    def __init__(self, outbox_id):
        self.outbox_id = outbox_id
        super().__init__(f"Outbox not found: {outbox_id}")


class OutboxService:
    """Enqueue, coalesce and transition calendar outbox entries"""

    # -------------------------
    # Enqueue
    # -------------------------
    @staticmethod
    def enqueue_upsert(task: Task, requested_by_user_id: int, now: Optional[datetime] = None) -> CalendarOutbox:
        """
        Queue a create/update of the task's calendar event.

        Any PENDING UPSERT for the same task is superseded: only the latest
        intent matters while nothing has started processing. PROCESSING and
        FAILED entries are left alone so their outcome stays observable.

        Runs inside the caller's transaction; the caller commits.

        Args:
            task: Task whose current state is snapshotted
            requested_by_user_id: Principal whose Google credential will be used
            now: Optional timestamp for the payload metadata
        """
        deleted = OutboxStore.delete_by_task_status_op(task.id, OutboxStatus.PENDING, OutboxOpType.UPSERT)
        if deleted > 0:
            logger.debug("Coalesced pending upserts", task_id=task.id, removed=deleted)

        payload = OutboxService.build_upsert_payload(task, requested_by_user_id, now=now)
        outbox = OutboxStore.save(CalendarOutbox.for_upsert(task.id, payload))

        logger.info("Outbox upsert enqueued", outbox_id=outbox.id, task_id=task.id)
        return outbox

    @staticmethod
    def enqueue_delete(task: Task, requested_by_user_id: int, now: Optional[datetime] = None) -> Optional[CalendarOutbox]:
        """
        Queue removal of the task's calendar event.

        Pending upserts for the task become moot and are dropped. If a DELETE
        is already pending nothing new is inserted and None is returned.
        """
        deleted = OutboxStore.delete_by_task_status_op(task.id, OutboxStatus.PENDING, OutboxOpType.UPSERT)
        if deleted > 0:
            logger.debug("Dropped pending upserts for delete", task_id=task.id, removed=deleted)

        if OutboxStore.exists_by_task_status_op(task.id, OutboxStatus.PENDING, OutboxOpType.DELETE):
            logger.debug("Delete already pending, skipping", task_id=task.id)
            return None

        payload = OutboxService.build_delete_payload(task, requested_by_user_id, now=now)
        outbox = OutboxStore.save(CalendarOutbox.for_delete(task.id, payload))

        logger.info("Outbox delete enqueued", outbox_id=outbox.id, task_id=task.id,
                    event_id=task.calendar_event_id)
        return outbox

    # -------------------------
    # State transitions
    # -------------------------
    @staticmethod
    def claim_processing(outbox_id: int, lease_expiry: datetime, now: Optional[datetime] = None,
                         max_retry: Optional[int] = None) -> bool:
        """True if this caller now holds the lease on the entry. Never raises on a lost race."""
        return OutboxStore.claim(outbox_id, lease_expiry, now=now, max_retry=max_retry)

    @staticmethod
    def mark_as_processing(outbox_id: int) -> CalendarOutbox:
        outbox = OutboxService.get_outbox(outbox_id)
        outbox.mark_as_processing()
        db.session.commit()
        return outbox

    @staticmethod
    def mark_success(outbox_id: int) -> CalendarOutbox:
        outbox = OutboxService.get_outbox(outbox_id)
        outbox.mark_as_success()
        db.session.commit()
        return outbox

    @staticmethod
    def mark_for_retry(outbox_id: int, error_message: Optional[str], retry_at: Optional[datetime] = None,
                       now: Optional[datetime] = None, max_retry: Optional[int] = None) -> CalendarOutbox:
        """
        Record a retryable failure.

        The retry time comes from the backoff schedule unless ``retry_at`` is
        given (the credential-refresh path asks for an immediate retry). When
        this failure uses up ``max_retry`` no retry time is recorded.
        """
        outbox = OutboxService.get_outbox(outbox_id)
        if max_retry is not None and (outbox.retry_count or 0) + 1 >= max_retry:
            next_retry = None
        elif retry_at is not None:
            next_retry = retry_at
        else:
            next_retry = OutboxService.calculate_next_retry(outbox.retry_count, now=now)
        outbox.mark_for_retry(error_message, next_retry)
        if next_retry is None:
            logger.warning("Outbox retry budget exhausted", outbox_id=outbox.id, retry_count=outbox.retry_count)
        db.session.commit()
        return outbox

    @staticmethod
    def mark_failed(outbox_id: int, error_message: Optional[str]) -> CalendarOutbox:
        outbox = OutboxService.get_outbox(outbox_id)
        outbox.mark_as_failed(error_message)
        db.session.commit()
        return outbox

    @staticmethod
    def calculate_next_retry(retry_count: int, now: Optional[datetime] = None) -> Optional[datetime]:
        """Next attempt time for an entry that has failed ``retry_count`` times so far; None when exhausted."""
        if retry_count is None or retry_count < 0 or retry_count >= len(BACKOFF_SCHEDULE):
            return None
        now = now or utcnow()
        return now + BACKOFF_SCHEDULE[retry_count]

    # -------------------------
    # Queries
    # -------------------------
    @staticmethod
    def get_outbox(outbox_id: int) -> CalendarOutbox:
        outbox = OutboxStore.get(outbox_id)
        if outbox is None:
            raise OutboxNotFoundError(outbox_id)
        return outbox

    @staticmethod
    def list_outboxes(status: Optional[OutboxStatus] = None, task_id: Optional[int] = None) -> List[CalendarOutbox]:
        """Newest first. A task filter wins over a status filter; no filter returns the latest 100."""
        if task_id is not None:
            if status is not None:
                return OutboxStore.find_all_by_task_and_status(task_id, status)
            return OutboxStore.find_all_by_task(task_id)
        if status is not None:
            return OutboxStore.find_all_by_status(status)
        return OutboxStore.find_recent(100)

    @staticmethod
    def get_sync_status(task: Task) -> Dict[str, Any]:
        """Task sync settings plus the latest outbox outcome, for the task detail view."""
        latest = OutboxStore.find_latest_for_task(task.id)
        last_success = OutboxStore.find_last_with_status_for_task(task.id, OutboxStatus.SUCCESS)

        return {
            "taskId": task.id,
            "calendarSyncEnabled": task.calendar_sync_enabled,
            "calendarEventId": task.calendar_event_id,
            "lastOutboxStatus": latest.status.value if latest else None,
            "lastOutboxOpType": latest.op_type.value if latest else None,
            "lastOutboxError": latest.last_error if latest else None,
            "lastSyncedAt": isoformat_or_none(last_success.updated_at) if last_success else None,
            "lastOutboxCreatedAt": isoformat_or_none(latest.created_at) if latest else None,
        }

    # -------------------------
    # Payloads
    # -------------------------
    @staticmethod
    def parse_payload(outbox: CalendarOutbox) -> Dict[str, Any]:
        return json.loads(outbox.payload)

    @staticmethod
    def extract_user_id_from_payload(outbox: CalendarOutbox, payload: Optional[Dict[str, Any]] = None) -> int:
        """
        Principal id recorded in ``meta.requestedByPrincipalId``.

        Args:
            outbox: Entry whose payload is inspected
            payload: Already parsed payload, to avoid decoding it twice

        Raises:
            ValueError: If the payload is not JSON or the id is missing/invalid
        """
        try:
            if payload is None:
                payload = OutboxService.parse_payload(outbox)
            user_id = payload["meta"][PRINCIPAL_KEY]
            if user_id is None or isinstance(user_id, bool):
                raise ValueError(f"{PRINCIPAL_KEY} is empty")
            return int(user_id)
        except (TypeError, KeyError, ValueError) as e:
            raise ValueError(f"Could not extract userId from outbox payload. outboxId={outbox.id}") from e

    @staticmethod
    def build_upsert_payload(task: Task, requested_by_user_id: int, now: Optional[datetime] = None) -> str:
        """Snapshot of the task for audit; the worker re-reads the live task when applying it."""
        start_at, end_at = task.calendar_event_window()
        event = {
            "eventId": task.calendar_event_id,
            "title": task.calendar_event_title(),
            "description": task.description,
            "startAt": isoformat_or_none(start_at),
            "endAt": isoformat_or_none(end_at),
        }

        payload = {
            "version": PAYLOAD_VERSION,
            "taskId": task.id,
            "opType": OutboxOpType.UPSERT.value,
            "event": event,
            "meta": OutboxService._build_meta(requested_by_user_id, now),
        }
        return json.dumps(payload)

    @staticmethod
    def build_delete_payload(task: Task, requested_by_user_id: int, now: Optional[datetime] = None) -> str:
        payload = {
            "version": PAYLOAD_VERSION,
            "taskId": task.id,
            "opType": OutboxOpType.DELETE.value,
            # Deletion needs nothing but the external id
            "event": {"eventId": task.calendar_event_id},
            "meta": OutboxService._build_meta(requested_by_user_id, now),
        }
        return json.dumps(payload)

    @staticmethod
    def _build_meta(requested_by_user_id: int, now: Optional[datetime]) -> Dict[str, Any]:
        return {
            "requestedAt": (now or utcnow()).isoformat(),
            PRINCIPAL_KEY: requested_by_user_id,
        }
