"""
Persistence operations over calendar outbox entries.

The conditional UPDATE in ``claim`` is the only synchronization between
workers: whichever statement touches the row first wins, everybody else sees
a rowcount of zero and moves on.
"""
from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, delete, or_, update

from calsync.datetime_utils import utcnow
from calsync.models import CalendarOutbox, OutboxOpType, OutboxStatus, db
from calsync.logging_config import get_logger

logger = get_logger(__name__)


def _processable_clause(now: datetime, lease_expiry: datetime):
    # A terminal FAILED entry has next_retry_at cleared and must stay put,
    # so only PENDING rows may have a NULL retry time here.
    pending_ready = and_(
        CalendarOutbox.status == OutboxStatus.PENDING,
        or_(CalendarOutbox.next_retry_at.is_(None), CalendarOutbox.next_retry_at <= now),
    )
    failed_ready = and_(
        CalendarOutbox.status == OutboxStatus.FAILED,
        CalendarOutbox.next_retry_at.isnot(None),
        CalendarOutbox.next_retry_at <= now,
    )
    lease_expired = and_(
        CalendarOutbox.status == OutboxStatus.PROCESSING,
        CalendarOutbox.updated_at < lease_expiry,
    )
    return or_(pending_ready, failed_ready, lease_expired)


class OutboxStore:
    """Query and write helpers for CalendarOutbox rows"""

    @staticmethod
    def save(outbox: CalendarOutbox) -> CalendarOutbox:
        db.session.add(outbox)
        db.session.flush()
        return outbox

    @staticmethod
    def get(outbox_id: int) -> Optional[CalendarOutbox]:
        return db.session.get(CalendarOutbox, outbox_id)

    @staticmethod
    def delete_by_task_status_op(task_id: int, status: OutboxStatus, op_type: OutboxOpType) -> int:
        """Physically remove superseded entries. Returns the number of rows deleted."""
        result = db.session.execute(
            delete(CalendarOutbox)
            .where(
                CalendarOutbox.task_id == task_id,
                CalendarOutbox.status == status,
                CalendarOutbox.op_type == op_type,
            )
            .execution_options(synchronize_session="fetch")
        )
        return result.rowcount or 0

    @staticmethod
    def exists_by_task_status_op(task_id: int, status: OutboxStatus, op_type: OutboxOpType) -> bool:
        return db.session.query(
            CalendarOutbox.query.filter_by(task_id=task_id, status=status, op_type=op_type).exists()
        ).scalar()

    @staticmethod
    def find_processable(now: datetime, lease_expiry: datetime, max_retry: int, limit: Optional[int] = None) -> List[CalendarOutbox]:
        """
        Entries the worker may pick up this cycle, oldest first.

        Args:
            now: Current time; retry-scheduled entries due at or before it qualify
            lease_expiry: PROCESSING entries last touched before this are reclaimable
            max_retry: Entries that already used this many attempts are excluded
            limit: Optional batch cap
        """
        query = CalendarOutbox.query.filter(
            _processable_clause(now, lease_expiry),
            CalendarOutbox.retry_count < max_retry,
        ).order_by(CalendarOutbox.created_at.asc(), CalendarOutbox.id.asc())

        if limit:
            query = query.limit(limit)
        return query.all()

    @staticmethod
    def claim(outbox_id: int, lease_expiry: datetime, now: Optional[datetime] = None,
              max_retry: Optional[int] = None) -> bool:
        """
        Atomically move one entry to PROCESSING if it is still eligible.

        ``now`` both decides eligibility and stamps the lease, so callers pass
        the time of the claim itself. Commits immediately so the lease is
        visible to other workers before any external call starts. Returns
        False when another worker got there first.
        """
        now = now or utcnow()
        conditions = [CalendarOutbox.id == outbox_id, _processable_clause(now, lease_expiry)]
        if max_retry is not None:
            conditions.append(CalendarOutbox.retry_count < max_retry)

        result = db.session.execute(
            update(CalendarOutbox)
            .where(*conditions)
            # An in-flight entry carries no retry time
            .values(status=OutboxStatus.PROCESSING, updated_at=now, next_retry_at=None)
            .execution_options(synchronize_session=False)
        )
        db.session.commit()
        return result.rowcount == 1

    @staticmethod
    def find_all_by_task(task_id: int) -> List[CalendarOutbox]:
        return CalendarOutbox.query.filter_by(task_id=task_id).order_by(
            CalendarOutbox.created_at.desc(), CalendarOutbox.id.desc()
        ).all()

    @staticmethod
    def find_all_by_task_and_status(task_id: int, status: OutboxStatus) -> List[CalendarOutbox]:
        return CalendarOutbox.query.filter_by(task_id=task_id, status=status).order_by(
            CalendarOutbox.created_at.desc(), CalendarOutbox.id.desc()
        ).all()

    @staticmethod
    def find_all_by_status(status: OutboxStatus) -> List[CalendarOutbox]:
        return CalendarOutbox.query.filter_by(status=status).order_by(
            CalendarOutbox.created_at.desc(), CalendarOutbox.id.desc()
        ).all()

    @staticmethod
    def find_recent(limit: int = 100) -> List[CalendarOutbox]:
        return CalendarOutbox.query.order_by(
            CalendarOutbox.created_at.desc(), CalendarOutbox.id.desc()
        ).limit(limit).all()

    @staticmethod
    def find_latest_for_task(task_id: int) -> Optional[CalendarOutbox]:
        return CalendarOutbox.query.filter_by(task_id=task_id).order_by(
            CalendarOutbox.created_at.desc(), CalendarOutbox.id.desc()
        ).first()

    @staticmethod
    def find_last_with_status_for_task(task_id: int, status: OutboxStatus) -> Optional[CalendarOutbox]:
        return CalendarOutbox.query.filter_by(task_id=task_id, status=status).order_by(
            CalendarOutbox.updated_at.desc(), CalendarOutbox.id.desc()
        ).first()
