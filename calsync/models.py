from flask_sqlalchemy import SQLAlchemy
from datetime import timedelta
from enum import Enum

from calsync.datetime_utils import utcnow, isoformat_or_none

db = SQLAlchemy()

# Stored when a failure is recorded without any diagnostic text
EMPTY_ERROR_PLACEHOLDER = "No error detail provided"

# A synced task occupies the hour leading up to its due time
CALENDAR_EVENT_DURATION = timedelta(hours=1)
DONE_TITLE_PREFIX = "[DONE] "


class OutboxStatus(Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class OutboxOpType(Enum):
    UPSERT = "UPSERT"
    DELETE = "DELETE"


class TaskStatus(Enum):
    REQUESTED = "REQUESTED"
    IN_PROGRESS = "IN_PROGRESS"
    BLOCKED = "BLOCKED"
    DONE = "DONE"


class InvalidOutboxStateTransitionError(ValueError):
    """Raised when an outcome is applied to an outbox entry that is not PROCESSING."""


def _diagnostic(error_message):
    if error_message is None or not str(error_message).strip():
        return EMPTY_ERROR_PLACEHOLDER
    return str(error_message)


class CalendarOutbox(db.Model):
    '''One pending or completed calendar side effect for a task'''
    __tablename__ = "calendar_outbox"
    __table_args__ = (
        db.Index("idx_outbox_status_next_retry", "status", "next_retry_at"),
        db.Index("idx_outbox_task_created", "task_id", "created_at"),
        db.Index("idx_outbox_task_status_optype", "task_id", "status", "op_type"),
    )

    id = db.Column(db.Integer, primary_key=True)
    task_id = db.Column(db.Integer, nullable=False)
    op_type = db.Column(db.Enum(OutboxOpType, native_enum=False, length=10), nullable=False)
    payload = db.Column(db.Text, nullable=False)  # JSON snapshot, replayed verbatim on every attempt
    status = db.Column(db.Enum(OutboxStatus, native_enum=False, length=15), nullable=False, default=OutboxStatus.PENDING)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    next_retry_at = db.Column(db.DateTime, nullable=True)
    last_error = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @classmethod
    def for_upsert(cls, task_id, payload):
        return cls(
            task_id=task_id,
            op_type=OutboxOpType.UPSERT,
            payload=payload,
            status=OutboxStatus.PENDING,
            retry_count=0,
        )

    @classmethod
    def for_delete(cls, task_id, payload):
        return cls(
            task_id=task_id,
            op_type=OutboxOpType.DELETE,
            payload=payload,
            status=OutboxStatus.PENDING,
            retry_count=0,
        )

    # -------------------------
    # State machine
    # -------------------------
    def mark_as_processing(self):
        if self.status == OutboxStatus.SUCCESS:
            raise InvalidOutboxStateTransitionError(
                f"Cannot transition from {self.status.value} to PROCESSING"
            )
        self.status = OutboxStatus.PROCESSING

    def mark_as_success(self):
        self._validate_currently_processing()

        self.status = OutboxStatus.SUCCESS
        self.last_error = None
        self.next_retry_at = None

    def mark_for_retry(self, error_message, next_retry_at):
        """PROCESSING -> FAILED with a scheduled retry (None once the budget is spent)."""
        self._validate_currently_processing()

        self.status = OutboxStatus.FAILED
        self.retry_count = (self.retry_count or 0) + 1
        self.last_error = _diagnostic(error_message)
        self.next_retry_at = next_retry_at

    def mark_as_failed(self, error_message):
        """PROCESSING -> FAILED with no further automatic attempts."""
        self._validate_currently_processing()

        self.status = OutboxStatus.FAILED
        self.last_error = _diagnostic(error_message)
        self.next_retry_at = None

    def _validate_currently_processing(self):
        if self.status != OutboxStatus.PROCESSING:
            current = self.status.value if self.status else None
            raise InvalidOutboxStateTransitionError(
                f"Cannot transition from {current} (expected: PROCESSING)"
            )

    def __repr__(self):
        return f"<CalendarOutbox {self.id} task={self.task_id} {self.op_type.value if self.op_type else None}/{self.status.value if self.status else None}>"

    def to_dict(self):
        return {
            "id": self.id,
            "taskId": self.task_id,
            "opType": self.op_type.value if self.op_type else None,
            "status": self.status.value if self.status else None,
            "retryCount": self.retry_count,
            "nextRetryAt": isoformat_or_none(self.next_retry_at),
            "lastError": self.last_error,
            "payload": self.payload,
            "createdAt": isoformat_or_none(self.created_at),
            "updatedAt": isoformat_or_none(self.updated_at),
        }


class OAuthGoogleToken(db.Model):
    '''Google OAuth credential for one principal'''
    __tablename__ = "oauth_google_tokens"

    user_id = db.Column(db.Integer, primary_key=True, autoincrement=False)
    access_token = db.Column(db.Text, nullable=False)
    refresh_token = db.Column(db.Text, nullable=False)
    expiry_at = db.Column(db.DateTime, nullable=False)
    scope = db.Column(db.Text, nullable=False, default="")
    version = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    # Concurrent refreshes race on this column; the loser gets StaleDataError
    __mapper_args__ = {"version_id_col": version}

    @classmethod
    def create(cls, user_id, access_token, refresh_token, expiry_at, scope):
        if not refresh_token or not refresh_token.strip():
            raise ValueError("Refresh token is required for initial authentication")
        now = utcnow()
        return cls(
            user_id=user_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expiry_at=expiry_at,
            scope=scope or "",
            created_at=now,
            updated_at=now,
        )

    def update_access_token(self, access_token, expiry_at):
        self.access_token = access_token
        self.expiry_at = expiry_at
        self.updated_at = utcnow()

    def update_tokens(self, access_token, refresh_token, expiry_at, scope):
        self.access_token = access_token
        self.expiry_at = expiry_at

        # Google only returns a refresh token on consent; keep the old one otherwise
        if refresh_token and refresh_token.strip():
            self.refresh_token = refresh_token
        if scope and scope.strip():
            self.scope = scope

        self.updated_at = utcnow()

    def is_expiring_soon(self, minutes, now=None):
        now = now or utcnow()
        return self.expiry_at <= now + timedelta(minutes=minutes)

    def __repr__(self):
        return f"<OAuthGoogleToken user={self.user_id} expiry={self.expiry_at}>"


class Task(db.Model):
    '''Task fields that drive calendar synchronization'''
    __tablename__ = "tasks"

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text, nullable=True)
    status = db.Column(db.Enum(TaskStatus, native_enum=False, length=20), nullable=False, default=TaskStatus.REQUESTED)
    start_at = db.Column(db.DateTime, nullable=True)
    due_at = db.Column(db.DateTime, nullable=True)
    calendar_sync_enabled = db.Column(db.Boolean, nullable=False, default=False)
    calendar_event_id = db.Column(db.String(100), nullable=True)
    deleted = db.Column(db.Boolean, nullable=False, default=False)
    deleted_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @classmethod
    def get_active(cls, task_id):
        '''Live (not soft-deleted) task or None'''
        return cls.query.filter_by(id=task_id, deleted=False).first()

    def is_calendar_sync_active(self):
        return bool(self.calendar_sync_enabled) and self.due_at is not None

    def calendar_event_title(self):
        if self.status == TaskStatus.DONE:
            return f"{DONE_TITLE_PREFIX}{self.title}"
        return self.title

    def calendar_event_window(self):
        '''(start, end) of the calendar event, or (None, None) without a due date'''
        if self.due_at is None:
            return None, None
        return self.due_at - CALENDAR_EVENT_DURATION, self.due_at

    def mark_as_deleted(self):
        self.deleted = True
        self.deleted_at = utcnow()

    def __repr__(self):
        return f"<Task {self.id}: {self.title}>"

    def to_dict(self):
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "status": self.status.value if self.status else None,
            "startAt": isoformat_or_none(self.start_at),
            "dueAt": isoformat_or_none(self.due_at),
            "calendarSyncEnabled": self.calendar_sync_enabled,
            "calendarEventId": self.calendar_event_id,
            "deleted": self.deleted,
        }
