"""
Shared fixtures: a Flask app on in-memory SQLite plus small model factories.
"""
import json
from datetime import datetime, timedelta

import pytest

from calsync import create_app
from calsync.datetime_utils import utcnow
from calsync.models import CalendarOutbox, OAuthGoogleToken, OutboxOpType, OutboxStatus, Task, TaskStatus, db

TEST_CONFIG = {
    "TESTING": True,
    "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
    "OUTBOX_WORKER_ENABLED": False,
    "CALENDAR_ADAPTER": "mock",
    "GOOGLE_CLIENT_ID": "test-client-id",
    "GOOGLE_CLIENT_SECRET": "test-client-secret",
    "GOOGLE_REDIRECT_URI": "http://localhost:8000/oauth/google/callback",
    "LOG_LEVEL": "WARNING",
}


@pytest.fixture
def app():
    """Create Flask application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def now():
    """Fixed reference time, second precision."""
    return utcnow().replace(microsecond=0)


class FakeClock:
    """Stand-in for utcnow that only moves when told to."""

    def __init__(self, start):
        self.value = start

    def __call__(self):
        return self.value

    def advance(self, **kwargs):
        self.value += timedelta(**kwargs)


@pytest.fixture
def clock(now):
    return FakeClock(now)


@pytest.fixture
def make_task(app):
    """Factory for persisted tasks."""
    def _make_task(title="Write report", due_at=None, calendar_sync_enabled=True,
                   status=TaskStatus.REQUESTED, calendar_event_id=None, description="Quarterly numbers",
                   deleted=False):
        task = Task(
            title=title,
            description=description,
            status=status,
            due_at=due_at if due_at is not None else datetime(2030, 3, 1, 17, 0, 0),
            calendar_sync_enabled=calendar_sync_enabled,
            calendar_event_id=calendar_event_id,
            deleted=deleted,
        )
        db.session.add(task)
        db.session.commit()
        return task
    return _make_task


def build_payload(task_id, user_id=7, op_type="UPSERT", event_id=None):
    return json.dumps({
        "version": 1,
        "taskId": task_id,
        "opType": op_type,
        "event": {"eventId": event_id},
        "meta": {"requestedAt": "2030-01-01T00:00:00", "requestedByPrincipalId": user_id},
    })


@pytest.fixture
def make_outbox(app):
    """Factory for persisted outbox rows in any state."""
    def _make_outbox(task_id=1, op_type=OutboxOpType.UPSERT, status=OutboxStatus.PENDING, retry_count=0,
                     next_retry_at=None, created_at=None, updated_at=None, payload=None, user_id=7,
                     event_id=None):
        stamp = created_at or utcnow()
        outbox = CalendarOutbox(
            task_id=task_id,
            op_type=op_type,
            payload=payload or build_payload(task_id, user_id=user_id, op_type=op_type.value, event_id=event_id),
            status=status,
            retry_count=retry_count,
            next_retry_at=next_retry_at,
            created_at=stamp,
            updated_at=updated_at or stamp,
        )
        db.session.add(outbox)
        db.session.commit()
        return outbox
    return _make_outbox


@pytest.fixture
def make_token(app):
    """Factory for stored Google credentials."""
    def _make_token(user_id=7, access_token="access-1", refresh_token="refresh-1", expires_in=timedelta(hours=1)):
        token = OAuthGoogleToken.create(user_id, access_token, refresh_token, utcnow() + expires_in,
                                        "https://www.googleapis.com/auth/calendar")
        db.session.add(token)
        db.session.commit()
        return token
    return _make_token


@pytest.fixture
def file_app(tmp_path):
    """App on a file-backed SQLite database, for tests where threads need their own connections."""
    app = create_app({**TEST_CONFIG, "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'calsync.sqlite'}"})

    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.drop_all()
        db.engine.dispose()
