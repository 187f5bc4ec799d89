"""
Tests for OutboxStore: processable query, atomic claim and lease expiry.
These run against a real (in-memory SQLite) database.
"""
import threading
from datetime import timedelta

import pytest

from calsync.models import CalendarOutbox, OutboxOpType, OutboxStatus, db
from calsync.services.outbox_store import OutboxStore

MAX_RETRY = 6
LEASE = timedelta(minutes=5)


def _processable_ids(now):
    return [o.id for o in OutboxStore.find_processable(now, now - LEASE, MAX_RETRY)]


# ==============================================================================
# find_processable TESTS
# ==============================================================================

class TestFindProcessable:
    """Which entries a polling cycle may pick up."""

    def test_pending_without_retry_time_is_processable(self, make_outbox, now):
        outbox = make_outbox(created_at=now - timedelta(seconds=5))

        assert _processable_ids(now) == [outbox.id]

    def test_failed_due_for_retry_is_processable(self, make_outbox, now):
        due = make_outbox(status=OutboxStatus.FAILED, retry_count=1, next_retry_at=now - timedelta(seconds=1))
        make_outbox(status=OutboxStatus.FAILED, retry_count=1, next_retry_at=now + timedelta(minutes=1))

        assert _processable_ids(now) == [due.id]

    def test_terminal_failed_is_never_processable(self, make_outbox, now):
        """FAILED with no retry time (mark_failed) stays put."""
        make_outbox(status=OutboxStatus.FAILED, retry_count=0, next_retry_at=None)

        assert _processable_ids(now) == []

    def test_success_is_never_processable(self, make_outbox, now):
        make_outbox(status=OutboxStatus.SUCCESS)

        assert _processable_ids(now) == []

    def test_stale_processing_is_processable_fresh_is_not(self, make_outbox, now):
        stale = make_outbox(status=OutboxStatus.PROCESSING, updated_at=now - timedelta(minutes=6),
                            created_at=now - timedelta(minutes=10))
        make_outbox(status=OutboxStatus.PROCESSING, updated_at=now - timedelta(minutes=1),
                    created_at=now - timedelta(minutes=9))

        assert _processable_ids(now) == [stale.id]

    def test_retry_budget_exhausted_is_excluded(self, make_outbox, now):
        make_outbox(status=OutboxStatus.FAILED, retry_count=MAX_RETRY, next_retry_at=now - timedelta(minutes=1))
        make_outbox(status=OutboxStatus.PENDING, retry_count=MAX_RETRY + 1)

        assert _processable_ids(now) == []

    def test_ordered_oldest_first(self, make_outbox, now):
        newer = make_outbox(task_id=1, created_at=now - timedelta(minutes=1))
        older = make_outbox(task_id=2, created_at=now - timedelta(minutes=3))

        assert _processable_ids(now) == [older.id, newer.id]

    def test_limit_caps_batch(self, make_outbox, now):
        for task_id in range(5):
            make_outbox(task_id=task_id, created_at=now - timedelta(minutes=5 - task_id))

        assert len(OutboxStore.find_processable(now, now - LEASE, MAX_RETRY, limit=2)) == 2


# ==============================================================================
# claim TESTS
# ==============================================================================

class TestClaim:
    """The conditional UPDATE that leases an entry."""

    def test_claim_moves_entry_to_processing(self, make_outbox, now):
        outbox = make_outbox()
        outbox_id = outbox.id

        assert OutboxStore.claim(outbox_id, now - LEASE, now=now) is True

        db.session.expire_all()
        claimed = db.session.get(CalendarOutbox, outbox_id)
        assert claimed.status == OutboxStatus.PROCESSING
        assert claimed.updated_at == now

    def test_second_claim_with_same_lease_loses(self, make_outbox, now):
        outbox = make_outbox()

        first = OutboxStore.claim(outbox.id, now - LEASE, now=now)
        second = OutboxStore.claim(outbox.id, now - LEASE, now=now)

        assert (first, second) == (True, False)

    def test_stale_lease_can_be_reclaimed(self, make_outbox, now):
        outbox = make_outbox(status=OutboxStatus.PROCESSING, updated_at=now - timedelta(minutes=6))

        assert OutboxStore.claim(outbox.id, now - LEASE, now=now) is True

    def test_fresh_lease_cannot_be_reclaimed(self, make_outbox, now):
        outbox = make_outbox(status=OutboxStatus.PROCESSING, updated_at=now - timedelta(minutes=4))

        assert OutboxStore.claim(outbox.id, now - LEASE, now=now) is False

    def test_success_cannot_be_claimed(self, make_outbox, now):
        outbox = make_outbox(status=OutboxStatus.SUCCESS)

        assert OutboxStore.claim(outbox.id, now - LEASE, now=now) is False

    def test_claim_respects_retry_budget(self, make_outbox, now):
        outbox = make_outbox(status=OutboxStatus.FAILED, retry_count=MAX_RETRY,
                             next_retry_at=now - timedelta(minutes=1))

        assert OutboxStore.claim(outbox.id, now - LEASE, now=now, max_retry=MAX_RETRY) is False

    def test_claim_unknown_id_returns_false(self, app, now):
        assert OutboxStore.claim(999, now - LEASE, now=now) is False

    def test_claiming_a_retry_clears_its_retry_time(self, make_outbox, now):
        outbox_id = make_outbox(status=OutboxStatus.FAILED, retry_count=1,
                                next_retry_at=now - timedelta(seconds=1)).id

        assert OutboxStore.claim(outbox_id, now - LEASE, now=now) is True

        db.session.expire_all()
        claimed = db.session.get(CalendarOutbox, outbox_id)
        assert claimed.status == OutboxStatus.PROCESSING
        assert claimed.next_retry_at is None

    def test_concurrent_claims_have_one_winner(self, file_app, now):
        with file_app.app_context():
            outbox = CalendarOutbox.for_upsert(1, "{}")
            db.session.add(outbox)
            db.session.commit()
            outbox_id = outbox.id

        barrier = threading.Barrier(2)
        results = []

        def claim():
            with file_app.app_context():
                barrier.wait()
                results.append(OutboxStore.claim(outbox_id, now - LEASE, now=now))
                db.session.remove()

        threads = [threading.Thread(target=claim) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert sorted(results) == [False, True]


# ==============================================================================
# COALESCING HELPERS
# ==============================================================================

class TestCoalescingQueries:
    """Delete/exists helpers used while enqueuing."""

    def test_delete_only_touches_matching_status_and_op(self, make_outbox):
        make_outbox(task_id=1, status=OutboxStatus.PENDING)
        make_outbox(task_id=1, status=OutboxStatus.PENDING)
        failed = make_outbox(task_id=1, status=OutboxStatus.FAILED)
        delete = make_outbox(task_id=1, op_type=OutboxOpType.DELETE)
        other = make_outbox(task_id=2)

        removed = OutboxStore.delete_by_task_status_op(1, OutboxStatus.PENDING, OutboxOpType.UPSERT)
        db.session.commit()

        assert removed == 2
        remaining = {o.id for o in CalendarOutbox.query.all()}
        assert remaining == {failed.id, delete.id, other.id}

    def test_exists_by_task_status_op(self, make_outbox):
        make_outbox(task_id=3, op_type=OutboxOpType.DELETE)

        assert OutboxStore.exists_by_task_status_op(3, OutboxStatus.PENDING, OutboxOpType.DELETE) is True
        assert OutboxStore.exists_by_task_status_op(3, OutboxStatus.PENDING, OutboxOpType.UPSERT) is False

    @pytest.mark.parametrize("limit", [1, 3])
    def test_find_recent_is_newest_first(self, make_outbox, now, limit):
        ids = [make_outbox(task_id=i, created_at=now - timedelta(minutes=10 - i)).id for i in range(4)]

        recent = [o.id for o in OutboxStore.find_recent(limit)]

        assert recent == list(reversed(ids))[:limit]
