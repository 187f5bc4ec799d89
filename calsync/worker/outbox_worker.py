"""
Calendar outbox worker.

Each cycle picks up processable entries oldest first, leases them one at a
time with an atomic conditional UPDATE and hands them to the calendar
adapter. The outcome of the external call decides the entry's next state:

- success -> SUCCESS
- retryable failure or unexpected error -> FAILED with a backoff retry time
- 401 -> refresh the principal's token, then FAILED with an immediate retry
- any other permanent failure -> FAILED with no further attempts

Nothing escapes a cycle; the scheduler keeps running whatever happens.
"""
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Optional

from calsync.datetime_utils import utcnow
from calsync.google.calendar_service import CalendarAdapter
from calsync.google.errors import NonRetryableIntegrationError, RetryableIntegrationError
from calsync.google.oauth import GoogleOAuthService
from calsync.logging_config import OutboxCycleContext, get_logger
from calsync.models import db
from calsync.services.outbox_service import OutboxService
from calsync.services.outbox_store import OutboxStore

logger = get_logger(__name__)

SUCCEEDED = "succeeded"
RETRIED = "retried"
FAILED = "failed"
SKIPPED = "skipped"
ERROR = "error"


@dataclass
class CycleResult:
    found: int = 0
    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    cycle_id: Optional[str] = None

    def record(self, outcome: str):
        if outcome == SKIPPED:
            self.skipped += 1
            return
        self.claimed += 1
        if outcome == SUCCEEDED:
            self.succeeded += 1
        elif outcome == RETRIED:
            self.retried += 1
        elif outcome == FAILED:
            self.failed += 1
        else:
            self.errors += 1

    def to_dict(self):
        return asdict(self)


class CalendarOutboxWorker:
    """Drains the calendar outbox through a CalendarAdapter."""

    def __init__(self, adapter: CalendarAdapter, oauth_service: Optional[GoogleOAuthService] = None, app=None,
                 lease_timeout_minutes: int = 5, max_retry: int = 6, batch_size: Optional[int] = 50,
                 name: str = "calendar_outbox", clock=utcnow):
        self.adapter = adapter
        self.oauth_service = oauth_service
        self.app = app
        self.lease_timeout = timedelta(minutes=lease_timeout_minutes)
        self.max_retry = max_retry
        self.batch_size = batch_size
        self.name = name
        self.clock = clock

    @classmethod
    def from_config(cls, config, adapter, oauth_service=None, app=None):
        return cls(
            adapter,
            oauth_service=oauth_service,
            app=app,
            lease_timeout_minutes=config.get("OUTBOX_LEASE_TIMEOUT_MINUTES", 5),
            max_retry=config.get("OUTBOX_MAX_RETRY", 6),
            batch_size=config.get("OUTBOX_BATCH_SIZE", 50),
        )

    def run(self):
        """Scheduler entry point: one cycle inside an application context."""
        with self.app.app_context():
            self.poll_and_process()

    def poll_and_process(self, now: Optional[datetime] = None) -> CycleResult:
        now = now or self.clock()
        lease_expiry = now - self.lease_timeout
        result = CycleResult()

        with OutboxCycleContext(self.name) as cycle:
            result.cycle_id = cycle.cycle_id
            try:
                candidates = OutboxStore.find_processable(now, lease_expiry, self.max_retry, limit=self.batch_size)
                # Claims commit and expire loaded rows, so only ids are carried forward
                candidate_ids = [outbox.id for outbox in candidates]
                result.found = len(candidate_ids)

                if not candidate_ids:
                    logger.debug("No processable outboxes")
                    return result

                logger.info("Processable outboxes found", count=result.found)
                for outbox_id in candidate_ids:
                    result.record(self.process_one(outbox_id, lease_expiry))

            except Exception as e:
                db.session.rollback()
                logger.error("Fatal error in outbox polling cycle", error=str(e), exc_info=True)

        if result.claimed:
            logger.info("Outbox cycle finished", **result.to_dict())
        return result

    def process_one(self, outbox_id: int, lease_expiry: datetime) -> str:
        """
        Claim and apply one entry. Returns the outcome name; never raises.

        The lease and any retry time are stamped with the clock at that
        moment, not the cycle start, since a batch can outlive the lease.
        """
        if not OutboxService.claim_processing(outbox_id, lease_expiry, now=self.clock(), max_retry=self.max_retry):
            logger.debug("Outbox already claimed by another worker", outbox_id=outbox_id)
            return SKIPPED

        try:
            outbox = OutboxService.get_outbox(outbox_id)
            logger.info("Processing outbox", outbox_id=outbox_id, op_type=outbox.op_type.value,
                        task_id=outbox.task_id, retry_count=outbox.retry_count)

            try:
                self.adapter.handle(outbox)
            except RetryableIntegrationError as e:
                db.session.rollback()
                logger.warning("Retryable error on outbox", outbox_id=outbox_id, error=str(e))
                OutboxService.mark_for_retry(outbox_id, str(e), now=self.clock(), max_retry=self.max_retry)
                return RETRIED
            except NonRetryableIntegrationError as e:
                db.session.rollback()
                if e.status_code == 401:
                    return self._refresh_credentials_and_requeue(outbox_id)
                logger.error("Non-retryable error on outbox", outbox_id=outbox_id,
                             status_code=e.status_code, error=str(e))
                OutboxService.mark_failed(outbox_id, str(e))
                return FAILED
            except Exception as e:
                db.session.rollback()
                logger.error("Unexpected error on outbox", outbox_id=outbox_id, error=str(e), exc_info=True)
                OutboxService.mark_for_retry(outbox_id, f"Unexpected error: {e}", now=self.clock(),
                                             max_retry=self.max_retry)
                return RETRIED

            OutboxService.mark_success(outbox_id)
            logger.info("Outbox processed", outbox_id=outbox_id)
            return SUCCEEDED

        except Exception as e:
            # Recording the outcome itself failed; the lease expires and the entry is picked up again
            db.session.rollback()
            logger.error("Failed to record outbox outcome", outbox_id=outbox_id, error=str(e), exc_info=True)
            return ERROR

    def _refresh_credentials_and_requeue(self, outbox_id: int) -> str:
        """401 path: refresh the principal's token and make the entry due again right away."""
        try:
            outbox = OutboxService.get_outbox(outbox_id)
            user_id = OutboxService.extract_user_id_from_payload(outbox)
            logger.warning("401 on outbox, refreshing token", outbox_id=outbox_id, user_id=user_id)

            if self.oauth_service is None:
                raise RuntimeError("No credential manager configured")
            self.oauth_service.refresh_access_token(user_id)

        except Exception as refresh_error:
            db.session.rollback()
            logger.error("Token refresh failed", outbox_id=outbox_id, error=str(refresh_error))
            OutboxService.mark_failed(outbox_id, f"Token refresh failed: {refresh_error}")
            return FAILED

        now = self.clock()
        OutboxService.mark_for_retry(outbox_id, "Token refreshed, will retry", retry_at=now,
                                     now=now, max_retry=self.max_retry)
        logger.info("Token refreshed, outbox will be retried", outbox_id=outbox_id)
        return RETRIED
