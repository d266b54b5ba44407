"""Persistent delayed notification queue.

Jobs live in the ``notification_jobs`` table, so anything scheduled survives
a restart. A periodic sweep claims due jobs one at a time with a conditional
pending -> processing update, dispatches them and records the outcome.
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel

from shared.database import utcnow
from shared.exceptions import OrderNotFound, RetryExhausted
from shared.schemas import OrderSnapshot

from .dispatcher import DispatchOutcome, NotificationDispatcher
from .kinds import NotificationKind, NotificationParams
from .models import JobStatus, NotificationJob
from .store import JobStore, NotificationLogStore

logger = logging.getLogger(__name__)

OrderLoader = Callable[[str], Awaitable[Optional[OrderSnapshot]]]


class SweepReport(BaseModel):
    """Counts for one sweep run."""
    due: int = 0
    claimed: int = 0
    sent: int = 0
    skipped: int = 0
    retried: int = 0
    failed: int = 0
    lost_claims: int = 0
    reclaimed: int = 0
    errors: int = 0


class PersistentNotificationQueue:
    """Schedules, cancels and sweeps delayed notification jobs."""

    def __init__(
        self,
        jobs: JobStore,
        dispatcher: NotificationDispatcher,
        order_loader: OrderLoader,
        history: Optional[NotificationLogStore] = None,
        create_tables: Optional[Callable[[], Awaitable[Any]]] = None,
        clock: Callable[[], datetime] = utcnow,
        retry_ceiling: int = 3,
        batch_size: int = 10,
        claim_lease: timedelta = timedelta(minutes=5),
    ):
        """
        Initialize the queue.

        Args:
            jobs: Job store
            dispatcher: Dispatcher used when a job comes due
            order_loader: Fetches the current order snapshot by number
            history: Optional dispatch history store
            create_tables: Coroutine function that creates the job table
            clock: Returns the current naive UTC time
            retry_ceiling: Attempts after which a job is marked failed
            batch_size: Maximum jobs claimed per sweep
            claim_lease: How long a processing claim may stay unfinished
        """
        self.jobs = jobs
        self.dispatcher = dispatcher
        self.order_loader = order_loader
        self.history = history
        self.create_tables = create_tables
        self.clock = clock
        self.retry_ceiling = retry_ceiling
        self.batch_size = batch_size
        self.claim_lease = claim_lease

    async def init(self) -> bool:
        """Ensure the job table exists. Failure is logged, never raised."""
        if self.create_tables is None:
            return True
        try:
            await self.create_tables()
        except Exception as e:
            logger.error(f"Failed to initialize notification job table: {str(e)}", exc_info=True)
            return False
        logger.info("Notification job table ready")
        return True

    async def schedule(
        self,
        order_number: str,
        kind: NotificationKind,
        recipient: Optional[str],
        when: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> NotificationJob:
        """Persist a pending job. Duplicates for the same key are allowed."""
        job = await self.jobs.insert(order_number, kind, recipient, when, metadata)
        logger.info(f"Scheduled {kind.value} for order {order_number} at {when.isoformat()}")
        return job

    async def cancel(self, order_number: str, kind: NotificationKind) -> int:
        """Delete pending jobs for the key. Returns how many were removed."""
        removed = await self.jobs.delete(order_number, kind, JobStatus.PENDING)
        if removed:
            logger.info(f"Cancelled {removed} pending {kind.value} job(s) for order {order_number}")
        return removed

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        order_number: Optional[str] = None,
        limit: int = 100,
    ) -> List[NotificationJob]:
        return await self.jobs.list_jobs(status=status, order_number=order_number, limit=limit)

    async def retry_failed(self, limit: int = 100) -> int:
        """Reset failed jobs to pending with attempts 0."""
        reset = await self.jobs.reset_failed(limit)
        logger.info(f"Reset {reset} failed notification jobs for retry")
        return reset

    async def sweep(self) -> SweepReport:
        """Process one batch of due jobs.

        Claims left in ``processing`` longer than the lease, by a crash or a
        restart mid-dispatch, are first released as failed attempts. Each job
        is handled on its own; an error on one never stops the rest.
        """
        now = self.clock()
        report = SweepReport()
        await self._release_stale_claims(now, report)

        batch = await self.jobs.select_due_batch(now, self.batch_size, self.retry_ceiling)
        report.due = len(batch)

        if not batch:
            return report

        logger.info(f"Processing {len(batch)} due notification jobs")

        for job in batch:
            try:
                await self._process(job, now, report)
            except Exception as e:
                report.errors += 1
                logger.error(f"Error processing notification job {job.id}: {str(e)}", exc_info=True)

        return report

    async def _release_stale_claims(self, now: datetime, report: SweepReport):
        stale = await self.jobs.select_stale_claims(now - self.claim_lease, self.batch_size)
        for job in stale:
            error = f"Claim taken at {job.last_attempt_at.isoformat()} expired before the job finished"
            try:
                if await self._fail_attempt(job, error, report):
                    report.reclaimed += 1
            except Exception as e:
                report.errors += 1
                logger.error(f"Error releasing notification job {job.id}: {str(e)}", exc_info=True)

    async def _process(self, job: NotificationJob, now: datetime, report: SweepReport):
        # The attempt count is part of the claim: a row read before another
        # sweep failed it is stale and must not be dispatched again.
        claimed = await self.jobs.conditional_update(
            job.id,
            JobStatus.PENDING,
            {"status": JobStatus.PROCESSING.value, "last_attempt_at": now},
            expected_attempts=job.attempts,
        )
        if not claimed:
            report.lost_claims += 1
            logger.debug(f"Notification job {job.id} already claimed")
            return

        report.claimed += 1
        error: Optional[str] = None
        skipped = False

        try:
            kind = NotificationKind(job.kind)
            order = await self.order_loader(job.order_number)
            if order is None:
                raise OrderNotFound(job.order_number)

            # Only a recipient captured into metadata pins the address; the
            # job's recipient column is informational and the live order wins.
            params = NotificationParams.from_metadata(job.payload)
            result = await self.dispatcher.dispatch(kind, order, params)
            await self._record(result)

            if result.outcome is DispatchOutcome.FAILED:
                error = result.error or "dispatch failed"
            elif result.outcome is DispatchOutcome.SKIPPED:
                skipped = True
        except OrderNotFound as e:
            error = str(e)
            logger.warning(f"Notification job {job.id}: {error}")
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error(f"Notification job {job.id} raised: {error}", exc_info=True)

        if error is not None:
            await self._fail_attempt(job, error, report)
            return

        finished = await self.jobs.conditional_update(
            job.id,
            JobStatus.PROCESSING,
            {"status": JobStatus.SENT.value},
            expected_attempts=job.attempts,
        )
        if not finished:
            logger.warning(f"Notification job {job.id} was released before it finished")
        if skipped:
            report.skipped += 1
        else:
            report.sent += 1

    async def _fail_attempt(self, job: NotificationJob, error: str, report: SweepReport) -> bool:
        """Count one failed attempt on a claimed job. False when the claim was lost."""
        attempts = job.attempts + 1
        exhausted = attempts >= self.retry_ceiling
        if exhausted:
            error = str(RetryExhausted(job.kind, job.order_number, attempts, error))

        updated = await self.jobs.conditional_update(
            job.id,
            JobStatus.PROCESSING,
            {
                "status": (JobStatus.FAILED if exhausted else JobStatus.PENDING).value,
                "attempts": attempts,
                "error_message": error,
            },
            expected_attempts=job.attempts,
        )
        if not updated:
            logger.warning(f"Notification job {job.id} was released before its failure was recorded")
            return False

        if exhausted:
            report.failed += 1
            logger.error(error)
        else:
            report.retried += 1
            logger.warning(
                f"{job.kind} for order {job.order_number} failed "
                f"(attempt {attempts}/{self.retry_ceiling}): {error}"
            )
        return True

    async def _record(self, result):
        if self.history is None:
            return
        try:
            await self.history.record(result, source="sweep")
        except Exception as e:
            logger.error(f"Failed to record notification history: {str(e)}", exc_info=True)
