"""Job store and notification history store."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import delete, select, update

from .dispatcher import DispatchResult
from .kinds import NotificationKind
from .models import JobStatus, NotificationJob, NotificationLog

logger = logging.getLogger(__name__)


class JobStore:
    """Persistence for delayed notification jobs.

    Every method opens its own short session, so concurrent sweeps never share
    one. The claim in ``conditional_update`` is the only guard against two
    sweeps processing the same job.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def insert(
        self,
        order_number: str,
        kind: NotificationKind,
        recipient: Optional[str],
        scheduled_at: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> NotificationJob:
        async with self.session_factory() as session:
            job = NotificationJob(
                order_number=order_number,
                kind=kind.value,
                recipient=recipient,
                scheduled_at=scheduled_at,
                status=JobStatus.PENDING.value,
                attempts=0,
                payload=metadata or {},
            )
            session.add(job)
            await session.commit()
            return job

    async def get(self, job_id: UUID) -> Optional[NotificationJob]:
        async with self.session_factory() as session:
            return await session.get(NotificationJob, job_id)

    async def select_due_batch(self, now: datetime, limit: int, ceiling: int) -> List[NotificationJob]:
        """Pending jobs due at ``now`` with attempts below ``ceiling``, oldest first."""
        async with self.session_factory() as session:
            query = (
                select(NotificationJob)
                .where(NotificationJob.status == JobStatus.PENDING.value)
                .where(NotificationJob.scheduled_at <= now)
                .where(NotificationJob.attempts < ceiling)
                .order_by(NotificationJob.scheduled_at, NotificationJob.created_at)
                .limit(limit)
            )
            result = await session.execute(query)
            return list(result.scalars().all())

    async def select_stale_claims(self, claimed_before: datetime, limit: int) -> List[NotificationJob]:
        """Processing jobs whose claim was taken before ``claimed_before``."""
        async with self.session_factory() as session:
            query = (
                select(NotificationJob)
                .where(NotificationJob.status == JobStatus.PROCESSING.value)
                .where(NotificationJob.last_attempt_at < claimed_before)
                .order_by(NotificationJob.last_attempt_at)
                .limit(limit)
            )
            result = await session.execute(query)
            return list(result.scalars().all())

    async def conditional_update(
        self,
        job_id: UUID,
        expected_status: JobStatus,
        fields: Dict[str, Any],
        expected_attempts: Optional[int] = None,
    ) -> bool:
        """Update the job only if it is still in ``expected_status``.

        With ``expected_attempts`` the attempt count must match too, so a row
        read before another sweep failed it can no longer be claimed.
        Returns True when this call won the row.
        """
        async with self.session_factory() as session:
            query = (
                update(NotificationJob)
                .where(NotificationJob.id == job_id)
                .where(NotificationJob.status == expected_status.value)
            )
            if expected_attempts is not None:
                query = query.where(NotificationJob.attempts == expected_attempts)
            result = await session.execute(query.values(**fields))
            await session.commit()
            return result.rowcount == 1

    async def delete(
        self,
        order_number: str,
        kind: NotificationKind,
        status: JobStatus = JobStatus.PENDING,
    ) -> int:
        """Delete jobs for ``(order_number, kind)`` in ``status``. Returns the count."""
        async with self.session_factory() as session:
            result = await session.execute(
                delete(NotificationJob)
                .where(NotificationJob.order_number == order_number)
                .where(NotificationJob.kind == kind.value)
                .where(NotificationJob.status == status.value)
            )
            await session.commit()
            return result.rowcount

    async def list_jobs(
        self,
        status: Optional[JobStatus] = None,
        order_number: Optional[str] = None,
        limit: int = 100,
    ) -> List[NotificationJob]:
        async with self.session_factory() as session:
            query = select(NotificationJob)
            if status is not None:
                query = query.where(NotificationJob.status == status.value)
            if order_number is not None:
                query = query.where(NotificationJob.order_number == order_number)
            query = query.order_by(NotificationJob.scheduled_at).limit(limit)
            result = await session.execute(query)
            return list(result.scalars().all())

    async def reset_failed(self, limit: int = 100) -> int:
        """Put terminally failed jobs back to pending with a fresh attempt budget."""
        async with self.session_factory() as session:
            query = (
                select(NotificationJob)
                .where(NotificationJob.status == JobStatus.FAILED.value)
                .order_by(NotificationJob.scheduled_at)
                .limit(limit)
            )
            result = await session.execute(query)
            jobs = result.scalars().all()

            for job in jobs:
                job.status = JobStatus.PENDING.value
                job.attempts = 0
                job.error_message = None

            await session.commit()
            return len(jobs)


class NotificationLogStore:
    """Append-only dispatch history."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def record(self, result: DispatchResult, source: str):
        """Append one row for the email and, for SMS kinds, one for the SMS."""
        rows = [
            NotificationLog(
                order_number=result.order_number,
                kind=result.kind.value,
                channel="email",
                outcome=result.outcome.value,
                source=source,
                recipient=result.recipient,
                provider=result.receipt.provider if result.receipt else None,
                provider_message_id=result.receipt.message_id if result.receipt else None,
                error_message=result.error,
            )
        ]
        if result.kind.sends_sms:
            rows.append(
                NotificationLog(
                    order_number=result.order_number,
                    kind=result.kind.value,
                    channel="sms",
                    outcome="sent" if result.sms_sent else "skipped",
                    source=source,
                )
            )

        async with self.session_factory() as session:
            session.add_all(rows)
            await session.commit()

    async def list_for_order(self, order_number: str) -> List[NotificationLog]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(NotificationLog)
                .where(NotificationLog.order_number == order_number)
                .order_by(NotificationLog.created_at)
            )
            return list(result.scalars().all())
