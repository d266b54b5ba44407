"""Database models for the notification pipeline."""
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, String, Text, Uuid

from shared.database import Base, JSONColumn, utcnow


class JobStatus(str, Enum):
    """Status of a delayed notification job."""
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"


class NotificationJob(Base):
    """A notification to send at or after ``scheduled_at``.

    Orders are referenced by number only, so a job can outlive its order row.
    """

    __tablename__ = "notification_jobs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    order_number = Column(String(32), nullable=False, index=True)
    kind = Column(String(32), nullable=False)
    recipient = Column(String(255), nullable=True)

    scheduled_at = Column(DateTime, nullable=False)
    status = Column(String(20), default=JobStatus.PENDING.value, nullable=False)
    attempts = Column(Integer, default=0, nullable=False)
    last_attempt_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    # "metadata" is reserved on declarative classes
    payload = Column("metadata", JSONColumn, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_notification_jobs_status_scheduled", "status", "scheduled_at"),
        Index("ix_notification_jobs_order_kind", "order_number", "kind"),
    )


class NotificationLog(Base):
    """Append-only history of dispatch attempts."""

    __tablename__ = "notification_logs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    order_number = Column(String(32), nullable=False)
    kind = Column(String(32), nullable=False)
    channel = Column(String(10), nullable=False)  # email, sms
    outcome = Column(String(10), nullable=False)  # sent, skipped, failed
    source = Column(String(10), nullable=False)  # immediate, sweep

    recipient = Column(String(255), nullable=True)
    provider = Column(String(50), nullable=True)
    provider_message_id = Column(String(255), nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        Index("ix_notification_logs_order_created", "order_number", "created_at"),
    )
