"""
Webhook retry job model.

One row per logical webhook delivery (one event, possibly many HTTP attempts).
Rows are never deleted; termination is a status change.
"""
import uuid
import enum
from datetime import datetime
from sqlalchemy import CheckConstraint, String, Text, Integer, Index, Enum as SQLEnum
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from hookrelay.models.base import Base, TimestampMixin, UTCDateTime, utcnow


class RetryJobStatus(str, enum.Enum):
    """Retry job status enum. COMPLETED and FAILED are terminal."""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class RetryJob(Base, TimestampMixin):
    """
    Webhook delivery job with retry state.

    A job is due when status is PENDING and next_retry_at <= now.
    """
    __tablename__ = "webhook_retry_jobs"
    __table_args__ = (
        Index("ix_webhook_retry_jobs_due", "status", "next_retry_at"),
        Index("ix_webhook_retry_jobs_created_at", "created_at"),
        CheckConstraint("attempt_count <= max_retries", name="ck_webhook_retry_jobs_attempt_bound"),
    )

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4())
    )
    webhook_url: Mapped[str] = mapped_column(Text, nullable=False)
    payload = mapped_column(JSONB, nullable=False)
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False)
    next_retry_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        nullable=False,
        default=utcnow
    )
    status: Mapped[RetryJobStatus] = mapped_column(
        SQLEnum(RetryJobStatus, native_enum=False,
                values_callable=lambda e: [m.value for m in e]),
        nullable=False,
        default=RetryJobStatus.PENDING
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_status_code: Mapped[int | None] = mapped_column(Integer, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.status in (RetryJobStatus.COMPLETED, RetryJobStatus.FAILED)

    def __repr__(self):
        return f"<RetryJob(id={self.id}, status={self.status}, attempts={self.attempt_count}/{self.max_retries})>"
