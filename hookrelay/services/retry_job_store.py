"""
Retry job store.

The sole source of truth for webhook retry state. Every mutation is a
conditional UPDATE guarded by status == pending, so terminal jobs are
never touched again and concurrent workers cannot both win a transition.
Each call runs in its own session; nothing is cached between calls.
"""
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Callable

import structlog
from sqlalchemy import case, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from hookrelay.models.base import utcnow
from hookrelay.models.retry_job import RetryJob, RetryJobStatus

logger = structlog.get_logger()


class StorageError(Exception):
    """Raised when the job table cannot be read or written."""
    pass


# Count the attempt, but never past the job's ceiling
_COUNTED_ATTEMPT = case(
    (RetryJob.attempt_count < RetryJob.max_retries, RetryJob.attempt_count + 1),
    else_=RetryJob.attempt_count,
)


class RetryJobStore:
    """Persistence for RetryJob rows."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.clock = clock

    @asynccontextmanager
    async def _session(self, operation: str):
        try:
            async with self.session_factory() as session:
                yield session
        except (SQLAlchemyError, OSError) as e:
            logger.error("storage_error", operation=operation, error=str(e))
            raise StorageError(f"{operation} failed: {e}") from e

    async def create(self, webhook_url: str, payload: Any, max_retries: int) -> RetryJob:
        """
        Insert a new PENDING job that is due immediately.

        Args:
            webhook_url: Destination endpoint
            payload: JSON-serializable body to deliver
            max_retries: Ceiling on delivery attempts

        Returns:
            Newly created RetryJob
        """
        now = self.clock()
        job = RetryJob(
            webhook_url=webhook_url,
            payload=payload,
            max_retries=max_retries,
            attempt_count=0,
            status=RetryJobStatus.PENDING,
            next_retry_at=now,
            created_at=now,
            updated_at=now,
        )
        async with self._session("create") as session:
            session.add(job)
            await session.commit()
            await session.refresh(job)
        return job

    async def fetch_due_jobs(self, limit: int) -> list[RetryJob]:
        """Up to `limit` due jobs, oldest first."""
        now = self.clock()
        stmt = (
            select(RetryJob)
            .where(
                RetryJob.status == RetryJobStatus.PENDING,
                RetryJob.next_retry_at <= now,
            )
            .order_by(RetryJob.created_at.asc(), RetryJob.id.asc())
            .limit(limit)
        )
        async with self._session("fetch_due_jobs") as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get(self, job_id: str) -> RetryJob | None:
        """Get job by ID."""
        async with self._session("get") as session:
            return await session.get(RetryJob, job_id)

    async def count_by_status(self) -> dict[str, int]:
        """Number of jobs per status."""
        stmt = select(RetryJob.status, func.count()).group_by(RetryJob.status)
        async with self._session("count_by_status") as session:
            result = await session.execute(stmt)
            counts = {s.value: 0 for s in RetryJobStatus}
            for status, count in result.all():
                counts[RetryJobStatus(status).value] = count
            return counts

    async def claim(self, job_id: str, lease_seconds: float) -> RetryJob | None:
        """
        Take a due job out of the due set for the length of one attempt.

        Pushes next_retry_at forward by the lease. Only one caller can win
        the claim; if the worker dies mid-attempt the lease runs out and
        the job becomes due again.

        Returns:
            The job as it stands after the claim, or None if this caller
            does not own the attempt. Callers must use this copy, not the
            one from fetch_due_jobs, since another worker may have made an
            attempt in between.
        """
        now = self.clock()
        stmt = (
            update(RetryJob)
            .where(
                RetryJob.id == job_id,
                RetryJob.status == RetryJobStatus.PENDING,
                RetryJob.next_retry_at <= now,
            )
            .values(next_retry_at=now + timedelta(seconds=lease_seconds), updated_at=now)
            .execution_options(synchronize_session=False)
        )
        async with self._session("claim") as session:
            result = await session.execute(stmt)
            if result.rowcount != 1:
                await session.rollback()
                return None
            # Read back inside the claiming transaction; the row is ours until commit
            job = (await session.execute(select(RetryJob).where(RetryJob.id == job_id))).scalar_one()
            await session.commit()
            return job

    async def mark_completed(self, job_id: str, status_code: int | None = None) -> bool:
        """
        Mark a PENDING job as COMPLETED, counting the successful attempt.

        A second call on a completed job is a no-op.
        """
        stmt = (
            update(RetryJob)
            .where(RetryJob.id == job_id, RetryJob.status == RetryJobStatus.PENDING)
            .values(
                status=RetryJobStatus.COMPLETED,
                attempt_count=_COUNTED_ATTEMPT,
                last_status_code=status_code,
                updated_at=self.clock(),
            )
        )
        return await self._apply("mark_completed", stmt)

    async def mark_failed_attempt(
        self,
        job_id: str,
        error: str,
        next_retry_at: datetime,
        status_code: int | None = None,
    ) -> bool:
        """
        Record a retryable failure and reschedule; the job stays PENDING.

        Refuses to spend the last attempt: a failure that exhausts the
        budget must go through mark_terminal_failure.
        """
        stmt = (
            update(RetryJob)
            .where(
                RetryJob.id == job_id,
                RetryJob.status == RetryJobStatus.PENDING,
                RetryJob.attempt_count + 1 < RetryJob.max_retries,
            )
            .values(
                attempt_count=RetryJob.attempt_count + 1,
                last_error=error,
                last_status_code=status_code,
                next_retry_at=next_retry_at,
                updated_at=self.clock(),
            )
        )
        return await self._apply("mark_failed_attempt", stmt)

    async def mark_terminal_failure(
        self,
        job_id: str,
        error: str,
        status_code: int | None = None,
    ) -> bool:
        """Mark a PENDING job as FAILED, counting the attempt."""
        stmt = (
            update(RetryJob)
            .where(RetryJob.id == job_id, RetryJob.status == RetryJobStatus.PENDING)
            .values(
                status=RetryJobStatus.FAILED,
                attempt_count=_COUNTED_ATTEMPT,
                last_error=error,
                last_status_code=status_code,
                updated_at=self.clock(),
            )
        )
        return await self._apply("mark_terminal_failure", stmt)

    async def _apply(self, operation: str, stmt) -> bool:
        async with self._session(operation) as session:
            result = await session.execute(stmt.execution_options(synchronize_session=False))
            await session.commit()
            return result.rowcount == 1
