"""
Delivery Worker

Runs one polling cycle: fetch due jobs, attempt delivery, write back state.
The store is re-read every cycle; nothing survives between runs.
"""
import asyncio
import random
from dataclasses import dataclass, asdict
from datetime import timedelta

import httpx
import structlog

from hookrelay.config import settings
from hookrelay.models.retry_job import RetryJob
from hookrelay.routes.metrics import track_webhook_attempt, track_webhook_failed
from hookrelay.sentry_config import capture_exception
from hookrelay.services.retry_job_store import RetryJobStore
from hookrelay.services.retry_policy import BackoffPolicy
from hookrelay.services.webhook_service import DeliveryOutcome, send_webhook

logger = structlog.get_logger()

MAX_ERROR_LENGTH = 2000


@dataclass
class CycleSummary:
    """Counts for one polling cycle."""
    attempted: int = 0
    succeeded: int = 0
    rescheduled: int = 0
    failed: int = 0
    errored: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class DeliveryWorker:
    """Processes due webhook retry jobs in bounded batches."""

    def __init__(
        self,
        store: RetryJobStore,
        http_client: httpx.AsyncClient | None = None,
        policy: BackoffPolicy | None = None,
        batch_limit: int | None = None,
        concurrency: int | None = None,
        timeout: float | None = None,
        lease_seconds: float | None = None,
        signing_secret: str | None = None,
        rng: random.Random | None = None,
    ):
        self.store = store
        self.http_client = http_client
        self.policy = policy or BackoffPolicy.from_settings()
        self.batch_limit = batch_limit or settings.WEBHOOK_BATCH_LIMIT
        self.concurrency = max(1, concurrency or settings.WEBHOOK_CONCURRENCY)
        self.timeout = timeout or settings.WEBHOOK_TIMEOUT_SECONDS
        self.signing_secret = signing_secret if signing_secret is not None else settings.WEBHOOK_SIGNING_SECRET
        self.rng = rng
        # The lease has to outlive the attempt or a second worker could pick the job up mid-flight
        self.lease_seconds = max(lease_seconds or settings.WEBHOOK_CLAIM_LEASE_SECONDS, self.timeout * 2)

    async def run_once(self) -> CycleSummary:
        """
        Run one polling cycle.

        Errors from fetch_due_jobs abort the cycle and propagate to the
        caller. Errors while handling a single job are logged and counted,
        and the rest of the batch is still processed.
        """
        jobs = await self.store.fetch_due_jobs(self.batch_limit)
        summary = CycleSummary()

        if not jobs:
            logger.debug("webhook_cycle_idle")
            return summary

        logger.info("webhook_cycle_started", due_jobs=len(jobs), concurrency=self.concurrency)

        if self.http_client is not None:
            await self._process_batch(self.http_client, jobs, summary)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                await self._process_batch(client, jobs, summary)

        logger.info("webhook_cycle_finished", **summary.to_dict())
        return summary

    async def _process_batch(self, client: httpx.AsyncClient, jobs: list[RetryJob], summary: CycleSummary):
        # Semaphore waiters are served in order, so concurrency=1 keeps strict FIFO
        semaphore = asyncio.Semaphore(self.concurrency)

        async def guarded(job: RetryJob):
            async with semaphore:
                await self._process_isolated(client, job, summary)

        await asyncio.gather(*(guarded(job) for job in jobs))

    async def _process_isolated(self, client: httpx.AsyncClient, job: RetryJob, summary: CycleSummary):
        try:
            await self.process_job(client, job, summary)
        except Exception as e:
            summary.errored += 1
            logger.exception("webhook_job_error", job_id=job.id, error=str(e))
            capture_exception(e)

    async def process_job(self, client: httpx.AsyncClient, job: RetryJob, summary: CycleSummary):
        """Claim, deliver and record the outcome of one job."""
        log = logger.bind(job_id=job.id)

        job = await self.store.claim(job.id, self.lease_seconds)
        if job is None:
            log.info("webhook_claim_lost")
            return

        attempt = job.attempt_count + 1
        result = await send_webhook(
            client,
            job,
            attempt,
            timeout=self.timeout,
            signing_secret=self.signing_secret,
        )
        summary.attempted += 1
        track_webhook_attempt(result.outcome.value, result.duration_ms / 1000)

        if result.outcome is DeliveryOutcome.SUCCESS:
            if not await self.store.mark_completed(job.id, status_code=result.status_code):
                self._record_conflict(log, summary, "completed")
                return
            summary.succeeded += 1
            log.info("webhook_delivered", attempt=attempt, status_code=result.status_code,
                     duration_ms=result.duration_ms)
            return

        error = (result.error or "delivery failed")[:MAX_ERROR_LENGTH]

        if result.outcome is DeliveryOutcome.RETRYABLE and attempt < job.max_retries:
            delay = self.policy.delay_for(attempt, self.rng)
            next_retry_at = self.store.clock() + timedelta(seconds=delay)
            if not await self.store.mark_failed_attempt(job.id, error, next_retry_at, status_code=result.status_code):
                self._record_conflict(log, summary, "rescheduled")
                return
            summary.rescheduled += 1
            log.warning("webhook_rescheduled", attempt=attempt, max_retries=job.max_retries,
                        error=error, delay_seconds=round(delay, 3),
                        next_retry_at=next_retry_at.isoformat())
            return

        # Non-retryable status, or retry budget exhausted
        if not await self.store.mark_terminal_failure(job.id, error, status_code=result.status_code):
            self._record_conflict(log, summary, "failed")
            return
        summary.failed += 1
        track_webhook_failed()
        log.error("webhook_failed", attempt=attempt, max_retries=job.max_retries,
                  error=error, retryable=result.outcome is DeliveryOutcome.RETRYABLE)

    def _record_conflict(self, log, summary: CycleSummary, transition: str):
        # The row left the expected state under us; nothing was written
        summary.errored += 1
        log.warning("webhook_state_conflict", transition=transition)
