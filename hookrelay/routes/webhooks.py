"""
Webhook retry API routes.

POST /enqueue queues a delivery, GET /process runs one polling cycle
(called by the scheduler), GET /jobs/{job_id} reports delivery status.
"""
import json
from typing import Any

import httpx
import structlog
from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from hookrelay.config import settings
from hookrelay.database import AsyncSessionLocal
from hookrelay.dependencies.auth import Caller, require_caller
from hookrelay.models.retry_job import RetryJob
from hookrelay.routes.metrics import track_cycle, track_webhook_enqueued, update_queue_depth
from hookrelay.sentry_config import capture_exception
from hookrelay.services.delivery_worker import DeliveryWorker
from hookrelay.services.retry_job_store import RetryJobStore, StorageError

logger = structlog.get_logger()

router = APIRouter(tags=["webhooks"])


class EnqueueRequest(BaseModel):
    """Request model for queueing a webhook delivery."""
    webhook_url: str | None = None
    payload: Any = None
    max_retries: int | None = None


class RetryJobResponse(BaseModel):
    """Response model for a retry job."""
    id: str
    webhook_url: str
    status: str
    attempt_count: int
    max_retries: int
    next_retry_at: str | None = None
    last_error: str | None = None
    last_status_code: int | None = None
    created_at: str | None = None
    updated_at: str | None = None


def job_to_response(job: RetryJob) -> RetryJobResponse:
    """Convert RetryJob model to RetryJobResponse."""
    return RetryJobResponse(
        id=job.id,
        webhook_url=job.webhook_url,
        status=job.status.value,
        attempt_count=job.attempt_count,
        max_retries=job.max_retries,
        next_retry_at=job.next_retry_at.isoformat() if job.next_retry_at else None,
        last_error=job.last_error,
        last_status_code=job.last_status_code,
        created_at=job.created_at.isoformat() if job.created_at else None,
        updated_at=job.updated_at.isoformat() if job.updated_at else None,
    )


def get_store() -> RetryJobStore:
    return RetryJobStore(AsyncSessionLocal)


def get_worker(store: RetryJobStore = Depends(get_store)) -> DeliveryWorker:
    return DeliveryWorker(store)


def validate_enqueue_request(request: EnqueueRequest) -> str | None:
    """Return an error message, or None if the request can be queued."""
    if not request.webhook_url:
        return "webhook_url is required"
    if request.payload is None:
        return "payload is required"
    if not isinstance(request.payload, dict):
        return "payload must be a JSON object"

    try:
        url = httpx.URL(request.webhook_url)
    except httpx.InvalidURL:
        return "webhook_url is not a valid URL"
    if url.scheme not in ("http", "https") or not url.host:
        return "webhook_url must be an absolute http(s) URL"

    if request.max_retries is not None and not 1 <= request.max_retries <= settings.WEBHOOK_MAX_RETRIES_LIMIT:
        return f"max_retries must be between 1 and {settings.WEBHOOK_MAX_RETRIES_LIMIT}"

    try:
        size = len(json.dumps(request.payload, allow_nan=False).encode())
    except ValueError:
        return "payload must be valid JSON (NaN and Infinity are not allowed)"
    if size > settings.WEBHOOK_MAX_PAYLOAD_BYTES:
        return f"payload too large ({size} bytes, max {settings.WEBHOOK_MAX_PAYLOAD_BYTES})"

    return None


def error_response(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error})


@router.post("/enqueue")
async def enqueue_webhook(
    request: EnqueueRequest,
    caller: Caller = Depends(require_caller),
    store: RetryJobStore = Depends(get_store),
):
    """
    Queue a webhook for delivery.

    Returns the job id immediately; delivery happens on the next
    processing cycle. Outcomes are visible through GET /jobs/{job_id}.
    """
    error = validate_enqueue_request(request)
    if error:
        logger.info("enqueue_rejected", caller=caller.subject, error=error)
        return error_response(status.HTTP_400_BAD_REQUEST, error)

    max_retries = request.max_retries or settings.WEBHOOK_DEFAULT_MAX_RETRIES

    job = await store.create(request.webhook_url, request.payload, max_retries)

    track_webhook_enqueued()
    logger.info("webhook_enqueued", job_id=job.id, caller=caller.subject, max_retries=max_retries)

    return {"success": True, "job_id": job.id}


@router.get("/process")
async def process_webhooks(
    caller: Caller = Depends(require_caller),
    worker: DeliveryWorker = Depends(get_worker),
):
    """
    Run one delivery cycle over the due jobs.

    Intended for the external scheduler. Individual delivery failures
    show up in the counts; only a cycle that cannot start returns 500.
    """
    try:
        summary = await worker.run_once()
    except Exception as e:
        track_cycle("aborted")
        capture_exception(e)
        logger.exception("webhook_cycle_aborted", caller=caller.subject, error=str(e))
        return error_response(status.HTTP_500_INTERNAL_SERVER_ERROR, str(e))

    track_cycle("ok")

    try:
        update_queue_depth(await worker.store.count_by_status())
    except StorageError as e:
        logger.warning("queue_depth_unavailable", error=str(e))

    return {
        "success": True,
        "processed_jobs": summary.attempted,
        "completed_jobs": summary.succeeded,
        "failed_jobs": summary.failed,
        "rescheduled_jobs": summary.rescheduled,
        "errored_jobs": summary.errored,
    }


@router.get("/jobs/{job_id}", response_model=RetryJobResponse)
async def get_retry_job(
    job_id: str,
    caller: Caller = Depends(require_caller),
    store: RetryJobStore = Depends(get_store),
):
    """Get delivery status of a queued webhook."""
    job = await store.get(job_id)

    if not job:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Job not found"
        )

    return job_to_response(job)
