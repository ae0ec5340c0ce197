"""
Webhook Service

Performs a single outbound webhook delivery attempt and classifies the result.
"""
import json
import hmac
import hashlib
import asyncio
import enum
import time
from dataclasses import dataclass

import httpx

from hookrelay.models.retry_job import RetryJob
from hookrelay.services.retry_policy import is_retryable, is_success


class DeliveryOutcome(str, enum.Enum):
    """How a delivery attempt ended."""
    SUCCESS = "success"
    RETRYABLE = "retryable"
    TERMINAL = "terminal"


@dataclass
class DeliveryResult:
    """Result of one HTTP attempt."""
    outcome: DeliveryOutcome
    status_code: int | None = None
    error: str | None = None
    duration_ms: float = 0.0


def generate_webhook_signature(payload: str, secret: str) -> str:
    """Generate HMAC-SHA256 signature for webhook payload."""
    return hmac.new(
        secret.encode(),
        payload.encode(),
        hashlib.sha256
    ).hexdigest()


def build_headers(job_id: str, attempt: int, payload_str: str, signing_secret: str | None) -> dict:
    headers = {
        "Content-Type": "application/json",
        "X-Retry-Attempt": str(attempt),
        "X-Webhook-Id": job_id,
    }
    if signing_secret:
        headers["X-Webhook-Signature"] = generate_webhook_signature(payload_str, signing_secret)
    return headers


def classify_response(status_code: int) -> DeliveryResult:
    """Map an HTTP status to a delivery outcome."""
    if is_success(status_code):
        return DeliveryResult(DeliveryOutcome.SUCCESS, status_code=status_code)
    outcome = DeliveryOutcome.RETRYABLE if is_retryable(status_code) else DeliveryOutcome.TERMINAL
    return DeliveryResult(outcome, status_code=status_code, error=f"HTTP {status_code}")


async def send_webhook(
    client: httpx.AsyncClient,
    job: RetryJob,
    attempt: int,
    timeout: float = 10.0,
    signing_secret: str | None = None,
) -> DeliveryResult:
    """
    POST the job's payload to its webhook URL.

    Never raises for delivery problems: network errors and timeouts come
    back as RETRYABLE, malformed URLs as TERMINAL.

    Args:
        client: Shared HTTP client for the polling cycle
        job: Job being delivered
        attempt: 1-based number of this attempt, sent as X-Retry-Attempt
        timeout: Upper bound on the whole attempt, in seconds
        signing_secret: Adds X-Webhook-Signature when set
    """
    payload_str = json.dumps(job.payload)
    headers = build_headers(job.id, attempt, payload_str, signing_secret)

    start = time.monotonic()
    try:
        # httpx timeouts are per phase; wait_for bounds the attempt as a whole
        response = await asyncio.wait_for(
            client.post(job.webhook_url, content=payload_str, headers=headers, timeout=timeout),
            timeout=timeout,
        )
        result = classify_response(response.status_code)
    except (asyncio.TimeoutError, httpx.TimeoutException):
        result = DeliveryResult(DeliveryOutcome.RETRYABLE, error=f"Timeout after {timeout}s")
    except (httpx.InvalidURL, httpx.UnsupportedProtocol) as e:
        result = DeliveryResult(DeliveryOutcome.TERMINAL, error=f"Invalid URL: {e}")
    except httpx.RequestError as e:
        result = DeliveryResult(
            DeliveryOutcome.RETRYABLE,
            error=f"{type(e).__name__}: {e}" if str(e) else type(e).__name__,
        )

    result.duration_ms = round((time.monotonic() - start) * 1000, 2)
    return result
