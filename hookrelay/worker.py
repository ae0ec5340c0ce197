"""
ARQ cron worker for HookRelay.

Optional built-in scheduler: runs one delivery cycle every
PROCESS_INTERVAL_SECONDS. Start with `arq hookrelay.worker.WorkerSettings`.
An external cron hitting GET /process works just as well.
"""
import asyncio

import httpx
import structlog
from arq import cron
from arq.connections import RedisSettings

from hookrelay.config import settings
from hookrelay.database import AsyncSessionLocal
from hookrelay.logging_config import configure_logging
from hookrelay.routes.metrics import track_cycle
from hookrelay.sentry_config import configure_sentry, capture_exception
from hookrelay.services.delivery_worker import DeliveryWorker
from hookrelay.services.retry_job_store import RetryJobStore

logger = structlog.get_logger()


async def process_due_webhooks(ctx: dict) -> dict:
    """Run one delivery cycle. Scheduled by ARQ cron."""
    worker = DeliveryWorker(
        RetryJobStore(AsyncSessionLocal),
        http_client=ctx.get("http_client"),
    )
    try:
        summary = await worker.run_once()
    except Exception:
        track_cycle("aborted")
        capture_exception()
        logger.exception("webhook_cycle_aborted", trigger="arq")
        raise

    track_cycle("ok")
    return summary.to_dict()


def cron_schedule(interval_seconds: int) -> dict:
    """
    Translate an interval into ARQ cron fields.

    Sub-minute intervals fire on matching seconds; longer ones on
    matching minutes at second 0. Cron fields wrap every minute and
    hour, so only intervals that divide 60 seconds, or whole minutes
    that divide 60 minutes, give even spacing. Anything else is rejected.

    Raises:
        ValueError: If the interval cannot be expressed as an even cron step
    """
    if 0 < interval_seconds < 60 and 60 % interval_seconds == 0:
        return {"second": set(range(0, 60, interval_seconds))}

    minutes, remainder = divmod(interval_seconds, 60)
    if interval_seconds >= 60 and remainder == 0 and 60 % minutes == 0:
        return {"minute": set(range(0, 60, minutes)), "second": 0}

    raise ValueError(
        f"PROCESS_INTERVAL_SECONDS={interval_seconds} cannot be scheduled evenly; "
        "use a divisor of 60 seconds or a whole number of minutes dividing 60"
    )


async def startup(ctx: dict):
    configure_logging()
    configure_sentry()
    ctx["http_client"] = httpx.AsyncClient(timeout=settings.WEBHOOK_TIMEOUT_SECONDS)
    logger.info("arq_worker_started", interval_seconds=settings.PROCESS_INTERVAL_SECONDS)


async def shutdown(ctx: dict):
    client = ctx.get("http_client")
    if client is not None:
        await client.aclose()


class WorkerSettings:
    """Settings for ARQ worker - use with 'arq hookrelay.worker.WorkerSettings'"""
    redis_settings = RedisSettings.from_dsn(settings.REDIS_URL)
    functions = [process_due_webhooks]
    cron_jobs = [
        cron(
            process_due_webhooks,
            run_at_startup=True,
            unique=True,
            timeout=settings.WEBHOOK_TIMEOUT_SECONDS * settings.WEBHOOK_BATCH_LIMIT + 30,
            **cron_schedule(settings.PROCESS_INTERVAL_SECONDS),
        )
    ]
    on_startup = startup
    on_shutdown = shutdown


async def main():
    """Run the worker using arq cli."""
    print("Use: arq hookrelay.worker.WorkerSettings")
    print(f"Redis: {settings.REDIS_URL}")


if __name__ == "__main__":
    asyncio.run(main())
