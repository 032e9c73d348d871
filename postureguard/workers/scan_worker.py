from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from postureguard.core.config import get_settings
from postureguard.core.logging import configure_logging
from postureguard.services.scans import ScanJobPayload, execute_scan, run_scheduled_scans


logger = logging.getLogger(__name__)


async def run_directory_scan(ctx, payload: dict) -> str | None:
    # Parse and validate payloads in the worker to enforce schema contracts.
    job_payload = ScanJobPayload.model_validate(payload)
    logger.info(
        "scan_job_started job_id=%s scan_run_id=%s org=%s provider=%s",
        ctx.get("job_id"),
        job_payload.scan_run_id,
        job_payload.organization_id,
        job_payload.provider,
    )
    return await execute_scan(job_payload.scan_run_id)


async def scan_schedule_tick(ctx) -> int:
    # Watchdog and scheduler share one tick; the scheduler runs the watchdog first.
    triggered = await run_scheduled_scans()
    return len(triggered)


def _tick_minutes() -> set[int]:
    step = max(1, min(60, get_settings().scan_schedule_tick_minutes))
    return set(range(0, 60, step))


async def _startup(ctx) -> None:
    configure_logging()
    settings = get_settings()
    logger.info(
        "scan_worker_started queue=%s tick_minutes=%s timeout_minutes=%s",
        settings.scan_queue_name,
        settings.scan_schedule_tick_minutes,
        settings.scan_timeout_minutes,
    )


async def _shutdown(ctx) -> None:
    logger.info("scan_worker_stopped")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.scan_queue_name
    # A scan is never re-run by the queue; a new trigger creates a new run.
    max_tries = 1
    job_timeout = settings.scan_timeout_minutes * 60
    functions = [run_directory_scan]
    cron_jobs = [cron(scan_schedule_tick, minute=_tick_minutes(), run_at_startup=True)]
    on_startup = _startup
    on_shutdown = _shutdown
