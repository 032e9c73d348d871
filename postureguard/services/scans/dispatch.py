from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from arq import create_pool
from arq.connections import RedisSettings
from pydantic import BaseModel

from postureguard.core.config import get_settings


logger = logging.getLogger(__name__)

SCAN_JOB_NAME = "run_directory_scan"

_redis_pool = None
_redis_pool_loop = None
_redis_lock = asyncio.Lock()
# Strong references keep inline scan tasks alive until they finish.
_inline_tasks: set[asyncio.Task[Any]] = set()


class ScanJobPayload(BaseModel):
    # Job schema for API-to-worker handoff; the ScanRun row carries everything else.
    scan_run_id: str
    organization_id: str
    provider: str


async def get_redis_pool():
    # Cache the Redis pool to avoid reconnecting on every enqueue.
    global _redis_pool, _redis_pool_loop
    current_loop = asyncio.get_running_loop()
    if _redis_pool is not None and _redis_pool_loop == current_loop:
        return _redis_pool
    if _redis_pool is not None and _redis_pool_loop != current_loop:
        # Drop loop-bound pools to avoid cross-loop errors in tests.
        _redis_pool = None
    async with _redis_lock:
        if _redis_pool is None:
            settings = get_settings()
            _redis_pool = await create_pool(
                RedisSettings.from_dsn(settings.redis_url),
                default_queue_name=settings.scan_queue_name,
            )
            _redis_pool_loop = current_loop
    return _redis_pool


async def dispatch_scan(
    payload: ScanJobPayload,
    *,
    execute: Callable[[str], Awaitable[Any]],
) -> str:
    """Hand a created scan run to its executor and return the job id."""
    settings = get_settings()
    job_id = f"scan:{payload.scan_run_id}"
    if settings.scan_execution_mode.lower() == "inline":
        task = asyncio.create_task(execute(payload.scan_run_id), name=job_id)
        _inline_tasks.add(task)
        task.add_done_callback(_inline_tasks.discard)
        return job_id

    redis = await get_redis_pool()
    job = await redis.enqueue_job(
        SCAN_JOB_NAME,
        payload.model_dump(),
        _job_id=job_id,
        _queue_name=settings.scan_queue_name,
    )
    # When a job id already exists, arq returns None; keep tracing with the same id.
    return job.job_id if job else job_id


async def wait_for_inline_scans() -> None:
    # Lets tests and the CLI wait for in-process scans to settle.
    while _inline_tasks:
        await asyncio.gather(*list(_inline_tasks), return_exceptions=True)
