from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.core.config import get_settings
from postureguard.persistence.repos import scan_runs as scan_runs_repo
from postureguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def fail_stale_runs(
    session: AsyncSession,
    *,
    organization_id: str | None = None,
    now: datetime | None = None,
) -> list[str]:
    """Fail RUNNING scans older than the configured timeout, releasing the run lock.

    A worker that died mid-scan leaves its row RUNNING forever otherwise.
    The caller commits.
    """
    settings = get_settings()
    now = now or _utc_now()
    cutoff = now - timedelta(minutes=settings.scan_timeout_minutes)
    runs = await scan_runs_repo.list_running_started_before(session, cutoff, organization_id=organization_id)
    for run in runs:
        await scan_runs_repo.mark_failed(
            session,
            run,
            error_message=f"Scan timed out after {settings.scan_timeout_minutes} minutes without completing",
            completed_at=now,
        )
        increment_counter("scan_runs_timed_out_total")
        logger.warning(
            "scan_run_timed_out scan_run_id=%s org=%s provider=%s phase=%s",
            run.id,
            run.organization_id,
            run.provider,
            run.phase,
        )
    return [run.id for run in runs]
