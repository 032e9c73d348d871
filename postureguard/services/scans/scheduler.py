from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from postureguard.core.errors import PostureGuardError, RunConflict
from postureguard.domain.records import ensure_utc
from postureguard.persistence.db import SessionLocal
from postureguard.persistence.repos import provider_configs as provider_configs_repo
from postureguard.persistence.repos import scan_runs as scan_runs_repo
from postureguard.services.scans.orchestrator import trigger_scan
from postureguard.services.scans.watchdog import fail_stale_runs


logger = logging.getLogger(__name__)

SCHEDULER_ACTOR = "scheduler"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def run_scheduled_scans(now: datetime | None = None) -> list[str]:
    """Trigger scans for enabled configurations whose interval has elapsed.

    One organization's failure is logged and never blocks the others.
    """
    now = now or _utc_now()
    async with SessionLocal() as session:
        await fail_stale_runs(session, now=now)
        await session.commit()
        configs = await provider_configs_repo.list_enabled_configs(session)
        due = []
        for config in configs:
            latest = await scan_runs_repo.get_latest_scan(session, config.organization_id, config.provider)
            interval = timedelta(hours=max(1, config.scan_interval_hours))
            if latest is not None and ensure_utc(latest.started_at) > now - interval:
                continue
            due.append((config.organization_id, config.provider))

    triggered: list[str] = []
    for organization_id, provider in due:
        try:
            run = await trigger_scan(organization_id, SCHEDULER_ACTOR, provider)
        except RunConflict:
            logger.info("scheduled_scan_skipped org=%s provider=%s reason=running", organization_id, provider)
            continue
        except PostureGuardError as exc:
            logger.warning(
                "scheduled_scan_rejected org=%s provider=%s error=%s",
                organization_id,
                provider,
                exc.describe(),
            )
            continue
        triggered.append(run.id)
    if triggered:
        logger.info("scheduled_scans_triggered count=%s", len(triggered))
    return triggered
