from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import desc, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.core.errors import RunConflict
from postureguard.domain.models import (
    SCAN_STATUS_COMPLETED,
    SCAN_STATUS_FAILED,
    SCAN_STATUS_RUNNING,
    ScanRun,
)


async def get_scan_run(session: AsyncSession, scan_run_id: str) -> ScanRun | None:
    result = await session.execute(select(ScanRun).where(ScanRun.id == scan_run_id))
    return result.scalar_one_or_none()


async def get_running_scan(session: AsyncSession, organization_id: str) -> ScanRun | None:
    # The run lock is per organization regardless of provider.
    result = await session.execute(
        select(ScanRun)
        .where(ScanRun.organization_id == organization_id, ScanRun.status == SCAN_STATUS_RUNNING)
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_scan_run(
    session: AsyncSession,
    *,
    organization_id: str,
    provider: str,
    triggered_by: str,
    total_phases: int,
    first_phase: str | None,
    started_at: datetime,
) -> ScanRun:
    run = ScanRun(
        organization_id=organization_id,
        provider=provider,
        status=SCAN_STATUS_RUNNING,
        phase=first_phase,
        completed_phases=0,
        total_phases=total_phases,
        triggered_by=triggered_by,
        started_at=started_at,
        phase_results={},
    )
    session.add(run)
    try:
        await session.flush()
    except IntegrityError as exc:
        # The partial unique index closes the race between two concurrent triggers.
        await session.rollback()
        raise RunConflict(f"a scan is already running for organization {organization_id}") from exc
    return run


async def record_phase_progress(
    session: AsyncSession,
    run: ScanRun,
    *,
    phase: str | None,
    completed_phases: int,
    phase_results: dict[str, Any] | None = None,
) -> ScanRun:
    run.phase = phase
    run.completed_phases = completed_phases
    if phase_results is not None:
        # Assign a fresh dict so the JSON column is flagged dirty.
        run.phase_results = dict(phase_results)
    await session.flush()
    return run


async def mark_completed(session: AsyncSession, run: ScanRun, *, completed_at: datetime) -> ScanRun:
    run.status = SCAN_STATUS_COMPLETED
    run.phase = None
    run.completed_phases = run.total_phases
    run.completed_at = completed_at
    await session.flush()
    return run


async def mark_failed(
    session: AsyncSession,
    run: ScanRun,
    *,
    error_message: str,
    completed_at: datetime,
) -> ScanRun:
    run.status = SCAN_STATUS_FAILED
    run.error_message = error_message
    run.completed_at = completed_at
    await session.flush()
    return run


async def get_latest_scan(
    session: AsyncSession,
    organization_id: str,
    provider: str | None = None,
    *,
    status: str | None = None,
) -> ScanRun | None:
    query = select(ScanRun).where(ScanRun.organization_id == organization_id)
    if provider is not None:
        query = query.where(ScanRun.provider == provider)
    if status is not None:
        query = query.where(ScanRun.status == status)
    result = await session.execute(query.order_by(desc(ScanRun.started_at), desc(ScanRun.id)).limit(1))
    return result.scalar_one_or_none()


async def list_scan_history(
    session: AsyncSession,
    organization_id: str,
    provider: str | None = None,
    *,
    limit: int = 20,
) -> list[ScanRun]:
    # Newest first; id breaks ties between runs started in the same instant.
    query = select(ScanRun).where(ScanRun.organization_id == organization_id)
    if provider is not None:
        query = query.where(ScanRun.provider == provider)
    result = await session.execute(
        query.order_by(desc(ScanRun.started_at), desc(ScanRun.id)).limit(max(1, limit))
    )
    return list(result.scalars().all())


async def list_running_started_before(
    session: AsyncSession,
    cutoff: datetime,
    *,
    organization_id: str | None = None,
) -> list[ScanRun]:
    query = select(ScanRun).where(ScanRun.status == SCAN_STATUS_RUNNING, ScanRun.started_at < cutoff)
    if organization_id is not None:
        query = query.where(ScanRun.organization_id == organization_id)
    result = await session.execute(query.order_by(ScanRun.started_at))
    return list(result.scalars().all())
