from __future__ import annotations

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.domain.models import ComplianceCheck, ScanRun


async def replace_checks(session: AsyncSession, run: ScanRun, rows: list[dict]) -> list[ComplianceCheck]:
    # One verdict per (run, check id); re-evaluating a run replaces its set.
    await session.execute(delete(ComplianceCheck).where(ComplianceCheck.scan_run_id == run.id))
    checks = [
        ComplianceCheck(
            scan_run_id=run.id,
            organization_id=run.organization_id,
            provider=run.provider,
            **row,
        )
        for row in rows
    ]
    session.add_all(checks)
    await session.flush()
    return checks


async def list_checks_for_run(session: AsyncSession, scan_run_id: str) -> list[ComplianceCheck]:
    result = await session.execute(
        select(ComplianceCheck)
        .where(ComplianceCheck.scan_run_id == scan_run_id)
        .order_by(ComplianceCheck.category, ComplianceCheck.check_id)
    )
    return list(result.scalars().all())
