from __future__ import annotations

from collections import OrderedDict
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.domain.models import (
    CHECK_STATUS_ERROR,
    CHECK_STATUS_FAIL,
    CHECK_STATUS_PASS,
    CHECK_STATUS_WARNING,
    SCAN_STATUS_COMPLETED,
    ComplianceCheck,
    ScanRun,
)
from postureguard.domain.records import ensure_utc
from postureguard.persistence.repos import compliance_checks as checks_repo
from postureguard.persistence.repos import scan_runs as scan_runs_repo


def _iso(value) -> str | None:
    value = ensure_utc(value)
    return value.isoformat() if value is not None else None


def scan_run_to_dict(run: ScanRun) -> dict[str, Any]:
    return {
        "id": run.id,
        "organization_id": run.organization_id,
        "provider": run.provider,
        "status": run.status,
        "phase": run.phase,
        "completed_phases": run.completed_phases,
        "total_phases": run.total_phases,
        "triggered_by": run.triggered_by,
        "started_at": _iso(run.started_at),
        "completed_at": _iso(run.completed_at),
        "error_message": run.error_message,
        "phase_results": dict(run.phase_results or {}),
    }


def check_to_dict(check: ComplianceCheck) -> dict[str, Any]:
    return {
        "check_id": check.check_id,
        "category": check.category,
        "title": check.title,
        "description": check.description,
        "status": check.status,
        "details": check.details,
    }


async def get_scan_status(
    session: AsyncSession,
    organization_id: str,
    provider: str | None = None,
) -> dict[str, Any] | None:
    run = await scan_runs_repo.get_latest_scan(session, organization_id, provider)
    return scan_run_to_dict(run) if run is not None else None


async def get_scan_history(
    session: AsyncSession,
    organization_id: str,
    provider: str | None = None,
    *,
    limit: int = 20,
) -> list[dict[str, Any]]:
    runs = await scan_runs_repo.list_scan_history(session, organization_id, provider, limit=limit)
    return [scan_run_to_dict(run) for run in runs]


def summarize_checks(checks: list[ComplianceCheck]) -> dict[str, int]:
    summary = {
        "total": len(checks),
        "passed": 0,
        "failed": 0,
        "warnings": 0,
        "errors": 0,
    }
    keys = {
        CHECK_STATUS_PASS: "passed",
        CHECK_STATUS_FAIL: "failed",
        CHECK_STATUS_WARNING: "warnings",
        CHECK_STATUS_ERROR: "errors",
    }
    for check in checks:
        key = keys.get(check.status)
        if key is not None:
            summary[key] += 1
    return summary


async def get_latest_compliance(
    session: AsyncSession,
    organization_id: str,
    provider: str | None = None,
) -> dict[str, Any] | None:
    """Checks of the newest COMPLETED run, grouped by category in check order.

    A FAILED run never replaces the last good verdict set.
    """
    run = await scan_runs_repo.get_latest_scan(
        session, organization_id, provider, status=SCAN_STATUS_COMPLETED
    )
    if run is None:
        return None
    checks = await checks_repo.list_checks_for_run(session, run.id)
    grouped: OrderedDict[str, list[dict[str, Any]]] = OrderedDict()
    for check in checks:
        grouped.setdefault(check.category, []).append(check_to_dict(check))
    return {
        "scan_run_id": run.id,
        "provider": run.provider,
        "evaluated_at": _iso(run.completed_at),
        "summary": summarize_checks(checks),
        "categories": [{"category": name, "checks": rows} for name, rows in grouped.items()],
    }
