from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.core.config import get_settings
from postureguard.core.errors import AuthenticationError, PhaseFailure, TransientProviderError
from postureguard.domain.records import PhaseResult
from postureguard.persistence.repos import snapshots as snapshots_repo
from postureguard.providers.directory.base import PhaseSpec
from postureguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

PostPhaseHook = Callable[[AsyncSession, str, str], Awaitable[Any]]

# Derived fields recomputed from other categories once their phase has synced.
POST_PHASE_HOOKS: dict[str, PostPhaseHook] = {
    "org_units": snapshots_repo.refresh_org_unit_user_counts,
    "role_assignments": snapshots_repo.resolve_assignee_emails,
}


async def run_phase(
    session: AsyncSession,
    phase: PhaseSpec,
    *,
    organization_id: str,
    provider: str,
    scan_run_id: str,
    batch_size: int | None = None,
    sweep: bool | None = None,
) -> PhaseResult:
    """Drain one category into the mirror in committed batches.

    Provider-level failures end the phase early and are returned as the
    result's error; rows already committed stay. A rejected credential and
    any non-provider exception propagate to the orchestrator.
    """
    settings = get_settings()
    batch_size = max(1, batch_size or settings.scan_batch_size)
    sweep = settings.snapshot_sweep_enabled if sweep is None else sweep
    buffer: list[dict[str, Any]] = []
    record_count = 0
    inserted = 0
    updated = 0
    error: str | None = None

    async def _flush() -> None:
        nonlocal inserted, updated
        if not buffer:
            return
        counts = await snapshots_repo.upsert_batch(
            session,
            phase.category,
            organization_id,
            provider,
            buffer,
            scan_run_id,
        )
        await session.commit()
        inserted += counts.inserted
        updated += counts.updated
        buffer.clear()

    try:
        async for native in phase.fetch():
            row = phase.normalize(native)
            if row is None:
                increment_counter(f"scan_records_skipped_total.{phase.category}")
                continue
            buffer.append(row)
            record_count += 1
            if len(buffer) >= batch_size:
                await _flush()
    except AuthenticationError as exc:
        if exc.credential_rejected:
            raise
        error = exc.describe()
    except (TransientProviderError, PhaseFailure) as exc:
        error = exc.describe()
    # Records fetched before a failure are still real provider state.
    await _flush()

    swept = 0
    # Absence only means deletion when every page was read.
    if sweep and error is None:
        swept = await snapshots_repo.sweep_stale(
            session, phase.category, organization_id, provider, scan_run_id
        )
        await session.commit()

    hook = POST_PHASE_HOOKS.get(phase.category)
    if hook is not None:
        await hook(session, organization_id, provider)
        await session.commit()

    increment_counter(f"scan_phase_records_total.{phase.category}", record_count)
    if error is not None:
        increment_counter(f"scan_phase_errors_total.{phase.category}")
        logger.warning(
            "scan_phase_degraded scan_run_id=%s category=%s records=%s error=%s",
            scan_run_id,
            phase.category,
            record_count,
            error,
        )
    else:
        logger.info(
            "scan_phase_completed scan_run_id=%s category=%s records=%s inserted=%s updated=%s swept=%s",
            scan_run_id,
            phase.category,
            record_count,
            inserted,
            updated,
            swept,
        )
    return PhaseResult(
        category=phase.category,
        record_count=record_count,
        inserted=inserted,
        updated=updated,
        swept=swept,
        error=error,
    )
