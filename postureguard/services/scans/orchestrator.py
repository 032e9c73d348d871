from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.core.config import SUPPORTED_PROVIDERS, get_settings
from postureguard.core.errors import (
    AuthenticationError,
    ConfigurationError,
    PostureGuardError,
    RunConflict,
)
from postureguard.domain.models import SCAN_STATUS_COMPLETED, SCAN_STATUS_FAILED, SCAN_STATUS_RUNNING, ProviderConfig, ScanRun
from postureguard.persistence.db import SessionLocal
from postureguard.persistence.repos import provider_configs as provider_configs_repo
from postureguard.persistence.repos import scan_runs as scan_runs_repo
from postureguard.providers.directory.factory import get_provider
from postureguard.services.rules import load_snapshot, run_checks
from postureguard.services.scans.dispatch import ScanJobPayload, dispatch_scan
from postureguard.services.scans.phase_runner import run_phase
from postureguard.services.scans.watchdog import fail_stale_runs
from postureguard.services.telemetry import increment_counter


logger = logging.getLogger(__name__)

CHECKS_PHASE = "checks"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def failure_message(exc: BaseException) -> str:
    if isinstance(exc, PostureGuardError):
        return exc.describe()
    return f"{exc.__class__.__name__}: {exc}"


async def resolve_config(
    session: AsyncSession,
    organization_id: str,
    provider: str | None = None,
) -> ProviderConfig:
    """Pick the provider configuration a scan should run against.

    Without an explicit provider the organization must have exactly one
    enabled configuration.
    """
    if provider is not None:
        if provider not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(f"Unsupported directory provider: {provider}")
        config = await provider_configs_repo.get_config(session, organization_id, provider)
        if config is None or not config.is_enabled:
            raise ConfigurationError(f"{provider} is not configured for this organization")
        return config

    enabled = [
        config
        for config in await provider_configs_repo.list_configs_for_organization(session, organization_id)
        if config.is_enabled
    ]
    if not enabled:
        raise ConfigurationError("No directory provider is configured for this organization")
    if len(enabled) > 1:
        names = ", ".join(config.provider for config in enabled)
        raise ConfigurationError(f"Multiple directory providers configured ({names}); specify one")
    return enabled[0]


async def trigger_scan(
    organization_id: str,
    actor: str | None,
    provider: str | None = None,
) -> ScanRun:
    """Create a RUNNING scan for the organization and hand it to the executor.

    Configuration and credential problems are raised here, before any run
    row exists. A second trigger while a scan is RUNNING raises RunConflict.
    """
    settings = get_settings()
    async with SessionLocal() as session:
        config = await resolve_config(session, organization_id, provider)

        # A crashed worker must not hold the run lock past the timeout.
        await fail_stale_runs(session, organization_id=organization_id)
        await session.commit()

        # Conflicts are reported before any provider call is made.
        running = await scan_runs_repo.get_running_scan(session, organization_id)
        if running is not None:
            raise RunConflict(f"scan {running.id} is already running for this organization")

        directory = get_provider(config)
        try:
            phases = directory.phases()
            if settings.scan_verify_credentials_on_trigger and not await directory.verify_credentials():
                raise AuthenticationError(
                    f"{config.provider} rejected the stored credentials",
                    credential_rejected=True,
                )
        finally:
            await directory.aclose()

        run = await scan_runs_repo.create_scan_run(
            session,
            organization_id=organization_id,
            provider=config.provider,
            triggered_by=actor or "system",
            total_phases=len(phases),
            first_phase=phases[0].category if phases else None,
            started_at=_utc_now(),
        )
        await session.commit()

    job_id = await dispatch_scan(
        ScanJobPayload(scan_run_id=run.id, organization_id=organization_id, provider=run.provider),
        execute=execute_scan,
    )
    increment_counter("scan_runs_triggered_total")
    logger.info(
        "scan_triggered scan_run_id=%s org=%s provider=%s actor=%s job_id=%s",
        run.id,
        organization_id,
        run.provider,
        run.triggered_by,
        job_id,
    )
    return run


async def execute_scan(scan_run_id: str) -> str | None:
    """Run every phase of a scan, then evaluate checks against the snapshot.

    Returns the terminal status, or None when the run does not exist. Phase
    errors are recorded and the scan still completes; anything else fails
    the run with its error message.
    """
    async with SessionLocal() as session:
        run = await scan_runs_repo.get_scan_run(session, scan_run_id)
        if run is None:
            logger.warning("scan_run_missing scan_run_id=%s", scan_run_id)
            return None
        if run.status != SCAN_STATUS_RUNNING:
            # Redelivered job for a run that already settled.
            logger.info("scan_run_already_settled scan_run_id=%s status=%s", scan_run_id, run.status)
            return run.status

        directory = None
        try:
            config = await provider_configs_repo.get_config(session, run.organization_id, run.provider)
            if config is None:
                raise ConfigurationError(f"{run.provider} is not configured for this organization")
            directory = get_provider(config)
            phases = directory.phases()
            results = dict(run.phase_results or {})
            for index, phase in enumerate(phases):
                await scan_runs_repo.record_phase_progress(
                    session, run, phase=phase.category, completed_phases=index
                )
                await session.commit()
                result = await run_phase(
                    session,
                    phase,
                    organization_id=run.organization_id,
                    provider=run.provider,
                    scan_run_id=run.id,
                )
                results[phase.category] = result.as_dict()
                await scan_runs_repo.record_phase_progress(
                    session,
                    run,
                    phase=phase.category,
                    completed_phases=index + 1,
                    phase_results=results,
                )
                await session.commit()

            await scan_runs_repo.record_phase_progress(
                session, run, phase=CHECKS_PHASE, completed_phases=len(phases)
            )
            await session.commit()
            snapshot = await load_snapshot(session, run, [phase.category for phase in phases])
            await run_checks(session, run, snapshot)

            await session.refresh(run, attribute_names=["status"])
            if run.status != SCAN_STATUS_RUNNING:
                # The watchdog failed this run while it was executing.
                await session.rollback()
                logger.warning("scan_run_settled_elsewhere scan_run_id=%s status=%s", run.id, run.status)
                return run.status
            await scan_runs_repo.mark_completed(session, run, completed_at=_utc_now())
            await session.commit()
        except Exception as exc:  # noqa: BLE001 - a run must never stay RUNNING after its executor exits
            await session.rollback()
            logger.exception("scan_failed scan_run_id=%s", scan_run_id)
            increment_counter("scan_runs_failed_total")
            run = await scan_runs_repo.get_scan_run(session, scan_run_id)
            if run is not None:
                await scan_runs_repo.mark_failed(
                    session,
                    run,
                    error_message=failure_message(exc),
                    completed_at=_utc_now(),
                )
                await session.commit()
            return SCAN_STATUS_FAILED
        finally:
            if directory is not None:
                await directory.aclose()

    degraded = sorted(category for category, result in results.items() if result.get("error"))
    increment_counter("scan_runs_completed_total")
    logger.info(
        "scan_completed scan_run_id=%s org=%s provider=%s degraded=%s",
        scan_run_id,
        run.organization_id,
        run.provider,
        ",".join(degraded) or "-",
    )
    return SCAN_STATUS_COMPLETED
