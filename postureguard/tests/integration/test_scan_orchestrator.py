from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from postureguard.core.errors import AuthenticationError, ConfigurationError, RunConflict
from postureguard.domain.models import ComplianceCheck, ScanRun
from postureguard.persistence.db import SessionLocal
from postureguard.persistence.repos import scan_runs as scan_runs_repo
from postureguard.persistence.repos import snapshots as snapshots_repo
from postureguard.services.scans import (
    execute_scan,
    get_latest_compliance,
    get_scan_status,
    trigger_scan,
    wait_for_inline_scans,
)
from postureguard.tests.utils.fakes import GOOGLE_PHASES, FakeDirectoryProvider, workspace_accounts
from postureguard.tests.utils.seed import install_providers, seed_provider_config, seed_scan_run


ORG = "org-scans"


def _workspace(**kwargs) -> FakeDirectoryProvider:
    data = {"accounts": workspace_accounts(total=80, active=80, enrolled=72, admins=2)}
    return FakeDirectoryProvider("google_workspace", data, **kwargs)


async def _run_count() -> int:
    async with SessionLocal() as session:
        return int((await session.execute(select(func.count()).select_from(ScanRun))).scalar_one())


async def _checks_by_id(scan_run_id: str) -> dict[str, ComplianceCheck]:
    async with SessionLocal() as session:
        result = await session.execute(select(ComplianceCheck).where(ComplianceCheck.scan_run_id == scan_run_id))
        return {check.check_id: check for check in result.scalars()}


async def _load_run(scan_run_id: str) -> ScanRun:
    async with SessionLocal() as session:
        run = await scan_runs_repo.get_scan_run(session, scan_run_id)
    assert run is not None
    return run


async def test_clean_scan_completes_with_checks(monkeypatch: pytest.MonkeyPatch) -> None:
    provider = _workspace()
    install_providers(monkeypatch, provider)
    await seed_provider_config(ORG)

    run = await trigger_scan(ORG, "alice")
    assert run.status == "RUNNING"
    assert run.triggered_by == "alice"
    assert run.total_phases == len(GOOGLE_PHASES)
    await wait_for_inline_scans()

    stored = await _load_run(run.id)
    assert stored.status == "COMPLETED"
    assert stored.completed_phases == len(GOOGLE_PHASES)
    assert stored.error_message is None
    assert list(stored.phase_results) == list(GOOGLE_PHASES)
    assert stored.phase_results["accounts"]["record_count"] == 80

    checks = await _checks_by_id(run.id)
    assert checks["1.2"].status == "PASS"
    assert checks["1.2"].details == "72/80 active users have 2-step verification enrolled (90%)"
    assert checks["6.1"].status == "PASS"
    assert provider.closed == 2


async def test_scope_denied_category_degrades_without_failing_run(monkeypatch: pytest.MonkeyPatch) -> None:
    install_providers(
        monkeypatch,
        _workspace(failures={"alerts": AuthenticationError("insufficient scope", status_code=403)}),
    )
    await seed_provider_config(ORG)

    run = await trigger_scan(ORG, "alice")
    await wait_for_inline_scans()

    stored = await _load_run(run.id)
    assert stored.status == "COMPLETED"
    assert stored.phase_results["alerts"] == {
        "record_count": 0,
        "inserted": 0,
        "updated": 0,
        "swept": 0,
        "error": "AuthenticationError: insufficient scope",
    }
    checks = await _checks_by_id(run.id)
    assert checks["5.1"].status == "ERROR"
    assert checks["5.1"].details == "alerts sync failed: AuthenticationError: insufficient scope"
    assert checks["1.2"].status == "PASS"


async def test_second_trigger_conflicts_while_running(monkeypatch: pytest.MonkeyPatch) -> None:
    install_providers(monkeypatch, _workspace())
    await seed_provider_config(ORG)
    running_id = await seed_scan_run(ORG)

    with pytest.raises(RunConflict, match=running_id):
        await trigger_scan(ORG, "bob")
    assert await _run_count() == 1


async def test_conflict_reported_before_provider_is_contacted(monkeypatch: pytest.MonkeyPatch) -> None:
    provider = _workspace(verified=False)
    install_providers(monkeypatch, provider)
    await seed_provider_config(ORG)
    running_id = await seed_scan_run(ORG)

    with pytest.raises(RunConflict, match=running_id):
        await trigger_scan(ORG, "bob")
    assert provider.closed == 0
    assert await _run_count() == 1


async def test_rejected_credential_mid_run_fails_scan(monkeypatch: pytest.MonkeyPatch) -> None:
    rejected = AuthenticationError("google_workspace rejected the credential", credential_rejected=True)
    install_providers(monkeypatch, _workspace(failures={"groups": rejected}))
    await seed_provider_config(ORG)

    run = await trigger_scan(ORG, "alice")
    await wait_for_inline_scans()

    stored = await _load_run(run.id)
    assert stored.status == "FAILED"
    assert stored.error_message == "AuthenticationError: google_workspace rejected the credential"
    assert stored.completed_at is not None
    assert await _checks_by_id(run.id) == {}
    async with SessionLocal() as session:
        # Rows from phases that finished before the failure stay in the mirror.
        assert await snapshots_repo.count_rows(session, "accounts", ORG, "google_workspace") == 80
        latest = await get_latest_compliance(session, ORG)
    assert latest is None


async def test_unverified_credentials_fail_before_run_created(monkeypatch: pytest.MonkeyPatch) -> None:
    install_providers(monkeypatch, _workspace(verified=False))
    await seed_provider_config(ORG)

    with pytest.raises(AuthenticationError) as exc_info:
        await trigger_scan(ORG, "alice")
    assert exc_info.value.credential_rejected is True
    assert await _run_count() == 0


async def test_configuration_required(monkeypatch: pytest.MonkeyPatch) -> None:
    install_providers(monkeypatch, _workspace(), FakeDirectoryProvider("azure"))

    with pytest.raises(ConfigurationError, match="No directory provider"):
        await trigger_scan(ORG, "alice")

    await seed_provider_config(ORG, "google_workspace")
    await seed_provider_config(ORG, "azure")
    with pytest.raises(ConfigurationError, match="Multiple directory providers"):
        await trigger_scan(ORG, "alice")
    with pytest.raises(ConfigurationError, match="Unsupported directory provider"):
        await trigger_scan(ORG, "alice", "okta")

    run = await trigger_scan(ORG, None, "azure")
    await wait_for_inline_scans()
    assert run.triggered_by == "system"
    assert (await _load_run(run.id)).status == "COMPLETED"


async def test_stale_running_scan_is_timed_out_on_trigger(monkeypatch: pytest.MonkeyPatch) -> None:
    install_providers(monkeypatch, _workspace())
    await seed_provider_config(ORG)
    stuck_id = await seed_scan_run(ORG, started_at=datetime.now(timezone.utc) - timedelta(hours=3))

    run = await trigger_scan(ORG, "alice")
    await wait_for_inline_scans()

    stuck = await _load_run(stuck_id)
    assert stuck.status == "FAILED"
    assert stuck.error_message == "Scan timed out after 120 minutes without completing"
    assert (await _load_run(run.id)).status == "COMPLETED"


async def test_execute_leaves_settled_runs_alone(monkeypatch: pytest.MonkeyPatch) -> None:
    install_providers(monkeypatch, _workspace())
    await seed_provider_config(ORG)
    failed_id = await seed_scan_run(ORG, status="FAILED")

    assert await execute_scan(failed_id) == "FAILED"
    assert await execute_scan("missing-run") is None
    assert await _checks_by_id(failed_id) == {}


async def test_repeated_scans_produce_identical_verdicts(monkeypatch: pytest.MonkeyPatch) -> None:
    install_providers(monkeypatch, _workspace())
    await seed_provider_config(ORG)

    first = await trigger_scan(ORG, "alice")
    await wait_for_inline_scans()
    second = await trigger_scan(ORG, "alice")
    await wait_for_inline_scans()

    def _verdicts(checks: dict[str, ComplianceCheck]) -> list[tuple[str, str, str]]:
        return [(check_id, check.status, check.details) for check_id, check in sorted(checks.items())]

    assert _verdicts(await _checks_by_id(first.id)) == _verdicts(await _checks_by_id(second.id))
    async with SessionLocal() as session:
        status = await get_scan_status(session, ORG)
        latest = await get_latest_compliance(session, ORG, "google_workspace")
    assert status["id"] == second.id
    assert latest["scan_run_id"] == second.id
    assert latest["summary"]["total"] == len(await _checks_by_id(second.id))


async def test_failed_run_keeps_previous_compliance(monkeypatch: pytest.MonkeyPatch) -> None:
    provider = _workspace()
    install_providers(monkeypatch, provider)
    await seed_provider_config(ORG)
    good = await trigger_scan(ORG, "alice")
    await wait_for_inline_scans()

    provider.failures["accounts"] = AuthenticationError("revoked", credential_rejected=True)
    bad = await trigger_scan(ORG, "alice")
    await wait_for_inline_scans()

    async with SessionLocal() as session:
        status = await get_scan_status(session, ORG)
        latest = await get_latest_compliance(session, ORG)
    assert status["id"] == bad.id
    assert status["status"] == "FAILED"
    assert latest["scan_run_id"] == good.id
