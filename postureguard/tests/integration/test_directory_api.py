from __future__ import annotations

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import select

from postureguard.apps.api.main import create_app
from postureguard.domain.models import OrgUnit
from postureguard.persistence.db import SessionLocal
from postureguard.persistence.repos import snapshots as snapshots_repo
from postureguard.services import credentials
from postureguard.services.scans import wait_for_inline_scans
from postureguard.tests.utils.fakes import FakeDirectoryProvider, workspace_accounts
from postureguard.tests.utils.seed import install_providers, seed_provider_config, seed_scan_run


ORG = "org-api"
HEADERS = {"X-Organization-Id": ORG, "X-Actor-Id": "alice"}


def _client() -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=create_app()), base_url="http://test")


async def test_organization_header_is_required() -> None:
    async with _client() as client:
        response = await client.post("/v1/directory/scans")
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "ORGANIZATION_REQUIRED"


async def test_trigger_without_configuration_is_rejected() -> None:
    async with _client() as client:
        response = await client.post("/v1/directory/scans", headers=HEADERS)
    body = response.json()
    assert response.status_code == 400
    assert body["error"]["code"] == "PROVIDER_NOT_CONFIGURED"
    assert body["error"]["details"] == {"kind": "ConfigurationError"}


async def test_scan_lifecycle_over_http(monkeypatch: pytest.MonkeyPatch) -> None:
    data = {"accounts": workspace_accounts(total=80, active=80, enrolled=72, admins=2)}
    install_providers(monkeypatch, FakeDirectoryProvider("google_workspace", data))
    await seed_provider_config(ORG)

    async with _client() as client:
        started = await client.post(
            "/v1/directory/scans",
            headers={**HEADERS, "X-Request-Id": "req-123"},
            json={"provider": "google_workspace"},
        )
        assert started.status_code == 202
        body = started.json()
        assert body["data"]["status"] == "started"
        assert body["meta"] == {"request_id": "req-123", "api_version": "v1"}
        assert started.headers["X-Request-Id"] == "req-123"
        await wait_for_inline_scans()

        status = (await client.get("/v1/directory/scans/status", headers=HEADERS)).json()["data"]
        assert status["id"] == body["data"]["scan_run_id"]
        assert status["status"] == "COMPLETED"
        assert status["triggered_by"] == "alice"
        assert status["phase_results"]["accounts"]["record_count"] == 80

        history = (await client.get("/v1/directory/scans/history?limit=5", headers=HEADERS)).json()["data"]
        assert [run["id"] for run in history] == [status["id"]]

        compliance = (await client.get("/v1/directory/compliance-checks", headers=HEADERS)).json()["data"]
        assert compliance["scan_run_id"] == status["id"]
        checks = {check["check_id"]: check for group in compliance["categories"] for check in group["checks"]}
        assert checks["1.2"]["status"] == "PASS"
        assert compliance["summary"]["total"] == len(checks)

        metrics = (await client.get("/v1/ops/metrics")).json()["data"]
        assert metrics["counters"]["scan_runs_completed_total"] == 1


async def test_trigger_conflict_returns_409(monkeypatch: pytest.MonkeyPatch) -> None:
    install_providers(monkeypatch, FakeDirectoryProvider("google_workspace"))
    await seed_provider_config(ORG)
    await seed_scan_run(ORG)

    async with _client() as client:
        response = await client.post("/v1/directory/scans", headers=HEADERS)
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "SCAN_ALREADY_RUNNING"


async def test_status_is_null_before_first_scan() -> None:
    async with _client() as client:
        status = await client.get("/v1/directory/scans/status", headers=HEADERS)
        compliance = await client.get("/v1/directory/compliance-checks", headers=HEADERS)
    assert status.json()["data"] is None
    assert compliance.json()["data"] is None


async def test_configure_provider_hides_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(credentials, "build_provider", lambda *args, **kwargs: FakeDirectoryProvider("azure"))

    async with _client() as client:
        response = await client.put(
            "/v1/directory/providers/azure/config",
            headers=HEADERS,
            json={"credentials": '{"tenantId": "t", "clientSecret": "s3cret"}', "scan_interval_hours": 12},
        )
        listed = await client.get("/v1/directory/providers", headers=HEADERS)
        invalid = await client.put(
            "/v1/directory/providers/azure/config",
            headers=HEADERS,
            json={"credentials": "{}", "scan_interval_hours": 0},
        )

    assert response.status_code == 200
    assert response.json()["data"]["scan_interval_hours"] == 12
    assert response.json()["data"]["updated_by"] == "alice"
    assert "s3cret" not in response.text
    assert [item["provider"] for item in listed.json()["data"]] == ["azure"]
    assert "s3cret" not in listed.text
    assert invalid.status_code == 422
    assert invalid.json()["error"]["code"] == "REQUEST_VALIDATION_ERROR"


async def test_configure_provider_rejected_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        credentials,
        "build_provider",
        lambda *args, **kwargs: FakeDirectoryProvider("google_workspace", verified=False),
    )
    async with _client() as client:
        response = await client.put(
            "/v1/directory/providers/google_workspace/config",
            headers=HEADERS,
            json={"credentials": {"client_email": "sa@p.iam"}, "admin_email": "admin@example.com"},
        )
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "PROVIDER_AUTH_FAILED"


async def test_org_unit_annotations() -> None:
    async with SessionLocal() as session:
        await snapshots_repo.upsert_batch(
            session, "org_units", ORG, "google_workspace", [{"path": "/Finance", "name": "Finance"}], "scan-1"
        )
        await session.commit()
        unit_id = (await session.execute(select(OrgUnit.id))).scalar_one()

    path = f"/v1/directory/org-units/{unit_id}/annotations"
    async with _client() as client:
        tagged = await client.patch(path, headers=HEADERS, json={"risk_tags": ["pci", " pci "], "risk_notes": "Cards"})
        untouched = await client.patch(path, headers=HEADERS, json={"risk_tags": ["pci"]})
        cleared = await client.patch(path, headers=HEADERS, json={"risk_notes": None})
        foreign = await client.patch(path, headers={"X-Organization-Id": "org-other"}, json={"risk_tags": []})

    assert tagged.json()["data"]["risk_tags"] == ["pci"]
    assert untouched.json()["data"]["risk_notes"] == "Cards"
    assert cleared.json()["data"]["risk_notes"] is None
    assert cleared.json()["data"]["risk_tags"] == ["pci"]
    assert foreign.status_code == 404
    assert foreign.json()["error"]["code"] == "ORG_UNIT_NOT_FOUND"


async def test_alerts_listing_skips_stale_rows() -> None:
    await seed_provider_config(ORG)
    alerts = [
        {
            "external_id": "a1",
            "alert_type": "Suspicious login",
            "severity": "HIGH",
            "description": {"@type": "x", "email": "user@example.com", "requestId": "r-1"},
        },
        {"external_id": "a2", "alert_type": "Old", "severity": "LOW"},
    ]
    async with SessionLocal() as session:
        await snapshots_repo.upsert_batch(session, "alerts", ORG, "google_workspace", alerts, "scan-1")
        await snapshots_repo.upsert_batch(session, "alerts", ORG, "google_workspace", alerts[:1], "scan-2")
        await snapshots_repo.sweep_stale(session, "alerts", ORG, "google_workspace", "scan-2")
        await session.commit()

    async with _client() as client:
        response = await client.get("/v1/directory/alerts", headers=HEADERS)
    data = response.json()["data"]
    assert [alert["id"] for alert in data] == ["a1"]
    assert data[0]["summary"] == [{"label": "email", "text": "user@example.com"}]


async def test_exports() -> None:
    await seed_provider_config(ORG)
    async with SessionLocal() as session:
        await snapshots_repo.upsert_batch(
            session, "accounts", ORG, "google_workspace", workspace_accounts(total=2, active=2, enrolled=1), "scan-1"
        )
        await session.commit()

    async with _client() as client:
        exported = await client.get("/v1/directory/exports/accounts", headers=HEADERS)
        unknown = await client.get("/v1/directory/exports/passwords", headers=HEADERS)

    assert exported.status_code == 200
    assert exported.headers["content-type"].startswith("text/csv")
    assert exported.headers["content-disposition"] == 'attachment; filename="google_workspace-accounts.csv"'
    assert exported.text.count("@example.com") == 2
    assert unknown.status_code == 404
    assert unknown.json()["error"]["code"] == "EXPORT_NOT_FOUND"


async def test_health() -> None:
    async with _client() as client:
        response = await client.get("/v1/health")
    assert response.json()["data"] == {"status": "ok"}
    assert "Server-Timing" in response.headers
