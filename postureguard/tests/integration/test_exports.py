from __future__ import annotations

import csv
import io
from datetime import datetime, timezone

import pytest

from postureguard.core.errors import ConfigurationError
from postureguard.persistence.db import SessionLocal
from postureguard.persistence.repos import snapshots as snapshots_repo
from postureguard.services.exports import COMPLIANCE_COLUMNS, export_columns, export_csv
from postureguard.services.scans import trigger_scan, wait_for_inline_scans
from postureguard.tests.utils.fakes import FakeDirectoryProvider, workspace_accounts
from postureguard.tests.utils.seed import install_providers, seed_provider_config


ORG = "org-exports"
PROVIDER = "google_workspace"


def _parse(body: str) -> tuple[list[str], list[dict[str, str]]]:
    reader = csv.DictReader(io.StringIO(body))
    return list(reader.fieldnames or []), list(reader)


def test_bookkeeping_columns_are_hidden() -> None:
    columns = export_columns("accounts")
    assert "primary_email" in columns
    assert "stale" in columns
    assert not {"id", "organization_id", "last_seen_scan_id"} & set(columns)


async def test_account_export_formats_cells() -> None:
    last_login = datetime(2026, 2, 1, 9, 30, tzinfo=timezone.utc)
    rows = [
        {
            "external_id": "u2",
            "primary_email": "b@example.com",
            "mfa_enrolled": True,
            "mfa_methods": ["totp", "fido2"],
            "last_login_at": last_login,
        },
        {"external_id": "u1", "primary_email": "a@example.com", "display_name": "Smith, Ada"},
    ]
    async with SessionLocal() as session:
        await snapshots_repo.upsert_batch(session, "accounts", ORG, PROVIDER, rows, "scan-1")
        await session.commit()
        filename, body = await export_csv(session, ORG, PROVIDER, "accounts")

    header, parsed = _parse(body)
    assert filename == "google_workspace-accounts.csv"
    assert header == export_columns("accounts")
    assert [row["external_id"] for row in parsed] == ["u1", "u2"]
    assert parsed[0]["display_name"] == "Smith, Ada"
    assert parsed[0]["last_login_at"] == ""
    assert parsed[1]["mfa_enrolled"] == "true"
    assert parsed[1]["mfa_methods"] == "totp; fido2"
    assert parsed[1]["last_login_at"] == "2026-02-01T09:30:00+00:00"


async def test_alert_descriptions_are_flattened() -> None:
    alert = {
        "external_id": "a1",
        "alert_type": "Phishing",
        "severity": "HIGH",
        "description": {"@type": "x", "domainId": {"customerPrimaryDomain": "example.com"}, "isInternal": False},
    }
    async with SessionLocal() as session:
        await snapshots_repo.upsert_batch(session, "alerts", ORG, PROVIDER, [alert], "scan-1")
        await session.commit()
        _filename, body = await export_csv(session, ORG, PROVIDER, "alerts")

    _header, parsed = _parse(body)
    assert parsed[0]["description"] == "domain Id: example.com, is Internal: false"


async def test_compliance_export_uses_latest_completed_run(monkeypatch: pytest.MonkeyPatch) -> None:
    async with SessionLocal() as session:
        _filename, empty = await export_csv(session, ORG, PROVIDER, "compliance")
    assert _parse(empty) == (list(COMPLIANCE_COLUMNS), [])

    data = {"accounts": workspace_accounts(total=10, active=10, enrolled=10, admins=1)}
    install_providers(monkeypatch, FakeDirectoryProvider(PROVIDER, data))
    await seed_provider_config(ORG)
    await trigger_scan(ORG, "alice")
    await wait_for_inline_scans()

    async with SessionLocal() as session:
        filename, body = await export_csv(session, ORG, PROVIDER, "compliance")
    header, parsed = _parse(body)
    assert filename == "google_workspace-compliance.csv"
    assert header == list(COMPLIANCE_COLUMNS)
    by_id = {row["check_id"]: row for row in parsed}
    assert by_id["1.1"]["status"] == "PASS"
    assert by_id["1.1"]["category"] == "Authentication"


async def test_unknown_export_kind() -> None:
    async with SessionLocal() as session:
        with pytest.raises(ConfigurationError, match="Unknown export"):
            await export_csv(session, ORG, PROVIDER, "passwords")
