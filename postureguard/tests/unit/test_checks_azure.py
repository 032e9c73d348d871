from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from postureguard.domain.records import (
    AccessPolicyRecord,
    AccountRecord,
    AssessmentRecord,
    CloudResourceRecord,
    OAuthGrantRecord,
)
from postureguard.providers.directory.azure_tenant import NSG_TYPE, STORAGE_TYPE
from postureguard.services.rules import RuleRegistry, Snapshot, evaluate, registry_for


AS_OF = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
CATEGORIES = ("accounts", "groups", "oauth_grants", "access_policies", "resources", "alerts", "assessments")


def _snapshot(**rows) -> Snapshot:
    return Snapshot(
        organization_id="org-1",
        provider="azure",
        as_of=AS_OF,
        categories={name: tuple(rows.get(name, ())) for name in CATEGORIES},
    )


def _results(snapshot: Snapshot) -> dict[str, dict]:
    return {row["check_id"]: row for row in evaluate(registry_for("azure"), snapshot)}


def _nsg(name: str, port: str) -> CloudResourceRecord:
    return CloudResourceRecord(
        external_id=f"/subscriptions/s/resourceGroups/rg/providers/{NSG_TYPE}/{name}",
        name=name,
        resource_type=NSG_TYPE.lower(),
        properties={
            "securityRules": [
                {
                    "name": "allow",
                    "properties": {
                        "direction": "Inbound",
                        "access": "Allow",
                        "sourceAddressPrefix": "*",
                        "destinationPortRange": port,
                    },
                }
            ]
        },
    )


def test_mfa_coverage_and_guests() -> None:
    accounts = [AccountRecord(external_id=f"u{index}", mfa_enrolled=index < 9) for index in range(10)]
    accounts.append(AccountRecord(external_id="g1", account_type="guest"))
    results = _results(_snapshot(accounts=accounts))
    assert results["1.1"]["status"] == "WARNING"
    assert results["1.1"]["details"] == "9/11 users have MFA registered (82%)"
    assert results["1.2"]["status"] == "WARNING"


def test_conditional_access_checks() -> None:
    policies = [
        AccessPolicyRecord(
            external_id="p1",
            state="enabled",
            conditions={"clientAppTypes": ["exchangeActiveSync", "other"]},
            grant_controls={"builtInControls": ["block"]},
        ),
        AccessPolicyRecord(
            external_id="p2",
            state="enabled",
            conditions={"users": {"includeRoles": ["62e90394-69f5-4237-9190-012177145e10"]}},
            grant_controls={"builtInControls": ["mfa"]},
        ),
        AccessPolicyRecord(external_id="p3", state="disabled"),
    ]
    results = _results(_snapshot(access_policies=policies))
    assert results["1.3"]["status"] == "WARNING"
    assert results["1.3"]["details"] == "2 enabled Conditional Access policies found"
    assert results["1.4"]["status"] == "PASS"
    assert results["1.5"]["status"] == "PASS"


def test_application_credential_windows() -> None:
    apps = [
        OAuthGrantRecord(client_id="a1", display_text="Expired", credentials_expire_at=AS_OF - timedelta(days=1)),
        OAuthGrantRecord(
            client_id="a2",
            display_text="Soon",
            password_credential_count=1,
            credentials_expire_at=AS_OF + timedelta(days=10),
        ),
        OAuthGrantRecord(client_id="a3", display_text="Global", sign_in_audience="AzureADMultipleOrgs"),
    ]
    results = _results(_snapshot(oauth_grants=apps))
    assert results["2.1"]["details"] == "1 application(s) with expired credentials. Affected: Expired"
    assert results["2.2"]["status"] == "WARNING"
    assert results["2.3"]["status"] == "WARNING"
    assert results["2.3"]["details"].endswith("Expiring: Soon")


def test_network_and_storage_checks() -> None:
    storage = CloudResourceRecord(
        external_id="st1",
        name="logs",
        resource_type=STORAGE_TYPE,
        properties={"supportsHttpsTrafficOnly": False, "allowBlobPublicAccess": True},
    )
    results = _results(_snapshot(resources=[_nsg("ssh-open", "22"), _nsg("web", "443"), storage]))
    assert results["3.1"]["details"] == "1 NSG(s) with unrestricted inbound rules on sensitive ports. Affected: ssh-open"
    assert results["3.2"]["status"] == "FAIL"
    assert results["3.3"]["status"] == "PASS"
    assert results["4.1"]["details"] == "1/1 storage account(s) allow HTTP traffic. Affected: logs"
    assert results["4.2"]["status"] == "FAIL"


@pytest.mark.parametrize(
    ("healthy", "status"),
    [(8, "PASS"), (5, "WARNING"), (4, "FAIL")],
)
def test_defender_assessment_thresholds(healthy: int, status: str) -> None:
    assessments = [
        AssessmentRecord(external_id=f"a{index}", status="Healthy" if index < healthy else "Unhealthy")
        for index in range(10)
    ]
    assert _results(_snapshot(assessments=assessments))["5.1"]["status"] == status


def test_raising_check_becomes_error() -> None:
    registry = RuleRegistry("azure")

    @registry.register("9.9", category="Custom", title="Broken", description="Always raises")
    def broken(snapshot: Snapshot):
        raise RuntimeError("boom")

    rows = evaluate(registry, _snapshot())
    assert rows[0]["status"] == "ERROR"
    assert rows[0]["details"] == "Check failed: boom"


def test_duplicate_check_ids_are_rejected() -> None:
    registry = RuleRegistry("azure")
    registry.register("1.1", category="A", title="t", description="d")(lambda snapshot: None)
    with pytest.raises(ValueError):
        registry.register("1.1", category="A", title="t", description="d")(lambda snapshot: None)
