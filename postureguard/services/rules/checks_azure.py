from __future__ import annotations

from datetime import timedelta
from typing import Any, Iterable

from postureguard.core.config import PROVIDER_AZURE
from postureguard.domain.models import CHECK_STATUS_WARNING
from postureguard.domain.records import CheckOutcome, CloudResourceRecord
from postureguard.providers.directory.azure_tenant import NSG_TYPE, STORAGE_TYPE
from postureguard.services.rules.engine import registry_for
from postureguard.services.rules.snapshot import Snapshot
from postureguard.services.rules.verdicts import (
    count_verdict,
    existence_verdict,
    presence_verdict,
    threshold_verdict,
)


registry = registry_for(PROVIDER_AZURE)

ROTATION_WINDOW = timedelta(days=30)
_INTERNET_SOURCES = {"*", "0.0.0.0/0", "Internet", "Any"}
_SENSITIVE_PORTS = {"22", "3389", "445", "*"}
_LEGACY_CLIENT_APPS = {"exchangeActiveSync", "other"}
_UNRESOLVED_ALERT_STATUSES = {"new", "inProgress"}


def _enabled_policies(snapshot: Snapshot) -> list[Any]:
    return [policy for policy in snapshot.access_policies if policy.state == "enabled"]


def _builtin_controls(policy: Any) -> list[str]:
    return list((policy.grant_controls or {}).get("builtInControls") or [])


def _open_inbound_rules(resource: CloudResourceRecord, ports: set[str]) -> bool:
    for rule in (resource.properties or {}).get("securityRules") or []:
        props = rule.get("properties") or {}
        if (
            props.get("direction") == "Inbound"
            and props.get("access") == "Allow"
            and props.get("sourceAddressPrefix") in _INTERNET_SOURCES
            and props.get("destinationPortRange") in ports
        ):
            return True
    return False


def _resources_of(snapshot: Snapshot, resource_type: str) -> list[CloudResourceRecord]:
    # ARM type names are case-insensitive.
    wanted = resource_type.lower()
    return [resource for resource in snapshot.resources if resource.resource_type.lower() == wanted]


def _names(resources: Iterable[CloudResourceRecord]) -> list[str]:
    return [resource.name or resource.external_id for resource in resources]


@registry.register(
    "1.1",
    category="Identity",
    title="MFA enabled for all users",
    description="Ensure multi-factor authentication is registered for all enabled users.",
)
def mfa_coverage(snapshot: Snapshot) -> CheckOutcome:
    active = [account for account in snapshot.accounts if not account.suspended]
    registered = sum(1 for account in active if account.mfa_enrolled)
    return threshold_verdict(
        registered,
        len(active),
        pass_pct=100,
        warn_pct=80,
        label="users have MFA registered",
        empty_details="No active users found",
    )


@registry.register(
    "1.2",
    category="Identity",
    title="No guest accounts without review",
    description="Review guest user accounts for potential security risks.",
)
def guest_accounts(snapshot: Snapshot) -> CheckOutcome:
    guests = [account for account in snapshot.accounts if account.account_type == "guest" and not account.suspended]
    return count_verdict(len(guests), pass_max=0, warn_max=5, details=f"{len(guests)} active guest account(s) found")


@registry.register(
    "1.3",
    category="Identity",
    title="Conditional Access policies exist",
    description="Ensure Conditional Access policies are configured and enabled.",
)
def access_policies_exist(snapshot: Snapshot) -> CheckOutcome:
    enabled = _enabled_policies(snapshot)
    return existence_verdict(
        len(enabled),
        minimum=3,
        warn_minimum=1,
        details=f"{len(enabled)} enabled Conditional Access policies found",
    )


@registry.register(
    "1.4",
    category="Identity",
    title="Block legacy authentication",
    description="Ensure a Conditional Access policy blocks legacy authentication protocols.",
)
def legacy_auth_blocked(snapshot: Snapshot) -> CheckOutcome:
    blocking = [
        policy
        for policy in _enabled_policies(snapshot)
        if _LEGACY_CLIENT_APPS & set((policy.conditions or {}).get("clientAppTypes") or [])
        or "block" in _builtin_controls(policy)
    ]
    return existence_verdict(
        len(blocking),
        details="Legacy authentication blocking policy found"
        if blocking
        else "No policy blocking legacy authentication detected",
    )


@registry.register(
    "1.5",
    category="Identity",
    title="MFA required for admin roles",
    description="Ensure Conditional Access requires MFA for admin role assignments.",
)
def admin_mfa_required(snapshot: Snapshot) -> CheckOutcome:
    requiring = [
        policy
        for policy in _enabled_policies(snapshot)
        if ((policy.conditions or {}).get("users") or {}).get("includeRoles")
        and "mfa" in _builtin_controls(policy)
    ]
    return existence_verdict(
        len(requiring),
        details="MFA required for admin roles via Conditional Access"
        if requiring
        else "No CA policy requiring MFA for admin roles",
    )


@registry.register(
    "2.1",
    category="Applications",
    title="No apps with expired credentials",
    description="Ensure no application registrations have expired credentials.",
)
def expired_app_credentials(snapshot: Snapshot) -> CheckOutcome:
    expired = [
        app.display_text or app.client_id
        for app in snapshot.oauth_grants
        if app.credentials_expire_at is not None and app.credentials_expire_at < snapshot.as_of
    ]
    return presence_verdict(expired, summary=f"{len(expired)} application(s) with expired credentials")


@registry.register(
    "2.2",
    category="Applications",
    title="No multi-tenant applications (review)",
    description="Review applications configured for multi-tenant access.",
)
def multi_tenant_apps(snapshot: Snapshot) -> CheckOutcome:
    multi = [
        app
        for app in snapshot.oauth_grants
        if app.sign_in_audience is not None and app.sign_in_audience != "AzureADMyOrg"
    ]
    return count_verdict(len(multi), pass_max=0, warn_max=3, details=f"{len(multi)} multi-tenant application(s) found")


@registry.register(
    "2.3",
    category="Applications",
    title="Application credentials rotation",
    description="Ensure application credentials are not expiring within 30 days.",
)
def credential_rotation_window(snapshot: Snapshot) -> CheckOutcome:
    apps = snapshot.oauth_grants
    with_passwords = sum(1 for app in apps if app.password_credential_count > 0)
    horizon = snapshot.as_of + ROTATION_WINDOW
    expiring = [
        app.display_text or app.client_id
        for app in apps
        if app.credentials_expire_at is not None and snapshot.as_of <= app.credentials_expire_at < horizon
    ]
    return presence_verdict(
        expiring,
        summary=f"{with_passwords} app(s) with password credentials, {len(expiring)} expiring within 30 days",
        fail_status=CHECK_STATUS_WARNING,
        listed_as="Expiring",
    )


@registry.register(
    "3.1",
    category="Networking",
    title="No NSGs with unrestricted inbound access",
    description="Ensure Network Security Groups do not allow unrestricted inbound access from the internet on sensitive ports.",
)
def open_sensitive_ports(snapshot: Snapshot) -> CheckOutcome:
    open_groups = [nsg for nsg in _resources_of(snapshot, NSG_TYPE) if _open_inbound_rules(nsg, _SENSITIVE_PORTS)]
    return presence_verdict(
        _names(open_groups),
        summary=f"{len(open_groups)} NSG(s) with unrestricted inbound rules on sensitive ports",
    )


@registry.register(
    "3.2",
    category="Networking",
    title="No unrestricted SSH access (port 22)",
    description="Ensure SSH access is not open to the internet.",
)
def open_ssh(snapshot: Snapshot) -> CheckOutcome:
    open_groups = [nsg for nsg in _resources_of(snapshot, NSG_TYPE) if _open_inbound_rules(nsg, {"22", "*"})]
    return presence_verdict(
        _names(open_groups),
        summary=f"{len(open_groups)} NSG(s) allow unrestricted SSH (port 22) from internet",
    )


@registry.register(
    "3.3",
    category="Networking",
    title="No unrestricted RDP access (port 3389)",
    description="Ensure RDP access is not open to the internet.",
)
def open_rdp(snapshot: Snapshot) -> CheckOutcome:
    open_groups = [nsg for nsg in _resources_of(snapshot, NSG_TYPE) if _open_inbound_rules(nsg, {"3389", "*"})]
    return presence_verdict(
        _names(open_groups),
        summary=f"{len(open_groups)} NSG(s) allow unrestricted RDP (port 3389) from internet",
    )


@registry.register(
    "4.1",
    category="Storage",
    title="Storage accounts require HTTPS",
    description="Ensure storage accounts are configured to only allow HTTPS traffic.",
)
def storage_https_only(snapshot: Snapshot) -> CheckOutcome:
    accounts = _resources_of(snapshot, STORAGE_TYPE)
    insecure = [account for account in accounts if (account.properties or {}).get("supportsHttpsTrafficOnly") is False]
    summary = (
        "No storage accounts found"
        if not accounts
        else f"{len(insecure)}/{len(accounts)} storage account(s) allow HTTP traffic"
    )
    return presence_verdict(_names(insecure), summary=summary)


@registry.register(
    "4.2",
    category="Storage",
    title="Storage accounts restrict public access",
    description="Ensure storage accounts do not allow public blob access.",
)
def storage_public_access(snapshot: Snapshot) -> CheckOutcome:
    accounts = _resources_of(snapshot, STORAGE_TYPE)
    public = [account for account in accounts if (account.properties or {}).get("allowBlobPublicAccess") is True]
    summary = (
        "No storage accounts found"
        if not accounts
        else f"{len(public)}/{len(accounts)} storage account(s) allow public blob access"
    )
    return presence_verdict(_names(public), summary=summary)


@registry.register(
    "5.1",
    category="Security",
    title="Defender for Cloud assessments active",
    description="Ensure Microsoft Defender for Cloud is actively monitoring resources.",
)
def defender_assessments_healthy(snapshot: Snapshot) -> CheckOutcome:
    assessments = snapshot.assessments
    healthy = sum(1 for assessment in assessments if assessment.status == "Healthy")
    return threshold_verdict(
        healthy,
        len(assessments),
        pass_pct=80,
        warn_pct=50,
        label="assessments are healthy",
        empty_details="No Defender for Cloud assessments found (Defender may not be enabled)",
    )


@registry.register(
    "5.2",
    category="Security",
    title="No high-severity unresolved security alerts",
    description="Ensure there are no unresolved high-severity security alerts.",
)
def no_open_high_alerts(snapshot: Snapshot) -> CheckOutcome:
    open_high = [
        alert.title or alert.external_id
        for alert in snapshot.alerts
        if alert.severity == "HIGH" and alert.status in _UNRESOLVED_ALERT_STATUSES
    ]
    return presence_verdict(open_high, summary=f"{len(open_high)} high-severity unresolved security alert(s)")
