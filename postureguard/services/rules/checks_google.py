from __future__ import annotations

from datetime import timedelta

from postureguard.core.config import PROVIDER_GOOGLE_WORKSPACE
from postureguard.domain.models import CHECK_STATUS_PASS, CHECK_STATUS_WARNING
from postureguard.domain.records import CheckOutcome
from postureguard.services.rules.engine import registry_for
from postureguard.services.rules.snapshot import Snapshot
from postureguard.services.rules.verdicts import (
    count_verdict,
    format_names,
    presence_verdict,
    threshold_verdict,
)


registry = registry_for(PROVIDER_GOOGLE_WORKSPACE)

RECENT_LOGIN_WINDOW = timedelta(days=30)
# Values Workspace reports for devices that are fine.
_UNCOMPROMISED = {"", "No compromise detected", "NO_COMPROMISE_DETECTED", "Undetected"}
_ENCRYPTED = {"", "Encrypted", "ENCRYPTED"}
_RESOLVED_ALERT_STATUSES = {"CLOSED", "RESOLVED"}


@registry.register(
    "1.1",
    category="Authentication",
    title="All admin accounts have 2-step verification enrolled",
    description="Ensure all super admin and delegated admin accounts have two-step verification enrolled.",
)
def admin_accounts_enrolled(snapshot: Snapshot) -> CheckOutcome:
    admins = [account for account in snapshot.accounts if account.is_admin and not account.suspended]
    if not admins:
        return CheckOutcome(CHECK_STATUS_WARNING, "No admin accounts found")
    missing = [account.primary_email for account in admins if not account.mfa_enrolled]
    return presence_verdict(
        missing,
        summary=f"{len(admins) - len(missing)}/{len(admins)} admin accounts have 2-step verification enrolled",
        listed_as="Missing",
    )


@registry.register(
    "1.2",
    category="Authentication",
    title="Active users have 2-step verification enrolled",
    description="At least 80% of active accounts should have two-step verification enrolled.",
)
def active_users_enrolled(snapshot: Snapshot) -> CheckOutcome:
    active = [account for account in snapshot.accounts if account.active]
    enrolled = sum(1 for account in active if account.mfa_enrolled)
    return threshold_verdict(
        enrolled,
        len(active),
        pass_pct=80,
        warn_pct=60,
        label="active users have 2-step verification enrolled",
        empty_details="No active users found",
    )


@registry.register(
    "1.3",
    category="Authentication",
    title="2-step verification enforced for all users",
    description="Ensure two-step verification is enforced (not just enrolled) for all user accounts.",
)
def active_users_enforced(snapshot: Snapshot) -> CheckOutcome:
    active = [account for account in snapshot.accounts if account.active]
    enforced = sum(1 for account in active if account.mfa_enforced)
    return threshold_verdict(
        enforced,
        len(active),
        pass_pct=100,
        warn_pct=80,
        label="active users have 2-step verification enforced",
        empty_details="No active users found",
    )


@registry.register(
    "2.1",
    category="Applications",
    title="No high-risk third-party OAuth apps",
    description="Review third-party applications with access to sensitive scopes (Gmail, Drive, Admin).",
)
def no_high_risk_apps(snapshot: Snapshot) -> CheckOutcome:
    grants = snapshot.oauth_grants
    high = [grant.display_text or grant.client_id for grant in grants if grant.risk_level == "HIGH"]
    return presence_verdict(high, summary=f"{len(high)} high-risk apps out of {len(grants)} total OAuth apps")


@registry.register(
    "2.2",
    category="Applications",
    title="No unverified (anonymous) OAuth apps",
    description="Ensure no unverified third-party applications have been granted access.",
)
def no_unverified_apps(snapshot: Snapshot) -> CheckOutcome:
    unverified = [grant.display_text or grant.client_id for grant in snapshot.oauth_grants if grant.anonymous]
    return presence_verdict(
        unverified,
        summary=f"{len(unverified)} unverified OAuth app(s) detected",
        fail_status=CHECK_STATUS_WARNING,
    )


@registry.register(
    "3.1",
    category="Admin Roles",
    title="Minimal super admin accounts",
    description="Ensure no more than 3 users have super admin privileges.",
)
def minimal_super_admins(snapshot: Snapshot) -> CheckOutcome:
    super_roles = {role.external_id for role in snapshot.admin_roles if role.is_super_admin}
    if not super_roles:
        return CheckOutcome(CHECK_STATUS_PASS, "No super admin roles found (roles not yet synced)")
    holders = {
        assignment.assignee_id
        for assignment in snapshot.role_assignments
        if assignment.role_external_id in super_roles
    }
    return count_verdict(
        len(holders),
        pass_max=3,
        warn_max=5,
        details=f"{len(holders)} user(s) have super admin role(s)",
    )


@registry.register(
    "3.2",
    category="Admin Roles",
    title="Admin role holders have 2-step verification enrolled",
    description="All users with any admin role should have two-step verification enrolled.",
)
def role_holders_enrolled(snapshot: Snapshot) -> CheckOutcome:
    holders = {assignment.assignee_id for assignment in snapshot.role_assignments if assignment.assignee_id}
    if not holders:
        return CheckOutcome(CHECK_STATUS_PASS, "No admin role assignments found")
    missing = [
        account.primary_email
        for account in snapshot.accounts
        if account.external_id in holders and not account.mfa_enrolled and not account.suspended
    ]
    return presence_verdict(
        missing,
        summary=f"{len(missing)} admin user(s) without 2-step verification out of {len(holders)} total admin users",
        listed_as="Missing",
    )


@registry.register(
    "4.1",
    category="Org Units",
    title="Review org units with risk tags",
    description="Org units with special permissions (external sharing, email exemptions) should be periodically reviewed.",
)
def tagged_org_units(snapshot: Snapshot) -> CheckOutcome:
    units = snapshot.org_units
    risky = [unit for unit in units if unit.risk_tags]
    if not risky:
        return CheckOutcome(CHECK_STATUS_PASS, f"{len(units)} org unit(s), none flagged with risk tags")
    affected = sum(unit.user_count for unit in risky)
    return CheckOutcome(
        CHECK_STATUS_WARNING,
        f"{len(risky)} OU(s) with risk tags affecting {affected} user(s): "
        f"{format_names([unit.name or unit.path for unit in risky])}",
    )


@registry.register(
    "5.1",
    category="Alerts",
    title="No unresolved high-severity alerts",
    description="Ensure Alert Center has no open high-severity alerts.",
)
def no_open_high_alerts(snapshot: Snapshot) -> CheckOutcome:
    open_high = [
        alert.title or alert.alert_type
        for alert in snapshot.alerts
        if alert.severity == "HIGH" and alert.status.upper() not in _RESOLVED_ALERT_STATUSES
    ]
    return presence_verdict(open_high, summary=f"{len(open_high)} unresolved high-severity alert(s)")


@registry.register(
    "6.1",
    category="Groups",
    title="No groups allow external members",
    description="Ensure no Google Groups allow external (outside domain) members.",
)
def no_external_member_groups(snapshot: Snapshot) -> CheckOutcome:
    external = [group.email or group.name for group in snapshot.groups if group.allow_external_members]
    if not external:
        return CheckOutcome(CHECK_STATUS_PASS, "No groups allow external members")
    return presence_verdict(external, summary=f"{len(external)} group(s) allow external members")


@registry.register(
    "6.2",
    category="Groups",
    title="Groups not publicly joinable",
    description="Ensure no Google Groups are set to allow anyone to join without approval.",
)
def no_public_groups(snapshot: Snapshot) -> CheckOutcome:
    public = [group.email or group.name for group in snapshot.groups if group.who_can_join == "ANYONE_CAN_JOIN"]
    if not public:
        return CheckOutcome(CHECK_STATUS_PASS, "No groups are publicly joinable")
    return presence_verdict(public, summary=f"{len(public)} group(s) are publicly joinable")


@registry.register(
    "7.1",
    category="Devices",
    title="No compromised mobile devices",
    description="Ensure no enrolled mobile devices have a compromised or rooted status.",
)
def no_compromised_devices(snapshot: Snapshot) -> CheckOutcome:
    devices = snapshot.devices
    if not devices:
        return CheckOutcome(CHECK_STATUS_PASS, "No mobile devices enrolled")
    compromised = [
        device.owner_email or device.external_id
        for device in devices
        if device.compromised_status is not None and device.compromised_status not in _UNCOMPROMISED
    ]
    return presence_verdict(
        compromised,
        summary=f"{len(compromised)} compromised device(s) out of {len(devices)} total",
    )


@registry.register(
    "7.2",
    category="Devices",
    title="All mobile devices encrypted",
    description="Ensure all enrolled mobile devices have encryption enabled.",
)
def devices_encrypted(snapshot: Snapshot) -> CheckOutcome:
    devices = snapshot.devices
    if not devices:
        return CheckOutcome(CHECK_STATUS_PASS, "No mobile devices enrolled")
    unencrypted = [
        device.owner_email or device.external_id
        for device in devices
        if device.encryption_status is not None and device.encryption_status not in _ENCRYPTED
    ]
    return presence_verdict(
        unencrypted,
        summary=f"{len(unencrypted)} unencrypted device(s) out of {len(devices)} total",
        fail_status=CHECK_STATUS_WARNING,
    )


@registry.register(
    "U.1",
    category="Users",
    title="No stale suspended accounts",
    description="Identify suspended accounts that had recent login activity before suspension.",
)
def suspended_with_recent_login(snapshot: Snapshot) -> CheckOutcome:
    cutoff = snapshot.as_of - RECENT_LOGIN_WINDOW
    recent = [
        account.primary_email
        for account in snapshot.accounts
        if account.suspended and account.last_login_at is not None and account.last_login_at >= cutoff
    ]
    return presence_verdict(
        recent,
        summary=f"{len(recent)} suspended account(s) had login activity in the last 30 days",
        fail_status=CHECK_STATUS_WARNING,
    )


@registry.register(
    "U.2",
    category="Users",
    title="No users with forced password change pending",
    description='Ensure no accounts have the "change password at next login" flag set.',
)
def pending_password_change(snapshot: Snapshot) -> CheckOutcome:
    pending = [
        account.primary_email
        for account in snapshot.accounts
        if not account.suspended and account.change_password_at_next_login
    ]
    return presence_verdict(
        pending,
        summary=f"{len(pending)} user(s) have a pending forced password change",
        fail_status=CHECK_STATUS_WARNING,
    )
