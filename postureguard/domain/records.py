from __future__ import annotations

from dataclasses import dataclass, fields
from datetime import datetime, timezone
from typing import Any, TypeVar


# Read-only views of mirror rows handed to compliance checks. Checks never see ORM
# instances so nothing they do can flush back into the mirror.

T = TypeVar("T")


def ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo on round-trip; stored values are always UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def to_record(record_type: type[T], row: Any) -> T:
    values: dict[str, Any] = {}
    for item in fields(record_type):
        value = getattr(row, item.name, None)
        if isinstance(value, datetime):
            value = ensure_utc(value)
        elif isinstance(value, list):
            value = tuple(value)
        values[item.name] = value
    return record_type(**values)


@dataclass(frozen=True)
class AccountRecord:
    external_id: str
    primary_email: str = ""
    display_name: str = ""
    is_admin: bool = False
    is_delegated_admin: bool = False
    suspended: bool = False
    archived: bool = False
    account_type: str | None = None
    mfa_enrolled: bool = False
    mfa_enforced: bool = False
    mfa_methods: tuple[str, ...] = ()
    change_password_at_next_login: bool = False
    last_login_at: datetime | None = None
    remote_created_at: datetime | None = None
    org_unit_path: str | None = None
    stale: bool = False

    @property
    def active(self) -> bool:
        return not self.suspended and not self.archived


@dataclass(frozen=True)
class GroupRecord:
    external_id: str
    email: str | None = None
    name: str = ""
    member_count: int = 0
    allow_external_members: bool = False
    who_can_join: str | None = None
    who_can_post: str | None = None
    visibility: str | None = None
    security_enabled: bool = False
    stale: bool = False


@dataclass(frozen=True)
class OAuthGrantRecord:
    client_id: str
    display_text: str = ""
    scopes: tuple[str, ...] = ()
    user_count: int = 0
    anonymous: bool = False
    risk_level: str = "LOW"
    sign_in_audience: str | None = None
    password_credential_count: int = 0
    key_credential_count: int = 0
    credentials_expire_at: datetime | None = None
    stale: bool = False


@dataclass(frozen=True)
class DeviceRecord:
    external_id: str
    device_type: str = "UNKNOWN"
    model: str | None = None
    os: str | None = None
    approval_status: str | None = None
    compromised_status: str | None = None
    encryption_status: str | None = None
    last_sync_at: datetime | None = None
    owner_email: str | None = None
    stale: bool = False


@dataclass(frozen=True)
class AlertRecord:
    external_id: str
    alert_type: str = "UNKNOWN"
    title: str | None = None
    source: str | None = None
    severity: str = "MEDIUM"
    status: str = "ACTIVE"
    start_time: datetime | None = None
    end_time: datetime | None = None
    description: Any = None
    stale: bool = False


@dataclass(frozen=True)
class OrgUnitRecord:
    path: str
    external_id: str | None = None
    name: str = ""
    description: str | None = None
    parent_path: str | None = None
    block_inheritance: bool = False
    user_count: int = 0
    risk_tags: tuple[str, ...] = ()
    risk_notes: str | None = None
    stale: bool = False


@dataclass(frozen=True)
class AdminRoleRecord:
    external_id: str
    name: str = ""
    description: str | None = None
    is_super_admin: bool = False
    is_system_role: bool = False
    privileges: tuple[str, ...] = ()
    stale: bool = False


@dataclass(frozen=True)
class RoleAssignmentRecord:
    external_id: str
    role_external_id: str = ""
    assignee_id: str = ""
    assignee_email: str | None = None
    scope_type: str = "CUSTOMER"
    org_unit_id: str | None = None
    stale: bool = False


@dataclass(frozen=True)
class AccessPolicyRecord:
    external_id: str
    display_name: str = ""
    state: str = "disabled"
    conditions: dict[str, Any] | None = None
    grant_controls: dict[str, Any] | None = None
    session_controls: dict[str, Any] | None = None
    remote_modified_at: datetime | None = None
    stale: bool = False


@dataclass(frozen=True)
class CloudResourceRecord:
    external_id: str
    name: str = ""
    resource_type: str = ""
    location: str | None = None
    resource_group: str | None = None
    provisioning_state: str | None = None
    tags: dict[str, Any] | None = None
    properties: dict[str, Any] | None = None
    stale: bool = False


@dataclass(frozen=True)
class AssessmentRecord:
    external_id: str
    display_name: str = ""
    severity: str | None = None
    status: str = "NotApplicable"
    resource_id: str | None = None
    category: str | None = None
    stale: bool = False


@dataclass(frozen=True)
class PhaseResult:
    category: str
    record_count: int = 0
    inserted: int = 0
    updated: int = 0
    swept: int = 0
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "record_count": self.record_count,
            "inserted": self.inserted,
            "updated": self.updated,
            "swept": self.swept,
            "error": self.error,
        }


@dataclass(frozen=True)
class CheckOutcome:
    status: str
    details: str = ""
