from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# Use JSONB on Postgres while keeping SQLite-backed tests on plain JSON.
JsonType = JSON().with_variant(JSONB(), "postgresql")

SCAN_STATUS_RUNNING = "RUNNING"
SCAN_STATUS_COMPLETED = "COMPLETED"
SCAN_STATUS_FAILED = "FAILED"

CHECK_STATUS_PASS = "PASS"
CHECK_STATUS_FAIL = "FAIL"
CHECK_STATUS_WARNING = "WARNING"
CHECK_STATUS_ERROR = "ERROR"


def _new_id() -> str:
    return uuid4().hex


class Base(DeclarativeBase):
    pass


class MirrorMixin:
    # Columns shared by every current-state mirror table.
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    provider: Mapped[str] = mapped_column(String)
    # Stale rows were absent from a clean full sync; they are flagged, never purged by sync.
    stale: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_seen_scan_id: Mapped[str | None] = mapped_column(String, nullable=True)
    first_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    last_synced_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ProviderConfig(Base):
    __tablename__ = "provider_configs"
    __table_args__ = (
        UniqueConstraint("organization_id", "provider", name="uq_provider_configs_org_provider"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    provider: Mapped[str] = mapped_column(String)
    # Sanitized, re-serialized credential JSON; never returned by read APIs.
    credentials_json: Mapped[str] = mapped_column(Text)
    # Impersonated admin for Workspace domain-wide delegation.
    admin_email: Mapped[str | None] = mapped_column(String, nullable=True)
    domain: Mapped[str | None] = mapped_column(String, nullable=True)
    is_enabled: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    scan_interval_hours: Mapped[int] = mapped_column(Integer, default=24, nullable=False)
    updated_by: Mapped[str | None] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ScanRun(Base):
    __tablename__ = "scan_runs"
    __table_args__ = (
        Index("ix_scan_runs_org_started", "organization_id", "started_at"),
        # At most one RUNNING scan per organization, enforced by the database.
        Index(
            "uq_scan_runs_org_running",
            "organization_id",
            unique=True,
            postgresql_where=text("status = 'RUNNING'"),
            sqlite_where=text("status = 'RUNNING'"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    provider: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default=SCAN_STATUS_RUNNING)
    phase: Mapped[str | None] = mapped_column(String, nullable=True)
    completed_phases: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_phases: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    triggered_by: Mapped[str] = mapped_column(String)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Per-category counts and recorded phase errors, keyed by category name.
    phase_results: Mapped[dict[str, Any]] = mapped_column(JsonType, default=dict)


class ComplianceCheck(Base):
    __tablename__ = "compliance_checks"
    __table_args__ = (
        UniqueConstraint("scan_run_id", "check_id", name="uq_compliance_checks_run_check"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scan_run_id: Mapped[str] = mapped_column(String, ForeignKey("scan_runs.id"), index=True)
    organization_id: Mapped[str] = mapped_column(String, index=True)
    provider: Mapped[str] = mapped_column(String)
    check_id: Mapped[str] = mapped_column(String)
    category: Mapped[str] = mapped_column(String)
    title: Mapped[str] = mapped_column(String)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String)
    details: Mapped[str] = mapped_column(Text, default="")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class DirectoryAccount(MirrorMixin, Base):
    __tablename__ = "directory_accounts"
    __table_args__ = (
        UniqueConstraint("organization_id", "provider", "external_id", name="uq_directory_accounts_key"),
    )

    external_id: Mapped[str] = mapped_column(String)
    primary_email: Mapped[str] = mapped_column(String, default="")
    display_name: Mapped[str] = mapped_column(String, default="")
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    is_delegated_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    suspended: Mapped[bool] = mapped_column(Boolean, default=False)
    archived: Mapped[bool] = mapped_column(Boolean, default=False)
    # "member" or "guest"; cloud tenants expose external collaborators as guests.
    account_type: Mapped[str | None] = mapped_column(String, nullable=True)
    mfa_enrolled: Mapped[bool] = mapped_column(Boolean, default=False)
    mfa_enforced: Mapped[bool] = mapped_column(Boolean, default=False)
    mfa_methods: Mapped[list[str]] = mapped_column(JsonType, default=list)
    change_password_at_next_login: Mapped[bool] = mapped_column(Boolean, default=False)
    last_login_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    remote_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    org_unit_path: Mapped[str | None] = mapped_column(String, nullable=True)


class DirectoryGroup(MirrorMixin, Base):
    __tablename__ = "directory_groups"
    __table_args__ = (
        UniqueConstraint("organization_id", "provider", "external_id", name="uq_directory_groups_key"),
    )

    external_id: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    name: Mapped[str] = mapped_column(String, default="")
    member_count: Mapped[int] = mapped_column(Integer, default=0)
    allow_external_members: Mapped[bool] = mapped_column(Boolean, default=False)
    who_can_join: Mapped[str | None] = mapped_column(String, nullable=True)
    who_can_post: Mapped[str | None] = mapped_column(String, nullable=True)
    visibility: Mapped[str | None] = mapped_column(String, nullable=True)
    security_enabled: Mapped[bool] = mapped_column(Boolean, default=False)


class OAuthGrant(MirrorMixin, Base):
    __tablename__ = "oauth_grants"
    __table_args__ = (
        UniqueConstraint("organization_id", "provider", "client_id", name="uq_oauth_grants_key"),
    )

    client_id: Mapped[str] = mapped_column(String)
    display_text: Mapped[str] = mapped_column(String, default="")
    scopes: Mapped[list[str]] = mapped_column(JsonType, default=list)
    user_count: Mapped[int] = mapped_column(Integer, default=0)
    # Unverified publisher ("anonymous" in the Workspace token API).
    anonymous: Mapped[bool] = mapped_column(Boolean, default=False)
    risk_level: Mapped[str] = mapped_column(String, default="LOW")
    sign_in_audience: Mapped[str | None] = mapped_column(String, nullable=True)
    password_credential_count: Mapped[int] = mapped_column(Integer, default=0)
    key_credential_count: Mapped[int] = mapped_column(Integer, default=0)
    # Earliest end date across app credentials; compared to the scan time by checks.
    credentials_expire_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class ManagedDevice(MirrorMixin, Base):
    __tablename__ = "managed_devices"
    __table_args__ = (
        UniqueConstraint("organization_id", "provider", "external_id", name="uq_managed_devices_key"),
    )

    external_id: Mapped[str] = mapped_column(String)
    device_type: Mapped[str] = mapped_column(String, default="UNKNOWN")
    model: Mapped[str | None] = mapped_column(String, nullable=True)
    os: Mapped[str | None] = mapped_column(String, nullable=True)
    approval_status: Mapped[str | None] = mapped_column(String, nullable=True)
    compromised_status: Mapped[str | None] = mapped_column(String, nullable=True)
    encryption_status: Mapped[str | None] = mapped_column(String, nullable=True)
    last_sync_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    owner_email: Mapped[str | None] = mapped_column(String, nullable=True)


class SecurityAlert(MirrorMixin, Base):
    __tablename__ = "security_alerts"
    __table_args__ = (
        UniqueConstraint("organization_id", "provider", "external_id", name="uq_security_alerts_key"),
    )

    external_id: Mapped[str] = mapped_column(String)
    alert_type: Mapped[str] = mapped_column(String, default="UNKNOWN")
    title: Mapped[str | None] = mapped_column(String, nullable=True)
    source: Mapped[str | None] = mapped_column(String, nullable=True)
    severity: Mapped[str] = mapped_column(String, default="MEDIUM")
    status: Mapped[str] = mapped_column(String, default="ACTIVE")
    start_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    end_time: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    # Provider payload kept structured (string, list or mapping); see domain.alerts for display.
    description: Mapped[Any] = mapped_column(JsonType, nullable=True)


class OrgUnit(MirrorMixin, Base):
    __tablename__ = "org_units"
    __table_args__ = (
        UniqueConstraint("organization_id", "provider", "path", name="uq_org_units_key"),
    )

    path: Mapped[str] = mapped_column(String)
    external_id: Mapped[str | None] = mapped_column(String, nullable=True)
    name: Mapped[str] = mapped_column(String, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    parent_path: Mapped[str | None] = mapped_column(String, nullable=True)
    block_inheritance: Mapped[bool] = mapped_column(Boolean, default=False)
    user_count: Mapped[int] = mapped_column(Integer, default=0)
    # Organization-owned annotations; only the annotation operation writes these.
    risk_tags: Mapped[list[str]] = mapped_column(JsonType, default=list)
    risk_notes: Mapped[str | None] = mapped_column(Text, nullable=True)


class AdminRole(MirrorMixin, Base):
    __tablename__ = "admin_roles"
    __table_args__ = (
        UniqueConstraint("organization_id", "provider", "external_id", name="uq_admin_roles_key"),
    )

    external_id: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String, default="")
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_super_admin: Mapped[bool] = mapped_column(Boolean, default=False)
    is_system_role: Mapped[bool] = mapped_column(Boolean, default=False)
    privileges: Mapped[list[str]] = mapped_column(JsonType, default=list)


class RoleAssignment(MirrorMixin, Base):
    __tablename__ = "role_assignments"
    __table_args__ = (
        UniqueConstraint("organization_id", "provider", "external_id", name="uq_role_assignments_key"),
    )

    external_id: Mapped[str] = mapped_column(String)
    role_external_id: Mapped[str] = mapped_column(String)
    assignee_id: Mapped[str] = mapped_column(String, default="")
    assignee_email: Mapped[str | None] = mapped_column(String, nullable=True)
    # CUSTOMER (tenant-wide) or ORG_UNIT.
    scope_type: Mapped[str] = mapped_column(String, default="CUSTOMER")
    org_unit_id: Mapped[str | None] = mapped_column(String, nullable=True)


class AccessPolicy(MirrorMixin, Base):
    __tablename__ = "access_policies"
    __table_args__ = (
        UniqueConstraint("organization_id", "provider", "external_id", name="uq_access_policies_key"),
    )

    external_id: Mapped[str] = mapped_column(String)
    display_name: Mapped[str] = mapped_column(String, default="")
    state: Mapped[str] = mapped_column(String, default="disabled")
    conditions: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    grant_controls: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    session_controls: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    remote_modified_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CloudResource(MirrorMixin, Base):
    __tablename__ = "cloud_resources"
    __table_args__ = (
        UniqueConstraint("organization_id", "provider", "external_id", name="uq_cloud_resources_key"),
    )

    external_id: Mapped[str] = mapped_column(String)
    name: Mapped[str] = mapped_column(String, default="")
    resource_type: Mapped[str] = mapped_column(String, default="")
    location: Mapped[str | None] = mapped_column(String, nullable=True)
    resource_group: Mapped[str | None] = mapped_column(String, nullable=True)
    provisioning_state: Mapped[str | None] = mapped_column(String, nullable=True)
    tags: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)
    # Security-relevant properties for network security groups and storage accounts.
    properties: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)


class PostureAssessment(MirrorMixin, Base):
    __tablename__ = "posture_assessments"
    __table_args__ = (
        UniqueConstraint("organization_id", "provider", "external_id", name="uq_posture_assessments_key"),
    )

    external_id: Mapped[str] = mapped_column(String)
    display_name: Mapped[str] = mapped_column(String, default="")
    severity: Mapped[str | None] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String, default="NotApplicable")
    resource_id: Mapped[str | None] = mapped_column(String, nullable=True)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
