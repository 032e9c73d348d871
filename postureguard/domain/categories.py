from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from postureguard.domain import models, records


@dataclass(frozen=True)
class CategoryTable:
    # Binds a synced category to its mirror table, natural key column and read-only record type.
    name: str
    model: type[models.Base]
    key: str
    record: type[Any]


CATEGORY_TABLES: dict[str, CategoryTable] = {
    table.name: table
    for table in (
        CategoryTable("accounts", models.DirectoryAccount, "external_id", records.AccountRecord),
        CategoryTable("groups", models.DirectoryGroup, "external_id", records.GroupRecord),
        CategoryTable("oauth_grants", models.OAuthGrant, "client_id", records.OAuthGrantRecord),
        CategoryTable("devices", models.ManagedDevice, "external_id", records.DeviceRecord),
        CategoryTable("alerts", models.SecurityAlert, "external_id", records.AlertRecord),
        CategoryTable("org_units", models.OrgUnit, "path", records.OrgUnitRecord),
        CategoryTable("admin_roles", models.AdminRole, "external_id", records.AdminRoleRecord),
        CategoryTable("role_assignments", models.RoleAssignment, "external_id", records.RoleAssignmentRecord),
        CategoryTable("access_policies", models.AccessPolicy, "external_id", records.AccessPolicyRecord),
        CategoryTable("resources", models.CloudResource, "external_id", records.CloudResourceRecord),
        CategoryTable("assessments", models.PostureAssessment, "external_id", records.AssessmentRecord),
    )
}


def get_category(name: str) -> CategoryTable:
    try:
        return CATEGORY_TABLES[name]
    except KeyError as exc:
        raise ValueError(f"unknown snapshot category: {name}") from exc
