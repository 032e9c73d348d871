from __future__ import annotations

import logging
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.domain.categories import get_category
from postureguard.domain.models import DirectoryAccount, OrgUnit, RoleAssignment


logger = logging.getLogger(__name__)

# Organization-owned annotations are never written by sync.
ANNOTATION_FIELDS = frozenset({"risk_tags", "risk_notes"})
# Bookkeeping columns managed here rather than supplied by provider normalizers.
_MIRROR_FIELDS = frozenset(
    {"id", "organization_id", "provider", "first_seen_at", "last_synced_at", "last_seen_scan_id", "stale"}
)


@dataclass(frozen=True)
class UpsertCounts:
    inserted: int = 0
    updated: int = 0


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _sync_fields(values: dict[str, Any]) -> dict[str, Any]:
    return {
        name: value
        for name, value in values.items()
        if name not in ANNOTATION_FIELDS and name not in _MIRROR_FIELDS
    }


async def upsert_batch(
    session: AsyncSession,
    category: str,
    organization_id: str,
    provider: str,
    records: Sequence[dict[str, Any]],
    scan_run_id: str | None,
    *,
    now: datetime | None = None,
) -> UpsertCounts:
    """Insert-or-update one batch of normalized records by natural key.

    One SELECT resolves which keys already exist; existing rows get their
    sync-owned fields overwritten in place and new rows are added. Duplicate
    keys inside a batch collapse to the last occurrence. The caller commits.
    """
    table = get_category(category)
    model = table.model
    key_column = getattr(model, table.key)
    now = now or _utc_now()

    by_key: dict[str, dict[str, Any]] = {}
    for values in records:
        key = values.get(table.key)
        if not key:
            raise ValueError(f"{category} record without natural key {table.key}")
        by_key[str(key)] = values
    if not by_key:
        return UpsertCounts()

    result = await session.execute(
        select(model).where(
            model.organization_id == organization_id,
            model.provider == provider,
            key_column.in_(list(by_key)),
        )
    )
    existing = {getattr(row, table.key): row for row in result.scalars().all()}

    inserted = 0
    updated = 0
    for key, values in by_key.items():
        fields = _sync_fields(values)
        row = existing.get(key)
        if row is None:
            session.add(
                model(
                    organization_id=organization_id,
                    provider=provider,
                    first_seen_at=now,
                    last_synced_at=now,
                    last_seen_scan_id=scan_run_id,
                    stale=False,
                    **fields,
                )
            )
            inserted += 1
            continue
        for name, value in fields.items():
            setattr(row, name, value)
        row.last_synced_at = now
        row.last_seen_scan_id = scan_run_id
        # A row seen again is live regardless of earlier sweeps.
        row.stale = False
        updated += 1
    await session.flush()
    return UpsertCounts(inserted=inserted, updated=updated)


async def sweep_stale(
    session: AsyncSession,
    category: str,
    organization_id: str,
    provider: str,
    scan_run_id: str,
) -> int:
    # Only valid after a phase that drained every page without error; flags, never deletes.
    model = get_category(category).model
    result = await session.execute(
        update(model)
        .where(
            model.organization_id == organization_id,
            model.provider == provider,
            model.stale.is_(False),
            or_(model.last_seen_scan_id.is_(None), model.last_seen_scan_id != scan_run_id),
        )
        .values(stale=True)
        .execution_options(synchronize_session="fetch")
    )
    return int(result.rowcount or 0)


async def purge_stale(session: AsyncSession, category: str, organization_id: str, provider: str) -> int:
    # The only physical delete of mirror rows; an explicit operator action.
    model = get_category(category).model
    result = await session.execute(
        delete(model)
        .where(
            model.organization_id == organization_id,
            model.provider == provider,
            model.stale.is_(True),
        )
        .execution_options(synchronize_session="fetch")
    )
    purged = int(result.rowcount or 0)
    logger.info(
        "snapshot_purge_stale org=%s provider=%s category=%s purged=%s",
        organization_id,
        provider,
        category,
        purged,
    )
    return purged


async def list_rows(
    session: AsyncSession,
    category: str,
    organization_id: str,
    provider: str,
) -> list[Any]:
    # Natural-key ordering keeps snapshots and exports deterministic.
    table = get_category(category)
    model = table.model
    result = await session.execute(
        select(model)
        .where(model.organization_id == organization_id, model.provider == provider)
        .order_by(getattr(model, table.key))
    )
    return list(result.scalars().all())


async def count_rows(session: AsyncSession, category: str, organization_id: str, provider: str) -> int:
    model = get_category(category).model
    result = await session.execute(
        select(func.count()).select_from(model).where(
            model.organization_id == organization_id,
            model.provider == provider,
        )
    )
    return int(result.scalar_one())


async def refresh_org_unit_user_counts(session: AsyncSession, organization_id: str, provider: str) -> int:
    # Accounts without an org unit path live in the root unit.
    result = await session.execute(
        select(DirectoryAccount.org_unit_path).where(
            DirectoryAccount.organization_id == organization_id,
            DirectoryAccount.provider == provider,
        )
    )
    counts = Counter((path or "/") for path in result.scalars().all())
    units = await session.execute(
        select(OrgUnit).where(OrgUnit.organization_id == organization_id, OrgUnit.provider == provider)
    )
    touched = 0
    for unit in units.scalars().all():
        unit.user_count = counts.get(unit.path, 0)
        touched += 1
    await session.flush()
    return touched


async def resolve_assignee_emails(session: AsyncSession, organization_id: str, provider: str) -> int:
    # Role assignments carry only the assignee id; resolve emails from synced accounts.
    result = await session.execute(
        select(DirectoryAccount.external_id, DirectoryAccount.primary_email).where(
            DirectoryAccount.organization_id == organization_id,
            DirectoryAccount.provider == provider,
        )
    )
    emails = {external_id: email for external_id, email in result.all()}
    assignments = await session.execute(
        select(RoleAssignment).where(
            RoleAssignment.organization_id == organization_id,
            RoleAssignment.provider == provider,
        )
    )
    resolved = 0
    for assignment in assignments.scalars().all():
        email = emails.get(assignment.assignee_id) or None
        assignment.assignee_email = email
        if email:
            resolved += 1
    await session.flush()
    return resolved
