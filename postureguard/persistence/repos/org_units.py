from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.domain.models import OrgUnit


async def get_org_unit(session: AsyncSession, organization_id: str, org_unit_id: int) -> OrgUnit | None:
    # Scope by organization so one tenant cannot annotate another's hierarchy.
    result = await session.execute(
        select(OrgUnit).where(OrgUnit.id == org_unit_id, OrgUnit.organization_id == organization_id)
    )
    return result.scalar_one_or_none()


def normalize_tags(tags: list[str]) -> list[str]:
    # Trimmed, de-duplicated, order-preserving.
    seen: list[str] = []
    for tag in tags:
        value = tag.strip()
        if value and value not in seen:
            seen.append(value)
    return seen


async def update_annotations(
    session: AsyncSession,
    organization_id: str,
    org_unit_id: int,
    *,
    risk_tags: list[str] | None = None,
    risk_notes: str | None = None,
    clear_notes: bool = False,
) -> OrgUnit | None:
    # Fetch first to enforce organization scoping; sync never touches these columns.
    unit = await get_org_unit(session, organization_id, org_unit_id)
    if unit is None:
        return None
    if risk_tags is not None:
        unit.risk_tags = normalize_tags(risk_tags)
    if clear_notes:
        unit.risk_notes = None
    elif risk_notes is not None:
        unit.risk_notes = risk_notes
    await session.flush()
    return unit
