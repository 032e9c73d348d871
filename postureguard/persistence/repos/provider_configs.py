from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.domain.models import ProviderConfig


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def get_config(session: AsyncSession, organization_id: str, provider: str) -> ProviderConfig | None:
    result = await session.execute(
        select(ProviderConfig).where(
            ProviderConfig.organization_id == organization_id,
            ProviderConfig.provider == provider,
        )
    )
    return result.scalar_one_or_none()


async def list_configs_for_organization(session: AsyncSession, organization_id: str) -> list[ProviderConfig]:
    result = await session.execute(
        select(ProviderConfig)
        .where(ProviderConfig.organization_id == organization_id)
        .order_by(ProviderConfig.provider)
    )
    return list(result.scalars().all())


async def list_enabled_configs(session: AsyncSession) -> list[ProviderConfig]:
    result = await session.execute(
        select(ProviderConfig)
        .where(ProviderConfig.is_enabled.is_(True))
        .order_by(ProviderConfig.organization_id, ProviderConfig.provider)
    )
    return list(result.scalars().all())


async def upsert_config(
    session: AsyncSession,
    *,
    organization_id: str,
    provider: str,
    credentials_json: str,
    admin_email: str | None,
    domain: str | None,
    is_enabled: bool,
    scan_interval_hours: int,
    updated_by: str | None,
) -> ProviderConfig:
    config = await get_config(session, organization_id, provider)
    if config is None:
        config = ProviderConfig(organization_id=organization_id, provider=provider)
        session.add(config)
    config.credentials_json = credentials_json
    config.admin_email = admin_email
    config.domain = domain
    config.is_enabled = is_enabled
    config.scan_interval_hours = scan_interval_hours
    config.updated_by = updated_by
    config.updated_at = _utc_now()
    await session.flush()
    return config
