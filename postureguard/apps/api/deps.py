from __future__ import annotations

from typing import AsyncGenerator

from fastapi import Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from postureguard.persistence.db import get_session


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    # One AsyncSession per request.
    async with get_session() as session:
        yield session


async def get_organization_id(
    x_organization_id: str | None = Header(default=None, alias="X-Organization-Id"),
) -> str:
    # Tenant resolution happens upstream; the gateway forwards the resolved id.
    if not x_organization_id or not x_organization_id.strip():
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"code": "ORGANIZATION_REQUIRED", "message": "X-Organization-Id header is required"},
        )
    return x_organization_id.strip()


async def get_actor_id(x_actor_id: str | None = Header(default=None, alias="X-Actor-Id")) -> str | None:
    return (x_actor_id or "").strip() or None
